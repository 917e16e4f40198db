"""
OpenAIFunctionAdapter — 将 FunctionRegistry 对接 OpenAI function calling API。

轻量适配层：把注册的函数导出为 OpenAI ``tools`` / ``functions`` 参数格式，
并将模型返回的 ``tool_calls`` / ``function_call`` 交给 FunctionDispatcher 执行。

Usage::

    from chat_functions_sdk import FunctionRegistry, OpenAIFunctionAdapter

    registry = FunctionRegistry()
    registry.register_source(WeatherService())
    adapter = OpenAIFunctionAdapter(registry)

    response = client.chat.completions.create(
        model="gpt-4o",
        messages=messages,
        tools=adapter.to_openai_tools(),
    )

    if response.choices[0].message.tool_calls:
        results = adapter.handle_tool_calls(response.choices[0].message.tool_calls)
        messages.extend(adapter.results_to_messages(results))
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple

from chat_functions_sdk.functions.context import CallContext
from chat_functions_sdk.functions.dispatcher import CallRequest, CallResult, FunctionDispatcher
from chat_functions_sdk.functions.registry import FunctionRegistry

logger = logging.getLogger("chat_functions_sdk.functions")


@dataclass
class ToolCallResult:
    """Result of a single tool call execution.

    Attributes:
        tool_call_id: The ID from the OpenAI tool_call.
        name: Function name.
        result: The dispatcher's structured result.
    """

    tool_call_id: str
    name: str
    result: CallResult

    @property
    def content(self) -> str:
        return self.result.to_content()

    @property
    def error(self) -> Optional[str]:
        return None if self.result.ok else self.result.message

    def to_message(self) -> Dict[str, str]:
        """Convert to an OpenAI-compatible tool result message.

        Returns::

            {"role": "tool", "tool_call_id": "...", "content": "..."}
        """
        return {
            "role": "tool",
            "tool_call_id": self.tool_call_id,
            "content": self.content,
        }


class OpenAIFunctionAdapter:
    """Adapter between FunctionRegistry and the OpenAI function calling API.

    Parameters:
        registry: The function registry to use.
        dispatcher: Optional dispatcher; one is created over *registry*
            when omitted.
    """

    def __init__(
        self,
        registry: FunctionRegistry,
        dispatcher: Optional[FunctionDispatcher] = None,
    ) -> None:
        self._registry = registry
        self._dispatcher = dispatcher or FunctionDispatcher(registry)

    @property
    def registry(self) -> FunctionRegistry:
        return self._registry

    @property
    def dispatcher(self) -> FunctionDispatcher:
        return self._dispatcher

    def to_openai_tools(self) -> List[Dict[str, Any]]:
        """Export functions in OpenAI ``tools`` parameter format::

            [{"type": "function", "function": {"name": ..., ...}}, ...]
        """
        return self._registry.to_openai_schema()

    def to_openai_functions(self) -> List[Dict[str, Any]]:
        """Export functions in the legacy ``functions`` parameter format."""
        return self._registry.to_json_schema()

    def handle_tool_calls(
        self,
        tool_calls: Any,
        extra: Optional[Dict[str, Any]] = None,
    ) -> List[ToolCallResult]:
        """Execute tool calls returned by OpenAI and collect results.

        Parameters:
            tool_calls: The ``message.tool_calls`` list from an OpenAI
                response.  Each item should have ``.id``, ``.function.name``,
                and ``.function.arguments`` attributes (or dict equivalents).
            extra: Optional extra data to pass into CallContext.

        Returns:
            List of ToolCallResult, one per tool call, in order.
        """
        results: List[ToolCallResult] = []
        for call_id, request, ctx in self._requests(tool_calls, extra):
            results.append(
                ToolCallResult(call_id, request.function_name, self._dispatcher.dispatch(request, ctx))
            )
        return results

    async def handle_tool_calls_async(
        self,
        tool_calls: Any,
        extra: Optional[Dict[str, Any]] = None,
    ) -> List[ToolCallResult]:
        """Async variant of :meth:`handle_tool_calls`; calls run one after another."""
        results: List[ToolCallResult] = []
        for call_id, request, ctx in self._requests(tool_calls, extra):
            result = await self._dispatcher.dispatch_async(request, ctx)
            results.append(ToolCallResult(call_id, request.function_name, result))
        return results

    def handle_function_call(
        self,
        function_call: Any,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, str]:
        """Execute a legacy ``message.function_call`` and build the reply message.

        Returns::

            {"role": "function", "name": "...", "content": "..."}
        """
        func_name = _get(function_call, "name", "")
        request = CallRequest(func_name, _get(function_call, "arguments", "{}"))
        ctx = CallContext(function_name=func_name, extra=dict(extra or {}))
        result = self._dispatcher.dispatch(request, ctx)
        return {"role": "function", "name": func_name, "content": result.to_content()}

    def results_to_messages(self, results: List[ToolCallResult]) -> List[Dict[str, str]]:
        """Convert a list of ToolCallResult to OpenAI tool messages.

        Useful for appending to the messages list before the next API call.
        """
        return [r.to_message() for r in results]

    def _requests(
        self,
        tool_calls: Any,
        extra: Optional[Dict[str, Any]],
    ) -> Iterator[Tuple[str, CallRequest, CallContext]]:
        for tc in tool_calls or []:
            # Support both object attributes and dict access
            call_id = _get(tc, "id", "")
            func = _get(tc, "function", tc)
            func_name = _get(func, "name", "")
            request = CallRequest(func_name, _get(func, "arguments", "{}"), call_id=call_id)
            ctx = CallContext(function_name=func_name, call_id=call_id, extra=dict(extra or {}))
            yield call_id, request, ctx


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Get attribute or dict key, with fallback."""
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)
