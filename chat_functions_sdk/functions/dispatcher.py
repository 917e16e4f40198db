"""
FunctionDispatcher — 按名称分发模型发起的函数调用。

每次调用依次经过 Lookup → Decode → Invoke → Serialize，
结束于成功结果或带 ``error_kind`` 的失败结果。
任何错误都会被转换为 ``CallResult``，不会越过 dispatch 边界抛出。
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import inspect
import json
import logging
import math
import time
from collections import abc
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Dict,
    List,
    Literal,
    Optional,
    Set,
    Tuple,
    Union,
    get_args,
    get_origin,
)

from chat_functions_sdk.core.config import FunctionsConfig
from chat_functions_sdk.functions.context import CallContext
from chat_functions_sdk.functions.errors import (
    ArgumentTypeMismatchError,
    DispatchError,
    ExecutionError,
    MissingArgumentError,
    SchemaError,
    UnknownFunctionError,
    UnsupportedReturnTypeError,
)
from chat_functions_sdk.functions.registry import FunctionRegistry
from chat_functions_sdk.functions.schema import (
    FunctionDescriptor,
    FunctionSignature,
    is_enum_type,
    is_record_type,
    is_typeddict_type,
    record_fields,
    type_to_schema,
    unwrap_optional,
)

logger = logging.getLogger("chat_functions_sdk.functions")


# ──────────────────────────────────────────────
# Request / result
# ──────────────────────────────────────────────


@dataclass(frozen=True)
class CallRequest:
    """A function call issued by the model.

    Attributes:
        function_name: Name of the function to call.
        arguments_json: Raw JSON arguments (a JSON object as text); an
            already-decoded mapping is accepted as well.
        call_id: Optional ID from the provider's tool call.
    """

    function_name: str
    arguments_json: Union[str, bytes, Mapping, None] = field(default="{}", hash=False)
    call_id: str = ""


@dataclass(frozen=True)
class CallResult:
    """Outcome of a single dispatch.

    Attributes:
        ok: True when the function ran and its result was serialized.
        value: JSON-compatible return value (only when ``ok``).
        error_kind: One of ``UnknownFunction``, ``MissingArgument``,
            ``ArgumentTypeMismatch``, ``UnsupportedReturnType``,
            ``ExecutionError`` (only when not ``ok``).
        message: Human-readable error text, safe to show to the model.
    """

    ok: bool
    value: Any = field(default=None, hash=False)
    error_kind: str = ""
    message: str = ""

    @classmethod
    def success(cls, value: Any) -> CallResult:
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error_kind: str, message: str) -> CallResult:
        return cls(ok=False, error_kind=error_kind, message=message)

    def to_dict(self) -> Dict[str, Any]:
        if self.ok:
            return {"ok": True, "value": self.value}
        return {
            "ok": False,
            "error": {"kind": self.error_kind, "message": self.message},
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    def to_content(self) -> str:
        """Text to send back to the model as the function's output.

        String results are passed through as-is; other values are JSON.
        Failures become ``{"error": {"kind": ..., "message": ...}}``.
        """
        if not self.ok:
            return json.dumps(
                {"error": {"kind": self.error_kind, "message": self.message}},
                ensure_ascii=False,
            )
        if isinstance(self.value, str):
            return self.value
        return json.dumps(self.value, ensure_ascii=False)


# ──────────────────────────────────────────────
# Decode: JSON → native arguments
# ──────────────────────────────────────────────


def parse_arguments(raw: Union[str, bytes, Mapping, None]) -> Dict[str, Any]:
    """Parse raw call arguments into a dict.

    ``None`` and blank strings mean "no arguments".

    Raises:
        ArgumentTypeMismatchError: If *raw* is not valid JSON or not an object.
    """
    if raw is None:
        return {}
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ArgumentTypeMismatchError("arguments", "object", reason=f"not UTF-8 ({e.reason})") from e
    if isinstance(raw, str):
        if not raw.strip():
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ArgumentTypeMismatchError(
                "arguments", "object", reason=f"invalid JSON ({e.msg} at position {e.pos})"
            ) from e
        except (ValueError, RecursionError) as e:
            # Integer digit limit, nesting depth
            raise ArgumentTypeMismatchError(
                "arguments", "object", reason=f"unreadable JSON ({e})"
            ) from e
    else:
        parsed = raw
    if not isinstance(parsed, Mapping):
        raise ArgumentTypeMismatchError("arguments", "object", parsed)
    return dict(parsed)


def _expected_name(py_type: Any) -> str:
    try:
        return type_to_schema(py_type).get("type", "value")
    except SchemaError:
        return getattr(py_type, "__name__", repr(py_type))


def _is_absent(arguments: Mapping, name: str, annotation: Any, required: bool) -> bool:
    """Missing, or an explicit null for an optional, non-nullable value."""
    if name not in arguments:
        return True
    if arguments[name] is None and not required:
        return not unwrap_optional(annotation)[1]
    return False


def _coerce_enum(value: Any, enum_cls: type, path: str) -> enum.Enum:
    for member in enum_cls:
        if type(member.value) is type(value) and member.value == value:
            return member
    if isinstance(value, str) and value in enum_cls.__members__:
        return enum_cls.__members__[value]
    allowed = [m.value for m in enum_cls]
    raise ArgumentTypeMismatchError(path, "enum", value, reason=f"{value!r} is not one of {allowed}")


def _coerce_record(value: Any, cls: type, path: str) -> Any:
    if not isinstance(value, Mapping):
        raise ArgumentTypeMismatchError(path, "object", value)

    kwargs: Dict[str, Any] = {}
    for name, hint, required in record_fields(cls):
        field_path = f"{path}.{name}"
        if _is_absent(value, name, hint, required):
            if required:
                raise MissingArgumentError(field_path)
            continue
        kwargs[name] = coerce_value(value[name], hint, field_path)

    if is_typeddict_type(cls):
        return kwargs
    try:
        return cls(**kwargs)
    except Exception as e:
        # Record validators (__post_init__) may raise anything
        raise ArgumentTypeMismatchError(path, "object", value, reason=str(e)) from e


def coerce_value(value: Any, py_type: Any, path: str = "value") -> Any:
    """Convert a decoded JSON value to the declared Python type.

    Integers widen to floats; integral floats (``5.0``) narrow to ints.
    ``NaN``, infinities and integers beyond float range are rejected for
    ``float`` parameters. Enum parameters accept a member value or a member name.

    Raises:
        ArgumentTypeMismatchError: If the JSON type does not fit *py_type*.
        MissingArgumentError: If a nested record lacks a required field.
    """
    py_type, nullable = unwrap_optional(py_type)

    if value is None:
        if nullable:
            return None
        raise ArgumentTypeMismatchError(path, _expected_name(py_type), value)

    if is_enum_type(py_type):
        return _coerce_enum(value, py_type, path)

    if get_origin(py_type) is Literal:
        for allowed in get_args(py_type):
            if type(allowed) is type(value) and allowed == value:
                return value
        raise ArgumentTypeMismatchError(
            path, "enum", value, reason=f"{value!r} is not one of {list(get_args(py_type))}"
        )

    if py_type is bool:
        if isinstance(value, bool):
            return value
        raise ArgumentTypeMismatchError(path, "boolean", value)

    if py_type is int:
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        raise ArgumentTypeMismatchError(path, "integer", value)

    if py_type is float:
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            raise ArgumentTypeMismatchError(path, "number", value)
        try:
            number = float(value)
        except OverflowError as e:
            raise ArgumentTypeMismatchError(path, "number", value, reason="out of range") from e
        if not math.isfinite(number):
            raise ArgumentTypeMismatchError(path, "number", value, reason="non-finite number")
        return number

    if py_type is str:
        if isinstance(value, str):
            return value
        raise ArgumentTypeMismatchError(path, "string", value)

    schema_type = _expected_name(py_type)
    origin = get_origin(py_type) or py_type
    args = get_args(py_type)

    if schema_type == "array" and not is_record_type(py_type):
        if not isinstance(value, list):
            raise ArgumentTypeMismatchError(path, "array", value)
        item_type = args[0] if args else None
        items = [
            coerce_value(v, item_type, f"{path}[{i}]") if item_type is not None else v
            for i, v in enumerate(value)
        ]
        if origin is tuple:
            return tuple(items)
        if origin in (frozenset, abc.Set):
            return frozenset(items)
        if origin in (set, abc.MutableSet):
            return set(items)
        return items

    if is_record_type(py_type):
        return _coerce_record(value, py_type, path)

    if schema_type == "object":
        if not isinstance(value, Mapping):
            raise ArgumentTypeMismatchError(path, "object", value)
        if len(args) == 2:
            return {k: coerce_value(v, args[1], f"{path}.{k}") for k, v in value.items()}
        return dict(value)

    raise ArgumentTypeMismatchError(path, schema_type, value, reason="declared type cannot be decoded")


def decode_arguments(
    signature: FunctionSignature,
    arguments: Mapping[str, Any],
) -> Tuple[List[Any], Dict[str, Any]]:
    """Decode *arguments* into ``(positional, keyword_only)`` call arguments.

    Positional values follow declaration order; omitted optional
    parameters are filled with their defaults.
    """
    positional: List[Any] = []
    keyword: Dict[str, Any] = {}

    for p in signature.params:
        if _is_absent(arguments, p.name, p.annotation, p.required):
            if p.required:
                raise MissingArgumentError(p.name)
            decoded = p.default
        else:
            decoded = coerce_value(arguments[p.name], p.annotation, p.name)
        if p.keyword_only:
            keyword[p.name] = decoded
        else:
            positional.append(decoded)

    unknown = set(arguments) - {p.name for p in signature.params}
    if unknown:
        logger.debug("Ignoring unknown arguments for %s: %s", signature.name, sorted(unknown))
    return positional, keyword


# ──────────────────────────────────────────────
# Serialize: native return value → JSON
# ──────────────────────────────────────────────


def to_json_value(value: Any, path: str = "return", _active: Optional[Set[int]] = None) -> Any:
    """Convert a return value to plain JSON-compatible data.

    Raises:
        UnsupportedReturnTypeError: For values with no JSON representation,
            non-finite floats, non-string object keys or circular references.
    """
    if value is None:
        return None
    if isinstance(value, enum.Enum):
        return to_json_value(value.value, path, _active)
    if isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        return int(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            raise UnsupportedReturnTypeError(path, value, "non-finite number")
        return float(value)

    if _active is None:
        _active = set()
    if id(value) in _active:
        raise UnsupportedReturnTypeError(path, value, "circular reference")
    _active.add(id(value))
    try:
        if isinstance(value, Mapping):
            result: Dict[str, Any] = {}
            for k, v in value.items():
                if not isinstance(k, str):
                    raise UnsupportedReturnTypeError(path, value, f"object key {k!r} is not a string")
                result[k] = to_json_value(v, f"{path}.{k}", _active)
            return result
        if isinstance(value, (list, tuple, set, frozenset)):
            return [to_json_value(v, f"{path}[{i}]", _active) for i, v in enumerate(value)]
        if dataclasses.is_dataclass(value) and not isinstance(value, type):
            return {
                f.name: to_json_value(getattr(value, f.name), f"{path}.{f.name}", _active)
                for f in dataclasses.fields(value)
            }
    finally:
        _active.discard(id(value))

    raise UnsupportedReturnTypeError(path, value)


# ──────────────────────────────────────────────
# Dispatcher
# ──────────────────────────────────────────────


async def _await(awaitable: Awaitable[Any]) -> Any:
    return await awaitable


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


class FunctionDispatcher:
    """Executes call requests against a :class:`FunctionRegistry`.

    The dispatcher holds no locks of its own and spawns no background
    work: the implementation runs on the caller's thread (``dispatch``)
    or task (``dispatch_async``).

    Parameters:
        registry: Registry to resolve function names against.
        config: Error-reporting settings; defaults to :class:`FunctionsConfig`.
    """

    def __init__(self, registry: FunctionRegistry, config: Optional[FunctionsConfig] = None) -> None:
        self._registry = registry
        self._config = config or FunctionsConfig()

    @property
    def registry(self) -> FunctionRegistry:
        return self._registry

    def dispatch(self, request: CallRequest, ctx: Optional[CallContext] = None) -> CallResult:
        """Execute *request* synchronously. Never raises.

        Coroutine implementations are run to completion with
        ``asyncio.run`` when no event loop is running in this thread;
        inside a running loop use :meth:`dispatch_async` instead.
        """
        started = time.perf_counter()
        try:
            descriptor, args, kwargs = self._prepare(request, ctx)
        except DispatchError as e:
            return self._failure(request, e)
        except Exception as e:
            return self._decode_failure(request, e)

        try:
            value = descriptor.implementation(*args, **kwargs)
        except Exception as e:
            return self._execution_failure(request, e)

        if inspect.isawaitable(value):
            if _loop_running():
                if inspect.iscoroutine(value):
                    value.close()
                return self._failure(
                    request,
                    ExecutionError(
                        f"Function {descriptor.name!r} is asynchronous; "
                        "use dispatch_async() inside a running event loop"
                    ),
                )
            try:
                value = asyncio.run(_await(value))
            except Exception as e:
                return self._execution_failure(request, e)

        return self._finish(request, value, started)

    async def dispatch_async(self, request: CallRequest, ctx: Optional[CallContext] = None) -> CallResult:
        """Execute *request* on the current task, awaiting async implementations.

        Never raises, except for task cancellation.
        """
        started = time.perf_counter()
        try:
            descriptor, args, kwargs = self._prepare(request, ctx)
        except DispatchError as e:
            return self._failure(request, e)
        except Exception as e:
            return self._decode_failure(request, e)

        try:
            value = descriptor.implementation(*args, **kwargs)
            if inspect.isawaitable(value):
                value = await value
        except Exception as e:
            return self._execution_failure(request, e)

        return self._finish(request, value, started)

    # ─── Internal ───

    def _prepare(
        self,
        request: CallRequest,
        ctx: Optional[CallContext],
    ) -> Tuple[FunctionDescriptor, List[Any], Dict[str, Any]]:
        descriptor = self._registry.get(request.function_name)
        if descriptor is None:
            raise UnknownFunctionError(request.function_name)

        arguments = parse_arguments(request.arguments_json)
        args, kwargs = decode_arguments(descriptor.signature, arguments)

        if descriptor.signature.accepts_context:
            if ctx is None:
                ctx = CallContext(function_name=descriptor.name, call_id=request.call_id)
            else:
                ctx = dataclasses.replace(
                    ctx,
                    function_name=descriptor.name,
                    call_id=ctx.call_id or request.call_id,
                )
            args.insert(0, ctx)
        return descriptor, args, kwargs

    def _finish(self, request: CallRequest, value: Any, started: float) -> CallResult:
        try:
            result = CallResult.success(to_json_value(value))
        except UnsupportedReturnTypeError as e:
            return self._failure(request, e)
        except RecursionError:
            return self._failure(
                request, UnsupportedReturnTypeError("return", value, "nested too deeply")
            )
        logger.debug(
            "Function %s completed in %.1fms",
            request.function_name, (time.perf_counter() - started) * 1000,
        )
        return result

    def _truncate(self, message: str) -> str:
        limit = self._config.max_error_length
        if limit > 3 and len(message) > limit:
            return message[: limit - 3] + "..."
        return message

    def _failure(self, request: CallRequest, error: DispatchError) -> CallResult:
        logger.warning("Function call %s failed: %s: %s", request.function_name, error.kind, error)
        return CallResult.failure(error.kind, self._truncate(str(error)))

    def _decode_failure(self, request: CallRequest, exc: Exception) -> CallResult:
        logger.error("Could not decode arguments for %s", request.function_name, exc_info=exc)
        error = ArgumentTypeMismatchError(
            "arguments", "object", reason=f"could not be decoded ({type(exc).__name__})"
        )
        return CallResult.failure(error.kind, self._truncate(str(error)))

    def _execution_failure(self, request: CallRequest, exc: Exception) -> CallResult:
        logger.error("Function %s raised during execution", request.function_name, exc_info=exc)
        if self._config.expose_error_details:
            detail = str(exc)
            message = f"{type(exc).__name__}: {detail}" if detail else type(exc).__name__
        else:
            message = f"Function {request.function_name!r} failed to execute"
        return CallResult.failure(ExecutionError.kind, self._truncate(message))
