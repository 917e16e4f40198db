"""
FunctionRegistry — 线程安全的函数注册表。

写路径：启动阶段扫描候选源并发布描述符（可并发）。
读路径：向模型导出函数清单、按名称查找实现以便分发。
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from chat_functions_sdk.core.config import DUPLICATE_POLICIES, FunctionsConfig
from chat_functions_sdk.functions.errors import DuplicateFunctionError
from chat_functions_sdk.functions.extractor import build_descriptor, extract, source_label
from chat_functions_sdk.functions.schema import FunctionDescriptor, FunctionSchema

logger = logging.getLogger("chat_functions_sdk.functions")


class FunctionRegistry:
    """Central registry mapping function name to :class:`FunctionDescriptor`.

    Descriptors are fully built before they are published, and every
    read or write of the underlying dict happens under one lock, so a
    reader never observes a half-registered entry.

    Parameters:
        duplicate_policy: ``"overwrite"`` (last writer wins, logged) or
            ``"error"`` (raise :class:`DuplicateFunctionError`).

    Usage::

        registry = FunctionRegistry()
        registry.register_source(WeatherService())
        tools = registry.to_openai_schema()
        impl = registry.lookup_implementation("get_weather")
    """

    def __init__(self, duplicate_policy: str = "overwrite") -> None:
        if duplicate_policy not in DUPLICATE_POLICIES:
            raise ValueError(
                f"duplicate_policy must be one of {DUPLICATE_POLICIES}, got {duplicate_policy!r}"
            )
        self.duplicate_policy = duplicate_policy
        self._functions: Dict[str, FunctionDescriptor] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: FunctionsConfig) -> FunctionRegistry:
        """Create a registry using ``config.duplicate_policy``."""
        return cls(duplicate_policy=config.duplicate_policy)

    # ─── Write path ───

    def register(self, name: str, descriptor: FunctionDescriptor) -> FunctionDescriptor:
        """Publish *descriptor* under *name*.

        Raises:
            ValueError: If *name* is empty or differs from the descriptor's name.
            DuplicateFunctionError: If *name* exists and the policy is ``"error"``.
        """
        if not name:
            raise ValueError("Function name must be a non-empty string")
        if name != descriptor.name:
            raise ValueError(
                f"Registration name {name!r} does not match descriptor name {descriptor.name!r}"
            )
        with self._lock:
            if name in self._functions:
                if self.duplicate_policy == "error":
                    raise DuplicateFunctionError(name)
                logger.warning("Function %r already registered, overwriting", name)
            self._functions[name] = descriptor
        logger.debug("Function registered: %s", name)
        return descriptor

    def register_function(
        self,
        fn: Callable[..., Any],
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> FunctionDescriptor:
        """Build a descriptor for a single callable and register it.

        Unlike :meth:`register_source`, schema errors propagate to the caller.
        """
        descriptor = build_descriptor(fn, name=name, description=description, params=params)
        return self.register(descriptor.name, descriptor)

    def register_source(self, source: Any) -> int:
        """Extract all exposable functions of *source* and register them.

        Returns:
            Number of functions registered from *source*.
        """
        functions = extract(source)
        if functions:
            logger.info("Found %d functions on %s", len(functions), source_label(source))
        for name, descriptor in functions.items():
            self.register(name, descriptor)
        return len(functions)

    # ─── Read path ───

    def get(self, name: str) -> Optional[FunctionDescriptor]:
        """Get the full descriptor by name."""
        with self._lock:
            return self._functions.get(name)

    def lookup_schema(self, name: str) -> Optional[FunctionSchema]:
        """Get the protocol-facing schema by name."""
        descriptor = self.get(name)
        return descriptor.schema if descriptor else None

    def lookup_implementation(self, name: str) -> Optional[Callable[..., Any]]:
        """Get the invokable implementation by name."""
        descriptor = self.get(name)
        return descriptor.implementation if descriptor else None

    def list_all(self) -> List[FunctionSchema]:
        """Return all registered schemas, sorted by name."""
        with self._lock:
            descriptors = list(self._functions.values())
        return [d.schema for d in sorted(descriptors, key=lambda d: d.name)]

    def names(self) -> List[str]:
        """Return all function names, sorted."""
        with self._lock:
            return sorted(self._functions)

    def __len__(self) -> int:
        with self._lock:
            return len(self._functions)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._functions

    # ─── Schema export ───

    def to_json_schema(self) -> List[Dict[str, Any]]:
        """Export all functions as ``{"name", "description", "parameters"}`` dicts."""
        return [s.to_json_schema() for s in self.list_all()]

    def to_openai_schema(self) -> List[Dict[str, Any]]:
        """Export all functions in OpenAI function calling format.

        Returns a list suitable for the ``tools`` parameter of
        ``openai.chat.completions.create()``.
        """
        return [s.to_openai_schema() for s in self.list_all()]

    def log_summary(self) -> None:
        """Log the registry size, plus each function at DEBUG level."""
        schemas = self.list_all()
        logger.info("Function registry initialized with %d functions", len(schemas))
        for schema in schemas:
            logger.debug("%s", schema.to_text())
