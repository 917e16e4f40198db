"""
Function Calling 错误分类。

抽取期错误 (``SchemaError``) 在抽取器内按成员捕获并记录日志；
调用期错误 (``DispatchError``) 在分发边界转换为 ``CallResult``。
"""

from __future__ import annotations

from typing import Any, List


class FunctionCallingError(Exception):
    """Base exception for all function-calling errors."""


# ──────────────────────────────────────────────
# Extraction-time errors
# ──────────────────────────────────────────────


class SchemaError(FunctionCallingError):
    """Raised when a callable cannot be described as a JSON Schema."""


class SchemaCycleError(SchemaError):
    """Raised when a parameter type refers back to itself."""

    def __init__(self, type_path: List[str]) -> None:
        self.type_path = list(type_path)
        super().__init__(f"Self-referential type: {' -> '.join(self.type_path)}")


class UnsupportedTypeError(SchemaError):
    """Raised when a parameter type has no JSON Schema mapping."""

    def __init__(self, param_name: str, py_type: Any, reason: str = "") -> None:
        self.param_name = param_name
        self.py_type = py_type
        detail = f" ({reason})" if reason else ""
        super().__init__(
            f"Unsupported type for parameter {param_name!r}: {_type_name(py_type)}{detail}"
        )


class DuplicateFunctionError(FunctionCallingError):
    """Raised when a name is registered twice under the ``error`` policy."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Function {name!r} is already registered")


# ──────────────────────────────────────────────
# Dispatch-time errors
# ──────────────────────────────────────────────


class DispatchError(FunctionCallingError):
    """Base class for errors reported back to the model as a failed CallResult."""

    kind = "DispatchError"


class UnknownFunctionError(DispatchError):
    kind = "UnknownFunction"

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Function not found: {name!r}")


class MissingArgumentError(DispatchError):
    kind = "MissingArgument"

    def __init__(self, argument: str) -> None:
        self.argument = argument
        super().__init__(f"Missing required argument: {argument!r}")


class ArgumentTypeMismatchError(DispatchError):
    kind = "ArgumentTypeMismatch"

    def __init__(self, argument: str, expected: str, value: Any = None, reason: str = "") -> None:
        self.argument = argument
        self.expected = expected
        if reason:
            message = f"Argument {argument!r}: {reason}"
        else:
            message = (
                f"Argument {argument!r} expected {expected}, "
                f"got {_json_type_name(value)}"
            )
        super().__init__(message)


class UnsupportedReturnTypeError(DispatchError):
    kind = "UnsupportedReturnType"

    def __init__(self, path: str, value: Any, reason: str = "") -> None:
        self.path = path
        self.value_type = type(value)
        detail = reason or f"type {type(value).__name__} is not JSON-serializable"
        super().__init__(f"Cannot serialize return value at {path}: {detail}")


class ExecutionError(DispatchError):
    kind = "ExecutionError"


def _type_name(py_type: Any) -> str:
    if isinstance(py_type, type):
        return py_type.__qualname__
    return repr(py_type)


def _json_type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__
