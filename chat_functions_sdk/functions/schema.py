"""
Schema 生成器 — 由函数签名推导 JSON Schema 参数描述。

纯转换：输入 ``FunctionSignature``，输出 ``FunctionSchema``，
不读写任何注册表状态。
"""

from __future__ import annotations

import copy
import dataclasses
import enum
import inspect
import types
from collections import abc
from dataclasses import dataclass, field
from typing import (
    Annotated,
    Any,
    Callable,
    Dict,
    List,
    Literal,
    Optional,
    Tuple,
    Union,
    get_args,
    get_origin,
    get_type_hints,
)

from chat_functions_sdk.functions.errors import (
    SchemaCycleError,
    SchemaError,
    UnsupportedTypeError,
)

# ──────────────────────────────────────────────
# Type mapping: Python type → JSON Schema type
# ──────────────────────────────────────────────

_PY_TO_JSON_TYPE: Dict[type, str] = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
}

_UNION_TYPES: Tuple[Any, ...] = (Union,)
if hasattr(types, "UnionType"):
    _UNION_TYPES += (types.UnionType,)

_ARRAY_TYPES: Tuple[Any, ...] = (
    list,
    tuple,
    set,
    frozenset,
    abc.Sequence,
    abc.MutableSequence,
    abc.Set,
    abc.MutableSet,
)
_SET_TYPES: Tuple[Any, ...] = (set, frozenset, abc.Set, abc.MutableSet)
_MAPPING_TYPES: Tuple[Any, ...] = (dict, abc.Mapping, abc.MutableMapping)


def strip_annotated(py_type: Any) -> Any:
    """Drop ``Annotated[...]`` metadata, keeping the underlying type."""
    while get_origin(py_type) is Annotated:
        py_type = get_args(py_type)[0]
    return py_type


def annotated_description(py_type: Any) -> str:
    """Return the first string in ``Annotated[...]`` metadata, if any."""
    if get_origin(py_type) is Annotated:
        for meta in get_args(py_type)[1:]:
            if isinstance(meta, str):
                return meta
    return ""


def unwrap_optional(py_type: Any) -> Tuple[Any, bool]:
    """Split ``Optional[T]`` into ``(T, True)``.

    Unions with more than one non-None member are returned untouched so
    the caller can reject them.
    """
    py_type = strip_annotated(py_type)
    if get_origin(py_type) in _UNION_TYPES:
        members = get_args(py_type)
        args = [a for a in members if a is not type(None)]
        if len(args) == 1:
            return strip_annotated(args[0]), len(args) < len(members)
    return py_type, False


def is_enum_type(py_type: Any) -> bool:
    return isinstance(py_type, type) and issubclass(py_type, enum.Enum)


def is_typeddict_type(py_type: Any) -> bool:
    return (
        isinstance(py_type, type)
        and issubclass(py_type, dict)
        and hasattr(py_type, "__total__")
    )


def is_record_type(py_type: Any) -> bool:
    """True for structured types rendered as ``object`` with ``properties``."""
    if isinstance(py_type, type) and dataclasses.is_dataclass(py_type):
        return True
    return is_typeddict_type(py_type)


def record_fields(cls: type) -> List[Tuple[str, Any, bool]]:
    """Return ``(name, annotation, required)`` for each field of a record type.

    Raises whatever ``get_type_hints`` raises when annotations cannot be
    resolved (usually ``NameError``).
    """
    hints = get_type_hints(cls, include_extras=True)
    if dataclasses.is_dataclass(cls):
        result = []
        for f in dataclasses.fields(cls):
            if not f.init:
                continue
            required = (
                f.default is dataclasses.MISSING
                and f.default_factory is dataclasses.MISSING
            )
            result.append((f.name, hints.get(f.name, str), required))
        return result

    required_keys = getattr(cls, "__required_keys__", None)
    if required_keys is None:
        required_keys = set(hints) if cls.__total__ else set()
    return [(name, hint, name in required_keys) for name, hint in hints.items()]


def _literal_schema(values: Tuple[Any, ...], param_name: str, py_type: Any) -> Dict[str, Any]:
    if values and all(isinstance(v, bool) for v in values):
        json_type = "boolean"
    elif values and all(isinstance(v, str) for v in values):
        json_type = "string"
    elif values and all(isinstance(v, int) and not isinstance(v, bool) for v in values):
        json_type = "integer"
    else:
        raise UnsupportedTypeError(param_name, py_type, "enum values must share one primitive type")
    return {"type": json_type, "enum": list(values)}


def type_to_schema(
    py_type: Any,
    param_name: str = "value",
    _stack: Tuple[type, ...] = (),
) -> Dict[str, Any]:
    """Convert a Python type annotation to a JSON Schema fragment.

    Nested record types recurse without a depth limit; a record that
    appears inside itself raises :class:`SchemaCycleError`.

    Raises:
        UnsupportedTypeError: If the type (or a nested one) has no mapping.
        SchemaCycleError: If a record type refers back to itself.
    """
    py_type, _ = unwrap_optional(py_type)

    if py_type is inspect.Parameter.empty:
        return {"type": "string"}

    if is_enum_type(py_type):
        return _literal_schema(tuple(m.value for m in py_type), param_name, py_type)

    if get_origin(py_type) is Literal:
        return _literal_schema(get_args(py_type), param_name, py_type)

    json_type = _PY_TO_JSON_TYPE.get(py_type) if isinstance(py_type, type) else None
    if json_type is not None:
        return {"type": json_type}

    origin = get_origin(py_type)
    args = get_args(py_type)

    if py_type in _ARRAY_TYPES or origin in _ARRAY_TYPES:
        schema: Dict[str, Any] = {"type": "array"}
        item_type = None
        if origin is tuple and args:
            if len(args) == 2 and args[1] is Ellipsis:
                item_type = args[0]
            elif len(set(args)) == 1:
                item_type = args[0]
            else:
                raise UnsupportedTypeError(param_name, py_type, "heterogeneous tuple")
        elif args:
            item_type = args[0]
        if item_type is not None:
            schema["items"] = type_to_schema(item_type, f"{param_name}[]", _stack)
        if py_type in _SET_TYPES or origin in _SET_TYPES:
            schema["uniqueItems"] = True
        return schema

    if py_type in _MAPPING_TYPES or origin in _MAPPING_TYPES:
        schema = {"type": "object"}
        if args:
            key_type, value_type = args
            if unwrap_optional(key_type)[0] is not str:
                raise UnsupportedTypeError(param_name, py_type, "object keys must be str")
            schema["additionalProperties"] = type_to_schema(
                value_type, f"{param_name}{{}}", _stack
            )
        return schema

    if is_record_type(py_type):
        return _record_schema(py_type, param_name, _stack)

    raise UnsupportedTypeError(param_name, py_type)


def _record_schema(cls: type, param_name: str, _stack: Tuple[type, ...]) -> Dict[str, Any]:
    if cls in _stack:
        raise SchemaCycleError([t.__qualname__ for t in _stack] + [cls.__qualname__])
    stack = _stack + (cls,)

    try:
        fields = record_fields(cls)
    except Exception as e:
        raise UnsupportedTypeError(param_name, cls, f"unresolvable annotations: {e}") from e

    properties: Dict[str, Any] = {}
    required: List[str] = []
    for name, hint, is_required in fields:
        prop = type_to_schema(hint, f"{param_name}.{name}", stack)
        desc = annotated_description(hint)
        if desc:
            prop["description"] = desc
        properties[name] = prop
        if is_required:
            required.append(name)

    schema: Dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


# ──────────────────────────────────────────────
# Signature / schema value types
# ──────────────────────────────────────────────


@dataclass(frozen=True)
class ParamSpec:
    """One parameter of an exposed function.

    Attributes:
        name: Parameter name (also the JSON property name).
        annotation: Resolved Python type; ``str`` for unannotated parameters.
        description: Human-readable text shown to the model.
        required: False when the parameter has a default value.
        default: The default value (only meaningful when not required).
        keyword_only: Whether the implementation declares it after ``*``.
    """

    name: str
    annotation: Any = str
    description: str = ""
    required: bool = True
    default: Any = None
    keyword_only: bool = False


@dataclass(frozen=True)
class FunctionSignature:
    """Everything the generator needs to know about a callable."""

    name: str
    description: str = ""
    params: Tuple[ParamSpec, ...] = ()
    return_annotation: Any = inspect.Signature.empty
    accepts_context: bool = False


@dataclass(frozen=True)
class FunctionSchema:
    """Protocol-facing portion of a function: what the model gets to see."""

    name: str
    description: str
    parameters: Dict[str, Any] = field(hash=False)
    returns: Optional[Dict[str, Any]] = field(default=None, hash=False)

    def to_json_schema(self) -> Dict[str, Any]:
        """Export as ``{"name", "description", "parameters"}``."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": copy.deepcopy(self.parameters),
        }

    def to_openai_schema(self) -> Dict[str, Any]:
        """Export in OpenAI ``tools`` format."""
        return {
            "type": "function",
            "function": self.to_json_schema(),
        }

    def to_text(self) -> str:
        """Render as plain text, e.g. ``search(query: string, limit?: integer) -> array``."""
        props = self.parameters.get("properties", {})
        required = set(self.parameters.get("required", []))
        args = ", ".join(
            f"{name}{'' if name in required else '?'}: {prop.get('type', 'any')}"
            for name, prop in props.items()
        )
        head = f"{self.name}({args})"
        if self.returns:
            head += f" -> {self.returns.get('type', 'any')}"
        lines = [head]
        if self.description:
            lines.append(f"  {self.description}")
        for name, prop in props.items():
            if prop.get("description"):
                lines.append(f"  - {name}: {prop['description']}")
        return "\n".join(lines)


@dataclass(frozen=True)
class FunctionDescriptor:
    """Immutable bundle of a function's schema and its implementation.

    ``implementation`` is called with the decoded arguments in declaration
    order (keyword-only parameters by name). The registry never owns the
    object behind it; it belongs to the source that declared it.
    """

    schema: FunctionSchema
    signature: FunctionSignature
    implementation: Callable[..., Any] = field(compare=False, hash=False)
    is_async: bool = False

    @property
    def name(self) -> str:
        return self.schema.name

    @property
    def description(self) -> str:
        return self.schema.description


# ──────────────────────────────────────────────
# Generator
# ──────────────────────────────────────────────


def _json_default(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        value = value.value
    if isinstance(value, (str, int, float, bool)):
        return value
    return None


def _return_schema(annotation: Any) -> Optional[Dict[str, Any]]:
    if annotation is inspect.Signature.empty:
        return None
    if annotation is None or annotation is type(None):
        return {"type": "null"}
    try:
        return type_to_schema(annotation, "return")
    except SchemaError:
        # Checked again at call time against the actual value.
        return None


def generate(signature: FunctionSignature) -> FunctionSchema:
    """Build the protocol-facing schema for *signature*.

    Raises:
        SchemaError: If the function name is empty.
        UnsupportedTypeError: If a parameter type has no mapping.
        SchemaCycleError: If a parameter type is self-referential.
    """
    if not signature.name or not signature.name.strip():
        raise SchemaError("Function name must be a non-empty string")

    properties: Dict[str, Any] = {}
    required: List[str] = []

    for p in signature.params:
        prop = type_to_schema(p.annotation, p.name)
        if p.description:
            prop["description"] = p.description
        if not p.required:
            default = _json_default(p.default)
            if default is not None:
                prop["default"] = default
        properties[p.name] = prop
        if p.required:
            required.append(p.name)

    parameters: Dict[str, Any] = {
        "type": "object",
        "properties": properties,
    }
    if required:
        parameters["required"] = required

    return FunctionSchema(
        name=signature.name,
        description=signature.description,
        parameters=parameters,
        returns=_return_schema(signature.return_annotation),
    )


def collect_referenced_types(signature: FunctionSignature) -> List[type]:
    """List the record and enum classes reachable from a signature.

    Covers parameter and return annotations, nested fields included, in
    discovery order. Useful for build-time tooling that needs to know every
    class a function can receive or produce.
    """
    found: List[type] = []

    def visit(py_type: Any) -> None:
        py_type = strip_annotated(py_type)
        if isinstance(py_type, type) and (is_record_type(py_type) or is_enum_type(py_type)):
            if py_type in found:
                return
            found.append(py_type)
            if is_record_type(py_type):
                try:
                    fields = record_fields(py_type)
                except Exception:
                    return
                for _, hint, _ in fields:
                    visit(hint)
            return
        for arg in get_args(py_type):
            if arg is not Ellipsis:
                visit(arg)

    for p in signature.params:
        visit(p.annotation)
    visit(signature.return_annotation)
    return found
