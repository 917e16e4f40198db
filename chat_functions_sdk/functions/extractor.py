"""
Function 抽取器 — 从候选源中发现可暴露的函数并构建描述符。

候选源可以是：

- 带有 ``@chat_function`` 标记成员的对象实例、类或模块；
- 实现了 ``list_exposable_members()`` 的对象（例如 ``FunctionSet``）；
- 一组可调用对象（list / tuple / set）。

单个成员的 schema 推导失败只会跳过该成员并记录 warning，
不会中断同一候选源其余成员的抽取。
"""

from __future__ import annotations

import inspect
import logging
import re
import types
from dataclasses import dataclass, field
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    runtime_checkable,
    get_type_hints,
)

from chat_functions_sdk.functions.context import CallContext
from chat_functions_sdk.functions.errors import SchemaError, UnsupportedTypeError
from chat_functions_sdk.functions.schema import (
    FunctionDescriptor,
    FunctionSignature,
    ParamSpec,
    annotated_description,
    generate,
    strip_annotated,
)

logger = logging.getLogger("chat_functions_sdk.functions")

FUNCTION_MARKER = "__chat_function__"


# ──────────────────────────────────────────────
# Declaration: @chat_function
# ──────────────────────────────────────────────


@dataclass(frozen=True)
class FunctionMeta:
    """Metadata attached to a member by :func:`chat_function`.

    Attributes:
        name: Protocol name; falls back to the member's own name.
        description: Function description; falls back to the docstring.
        params: Per-parameter descriptions, keyed by parameter name.
    """

    name: Optional[str] = None
    description: Optional[str] = None
    params: Dict[str, str] = field(default_factory=dict, hash=False)


def _unwrap(obj: Any) -> Any:
    if isinstance(obj, (staticmethod, classmethod)):
        return obj.__func__
    return obj


def get_function_meta(obj: Any) -> Optional[FunctionMeta]:
    """Return the :class:`FunctionMeta` attached to *obj*, or None."""
    target = getattr(_unwrap(obj), "__func__", _unwrap(obj))
    meta = getattr(target, FUNCTION_MARKER, None)
    return meta if isinstance(meta, FunctionMeta) else None


def chat_function(
    fn: Optional[Callable] = None,
    *,
    name: Optional[str] = None,
    description: Optional[str] = None,
    params: Optional[Dict[str, str]] = None,
) -> Any:
    """Mark a function or method as exposable to the model.

    The decorated object is returned unchanged, so methods keep working as
    methods and are bound to their instance at extraction time::

        class WeatherService:
            @chat_function
            def get_weather(self, city: str, unit: str = "celsius") -> str:
                \"\"\"Get the current weather for a city.\"\"\"

            @chat_function(name="forecast", params={"days": "Number of days"})
            def get_forecast(self, city: str, days: int = 3) -> list: ...
    """

    def decorator(func: Any) -> Any:
        setattr(
            _unwrap(func),
            FUNCTION_MARKER,
            FunctionMeta(name=name, description=description, params=dict(params or {})),
        )
        return func

    if fn is not None:
        return decorator(fn)
    return decorator


# ──────────────────────────────────────────────
# Candidate sources
# ──────────────────────────────────────────────


@dataclass(frozen=True)
class ExposedMember:
    """A callable found on a candidate source, already bound to it."""

    target: Callable[..., Any] = field(compare=False)
    meta: FunctionMeta = field(default_factory=FunctionMeta)


@runtime_checkable
class CandidateSource(Protocol):
    """Anything that can list its exposable members explicitly."""

    def list_exposable_members(self) -> List[ExposedMember]: ...


class FunctionSet:
    """Explicit, builder-style candidate source.

    Usage::

        functions = FunctionSet("billing")
        functions.add(get_invoice, description="Fetch an invoice by id")

        @functions.function(name="refund")
        def issue_refund(invoice_id: str, amount: float) -> dict: ...
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._members: List[ExposedMember] = []

    def add(
        self,
        fn: Callable[..., Any],
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> FunctionSet:
        """Add a callable; explicit arguments override decorator metadata."""
        self._members.append(
            ExposedMember(fn, _merge_meta(get_function_meta(fn), name, description, params))
        )
        return self

    def function(
        self,
        fn: Optional[Callable] = None,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Any:
        """Decorator form of :meth:`add`; returns the function unchanged."""

        def decorator(func: Callable) -> Callable:
            self.add(func, name=name, description=description, params=params)
            return func

        if fn is not None:
            return decorator(fn)
        return decorator

    def list_exposable_members(self) -> List[ExposedMember]:
        return list(self._members)

    def __len__(self) -> int:
        return len(self._members)

    def __repr__(self) -> str:
        return f"FunctionSet({self.name!r}, {len(self._members)} functions)"


def _merge_meta(
    meta: Optional[FunctionMeta],
    name: Optional[str],
    description: Optional[str],
    params: Optional[Dict[str, str]],
) -> FunctionMeta:
    base = meta or FunctionMeta()
    return FunctionMeta(
        name=name or base.name,
        description=description or base.description,
        params={**base.params, **(params or {})},
    )


def source_label(source: Any) -> str:
    """Short human-readable label for log messages."""
    if isinstance(source, types.ModuleType):
        return f"module {source.__name__}"
    if isinstance(source, FunctionSet):
        return repr(source)
    if isinstance(source, (list, tuple, set, frozenset)):
        return f"{type(source).__name__} of {len(source)} callables"
    if inspect.isclass(source):
        return f"class {source.__qualname__}"
    return f"{type(source).__qualname__} instance"


def exposable_members(source: Any) -> List[ExposedMember]:
    """List the exposable members of *source*.

    Objects and modules are scanned for ``@chat_function`` markers in
    attribute-name order; collections of callables expose every item.
    """
    if isinstance(source, CandidateSource) and not inspect.isclass(source):
        return list(source.list_exposable_members())

    if isinstance(source, (list, tuple, set, frozenset)):
        return [
            ExposedMember(fn, get_function_meta(fn) or FunctionMeta())
            for fn in source
            if callable(fn)
        ]

    members: List[ExposedMember] = []
    for attr_name in dir(source):
        if attr_name.startswith("__"):
            continue
        try:
            raw = inspect.getattr_static(source, attr_name)
        except AttributeError:
            continue
        meta = get_function_meta(raw)
        if meta is None:
            continue
        if inspect.isclass(source) and inspect.isfunction(raw):
            logger.warning(
                "Skipping %r on %s: instance methods need an instance",
                attr_name, source_label(source),
            )
            continue
        members.append(ExposedMember(getattr(source, attr_name), meta))
    return members


# ──────────────────────────────────────────────
# Signature derivation
# ──────────────────────────────────────────────

_SECTION_RE = re.compile(
    r"^(Args|Arguments|Parameters|Params|Returns?|Raises|Yields?|Examples?|Notes?|Attributes)\s*:\s*$",
    re.IGNORECASE,
)
_ARG_RE = re.compile(r"^\*{0,2}(\w+)\s*(?:\([^)]*\))?\s*:\s*(.*)$")
_ARG_SECTIONS = {"args", "arguments", "parameters", "params"}


def _parse_docstring_args(docstring: str) -> Dict[str, str]:
    """Extract parameter descriptions from a Google-style ``Args:`` section."""
    descriptions: Dict[str, str] = {}
    in_args = False
    arg_indent: Optional[int] = None
    current = ""

    for line in docstring.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        indent = len(line) - len(line.lstrip())

        if _SECTION_RE.match(stripped) and (arg_indent is None or indent < arg_indent):
            in_args = stripped.rstrip(": ").lower() in _ARG_SECTIONS
            arg_indent = None
            current = ""
            continue
        if not in_args:
            continue

        if arg_indent is None:
            arg_indent = indent
        if indent < arg_indent:
            in_args = False
            continue

        match = _ARG_RE.match(stripped)
        if indent == arg_indent and match:
            current = match.group(1)
            descriptions[current] = match.group(2).strip()
        elif current:
            # Continuation line
            descriptions[current] = f"{descriptions[current]} {stripped}".strip()

    return descriptions


def _callable_name(fn: Any) -> str:
    return getattr(fn, "__name__", None) or type(fn).__name__


def derive_signature(member: ExposedMember) -> FunctionSignature:
    """Build a :class:`FunctionSignature` from a member's signature and docs.

    Parameter descriptions come from, in order: explicit metadata,
    ``Annotated[T, "..."]``, then the docstring ``Args:`` section.

    Raises:
        UnsupportedTypeError: For variadic parameters or a misplaced
            ``CallContext`` parameter.
        ValueError / TypeError: If ``inspect.signature`` cannot read *fn*.
    """
    fn = member.target
    meta = member.meta
    sig = inspect.signature(fn)

    try:
        hints = get_type_hints(getattr(fn, "__func__", fn), include_extras=True)
    except Exception:
        hints = {}

    docstring = inspect.getdoc(fn) or ""
    description = meta.description or ""
    if not description and docstring:
        description = docstring.split("\n")[0].strip()
    arg_descs = _parse_docstring_args(docstring)

    params: List[ParamSpec] = []
    accepts_context = False
    for param_name, param in sig.parameters.items():
        if param_name in ("self", "cls"):
            continue
        annotation = hints.get(param_name, param.annotation)

        if strip_annotated(annotation) is CallContext:
            if params or accepts_context:
                raise UnsupportedTypeError(
                    param_name, annotation, "CallContext must be the first parameter"
                )
            accepts_context = True
            continue

        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            raise UnsupportedTypeError(param_name, annotation, "variadic parameters are not supported")

        if annotation is inspect.Parameter.empty:
            annotation = str
        has_default = param.default is not inspect.Parameter.empty
        params.append(
            ParamSpec(
                name=param_name,
                annotation=annotation,
                description=(
                    meta.params.get(param_name)
                    or annotated_description(annotation)
                    or arg_descs.get(param_name, "")
                ),
                required=not has_default,
                default=param.default if has_default else None,
                keyword_only=param.kind is inspect.Parameter.KEYWORD_ONLY,
            )
        )

    return FunctionSignature(
        name=meta.name or _callable_name(fn),
        description=description,
        params=tuple(params),
        return_annotation=hints.get("return", sig.return_annotation),
        accepts_context=accepts_context,
    )


def _is_async(fn: Any) -> bool:
    if inspect.iscoroutinefunction(fn):
        return True
    call = getattr(fn, "__call__", None)
    return call is not None and inspect.iscoroutinefunction(call)


def build_descriptor(
    fn: Callable[..., Any],
    meta: Optional[FunctionMeta] = None,
    *,
    name: Optional[str] = None,
    description: Optional[str] = None,
    params: Optional[Dict[str, str]] = None,
) -> FunctionDescriptor:
    """Build a complete descriptor for a single callable.

    Raises:
        SchemaError: If no schema can be generated for *fn*.
    """
    meta = _merge_meta(meta or get_function_meta(fn), name, description, params)
    signature = derive_signature(ExposedMember(fn, meta))
    return FunctionDescriptor(
        schema=generate(signature),
        signature=signature,
        implementation=fn,
        is_async=_is_async(fn),
    )


# ──────────────────────────────────────────────
# Extraction
# ──────────────────────────────────────────────


def extract(source: Any) -> Dict[str, FunctionDescriptor]:
    """Extract every exposable function of *source* as ``name -> descriptor``.

    Members whose schema cannot be derived are skipped with a warning;
    a source without exposable members yields an empty dict.
    """
    functions: Dict[str, FunctionDescriptor] = {}

    for member in exposable_members(source):
        label = member.meta.name or _callable_name(member.target)
        try:
            descriptor = build_descriptor(member.target, member.meta)
        except (SchemaError, ValueError, TypeError) as e:
            logger.warning("Skipping function %r on %s: %s", label, source_label(source), e)
            continue

        if descriptor.name in functions:
            logger.warning(
                "Function %r declared twice on %s, keeping the last one",
                descriptor.name, source_label(source),
            )
        functions[descriptor.name] = descriptor

    return functions
