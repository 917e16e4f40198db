"""
测试 FunctionDispatcher：参数解码、调用、结果序列化与错误转换。
"""

import json
import math
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

import pytest

from chat_functions_sdk.core.config import FunctionsConfig
from chat_functions_sdk.functions import dispatcher as dispatcher_module
from chat_functions_sdk.functions.context import CallContext
from chat_functions_sdk.functions.dispatcher import (
    CallRequest,
    CallResult,
    FunctionDispatcher,
    coerce_value,
    parse_arguments,
    to_json_value,
)
from chat_functions_sdk.functions.errors import (
    ArgumentTypeMismatchError,
    MissingArgumentError,
    UnsupportedReturnTypeError,
)
from chat_functions_sdk.functions.registry import FunctionRegistry


class Unit(Enum):
    CELSIUS = "celsius"
    FAHRENHEIT = "fahrenheit"


@dataclass
class Address:
    street: str
    city: str


@dataclass
class Order:
    order_id: str
    quantity: int
    address: Address
    notes: List[str] = field(default_factory=list)


@dataclass
class Window:
    start: int
    end: int

    def __post_init__(self):
        if self.end < self.start:
            raise RuntimeError("end before start")


def _dispatcher(*functions, config=None):
    registry = FunctionRegistry()
    for fn in functions:
        registry.register_function(fn)
    return FunctionDispatcher(registry, config)


# ══════════════════════════════════════════════
# Round trip
# ══════════════════════════════════════════════


class TestRoundTrip:
    """正常调用：参数解码 → 调用 → 序列化。"""

    def test_positional_arguments(self):
        calls = []

        def lookup(name: str, limit: int) -> str:
            calls.append((name, limit))
            return "done"

        result = _dispatcher(lookup).dispatch(CallRequest("lookup", '{"name": "a", "limit": 5}'))
        assert result == CallResult.success("done")
        assert calls == [("a", 5)]
        assert type(calls[0][1]) is int

    @pytest.mark.parametrize(
        "value",
        ["text", 5, 2.5, True, False, None, [1, "a", None], {"k": [1, 2.5]}],
    )
    def test_json_primitive_returns(self, value):
        def echo() -> object:
            return value

        result = _dispatcher(echo).dispatch(CallRequest("echo", "{}"))
        assert result.ok is True
        assert result.value == value
        assert json.loads(result.to_json())["value"] == value

    def test_defaults_filled(self):
        def greet(name: str, greeting: str = "Hello") -> str:
            return f"{greeting} {name}"

        result = _dispatcher(greet).dispatch(CallRequest("greet", '{"name": "World"}'))
        assert result.value == "Hello World"

    def test_null_for_optional_uses_default(self):
        def page(size: int = 20) -> int:
            return size

        result = _dispatcher(page).dispatch(CallRequest("page", '{"size": null}'))
        assert result.value == 20

    def test_null_for_nullable(self):
        def note(text: Optional[str] = "x") -> Optional[str]:
            return text

        result = _dispatcher(note).dispatch(CallRequest("note", '{"text": null}'))
        assert result.ok
        assert result.value is None

    def test_keyword_only_arguments(self):
        def scale(x: float, *, factor: float = 2.0) -> float:
            return x * factor

        result = _dispatcher(scale).dispatch(CallRequest("scale", '{"x": 3, "factor": 0.5}'))
        assert result.value == 1.5

    def test_empty_arguments(self):
        def ping() -> str:
            return "pong"

        dispatcher = _dispatcher(ping)
        for raw in ("", "   ", None, "{}"):
            assert dispatcher.dispatch(CallRequest("ping", raw)).value == "pong"

    def test_mapping_arguments_accepted(self):
        def add(a: int, b: int) -> int:
            return a + b

        result = _dispatcher(add).dispatch(CallRequest("add", {"a": 3, "b": 4}))
        assert result.value == 7

    def test_unknown_arguments_ignored(self):
        def one(a: int) -> int:
            return a

        result = _dispatcher(one).dispatch(CallRequest("one", '{"a": 1, "zzz": 2}'))
        assert result.value == 1

    def test_nested_record_argument(self):
        received = []

        def place(order: Order) -> str:
            received.append(order)
            return order.address.city

        payload = {
            "order": {
                "order_id": "A1",
                "quantity": 2,
                "address": {"street": "Main 1", "city": "Berlin"},
            }
        }
        result = _dispatcher(place).dispatch(CallRequest("place", json.dumps(payload)))
        assert result.value == "Berlin"
        assert received == [Order("A1", 2, Address("Main 1", "Berlin"))]

    def test_containers(self):
        def shape(pairs: List[Tuple[int, ...]], tags: Set[str], weights: Dict[str, float]) -> int:
            assert isinstance(pairs[0], tuple)
            assert isinstance(tags, set)
            assert weights == {"a": 1.0}
            return len(pairs)

        payload = '{"pairs": [[1, 2], [3]], "tags": ["x", "x"], "weights": {"a": 1}}'
        result = _dispatcher(shape).dispatch(CallRequest("shape", payload))
        assert result.ok, result.message
        assert result.value == 2


# ══════════════════════════════════════════════
# Coercion
# ══════════════════════════════════════════════


class TestCoercion:
    """JSON → Python 类型转换。"""

    def test_integral_float_narrows_to_int(self):
        assert coerce_value(5.0, int) == 5
        assert type(coerce_value(5.0, int)) is int

    def test_int_widens_to_float(self):
        assert type(coerce_value(3, float)) is float

    @pytest.mark.parametrize(
        "value,py_type",
        [
            ("5", int),
            (5.5, int),
            (True, int),
            (1, bool),
            ("x", float),
            (3, str),
            ({"a": 1}, list),
            ([1], dict),
            (None, int),
        ],
    )
    def test_mismatch(self, value, py_type):
        with pytest.raises(ArgumentTypeMismatchError):
            coerce_value(value, py_type, "arg")

    def test_float_out_of_range(self):
        with pytest.raises(ArgumentTypeMismatchError, match="out of range"):
            coerce_value(int("9" * 400), float, "x")

    @pytest.mark.parametrize("value", [math.nan, math.inf, -math.inf])
    def test_non_finite_float_rejected(self, value):
        with pytest.raises(ArgumentTypeMismatchError, match="non-finite"):
            coerce_value(value, float, "x")

    def test_record_validator_error(self):
        with pytest.raises(ArgumentTypeMismatchError, match="end before start"):
            coerce_value({"start": 5, "end": 1}, Window, "w")

    def test_enum_by_value_and_name(self):
        assert coerce_value("celsius", Unit) is Unit.CELSIUS
        assert coerce_value("FAHRENHEIT", Unit) is Unit.FAHRENHEIT

    def test_enum_invalid(self):
        with pytest.raises(ArgumentTypeMismatchError, match="kelvin"):
            coerce_value("kelvin", Unit, "unit")

    def test_list_item_path_in_error(self):
        with pytest.raises(ArgumentTypeMismatchError, match=r"ids\[1\]"):
            coerce_value([1, "two"], List[int], "ids")

    def test_missing_nested_field(self):
        with pytest.raises(MissingArgumentError) as exc_info:
            coerce_value({"street": "Main 1"}, Address, "address")
        assert exc_info.value.argument == "address.city"


class TestParseArguments:
    """原始参数 JSON 解析。"""

    def test_invalid_json(self):
        with pytest.raises(ArgumentTypeMismatchError, match="invalid JSON"):
            parse_arguments('{"a": ')

    def test_non_object_json(self):
        with pytest.raises(ArgumentTypeMismatchError, match="got array"):
            parse_arguments("[1, 2]")

    def test_bytes(self):
        assert parse_arguments(b'{"a": 1}') == {"a": 1}

    @pytest.mark.skipif(
        not hasattr(sys, "get_int_max_str_digits"), reason="no integer digit limit"
    )
    def test_integer_digit_limit(self):
        with pytest.raises(ArgumentTypeMismatchError, match="unreadable JSON"):
            parse_arguments('{"n": ' + "1" * 5000 + "}")

    def test_nan_literal_parsed(self):
        assert math.isnan(parse_arguments('{"x": NaN}')["x"])


# ══════════════════════════════════════════════
# Failures
# ══════════════════════════════════════════════


class TestFailures:
    """错误转换为结构化 CallResult，从不抛出。"""

    def test_unknown_function(self):
        result = _dispatcher().dispatch(CallRequest("nonexistent", "{}"))
        assert result.ok is False
        assert result.error_kind == "UnknownFunction"
        assert "nonexistent" in result.message

    def test_missing_argument_names_field(self):
        def lookup(name: str, limit: int) -> str:
            return name

        result = _dispatcher(lookup).dispatch(CallRequest("lookup", '{"name": "a"}'))
        assert result.error_kind == "MissingArgument"
        assert "'limit'" in result.message

    def test_missing_nested_argument(self):
        def place(order: Order) -> str:
            return order.order_id

        payload = '{"order": {"order_id": "A1", "quantity": 1, "address": {"street": "s"}}}'
        result = _dispatcher(place).dispatch(CallRequest("place", payload))
        assert result.error_kind == "MissingArgument"
        assert "order.address.city" in result.message

    def test_type_mismatch(self):
        def lookup(name: str, limit: int) -> str:
            return name

        result = _dispatcher(lookup).dispatch(CallRequest("lookup", '{"name": "a", "limit": "five"}'))
        assert result.error_kind == "ArgumentTypeMismatch"
        assert "limit" in result.message

    def test_invalid_json_is_type_mismatch(self):
        def ping() -> str:
            return "pong"

        result = _dispatcher(ping).dispatch(CallRequest("ping", "not json"))
        assert result.error_kind == "ArgumentTypeMismatch"

    def test_execution_error_wrapped(self):
        def explode(x: int) -> int:
            raise ValueError("boom")

        result = _dispatcher(explode).dispatch(CallRequest("explode", '{"x": 1}'))
        assert result.ok is False
        assert result.error_kind == "ExecutionError"
        assert result.message == "ValueError: boom"
        assert "Traceback" not in result.message

    def test_execution_error_details_hidden(self):
        def explode() -> None:
            raise RuntimeError("secret connection string")

        config = FunctionsConfig(expose_error_details=False)
        result = _dispatcher(explode, config=config).dispatch(CallRequest("explode"))
        assert result.error_kind == "ExecutionError"
        assert "secret" not in result.message
        assert "explode" in result.message

    def test_error_message_truncated(self):
        def explode() -> None:
            raise ValueError("x" * 1000)

        config = FunctionsConfig(max_error_length=50)
        result = _dispatcher(explode, config=config).dispatch(CallRequest("explode"))
        assert len(result.message) == 50
        assert result.message.endswith("...")

    def test_unsupported_return_type(self):
        def make() -> object:
            return object()

        result = _dispatcher(make).dispatch(CallRequest("make"))
        assert result.error_kind == "UnsupportedReturnType"
        assert "object" in result.message

    def test_non_finite_return(self):
        def nan() -> float:
            return math.nan

        result = _dispatcher(nan).dispatch(CallRequest("nan"))
        assert result.error_kind == "UnsupportedReturnType"

    @pytest.mark.parametrize(
        "name,arguments,expected_kind",
        [
            ("scale", '{"x": ' + "9" * 400 + "}", "ArgumentTypeMismatch"),
            ("scale", '{"x": ' + "1" * 5000 + "}", "ArgumentTypeMismatch"),
            ("scale", '{"x": NaN}', "ArgumentTypeMismatch"),
            ("scale", '{"x": -Infinity}', "ArgumentTypeMismatch"),
            ("span", '{"w": {"start": 5, "end": 1}}', "ArgumentTypeMismatch"),
        ],
    )
    def test_bad_values_never_raise(self, name, arguments, expected_kind):
        def scale(x: float) -> float:
            return x

        def span(w: Window) -> int:
            return w.end - w.start

        result = _dispatcher(scale, span).dispatch(CallRequest(name, arguments))
        assert isinstance(result, CallResult)
        assert not result.ok
        assert result.error_kind == expected_kind

    def test_record_validator_message(self):
        def span(w: Window) -> int:
            return w.end - w.start

        result = _dispatcher(span).dispatch(CallRequest("span", '{"w": {"start": 5, "end": 1}}'))
        assert result.error_kind == "ArgumentTypeMismatch"
        assert "end before start" in result.message

    def test_unexpected_decode_error(self, monkeypatch, caplog):
        def ping(x: int) -> int:
            return x

        def broken(signature, arguments):
            raise RuntimeError("decoder bug")

        dispatcher = _dispatcher(ping)
        monkeypatch.setattr(dispatcher_module, "decode_arguments", broken)
        result = dispatcher.dispatch(CallRequest("ping", '{"x": 1}'))
        assert isinstance(result, CallResult)
        assert result.error_kind == "ArgumentTypeMismatch"
        assert "RuntimeError" in result.message
        assert "decoder bug" in caplog.text

    @pytest.mark.asyncio
    async def test_unexpected_decode_error_async(self, monkeypatch):
        def ping(x: int) -> int:
            return x

        def broken(signature, arguments):
            raise RuntimeError("decoder bug")

        dispatcher = _dispatcher(ping)
        monkeypatch.setattr(dispatcher_module, "decode_arguments", broken)
        result = await dispatcher.dispatch_async(CallRequest("ping", '{"x": 1}'))
        assert result.error_kind == "ArgumentTypeMismatch"

    def test_deeply_nested_return(self):
        def deep() -> list:
            value = []
            for _ in range(100000):
                value = [value]
            return value

        result = _dispatcher(deep).dispatch(CallRequest("deep"))
        assert result.error_kind == "UnsupportedReturnType"

    def test_failure_payload(self):
        result = CallResult.failure("UnknownFunction", "Function not found: 'x'")
        assert result.to_dict() == {
            "ok": False,
            "error": {"kind": "UnknownFunction", "message": "Function not found: 'x'"},
        }
        assert json.loads(result.to_content()) == {
            "error": {"kind": "UnknownFunction", "message": "Function not found: 'x'"}
        }


# ══════════════════════════════════════════════
# Serialization
# ══════════════════════════════════════════════


class TestSerialization:
    """返回值 → JSON。"""

    def test_dataclass_and_enum(self):
        value = to_json_value(Order("A1", 1, Address("s", "c"), notes=["n"]))
        assert value == {
            "order_id": "A1",
            "quantity": 1,
            "address": {"street": "s", "city": "c"},
            "notes": ["n"],
        }
        assert to_json_value([Unit.CELSIUS]) == ["celsius"]

    def test_tuple_to_list(self):
        assert to_json_value((1, 2)) == [1, 2]

    def test_shared_reference_is_not_a_cycle(self):
        shared = {"a": 1}
        assert to_json_value([shared, shared]) == [{"a": 1}, {"a": 1}]

    def test_cycle_rejected(self):
        loop = []
        loop.append(loop)
        with pytest.raises(UnsupportedReturnTypeError, match="circular"):
            to_json_value(loop)

    def test_non_string_keys_rejected(self):
        with pytest.raises(UnsupportedReturnTypeError):
            to_json_value({1: "a"})

    def test_to_content(self):
        assert CallResult.success("plain").to_content() == "plain"
        assert CallResult.success({"a": "中"}).to_content() == '{"a": "中"}'


# ══════════════════════════════════════════════
# Context & async
# ══════════════════════════════════════════════


class TestContextAndAsync:
    """CallContext 注入与异步实现。"""

    def test_context_injected(self):
        def whoami(ctx: CallContext, msg: str) -> str:
            return f"{ctx.function_name}/{ctx.call_id}: {msg}"

        result = _dispatcher(whoami).dispatch(CallRequest("whoami", '{"msg": "hi"}', call_id="c1"))
        assert result.value == "whoami/c1: hi"

    def test_custom_context(self):
        def read(ctx: CallContext) -> str:
            return f"{ctx.function_name}: {ctx.extra.get('key', 'none')}"

        ctx = CallContext(extra={"key": "value"})
        result = _dispatcher(read).dispatch(CallRequest("read", call_id="c9"), ctx)
        assert result.value == "read: value"
        assert ctx.function_name == ""
        assert ctx.call_id == ""

    def test_shared_context_across_functions(self):
        def first(ctx: CallContext) -> str:
            return f"{ctx.function_name}/{ctx.call_id}"

        def second(ctx: CallContext) -> str:
            return f"{ctx.function_name}/{ctx.call_id}"

        dispatcher = _dispatcher(first, second)
        ctx = CallContext()
        a = dispatcher.dispatch(CallRequest("first", call_id="c1"), ctx)
        b = dispatcher.dispatch(CallRequest("second", call_id="c2"), ctx)
        assert (a.value, b.value) == ("first/c1", "second/c2")

    def test_async_function_in_sync_dispatch(self):
        async def fetch(url: str) -> str:
            return f"fetched {url}"

        result = _dispatcher(fetch).dispatch(CallRequest("fetch", '{"url": "u"}'))
        assert result.value == "fetched u"

    @pytest.mark.asyncio
    async def test_dispatch_async(self):
        async def add(a: int, b: int) -> int:
            return a + b

        def multiply(a: int, b: int) -> int:
            return a * b

        dispatcher = _dispatcher(add, multiply)
        assert (await dispatcher.dispatch_async(CallRequest("add", '{"a": 3, "b": 5}'))).value == 8
        assert (await dispatcher.dispatch_async(CallRequest("multiply", '{"a": 3, "b": 4}'))).value == 12

    @pytest.mark.asyncio
    async def test_dispatch_async_failures(self):
        async def explode() -> None:
            raise KeyError("missing")

        dispatcher = _dispatcher(explode)
        result = await dispatcher.dispatch_async(CallRequest("explode"))
        assert result.error_kind == "ExecutionError"
        assert result.message.startswith("KeyError")
        result = await dispatcher.dispatch_async(CallRequest("nope"))
        assert result.error_kind == "UnknownFunction"

    @pytest.mark.asyncio
    async def test_sync_dispatch_inside_running_loop(self):
        async def fetch() -> str:
            return "x"

        result = _dispatcher(fetch).dispatch(CallRequest("fetch"))
        assert result.error_kind == "ExecutionError"
        assert "dispatch_async" in result.message
