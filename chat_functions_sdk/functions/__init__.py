"""
Function Calling 框架 — 函数注册、schema 生成与调用分发。

提供 ``@chat_function`` 装饰器标记可暴露的函数，由 type hints 自动生成
JSON schema；``FunctionRegistry`` 统一管理，``FunctionDispatcher`` 负责执行。

Quick Start::

    from chat_functions_sdk.functions import (
        CallRequest, FunctionDispatcher, FunctionRegistry, chat_function,
    )

    class WeatherService:
        @chat_function
        def get_weather(self, city: str, unit: str = "celsius") -> str:
            \"\"\"获取指定城市的当前天气。\"\"\"
            return f"{city}: 25°C"

    registry = FunctionRegistry()
    registry.register_source(WeatherService())

    # 导出给 LLM
    tools = registry.to_openai_schema()

    # 执行
    result = FunctionDispatcher(registry).dispatch(
        CallRequest("get_weather", '{"city": "上海"}')
    )
"""

from chat_functions_sdk.functions.context import CallContext
from chat_functions_sdk.functions.dispatcher import (
    CallRequest,
    CallResult,
    FunctionDispatcher,
)
from chat_functions_sdk.functions.errors import (
    ArgumentTypeMismatchError,
    DispatchError,
    DuplicateFunctionError,
    ExecutionError,
    FunctionCallingError,
    MissingArgumentError,
    SchemaCycleError,
    SchemaError,
    UnknownFunctionError,
    UnsupportedReturnTypeError,
    UnsupportedTypeError,
)
from chat_functions_sdk.functions.extractor import (
    CandidateSource,
    ExposedMember,
    FunctionMeta,
    FunctionSet,
    chat_function,
    extract,
)
from chat_functions_sdk.functions.registry import FunctionRegistry
from chat_functions_sdk.functions.schema import (
    FunctionDescriptor,
    FunctionSchema,
    FunctionSignature,
    ParamSpec,
    collect_referenced_types,
    generate,
)

__all__ = [
    "CallContext",
    "CallRequest",
    "CallResult",
    "FunctionDispatcher",
    "FunctionRegistry",
    "CandidateSource",
    "ExposedMember",
    "FunctionMeta",
    "FunctionSet",
    "chat_function",
    "extract",
    "FunctionDescriptor",
    "FunctionSchema",
    "FunctionSignature",
    "ParamSpec",
    "collect_referenced_types",
    "generate",
    "FunctionCallingError",
    "SchemaError",
    "SchemaCycleError",
    "UnsupportedTypeError",
    "DuplicateFunctionError",
    "DispatchError",
    "UnknownFunctionError",
    "MissingArgumentError",
    "ArgumentTypeMismatchError",
    "UnsupportedReturnTypeError",
    "ExecutionError",
]
