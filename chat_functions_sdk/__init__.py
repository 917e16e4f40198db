"""
Chat Functions SDK — 向大模型暴露宿主函数的 function calling 核心。

发现带标记的函数、由签名生成 JSON Schema、线程安全地注册，
并把模型发起的调用（函数名 + JSON 参数）分发到对应实现。

Quick Start:
    from chat_functions_sdk import (
        CallRequest, FunctionDispatcher, FunctionRegistry, FunctionsConfig,
        chat_function, setup_logging,
    )

    config = FunctionsConfig.from_env()
    setup_logging(config)

    registry = FunctionRegistry.from_config(config)
    registry.register_source(my_service)
    registry.log_summary()

    dispatcher = FunctionDispatcher(registry, config)
    result = dispatcher.dispatch(CallRequest("get_weather", '{"city": "北京"}'))
"""

__version__ = "0.1.0"

from chat_functions_sdk.core.config import FunctionsConfig
from chat_functions_sdk.utils.logger import setup_logging
from chat_functions_sdk.functions.context import CallContext
from chat_functions_sdk.functions.dispatcher import CallRequest, CallResult, FunctionDispatcher
from chat_functions_sdk.functions.extractor import FunctionSet, chat_function, extract
from chat_functions_sdk.functions.registry import FunctionRegistry
from chat_functions_sdk.functions.schema import FunctionDescriptor, FunctionSchema, generate
from chat_functions_sdk.functions.openai_adapter import OpenAIFunctionAdapter, ToolCallResult

__all__ = [
    "FunctionsConfig",
    "setup_logging",
    "CallContext",
    "CallRequest",
    "CallResult",
    "FunctionDispatcher",
    "FunctionSet",
    "chat_function",
    "extract",
    "FunctionRegistry",
    "FunctionDescriptor",
    "FunctionSchema",
    "generate",
    "OpenAIFunctionAdapter",
    "ToolCallResult",
    "__version__",
]
