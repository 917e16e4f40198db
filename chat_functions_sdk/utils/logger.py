"""
SDK 日志配置工具。

只配置 ``chat_functions_sdk`` 这一棵 Logger 树，不改动宿主应用的根 Logger。
级别与日志文件取自 FunctionsConfig。
"""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

from chat_functions_sdk.core.config import FunctionsConfig

LOGGER_NAME = "chat_functions_sdk"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"

# Marks handlers installed here so repeated calls replace them
_HANDLER_FLAG = "_chat_functions_handler"


def setup_logging(
    config: Optional[FunctionsConfig] = None,
    level: int = logging.INFO,
    console: bool = True,
) -> logging.Logger:
    """
    初始化 SDK 日志。

    Args:
        config: 读取 ``debug`` / ``log_file``；为空时使用默认配置。
        level: 非 DEBUG 模式下的日志级别。
        console: 是否输出到终端。关闭时不安装终端 Handler，
            日志照常向上传递给宿主应用的 Handler。

    Returns:
        SDK 根 Logger 实例。
    """
    config = config or FunctionsConfig()
    if config.debug:
        level = logging.DEBUG

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    for handler in list(logger.handlers):
        if getattr(handler, _HANDLER_FLAG, False):
            logger.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT)

    if console:
        sh = logging.StreamHandler()
        sh.setFormatter(formatter)
        setattr(sh, _HANDLER_FLAG, True)
        logger.addHandler(sh)
    # Own console handler means the host's root handlers would print twice
    logger.propagate = not console

    if config.log_file:
        log_dir = os.path.dirname(config.log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        fh = RotatingFileHandler(
            config.log_file, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
        )
        fh.setFormatter(formatter)
        fh.setLevel(level)
        setattr(fh, _HANDLER_FLAG, True)
        logger.addHandler(fh)

    return logger
