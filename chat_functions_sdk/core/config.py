"""
Function Calling 配置管理。

支持从环境变量 (.env) 或代码直接构造。
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

DUPLICATE_POLICIES = ("overwrite", "error")


def _to_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _to_int(value: Optional[str], default: int) -> int:
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        return default


@dataclass
class FunctionsConfig:
    """Registry / dispatcher settings."""

    # ── 注册表 ──
    duplicate_policy: str = "overwrite"  # "overwrite" | "error"

    # ── 错误返回 ──
    expose_error_details: bool = True
    max_error_length: int = 500

    # ── 调试 ──
    debug: bool = False
    log_file: str = ""

    @classmethod
    def from_env(cls, env_file: str = ".env") -> FunctionsConfig:
        """
        从 .env 文件和环境变量中加载配置。

        环境变量优先级高于 .env 文件。
        """
        load_dotenv(env_file, override=False)

        duplicate_policy = os.getenv("FUNCTIONS_DUPLICATE_POLICY", "overwrite").strip().lower()
        if duplicate_policy not in DUPLICATE_POLICIES:
            duplicate_policy = "overwrite"

        return cls(
            duplicate_policy=duplicate_policy,
            expose_error_details=_to_bool(
                os.getenv("FUNCTIONS_EXPOSE_ERROR_DETAILS"), default=True
            ),
            max_error_length=_to_int(os.getenv("FUNCTIONS_MAX_ERROR_LENGTH"), 500),
            debug=_to_bool(os.getenv("DEBUG")),
            log_file=os.getenv("LOG_FILE", "").strip(),
        )

    def summary(self) -> str:
        """返回配置摘要。"""
        return (
            f"Duplicate policy: {self.duplicate_policy}\n"
            f"Expose error details: {self.expose_error_details}\n"
            f"Max error length: {self.max_error_length}\n"
            f"Debug: {self.debug}\n"
            f"Log file: {self.log_file or '(console only)'}"
        )
