"""Worker 身份解析。

操作员传入 1-3 位数字的 worker 编号，格式化为矿池使用的 worker 名称：
    "7"   -> "v07"
    "07"  -> "v007"
    "003" -> "v0003"

前导零原样保留，由操作员决定补零位数。
"""

from __future__ import annotations

import re

from .errors import ConfigurationError

__all__ = ["parse_worker_suffix", "format_worker_name", "worker_name_from_arg"]

WORKER_PREFIX = "v0"

# 只接受 ASCII 数字；str.isdigit() 会放过全角数字等
_SUFFIX_PATTERN = re.compile(r"[0-9]{1,3}")


def parse_worker_suffix(raw: str | None) -> str:
    """校验 worker 编号。

    Args:
        raw: 命令行传入的原始字符串

    Returns:
        校验通过的编号（原样返回）

    Raises:
        ConfigurationError: 缺失或不是 1-3 位数字
    """
    if raw is None or raw == "":
        raise ConfigurationError("Worker number is required (e.g. 01, 02, 03)")
    if not _SUFFIX_PATTERN.fullmatch(raw):
        raise ConfigurationError(
            f"Worker number must be 1-3 digits (e.g. 01, 2, 003), got {raw!r}"
        )
    return raw


def format_worker_name(suffix: str) -> str:
    """格式化 worker 名称。"""
    return f"{WORKER_PREFIX}{suffix}"


def worker_name_from_arg(raw: str | None) -> str:
    """校验并格式化 worker 名称。"""
    return format_worker_name(parse_worker_suffix(raw))
