"""rig-supervisor 异常类。

错误分类：
- ConfigurationError: 命令行参数错误，致命，不重试
- InstallError: 下载/解压/定位二进制失败，致命，不重试
- 运行时错误（矿工进程退出）不是异常，由重启循环处理
"""

from __future__ import annotations

from pathlib import Path

__all__ = [
    "RigError",
    "ConfigurationError",
    "InstallError",
    "DownloadError",
    "BinaryNotFoundError",
]


class RigError(Exception):
    """rig-supervisor 基础异常。"""
    pass


class ConfigurationError(RigError):
    """配置错误（如无效的 worker 编号）。"""
    pass


class InstallError(RigError):
    """安装步骤失败（下载、解压）。"""
    pass


class DownloadError(InstallError):
    """归档下载失败。

    Attributes:
        url: 下载地址
        status_code: HTTP 状态码（网络错误时为 0）
        message: 错误消息
    """

    def __init__(self, url: str, message: str, status_code: int = 0) -> None:
        self.url = url
        self.status_code = status_code
        self.message = message
        super().__init__(f"[{status_code}] {message} ({url})")


class BinaryNotFoundError(InstallError):
    """归档中找不到预期的二进制文件。

    Attributes:
        binary_name: 预期的文件名
        search_root: 搜索的根目录
        listing: 解压目录中的文件列表（用于诊断）
    """

    def __init__(self, binary_name: str, search_root: Path, listing: list[Path]) -> None:
        self.binary_name = binary_name
        self.search_root = search_root
        self.listing = listing
        super().__init__(f"Binary '{binary_name}' not found under {search_root}")

    def format_listing(self) -> str:
        """格式化文件列表，每行一个 `  - path`。"""
        if not self.listing:
            return "  (no files)"
        return "\n".join(f"  - {path}" for path in self.listing)
