"""RIG 环境变量配置管理。

所有环境变量都是可选的，未设置时使用下面的生产部署参数。

环境变量:
    RIG_WORKDIR: 工作目录根路径
        - 默认 ~/work，下面分 gpu/ 和 cpu/ 两个子目录

    RIG_RESTART_DELAY: 矿工进程退出后到重启之间的等待时间（秒）
        - 默认 15，必须为非负数，无效值回退到默认值

    RIG_STOP_TIMEOUT: 发送 SIGTERM 后等待多久升级为 SIGKILL（秒）
        - 未设置 = 无限等待子进程退出 (默认)

    RIG_GPU_OUTPUT / RIG_CPU_OUTPUT: 输出路由模式
        - console = 带标签交错输出到控制台 (默认)
        - file = 写入轮转日志文件并 tail 到控制台

    RIG_LOG_MAX_BYTES: file 模式下日志文件的轮转阈值（字节）
        - 默认 10 MiB

    RIG_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)

    RIG_SIGINT_DOUBLE_TAP_WINDOW: 双击退出窗口时间（秒）
        - 默认 1.0 秒
        - 在此时间窗口内第二次 Ctrl+C 将强制退出

    RIG_GPU_WALLET / RIG_GPU_STRATUM_SERVER / RIG_GPU_STRATUM_PORT: GPU 矿池参数
    RIG_CPU_WALLET / RIG_CPU_POOL / RIG_CPU_ALGO: CPU 矿池参数
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "Config",
    "MinerTarget",
    "OutputMode",
    "load_config",
    "get_config",
    "reload_config",
]

DEFAULT_RESTART_DELAY = 15.0
DEFAULT_LOG_MAX_BYTES = 10 * 1024 * 1024

# GPU 默认参数
GPU_MINER_URL = "https://dl.jetskipool.ai/vecnoskiminerv4-hive.tar.gz"
GPU_BINARY_NAME = "vecnoski-miner"
GPU_WALLET = "vecno:qpdenm809vmq54r0vlcsxcqwd7ttgyqzawwd0xcnfz0ugsf6gpp45qywtr2hf"
GPU_STRATUM_SERVER = "vecnopool.de"
GPU_STRATUM_PORT = "6969"

# CPU 默认参数
CPU_MINER_URL = (
    "https://github.com/doktor83/SRBMiner-Multi/releases/download/3.1.1/"
    "SRBMiner-Multi-3-1-1-Linux.tar.gz"
)
CPU_BINARY_NAME = "SRBMiner-MULTI"
CPU_WALLET = "0x4f752c9f474da78330b7c92e45217f0234004862"
CPU_POOL = "eu.0xpool.io:3333"  # SRBMiner 需要 host:port 格式
CPU_ALGO = "randomx"


class OutputMode(Enum):
    """矿工输出路由模式。

    - CONSOLE: 每行加标签后直接输出到控制台
    - FILE: 写入日志文件，再 tail 到控制台
    """

    CONSOLE = "console"
    FILE = "file"

    @classmethod
    def from_string(cls, value: str) -> "OutputMode":
        """从字符串解析模式，无效值返回 CONSOLE。"""
        value = value.lower().strip()
        for mode in cls:
            if mode.value == value:
                return mode
        return cls.CONSOLE


class MinerTarget(BaseModel):
    """单个矿工的安装与启动描述。

    Attributes:
        tag: 输出标签（GPU/CPU）
        subdir: 工作目录下的子目录名
        url: 发布归档下载地址
        binary_name: 归档内预期的可执行文件名
        args: 固定参数（矿池、钱包、算法）
        worker_flag: 传递 worker 名称的参数名
        output: 输出路由模式
    """

    model_config = ConfigDict(frozen=True)

    tag: str
    subdir: str
    url: str
    binary_name: str
    args: tuple[str, ...] = Field(default_factory=tuple)
    worker_flag: str
    output: OutputMode = OutputMode.CONSOLE

    @property
    def archive_name(self) -> str:
        """归档文件名（取 URL 最后一段）。"""
        return self.url.rstrip("/").rsplit("/", 1)[-1]

    def build_argv(self, binary: Path | str, worker_name: str) -> list[str]:
        """生成完整的命令行。"""
        return [str(binary), *self.args, self.worker_flag, worker_name]


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_non_negative(value: str | None, default: float) -> float:
    """解析非负浮点数，无效值返回默认值。"""
    if not value:
        return default
    try:
        number = float(value)
    except ValueError:
        return default
    if number < 0:
        return default
    return number


def _parse_stop_timeout(value: str | None) -> float | None:
    """解析停止超时，未设置或无效返回 None（无限等待）。"""
    if not value:
        return None
    try:
        timeout = float(value)
    except ValueError:
        return None
    return timeout if timeout > 0 else None


def _parse_double_tap_window(value: str | None) -> float:
    """解析双击窗口时间环境变量。"""
    if not value:
        return 1.0
    try:
        window = float(value)
        return max(0.1, min(window, 10.0))  # 限制在 0.1-10 秒范围
    except ValueError:
        return 1.0


def _parse_max_bytes(value: str | None) -> int:
    """解析日志轮转阈值。"""
    if not value:
        return DEFAULT_LOG_MAX_BYTES
    try:
        size = int(value)
    except ValueError:
        return DEFAULT_LOG_MAX_BYTES
    return size if size > 0 else DEFAULT_LOG_MAX_BYTES


def _default_workdir() -> Path:
    return Path.home() / "work"


def _gpu_target() -> MinerTarget:
    return MinerTarget(
        tag="GPU",
        subdir="gpu",
        url=GPU_MINER_URL,
        binary_name=GPU_BINARY_NAME,
        args=(
            "--mining-address", os.environ.get("RIG_GPU_WALLET") or GPU_WALLET,
            "--stratum-server", os.environ.get("RIG_GPU_STRATUM_SERVER") or GPU_STRATUM_SERVER,
            "--stratum-port", os.environ.get("RIG_GPU_STRATUM_PORT") or GPU_STRATUM_PORT,
        ),
        worker_flag="--stratum-worker",
        output=OutputMode.from_string(os.environ.get("RIG_GPU_OUTPUT", "")),
    )


def _cpu_target() -> MinerTarget:
    return MinerTarget(
        tag="CPU",
        subdir="cpu",
        url=CPU_MINER_URL,
        binary_name=CPU_BINARY_NAME,
        args=(
            "--algorithm", os.environ.get("RIG_CPU_ALGO") or CPU_ALGO,
            "--pool", os.environ.get("RIG_CPU_POOL") or CPU_POOL,
            "--wallet", os.environ.get("RIG_CPU_WALLET") or CPU_WALLET,
        ),
        worker_flag="--worker",
        output=OutputMode.from_string(os.environ.get("RIG_CPU_OUTPUT", "")),
    )


@dataclass
class Config:
    """RIG 配置。

    Attributes:
        workdir: 工作目录根路径
        restart_delay: 重启等待时间（秒）
        stop_timeout: SIGTERM 后升级为 SIGKILL 的等待时间，None 表示无限等待
        log_max_bytes: file 模式日志轮转阈值
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
        sigint_double_tap_window: 双击退出窗口时间（秒）
        gpu: GPU 矿工描述
        cpu: CPU 矿工描述
    """

    workdir: Path = field(default_factory=_default_workdir)
    restart_delay: float = DEFAULT_RESTART_DELAY
    stop_timeout: float | None = None
    log_max_bytes: int = DEFAULT_LOG_MAX_BYTES
    log_debug: bool = False
    log_file: str | None = None
    sigint_double_tap_window: float = 1.0
    gpu: MinerTarget = field(default_factory=_gpu_target)
    cpu: MinerTarget = field(default_factory=_cpu_target)

    @property
    def targets(self) -> tuple[MinerTarget, MinerTarget]:
        """按安装顺序返回矿工描述（先 GPU 后 CPU）。"""
        return (self.gpu, self.cpu)

    def target_dir(self, target: MinerTarget) -> Path:
        """矿工的工作子目录。"""
        return self.workdir / target.subdir

    def __repr__(self) -> str:
        return (
            f"Config(workdir={self.workdir}, "
            f"restart_delay={self.restart_delay}, "
            f"stop_timeout={self.stop_timeout}, "
            f"gpu_output={self.gpu.output.value}, "
            f"cpu_output={self.cpu.output.value}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file}, "
            f"sigint_double_tap_window={self.sigint_double_tap_window})"
        )


def _generate_log_file_path() -> str:
    """生成日志文件路径。

    Returns:
        临时目录下的日志文件绝对路径
    """
    log_dir = Path(tempfile.gettempdir()) / "rig-supervisor"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"rig_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """从环境变量加载配置。"""
    log_debug = _parse_bool(os.environ.get("RIG_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    raw_workdir = os.environ.get("RIG_WORKDIR", "").strip()
    workdir = Path(raw_workdir).expanduser() if raw_workdir else _default_workdir()

    return Config(
        workdir=workdir,
        restart_delay=_parse_non_negative(
            os.environ.get("RIG_RESTART_DELAY"), DEFAULT_RESTART_DELAY
        ),
        stop_timeout=_parse_stop_timeout(os.environ.get("RIG_STOP_TIMEOUT")),
        log_max_bytes=_parse_max_bytes(os.environ.get("RIG_LOG_MAX_BYTES")),
        log_debug=log_debug,
        log_file=log_file,
        sigint_double_tap_window=_parse_double_tap_window(
            os.environ.get("RIG_SIGINT_DOUBLE_TAP_WINDOW")
        ),
        gpu=_gpu_target(),
        cpu=_cpu_target(),
    )


# 全局配置实例（延迟加载）
_config: Config | None = None


def get_config() -> Config:
    """获取全局配置实例。"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """重新加载配置（用于测试）。"""
    global _config
    _config = load_config()
    return _config
