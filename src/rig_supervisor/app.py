"""rig-supervisor 应用入口。

生命周期：
    VALIDATING_INPUT -> INSTALLING(GPU) -> INSTALLING(CPU)
    -> RUNNING(两个并行的重启循环) -> STOPPING -> STOPPED

RUNNING 没有自然终点，只有收到 SIGINT/SIGTERM 才进入 STOPPING。

退出码：
    0   收到信号后正常清理完成
    1   参数校验失败或安装失败
    130 双击 Ctrl+C 强制退出
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from . import __version__
from .config import Config, MinerTarget, OutputMode, get_config
from .errors import BinaryNotFoundError, ConfigurationError, InstallError
from .identity import worker_name_from_arg
from .install import Installer
from .runtime.process_runner import ProcessRunner
from .runtime.sinks import ConsoleSink, FileSink, OutputSink
from .signal_manager import SignalManager
from .supervisor import ProcessDescriptor, RigSupervisor

__all__ = ["run_rig", "build_descriptors", "cli", "main"]

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_FORCED = 130  # 128 + SIGINT(2)


def _build_sink(target: MinerTarget, config: Config) -> OutputSink:
    """根据输出模式创建 sink。"""
    if target.output is OutputMode.FILE:
        log_path = config.target_dir(target) / f"{target.subdir}.log"
        return FileSink(target.tag, log_path, max_bytes=config.log_max_bytes)
    return ConsoleSink(target.tag)


def build_descriptors(
    config: Config,
    binaries: dict[str, Path],
    worker_name: str,
) -> list[ProcessDescriptor]:
    """为每个矿工创建进程描述。

    Args:
        config: 配置
        binaries: tag -> 已解析的可执行文件路径
        worker_name: worker 名称
    """
    descriptors = []
    for target in config.targets:
        binary = binaries[target.tag]
        descriptors.append(
            ProcessDescriptor(
                name=target.tag,
                argv=tuple(target.build_argv(binary, worker_name)),
                cwd=binary.parent,
                sink=_build_sink(target, config),
                worker_name=worker_name,
            )
        )
    return descriptors


async def install_all(config: Config, installer: Installer | None = None) -> dict[str, Path]:
    """依次安装 GPU 和 CPU 矿工。"""
    installer = installer or Installer()
    binaries: dict[str, Path] = {}
    try:
        for target in config.targets:
            binaries[target.tag] = await installer.install(target, config.target_dir(target))
    finally:
        await installer.close()
    return binaries


async def run_rig(
    worker_name: str,
    config: Config | None = None,
    installer: Installer | None = None,
) -> int:
    """安装并运行两个矿工，直到收到关闭信号。

    Returns:
        进程退出码
    """
    config = config or get_config()
    logger.info(f"Starting rig supervisor {__version__}: worker={worker_name} {config!r}")

    binaries = await install_all(config, installer)

    supervisor = RigSupervisor(
        build_descriptors(config, binaries, worker_name),
        restart_delay=config.restart_delay,
        runner=ProcessRunner(term_timeout=config.stop_timeout),
    )
    signal_manager = SignalManager(
        on_shutdown=supervisor.stop,
        on_force_exit=supervisor.kill_all,
        double_tap_window=config.sigint_double_tap_window,
    )

    await signal_manager.start()
    try:
        logger.info("Starting both miners...")
        await supervisor.run()
    finally:
        await signal_manager.stop()

    logger.info("Stopped.")
    if signal_manager.is_force_exit:
        logger.warning("Force exit requested, terminating with exit code 130")
        return EXIT_FORCED
    return EXIT_OK


def configure_logging(config: Config) -> None:
    """配置日志输出。"""
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        # LOG_DEBUG 模式：输出到临时文件
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        # 默认模式：输出到 stderr，矿工输出走 stdout
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%H:%M:%S",
            )
        )
        log_handlers.append(stderr_handler)
        log_level = logging.INFO

    # root logger（第三方库）为 WARNING，减少噪音
    logging.basicConfig(level=logging.WARNING, handlers=log_handlers)
    # 只对 rig_supervisor 命名空间启用详细日志
    logging.getLogger("rig_supervisor").setLevel(log_level)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rig-supervisor",
        description="Install and supervise the GPU and CPU miners for one worker.",
    )
    # 可选位置参数：缺失时由 identity 校验给出统一的诊断和退出码 1
    parser.add_argument("worker", nargs="?", help="worker number, 1-3 digits (e.g. 01, 2, 003)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def cli(argv: list[str] | None = None) -> int:
    """命令行入口，返回退出码。"""
    args = _build_parser().parse_args(argv)
    config = get_config()
    configure_logging(config)

    try:
        worker_name = worker_name_from_arg(args.worker)
    except ConfigurationError as e:
        logger.error(str(e))
        return EXIT_FAILURE

    try:
        return asyncio.run(run_rig(worker_name, config))
    except BinaryNotFoundError as e:
        logger.error(f"{e}. Files in archive:\n{e.format_listing()}")
        return EXIT_FAILURE
    except InstallError as e:
        logger.error(str(e))
        return EXIT_FAILURE
    except KeyboardInterrupt:
        # 下载期间信号管理器尚未安装，Ctrl+C 以 KeyboardInterrupt 形式到达
        logger.warning("Interrupted during install")
        return EXIT_FORCED


def main() -> None:
    """主入口点。"""
    sys.exit(cli())


if __name__ == "__main__":
    main()
