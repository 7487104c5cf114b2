"""信号管理模块。

将 OS 信号转换为监督器级别的操作：
- SIGINT / SIGTERM: 优雅退出（向所有矿工发送 SIGTERM 并等待其退出）
- 双击 SIGINT: 强制退出（SIGKILL 仍在运行的矿工）

支持的配置：
- RIG_SIGINT_DOUBLE_TAP_WINDOW: 双击退出窗口时间

矿工运行在独立的进程组中，终端的 Ctrl+C 不会直接到达矿工，
所有信号都经由这里转发。
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import time
from typing import Callable, Optional

from .config import get_config

__all__ = ["SignalManager"]

logger = logging.getLogger(__name__)


class SignalManager:
    """信号管理器。

    Example:
        ```python
        supervisor = RigSupervisor(descriptors, restart_delay=15)
        signal_manager = SignalManager(
            on_shutdown=supervisor.stop,
            on_force_exit=supervisor.kill_all,
        )

        await signal_manager.start()
        try:
            await supervisor.run()
        finally:
            await signal_manager.stop()
        ```

    Attributes:
        double_tap_window: 双击退出窗口时间（秒）
    """

    def __init__(
        self,
        on_shutdown: Optional[Callable[[], None]] = None,
        on_force_exit: Optional[Callable[[], object]] = None,
        double_tap_window: Optional[float] = None,
    ) -> None:
        """初始化信号管理器。

        Args:
            on_shutdown: 请求优雅退出时的回调函数
            on_force_exit: 双击 SIGINT 强制退出时的回调函数
            double_tap_window: 双击退出窗口时间（默认从配置读取）
        """
        self.double_tap_window = (
            double_tap_window
            if double_tap_window is not None
            else get_config().sigint_double_tap_window
        )
        self._on_shutdown = on_shutdown
        self._on_force_exit = on_force_exit

        # 内部状态
        self._last_sigint_time: float = 0.0
        self._shutdown_requested: bool = False
        self._force_exit: bool = False
        self._shutdown_event: Optional[asyncio.Event] = None
        self._original_sigint_handler = None
        self._running: bool = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def is_shutdown_requested(self) -> bool:
        """是否已请求关闭。"""
        return self._shutdown_requested

    @property
    def is_force_exit(self) -> bool:
        """是否请求强制退出（双击 SIGINT）。"""
        return self._force_exit

    async def start(self) -> None:
        """启动信号监听。

        必须在 asyncio 事件循环中调用。
        """
        if self._running:
            logger.warning("SignalManager already running")
            return

        self._loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()
        self._running = True

        if sys.platform != "win32":
            self._loop.add_signal_handler(signal.SIGINT, self._handle_sigint)
            self._loop.add_signal_handler(signal.SIGTERM, self._handle_sigterm)
            logger.debug(
                f"Signal handlers installed (double_tap_window={self.double_tap_window}s)"
            )
        else:
            self._original_sigint_handler = signal.signal(
                signal.SIGINT,
                lambda sig, frame: self._loop.call_soon_threadsafe(self._handle_sigint),
            )
            logger.debug("SIGINT handler installed on Windows")

    async def stop(self) -> None:
        """停止信号监听，恢复原始信号处理器。"""
        if not self._running:
            return

        self._running = False

        if sys.platform != "win32" and self._loop:
            try:
                self._loop.remove_signal_handler(signal.SIGINT)
                self._loop.remove_signal_handler(signal.SIGTERM)
            except (RuntimeError, ValueError) as e:
                logger.debug(f"Error removing signal handlers: {e}")
        elif sys.platform == "win32" and self._original_sigint_handler is not None:
            signal.signal(signal.SIGINT, self._original_sigint_handler)

        logger.debug("Signal handlers removed")

    async def wait_for_shutdown(self) -> None:
        """等待关闭信号。"""
        if self._shutdown_event:
            await self._shutdown_event.wait()

    def _handle_sigint(self) -> None:
        """处理 SIGINT 信号。

        - 首次：请求优雅退出
        - 在双击窗口内再次收到：强制退出
        """
        current_time = time.time()
        time_since_last = current_time - self._last_sigint_time
        self._last_sigint_time = current_time

        if self._shutdown_requested and time_since_last < self.double_tap_window:
            logger.warning("Double SIGINT detected, forcing shutdown")
            self._force_shutdown()
            return

        if self._shutdown_requested:
            logger.info(
                f"Shutdown already in progress. Press Ctrl+C again within "
                f"{self.double_tap_window}s to force exit."
            )
            return

        logger.info("SIGINT received, requesting shutdown")
        self._request_shutdown()

    def _handle_sigterm(self) -> None:
        """处理 SIGTERM 信号：始终进入优雅退出流程。"""
        logger.info("SIGTERM received, initiating graceful shutdown")
        self._request_shutdown()

    def _request_shutdown(self) -> None:
        """请求关闭。"""
        if self._shutdown_requested:
            return
        self._shutdown_requested = True

        if self._on_shutdown:
            self._on_shutdown()

        if self._shutdown_event and self._loop:
            self._loop.call_soon_threadsafe(self._shutdown_event.set)

    def _force_shutdown(self) -> None:
        """强制退出。

        设置 force_exit 标志并 SIGKILL 仍在运行的矿工。
        实际的进程退出由 main() 在清理完成后执行。
        """
        self._force_exit = True
        self._shutdown_requested = True

        if self._on_force_exit:
            self._on_force_exit()

        if self._shutdown_event and self._loop:
            self._loop.call_soon_threadsafe(self._shutdown_event.set)

    def request_graceful_shutdown(self) -> None:
        """程序化请求优雅退出。"""
        logger.info("Programmatic shutdown requested")
        self._request_shutdown()
