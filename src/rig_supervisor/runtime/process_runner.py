"""Process runner with subprocess isolation and reliable termination.

rig-supervisor runtime module

This module provides:
- Subprocess isolation (new session/process group)
- Combined stdout/stderr streaming, one decoded line at a time
- Exit code capture straight from the child
- Cancel-safe termination that always waits for the child to exit

Key design points:
- POSIX: start_new_session=True so a SIGINT on the terminal reaches only us;
  the supervisor decides when miners get signaled
- Cancellation terminates the process group, not just the main process
- With no term_timeout, shutdown waits for the child indefinitely after SIGTERM
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import anyio

__all__ = [
    "ProcessRunner",
    "ProcessSpec",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

# Bytes per read from the child's combined output
READ_CHUNK = 64 * 1024

# A partial line longer than this is delivered as-is instead of buffered further
STREAM_LIMIT = 1024 * 1024

# Seconds to wait after SIGKILL before giving up on the child
DEFAULT_KILL_TIMEOUT = 5.0

LineCallback = Callable[[str], None]


def _deliver(raw: bytes, on_line: LineCallback | None) -> None:
    if on_line:
        on_line(raw.decode("utf-8", errors="replace").rstrip("\r\n"))


def _split_lines(buffer: bytes, on_line: LineCallback | None) -> bytes:
    """Deliver every complete line in ``buffer``; return the unfinished tail.

    A tail longer than STREAM_LIMIT (progress redraws using only ``\\r``,
    binary noise) is delivered in STREAM_LIMIT pieces.
    """
    *lines, rest = buffer.split(b"\n")
    for raw in lines:
        _deliver(raw, on_line)
    while len(rest) > STREAM_LIMIT:
        _deliver(rest[:STREAM_LIMIT], on_line)
        rest = rest[STREAM_LIMIT:]
    return rest


@dataclass(frozen=True)
class ProcessSpec:
    """Specification for a subprocess to run.

    Attributes:
        argv: Command line arguments (first element is the executable)
        cwd: Working directory for the process
        env: Environment variables (None = inherit parent)
    """

    argv: list[str]
    cwd: Path
    env: Mapping[str, str] | None = None


@dataclass
class ProcessRunner:
    """Process runner with isolation and reliable termination.

    Example:
        runner = ProcessRunner()
        spec = ProcessSpec(argv=["/opt/miner", "--pool", "host:3333"], cwd=Path("/opt"))
        exit_code = await runner.run(spec, on_line=print)

    Attributes:
        term_timeout: Seconds to wait after SIGTERM before SIGKILL
            (None = wait until the child exits)
        kill_timeout: Seconds to wait after SIGKILL
    """

    term_timeout: float | None = None
    kill_timeout: float = DEFAULT_KILL_TIMEOUT

    async def run(
        self,
        spec: ProcessSpec,
        on_line: LineCallback | None = None,
        on_start: Callable[[int], None] | None = None,
    ) -> int:
        """Run subprocess to completion and return its exit code.

        This method:
        1. Starts the subprocess in an isolated process group/session
        2. Feeds each line of combined stdout/stderr to ``on_line``
        3. Waits for exit and returns the exit code
        4. On cancellation, terminates the process group and waits for it

        Args:
            spec: Process specification
            on_line: Callback for each output line (without trailing newline)
            on_start: Callback receiving the child pid once spawned

        Returns:
            The child's exit code (negative signal number if killed by a signal)

        Raises:
            FileNotFoundError / OSError: If the executable cannot be started
        """
        process: asyncio.subprocess.Process | None = None
        kwargs = self._build_subprocess_kwargs(spec)

        try:
            # The child exists once the fork returns; keep its handle even if
            # cancellation arrives mid-spawn
            with anyio.CancelScope(shield=True):
                process = await asyncio.create_subprocess_exec(
                    *spec.argv,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                    cwd=spec.cwd,
                    **kwargs,
                )

            logger.debug(
                f"Started subprocess pid={process.pid} "
                f"argv={spec.argv[0]} cwd={spec.cwd}"
            )
            if on_start:
                on_start(process.pid)

            if process.stdout:
                pending = b""
                while True:
                    chunk = await process.stdout.read(READ_CHUNK)
                    if not chunk:
                        break
                    pending = _split_lines(pending + chunk, on_line)
                if pending:
                    _deliver(pending, on_line)

            returncode = await process.wait()

            logger.debug(
                f"Subprocess completed pid={process.pid} returncode={returncode}"
            )
            return returncode

        finally:
            if process is not None and process.returncode is None:
                # Shield so a cancelled caller still waits for the child to die
                with anyio.CancelScope(shield=True):
                    await self._terminate_process(process)

    def _build_subprocess_kwargs(self, spec: ProcessSpec) -> dict[str, Any]:
        """Build platform-specific subprocess kwargs."""
        kwargs: dict[str, Any] = {}

        if spec.env is not None:
            kwargs["env"] = dict(spec.env)

        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            # POSIX: start_new_session (equivalent to setsid)
            kwargs["start_new_session"] = True

        return kwargs

    async def _terminate_process(self, process: asyncio.subprocess.Process) -> None:
        """Terminate subprocess gracefully, then forcefully if configured.

        Termination strategy:
        1. Send SIGTERM to the process group
        2. Wait up to term_timeout (or forever when it is None)
        3. If still running, send SIGKILL and wait up to kill_timeout
        """
        pid = process.pid
        logger.debug(f"Terminating subprocess pid={pid}")

        try:
            self._signal_group(process, signal.SIGTERM)

            if self.term_timeout is None:
                await process.wait()
                logger.debug(
                    f"Subprocess terminated pid={pid} returncode={process.returncode}"
                )
                return

            try:
                await asyncio.wait_for(process.wait(), timeout=self.term_timeout)
                logger.debug(
                    f"Subprocess terminated gracefully pid={pid} "
                    f"returncode={process.returncode}"
                )
                return
            except asyncio.TimeoutError:
                pass

            logger.warning(
                f"Subprocess pid={pid} ignored SIGTERM for {self.term_timeout}s, killing"
            )
            self._signal_group(process, getattr(signal, "SIGKILL", signal.SIGTERM))

            try:
                await asyncio.wait_for(process.wait(), timeout=self.kill_timeout)
                logger.debug(f"Subprocess killed pid={pid} returncode={process.returncode}")
            except asyncio.TimeoutError:
                logger.warning(f"Subprocess did not exit after kill pid={pid}")

        except ProcessLookupError:
            logger.debug(f"Subprocess already exited pid={pid}")

    def _signal_group(self, process: asyncio.subprocess.Process, sig: int) -> None:
        """Send ``sig`` to the child's process group, falling back to the child."""
        if IS_WINDOWS:
            if sig == signal.SIGTERM:
                process.terminate()
            else:
                process.kill()
            return

        try:
            pgid = os.getpgid(process.pid)
            os.killpg(pgid, sig)
            logger.debug(f"Sent {signal.Signals(sig).name} to process group pgid={pgid}")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"killpg failed, falling back to direct signal: {e}")
            process.send_signal(sig)
