"""Miner supervision.

Each miner runs in its own restart loop: launch, stream output into the sink,
wait for exit, record the exit code, sleep a fixed delay, launch again. There
is no upper bound on restarts and no backoff; transient pool outages and
permanent misconfiguration are retried the same way.

RigSupervisor runs all loops in one anyio task group. Stopping cancels the
group; every loop's ProcessRunner then signals its child and waits for it, so
run() only returns once no miner is left behind.
"""

from __future__ import annotations

import logging
import os
import signal
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import NoReturn

import anyio

from .errors import InstallError
from .runtime.process_runner import ProcessRunner, ProcessSpec
from .runtime.sinks import OutputSink

__all__ = [
    "ProcessDescriptor",
    "SupervisionState",
    "RigSupervisor",
    "check_executable",
    "run_supervised",
]

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class ProcessDescriptor:
    """What to launch and where its output goes.

    Attributes:
        name: Source tag (GPU/CPU)
        argv: Full command line, executable first
        cwd: Working directory of the miner
        sink: Output routing strategy
        worker_name: Pool worker identity (for log messages)
    """

    name: str
    argv: tuple[str, ...]
    cwd: Path
    sink: OutputSink
    worker_name: str = ""

    @property
    def executable(self) -> Path:
        return Path(self.argv[0])

    def to_spec(self) -> ProcessSpec:
        return ProcessSpec(argv=list(self.argv), cwd=self.cwd)


@dataclass
class SupervisionState:
    """Live state of one restart loop; owned and mutated by that loop only."""

    name: str
    running: bool = False
    pid: int | None = None
    last_exit_code: int | None = None
    restart_count: int = 0
    started_at: datetime | None = None

    def __repr__(self) -> str:
        status = f"running pid={self.pid}" if self.running else "stopped"
        return (
            f"SupervisionState({self.name}: {status}, "
            f"last_exit_code={self.last_exit_code}, "
            f"restarts={self.restart_count})"
        )


def check_executable(path: Path) -> None:
    """Raise InstallError unless ``path`` is an executable regular file."""
    if not path.is_file():
        raise InstallError(f"Miner binary missing: {path}")
    if not os.access(path, os.X_OK):
        raise InstallError(f"Miner binary is not executable: {path}")


async def run_supervised(
    descriptor: ProcessDescriptor,
    restart_delay: float,
    *,
    state: SupervisionState | None = None,
    runner: ProcessRunner | None = None,
    sleep: SleepFunc = anyio.sleep,
) -> NoReturn:
    """Run ``descriptor`` forever, relaunching it ``restart_delay`` seconds after each exit.

    Only returns by cancellation. A binary that vanishes or cannot be executed
    is a broken install, not a runtime failure, and raises InstallError.
    """
    if restart_delay < 0:
        raise ValueError(f"restart_delay must be non-negative, got {restart_delay}")

    state = state if state is not None else SupervisionState(descriptor.name)
    runner = runner if runner is not None else ProcessRunner()
    sink = descriptor.sink

    def _started(pid: int) -> None:
        state.pid = pid
        state.running = True
        state.started_at = datetime.now()

    while True:
        check_executable(descriptor.executable)
        logger.info(f"{descriptor.name} miner start worker {descriptor.worker_name}")

        sink.open_run()
        try:
            exit_code = await runner.run(
                descriptor.to_spec(),
                on_line=sink.write_line,
                on_start=_started,
            )
        except OSError as e:
            raise InstallError(f"Cannot launch {descriptor.executable}: {e}") from e
        finally:
            state.running = False
            state.pid = None
            sink.close_run()

        state.last_exit_code = exit_code
        logger.warning(
            f"{descriptor.name} miner exited code={exit_code}. "
            f"Restart in {restart_delay:g}s..."
        )
        await sleep(restart_delay)
        state.restart_count += 1


@dataclass
class RigSupervisor:
    """Runs one restart loop per descriptor until stopped.

    Example:
        supervisor = RigSupervisor([gpu, cpu], restart_delay=15)
        signal_manager = SignalManager(on_shutdown=supervisor.stop)
        await supervisor.run()   # returns after stop(), once both miners exited
    """

    descriptors: Sequence[ProcessDescriptor]
    restart_delay: float
    runner: ProcessRunner = field(default_factory=ProcessRunner)
    sleep: SleepFunc = anyio.sleep
    _states: dict[str, SupervisionState] = field(init=False, default_factory=dict)
    _cancel_scope: anyio.CancelScope | None = field(init=False, default=None)
    _stop_requested: bool = field(init=False, default=False)

    def __post_init__(self) -> None:
        names = [d.name for d in self.descriptors]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate descriptor names: {names}")
        self._states = {name: SupervisionState(name) for name in names}

    @property
    def is_stop_requested(self) -> bool:
        return self._stop_requested

    def status(self) -> list[SupervisionState]:
        """Snapshot of every loop's state."""
        return [replace(state) for state in self._states.values()]

    async def run(self) -> None:
        """Run all loops until stop() is called.

        Raises:
            InstallError: If a loop finds its binary broken; the other loops
                are stopped first
        """
        try:
            async with anyio.create_task_group() as tg:
                self._cancel_scope = tg.cancel_scope
                if self._stop_requested:
                    tg.cancel_scope.cancel()
                for descriptor in self.descriptors:
                    if descriptor.sink.needs_follower:
                        tg.start_soon(descriptor.sink.follow, name=f"{descriptor.name}-tail")
                    tg.start_soon(
                        self._run_loop, descriptor, name=f"{descriptor.name}-supervisor"
                    )
        except BaseExceptionGroup as eg:
            if len(eg.exceptions) == 1:
                raise eg.exceptions[0]
            raise
        finally:
            self._cancel_scope = None

        for state in self._states.values():
            logger.debug(f"Final state: {state!r}")

    async def _run_loop(self, descriptor: ProcessDescriptor) -> None:
        await run_supervised(
            descriptor,
            self.restart_delay,
            state=self._states[descriptor.name],
            runner=self.runner,
            sleep=self.sleep,
        )

    def stop(self) -> None:
        """Request shutdown: every running miner gets SIGTERM and is waited for."""
        if self._stop_requested:
            return
        self._stop_requested = True
        logger.info("Stopping miners...")
        if self._cancel_scope is not None:
            self._cancel_scope.cancel()

    def kill_all(self) -> int:
        """SIGKILL every running miner's process group.

        Used when the operator insists on exiting while a miner ignores SIGTERM.

        Returns:
            Number of process groups signaled
        """
        killed = 0
        for state in self._states.values():
            if not state.running or state.pid is None:
                continue
            try:
                os.killpg(state.pid, getattr(signal, "SIGKILL", signal.SIGTERM))
                killed += 1
                logger.warning(f"Killed {state.name} miner pid={state.pid}")
            except ProcessLookupError:
                pass
        return killed
