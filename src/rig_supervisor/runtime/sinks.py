"""Output sinks for supervised miner processes.

A sink receives every output line of one miner. Two routing strategies:

- ConsoleSink: prefix each line with ``[TAG]`` and flush immediately, so the
  output of concurrent miners interleaves line by line.
- FileSink: write raw lines to a log file that is rotated on every launch and
  when it grows past ``max_bytes``; ``follow()`` tails it to the console with
  the same ``[TAG]`` prefix.
"""

from __future__ import annotations

import logging
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from typing import IO, BinaryIO, TextIO

import anyio

__all__ = ["OutputSink", "ConsoleSink", "FileSink"]

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.5


def _emit(stream: TextIO | None, tag: str, line: str) -> None:
    out = stream if stream is not None else sys.stdout
    out.write(f"[{tag}] {line}\n")
    out.flush()


class OutputSink(ABC):
    """Base output sink; subclasses must implement write_line."""

    tag: str

    #: True if the sink needs ``follow()`` running alongside the miner
    needs_follower: bool = False

    def open_run(self) -> None:
        """Called before each launch of the miner."""

    @abstractmethod
    def write_line(self, line: str) -> None:
        """Handle one output line of the miner (without newline)."""
        ...

    def close_run(self) -> None:
        """Called after each exit of the miner."""

    async def follow(self) -> None:
        """Stream the sink's content to the console until cancelled."""


class ConsoleSink(OutputSink):
    """Tag lines and write them straight to the console."""

    def __init__(self, tag: str, stream: TextIO | None = None) -> None:
        self.tag = tag
        self._stream = stream

    def write_line(self, line: str) -> None:
        _emit(self._stream, self.tag, line)


class FileSink(OutputSink):
    """Write lines to a rotating log file and tail it to the console.

    The follower records how far it has read the current file. When the
    writer retires a file (new launch or size limit) it first keeps the
    unread remainder in a backlog, so every line reaches the console exactly
    once however many rotations happen between two polls.

    Attributes:
        path: Current log file; the previous one is kept as ``<path>.1``
        max_bytes: Size at which the current file is rotated mid-run
    """

    needs_follower = True

    def __init__(
        self,
        tag: str,
        path: Path,
        max_bytes: int,
        stream: TextIO | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self.tag = tag
        self.path = path
        self.max_bytes = max_bytes
        self._stream = stream
        self._poll_interval = poll_interval
        self._fh: IO[str] | None = None
        self._written = 0
        # bumped whenever a fresh file replaces the current one
        self._epoch = 0
        # follower progress: epoch of the file being read and bytes consumed
        self._following = False
        self._follow_epoch = 0
        self._follow_pos = 0
        self._backlog: list[bytes] = []

    @property
    def backup_path(self) -> Path:
        return self.path.with_name(self.path.name + ".1")

    def _retire_current(self) -> None:
        """Save what the follower has not read yet, then move the file to ``.1``."""
        if self._following and self._epoch > 0 and self.path.exists():
            start = self._follow_pos if self._follow_epoch == self._epoch else 0
            with open(self.path, "rb") as fh:
                fh.seek(start)
                unread = fh.read()
            if unread:
                self._backlog.append(unread)
        if self.path.exists() and self.path.stat().st_size > 0:
            self.path.replace(self.backup_path)

    def _open_fresh(self) -> IO[str]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._retire_current()
        self._fh = open(self.path, "w", encoding="utf-8")
        self._written = 0
        self._epoch += 1
        return self._fh

    def open_run(self) -> None:
        self.close_run()
        self._open_fresh()

    def write_line(self, line: str) -> None:
        fh = self._fh if self._fh is not None else self._open_fresh()
        data = line + "\n"
        fh.write(data)
        fh.flush()
        self._written += len(data.encode("utf-8"))
        if self._written >= self.max_bytes:
            logger.debug(f"Rotating {self.path} after {self._written} bytes")
            self.close_run()
            self._open_fresh()

    def close_run(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None

    def _emit_lines(self, data: bytes, final: bool = False) -> bytes:
        """Emit complete lines in ``data``; return the unfinished tail."""
        *lines, rest = data.split(b"\n")
        for raw in lines:
            _emit(self._stream, self.tag, raw.decode("utf-8", errors="replace").rstrip("\r"))
        if final and rest:
            _emit(self._stream, self.tag, rest.decode("utf-8", errors="replace").rstrip("\r"))
            return b""
        return rest

    def _read_new(self, fh: BinaryIO, pending: bytes) -> bytes:
        try:
            size = self.path.stat().st_size
        except FileNotFoundError:
            size = fh.tell()
        if size < fh.tell():
            # truncated from outside
            fh.seek(0)
            pending = b""
        data = fh.read()
        self._follow_pos = fh.tell()
        return self._emit_lines(pending + data)

    def _catch_up(
        self, fh: BinaryIO | None, pending: bytes
    ) -> tuple[BinaryIO | None, bytes]:
        """Emit the backlog and whatever the current file gained since last time."""
        while self._backlog:
            pending = self._emit_lines(pending + self._backlog.pop(0))

        if self._follow_epoch != self._epoch:
            # the file we were reading was retired into the backlog
            if fh is not None:
                fh.close()
                fh = None
            self._follow_epoch = self._epoch
            self._follow_pos = 0

        if fh is None and self._epoch > 0 and self.path.exists():
            fh = open(self.path, "rb")
            fh.seek(self._follow_pos)

        if fh is not None:
            pending = self._read_new(fh, pending)
        return fh, pending

    async def follow(self) -> None:
        """Tail the log file, following rotation and external truncation."""
        fh: BinaryIO | None = None
        pending = b""
        self._following = True
        # only files this sink opened are tailed, never an older session's log
        self._follow_epoch = self._epoch
        self._follow_pos = 0
        try:
            while True:
                fh, pending = self._catch_up(fh, pending)
                await anyio.sleep(self._poll_interval)
        finally:
            fh, pending = self._catch_up(fh, pending)
            self._following = False
            if fh is not None:
                fh.close()
            self._emit_lines(pending, final=True)
