"""Output sink tests."""

from __future__ import annotations

import io
from pathlib import Path

import anyio
import pytest

from rig_supervisor.runtime.sinks import ConsoleSink, FileSink, OutputSink


async def _settle(sink: FileSink, stream: io.StringIO, expected_lines: int) -> None:
    """Wait until the follower has echoed ``expected_lines`` lines."""
    with anyio.fail_after(3):
        while stream.getvalue().count("\n") < expected_lines:
            await anyio.sleep(0.01)


class TestConsoleSink:
    """ConsoleSink 测试。"""

    def test_tags_and_flushes(self):
        stream = io.StringIO()
        sink = ConsoleSink("GPU", stream)

        sink.write_line("share accepted")
        sink.write_line("")

        assert stream.getvalue() == "[GPU] share accepted\n[GPU] \n"
        assert sink.needs_follower is False

    def test_defaults_to_stdout(self, capsys: pytest.CaptureFixture[str]):
        ConsoleSink("CPU").write_line("hashrate 1.2 kH/s")
        assert capsys.readouterr().out == "[CPU] hashrate 1.2 kH/s\n"


class TestFileSink:
    """FileSink 测试。"""

    def test_write_goes_to_file(self, tmp_path: Path):
        log = tmp_path / "cpu.log"
        sink = FileSink("CPU", log, max_bytes=1024, stream=io.StringIO())

        sink.open_run()
        sink.write_line("one")
        sink.write_line("two")
        sink.close_run()

        assert log.read_text() == "one\ntwo\n"

    def test_each_run_starts_fresh(self, tmp_path: Path):
        log = tmp_path / "cpu.log"
        sink = FileSink("CPU", log, max_bytes=1024, stream=io.StringIO())

        sink.open_run()
        sink.write_line("first run")
        sink.close_run()
        sink.open_run()
        sink.write_line("second run")
        sink.close_run()

        assert log.read_text() == "second run\n"
        assert sink.backup_path.read_text() == "first run\n"

    def test_rotates_when_full(self, tmp_path: Path):
        log = tmp_path / "cpu.log"
        sink = FileSink("CPU", log, max_bytes=10, stream=io.StringIO())

        sink.open_run()
        sink.write_line("0123456789")  # 11 bytes with newline
        sink.write_line("after")
        sink.close_run()

        assert log.read_text() == "after\n"
        assert sink.backup_path.read_text() == "0123456789\n"

    @pytest.mark.asyncio
    async def test_follow_echoes_tagged_lines(self, tmp_path: Path):
        stream = io.StringIO()
        sink = FileSink("CPU", tmp_path / "cpu.log", max_bytes=1024, stream=stream, poll_interval=0.01)

        async with anyio.create_task_group() as tg:
            tg.start_soon(sink.follow)
            sink.open_run()
            sink.write_line("alpha")
            sink.write_line("beta")
            await _settle(sink, stream, 2)
            tg.cancel_scope.cancel()

        assert stream.getvalue() == "[CPU] alpha\n[CPU] beta\n"

    @pytest.mark.asyncio
    async def test_follow_survives_restart(self, tmp_path: Path):
        """Lines from both runs are echoed once each, across the rotation."""
        stream = io.StringIO()
        sink = FileSink("CPU", tmp_path / "cpu.log", max_bytes=1024, stream=stream, poll_interval=0.01)

        async with anyio.create_task_group() as tg:
            tg.start_soon(sink.follow)
            sink.open_run()
            sink.write_line("run 1")
            await _settle(sink, stream, 1)
            sink.close_run()
            sink.open_run()
            sink.write_line("run 2")
            await _settle(sink, stream, 2)
            tg.cancel_scope.cancel()

        assert stream.getvalue() == "[CPU] run 1\n[CPU] run 2\n"

    @pytest.mark.asyncio
    async def test_follow_ignores_previous_session_log(self, tmp_path: Path):
        """A log left by an earlier invocation is not replayed."""
        log = tmp_path / "cpu.log"
        log.write_text("old session\n")
        stream = io.StringIO()
        sink = FileSink("CPU", log, max_bytes=1024, stream=stream, poll_interval=0.01)

        async with anyio.create_task_group() as tg:
            tg.start_soon(sink.follow)
            await anyio.sleep(0.05)
            sink.open_run()
            sink.write_line("new session")
            await _settle(sink, stream, 1)
            tg.cancel_scope.cancel()

        assert stream.getvalue() == "[CPU] new session\n"

    @pytest.mark.asyncio
    async def test_follow_keeps_lines_across_burst_rotations(self, tmp_path: Path):
        """Several size rotations between two polls lose no line."""
        stream = io.StringIO()
        sink = FileSink("CPU", tmp_path / "cpu.log", max_bytes=20, stream=stream, poll_interval=0.3)
        expected = [f"line-{i:04d}" for i in range(9)]

        async with anyio.create_task_group() as tg:
            tg.start_soon(sink.follow)
            await anyio.sleep(0.05)
            sink.open_run()
            for line in expected:
                sink.write_line(line)
            await _settle(sink, stream, len(expected))
            tg.cancel_scope.cancel()

        assert stream.getvalue().splitlines() == [f"[CPU] {line}" for line in expected]

    @pytest.mark.asyncio
    async def test_follow_keeps_unread_tail_of_finished_run(self, tmp_path: Path):
        """A run that ends and restarts before the next poll is still echoed."""
        stream = io.StringIO()
        sink = FileSink("CPU", tmp_path / "cpu.log", max_bytes=1024, stream=stream, poll_interval=0.3)

        async with anyio.create_task_group() as tg:
            tg.start_soon(sink.follow)
            await anyio.sleep(0.05)
            for run in range(3):
                sink.open_run()
                sink.write_line(f"run {run}")
                sink.close_run()
            await _settle(sink, stream, 3)
            tg.cancel_scope.cancel()

        assert stream.getvalue() == "[CPU] run 0\n[CPU] run 1\n[CPU] run 2\n"

    @pytest.mark.asyncio
    async def test_follow_flushes_on_cancel(self, tmp_path: Path):
        stream = io.StringIO()
        sink = FileSink("CPU", tmp_path / "cpu.log", max_bytes=1024, stream=stream, poll_interval=10)

        async with anyio.create_task_group() as tg:
            tg.start_soon(sink.follow)
            await anyio.sleep(0.05)
            sink.open_run()
            sink.write_line("last words")
            tg.cancel_scope.cancel()

        assert stream.getvalue() == "[CPU] last words\n"


class TestOutputSink:
    """OutputSink 基类测试。"""

    def test_write_line_is_abstract(self):
        with pytest.raises(TypeError):
            OutputSink()  # type: ignore[abstract]
