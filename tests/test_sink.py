"""Tests for the rotating file sink (state machine and façade)."""

import asyncio
import gzip
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path

import pytest

from rotating_log_sink.sink import RotatingFileSink, RotationInProgressError, SinkState

UTC = timezone.utc


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _sink(tmp_path: Path, **kwargs) -> RotatingFileSink:
    kwargs.setdefault("count", 2)
    kwargs.setdefault("period", "daily")
    return RotatingFileSink(path=str(tmp_path / "app.log"), **kwargs)


async def _start_rotation(sink: RotatingFileSink) -> asyncio.Task:
    """Begin a rotation and return once it is suspended mid-flight."""
    task = asyncio.create_task(sink.rotate())
    await asyncio.sleep(0)
    assert sink.state is SinkState.ROTATING
    return task


class TestConstruction:
    """Validation happens before anything touches the filesystem."""

    @pytest.mark.asyncio
    async def test_negative_count_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError):
            _sink(tmp_path, count=-1)
        assert not (tmp_path / "app.log").exists()

    @pytest.mark.asyncio
    async def test_bad_period_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="Invalid period"):
            _sink(tmp_path, period="every-tuesday")
        assert not (tmp_path / "app.log").exists()

    @pytest.mark.asyncio
    async def test_opens_file_and_schedules(self, tmp_path: Path) -> None:
        clock = FakeClock(datetime(2024, 6, 1, 10, 30, tzinfo=UTC))
        sink = _sink(tmp_path, period="hourly", clock=clock)
        try:
            assert (tmp_path / "app.log").exists()
            assert sink.state is SinkState.IDLE
            assert sink.next_rotate_at == datetime(2024, 6, 1, 11, tzinfo=UTC)
            assert sink.scheduler.armed
        finally:
            sink.end()

    def test_requires_event_loop(self, tmp_path: Path) -> None:
        with pytest.raises(RuntimeError):
            _sink(tmp_path)


class TestWrite:
    """Write path while idle and after close."""

    @pytest.mark.asyncio
    async def test_idle_write_appends(self, tmp_path: Path) -> None:
        sink = _sink(tmp_path)
        assert sink.write(b"one\n") is True
        assert sink.write("two\n") is True
        sink.end()
        assert (tmp_path / "app.log").read_bytes() == b"one\ntwo\n"

    @pytest.mark.asyncio
    async def test_appends_to_existing_file(self, tmp_path: Path) -> None:
        (tmp_path / "app.log").write_bytes(b"old\n")
        sink = _sink(tmp_path)
        sink.write(b"new\n")
        sink.end()
        assert (tmp_path / "app.log").read_bytes() == b"old\nnew\n"

    @pytest.mark.asyncio
    async def test_write_after_end_raises(self, tmp_path: Path) -> None:
        sink = _sink(tmp_path)
        sink.end()
        assert sink.closed
        with pytest.raises(ValueError):
            sink.write(b"late\n")

    @pytest.mark.asyncio
    async def test_buffered_until_flush(self, tmp_path: Path) -> None:
        sink = _sink(tmp_path, flush_every_n=3)
        sink.write(b"a")
        sink.write(b"b")
        assert (tmp_path / "app.log").read_bytes() == b""
        sink.write(b"c")
        assert (tmp_path / "app.log").read_bytes() == b"abc"
        sink.end()


class TestRotation:
    """Rotation sequence, queueing and retention."""

    @pytest.mark.asyncio
    async def test_sparse_chain_scenario(self, tmp_path: Path) -> None:
        """count=2, only ``.1`` exists: the chain advances by one, no ``.3``."""
        (tmp_path / "app.log.1").write_bytes(b"older\n")
        sink = _sink(tmp_path, count=2)
        sink.write(b"current\n")

        await sink.rotate()
        sink.end()

        assert (tmp_path / "app.log").read_bytes() == b""
        assert (tmp_path / "app.log.1").read_bytes() == b"current\n"
        assert (tmp_path / "app.log.2").read_bytes() == b"older\n"
        assert not (tmp_path / "app.log.3").exists()

    @pytest.mark.asyncio
    async def test_zero_count_deletes_previous(self, tmp_path: Path) -> None:
        """count=0 keeps nothing but a fresh live file."""
        sink = _sink(tmp_path, count=0)
        sink.write(b"discard me\n")

        await sink.rotate()
        sink.end()

        assert [p.name for p in tmp_path.iterdir()] == ["app.log"]
        assert (tmp_path / "app.log").read_bytes() == b""

    @pytest.mark.asyncio
    async def test_chain_never_exceeds_count(self, tmp_path: Path) -> None:
        """After many rotations exactly ``count`` backups remain, newest first."""
        sink = _sink(tmp_path, count=2)
        for i in range(5):
            sink.write(f"gen{i}\n".encode())
            await sink.rotate()
        sink.end()

        names = sorted(p.name for p in tmp_path.iterdir())
        assert names == ["app.log", "app.log.1", "app.log.2"]
        assert (tmp_path / "app.log.1").read_bytes() == b"gen4\n"
        assert (tmp_path / "app.log.2").read_bytes() == b"gen3\n"

    @pytest.mark.asyncio
    async def test_writes_queued_during_rotation(self, tmp_path: Path) -> None:
        """Writes during rotation return False and land in the new file in order."""
        sink = _sink(tmp_path)
        sink.write(b"before\n")

        task = await _start_rotation(sink)
        assert sink.write(b"q1\n") is False
        assert sink.write(b"q2\n") is False
        assert sink.pending == 2
        await task

        assert sink.state is SinkState.IDLE
        assert sink.pending == 0
        assert sink.write(b"after\n") is True
        sink.end()

        assert (tmp_path / "app.log").read_bytes() == b"q1\nq2\nafter\n"
        assert (tmp_path / "app.log.1").read_bytes() == b"before\n"

    @pytest.mark.asyncio
    async def test_drain_notified_once_per_rotation(self, tmp_path: Path) -> None:
        sink = _sink(tmp_path)
        drains = []
        sink.events.on("drain", lambda: drains.append(True))

        await sink.rotate()
        await sink.rotate()
        sink.end()

        assert drains == [True, True]

    @pytest.mark.asyncio
    async def test_concurrent_rotation_refused(self, tmp_path: Path) -> None:
        """A second rotation while one is in flight is a hard error."""
        sink = _sink(tmp_path)
        task = await _start_rotation(sink)

        with pytest.raises(RotationInProgressError):
            await sink.rotate()

        await task
        assert sink.state is SinkState.IDLE
        sink.end()

    @pytest.mark.asyncio
    async def test_missing_backups_are_not_errors(self, tmp_path: Path) -> None:
        """Rotating an empty chain only produces debug notifications."""
        sink = _sink(tmp_path, count=3)
        errors, debugs = [], []
        sink.events.on("error", errors.append)
        sink.events.on("debug", debugs.append)

        await sink.rotate()
        sink.end()

        assert errors == []
        assert debugs


class TestCompression:
    """gzip handling inside a rotation."""

    @pytest.mark.asyncio
    async def test_gzip_chain(self, tmp_path: Path) -> None:
        sink = _sink(tmp_path, count=2, gzip=True)
        sink.write(b"first\n")
        await sink.rotate()
        sink.write(b"second\n")
        await sink.rotate()
        sink.end()

        assert not (tmp_path / "app.log.gz").exists()
        with gzip.open(tmp_path / "app.log.gz.1", "rb") as fh:
            assert fh.read() == b"second\n"
        with gzip.open(tmp_path / "app.log.gz.2", "rb") as fh:
            assert fh.read() == b"first\n"
        assert (tmp_path / "app.log").read_bytes() == b""

    @pytest.mark.asyncio
    async def test_compression_failure_falls_back(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """A failed gzip reports an error and shifts the plain file instead."""
        async def broken(src: str, dst: str) -> str:
            raise OSError(28, "No space left on device")

        monkeypatch.setattr("rotating_log_sink.sink.gzip_file_async", broken)

        sink = _sink(tmp_path, count=2, gzip=True)
        errors = []
        sink.events.on("error", errors.append)
        sink.write(b"keep me\n")

        await sink.rotate()
        sink.write(b"still writable\n")
        sink.end()

        assert len(errors) == 1
        assert (tmp_path / "app.log.1").read_bytes() == b"keep me\n"
        assert not list(tmp_path.glob("*.gz*"))
        assert (tmp_path / "app.log").read_bytes() == b"still writable\n"

    @pytest.mark.asyncio
    async def test_zero_count_skips_compression(self, tmp_path: Path) -> None:
        sink = _sink(tmp_path, count=0, gzip=True)
        sink.write(b"x\n")
        await sink.rotate()
        sink.end()
        assert [p.name for p in tmp_path.iterdir()] == ["app.log"]


class TestRenameFailure:
    """The sink stays writable when the retention shift breaks."""

    @pytest.mark.asyncio
    async def test_partial_shift_still_reopens(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def refuse(src, dst):
            raise PermissionError(13, "Permission denied", src)

        sink = _sink(tmp_path, count=2)
        errors = []
        sink.events.on("error", errors.append)
        sink.write(b"data\n")

        task = await _start_rotation(sink)
        monkeypatch.setattr("rotating_log_sink.retention.os.replace", refuse)
        sink.write(b"queued\n")
        await task
        monkeypatch.undo()

        assert len(errors) == 1
        assert sink.state is SinkState.IDLE
        assert sink.write(b"more\n") is True
        sink.end()
        # the head could not move, so the reopened file appends to it
        assert (tmp_path / "app.log").read_bytes() == b"data\nqueued\nmore\n"


class TestLifecycle:
    """end/destroy while a rotation is in flight, and scheduler-driven runs."""

    @pytest.mark.asyncio
    async def test_end_during_rotation_keeps_queued(self, tmp_path: Path) -> None:
        sink = _sink(tmp_path)
        task = await _start_rotation(sink)
        sink.write(b"queued\n")
        sink.end()
        await task

        assert sink.closed
        assert not sink.scheduler.armed
        assert (tmp_path / "app.log").read_bytes() == b"queued\n"

    @pytest.mark.asyncio
    async def test_destroy_during_rotation_drops_queued(self, tmp_path: Path) -> None:
        sink = _sink(tmp_path)
        task = await _start_rotation(sink)
        sink.write(b"queued\n")
        sink.destroy()
        await task

        assert (tmp_path / "app.log").read_bytes() == b""

    @pytest.mark.asyncio
    async def test_destroy_soon_closes(self, tmp_path: Path) -> None:
        sink = _sink(tmp_path)
        sink.write(b"x\n")
        sink.destroy_soon()
        assert sink.closed
        assert (tmp_path / "app.log").read_bytes() == b"x\n"

    @pytest.mark.asyncio
    async def test_scheduler_triggers_rotation(self, tmp_path: Path) -> None:
        """Reaching the boundary rotates and re-arms for the next one."""
        clock = FakeClock(datetime(2024, 6, 1, 10, 59, 59, tzinfo=UTC))
        sink = _sink(tmp_path, period="hourly", clock=clock, max_delay=0.01)
        drained = asyncio.Event()
        sink.events.on("drain", drained.set)
        sink.write(b"hour ten\n")

        await asyncio.sleep(0.05)
        assert not drained.is_set()

        clock.now = datetime(2024, 6, 1, 11, 0, 0, tzinfo=UTC)
        await asyncio.wait_for(drained.wait(), timeout=2.0)
        await sink.wait_rotation()

        assert (tmp_path / "app.log.1").read_bytes() == b"hour ten\n"
        assert sink.next_rotate_at == datetime(2024, 6, 1, 12, tzinfo=UTC)
        assert sink.scheduler.armed
        sink.end()

    @pytest.mark.asyncio
    async def test_boundary_after_end_does_nothing(self, tmp_path: Path) -> None:
        clock = FakeClock(datetime(2024, 6, 1, 10, 59, 59, tzinfo=UTC))
        sink = _sink(tmp_path, period="hourly", clock=clock, max_delay=0.01)
        sink.write(b"x\n")
        sink.end()

        clock.now = datetime(2024, 6, 1, 11, 0, 0, tzinfo=UTC)
        await asyncio.sleep(0.05)

        assert sink.state is SinkState.IDLE
        assert not (tmp_path / "app.log.1").exists()

    @pytest.mark.asyncio
    async def test_rotate_after_end_raises(self, tmp_path: Path) -> None:
        sink = _sink(tmp_path)
        sink.write(b"x\n")
        sink.end()

        with pytest.raises(ValueError):
            await sink.rotate()
        assert not (tmp_path / "app.log.1").exists()
        assert (tmp_path / "app.log").read_bytes() == b"x\n"

    @pytest.mark.asyncio
    async def test_clock_jump_rotates_once(self, tmp_path: Path) -> None:
        """Boundaries missed during a clock jump do not evict real backups."""
        (tmp_path / "app.log.1").write_bytes(b"yesterday\n")
        clock = FakeClock(datetime(2024, 6, 1, 10, 59, 59, tzinfo=UTC))
        sink = _sink(tmp_path, period="hourly", clock=clock, max_delay=0.01)
        drains = []
        sink.events.on("drain", lambda: drains.append(True))
        sink.write(b"real data\n")

        clock.now = datetime(2024, 6, 1, 15, 0, 30, tzinfo=UTC)
        await asyncio.sleep(0.1)
        await sink.wait_rotation()
        sink.end()

        assert drains == [True]
        assert sink.next_rotate_at == datetime(2024, 6, 1, 16, tzinfo=UTC)
        assert (tmp_path / "app.log.1").read_bytes() == b"real data\n"
        assert (tmp_path / "app.log.2").read_bytes() == b"yesterday\n"


class TestReopenFailure:
    """A live file that cannot be reopened leaves the sink idle and recoverable."""

    @pytest.mark.asyncio
    async def test_manual_rotation_reports_and_recovers(self, tmp_path: Path) -> None:
        logs = tmp_path / "logs"
        logs.mkdir()
        sink = RotatingFileSink(path=str(logs / "app.log"), count=2)
        errors = []
        sink.events.on("error", errors.append)
        sink.write(b"before\n")

        shutil.rmtree(logs)
        await sink.rotate()

        assert sink.state is SinkState.IDLE
        assert isinstance(errors[0], FileNotFoundError)
        assert sink.write(b"queued\n") is False
        assert sink.pending == 1

        logs.mkdir()
        assert sink.write(b"after\n") is True
        assert sink.pending == 0
        sink.end()
        assert (logs / "app.log").read_bytes() == b"queued\nafter\n"

    @pytest.mark.asyncio
    async def test_timer_rotation_reports_and_recovers(self, tmp_path: Path) -> None:
        """A failed reopen inside a scheduled rotation does not escape the task."""
        logs = tmp_path / "logs"
        logs.mkdir()
        clock = FakeClock(datetime(2024, 6, 1, 10, 59, 59, tzinfo=UTC))
        sink = RotatingFileSink(
            path=str(logs / "app.log"), count=2, period="hourly", clock=clock, max_delay=0.01
        )
        errors = []
        sink.events.on("error", errors.append)
        drained = asyncio.Event()
        sink.events.on("drain", drained.set)

        shutil.rmtree(logs)
        clock.now = datetime(2024, 6, 1, 11, 0, 0, tzinfo=UTC)
        await asyncio.wait_for(drained.wait(), timeout=2.0)
        await sink.wait_rotation()

        assert sink.state is SinkState.IDLE
        assert errors
        assert sink.scheduler.armed

        logs.mkdir()
        assert sink.write(b"after\n") is True
        sink.end()
        assert (logs / "app.log").read_bytes() == b"after\n"

    @pytest.mark.asyncio
    async def test_end_flushes_queue_once_reopen_works(self, tmp_path: Path) -> None:
        logs = tmp_path / "logs"
        logs.mkdir()
        sink = RotatingFileSink(path=str(logs / "app.log"), count=1)

        shutil.rmtree(logs)
        await sink.rotate()
        sink.write(b"queued\n")
        logs.mkdir()
        sink.end()

        assert sink.pending == 0
        assert (logs / "app.log").read_bytes() == b"queued\n"


class TestStaleGzipHead:
    """The plain head survives after it was compressed."""

    @pytest.mark.asyncio
    async def test_head_truncated_when_removal_fails(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        head = str(tmp_path / "app.log")
        real_remove = os.remove

        def refuse_head(path):
            if path == head:
                raise PermissionError(13, "Permission denied", path)
            real_remove(path)

        sink = _sink(tmp_path, count=2, gzip=True)
        errors = []
        sink.events.on("error", errors.append)
        sink.write(b"data\n")

        monkeypatch.setattr("rotating_log_sink.retention.os.remove", refuse_head)
        await sink.rotate()
        monkeypatch.undo()

        sink.write(b"next\n")
        sink.end()

        assert len(errors) == 1
        with gzip.open(tmp_path / "app.log.gz.1", "rb") as fh:
            assert fh.read() == b"data\n"
        assert (tmp_path / "app.log").read_bytes() == b"next\n"
