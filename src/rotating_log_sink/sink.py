"""Calendar-rotating append-only file sink.

RotatingFileSink
    Appends bytes to ``path``.  At every period boundary the file is closed,
    optionally gzip-compressed, pushed into a numbered backup chain
    (``path[.gz].1`` newest … ``path[.gz].N`` oldest) and reopened empty.

Rotation runs as a task on the event loop and moves between two states::

    IDLE → (boundary reached) → ROTATING → (new file open, queue drained) → IDLE

Writes that arrive while ROTATING are queued and flushed, in order, into the
new file before the sink returns to IDLE.  Failures during rotation are
reported on :attr:`RotatingFileSink.events` and never abort the reopen, so
the sink stays writable.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from datetime import datetime
from typing import Callable, Optional, Union

from rotating_log_sink.compression import GZIP_SUFFIX, gzip_file_async
from rotating_log_sink.events import SinkEvents
from rotating_log_sink.models import DEFAULT_PERIOD, RotationSpec
from rotating_log_sink.retention import remove_quietly, shift_backups
from rotating_log_sink.scheduler import MAX_SCHEDULABLE_DELAY, RotationScheduler

logger = logging.getLogger(__name__)


class SinkState(enum.Enum):
    """States of the rotation state machine."""

    IDLE = "IDLE"
    ROTATING = "ROTATING"


class RotationInProgressError(RuntimeError):
    """Raised when a rotation is started while another is still running."""


class RotatingFileSink:
    """Append-only file that rotates on a calendar schedule.

    Must be constructed inside a running event loop.

    Parameters
    ----------
    path:
        Live file path.  Backups are named ``path[.gz].N``.
    count:
        Number of rotated generations to keep (``>= 0``).
    period:
        ``hourly``, ``daily``, ``weekly``, ``monthly``, ``yearly`` or
        ``<N><unit>`` with unit in ``ms h d w m y``.
    gzip:
        Compress retired generations.
    clock:
        Returns the current time; injectable for tests.
    max_delay:
        Cap, in seconds, on a single scheduler timer.
    flush_every_n:
        Flush the file buffer after this many writes.

    Raises
    ------
    ValueError
        If *count* or *period* is invalid.  Nothing is opened in that case.
    """

    def __init__(
        self,
        path: str,
        count: int,
        period: Optional[str] = DEFAULT_PERIOD,
        gzip: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
        max_delay: float = MAX_SCHEDULABLE_DELAY,
        flush_every_n: int = 1,
    ) -> None:
        if not path:
            raise ValueError("path is required")
        self._spec = RotationSpec.parse(period, count)
        self._path = str(path)
        self._gzip = bool(gzip)
        self._flush_every_n = max(1, flush_every_n)

        self.events = SinkEvents(self._path)
        self._state = SinkState.IDLE
        self._pending: list[bytes] = []
        self._closed = False
        self._writes_since_flush = 0
        self._rotation_task: Optional[asyncio.Task] = None
        self._fh = None

        self._scheduler = RotationScheduler(
            self._spec,
            on_due=self._on_due,
            clock=clock,
            max_delay=max_delay,
        )
        self._open_new_file()
        self._scheduler.schedule_next()

    # ── public API ──────────────────────────────────────────────────

    @property
    def path(self) -> str:
        return self._path

    @property
    def spec(self) -> RotationSpec:
        return self._spec

    @property
    def state(self) -> SinkState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        """Number of writes queued behind an in-flight rotation."""
        return len(self._pending)

    @property
    def next_rotate_at(self) -> Optional[datetime]:
        return self._scheduler.next_rotate_at

    @property
    def scheduler(self) -> RotationScheduler:
        return self._scheduler

    def write(self, data: Union[bytes, str]) -> bool:
        """Append *data*.

        Returns ``True`` when the bytes went straight to the file and
        ``False`` while a rotation is in flight or the live file could not be
        reopened after one (the bytes are queued).
        ``False`` says nothing about how long the queue is.

        Raises
        ------
        ValueError
            If the sink has been ended or destroyed.
        """
        if self._closed:
            raise ValueError(f"write to closed sink {self._path}")
        if isinstance(data, str):
            data = data.encode("utf-8")

        if self._state is SinkState.ROTATING or not self._ensure_open():
            self._pending.append(data)
            return False

        self._fh.write(data)
        self._writes_since_flush += 1
        if self._writes_since_flush >= self._flush_every_n:
            self._flush()
        return True

    def flush(self) -> None:
        self._flush()

    def end(self) -> None:
        """Flush and close the file.  An in-flight rotation runs to completion."""
        if self._pending and not self._closed and self._state is SinkState.IDLE:
            self._ensure_open()
        self._closed = True
        self._close_file()

    def destroy(self) -> None:
        """Close immediately, discarding writes queued behind a rotation."""
        self._closed = True
        if self._pending:
            logger.warning("Discarding %d queued writes for %s", len(self._pending), self._path)
        self._pending.clear()
        self._close_file()

    def destroy_soon(self) -> None:
        """Close once buffered data is written."""
        self.end()

    async def rotate(self) -> None:
        """Rotate now, outside the schedule.

        Raises
        ------
        RotationInProgressError
            If a rotation is already running.
        ValueError
            If the sink has been ended or destroyed.
        """
        if self._closed:
            raise ValueError(f"rotate of closed sink {self._path}")
        self._begin_rotation()
        await self._run_rotation()

    async def wait_rotation(self) -> None:
        """Wait for a scheduler-triggered rotation, if one is in flight."""
        task = self._rotation_task
        if task is not None:
            await task

    # ── internal: rotation ──────────────────────────────────────────

    def _on_due(self) -> None:
        if self._closed:
            logger.debug("Boundary reached for closed sink %s; not rotating", self._path)
            return
        self._begin_rotation()
        self._rotation_task = asyncio.get_running_loop().create_task(
            self._run_rotation()
        )

    def _begin_rotation(self) -> None:
        if self._state is SinkState.ROTATING:
            raise RotationInProgressError(
                f"Cannot start a rotation of {self._path} while already rotating"
            )
        self._set_state(SinkState.ROTATING)
        self._scheduler.cancel()

    async def _run_rotation(self) -> None:
        truncate = False
        try:
            self._close_file()
            truncate = await self._archive_head()
        finally:
            if self._reopen(truncate):
                self._drain_pending()
            self._set_state(SinkState.IDLE)
            self._rotation_task = None
            if self._closed:
                self._close_file()
            if not self._pending:
                self.events.drain()

        if not self._closed:
            self._scheduler.schedule_next()

    async def _archive_head(self) -> bool:
        """Retire the closed head.  Returns True if the head must be truncated."""
        count = self._spec.retention_count
        suffix = ""
        stale_head = False
        # With count == 0 the head is deleted, so compressing it is wasted work.
        if self._gzip and count > 0:
            try:
                await gzip_file_async(self._path, self._path + GZIP_SUFFIX)
            except OSError as exc:
                self.events.error(exc)
                logger.warning("Compression failed; keeping %s uncompressed", self._path)
            else:
                suffix = GZIP_SUFFIX
                # Its content already lives in the .gz; appending would duplicate it.
                stale_head = not await remove_quietly(self._path, self.events)

        moved = await shift_backups(self._path, count, self.events, suffix=suffix)
        logger.info("Rotated %s (%d backups shifted, keep %d)", self._path, moved, count)
        return stale_head

    def _drain_pending(self) -> None:
        if not self._pending or self._fh is None or self._fh.closed:
            return
        queued, self._pending = self._pending, []
        for data in queued:
            self._fh.write(data)
        self._flush()
        logger.debug("Drained %d queued writes into %s", len(queued), self._path)

    # ── internal: file handle ───────────────────────────────────────

    def _open_new_file(self, truncate: bool = False) -> None:
        self._fh = open(self._path, "wb" if truncate else "ab")
        self._writes_since_flush = 0
        logger.info("Opened %s", self._path)

    def _reopen(self, truncate: bool = False) -> bool:
        """Open the live file after a rotation; failures go to ``error``."""
        try:
            self._open_new_file(truncate)
        except OSError as exc:
            self._fh = None
            self.events.error(exc)
            logger.warning("Could not reopen %s; queueing writes", self._path)
            return False
        return True

    def _ensure_open(self) -> bool:
        """Retry a failed reopen.  Queued writes are drained on success."""
        if self._fh is not None and not self._fh.closed:
            return True
        if not self._reopen():
            return False
        self._drain_pending()
        return True

    def _close_file(self) -> None:
        if self._fh is not None and not self._fh.closed:
            self._fh.close()

    def _flush(self) -> None:
        if self._fh is not None and not self._fh.closed:
            self._fh.flush()
            self._writes_since_flush = 0

    def _set_state(self, new: SinkState) -> None:
        old = self._state
        self._state = new
        logger.debug("Sink %s state: %s → %s", self._path, old.value, new.value)
