"""Rotation boundary arithmetic and the capped event-loop timer.

:func:`compute_next` is pure: given a :class:`RotationSpec`, the previous
boundary (if any) and the current time it returns the next boundary as an
aware UTC ``datetime``.

:class:`RotationScheduler` owns the previous boundary and one
``asyncio.TimerHandle``.  Timer delays are capped at ``max_delay``; when a
capped timer fires early the deadline is rechecked and the timer re-armed
for the remainder, so a yearly period can span many timer fires::

    ARMED → (fire, deadline in future) → ARMED
    ARMED → (fire, deadline reached)   → on_due()
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from rotating_log_sink.models import PeriodUnit, RotationSpec

logger = logging.getLogger(__name__)

# 2**31 - 1 milliseconds, the historical ceiling for event-loop timers.
MAX_SCHEDULABLE_DELAY = 2147483647 / 1000.0

_FIXED_UNITS = {
    PeriodUnit.MILLISECOND: timedelta(milliseconds=1),
    PeriodUnit.HOUR: timedelta(hours=1),
    PeriodUnit.DAY: timedelta(days=1),
    PeriodUnit.WEEK: timedelta(weeks=1),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def compute_next(
    spec: RotationSpec,
    previous: Optional[datetime],
    now: datetime,
) -> datetime:
    """Return the next rotation boundary.

    Parameters
    ----------
    spec:
        Period definition.
    previous:
        The boundary the last rotation was scheduled for, or ``None`` when
        nothing has been scheduled yet.
    now:
        Current time.  Naive values are taken to be UTC.

    Returns
    -------
    datetime
        Aware UTC instant of the next rotation.
    """
    now = _as_utc(now)
    unit = spec.period_unit
    n = spec.period_count

    if previous is not None:
        previous = _as_utc(previous)
        if unit.fixed_duration:
            return previous + n * _FIXED_UNITS[unit]
        if unit is PeriodUnit.MONTH:
            return _add_months(previous, n)
        return datetime(previous.year + n, 1, 1, tzinfo=timezone.utc)

    # First boundary: the start of the next calendar unit, whatever n is.
    if unit is PeriodUnit.MILLISECOND:
        return now + n * _FIXED_UNITS[unit]
    if unit is PeriodUnit.HOUR:
        return now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if unit is PeriodUnit.DAY:
        return midnight + timedelta(days=1)
    if unit is PeriodUnit.WEEK:
        # Monday is weekday 0; on a Monday the next boundary is a week away.
        return midnight + timedelta(days=7 - midnight.weekday())
    if unit is PeriodUnit.MONTH:
        return _add_months(now, 1)
    return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)


def _add_months(anchor: datetime, months: int) -> datetime:
    """First day of the month *months* after *anchor*'s month, 00:00 UTC."""
    index = anchor.year * 12 + (anchor.month - 1) + months
    return datetime(index // 12, index % 12 + 1, 1, tzinfo=timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class RotationScheduler:
    """Arms a timer for the next boundary and calls *on_due* when it passes.

    Parameters
    ----------
    spec:
        Period definition.
    on_due:
        Zero-argument callable invoked on the event loop once the current
        boundary has been reached.
    clock:
        Returns the current time.  Defaults to :func:`utcnow`; tests inject
        a fake.
    max_delay:
        Largest delay in seconds a single timer may be armed for.
    loop:
        Event loop to arm timers on.  Defaults to the running loop.
    """

    def __init__(
        self,
        spec: RotationSpec,
        on_due: Callable[[], None],
        clock: Optional[Callable[[], datetime]] = None,
        max_delay: float = MAX_SCHEDULABLE_DELAY,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        if max_delay <= 0:
            raise ValueError(f"max_delay must be > 0, got {max_delay}")
        self._spec = spec
        self._on_due = on_due
        self._clock = clock or utcnow
        self._max_delay = max_delay
        self._loop = loop or asyncio.get_running_loop()
        self._handle: Optional[asyncio.TimerHandle] = None
        self._next_rotate_at: Optional[datetime] = None
        self.rearm_count = 0

    @property
    def next_rotate_at(self) -> Optional[datetime]:
        """The boundary currently scheduled, ``None`` before the first call."""
        return self._next_rotate_at

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def schedule_next(self) -> datetime:
        """Compute the next boundary (if needed) and arm the timer.

        A boundary that is still in the future is kept as is, so calling this
        after an out-of-schedule rotation does not skip it.
        """
        self.cancel()
        now = _as_utc(self._clock())
        if self._next_rotate_at is None or self._next_rotate_at <= now:
            nxt = compute_next(self._spec, self._next_rotate_at, now)
            if nxt <= now:
                nxt = self._skip_missed(nxt, now)
            self._next_rotate_at = nxt
            logger.debug("Next rotation at %s", self._next_rotate_at.isoformat())
        self._arm(now)
        return self._next_rotate_at

    def cancel(self) -> None:
        """Disarm the pending timer, if any."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    # ── internal ────────────────────────────────────────────────────

    def _skip_missed(self, boundary: datetime, now: datetime) -> datetime:
        """First boundary after *now* on the chain that continues from *boundary*.

        Boundaries missed while the clock jumped or the loop stalled are
        skipped, so they do not each push an empty generation into the chain.
        """
        unit = self._spec.period_unit
        if unit.fixed_duration:
            step = self._spec.period_count * _FIXED_UNITS[unit]
            skipped = (now - boundary) // step + 1
            boundary += skipped * step
        else:
            skipped = 0
            while boundary <= now:
                boundary = compute_next(self._spec, boundary, now)
                skipped += 1
        logger.warning("Skipped %d missed rotation boundaries", skipped)
        return boundary

    def _arm(self, now: datetime) -> None:
        delay = (self._next_rotate_at - now).total_seconds()
        if delay > self._max_delay:
            delay = self._max_delay
        self._handle = self._loop.call_later(max(delay, 0.0), self._fire)

    def _fire(self) -> None:
        self._handle = None
        now = _as_utc(self._clock())
        if self._next_rotate_at is not None and self._next_rotate_at > now:
            self.rearm_count += 1
            logger.debug(
                "Timer capped; %.0fs left until %s, re-arming",
                (self._next_rotate_at - now).total_seconds(),
                self._next_rotate_at.isoformat(),
            )
            self._arm(now)
            return
        self._on_due()
