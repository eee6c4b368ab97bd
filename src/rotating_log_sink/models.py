"""Dataclass models for rotation periods and retention.

A :class:`RotationSpec` is parsed once when a sink is constructed and never
mutated afterwards.  Period strings follow the grammar::

    hourly | daily | weekly | monthly | yearly
    <N><unit>     N >= 1, unit in {ms, h, d, w, m, y}

``ms`` is a hidden debugging unit and is not meant for production use.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import Any, Optional

PERIOD_ALIASES = {
    "hourly": "1h",
    "daily": "1d",
    "weekly": "1w",
    "monthly": "1m",
    "yearly": "1y",
}

DEFAULT_PERIOD = "daily"

_PERIOD_RE = re.compile(r"^([1-9][0-9]*)(ms|[hdwmy])$")


class PeriodUnit(enum.Enum):
    """Calendar units a rotation period can be expressed in."""

    MILLISECOND = "ms"
    HOUR = "h"
    DAY = "d"
    WEEK = "w"
    MONTH = "m"
    YEAR = "y"

    @property
    def fixed_duration(self) -> bool:
        """True for units that always span the same absolute time."""
        return self not in (PeriodUnit.MONTH, PeriodUnit.YEAR)


@dataclass(frozen=True)
class RotationSpec:
    """When to rotate and how many generations to keep."""

    period_count: int = 1
    period_unit: PeriodUnit = PeriodUnit.DAY
    retention_count: int = 0

    @classmethod
    def parse(cls, period: Optional[str], count: Any) -> "RotationSpec":
        """Validate *period* and *count* and build a spec.

        Parameters
        ----------
        period:
            A period alias or ``<N><unit>`` string.  ``None`` or an empty
            string selects :data:`DEFAULT_PERIOD`.
        count:
            Number of rotated generations to keep.

        Raises
        ------
        ValueError
            If *count* is not a non-negative integer or *period* does not
            match the grammar.
        """
        retention = validate_count(count)
        period_count, unit = parse_period(period)
        return cls(
            period_count=period_count,
            period_unit=unit,
            retention_count=retention,
        )

    def describe(self) -> str:
        """Short human form, e.g. ``"1d x 5"``."""
        return f"{self.period_count}{self.period_unit.value} x {self.retention_count}"


def validate_count(count: Any) -> int:
    """Return *count* if it is an integer >= 0, else raise ``ValueError``."""
    # bool is an int subclass; ``count=True`` is almost certainly a mistake
    if isinstance(count, bool) or not isinstance(count, int):
        raise ValueError(
            f"count must be an integer, got {count!r} ({type(count).__name__})"
        )
    if count < 0:
        raise ValueError(f"count must be >= 0, got {count}")
    return count


def parse_period(period: Optional[str]) -> tuple[int, PeriodUnit]:
    """Split a period string into ``(count, unit)``."""
    raw = period or DEFAULT_PERIOD
    if not isinstance(raw, str):
        raise ValueError(f"Invalid period: {period!r}")
    normalized = PERIOD_ALIASES.get(raw, raw)
    match = _PERIOD_RE.match(normalized)
    if not match:
        raise ValueError(f'Invalid period: "{period}"')
    return int(match.group(1)), PeriodUnit(match.group(2))
