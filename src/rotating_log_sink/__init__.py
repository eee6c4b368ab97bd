"""Append-only log sink that rotates its file on a calendar schedule."""

from rotating_log_sink.handler import RotatingSinkHandler
from rotating_log_sink.models import PeriodUnit, RotationSpec
from rotating_log_sink.sink import RotatingFileSink, RotationInProgressError, SinkState

__version__ = "0.3.0"

__all__ = [
    "PeriodUnit",
    "RotatingFileSink",
    "RotatingSinkHandler",
    "RotationInProgressError",
    "RotationSpec",
    "SinkState",
    "__version__",
]
