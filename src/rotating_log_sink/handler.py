"""``logging.Handler`` that writes formatted records into a rotating sink."""

from __future__ import annotations

import logging

from rotating_log_sink.sink import RotatingFileSink


class RotatingSinkHandler(logging.Handler):
    """Route log records to a :class:`RotatingFileSink`.

    Each record is formatted, newline-terminated and written as UTF-8.  The
    sink's ``False`` return during rotation only means the line was queued,
    so it is not treated as a failure.
    """

    terminator = "\n"

    def __init__(self, sink: RotatingFileSink, level: int = logging.NOTSET) -> None:
        super().__init__(level)
        self.sink = sink

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record) + self.terminator
            self.sink.write(line.encode("utf-8"))
        except Exception:
            self.handleError(record)

    def flush(self) -> None:
        self.acquire()
        try:
            if not self.sink.closed:
                self.sink.flush()
        finally:
            self.release()

    def close(self) -> None:
        self.acquire()
        try:
            if not self.sink.closed:
                self.sink.end()
        finally:
            self.release()
            super().close()
