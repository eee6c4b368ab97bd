"""Observer registry for sink notifications.

A sink reports out-of-band conditions through three channels:

``error``
    An I/O failure during rotation.  Callback receives the exception.
``debug``
    An expected, harmless condition (e.g. a missing backup slot).  Callback
    receives a ``dict`` describing it.
``drain``
    A rotation finished and queued writes were flushed.  No arguments.

Every notification is also logged, so a sink with no listeners still leaves
a trace.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

ERROR = "error"
DEBUG = "debug"
DRAIN = "drain"

EVENTS = (ERROR, DEBUG, DRAIN)


class SinkEvents:
    """Callback registry for the ``error``, ``debug`` and ``drain`` channels."""

    def __init__(self, name: str = "") -> None:
        self._name = name
        self._listeners: dict[str, list[Callable[..., Any]]] = {e: [] for e in EVENTS}

    def on(self, event: str, callback: Callable[..., Any]) -> None:
        """Register *callback* for *event*."""
        self._check(event)
        self._listeners[event].append(callback)

    def off(self, event: str, callback: Callable[..., Any]) -> None:
        """Remove a previously registered *callback*; unknown ones are ignored."""
        self._check(event)
        if callback in self._listeners[event]:
            self._listeners[event].remove(callback)

    def listener_count(self, event: str) -> int:
        self._check(event)
        return len(self._listeners[event])

    def error(self, exc: BaseException) -> None:
        logger.error("%s: %s", self._name or "sink", exc)
        self._emit(ERROR, exc)

    def debug(self, info: dict[str, Any]) -> None:
        logger.debug("%s: %s", self._name or "sink", info)
        self._emit(DEBUG, info)

    def drain(self) -> None:
        self._emit(DRAIN)

    def _emit(self, event: str, *args: Any) -> None:
        # Copy so a callback may unregister itself.
        for callback in list(self._listeners[event]):
            callback(*args)

    @staticmethod
    def _check(event: str) -> None:
        if event not in EVENTS:
            raise ValueError(f"Unknown sink event {event!r}; expected one of {EVENTS}")
