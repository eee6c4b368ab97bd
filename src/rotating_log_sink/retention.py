"""Backup chain naming and the retention shift.

The chain for a live file ``app.log`` with ``count=3`` looks like::

    app.log          live file (slot 0 / head once closed)
    app.log.gz.1     newest backup
    app.log.gz.2
    app.log.gz.3     oldest backup

``.gz`` is present only when compression is enabled and succeeded for the
head being shifted in.  The shift walks from the oldest slot down to the
newest so no rename ever lands on a file that has not been moved yet.
Missing members are skipped; a failed rename stops the shift where it is,
and the next rotation converges the chain again.
"""

from __future__ import annotations

import asyncio
import logging
import os

from rotating_log_sink.events import SinkEvents

logger = logging.getLogger(__name__)


def backup_path(base: str, n: int, suffix: str = "") -> str:
    """Path of slot *n* in the chain; slot 0 is the head (``base + suffix``)."""
    path = base + suffix
    if n > 0:
        path += f".{n}"
    return path


async def remove_quietly(path: str, events: SinkEvents) -> bool:
    """Delete *path*.

    A missing file is reported on the ``debug`` channel, any other failure on
    ``error``.  Returns True if the file was removed.
    """
    try:
        await asyncio.to_thread(os.remove, path)
    except FileNotFoundError:
        events.debug({"op": "unlink", "path": path, "reason": "not found"})
        return False
    except OSError as exc:
        events.error(exc)
        return False
    return True


async def shift_backups(
    base: str,
    count: int,
    events: SinkEvents,
    suffix: str = "",
) -> int:
    """Push the closed head file into the backup chain.

    Parameters
    ----------
    base:
        The live file path.
    count:
        Generations to keep.  ``0`` deletes the head and renames nothing.
    events:
        Receives ``debug`` / ``error`` notifications.
    suffix:
        Compression suffix of the head and its chain (``".gz"`` or ``""``).

    Returns
    -------
    int
        Number of renames performed.
    """
    head = backup_path(base, 0, suffix)
    if count == 0:
        await remove_quietly(head, events)
        return 0

    await remove_quietly(backup_path(base, count, suffix), events)

    moved = 0
    for n in range(count, 0, -1):
        src = backup_path(base, n - 1, suffix)
        dst = backup_path(base, n, suffix)
        try:
            await asyncio.to_thread(os.replace, src, dst)
        except FileNotFoundError:
            events.debug({"op": "rename", "path": src, "reason": "not found"})
            continue
        except OSError as exc:
            events.error(exc)
            logger.warning("Retention shift stopped at %s → %s", src, dst)
            break
        moved += 1
        logger.debug("Renamed %s → %s", src, dst)
    return moved
