"""Gzip compression of retired log files."""

from __future__ import annotations

import asyncio
import gzip
import logging
import os
import shutil

logger = logging.getLogger(__name__)

GZIP_SUFFIX = ".gz"


def gzip_file(src: str, dst: str) -> str:
    """Stream *src* through gzip into *dst* and return *dst*.

    *src* is left in place.  On failure any partially written *dst* is
    removed before the exception propagates.
    """
    try:
        with open(src, "rb") as f_in, gzip.open(dst, "wb") as f_out:
            shutil.copyfileobj(f_in, f_out)
    except Exception:
        try:
            os.remove(dst)
        except FileNotFoundError:
            pass
        raise
    logger.debug("Compressed %s → %s", src, dst)
    return dst


async def gzip_file_async(src: str, dst: str) -> str:
    """Run :func:`gzip_file` on a worker thread."""
    return await asyncio.to_thread(gzip_file, src, dst)
