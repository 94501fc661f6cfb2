"""Build artifact collector.

Background task that removes leftovers of packaging runs:
- ``hls__tmp_*`` directories from builds that crashed or were killed;
- ``hls__old_*`` directories holding superseded rendition sets.

Only directories older than ``keep_seconds`` are removed, so a build that is
still running (or a set that was swapped out moments ago and may still be
streaming) is left alone. Published ``hls/`` directories are never touched.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import time
from typing import Final, Optional

from gallery.core.storage import OLD_PREFIX, TMP_PREFIX

logger = logging.getLogger(__name__)

_ARTIFACT_PREFIXES: Final[tuple] = (TMP_PREFIX, OLD_PREFIX)


async def cleanup_loop(storage_root: str, interval_seconds: int = 300, keep_seconds: int = 1800) -> None:
    """Periodically collect stale build artifacts under *storage_root*."""
    logger.info("Starting build artifact cleanup: every %ss, remove artifacts older than %ss", interval_seconds, keep_seconds)
    try:
        while True:
            # Filesystem walk runs in a thread so the event loop is not blocked
            await asyncio.to_thread(cleanup_build_artifacts, storage_root, keep_seconds)
            await asyncio.sleep(interval_seconds)
    except asyncio.CancelledError:
        logger.info("Build artifact cleanup task cancelled")
        raise


def cleanup_build_artifacts(storage_root: str, keep_seconds: int, now: Optional[float] = None) -> list[str]:
    """Remove stale ``hls__tmp_*`` / ``hls__old_*`` directories once. Returns removed paths."""
    removed: list[str] = []
    if keep_seconds <= 0 or not os.path.isdir(storage_root):
        return removed
    now = time.time() if now is None else now

    for item in os.listdir(storage_root):
        item_root = os.path.join(storage_root, item)
        if item.startswith(".") or not os.path.isdir(item_root):
            continue
        try:
            names = os.listdir(item_root)
        except FileNotFoundError:
            continue
        for name in names:
            if not name.startswith(_ARTIFACT_PREFIXES):
                continue
            path = os.path.join(item_root, name)
            try:
                if not os.path.isdir(path) or now - os.path.getmtime(path) <= keep_seconds:
                    continue
                shutil.rmtree(path)
                removed.append(path)
                logger.debug("Removed stale build artifact %s", path)
            except FileNotFoundError:
                # Removed concurrently by another worker
                continue
            except OSError as exc:
                logger.error("Failed to remove build artifact %s: %s", path, exc)

    if removed:
        logger.info("Removed %s stale build artifact(s) under %s", len(removed), storage_root)
    return removed
