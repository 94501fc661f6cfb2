"""File-based mutexes.

Locks are ``flock`` files under the storage root, so they are shared by every
worker process on the host, and across hosts when the storage root is a shared
mount. Packaging holds the processing lock for both the A and B passes and the
media lock around the build and swap.
"""
from __future__ import annotations

import contextlib
import fcntl
import logging
import os
import time

from gallery.core.storage import safe_media_id

logger = logging.getLogger(__name__)

PROCESSING_LOCK_NAME = ".processing.lock"


@contextlib.contextmanager
def _flock(path: str, label: str):
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    started = time.monotonic()
    with open(path, "a+") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        waited = time.monotonic() - started
        if waited > 1:
            logger.info("Acquired %s after waiting %.1fs", label, waited)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def processing_lock(storage_root: str):
    """Single logical lock serializing heavy encoder work."""
    return _flock(os.path.join(storage_root, PROCESSING_LOCK_NAME), "processing lock")


def media_lock(storage_root: str, media_id):
    """Per-media lock so a retry cannot race an in-flight swap of the same item."""
    media = safe_media_id(media_id)
    return _flock(os.path.join(storage_root, ".locks", f"{media}.lock"), f"media lock {media}")
