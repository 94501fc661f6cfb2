"""On-disk layout of packaged renditions.

    <storage_root>/<media_id>/hls/                 published set
    <storage_root>/<media_id>/hls__tmp_<hex>/      in-flight build
    <storage_root>/<media_id>/hls__old_<ts>_<hex>/ superseded set, collected later
"""
from __future__ import annotations

import json
import logging
import os
import re
from typing import Optional

logger = logging.getLogger(__name__)

HLS_DIRNAME = "hls"
TMP_PREFIX = "hls__tmp_"
OLD_PREFIX = "hls__old_"
TEMPLATE_VARIANT = "v0"
MASTER_NAME = "master.m3u8"
PLAYLIST_NAME = "index.m3u8"
COMPLETE_MARKER = ".complete"
MANIFEST_NAME = "fingerprint_meta.json"

_MEDIA_ID = re.compile(r"[A-Za-z0-9_-]+")


def safe_media_id(media_id) -> str:
    """media_id as a path component; allowed characters are A-Z, a-z, 0-9, '_' and '-'."""
    value = str(media_id if media_id is not None else "").strip()
    if not _MEDIA_ID.fullmatch(value):
        raise ValueError("Invalid media_id; allowed characters are A-Z, a-z, 0-9, '_' and '-'.")
    return value


def item_dir(storage_root: str, media_id) -> str:
    return os.path.join(storage_root, safe_media_id(media_id))


def hls_root(storage_root: str, media_id) -> str:
    return os.path.join(item_dir(storage_root, media_id), HLS_DIRNAME)


def template_playlist_path(root: str) -> str:
    return os.path.join(root, TEMPLATE_VARIANT, PLAYLIST_NAME)


def variant_dir(root: str, variant: str) -> str:
    """Segment directory for an A/B variant (``a/v0``) or the legacy set (``v0``)."""
    if variant in ("a", "b"):
        return os.path.join(root, variant, TEMPLATE_VARIANT)
    return os.path.join(root, TEMPLATE_VARIANT)


def segment_path(root: str, variant: str, segment_name: str) -> str:
    name = os.path.basename(segment_name)
    return os.path.join(variant_dir(root, variant), name)


def read_manifest(storage_root: str, media_id) -> Optional[dict]:
    """The packaging-time manifest of the published set, or None if absent/unreadable."""
    path = os.path.join(hls_root(storage_root, media_id), MANIFEST_NAME)
    if not os.path.isfile(path):
        return None
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except (OSError, ValueError) as exc:
        logger.warning("Unreadable manifest %s: %s", path, exc)
        return None
    return data if isinstance(data, dict) else None


def is_ready(storage_root: str, media_id) -> bool:
    """File-based readiness: master, completion marker and segments all present."""
    root = hls_root(storage_root, media_id)
    if not (os.path.isfile(os.path.join(root, MASTER_NAME)) and os.path.isfile(os.path.join(root, COMPLETE_MARKER))):
        return False
    if not os.path.isfile(template_playlist_path(root)):
        return False
    manifest = read_manifest(storage_root, media_id) or {}
    variants = ("a", "b") if manifest.get("fingerprinted") else (TEMPLATE_VARIANT,)
    for variant in variants:
        directory = variant_dir(root, variant)
        if not os.path.isdir(directory) or not any(n.endswith((".ts", ".m4s")) for n in os.listdir(directory)):
            return False
    return True
