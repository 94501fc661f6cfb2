"""Per-viewer playlist assembly.

The template playlist lists segment names and durations once; each viewer
gets a copy where every segment URL points at the A or B file their
fingerprint identity dictates.
"""
from __future__ import annotations

import logging
from typing import Callable, Optional

from gallery.fingerprint.identity import Variant, expected_bit, segment_index_from_filename

logger = logging.getLogger(__name__)

SegmentUrl = Callable[[str, str], str]


def assemble_viewer_playlist(
    template: str,
    identity: Optional[str],
    media_id,
    *,
    secret: str,
    segment_url: SegmentUrl,
    legacy_variant: str = "v0",
) -> str:
    """Rewrite *template* so each segment line becomes ``segment_url(variant, name)``.

    Without an identity (legacy set) every segment is served from
    *legacy_variant*. Segment names outside our naming scheme fall back to A.
    """
    out = []
    for raw in template.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            out.append(raw)
            continue

        name = line.split("?", 1)[0].rsplit("/", 1)[-1]
        if not identity:
            out.append(segment_url(legacy_variant, name))
            continue

        index = segment_index_from_filename(name)
        if index is None:
            logger.debug("Unrecognised segment name %r in template for media %s", name, media_id)
            variant = Variant.A
        else:
            variant = expected_bit(identity, media_id, index, secret=secret)
        out.append(segment_url(variant.value, name))
    return "\n".join(out) + "\n"
