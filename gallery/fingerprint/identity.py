"""Fingerprint identity oracle.

Maps a (viewer, media) pair to a stable opaque identity and an identity to the
A/B variant each HLS segment must be served from. Everything here is a pure
function of the server-held secret and public identifiers, so the same values
can be recomputed at attribution time without any stored state.

Callers must assign an identity once per viewer per media item; the value is
recomputed, never rerolled.
"""
from __future__ import annotations

import re
from enum import Enum
from typing import Optional, Union

from gallery.fingerprint._keystream import hmac_digest

FINGERPRINT_VERSION = "v1"
IDENTITY_HEX_LENGTH = 32

Identifier = Union[int, str]

_SEGMENT_NAME = re.compile(r"\Aseg_(\d+)\.(ts|m4s)\Z", re.IGNORECASE)


class Variant(str, Enum):
    A = "a"
    B = "b"

    @property
    def letter(self) -> str:
        return self.value.upper()


def require_identifier(value: Identifier, name: str) -> str:
    if value is None or isinstance(value, bool):
        raise ValueError(f"{name} is required")
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"{name} must not be negative")
        return str(value)
    text = str(value).strip()
    if not text:
        raise ValueError(f"{name} is required")
    return text


def identity_for(user_id: Identifier, media_id: Identifier, *, secret: str) -> str:
    """Return the 32-hex-char fingerprint identity for (user_id, media_id)."""
    user = require_identifier(user_id, "user_id")
    media = require_identifier(media_id, "media_id")
    digest = hmac_digest(secret, f"{FINGERPRINT_VERSION}|u{user}|m{media}")
    return digest[:IDENTITY_HEX_LENGTH // 2].hex()


def expected_bit(identity: str, media_id: Identifier, segment_index: int, *, secret: str) -> Variant:
    """Return the variant segment *segment_index* must carry for *identity*."""
    if not isinstance(identity, str) or not identity.strip():
        raise ValueError("fingerprint identity is required")
    media = require_identifier(media_id, "media_id")
    index = max(int(segment_index), 0)
    digest = hmac_digest(secret, f"{FINGERPRINT_VERSION}|fp={identity}|m={media}|s={index}")
    return Variant.B if digest[0] & 1 else Variant.A


def expected_sequence(identity: str, media_id: Identifier, count: int, *, secret: str, start: int = 0) -> list[Variant]:
    """Expected variants for segments ``start .. start + count - 1``."""
    return [expected_bit(identity, media_id, start + i, secret=secret) for i in range(max(count, 0))]


def segment_index_from_filename(filename: str) -> Optional[int]:
    """Parse the index out of our segment naming convention (``seg_00012.ts``)."""
    name = str(filename or "").replace("\\", "/").rsplit("/", 1)[-1]
    match = _SEGMENT_NAME.match(name)
    if not match:
        return None
    return int(match.group(1))
