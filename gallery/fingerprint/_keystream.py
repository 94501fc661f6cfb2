"""Keyed HMAC-SHA256 helpers shared by the identity oracle and the geometry generator.

Internal to ``gallery.fingerprint``; nothing outside this package should import it.
"""
from __future__ import annotations

import hashlib
import hmac
import struct

_U32_SPAN = 4_294_967_296.0


def require_secret(secret: str) -> bytes:
    if not isinstance(secret, str) or not secret:
        raise ValueError("fingerprint secret must be a non-empty string")
    return secret.encode("utf-8")


def hmac_digest(secret: str, message: str) -> bytes:
    return hmac.new(require_secret(secret), message.encode("utf-8"), hashlib.sha256).digest()


def prng_bytes(secret: str, label: str, needed: int) -> bytes:
    """Counter-mode keystream: HMAC(secret, "<label>|<ctr>") blocks concatenated."""
    out = bytearray()
    ctr = 0
    while len(out) < needed:
        out += hmac_digest(secret, f"{label}|{ctr}")
        ctr += 1
    return bytes(out[:needed])


def u32_to_unit(data: bytes, offset: int) -> float:
    """Big-endian unsigned 32-bit word at *offset* mapped into [0, 1)."""
    chunk = data[offset:offset + 4]
    if len(chunk) < 4:
        return 0.0
    (n,) = struct.unpack(">I", chunk)
    return n / _U32_SPAN
