"""Short-lived credentials for streaming.

- Viewer/admin bearer tokens are JWTs (``sub`` = user id, ``roles`` claim).
- Segment URLs carry an expiry timestamp and an HMAC signature binding
  media, variant and segment name, so a playlist cannot be edited to pull the
  other variant.
"""
import hashlib
import hmac
import time
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from jose import JWTError, jwt

from gallery.core.config import ALGORITHM, SECRET_KEY, STREAM_TOKEN_EXPIRE_MINUTES

SIGNATURE_LENGTH = 32


def create_access_token(user_id: str, roles: Iterable[str] = (), expires_minutes: int = 60) -> str:
    """Create a bearer JWT for *user_id*."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "roles": list(roles),
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    """Decode a bearer JWT. Raises ValueError when invalid or expired."""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as e:
        raise ValueError(f"invalid token: {e}") from None
    if not payload.get("sub"):
        raise ValueError("token without subject")
    return payload


def sign_segment(media_id: str, variant: str, segment_name: str, expires_at: int) -> str:
    message = f"{media_id}:{variant}:{segment_name}:{expires_at}".encode()
    return hmac.new(SECRET_KEY.encode(), message, hashlib.sha256).hexdigest()[:SIGNATURE_LENGTH]


def segment_expiry(now: Optional[float] = None) -> int:
    now = time.time() if now is None else now
    return int(now) + STREAM_TOKEN_EXPIRE_MINUTES * 60


def verify_segment_signature(media_id: str, variant: str, segment_name: str, expires_at: int, sig: str, now: Optional[float] = None) -> bool:
    now = time.time() if now is None else now
    if expires_at < now:
        return False
    expected = sign_segment(media_id, variant, segment_name, expires_at)
    return hmac.compare_digest(expected, sig or "")
