# gallery/crud/fingerprints.py
import hashlib
import logging
from datetime import datetime, timezone
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError

from gallery.fingerprint.identity import identity_for

logger = logging.getLogger(__name__)


async def touch_fingerprint(db: AsyncIOMotorClient, user_id: str, media_id: str, *, secret: str, ip: Optional[str] = None) -> str:
    """Returns the viewer's fingerprint identity, upserting the lookup row.

    The identity is recomputed from the secret and always written, so the
    stored value follows the identity the playlist actually used (also after
    FINGERPRINT_SECRET changes). Persistence errors are logged and do not
    block playback.
    """
    fingerprint_id = identity_for(user_id, media_id, secret=secret)
    now = datetime.now(timezone.utc)
    try:
        await db["media_fingerprints"].update_one(
            {"user_id": str(user_id), "media_id": str(media_id)},
            {
                "$setOnInsert": {"created_at": now},
                "$set": {"fingerprint_id": fingerprint_id, "last_seen_at": now, "last_ip": ip},
            },
            upsert=True,
        )
    except PyMongoError as e:
        logger.warning(f"Failed to record fingerprint for user {user_id} media {media_id}: {e}")
    return fingerprint_id


async def list_for_media(db: AsyncIOMotorClient, media_id: str):
    """All fingerprint rows known for a media item."""
    rows = []
    cursor = db["media_fingerprints"].find({"media_id": str(media_id)}).sort("created_at", 1)
    async for row in cursor:
        rows.append(row)
    return rows


async def log_playback_session(
    db: AsyncIOMotorClient,
    *,
    user_id: str,
    media_id: str,
    fingerprint_id: str,
    token: str,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
):
    """Stores a playback session; only a SHA-256 of the play token is kept."""
    doc = {
        "user_id": str(user_id),
        "media_id": str(media_id),
        "fingerprint_id": fingerprint_id,
        "token_sha256": hashlib.sha256(token.encode("utf-8")).hexdigest(),
        "ip": ip,
        "user_agent": (user_agent or "")[:255],
        "played_at": datetime.now(timezone.utc),
        "created_at": datetime.now(timezone.utc),
    }
    try:
        await db["playback_sessions"].insert_one(doc)
    except PyMongoError as e:
        logger.warning(f"Failed to log playback session for media {media_id}: {e}")


async def recent_sessions(db: AsyncIOMotorClient, media_id: str, limit: int = 50):
    sessions = []
    cursor = db["playback_sessions"].find({"media_id": str(media_id)}).sort("played_at", -1).limit(limit)
    async for s in cursor:
        sessions.append(s)
    return sessions
