# gallery/crud/media.py
from datetime import datetime, timezone
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient


async def get_media_by_id(db: AsyncIOMotorClient, media_id: str):
    """Gets a media item by its public id."""
    return await db["media_items"].find_one({"media_id": media_id})


async def set_processing(db: AsyncIOMotorClient, media_id: str, source_path: Optional[str] = None):
    """Marks a media item as being packaged (creating it if needed)."""
    fields = {"status": "processing", "error_message": None, "updated_at": datetime.now(timezone.utc)}
    if source_path:
        fields["source_path"] = source_path
    await db["media_items"].update_one({"media_id": media_id}, {"$set": fields}, upsert=True)


async def set_ready(db: AsyncIOMotorClient, media_id: str, hls_meta: dict):
    """Records the published rendition set."""
    await db["media_items"].update_one(
        {"media_id": media_id},
        {"$set": {"status": "ready", "hls": hls_meta, "error_message": None, "updated_at": datetime.now(timezone.utc)}},
    )


async def set_failed(db: AsyncIOMotorClient, media_id: str, message: str):
    """Records a packaging failure; the previous rendition (if any) stays published."""
    await db["media_items"].update_one(
        {"media_id": media_id},
        {"$set": {"status": "failed", "error_message": message[:400], "updated_at": datetime.now(timezone.utc)}},
    )
