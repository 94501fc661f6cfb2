# gallery/db/mongodb_utils.py
import logging
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING
from gallery.core.config import MONGO_DATABASE_URL, MONGO_DATABASE_NAME

logger = logging.getLogger(__name__)


class DataBase:
    client: AsyncIOMotorClient = None


db = DataBase()


async def get_database() -> AsyncIOMotorClient:
    return db.client[MONGO_DATABASE_NAME]


async def ensure_indexes(database) -> None:
    """Indexes backing the fingerprint lookup table and session history."""
    await database["media_items"].create_index([("media_id", ASCENDING)], unique=True)
    await database["media_fingerprints"].create_index(
        [("user_id", ASCENDING), ("media_id", ASCENDING)], unique=True
    )
    await database["media_fingerprints"].create_index([("media_id", ASCENDING), ("fingerprint_id", ASCENDING)])
    await database["playback_sessions"].create_index([("media_id", ASCENDING), ("played_at", DESCENDING)])
    await database["playback_sessions"].create_index([("played_at", ASCENDING)])
    await database["forensics_exports"].create_index([("cutoff_at", ASCENDING)])


async def connect_to_mongo():
    logger.info("Connecting to MongoDB...")
    db.client = AsyncIOMotorClient(MONGO_DATABASE_URL)
    await ensure_indexes(db.client[MONGO_DATABASE_NAME])
    logger.info("Successfully connected to MongoDB!")


async def close_mongo_connection():
    logger.info("Closing MongoDB connection...")
    db.client.close()
    logger.info("MongoDB connection closed.")
