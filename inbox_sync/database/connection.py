import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from inbox_sync.config import get_settings


logger = logging.getLogger(__name__)

_client: AsyncIOMotorClient | None = None


async def connect_to_mongo() -> None:
    global _client
    if _client is not None:
        return
    settings = get_settings()
    _client = AsyncIOMotorClient(settings.mongo_url, tz_aware=True)
    logger.info("Connected to MongoDB database %s", settings.mongo_db)


async def close_mongo_connection() -> None:
    global _client
    if _client is None:
        return
    _client.close()
    _client = None
    logger.info("Closed MongoDB connection")


def get_database() -> AsyncIOMotorDatabase:
    if _client is None:
        raise RuntimeError("MongoDB is not connected; call connect_to_mongo() first")
    return _client[get_settings().mongo_db]
