from contextlib import asynccontextmanager
from typing import AsyncIterator

from inbox_sync.config import get_settings
from inbox_sync.database.connection import close_mongo_connection, connect_to_mongo, get_database
from inbox_sync.repositories.message_repository import MessageRepository
from inbox_sync.services.inbox_service import InboxService
from inbox_sync.utils.realtime_bus import close_bus, get_bus


@asynccontextmanager
async def lifespan() -> AsyncIterator[InboxService]:

    await connect_to_mongo()
    try:
        repo = MessageRepository(get_database())
        await repo.ensure_indexes()
        bus = await get_bus()
        yield InboxService(repo, bus, get_settings())
    finally:
        await close_bus()
        await close_mongo_connection()
