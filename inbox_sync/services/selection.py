import asyncio
import logging
from typing import Optional

from inbox_sync.config import SyncSettings
from inbox_sync.repositories.message_repository import MessageRepository
from inbox_sync.services.sync_session import SyncSession
from inbox_sync.services.thread_cache import ThreadCache


logger = logging.getLogger(__name__)


class SelectionController:

    def __init__(self, operator_id: str, log: MessageRepository, bus, settings: SyncSettings, thread: ThreadCache) -> None:
        self.operator_id = operator_id
        self.thread = thread
        self.selected_key: Optional[str] = None
        self.session: Optional[SyncSession] = None
        self._log = log
        self._bus = bus
        self._settings = settings
        self._lock = asyncio.Lock()

    async def select(self, conversation_key: str) -> bool:
        """Switch to ``conversation_key``; returns ``False`` if it was already selected."""
        async with self._lock:
            if conversation_key == self.selected_key:
                return False
            await self._close_session()
            self.thread.reset(conversation_key)
            self.selected_key = conversation_key
            session = SyncSession.for_thread(
                self.operator_id, conversation_key, self._log, self._bus, self._settings, self.thread
            )
            self.session = session
            await session.start()
            logger.info("Selected conversation %s for operator %s", conversation_key, self.operator_id)
        # outside the lock: a newer select() closes this session and its result is dropped
        await session.refresh()
        return True

    async def deselect(self) -> None:
        async with self._lock:
            await self._close_session()
            self.thread.reset(None)
            self.selected_key = None

    async def close(self) -> None:
        await self.deselect()

    async def _close_session(self) -> None:
        session, self.session = self.session, None
        if session is not None:
            await session.close()
