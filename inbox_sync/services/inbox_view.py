import logging
from typing import List, Optional

from inbox_sync.config import SyncSettings, get_settings
from inbox_sync.repositories.message_repository import MessageRepository
from inbox_sync.schemas.message import ConversationSummary, Message
from inbox_sync.services.conversation_index import ConversationIndex
from inbox_sync.services.selection import SelectionController
from inbox_sync.services.sync_session import SessionState, SyncSession
from inbox_sync.services.thread_cache import ThreadCache


logger = logging.getLogger(__name__)


class InboxView:
    """One operator's conversation list plus the open thread."""

    def __init__(self, operator_id: str, log: MessageRepository, bus, settings: Optional[SyncSettings] = None) -> None:
        self.operator_id = operator_id
        self.settings = settings or get_settings()
        self.index = ConversationIndex(operator_id)
        self.thread_cache = ThreadCache()
        self.selection = SelectionController(operator_id, log, bus, self.settings, self.thread_cache)
        self.index_session: Optional[SyncSession] = None
        self._log = log
        self._bus = bus

    async def __aenter__(self) -> "InboxView":
        try:
            await self.open()
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def open(self) -> None:
        if self.index_session is not None:
            raise RuntimeError("inbox view is already open")
        self.index_session = SyncSession.for_index(self.operator_id, self._log, self._bus, self.settings, self.index)
        await self.index_session.start()
        await self.index_session.refresh()
        logger.info("Opened inbox for operator %s", self.operator_id)

    async def close(self) -> None:
        await self.selection.close()
        if self.index_session is not None:
            await self.index_session.close()
        logger.info("Closed inbox for operator %s", self.operator_id)

    @property
    def conversations(self) -> List[ConversationSummary]:
        return self.index.list_conversations()

    def list_conversations(self, operator_id: str) -> List[ConversationSummary]:
        return self.index.list_conversations(operator_id)

    @property
    def selected_key(self) -> Optional[str]:
        return self.selection.selected_key

    @property
    def thread(self) -> List[Message]:
        if self.selected_key is None:
            return []
        return self.thread_cache.get_thread(self.selected_key)

    async def select(self, conversation_key: str) -> bool:
        return await self.selection.select(conversation_key)

    async def deselect(self) -> None:
        await self.selection.deselect()

    @property
    def sessions(self) -> List[SyncSession]:
        return [s for s in (self.index_session, self.selection.session) if s is not None and not s.closed]

    @property
    def live_updates_degraded(self) -> bool:
        return any(s.state is SessionState.DEGRADED for s in self.sessions)
