import logging
from typing import Optional

from redis.exceptions import RedisError

from inbox_sync.config import SyncSettings, get_settings
from inbox_sync.models.message import Direction
from inbox_sync.repositories.message_repository import MessageRepository
from inbox_sync.schemas.message import Message, PushEvent
from inbox_sync.services.inbox_view import InboxView
from inbox_sync.utils.errors import InboxSyncError


logger = logging.getLogger(__name__)


class InboxService:

    def __init__(self, message_repo: MessageRepository, bus, settings: Optional[SyncSettings] = None) -> None:
        self._message_repo = message_repo
        self._bus = bus
        self._settings = settings or get_settings()

    async def append_message(self, operator_id: str, conversation_key: str, direction: Direction, body: str) -> Message:
        message = await self._message_repo.append(operator_id, conversation_key, direction, body)
        if getattr(self._bus, "enabled", False):
            try:
                await self._bus.publish(operator_id, PushEvent.from_message(message))
            except (InboxSyncError, RedisError, OSError) as exc:
                # the row is durable; pollers will pick it up on their next tick
                logger.warning("Publishing message %s failed: %s", message.id, exc)
        return message

    def open_inbox(self, operator_id: str) -> InboxView:
        return InboxView(operator_id, self._message_repo, self._bus, self._settings)
