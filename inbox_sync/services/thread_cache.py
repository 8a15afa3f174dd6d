from bisect import insort
from typing import Iterable, List, Optional, Set

from inbox_sync.schemas.message import Message
from inbox_sync.utils.errors import StaleSelection


class ThreadCache:
    """Messages of the selected conversation, sorted by (created_at, id)."""

    def __init__(self) -> None:
        self.conversation_key: Optional[str] = None
        self._messages: List[Message] = []
        self._ids: Set[str] = set()

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._ids

    def reset(self, conversation_key: Optional[str]) -> None:
        self.conversation_key = conversation_key
        self._messages = []
        self._ids = set()

    def get_thread(self, conversation_key: str) -> List[Message]:
        if conversation_key != self.conversation_key:
            return []
        return list(self._messages)

    def append_if_new(self, message: Message) -> bool:
        if message.conversation_key != self.conversation_key:
            raise StaleSelection(self.conversation_key, message.conversation_key)
        if message.id in self._ids:
            return False
        insort(self._messages, message, key=lambda m: m.sort_key)
        self._ids.add(message.id)
        return True

    def merge(self, messages: Iterable[Message]) -> int:
        # validate the whole batch first so a bad batch never half-applies
        batch = list(messages)
        for message in batch:
            if message.conversation_key != self.conversation_key:
                raise StaleSelection(self.conversation_key, message.conversation_key)
        return sum(1 for message in batch if self.append_if_new(message))
