from typing import Dict, Iterable, List, Optional

from inbox_sync.schemas.message import ConversationSummary, PushEvent


class ConversationIndex:

    def __init__(self, operator_id: str) -> None:
        self.operator_id = operator_id
        self._summaries: Dict[str, ConversationSummary] = {}

    def __len__(self) -> int:
        return len(self._summaries)

    def get(self, conversation_key: str) -> Optional[ConversationSummary]:
        return self._summaries.get(conversation_key)

    def list_conversations(self, operator_id: Optional[str] = None) -> List[ConversationSummary]:
        if operator_id is not None and operator_id != self.operator_id:
            raise ValueError(f"index belongs to operator {self.operator_id!r}, not {operator_id!r}")
        return sorted(self._summaries.values(), key=lambda s: s.sort_key, reverse=True)

    def is_newer(self, event: PushEvent) -> bool:
        current = self._summaries.get(event.conversation_key)
        return current is None or event.sort_key > current.sort_key

    def upsert(self, summary: ConversationSummary) -> bool:
        current = self._summaries.get(summary.conversation_key)
        if current is not None and summary.sort_key <= current.sort_key:
            return False
        self._summaries[summary.conversation_key] = summary
        return True

    def merge(self, summaries: Iterable[ConversationSummary]) -> int:
        return sum(1 for summary in summaries if self.upsert(summary))
