from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, field_validator

from inbox_sync.models.message import Direction


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        # Mongo hands back naive datetimes unless tz_aware is set
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


SortKey = Tuple[datetime, str]


class Message(BaseModel):

    model_config = ConfigDict(frozen=True)

    id: str
    conversation_key: str
    direction: Direction
    body: str
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @property
    def sort_key(self) -> SortKey:
        return (self.created_at, self.id)

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Message":
        return cls(
            id=str(doc["_id"]),
            conversation_key=doc["conversation_key"],
            direction=doc["direction"],
            body=doc["body"],
            created_at=doc["created_at"],
        )


class ConversationSummary(BaseModel):

    model_config = ConfigDict(frozen=True)

    conversation_key: str
    last_message_id: str
    last_message_body: str
    last_message_at: datetime
    # unread tracking is not implemented yet; always zero
    unread_count: int = 0

    @field_validator("last_message_at")
    @classmethod
    def normalize_last_message_at(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @property
    def sort_key(self) -> SortKey:
        return (self.last_message_at, self.last_message_id)

    @classmethod
    def from_message(cls, message: Message) -> "ConversationSummary":
        return cls(
            conversation_key=message.conversation_key,
            last_message_id=message.id,
            last_message_body=message.body,
            last_message_at=message.created_at,
        )


class PushEvent(BaseModel):
    """Change notification for one appended row.

    ``direction`` and ``body`` are only present when the transport carries the
    full row; otherwise the row has to be resolved from the message log.
    """

    model_config = ConfigDict(frozen=True)

    conversation_key: str
    message_id: str
    created_at: datetime
    direction: Optional[Direction] = None
    body: Optional[str] = None

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @property
    def sort_key(self) -> SortKey:
        return (self.created_at, self.message_id)

    @property
    def has_row(self) -> bool:
        return self.direction is not None and self.body is not None

    def to_message(self) -> Message:
        if not self.has_row:
            raise ValueError("push event does not carry the message row")
        return Message(
            id=self.message_id,
            conversation_key=self.conversation_key,
            direction=self.direction,
            body=self.body,
            created_at=self.created_at,
        )

    @classmethod
    def from_message(cls, message: Message) -> "PushEvent":
        return cls(
            conversation_key=message.conversation_key,
            message_id=message.id,
            created_at=message.created_at,
            direction=message.direction,
            body=message.body,
        )
