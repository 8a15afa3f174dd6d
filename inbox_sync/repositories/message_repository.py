import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import ValidationError
from pymongo import ASCENDING, DESCENDING

from inbox_sync.models.message import Direction, MessageDocument
from inbox_sync.schemas.message import ConversationSummary, Message


logger = logging.getLogger(__name__)


class MessageRepository:
    """Append-only message log. Rows are never updated or deleted."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["whatsapp_messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index(
            [("operator_id", ASCENDING), ("conversation_key", ASCENDING), ("created_at", ASCENDING), ("_id", ASCENDING)]
        )
        await self.collection.create_index([("operator_id", ASCENDING), ("created_at", DESCENDING)])

    async def append(self, operator_id: str, conversation_key: str, direction: Direction, body: str) -> Message:
        if not body or not body.strip():
            raise ValueError("Message body cannot be empty")
        if direction not in ("inbound", "outbound"):
            raise ValueError(f"Unknown direction: {direction!r}")
        doc: MessageDocument = {
            "operator_id": operator_id,
            "conversation_key": conversation_key,
            "direction": direction,
            "body": body.strip(),
            # millisecond precision, the same resolution BSON dates round-trip with
            "created_at": _now_ms(),
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = str(result.inserted_id)
        return Message.from_document(doc)

    async def fetch_thread(self, operator_id: str, conversation_key: str) -> List[Message]:
        query = {"operator_id": operator_id, "conversation_key": conversation_key}
        cursor = self.collection.find(query).sort([("created_at", ASCENDING), ("_id", ASCENDING)])
        items = await cursor.to_list(length=None)
        return _valid_messages(items)

    async def fetch_summaries(self, operator_id: str) -> List[ConversationSummary]:
        pipeline: List[Dict[str, Any]] = [
            {"$match": {"operator_id": operator_id}},
            {"$sort": {"created_at": DESCENDING, "_id": DESCENDING}},
            {
                "$group": {
                    "_id": "$conversation_key",
                    "last_message_id": {"$first": "$_id"},
                    "last_message_body": {"$first": "$body"},
                    "last_message_at": {"$first": "$created_at"},
                }
            },
        ]
        cursor = self.collection.aggregate(pipeline)
        rows = await cursor.to_list(length=None)
        summaries: List[ConversationSummary] = []
        for row in rows:
            try:
                summaries.append(
                    ConversationSummary(
                        conversation_key=row["_id"],
                        last_message_id=str(row["last_message_id"]),
                        last_message_body=row["last_message_body"],
                        last_message_at=row["last_message_at"],
                    )
                )
            except (ValidationError, KeyError):
                logger.warning("Skipping unreadable summary for conversation %r", row.get("_id"))
        summaries.sort(key=lambda s: s.sort_key, reverse=True)
        return summaries

    async def get_message(self, operator_id: str, message_id: str) -> Optional[Message]:
        try:
            oid = ObjectId(message_id)
        except (InvalidId, TypeError):
            return None
        doc = await self.collection.find_one({"_id": oid, "operator_id": operator_id})
        if not doc:
            return None
        messages = _valid_messages([doc])
        return messages[0] if messages else None


def _valid_messages(docs: Iterable[Dict[str, Any]]) -> List[Message]:
    messages = []
    for doc in docs:
        try:
            messages.append(Message.from_document(doc))
        except (ValidationError, KeyError):
            logger.warning("Skipping unreadable message row %s", doc.get("_id"))
    return messages


def _now_ms() -> datetime:
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)
