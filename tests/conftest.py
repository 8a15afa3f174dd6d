import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest

from inbox_sync.config import SyncSettings
from inbox_sync.schemas.message import ConversationSummary, Message, PushEvent
from inbox_sync.utils.errors import SubscriptionDropped


OPERATOR = "seller-1"
T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


class FakeMessageLog:
    """In-memory message log with knobs for blocking and failing fetches."""

    def __init__(self) -> None:
        self.rows: List[Tuple[str, Message]] = []
        self.gates: Dict[str, asyncio.Event] = {}
        self.failures = 0
        self.thread_fetches: List[str] = []
        self.summary_fetches = 0
        self._seq = 0

    def add(self, conversation_key, direction, body, created_at=None, operator_id=OPERATOR, message_id=None) -> Message:
        self._seq += 1
        message = Message(
            id=message_id or f"{self._seq:024x}",
            conversation_key=conversation_key,
            direction=direction,
            body=body,
            created_at=created_at or at(self._seq),
        )
        self.rows.append((operator_id, message))
        return message

    async def append(self, operator_id, conversation_key, direction, body) -> Message:
        if not body or not body.strip():
            raise ValueError("Message body cannot be empty")
        return self.add(conversation_key, direction, body.strip(), operator_id=operator_id)

    async def _checkpoint(self, gate_name: str) -> None:
        gate = self.gates.get(gate_name)
        if gate is not None:
            await gate.wait()
        if self.failures:
            self.failures -= 1
            raise ConnectionError("backend hiccup")

    async def fetch_thread(self, operator_id, conversation_key) -> List[Message]:
        self.thread_fetches.append(conversation_key)
        await self._checkpoint(conversation_key)
        rows = [m for op, m in self.rows if op == operator_id and m.conversation_key == conversation_key]
        return sorted(rows, key=lambda m: m.sort_key)

    async def fetch_summaries(self, operator_id) -> List[ConversationSummary]:
        self.summary_fetches += 1
        await self._checkpoint("__index__")
        latest: Dict[str, Message] = {}
        for op, message in self.rows:
            if op != operator_id:
                continue
            current = latest.get(message.conversation_key)
            if current is None or message.sort_key > current.sort_key:
                latest[message.conversation_key] = message
        summaries = [ConversationSummary.from_message(m) for m in latest.values()]
        return sorted(summaries, key=lambda s: s.sort_key, reverse=True)

    async def get_message(self, operator_id, message_id) -> Optional[Message]:
        for op, message in self.rows:
            if op == operator_id and message.id == message_id:
                return message
        return None


class FakeSubscription:

    def __init__(self, operator_id, on_event, on_heartbeat) -> None:
        self.operator_id = operator_id
        self.on_event = on_event
        self.on_heartbeat = on_heartbeat
        self.cancelled = 0
        self._stop = asyncio.Event()
        self._error: Optional[Exception] = None

    async def run(self) -> None:
        await self._stop.wait()
        if self._error is not None:
            raise self._error

    async def cancel(self) -> None:
        self.cancelled += 1
        self._stop.set()

    def heartbeat(self) -> None:
        self.on_heartbeat()

    async def deliver(self, event: PushEvent) -> None:
        await self.on_event(event)

    def drop(self) -> None:
        self._error = SubscriptionDropped("connection reset by peer")
        self._stop.set()


class FakeBus:

    enabled = True

    def __init__(self) -> None:
        self.subscriptions: List[FakeSubscription] = []
        self.unsubscribed: List[FakeSubscription] = []
        self.published: List[PushEvent] = []

    async def subscribe(self, operator_id, on_event, on_heartbeat) -> FakeSubscription:
        subscription = FakeSubscription(operator_id, on_event, on_heartbeat)
        self.subscriptions.append(subscription)
        return subscription

    async def unsubscribe(self, subscription: FakeSubscription) -> None:
        self.unsubscribed.append(subscription)
        await subscription.cancel()

    async def publish(self, operator_id, event: PushEvent) -> None:
        self.published.append(event)

    async def close(self) -> None:
        return


@pytest.fixture
def log() -> FakeMessageLog:
    return FakeMessageLog()


@pytest.fixture
def bus() -> FakeBus:
    return FakeBus()


@pytest.fixture
def settings() -> SyncSettings:
    # long poll intervals: tests drive ticks through refresh() directly
    return SyncSettings(
        index_poll_interval_ms=60_000,
        thread_poll_interval_ms=60_000,
        fetch_timeout_ms=1_000,
        heartbeat_timeout_ms=60_000,
        heartbeat_interval_ms=60_000,
        resubscribe_backoff_ms=1,
        resubscribe_backoff_max_ms=5,
    )


@pytest.fixture
def eventually():
    async def _eventually(predicate, timeout: float = 2.0, message: str = "condition never became true"):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                pytest.fail(message)
            await asyncio.sleep(0.005)

    return _eventually
