import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pymongo.errors import PyMongoError

from inbox_sync.config import SyncSettings
from inbox_sync.repositories.message_repository import MessageRepository
from inbox_sync.schemas.message import ConversationSummary, Message, PushEvent
from inbox_sync.services.conversation_index import ConversationIndex
from inbox_sync.services.thread_cache import ThreadCache
from inbox_sync.utils.errors import StaleSelection, SubscriptionDropped, TransientFetchError


logger = logging.getLogger(__name__)

# errors a fetch may raise that are worth retrying on the next tick
TRANSIENT_ERRORS = (PyMongoError, OSError, asyncio.TimeoutError, TransientFetchError)


class SessionScope(str, Enum):
    INDEX = "index"
    THREAD = "thread"


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    DEGRADED = "degraded"
    CLOSED = "closed"


class SyncSession:
    """Keeps one cache in step with the message log through poll and push."""

    def __init__(
        self,
        scope: SessionScope,
        operator_id: str,
        log: MessageRepository,
        bus,
        settings: SyncSettings,
        index: Optional[ConversationIndex] = None,
        thread: Optional[ThreadCache] = None,
        conversation_key: Optional[str] = None,
    ) -> None:
        if scope is SessionScope.INDEX and index is None:
            raise ValueError("index scope needs a ConversationIndex")
        if scope is SessionScope.THREAD and (thread is None or conversation_key is None):
            raise ValueError("thread scope needs a ThreadCache and a conversation key")
        self.scope = scope
        self.operator_id = operator_id
        self.conversation_key = conversation_key
        self.poll_interval_ms = (
            settings.index_poll_interval_ms if scope is SessionScope.INDEX else settings.thread_poll_interval_ms
        )
        self.last_poll_at: Optional[datetime] = None
        self.subscription = None
        self.state = SessionState.IDLE
        self.consecutive_fetch_failures = 0
        self.last_error: Optional[Exception] = None
        self._log = log
        self._bus = bus
        self._settings = settings
        self._index = index
        self._thread = thread
        self._tasks: List[asyncio.Task] = []
        self._last_heartbeat: Optional[float] = None
        self._resubscribe_attempt = 0

    @classmethod
    def for_index(cls, operator_id: str, log, bus, settings: SyncSettings, index: ConversationIndex) -> "SyncSession":
        return cls(SessionScope.INDEX, operator_id, log, bus, settings, index=index)

    @classmethod
    def for_thread(
        cls, operator_id: str, conversation_key: str, log, bus, settings: SyncSettings, thread: ThreadCache
    ) -> "SyncSession":
        return cls(SessionScope.THREAD, operator_id, log, bus, settings, thread=thread, conversation_key=conversation_key)

    def __repr__(self) -> str:
        target = self.conversation_key if self.scope is SessionScope.THREAD else self.operator_id
        return f"<SyncSession {self.scope.value}:{target} {self.state.value}>"

    @property
    def closed(self) -> bool:
        return self.state is SessionState.CLOSED

    @property
    def live(self) -> bool:
        return self.state is SessionState.ACTIVE

    async def __aenter__(self) -> "SyncSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def start(self) -> None:
        if self.state is not SessionState.IDLE:
            raise RuntimeError(f"{self!r} was already started")
        if getattr(self._bus, "enabled", False):
            self._set_state(SessionState.CONNECTING)
            self._spawn(self._push_loop())
        else:
            # push disabled entirely; polling alone keeps the cache converged
            self._set_state(SessionState.DEGRADED)
        self._spawn(self._poll_loop())

    async def close(self) -> None:
        if self.closed:
            return
        self._set_state(SessionState.CLOSED)
        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        self._tasks = []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self._release_subscription()

    # -- poll ---------------------------------------------------------------

    async def refresh(self) -> bool:
        """Fetch the whole scope once and reconcile it into the cache.

        Returns ``False`` when the fetch failed or the result was discarded
        because the session closed or the selection moved on meanwhile.
        """
        if self.closed:
            return False
        try:
            result = await asyncio.wait_for(self._fetch(), timeout=self._settings.fetch_timeout_ms / 1000.0)
        except TRANSIENT_ERRORS as exc:
            if self.closed:
                return False
            self.consecutive_fetch_failures += 1
            self.last_error = exc if isinstance(exc, TransientFetchError) else TransientFetchError(self.scope.value, exc)
            logger.warning(
                "%r fetch failed (%d in a row), keeping last known state: %s",
                self, self.consecutive_fetch_failures, self.last_error,
            )
            return False
        if self.closed:
            logger.debug("%r discarding response that arrived after close", self)
            return False
        try:
            self._apply_batch(result)
        except StaleSelection as exc:
            logger.debug("%r discarding stale response: %s", self, exc)
            return False
        self.last_poll_at = datetime.now(timezone.utc)
        self.consecutive_fetch_failures = 0
        self.last_error = None
        return True

    async def _fetch(self):
        if self.scope is SessionScope.INDEX:
            return await self._log.fetch_summaries(self.operator_id)
        return await self._log.fetch_thread(self.operator_id, self.conversation_key)

    def _apply_batch(self, result) -> None:
        if self.scope is SessionScope.INDEX:
            self._index.merge(result)
            return
        if self._thread.conversation_key != self.conversation_key:
            raise StaleSelection(self._thread.conversation_key, self.conversation_key)
        self._thread.merge(result)

    async def _poll_loop(self) -> None:
        interval = self.poll_interval_ms / 1000.0
        while not self.closed:
            await asyncio.sleep(interval)
            try:
                await self.refresh()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("%r poll tick crashed; retrying next tick", self)

    # -- push ---------------------------------------------------------------

    async def _push_loop(self) -> None:
        while not self.closed:
            try:
                subscription = await self._bus.subscribe(self.operator_id, self._on_event, self._on_heartbeat)
            except (SubscriptionDropped,) + TRANSIENT_ERRORS as exc:
                logger.warning("%r could not subscribe: %s", self, exc)
            else:
                self.subscription = subscription
                self._last_heartbeat = None
                if self.state is SessionState.DEGRADED:
                    self._set_state(SessionState.CONNECTING)
                try:
                    await self._watch(subscription)
                except SubscriptionDropped as exc:
                    logger.warning("%r subscription dropped: %s", self, exc)
                    self.last_error = exc
                await self._release_subscription()
            if self.closed:
                return
            self._set_state(SessionState.DEGRADED)
            self._resubscribe_attempt += 1
            await asyncio.sleep(self._settings.backoff_seconds(self._resubscribe_attempt))

    async def _watch(self, subscription) -> None:
        loop = asyncio.get_running_loop()
        timeout = self._settings.heartbeat_timeout_ms / 1000.0
        opened_at = loop.time()
        runner = asyncio.ensure_future(subscription.run())
        try:
            while True:
                last = self._last_heartbeat if self._last_heartbeat is not None else opened_at
                remaining = timeout - (loop.time() - last)
                if remaining <= 0:
                    raise SubscriptionDropped(f"no heartbeat within {timeout:.1f}s")
                done, _ = await asyncio.wait({runner}, timeout=remaining)
                if runner in done:
                    exc = runner.exception()
                    if isinstance(exc, SubscriptionDropped):
                        raise exc
                    if exc is not None:
                        raise SubscriptionDropped(f"subscription failed: {exc!r}") from exc
                    raise SubscriptionDropped("subscription ended")
        finally:
            if not runner.done():
                runner.cancel()
            await asyncio.gather(runner, return_exceptions=True)

    async def _release_subscription(self) -> None:
        subscription, self.subscription = self.subscription, None
        if subscription is None:
            return
        try:
            await asyncio.shield(self._bus.unsubscribe(subscription))
        except TRANSIENT_ERRORS + (SubscriptionDropped,) as exc:
            logger.warning("%r unsubscribe failed: %s", self, exc)

    def _on_heartbeat(self) -> None:
        if self.closed:
            return
        self._last_heartbeat = asyncio.get_running_loop().time()
        self._resubscribe_attempt = 0
        if self.state is SessionState.CONNECTING:
            self._set_state(SessionState.ACTIVE)

    async def _on_event(self, event: PushEvent) -> None:
        if self.closed:
            return
        self._on_heartbeat()
        if self.scope is SessionScope.INDEX:
            await self._reconcile_index_event(event)
        else:
            await self._reconcile_thread_event(event)

    async def _reconcile_index_event(self, event: PushEvent) -> None:
        if not self._index.is_newer(event):
            return
        if event.has_row:
            self._index.upsert(ConversationSummary.from_message(event.to_message()))
            return
        # no preview in the notification; re-derive the summaries instead
        await self.refresh()

    async def _reconcile_thread_event(self, event: PushEvent) -> None:
        if event.conversation_key != self.conversation_key or event.message_id in self._thread:
            return
        message: Optional[Message]
        if event.has_row:
            message = event.to_message()
        else:
            try:
                message = await self._log.get_message(self.operator_id, event.message_id)
            except TRANSIENT_ERRORS as exc:
                logger.warning("%r could not resolve pushed message %s: %s", self, event.message_id, exc)
                return
            if self.closed:
                return
            if message is None:
                logger.debug("%r pushed message %s not found yet", self, event.message_id)
                return
        try:
            self._thread.append_if_new(message)
        except StaleSelection as exc:
            logger.debug("%r discarding stale event: %s", self, exc)

    # -- helpers ------------------------------------------------------------

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.append(task)
        return task

    def _set_state(self, state: SessionState) -> None:
        if state is self.state:
            return
        logger.info("%r -> %s", self, state.value)
        self.state = state
