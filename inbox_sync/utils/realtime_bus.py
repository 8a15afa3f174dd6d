import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

import redis.asyncio as redis
from pydantic import ValidationError
from redis.exceptions import RedisError

from inbox_sync.config import SyncSettings, get_settings
from inbox_sync.schemas.message import PushEvent
from inbox_sync.utils.errors import SubscriptionDropped


logger = logging.getLogger(__name__)

EventHandler = Callable[[PushEvent], Awaitable[None]]
HeartbeatHandler = Callable[[], None]


def channel_for(operator_id: str) -> str:
    return f"inbox:{operator_id}"


async def _dispatch(on_event: EventHandler, event: PushEvent) -> None:
    try:
        await on_event(event)
    except asyncio.CancelledError:
        raise
    except Exception:
        # one bad event must not take the subscription down
        logger.exception("Push handler failed for message %s", event.message_id)


class NoopBus:
    """Push disabled: nothing is published and subscriptions never deliver."""

    enabled = False

    async def publish(self, operator_id: str, event: PushEvent) -> None:
        return

    async def subscribe(self, operator_id: str, on_event: EventHandler, on_heartbeat: HeartbeatHandler):
        class _Sub:
            async def run(self):
                await asyncio.Future()

            async def cancel(self):
                return

        return _Sub()

    async def unsubscribe(self, subscription) -> None:
        await subscription.cancel()

    async def close(self) -> None:
        return


class LocalBus:
    """In-process fanout for single-process deployments without Redis."""

    enabled = True

    def __init__(self, heartbeat_interval: float = 10.0) -> None:
        self.active_subscriptions: Dict[str, List[asyncio.Queue]] = {}
        self._heartbeat_interval = heartbeat_interval

    async def publish(self, operator_id: str, event: PushEvent) -> None:
        for queue in list(self.active_subscriptions.get(channel_for(operator_id), [])):
            queue.put_nowait(event)

    async def subscribe(self, operator_id: str, on_event: EventHandler, on_heartbeat: HeartbeatHandler):
        channel = channel_for(operator_id)
        queue: asyncio.Queue = asyncio.Queue()
        self.active_subscriptions.setdefault(channel, []).append(queue)
        bus = self

        class _Sub:
            _running = True

            async def run(self_inner):
                on_heartbeat()
                while self_inner._running:
                    try:
                        event = await asyncio.wait_for(queue.get(), timeout=bus._heartbeat_interval)
                    except asyncio.TimeoutError:
                        on_heartbeat()
                        continue
                    on_heartbeat()
                    await _dispatch(on_event, event)

            async def cancel(self_inner):
                self_inner._running = False
                bus._detach(channel, queue)

        return _Sub()

    async def unsubscribe(self, subscription) -> None:
        await subscription.cancel()

    async def close(self) -> None:
        self.active_subscriptions.clear()

    def _detach(self, channel: str, queue: asyncio.Queue) -> None:
        if channel in self.active_subscriptions:
            try:
                self.active_subscriptions[channel].remove(queue)
            except ValueError:
                pass
            if not self.active_subscriptions[channel]:
                del self.active_subscriptions[channel]


class RedisBus:

    enabled = True

    def __init__(self, url: str, heartbeat_interval: float = 10.0) -> None:
        self._redis = redis.from_url(url)
        self._heartbeat_interval = heartbeat_interval

    async def publish(self, operator_id: str, event: PushEvent) -> None:
        await self._redis.publish(channel_for(operator_id), event.model_dump_json())

    async def subscribe(self, operator_id: str, on_event: EventHandler, on_heartbeat: HeartbeatHandler):
        channel = channel_for(operator_id)
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(channel)
        except (RedisError, OSError) as exc:
            await pubsub.aclose()
            raise SubscriptionDropped(f"could not subscribe to {channel}") from exc
        interval = self._heartbeat_interval

        class _Sub:
            _running = True

            async def run(self_inner):
                loop = asyncio.get_running_loop()
                next_ping = loop.time()
                while self_inner._running:
                    try:
                        if loop.time() >= next_ping:
                            await pubsub.ping()
                            next_ping = loop.time() + interval
                        msg = await pubsub.get_message(ignore_subscribe_messages=False, timeout=1.0)
                    except (RedisError, OSError) as exc:
                        if not self_inner._running:
                            return
                        raise SubscriptionDropped(f"lost subscription to {channel}") from exc
                    if not msg:
                        continue
                    kind = msg.get("type")
                    if kind in ("subscribe", "pong"):
                        on_heartbeat()
                    elif kind == "unsubscribe" and self_inner._running:
                        raise SubscriptionDropped(f"server unsubscribed {channel}")
                    elif kind == "message":
                        on_heartbeat()
                        data = msg.get("data")
                        try:
                            if isinstance(data, bytes):
                                data = data.decode("utf-8")
                            event = PushEvent.model_validate_json(data)
                        except (UnicodeDecodeError, ValidationError):
                            logger.warning("Ignoring malformed push payload on %s", channel)
                            continue
                        await _dispatch(on_event, event)

            async def cancel(self_inner):
                if not self_inner._running:
                    return
                self_inner._running = False
                try:
                    await pubsub.unsubscribe(channel)
                except (RedisError, OSError):
                    logger.debug("Unsubscribe from %s failed; closing anyway", channel)
                await pubsub.aclose()

        return _Sub()

    async def unsubscribe(self, subscription) -> None:
        await subscription.cancel()

    async def close(self) -> None:
        await self._redis.aclose()


_bus = None


def build_bus(settings: SyncSettings):
    if not settings.push_enabled:
        return NoopBus()
    interval = settings.heartbeat_interval_ms / 1000.0
    if settings.redis_url:
        return RedisBus(settings.redis_url, heartbeat_interval=interval)
    return LocalBus(heartbeat_interval=interval)


async def get_bus(settings: Optional[SyncSettings] = None):
    global _bus
    if _bus is not None:
        return _bus
    _bus = build_bus(settings or get_settings())
    logger.info("Realtime bus: %s", type(_bus).__name__)
    return _bus


async def close_bus() -> None:
    global _bus
    bus, _bus = _bus, None
    if bus is not None:
        await bus.close()
