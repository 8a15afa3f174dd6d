import pytest

from conftest import OPERATOR
from inbox_sync.services.inbox_service import InboxService
from inbox_sync.services.sync_session import SessionState
from inbox_sync.utils.realtime_bus import LocalBus, NoopBus


pytestmark = pytest.mark.asyncio

KEY = "961700000001"


async def test_live_inbox_end_to_end_over_local_bus(log, settings, eventually):
    bus = LocalBus(heartbeat_interval=60)
    service = InboxService(log, bus, settings)
    log.add("961700000002", "inbound", "older chat")

    async with service.open_inbox(OPERATOR) as view:
        assert [s.conversation_key for s in view.conversations] == ["961700000002"]
        await eventually(lambda: not view.live_updates_degraded)

        await view.select(KEY)
        await eventually(lambda: not view.live_updates_degraded)

        incoming = await service.append_message(OPERATOR, KEY, "inbound", "  hi  ")
        await eventually(lambda: [m.id for m in view.thread] == [incoming.id])
        reply = await service.append_message(OPERATOR, KEY, "outbound", "hello")
        await eventually(lambda: [m.id for m in view.thread] == [incoming.id, reply.id])

        await eventually(lambda: view.conversations[0].conversation_key == KEY)
        assert view.conversations[0].last_message_body == "hello"
        assert view.list_conversations(OPERATOR) == view.conversations

    assert bus.active_subscriptions == {}
    assert view.sessions == []


async def test_inbox_without_push_reports_degraded_and_still_converges(log, settings, eventually):
    settings = settings.model_copy(update={"index_poll_interval_ms": 20, "thread_poll_interval_ms": 20})
    service = InboxService(log, NoopBus(), settings)

    async with service.open_inbox(OPERATOR) as view:
        assert view.conversations == []
        assert view.live_updates_degraded

        message = await service.append_message(OPERATOR, KEY, "inbound", "hi")
        await eventually(lambda: [s.conversation_key for s in view.conversations] == [KEY])

        await view.select(KEY)
        assert view.thread == [message]
        reply = await service.append_message(OPERATOR, KEY, "outbound", "hello")
        await eventually(lambda: view.thread == [message, reply])
        assert all(s.state is SessionState.DEGRADED for s in view.sessions)


async def test_index_fetch_failure_keeps_previous_summaries(log, bus, settings):
    log.add(KEY, "inbound", "hi")
    service = InboxService(log, bus, settings)
    async with service.open_inbox(OPERATOR) as view:
        log.failures = 1
        assert await view.index_session.refresh() is False
        assert [s.conversation_key for s in view.conversations] == [KEY]


async def test_append_publishes_full_row(log, bus, settings):
    service = InboxService(log, bus, settings)
    message = await service.append_message(OPERATOR, KEY, "outbound", "your order shipped")
    assert len(bus.published) == 1
    event = bus.published[0]
    assert event.has_row
    assert event.to_message() == message


async def test_append_rejects_blank_body(log, bus, settings):
    service = InboxService(log, bus, settings)
    with pytest.raises(ValueError):
        await service.append_message(OPERATOR, KEY, "outbound", "   ")
    assert bus.published == []


async def test_deselect_returns_to_empty_thread(log, bus, settings):
    log.add(KEY, "inbound", "hi")
    async with InboxService(log, bus, settings).open_inbox(OPERATOR) as view:
        await view.select(KEY)
        assert len(view.thread) == 1
        await view.deselect()
        assert view.selected_key is None
        assert view.thread == []
        assert len(view.sessions) == 1


async def test_open_twice_is_refused(log, bus, settings):
    async with InboxService(log, bus, settings).open_inbox(OPERATOR) as view:
        with pytest.raises(RuntimeError):
            await view.open()


async def test_connecting_sessions_are_not_reported_as_degraded(log, bus, settings):
    log.add(KEY, "inbound", "hi")
    async with InboxService(log, bus, settings).open_inbox(OPERATOR) as view:
        await view.select(KEY)
        assert all(s.state is SessionState.CONNECTING for s in view.sessions)
        assert not view.live_updates_degraded

