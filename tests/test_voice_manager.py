import asyncio

import pytest

from core.errors import VoiceConnectionError
from core.interfaces import TransportEvent
from systems.voice_manager import ConnectionManager, ConnectionState
from tests.conftest import BlockingSleep, FakeSink, FakeTransport, RecordingSleep, settle


def make_manager(sleep=None, **kwargs):
    transport = FakeTransport()
    events = []
    manager = ConnectionManager(
        7,
        transport,
        FakeSink(),
        sleep=sleep or RecordingSleep(),
        on_destroyed=lambda: events.append("destroyed"),
        on_reconnected=lambda: events.append("reconnected"),
        **kwargs,
    )
    return manager, transport, events


@pytest.mark.asyncio
async def test_ensure_joins_once_per_channel(channel):
    manager, transport, _ = make_manager()

    first = await manager.ensure(channel)
    second = await manager.ensure(channel)

    assert first is second
    assert len(transport.handles) == 1
    assert manager.state == ConnectionState.READY
    assert manager.channel_id == channel.id


@pytest.mark.asyncio
async def test_ensure_other_channel_replaces_connection(channel, other_channel):
    manager, transport, events = make_manager()
    old = await manager.ensure(channel)
    new = await manager.ensure(other_channel)

    assert old.destroyed
    assert new is not old
    assert manager.channel_id == other_channel.id
    assert manager.is_ready


@pytest.mark.asyncio
async def test_join_failure_raises_voice_error(channel):
    manager, transport, _ = make_manager()
    transport.join_error = RuntimeError("gateway said no")

    with pytest.raises(VoiceConnectionError):
        await manager.ensure(channel)
    assert manager.state == ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_reconnect_succeeds_after_backoff(channel):
    sleep = RecordingSleep()
    manager, transport, events = make_manager(sleep)
    handle = await manager.ensure(channel)
    handle.reconnect_results = [ConnectionError("still down")]

    handle.emit(TransportEvent.DISCONNECTED)
    assert manager.state == ConnectionState.RECONNECTING
    await manager._reconnect_task

    assert manager.is_ready
    assert sleep.delays == [1, 2]
    assert events == ["reconnected"]


@pytest.mark.asyncio
async def test_reconnect_gives_up_and_destroys(channel):
    sleep = RecordingSleep()
    manager, transport, events = make_manager(sleep)
    handle = await manager.ensure(channel)
    handle.reconnect_results = [ConnectionError("down")] * 10

    handle.emit(TransportEvent.DISCONNECTED)
    await manager._reconnect_task

    assert sleep.delays == [1, 2, 5, 10, 30]
    assert handle.reconnects == 5
    assert handle.destroyed
    assert manager.state == ConnectionState.DESTROYED
    assert events == ["destroyed"]


@pytest.mark.asyncio
async def test_transport_ready_cancels_pending_reconnect(channel):
    manager, transport, events = make_manager(BlockingSleep())
    handle = await manager.ensure(channel)

    handle.emit(TransportEvent.DISCONNECTED)
    await settle()
    handle.emit(TransportEvent.READY)
    await settle()

    assert manager.is_ready
    assert handle.reconnects == 0
    assert events == ["reconnected"]


@pytest.mark.asyncio
async def test_ensure_waiting_on_reconnect_returns_when_transport_heals(channel):
    manager, transport, events = make_manager(BlockingSleep())
    handle = await manager.ensure(channel)
    handle.emit(TransportEvent.DISCONNECTED)
    await settle()

    waiter = asyncio.create_task(manager.ensure(channel))
    await settle()
    assert not waiter.done()

    handle.emit(TransportEvent.READY)
    assert await asyncio.wait_for(waiter, 1) is handle
    assert manager.is_ready
    assert len(transport.handles) == 1


def test_reconnect_delay_clamps_to_last_entry():
    manager, _, _ = make_manager()
    assert manager.reconnect_delay(1) == 1
    assert manager.reconnect_delay(5) == 30
    assert manager.reconnect_delay(9) == 30


@pytest.mark.asyncio
async def test_idle_timer_destroys_connection(channel):
    sleep = RecordingSleep()
    manager, transport, events = make_manager(sleep, idle_timeout=60)
    handle = await manager.ensure(channel)

    manager.arm_idle_timer()
    await settle()

    assert sleep.delays == [60]
    assert handle.destroyed
    assert events == ["destroyed"]


@pytest.mark.asyncio
async def test_ensure_cancels_idle_timer(channel):
    manager, transport, events = make_manager(BlockingSleep(), idle_timeout=60)
    handle = await manager.ensure(channel)

    manager.arm_idle_timer()
    await settle()
    assert manager.idle_timer_armed

    await manager.ensure(channel)
    await settle()
    assert not manager.idle_timer_armed
    assert not handle.destroyed


@pytest.mark.asyncio
async def test_destroy_is_idempotent(channel):
    manager, transport, events = make_manager()
    await manager.ensure(channel)

    await manager.destroy()
    await manager.destroy()

    assert events == ["destroyed"]
    assert manager.state == ConnectionState.DESTROYED


@pytest.mark.asyncio
async def test_transport_destroyed_event_tears_down(channel):
    manager, transport, events = make_manager()
    handle = await manager.ensure(channel)

    handle.emit(TransportEvent.DESTROYED)
    await settle()

    assert handle.destroyed
    assert manager.handle is None
    assert events == ["destroyed"]


@pytest.mark.asyncio
async def test_transport_destroyed_teardown_task_is_kept(channel):
    manager, transport, events = make_manager()
    handle = await manager.ensure(channel)

    handle.emit(TransportEvent.DESTROYED)
    task = manager._destroy_task
    assert task is not None
    await task

    assert handle.destroyed
    assert manager.state == ConnectionState.DESTROYED
