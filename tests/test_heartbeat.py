"""Liveness: silent connections are evicted after two heartbeat intervals."""
import pytest

from helpers import FakeTransport, ManualClock, settle
from hub.errors import CloseReason
from hub.heartbeat import HeartbeatMonitor
from hub.registry import ConnectionRegistry


async def test_silent_connection_is_evicted_and_goes_offline_once(hub, connect, clock):
    victim, victim_t = await connect("alice")
    observer, observer_t = await connect("bob")

    clock.advance(15)
    await hub.heartbeat_received(observer)
    clock.advance(6)
    evicted = await hub.evict_stale()
    await settle()

    assert evicted == [victim]
    assert victim_t.closed == (4001, "Timeout")
    assert observer_t.closed is None
    assert observer_t.of_type("pong") == [{}]
    assert observer_t.of_type("presence_changed") == [{"userId": "alice", "online": False}]

    clock.advance(1)
    assert await hub.evict_stale() == []
    await settle()
    assert len(observer_t.of_type("presence_changed")) == 1


async def test_heartbeat_frame_keeps_connection_alive(hub, connect, clock):
    alice, alice_t = await connect("alice")
    for _ in range(5):
        clock.advance(15)
        await hub.handle_frame(alice, '{"type": "heartbeat"}')
    assert await hub.evict_stale() == []
    await settle()
    assert len(alice_t.of_type("pong")) == 5


async def test_evicting_one_session_keeps_user_online(hub, connect, clock):
    stale_tab, stale_t = await connect("alice")
    clock.advance(15)
    live_tab, _ = await connect("alice")
    _, observer_t = await connect("bob")

    clock.advance(6)
    await hub.heartbeat_received(live_tab)
    assert await hub.evict_stale() == [stale_tab]
    await settle()

    assert stale_t.closed == (4001, "Timeout")
    assert observer_t.of_type("presence_changed") == []
    assert (await hub.presence_snapshot("alice"))["online"] is True


async def test_unauthenticated_connections_are_evicted_too(hub, clock):
    transport = FakeTransport()
    await hub.register(transport)
    clock.advance(21)
    assert len(await hub.evict_stale()) == 1
    await settle()
    assert transport.closed == (4001, "Timeout")


async def test_heartbeats_do_not_keep_unauthenticated_connections_alive(hub, clock):
    transport = FakeTransport()
    lurker = await hub.register(transport)
    for _ in range(3):
        clock.advance(7)
        await hub.handle_frame(lurker, '{"type": "heartbeat"}')
    assert await hub.evict_stale() == [lurker]
    await settle()
    assert len(transport.of_type("pong")) == 3
    assert transport.closed == (4001, "Timeout")


def test_monitor_uses_twice_the_interval():
    clock = ManualClock()
    registry = ConnectionRegistry(queue_limit=10, clock=clock)
    closed = []
    monitor = HeartbeatMonitor(registry, lambda cid, reason: closed.append((cid, reason)), interval=10, clock=clock)
    assert monitor.max_silence == 20
    assert monitor.evict() == []
    assert closed == []

    with pytest.raises(ValueError):
        HeartbeatMonitor(registry, lambda cid, reason: None, interval=0)


async def test_monitor_closes_stale_registry_entries():
    clock = ManualClock()
    registry = ConnectionRegistry(queue_limit=10, clock=clock)
    closed = []
    monitor = HeartbeatMonitor(registry, lambda cid, reason: closed.append((cid, reason)), interval=10, clock=clock)
    fresh = registry.register(FakeTransport())
    clock.advance(20)
    assert monitor.evict() == []
    clock.advance(0.5)
    late = registry.register(FakeTransport())
    registry.heartbeat(late)
    assert monitor.evict() == [fresh]
    assert closed == [(fresh, CloseReason.TIMEOUT)]

    for connection_id in (fresh, late):
        connection = registry.close(connection_id, CloseReason.SHUTDOWN)
        await connection.shutdown()
