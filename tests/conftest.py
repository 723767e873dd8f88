"""Shared fixtures: a hub wired to in-memory collaborators, a manual clock and fake transports."""
import pytest

from helpers import FakeTransport, ManualClock
from hub.collaborators import InMemoryAuthorizer, InMemoryIdentityService, InMemoryMessageStore
from hub.coordinator import Hub


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def identity():
    return InMemoryIdentityService()


@pytest.fixture
def authorizer():
    return InMemoryAuthorizer()


@pytest.fixture
def store():
    return InMemoryMessageStore()


@pytest.fixture
async def hub(identity, authorizer, store, clock):
    hub = Hub(
        identity,
        authorizer,
        store,
        heartbeat_interval=10,
        typing_timeout=5,
        presence_debounce=0,
        outbound_queue_limit=1000,
        maintenance_interval=3600,
        history_limit=0,
        clock=clock,
    )
    await hub.start()
    yield hub
    await hub.stop()


@pytest.fixture
def connect(hub, identity):
    """Open and authenticate a connection for ``user_id``; returns (connection_id, transport)."""

    async def _connect(user_id: str, stalled: bool = False):
        transport = FakeTransport(stalled=stalled)
        connection_id = await hub.register(transport)
        await hub.authenticate(connection_id, user_id, identity.issue(user_id))
        return connection_id, transport

    return _connect


@pytest.fixture
def join(hub, authorizer):
    """Grant access and join ``conversation_id`` on the given connection."""

    async def _join(connection_id: str, user_id: str, conversation_id: str):
        authorizer.grant(conversation_id, user_id)
        return await hub.join(connection_id, conversation_id)

    return _join
