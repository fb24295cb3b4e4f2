from typing import Any, cast

import anyio
import pytest
from pydantic import AnyUrl

from mcp_runtime import types
from mcp_runtime.server.lowlevel.server import Server
from mcp_runtime.server.session import ServerSession
from mcp_runtime.server.subscriptions import SubscriptionManager
from mcp_runtime.shared.exceptions import SessionClosing
from mcp_runtime.shared.memory import create_connected_server_and_client_session


class RecordingSession:
    """Just enough of a ServerSession for the subscription manager."""

    def __init__(self, key: str, *, closed: bool = False):
        self.session_key = key
        self.closed = closed
        self.updates: list[str] = []

    async def send_resource_updated(self, uri: AnyUrl | str) -> None:
        if self.closed:
            raise SessionClosing("gone")
        self.updates.append(str(uri))


def as_session(session: RecordingSession) -> ServerSession:
    return cast(ServerSession, session)


def test_subscribe_is_idempotent():
    manager = SubscriptionManager()
    session = RecordingSession("a")

    assert manager.subscribe(as_session(session), "file:///a.txt")
    assert not manager.subscribe(as_session(session), "file:///a.txt")
    assert len(manager) == 1


def test_unsubscribe_unknown_is_a_noop():
    manager = SubscriptionManager()
    session = RecordingSession("a")

    assert not manager.unsubscribe(as_session(session), "file:///never.txt")
    manager.subscribe(as_session(session), "file:///a.txt")
    assert manager.unsubscribe(as_session(session), "file:///a.txt")
    assert not manager.unsubscribe(as_session(session), "file:///a.txt")
    assert len(manager) == 0


@pytest.mark.anyio
async def test_notify_changed_reaches_each_subscriber_once():
    manager = SubscriptionManager()
    first, second, bystander = RecordingSession("a"), RecordingSession("b"), RecordingSession("c")

    manager.subscribe(as_session(first), "file:///a.txt")
    manager.subscribe(as_session(first), "file:///a.txt")
    manager.subscribe(as_session(second), "file:///a.txt")
    manager.subscribe(as_session(bystander), "file:///other.txt")

    assert await manager.notify_changed("file:///a.txt") == 2
    assert first.updates == ["file:///a.txt"]
    assert second.updates == ["file:///a.txt"]
    assert bystander.updates == []


@pytest.mark.anyio
async def test_notify_skips_sessions_that_cannot_receive():
    manager = SubscriptionManager()
    alive, gone = RecordingSession("alive"), RecordingSession("gone", closed=True)
    manager.subscribe(as_session(gone), "file:///a.txt")
    manager.subscribe(as_session(alive), "file:///a.txt")

    assert await manager.notify_changed("file:///a.txt") == 1
    assert alive.updates == ["file:///a.txt"]


def test_drop_session_removes_all_of_its_subscriptions():
    manager = SubscriptionManager()
    leaving, staying = RecordingSession("leaving"), RecordingSession("staying")
    for uri in ("file:///a.txt", "file:///b.txt"):
        manager.subscribe(as_session(leaving), uri)
    manager.subscribe(as_session(staying), "file:///a.txt")

    assert manager.drop_session(as_session(leaving)) == 2
    assert manager.subscriptions_of(as_session(leaving)) == set()
    assert manager.subscribers("file:///a.txt") == [as_session(staying)]
    assert not manager.is_subscribed(as_session(leaving), "file:///b.txt")


def make_resource_server(hooks: list[str]) -> Server:
    server = Server(name="watched")

    @server.list_resources()
    async def list_resources() -> list[types.Resource]:
        return [types.Resource(uri=AnyUrl("file:///watched.txt"), name="watched")]

    @server.subscribe_resource()
    async def on_subscribe(uri: AnyUrl) -> None:
        hooks.append(f"subscribe {uri}")

    @server.unsubscribe_resource()
    async def on_unsubscribe(uri: AnyUrl) -> None:
        hooks.append(f"unsubscribe {uri}")

    return server


@pytest.mark.anyio
async def test_resource_updates_flow_to_subscribed_clients():
    hooks: list[str] = []
    server = make_resource_server(hooks)
    updated: list[str] = []
    got_update = anyio.Event()

    async def resource_updated_callback(uri: AnyUrl) -> None:
        updated.append(str(uri))
        got_update.set()

    async with create_connected_server_and_client_session(
        server, resource_updated_callback=resource_updated_callback
    ) as client:
        await client.subscribe_resource("file:///watched.txt")
        await client.subscribe_resource("file:///watched.txt")
        assert client.subscriptions.targets() == ["file:///watched.txt"]

        assert await server.notify_resource_updated("file:///watched.txt") == 1
        with anyio.fail_after(1):
            await got_update.wait()

        await client.unsubscribe_resource("file:///watched.txt")
        assert await server.notify_resource_updated("file:///watched.txt") == 0

    assert updated == ["file:///watched.txt"]
    # The hook only runs when the subscription actually changes
    assert hooks == ["subscribe file:///watched.txt", "unsubscribe file:///watched.txt"]


@pytest.mark.anyio
async def test_back_to_back_changes_arrive_once_each_in_order():
    server = make_resource_server([])
    updated: list[str] = []
    all_arrived = anyio.Event()

    async def resource_updated_callback(uri: AnyUrl) -> None:
        updated.append(str(uri))
        if len(updated) == 3:
            all_arrived.set()

    async with create_connected_server_and_client_session(
        server, resource_updated_callback=resource_updated_callback
    ) as client:
        await client.subscribe_resource("file:///a.txt")
        await client.subscribe_resource("file:///b.txt")

        await server.notify_resource_updated("file:///b.txt")
        await server.notify_resource_updated("file:///a.txt")
        await server.notify_resource_updated("file:///b.txt")
        with anyio.fail_after(1):
            await all_arrived.wait()

    assert updated == ["file:///b.txt", "file:///a.txt", "file:///b.txt"]


@pytest.mark.anyio
async def test_closed_sessions_lose_their_subscriptions():
    server = make_resource_server([])

    async with create_connected_server_and_client_session(server) as client:
        await client.subscribe_resource("file:///watched.txt")
        assert len(server.subscriptions) == 1

    with anyio.fail_after(1):
        while server.sessions:
            await anyio.sleep(0.01)
    assert len(server.subscriptions) == 0


def test_subscriptions_need_a_subscribe_handler():
    server = Server(name="static")

    @server.list_resources()
    async def list_resources() -> list[Any]:
        return []

    capabilities = server.create_initialization_options().capabilities
    assert capabilities.resources is not None
    assert capabilities.resources.subscribe is False

    server.enable_subscriptions()
    capabilities = server.create_initialization_options().capabilities
    assert capabilities.resources is not None
    assert capabilities.resources.subscribe is True
