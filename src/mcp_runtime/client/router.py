"""
SessionRouter aggregates the catalogs of several client sessions.

Tools, prompts and resources from every connected server are merged into one
namespace. When two servers expose the same name, the configured
`CollisionPolicy` decides what the merged catalog shows:

* ``NAMESPACE``: every colliding entry is exposed only as ``<server>.<name>``;
* ``PRIORITY``: the server connected first keeps the bare name;
* ``REJECT``: the bare name is withheld until the caller disambiguates.

Every entry is always reachable through its qualified ``<server>.<name>`` form.
The merged tables are rebuilt wholesale from the per-session catalogs and
published with a single assignment, so a call in progress keeps the routing
decision it started with.

Example Usage:
    async with SessionRouter(policy=CollisionPolicy.PRIORITY) as router:
        await router.connect_to_server("files", StdioServerParameters(command="files-server"))
        await router.connect_to_server("search", SseServerParameters(url="http://localhost:8000/sse"))
        result = await router.call_tool("search", {"query": "anyio"})
"""

import contextlib
import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from types import MappingProxyType, TracebackType
from typing import Any, Generic, TypeAlias, TypeVar

import anyio
from anyio.abc import TaskGroup, TaskStatus
from pydantic import AnyUrl
from typing_extensions import Self

from mcp_runtime import types
from mcp_runtime.client.session import (
    ClientSession,
    ElicitationFnT,
    ListRootsFnT,
    LoggingFnT,
    ResourceUpdatedFnT,
    SamplingFnT,
)
from mcp_runtime.client.sse import SseServerParameters, sse_client
from mcp_runtime.client.stdio import StdioServerParameters, stdio_client
from mcp_runtime.settings import RuntimeSettings
from mcp_runtime.shared.bridge import BridgePolicy
from mcp_runtime.shared.exceptions import ProtocolViolation, UnknownTarget
from mcp_runtime.shared.session import BaseSession, ProgressFnT

logger = logging.getLogger(__name__)

ServerParameters: TypeAlias = StdioServerParameters | SseServerParameters

ItemT = TypeVar("ItemT", types.Tool, types.Prompt, types.Resource)


class CollisionPolicy(str, Enum):
    NAMESPACE = "namespace"
    PRIORITY = "priority"
    REJECT = "reject"


# Use dataclass instead of pydantic BaseModel
# because pydantic BaseModel cannot handle Protocol fields.
@dataclass
class ClientSessionParameters:
    """Parameters for establishing a client session to a server."""

    read_timeout_seconds: timedelta | None = None
    sampling_callback: SamplingFnT | None = None
    elicitation_callback: ElicitationFnT | None = None
    list_roots_callback: ListRootsFnT | None = None
    logging_callback: LoggingFnT | None = None
    resource_updated_callback: ResourceUpdatedFnT | None = None
    bridge_policy: BridgePolicy | None = None
    client_info: types.Implementation | None = None


@dataclass(frozen=True)
class Route(Generic[ItemT]):
    """Where an externally visible name leads."""

    server: str
    session: ClientSession
    item: ItemT

    @property
    def original_name(self) -> str:
        return _item_key(self.item)


@dataclass(frozen=True)
class _Catalog:
    tools: tuple[types.Tool, ...] = ()
    prompts: tuple[types.Prompt, ...] = ()
    resources: tuple[types.Resource, ...] = ()


@dataclass
class _Member:
    name: str
    session: ClientSession
    catalog: _Catalog = field(default_factory=_Catalog)
    refresh_lock: anyio.Lock = field(default_factory=anyio.Lock)


@dataclass
class _Connection:
    stop: anyio.Event = field(default_factory=anyio.Event)
    done: anyio.Event = field(default_factory=anyio.Event)


@dataclass(frozen=True)
class RoutingTable(Generic[ItemT]):
    """One immutable snapshot of a merged catalog."""

    exposed: Mapping[str, Route[ItemT]]
    qualified: Mapping[str, Route[ItemT]]
    withheld: frozenset[str]

    def resolve(self, name: str) -> Route[ItemT]:
        if name in self.exposed:
            return self.exposed[name]
        if name in self.qualified:
            return self.qualified[name]
        if name in self.withheld:
            raise UnknownTarget(f"{name!r} is ambiguous; use a server-qualified name")
        raise UnknownTarget(f"Unknown target: {name!r}")


def _item_key(item: types.Tool | types.Prompt | types.Resource) -> str:
    # Resources are addressed by URI, everything else by name
    if isinstance(item, types.Resource):
        return str(item.uri)
    return item.name


def build_routing_table(
    members: Sequence[tuple[str, ClientSession, Sequence[ItemT]]],
    policy: CollisionPolicy,
    separator: str = ".",
) -> RoutingTable[ItemT]:
    """Merge per-server catalogs, in connection order, into one table."""
    owners: dict[str, list[str]] = {}
    for server, _, items in members:
        for item in items:
            owners.setdefault(_item_key(item), []).append(server)

    exposed: dict[str, Route[ItemT]] = {}
    qualified: dict[str, Route[ItemT]] = {}
    withheld: set[str] = set()
    for server, session, items in members:
        for item in items:
            key = _item_key(item)
            route = Route(server=server, session=session, item=item)
            qualified_key = f"{server}{separator}{key}"
            qualified.setdefault(qualified_key, route)

            if len(owners[key]) == 1:
                exposed.setdefault(key, route)
                continue

            match policy:
                case CollisionPolicy.NAMESPACE:
                    exposed.setdefault(qualified_key, route)
                case CollisionPolicy.PRIORITY:
                    if owners[key][0] == server:
                        exposed.setdefault(key, route)
                case CollisionPolicy.REJECT:
                    withheld.add(key)

    for key, servers in owners.items():
        if len(servers) > 1:
            logger.debug("Name %r collides across %s (%s policy)", key, servers, policy.value)

    return RoutingTable(
        exposed=MappingProxyType(exposed),
        qualified=MappingProxyType(qualified),
        withheld=frozenset(withheld),
    )


_EMPTY_TABLE: RoutingTable[Any] = RoutingTable(MappingProxyType({}), MappingProxyType({}), frozenset())


class SessionRouter:
    """Routes tool, prompt and resource calls across several sessions.

    Sessions are kept in connection order, which is the order collisions are
    decided in. A session's entries disappear from the merged catalog as soon
    as it begins shutting down. A list-changed notification from any server
    triggers a refresh of that server's catalog followed by a full rebuild.
    """

    _tools: RoutingTable[types.Tool]
    _prompts: RoutingTable[types.Prompt]
    _resources: RoutingTable[types.Resource]

    def __init__(
        self,
        policy: CollisionPolicy | str = CollisionPolicy.NAMESPACE,
        separator: str = ".",
    ) -> None:
        if not separator:
            raise ValueError("separator must not be empty")
        self._policy = CollisionPolicy(policy)
        self._separator = separator

        self._members: dict[str, _Member] = {}
        self._tools = _EMPTY_TABLE
        self._prompts = _EMPTY_TABLE
        self._resources = _EMPTY_TABLE
        self._connections: dict[str, _Connection] = {}
        self._task_group: TaskGroup | None = None

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> Self:
        return cls(policy=settings.collision_policy, separator=settings.namespace_separator)

    async def __aenter__(self) -> Self:
        self._task_group = anyio.create_task_group()
        await self._task_group.__aenter__()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> bool | None:
        """Closes every connection the router opened."""
        assert self._task_group is not None
        for connection in list(self._connections.values()):
            connection.stop.set()
        for connection in list(self._connections.values()):
            await connection.done.wait()
        self._task_group.cancel_scope.cancel()
        await self._task_group.__aexit__(exc_type, exc_val, exc_tb)
        self._task_group = None
        return None

    @property
    def policy(self) -> CollisionPolicy:
        return self._policy

    @property
    def separator(self) -> str:
        return self._separator

    @property
    def sessions(self) -> dict[str, ClientSession]:
        """The live sessions, in connection order."""
        return {name: member.session for name, member in self._members.items()}

    @property
    def tools(self) -> dict[str, types.Tool]:
        """The merged tool catalog, keyed by externally visible name."""
        return {name: route.item.model_copy(update={"name": name}) for name, route in self._tools.exposed.items()}

    @property
    def prompts(self) -> dict[str, types.Prompt]:
        return {name: route.item.model_copy(update={"name": name}) for name, route in self._prompts.exposed.items()}

    @property
    def resources(self) -> dict[str, types.Resource]:
        return {name: route.item for name, route in self._resources.exposed.items()}

    def resolve_tool(self, name: str) -> Route[types.Tool]:
        return self._tools.resolve(name)

    def resolve_prompt(self, name: str) -> Route[types.Prompt]:
        return self._prompts.resolve(name)

    def resolve_resource(self, uri: AnyUrl | str) -> Route[types.Resource]:
        return self._resources.resolve(str(uri))

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        read_timeout_seconds: timedelta | None = None,
        progress_callback: ProgressFnT | None = None,
    ) -> types.CallToolResult:
        """Executes a tool given its externally visible name and arguments.

        The result is returned exactly as the owning server produced it,
        including results with ``isError`` set.
        """
        route = self.resolve_tool(name)
        return await route.session.call_tool(
            route.original_name,
            arguments,
            read_timeout_seconds=read_timeout_seconds,
            progress_callback=progress_callback,
        )

    async def get_prompt(self, name: str, arguments: dict[str, str] | None = None) -> types.GetPromptResult:
        route = self.resolve_prompt(name)
        return await route.session.get_prompt(route.original_name, arguments)

    async def read_resource(self, uri: AnyUrl | str) -> types.ReadResourceResult:
        route = self.resolve_resource(uri)
        return await route.session.read_resource(route.original_name)

    async def subscribe_resource(self, uri: AnyUrl | str) -> types.EmptyResult:
        route = self.resolve_resource(uri)
        return await route.session.subscribe_resource(route.original_name)

    async def unsubscribe_resource(self, uri: AnyUrl | str) -> types.EmptyResult:
        route = self.resolve_resource(uri)
        return await route.session.unsubscribe_resource(route.original_name)

    async def add_session(self, session: ClientSession, name: str | None = None) -> str:
        """Route through an already initialized session.

        `name` defaults to the server's advertised name. Returns the name the
        session is registered under, which is also its qualifier.
        """
        result = session.initialize_result
        if result is None:
            raise ProtocolViolation("Session must be initialized before it can be routed")
        name = name or result.serverInfo.name
        if self._separator in name:
            raise ValueError(f"Server name {name!r} must not contain the separator {self._separator!r}")
        if name in self._members:
            raise ValueError(f"A server named {name!r} is already connected")

        # Listening starts before the first fetch so a change made during it is not lost
        changed_while_fetching = anyio.Event()

        async def on_list_changed(_: Any) -> None:
            current = self._members.get(name)
            if current is not None and current.session is session:
                await self._schedule_refresh(name)
            else:
                changed_while_fetching.set()

        for kind in ("tools", "prompts", "resources"):
            session.add_list_changed_callback(kind, on_list_changed)

        member = _Member(name=name, session=session, catalog=await self._fetch_catalog(session))
        self._members[name] = member
        self._rebuild()
        session.add_close_callback(lambda _: self._remove(name, session))
        if changed_while_fetching.is_set():
            await self._schedule_refresh(name)

        logger.info("Routing %d tools, %d prompts, %d resources from %s", *self._counts(member), name)
        return name

    async def connect_to_server(
        self,
        name: str,
        server_params: ServerParameters,
        session_params: ClientSessionParameters | None = None,
    ) -> ClientSession:
        """Open a transport, initialize a session over it and start routing to it.

        The connection lives in its own task inside the router, so a slow or
        failing server never holds up the others.
        """
        if self._task_group is None:
            raise RuntimeError("SessionRouter must be entered before connecting to servers")
        if name in self._members or name in self._connections:
            raise ValueError(f"A server named {name!r} is already connected")

        connection = _Connection()
        self._connections[name] = connection
        try:
            return await self._task_group.start(
                self._run_connection, name, server_params, session_params or ClientSessionParameters(), connection
            )
        except BaseException:
            self._connections.pop(name, None)
            raise

    async def _run_connection(
        self,
        name: str,
        server_params: ServerParameters,
        session_params: ClientSessionParameters,
        connection: _Connection,
        *,
        task_status: TaskStatus[ClientSession] = anyio.TASK_STATUS_IGNORED,
    ) -> None:
        try:
            async with contextlib.AsyncExitStack() as stack:
                if isinstance(server_params, StdioServerParameters):
                    read, write = await stack.enter_async_context(stdio_client(server_params))
                else:
                    read, write = await stack.enter_async_context(
                        sse_client(
                            url=server_params.url,
                            headers=server_params.headers,
                            timeout=server_params.timeout,
                            sse_read_timeout=server_params.sse_read_timeout,
                        )
                    )

                session = await stack.enter_async_context(
                    ClientSession(
                        read,
                        write,
                        read_timeout_seconds=session_params.read_timeout_seconds,
                        sampling_callback=session_params.sampling_callback,
                        elicitation_callback=session_params.elicitation_callback,
                        list_roots_callback=session_params.list_roots_callback,
                        logging_callback=session_params.logging_callback,
                        resource_updated_callback=session_params.resource_updated_callback,
                        bridge_policy=session_params.bridge_policy,
                        client_info=session_params.client_info,
                        session_id=name,
                    )
                )
                await session.initialize()
                await self.add_session(session, name)
                task_status.started(session)
                await connection.stop.wait()
        finally:
            self._connections.pop(name, None)
            connection.done.set()

    async def disconnect(self, name: str) -> None:
        """Stop routing to `name` and close its transport if the router opened it."""
        member = self._members.get(name)
        connection = self._connections.get(name)
        if member is None and connection is None:
            raise UnknownTarget(f"No server named {name!r} is connected")

        if member is not None:
            self._remove(name, member.session)
        if connection is not None:
            connection.stop.set()
            await connection.done.wait()

    async def refresh(self, name: str | None = None) -> None:
        """Re-fetch one server's catalog (or all of them) and rebuild."""
        names = [name] if name is not None else list(self._members)
        for server in names:
            member = self._members.get(server)
            if member is None:
                raise UnknownTarget(f"No server named {server!r} is connected")
            await self._refresh_member(member)

    async def _refresh_member(self, member: _Member) -> None:
        async with member.refresh_lock:
            catalog = await self._fetch_catalog(member.session)
            if self._members.get(member.name) is not member:
                # Disconnected while fetching
                return
            member.catalog = catalog
            self._rebuild()
        logger.debug("Refreshed catalog of %s", member.name)

    async def _schedule_refresh(self, name: str) -> None:
        member = self._members.get(name)
        if member is None:
            return
        if self._task_group is None:
            await self._refresh_member(member)
        else:
            self._task_group.start_soon(self._guarded_refresh, member)

    async def _guarded_refresh(self, member: _Member) -> None:
        try:
            await self._refresh_member(member)
        except Exception:
            # The previous catalog stays in effect
            logger.exception("Failed to refresh catalog of %s", member.name)

    async def _fetch_catalog(self, session: ClientSession) -> _Catalog:
        capabilities = session.get_server_capabilities() or types.ServerCapabilities()
        tools: list[types.Tool] = []
        prompts: list[types.Prompt] = []
        resources: list[types.Resource] = []
        if capabilities.tools is not None:
            tools = await session.list_all_tools()
        if capabilities.prompts is not None:
            prompts = await session.list_all_prompts()
        if capabilities.resources is not None:
            resources = await session.list_all_resources()
        return _Catalog(tools=tuple(tools), prompts=tuple(prompts), resources=tuple(resources))

    def _remove(self, name: str, session: BaseSession) -> None:
        member = self._members.get(name)
        if member is None or member.session is not session:
            return
        del self._members[name]
        self._rebuild()
        logger.info("Stopped routing to %s", name)

    def _rebuild(self) -> None:
        members = list(self._members.values())
        self._tools = self._merge(members, lambda catalog: catalog.tools)
        self._prompts = self._merge(members, lambda catalog: catalog.prompts)
        self._resources = self._merge(members, lambda catalog: catalog.resources)

    def _merge(
        self, members: list[_Member], select: Callable[[_Catalog], Sequence[ItemT]]
    ) -> RoutingTable[ItemT]:
        return build_routing_table(
            [(member.name, member.session, select(member.catalog)) for member in members],
            self._policy,
            self._separator,
        )

    @staticmethod
    def _counts(member: _Member) -> tuple[int, int, int]:
        return len(member.catalog.tools), len(member.catalog.prompts), len(member.catalog.resources)

