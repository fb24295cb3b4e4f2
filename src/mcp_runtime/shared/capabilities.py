"""
Capability registry.

Each side of a session declares a capability set. The registry keeps both sets
and answers whether a method may be sent or received. Negotiation does not
merge the two sets: every gated method names the role that must have declared
the matching capability, and that role's set alone decides.
"""

from collections.abc import Mapping
from types import MappingProxyType
from typing import Any, Literal

from pydantic import BaseModel

from mcp_runtime.shared.exceptions import CapabilityNotDeclared

SessionRole = Literal["client", "server"]

CapabilitySet = Mapping[str, Any]

# method -> (role that must declare the capability, capability path)
METHOD_CAPABILITIES: dict[str, tuple[SessionRole, str]] = {
    # client -> server
    "tools/list": ("server", "tools"),
    "tools/call": ("server", "tools"),
    "resources/list": ("server", "resources"),
    "resources/templates/list": ("server", "resources"),
    "resources/read": ("server", "resources"),
    "resources/subscribe": ("server", "resources.subscribe"),
    "resources/unsubscribe": ("server", "resources.subscribe"),
    "prompts/list": ("server", "prompts"),
    "prompts/get": ("server", "prompts"),
    "logging/setLevel": ("server", "logging"),
    # server -> client
    "sampling/createMessage": ("client", "sampling"),
    "elicitation/create": ("client", "elicitation"),
    "roots/list": ("client", "roots"),
    # notifications
    "notifications/resources/updated": ("server", "resources.subscribe"),
    "notifications/resources/list_changed": ("server", "resources"),
    "notifications/tools/list_changed": ("server", "tools"),
    "notifications/prompts/list_changed": ("server", "prompts"),
    "notifications/message": ("server", "logging"),
    "notifications/roots/list_changed": ("client", "roots"),
}


def _freeze(capabilities: BaseModel | Mapping[str, Any]) -> CapabilitySet:
    if isinstance(capabilities, BaseModel):
        data = capabilities.model_dump(by_alias=True, mode="json", exclude_none=True)
    else:
        data = dict(capabilities)
    return MappingProxyType(data)


def has_capability(capabilities: CapabilitySet | None, path: str) -> bool:
    """Check a dotted capability path such as ``"resources.subscribe"``.

    The first segment must be present; any further segment must be truthy.
    """
    if capabilities is None:
        return False
    head, *rest = path.split(".")
    node = capabilities.get(head)
    if node is None:
        return False
    for segment in rest:
        if not isinstance(node, Mapping) or not node.get(segment):
            return False
        node = node[segment]
    return True


class CapabilityRegistry:
    """Per-session record of declared capabilities.

    `declare` is called once with the local set before initialization starts and
    `negotiate` once with the remote set during the handshake. Neither set can
    change afterwards.
    """

    def __init__(self, role: SessionRole) -> None:
        self.role: SessionRole = role
        self._local: CapabilitySet | None = None
        self._remote: CapabilitySet | None = None

    @property
    def local(self) -> CapabilitySet | None:
        return self._local

    @property
    def remote(self) -> CapabilitySet | None:
        return self._remote

    @property
    def negotiated(self) -> bool:
        return self._remote is not None

    def declare(self, capabilities: BaseModel | Mapping[str, Any]) -> None:
        if self._local is not None:
            raise RuntimeError("Local capabilities have already been declared")
        self._local = _freeze(capabilities)

    def negotiate(self, remote: BaseModel | Mapping[str, Any]) -> "CapabilityRegistry":
        if self._local is None:
            raise RuntimeError("Local capabilities must be declared before negotiation")
        if self._remote is not None:
            raise RuntimeError("Capabilities have already been negotiated")
        self._remote = _freeze(remote)
        return self

    def permits(self, capability: str, *, side: Literal["local", "remote"] = "remote") -> bool:
        """Whether the given side declared `capability` (a dotted path)."""
        return has_capability(self._local if side == "local" else self._remote, capability)

    def _side_for(self, required_role: SessionRole) -> Literal["local", "remote"]:
        return "local" if required_role == self.role else "remote"

    def check(self, method: str) -> None:
        """Raise CapabilityNotDeclared if `method` is gated by an undeclared capability.

        Applies equally to sending and receiving: the gate is always the set
        declared by the role that provides the feature.
        """
        gate = METHOD_CAPABILITIES.get(method)
        if gate is None:
            return
        required_role, capability = gate
        side = self._side_for(required_role)
        if not self.permits(capability, side=side):
            raise CapabilityNotDeclared(
                f"{method!r} requires the {required_role} to declare the {capability!r} capability"
            )
