"""Client-role sessions, transports and the multi-server router."""

from mcp_runtime.client.router import ClientSessionParameters, CollisionPolicy, SessionRouter
from mcp_runtime.client.session import ClientSession
from mcp_runtime.client.subscriptions import SubscriptionTracker

__all__ = ["ClientSession", "ClientSessionParameters", "CollisionPolicy", "SessionRouter", "SubscriptionTracker"]
