"""
Server-side subscription manager.

Tracks which sessions are subscribed to which resource URIs and fans a
content change out to them. A session holds at most one subscription per URI,
so repeated subscribe calls never multiply the notifications it receives.
"""

import logging
from typing import TYPE_CHECKING

from mcp_runtime.shared.exceptions import McpError

if TYPE_CHECKING:
    from mcp_runtime.server.session import ServerSession

logger = logging.getLogger(__name__)


class SubscriptionManager:
    def __init__(self) -> None:
        # uri -> {session id -> session}, in subscription order
        self._subscribers: dict[str, dict[str, "ServerSession"]] = {}

    def subscribe(self, session: "ServerSession", uri: str) -> bool:
        """Subscribe `session` to `uri`. Returns False if it was already subscribed."""
        subscribers = self._subscribers.setdefault(uri, {})
        if session.session_key in subscribers:
            return False
        subscribers[session.session_key] = session
        logger.debug("Session %s subscribed to %s", session.session_key, uri)
        return True

    def unsubscribe(self, session: "ServerSession", uri: str) -> bool:
        """Drop the subscription, if any. Unsubscribing an untracked uri is a no-op."""
        subscribers = self._subscribers.get(uri)
        if not subscribers or subscribers.pop(session.session_key, None) is None:
            return False
        if not subscribers:
            del self._subscribers[uri]
        logger.debug("Session %s unsubscribed from %s", session.session_key, uri)
        return True

    def drop_session(self, session: "ServerSession") -> int:
        """Remove every subscription held by `session`; used on session teardown."""
        dropped = 0
        for uri in list(self._subscribers):
            if self.unsubscribe(session, uri):
                dropped += 1
        return dropped

    def subscribers(self, uri: str) -> list["ServerSession"]:
        return list(self._subscribers.get(uri, {}).values())

    def subscriptions_of(self, session: "ServerSession") -> set[str]:
        return {uri for uri, subscribers in self._subscribers.items() if session.session_key in subscribers}

    def is_subscribed(self, session: "ServerSession", uri: str) -> bool:
        return session.session_key in self._subscribers.get(uri, {})

    async def notify_changed(self, uri: str) -> int:
        """Send one resource-updated notification to each subscribed session.

        Returns the number of sessions notified. A session that can no longer
        receive notifications is skipped; it is dropped when it closes.
        """
        notified = 0
        for session in self.subscribers(uri):
            try:
                await session.send_resource_updated(uri)
            except McpError as exc:
                logger.warning("Could not notify session %s about %s: %s", session.session_key, uri, exc)
                continue
            notified += 1
        return notified

    def __len__(self) -> int:
        return sum(len(subscribers) for subscribers in self._subscribers.values())
