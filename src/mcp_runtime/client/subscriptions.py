"""
Client-side subscription tracking.

Records which resource URIs the local side has subscribed to, so that an
update for an untracked URI can be told apart from a real one and so that the
subscriptions can be replayed on a new session after a reconnect.
"""

import logging

from pydantic import AnyUrl

logger = logging.getLogger(__name__)


def _key(uri: object) -> str:
    # Same spelling as a uri that has been through AnyUrl on the wire
    return str(AnyUrl(str(uri)))


class SubscriptionTracker:
    def __init__(self) -> None:
        # dict as an insertion-ordered set
        self._targets: dict[str, None] = {}

    def track(self, uri: AnyUrl | str) -> bool:
        """Record interest in `uri`. Returns False if it was already tracked."""
        key = _key(uri)
        if key in self._targets:
            return False
        self._targets[key] = None
        return True

    def untrack(self, uri: AnyUrl | str) -> bool:
        """Forget `uri`. Returns False if it was not tracked."""
        return self._targets.pop(_key(uri), False) is None

    def is_tracked(self, uri: AnyUrl | str) -> bool:
        return _key(uri) in self._targets

    def targets(self) -> list[str]:
        return list(self._targets)

    def clear(self) -> None:
        self._targets.clear()

    def __contains__(self, uri: object) -> bool:
        return _key(uri) in self._targets

    def __len__(self) -> int:
        return len(self._targets)
