from collections.abc import Sequence

from mcp_runtime.types import LATEST_PROTOCOL_VERSION

SUPPORTED_PROTOCOL_VERSIONS: list[str] = ["2024-11-05", "2025-03-26", "2025-06-18", LATEST_PROTOCOL_VERSION]


def negotiate_version(requested: str | int, supported: Sequence[str]) -> str | None:
    """Pick the newest supported version that is not newer than `requested`.

    Versions are ISO dates, so string ordering is chronological. Returns None when
    every supported version is newer than the requested one.
    """
    requested = str(requested)
    candidates = [version for version in supported if version <= requested]
    if not candidates:
        return None
    return max(candidates)
