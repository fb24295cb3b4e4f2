import pytest

from mcp_runtime.shared.version import SUPPORTED_PROTOCOL_VERSIONS, negotiate_version
from mcp_runtime.types import LATEST_PROTOCOL_VERSION


@pytest.mark.parametrize(
    ("requested", "expected"),
    [
        (LATEST_PROTOCOL_VERSION, LATEST_PROTOCOL_VERSION),
        ("2025-03-26", "2025-03-26"),
        # Between two supported versions: fall back to the older one
        ("2025-05-01", "2025-03-26"),
        # Newer than anything we know: answer with our latest
        ("2099-01-01", LATEST_PROTOCOL_VERSION),
        ("2024-01-01", None),
    ],
)
def test_negotiate_version(requested: str, expected: str | None):
    assert negotiate_version(requested, SUPPORTED_PROTOCOL_VERSIONS) == expected


def test_negotiate_version_with_custom_list():
    assert negotiate_version("2025-06-18", ["2024-11-05"]) == "2024-11-05"
    assert negotiate_version("2024-11-05", ["2025-06-18"]) is None
