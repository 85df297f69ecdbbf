import pytest

from oshub.codec import decode
from oshub.config import HubRuntimeConfig
from oshub.context import HubContext
from oshub.store import MemorySessionStore


@pytest.fixture
def ctx() -> HubContext:
    return HubContext(HubRuntimeConfig(), store=MemorySessionStore(), hub_hash=b"hub")


@pytest.fixture
def sent():
    """Decode an outgoing queue into (connection id, envelope) pairs."""

    def _decode(outgoing):
        return [(conn, decode(payload)) for conn, payload in outgoing]

    return _decode
