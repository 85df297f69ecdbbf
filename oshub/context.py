from __future__ import annotations

import logging

from .config import HubRuntimeConfig
from .groups import ConnectionRegistry
from .messages import MessageHelper
from .stats import StatsManager
from .store import MemorySessionStore, SessionStore, TomlSessionStore
from .util import expand_path


class HubContext:
    """Process-scoped hub state handed to every handler.

    Owns the session store, the live connection registry, the outgoing
    message helper and the statistics counters. Tests build one directly
    around a ``MemorySessionStore``.
    """

    def __init__(
        self,
        config: HubRuntimeConfig,
        *,
        store: SessionStore | None = None,
        hub_hash: bytes = b"",
    ) -> None:
        self.config = config
        self.log = logging.getLogger("oshub.hub")
        self.store = store if store is not None else open_store(config)
        self.registry = ConnectionRegistry()
        self.stats = StatsManager()
        self.messages = MessageHelper(self)
        # Source identity stamped on hub-originated envelopes; set once the
        # RNS identity is loaded.
        self.hub_hash = hub_hash


def open_store(config: HubRuntimeConfig) -> SessionStore:
    if config.store_path:
        return TomlSessionStore(expand_path(str(config.store_path)))
    return MemorySessionStore()
