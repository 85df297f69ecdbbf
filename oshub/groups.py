"""Live connection and broadcast-group tracking.

Membership here is transport state only: it is never persisted and starts
empty on every hub start. The durable receiver list lives in the session
store.
"""

from __future__ import annotations

import logging
import threading
from typing import Any


class ConnectionRegistry:
    """Tracks live connections and the broadcast groups they are subscribed to."""

    def __init__(self) -> None:
        self.log = logging.getLogger("oshub.groups")
        self._lock = threading.RLock()
        self._connections: set[bytes] = set()
        self.groups: dict[str, set[bytes]] = {}
        self._groups_by_conn: dict[bytes, set[str]] = {}

    def register(self, conn: bytes) -> None:
        with self._lock:
            self._connections.add(bytes(conn))

    def unregister(self, conn: bytes) -> list[str]:
        """Forget a connection and drop it from every group. Returns the groups left."""
        conn = bytes(conn)
        with self._lock:
            self._connections.discard(conn)
            left = sorted(self._groups_by_conn.pop(conn, set()))
            for group in left:
                members = self.groups.get(group)
                if members is None:
                    continue
                members.discard(conn)
                if not members:
                    self.groups.pop(group, None)
            return left

    def is_connected(self, conn: bytes) -> bool:
        with self._lock:
            return bytes(conn) in self._connections

    def connections(self) -> set[bytes]:
        with self._lock:
            return set(self._connections)

    def subscribe(self, group: str, conn: bytes) -> None:
        conn = bytes(conn)
        with self._lock:
            self.groups.setdefault(group, set()).add(conn)
            self._groups_by_conn.setdefault(conn, set()).add(group)

    def unsubscribe(self, group: str, conn: bytes) -> None:
        conn = bytes(conn)
        with self._lock:
            members = self.groups.get(group)
            if members is not None:
                members.discard(conn)
                if not members:
                    self.groups.pop(group, None)
            joined = self._groups_by_conn.get(conn)
            if joined is not None:
                joined.discard(group)
                if not joined:
                    self._groups_by_conn.pop(conn, None)

    def members(self, group: str) -> set[bytes]:
        with self._lock:
            return set(self.groups.get(group, set()))

    def drop_group(self, group: str) -> set[bytes]:
        """Remove a group entirely. Returns its former members."""
        with self._lock:
            members = self.groups.pop(group, set())
            for conn in members:
                joined = self._groups_by_conn.get(conn)
                if joined is None:
                    continue
                joined.discard(group)
                if not joined:
                    self._groups_by_conn.pop(conn, None)
            return members

    def clear_all(self) -> list[bytes]:
        with self._lock:
            conns = list(self._connections)
            self._connections.clear()
            self.groups.clear()
            self._groups_by_conn.clear()
            return conns

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            top_groups = sorted(
                ((group, len(conns)) for group, conns in self.groups.items()),
                key=lambda x: (-x[1], x[0]),
            )[:5]
            return {
                "connections": len(self._connections),
                "groups_total": len(self.groups),
                "memberships": sum(len(v) for v in self.groups.values()),
                "top_groups": top_groups,
            }
