"""Statistics tracking and reporting for the signaling hub."""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .context import HubContext


class StatsManager:
    """
    Manages hub statistics collection and reporting.

    Tracks counters for:
    - Bytes and packets in/out
    - Rate limiting and protocol errors
    - Session creates, joins and cancels
    - Relayed and dropped handshake messages
    - Disconnect cleanups and expiries
    - Resource transfers
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()

        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None

        self._counters: dict[str, int] = {
            "bytes_in": 0,
            "bytes_out": 0,
            "pkts_in": 0,
            "pkts_bad": 0,
            "rate_limited": 0,
            "errors_sent": 0,
            "creates": 0,
            "joins": 0,
            "cancels": 0,
            "relays_forwarded": 0,
            "relays_dropped": 0,
            "sender_disconnects": 0,
            "receiver_disconnects": 0,
            "sessions_expired": 0,
            "pings_in": 0,
            "pongs_out": 0,
            "pings_out": 0,
            "resources_sent": 0,
            "resources_received": 0,
            "resources_rejected": 0,
        }

    def set_start_time(self) -> None:
        """Set the start time for uptime calculations."""
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        """Increment a counter by the given delta."""
        with self._lock:
            self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def get(self, key: str) -> int:
        with self._lock:
            return int(self._counters.get(key, 0))

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def format_stats(self, ctx: HubContext) -> str:
        """Format current statistics as a human-readable string."""
        from . import __version__

        now_mono = time.monotonic()
        started_mono = self.started_monotonic
        uptime_s = (now_mono - started_mono) if started_mono is not None else 0.0

        reg = ctx.registry.get_stats()
        c = self.snapshot()

        lines: list[str] = []
        lines.append(f"oshub {__version__} stats")
        lines.append(f"uptime_s={uptime_s:.1f}")
        lines.append(
            f"connections={reg['connections']} groups={reg['groups_total']} "
            f"memberships={reg['memberships']} sessions_stored={ctx.store.count()}"
        )
        if reg["top_groups"]:
            lines.append(
                "top_groups=" + ", ".join(f"{g}:{n}" for g, n in reg["top_groups"])
            )
        lines.append(
            "io: pkts_in={} pkts_bad={} bytes_in={} bytes_out={}".format(
                c.get("pkts_in", 0),
                c.get("pkts_bad", 0),
                c.get("bytes_in", 0),
                c.get("bytes_out", 0),
            )
        )
        lines.append(
            "sessions: creates={} joins={} cancels={} expired={}".format(
                c.get("creates", 0),
                c.get("joins", 0),
                c.get("cancels", 0),
                c.get("sessions_expired", 0),
            )
        )
        lines.append(
            "relay: forwarded={} dropped={}".format(
                c.get("relays_forwarded", 0),
                c.get("relays_dropped", 0),
            )
        )
        lines.append(
            "disconnects: sender={} receiver={}".format(
                c.get("sender_disconnects", 0),
                c.get("receiver_disconnects", 0),
            )
        )
        lines.append(
            "errors: errors_sent={} rate_limited={}".format(
                c.get("errors_sent", 0),
                c.get("rate_limited", 0),
            )
        )
        lines.append(
            "resources: sent={} received={} rejected={}".format(
                c.get("resources_sent", 0),
                c.get("resources_received", 0),
                c.get("resources_rejected", 0),
            )
        )

        return "\n".join(lines)
