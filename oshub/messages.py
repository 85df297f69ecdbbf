"""Outgoing message queueing for the signaling hub.

Handlers never write to the transport directly. They append
``(connection id, payload)`` tuples to an ``outgoing`` list which the service
flushes after the handler returns.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

from .codec import encode
from .constants import T_ERROR
from .envelope import make_envelope

if TYPE_CHECKING:
    from .context import HubContext

Outgoing = list[tuple[bytes, bytes]]


class MessageHelper:
    """
    Helper methods for queueing messages.

    Handles:
    - Envelope construction with the hub as source
    - Point-to-point and fan-out queueing
    - Error emission
    """

    def __init__(self, ctx: HubContext) -> None:
        self.ctx = ctx

    def queue_payload(self, outgoing: Outgoing, conn: bytes, payload: bytes) -> None:
        """Add a raw payload to the outgoing queue."""
        outgoing.append((bytes(conn), payload))

    def queue_env(self, outgoing: Outgoing, conn: bytes, env: dict) -> None:
        """Encode and queue an envelope."""
        self.queue_payload(outgoing, conn, encode(env))

    def queue(
        self, outgoing: Outgoing, conn: bytes, msg_type: int, body=None
    ) -> None:
        """Build a hub-sourced envelope and queue it for one connection."""
        env = make_envelope(msg_type, src=self.ctx.hub_hash, body=body)
        self.queue_env(outgoing, conn, env)

    def fan_out(
        self,
        outgoing: Outgoing,
        conns: Iterable[bytes],
        msg_type: int,
        body=None,
        *,
        exclude: bytes | None = None,
    ) -> int:
        """Queue one envelope for many connections. Returns the recipient count."""
        recipients = [c for c in conns if exclude is None or bytes(c) != bytes(exclude)]
        if not recipients:
            return 0
        payload = encode(make_envelope(msg_type, src=self.ctx.hub_hash, body=body))
        for conn in sorted(recipients):
            self.queue_payload(outgoing, conn, payload)
        return len(recipients)

    def emit_error(
        self,
        outgoing: Outgoing,
        conn: bytes,
        text: str,
        *,
        msg_type: int = T_ERROR,
    ) -> None:
        """Queue an error event for the originating connection only."""
        self.ctx.stats.inc("errors_sent")
        self.queue(outgoing, conn, msg_type, text)
