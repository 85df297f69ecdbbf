"""Point-to-point forwarding of handshake messages."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .constants import B_FROM, B_PAYLOAD, B_TARGET, RELAY_FORWARDS
from .util import fmt_conn

if TYPE_CHECKING:
    from .context import HubContext
    from .messages import Outgoing


class HandshakeRelay:
    """
    Forwards offer, answer and candidate messages between two connections.

    The relay has no session awareness: it does not look anything up, does
    not check that the target is alive and keeps no state. Messages without
    a usable target are dropped without telling the sender.
    """

    def __init__(self, ctx: HubContext) -> None:
        self.ctx = ctx
        self.log = logging.getLogger("oshub.relay")

    def relay(self, msg_type: int, conn: bytes, body: Any, outgoing: Outgoing) -> bool:
        forward_type = RELAY_FORWARDS.get(msg_type)
        if forward_type is None:
            raise ValueError(f"not a relay message type: {msg_type}")

        target = body.get(B_TARGET) if isinstance(body, dict) else None
        if not isinstance(target, (bytes, bytearray)) or not target:
            self.ctx.stats.inc("relays_dropped")
            if self.log.isEnabledFor(logging.DEBUG):
                self.log.debug(
                    "Dropped relay t=%s without target link_id=%s",
                    msg_type,
                    fmt_conn(conn),
                )
            return False

        self.ctx.messages.queue(
            outgoing,
            bytes(target),
            forward_type,
            {B_PAYLOAD: body.get(B_PAYLOAD), B_FROM: bytes(conn)},
        )
        self.ctx.stats.inc("relays_forwarded")

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "Relayed t=%s from=%s to=%s",
                forward_type,
                fmt_conn(conn),
                fmt_conn(target),
            )
        return True
