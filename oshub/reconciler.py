"""Cleanup after a lost connection."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .constants import B_PEER_ID, T_PEER_LEFT, T_SESSION_CLOSED
from .util import fmt_conn

if TYPE_CHECKING:
    from .context import HubContext
    from .messages import Outgoing


class DisconnectReconciler:
    """
    Runs once per lost connection and performs the terminal transitions.

    A connection that owns sessions is treated as their sender: the sessions
    are deleted and their groups told the session is closed. Otherwise it is
    treated as a (possibly former) receiver: every live connection is told the
    peer left and the identity is pulled from every stored receiver list.
    Sender status takes precedence and skips receiver cleanup.
    """

    def __init__(self, ctx: HubContext) -> None:
        self.ctx = ctx
        self.log = logging.getLogger("oshub.reconciler")

    def on_disconnect(self, conn: bytes, outgoing: Outgoing) -> str:
        """Reconcile a lost connection. Returns "sender", "receiver" or "error".

        Failures are logged and swallowed so one bad cleanup never stops the
        hub from serving other connections.
        """
        conn = bytes(conn)
        try:
            if self._close_owned_sessions(conn, outgoing):
                role = "sender"
            else:
                self._drop_receiver(conn, outgoing)
                role = "receiver"
        except Exception:
            self.log.exception("Disconnect cleanup failed link_id=%s", fmt_conn(conn))
            role = "error"
        finally:
            self.ctx.registry.unregister(conn)

        return role

    def _close_owned_sessions(self, conn: bytes, outgoing: Outgoing) -> bool:
        owned = self.ctx.store.pop_by_sender(conn)
        if not owned:
            return False

        for session in owned:
            members = self.ctx.registry.drop_group(session.public_id)
            notified = self.ctx.messages.fan_out(
                outgoing, members, T_SESSION_CLOSED, exclude=conn
            )
            self.log.info(
                "Sender left, closing session=%s notified=%d link_id=%s",
                session.public_id,
                notified,
                fmt_conn(conn),
            )

        self.ctx.stats.inc("sender_disconnects")
        return True

    def _drop_receiver(self, conn: bytes, outgoing: Outgoing) -> None:
        # Scope is every live connection: the departing connection's sessions
        # are not known in advance.
        notified = self.ctx.messages.fan_out(
            outgoing,
            self.ctx.registry.connections(),
            T_PEER_LEFT,
            {B_PEER_ID: conn},
            exclude=conn,
        )
        pulled = self.ctx.store.pull_receiver(conn)
        self.ctx.stats.inc("receiver_disconnects")

        self.log.info(
            "Peer left link_id=%s notified=%d sessions_updated=%d",
            fmt_conn(conn),
            notified,
            pulled,
        )
