"""Session creation, joining and privileged teardown.

Every operation mutates the session store and the live broadcast groups, and
appends the resulting notifications to an ``outgoing`` queue. Operations do
not assume they run alone: the store and the registry each guard their own
state, and nothing is held across calls.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any

from .constants import (
    B_DELETION_SECRET,
    B_ITEMS,
    B_PEER_ID,
    B_PEERS,
    B_PUBLIC_ID,
    T_CANCELLED,
    T_CREATED,
    T_JOIN_SUCCESS,
    T_NEW_PEER_JOINED,
    T_SESSION_CLOSED,
)
from .errors import DuplicateKeyError, NotFound, ResourceExhausted
from .models import ItemMetadata, Session, parse_items
from .util import fmt_conn, random_token

if TYPE_CHECKING:
    from .context import HubContext
    from .messages import Outgoing

JOIN_NOT_FOUND = "session not found or no longer available"
CANCEL_NOT_FOUND = "session not found or bad deletion secret"


class SessionLifecycle:
    """
    Creates, joins and tears down sessions.

    This class is responsible for:
    - Validating item metadata and generating collision-free identifiers
    - Persisting new sessions and subscribing the sender to its group
    - Admitting receivers and announcing them to the existing peers
    - Manual cancellation with the deletion secret
    - Expiry of stale sessions
    """

    def __init__(self, ctx: HubContext) -> None:
        self.ctx = ctx
        self.log = logging.getLogger("oshub.lifecycle")

    def create(
        self, conn: bytes, raw_items: Any, outgoing: Outgoing
    ) -> tuple[str, str]:
        """Create a session owned by ``conn``.

        Raises ``InvalidInput`` for bad metadata and ``ResourceExhausted``
        when no unique identifiers could be drawn.
        """
        cfg = self.ctx.config
        items = parse_items(raw_items, max_items=int(cfg.max_items))

        session = self._insert_unique(conn, items)
        self.ctx.registry.subscribe(session.public_id, conn)
        self.ctx.stats.inc("creates")

        self.log.info(
            "CREATE session=%s items=%d link_id=%s",
            session.public_id,
            len(items),
            fmt_conn(conn),
        )

        self.ctx.messages.queue(
            outgoing,
            conn,
            T_CREATED,
            {
                B_PUBLIC_ID: session.public_id,
                B_DELETION_SECRET: session.deletion_secret,
            },
        )
        return session.public_id, session.deletion_secret

    def _insert_unique(
        self, conn: bytes, items: tuple[ItemMetadata, ...]
    ) -> Session:
        cfg = self.ctx.config
        attempts = max(1, int(cfg.max_id_attempts))
        for attempt in range(1, attempts + 1):
            session = Session(
                public_id=random_token(int(cfg.public_id_length)),
                sender_id=bytes(conn),
                deletion_secret=random_token(int(cfg.deletion_secret_length)),
                items=items,
            )
            try:
                self.ctx.store.insert(session)
                return session
            except DuplicateKeyError as e:
                self.log.warning(
                    "Identifier collision on %s (attempt %d/%d)",
                    e.field,
                    attempt,
                    attempts,
                )
        raise ResourceExhausted()

    def join(
        self, conn: bytes, public_id: Any, outgoing: Outgoing
    ) -> tuple[tuple[ItemMetadata, ...], list[bytes]]:
        """Admit ``conn`` as a receiver of an open session.

        Unknown and closed sessions raise the same ``NotFound``.
        """
        if not isinstance(public_id, str) or not public_id.strip():
            raise NotFound(JOIN_NOT_FOUND)
        public_id = public_id.strip()

        session = self.ctx.store.find_open(public_id)
        if session is None:
            raise NotFound(JOIN_NOT_FOUND)

        # No sender check: a sender joining its own session is recorded as a
        # receiver like any other connection.
        registry = self.ctx.registry
        registry.subscribe(public_id, conn)
        try:
            added = self.ctx.store.add_receiver(public_id, conn)
        except Exception:
            registry.unsubscribe(public_id, conn)
            raise
        if not added:
            # The sender left between lookup and append.
            registry.unsubscribe(public_id, conn)
            raise NotFound(JOIN_NOT_FOUND)

        # Live group membership, not the stored receiver list.
        peers = sorted(c for c in registry.members(public_id) if c != bytes(conn))
        self.ctx.stats.inc("joins")

        self.log.info(
            "JOIN session=%s peers=%d link_id=%s",
            public_id,
            len(peers),
            fmt_conn(conn),
        )

        self.ctx.messages.queue(
            outgoing,
            conn,
            T_JOIN_SUCCESS,
            {
                B_ITEMS: [item.to_wire() for item in session.items],
                B_PEERS: peers,
            },
        )
        self.ctx.messages.fan_out(
            outgoing, peers, T_NEW_PEER_JOINED, {B_PEER_ID: bytes(conn)}
        )
        return session.items, peers

    def cancel(
        self, conn: bytes, public_id: Any, secret: Any, outgoing: Outgoing
    ) -> Session:
        """Delete a session on presentation of its deletion secret."""
        if not isinstance(public_id, str) or not isinstance(secret, str):
            raise NotFound(CANCEL_NOT_FOUND)

        session = self.ctx.store.delete_with_secret(public_id.strip(), secret)
        if session is None:
            raise NotFound(CANCEL_NOT_FOUND)

        members = self.ctx.registry.drop_group(session.public_id)
        notified = self.ctx.messages.fan_out(
            outgoing, members, T_SESSION_CLOSED, exclude=conn
        )
        self.ctx.stats.inc("cancels")

        self.log.info(
            "CANCEL session=%s notified=%d link_id=%s",
            session.public_id,
            notified,
            fmt_conn(conn),
        )

        self.ctx.messages.queue(
            outgoing, conn, T_CANCELLED, {B_PUBLIC_ID: session.public_id}
        )
        return session

    def expire(self, outgoing: Outgoing, *, now: float | None = None) -> list[str]:
        """Delete sessions older than ``session_ttl_s`` and close their groups."""
        ttl = float(self.ctx.config.session_ttl_s)
        if ttl <= 0:
            return []
        cutoff = (time.time() if now is None else float(now)) - ttl

        expired: list[str] = []
        for session in self.ctx.store.delete_expired(cutoff):
            members = self.ctx.registry.drop_group(session.public_id)
            self.ctx.messages.fan_out(outgoing, members, T_SESSION_CLOSED)
            expired.append(session.public_id)
            self.log.info(
                "Expired session=%s members=%d", session.public_id, len(members)
            )

        if expired:
            self.ctx.stats.inc("sessions_expired", len(expired))
        return expired
