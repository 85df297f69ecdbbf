from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .codec import decode_envelope
from .constants import (
    B_DELETION_SECRET,
    B_PUBLIC_ID,
    K_BODY,
    K_T,
    RELAY_FORWARDS,
    T_CANCEL,
    T_CANCEL_ERROR,
    T_CREATE,
    T_CREATE_ERROR,
    T_JOIN,
    T_JOIN_ERROR,
    T_PING,
    T_PONG,
)
from .errors import HubError, Internal, InvalidInput
from .lifecycle import SessionLifecycle
from .relay import HandshakeRelay
from .util import fmt_conn

if TYPE_CHECKING:
    from .context import HubContext
    from .messages import Outgoing


@dataclass
class _ConnState:
    """Token bucket and liveness state for one connection."""

    tokens: float
    last_refill: float
    awaiting_pong: float | None = None


class MessageRouter:
    """
    Handles message routing and dispatching for the signaling hub.

    This class is responsible for:
    - Decoding and validating incoming envelopes
    - Per-connection rate limiting
    - Dispatching by type (CREATE, JOIN, CANCEL, relays, PING, PONG)
    - Converting handler faults into an error event for the originator
    """

    def __init__(
        self,
        ctx: HubContext,
        lifecycle: SessionLifecycle | None = None,
        relay: HandshakeRelay | None = None,
    ) -> None:
        self.ctx = ctx
        self.log = logging.getLogger("oshub.router")
        self.lifecycle = lifecycle or SessionLifecycle(ctx)
        self.relay = relay or HandshakeRelay(ctx)
        self._lock = threading.Lock()
        self._conns: dict[bytes, _ConnState] = {}

    def on_connect(self, conn: bytes) -> None:
        with self._lock:
            self._conns[bytes(conn)] = _ConnState(
                tokens=float(self.ctx.config.rate_limit_msgs_per_minute),
                last_refill=time.monotonic(),
            )

    def on_disconnect(self, conn: bytes) -> None:
        with self._lock:
            self._conns.pop(bytes(conn), None)

    def refill_and_take(self, conn: bytes, cost: float = 1.0) -> bool:
        """
        Token bucket rate limiting.

        Refills tokens based on elapsed time and attempts to take `cost` tokens.
        Returns True if tokens were available and taken, False if rate limited.
        """
        with self._lock:
            state = self._conns.get(bytes(conn))
            if state is None:
                return True

            now = time.monotonic()
            per_min = float(max(1, int(self.ctx.config.rate_limit_msgs_per_minute)))
            rate_per_s = per_min / 60.0
            elapsed = max(0.0, now - state.last_refill)
            state.tokens = min(per_min, state.tokens + elapsed * rate_per_s)
            state.last_refill = now

            if state.tokens < cost:
                return False

            state.tokens -= cost
            return True

    def ping_due(self, now: float, timeout: float) -> tuple[list[bytes], list[bytes]]:
        """Split connections into (to_ping, to_teardown) for a liveness round."""
        to_ping: list[bytes] = []
        to_teardown: list[bytes] = []
        with self._lock:
            for conn, state in self._conns.items():
                awaiting = state.awaiting_pong
                if timeout > 0 and awaiting is not None and (now - awaiting) > timeout:
                    to_teardown.append(conn)
                    continue
                if awaiting is None:
                    state.awaiting_pong = now
                    to_ping.append(conn)
        return to_ping, to_teardown

    def route_packet(self, conn: bytes, data: bytes, outgoing: Outgoing) -> None:
        """Main entry point for an inbound packet or resource payload."""
        stats = self.ctx.stats
        stats.inc("pkts_in")
        stats.inc("bytes_in", len(data))

        if not self.refill_and_take(conn, 1.0):
            stats.inc("rate_limited")
            if self.log.isEnabledFor(logging.DEBUG):
                self.log.debug("Rate limited link_id=%s", fmt_conn(conn))
            self.ctx.messages.emit_error(outgoing, conn, "rate limited")
            return

        try:
            env = decode_envelope(data)
        except Exception as e:
            stats.inc("pkts_bad")
            self.log.debug(
                "Bad packet link_id=%s bytes=%s err=%s",
                fmt_conn(conn),
                len(data),
                e,
            )
            self.ctx.messages.emit_error(outgoing, conn, f"bad message: {e}")
            return

        t = env.get(K_T)
        body = env.get(K_BODY)

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "RX link_id=%s t=%s bytes=%s body_type=%s",
                fmt_conn(conn),
                t,
                len(data),
                type(body).__name__,
            )

        self.dispatch(conn, t, body, outgoing)

    def dispatch(self, conn: bytes, t: Any, body: Any, outgoing: Outgoing) -> None:
        # Dispatch by message type
        if t == T_CREATE:
            self._guarded(
                conn, T_CREATE_ERROR, outgoing,
                lambda out: self.lifecycle.create(conn, body, out),
            )
        elif t == T_JOIN:
            self._guarded(
                conn, T_JOIN_ERROR, outgoing,
                lambda out: self.lifecycle.join(conn, body, out),
            )
        elif t == T_CANCEL:
            self._guarded(
                conn, T_CANCEL_ERROR, outgoing,
                lambda out: self._handle_cancel(conn, body, out),
            )
        elif t in RELAY_FORWARDS:
            self._handle_relay(conn, t, body, outgoing)
        elif t == T_PING:
            self._handle_ping(conn, body, outgoing)
        elif t == T_PONG:
            self._handle_pong(conn)
        else:
            self.log.debug("Ignoring t=%s link_id=%s", t, fmt_conn(conn))

    def _guarded(self, conn: bytes, error_type: int, outgoing: Outgoing, handler) -> None:
        # Handler output is only kept when the handler succeeds.
        staged: Outgoing = []
        try:
            handler(staged)
        except HubError as e:
            self.log.info(
                "Request failed t=%s code=%s link_id=%s: %s",
                error_type,
                e.code,
                fmt_conn(conn),
                e.message,
            )
            self.ctx.messages.emit_error(
                outgoing, conn, self._client_text(e), msg_type=error_type
            )
            return
        except Exception:
            self.log.exception(
                "Handler error t=%s link_id=%s", error_type, fmt_conn(conn)
            )
            self.ctx.messages.emit_error(
                outgoing, conn, Internal().message, msg_type=error_type
            )
            return
        outgoing.extend(staged)

    def _client_text(self, e: HubError) -> str:
        if isinstance(e, InvalidInput):
            return f"invalid item metadata: {e.message}"
        return e.message

    def _handle_cancel(self, conn: bytes, body: Any, outgoing: Outgoing) -> None:
        public_id = body.get(B_PUBLIC_ID) if isinstance(body, dict) else None
        secret = body.get(B_DELETION_SECRET) if isinstance(body, dict) else None
        self.lifecycle.cancel(conn, public_id, secret, outgoing)

    def _handle_relay(
        self, conn: bytes, t: int, body: Any, outgoing: Outgoing
    ) -> None:
        try:
            self.relay.relay(t, conn, body, outgoing)
        except Exception:
            # No attributable fault; the message is dropped.
            self.log.debug("Relay failed link_id=%s", fmt_conn(conn), exc_info=True)

    def _handle_ping(self, conn: bytes, body: Any, outgoing: Outgoing) -> None:
        self.ctx.stats.inc("pings_in")
        self.ctx.stats.inc("pongs_out")
        self.ctx.messages.queue(outgoing, conn, T_PONG, body)

    def _handle_pong(self, conn: bytes) -> None:
        with self._lock:
            state = self._conns.get(bytes(conn))
            if state is not None:
                state.awaiting_pong = None
