"""Oversized envelope transfer over ``RNS.Resource``.

SDP offers and long item lists regularly exceed a link's MDU. Such envelopes
travel as a resource whose data is the complete CBOR envelope; a completed
inbound resource is handed to ``deliver`` and routed like a packet.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Callable

import RNS

from .util import fmt_conn

if TYPE_CHECKING:
    from .context import HubContext


def _link_conn(link: RNS.Link) -> bytes | None:
    lid = getattr(link, "link_id", None)
    return bytes(lid) if isinstance(lid, (bytes, bytearray)) else None


class ResourceManager:
    """Tracks in-flight resources per connection and applies size limits."""

    def __init__(
        self, ctx: HubContext, deliver: Callable[[RNS.Link, bytes], None]
    ) -> None:
        self.ctx = ctx
        self.deliver = deliver
        self.log = logging.getLogger("oshub.resources")
        self._lock = threading.Lock()
        self._in_flight: dict[bytes, set[RNS.Resource]] = {}

    @property
    def enabled(self) -> bool:
        return bool(self.ctx.config.enable_resource_transfer)

    @property
    def limit(self) -> int:
        return int(self.ctx.config.max_resource_bytes)

    def attach(self, link: RNS.Link) -> None:
        """Start tracking a link and accept application resources on it."""
        conn = _link_conn(link)
        if conn is None:
            return
        with self._lock:
            self._in_flight[conn] = set()
        if not self.enabled:
            return

        try:
            link.set_resource_strategy(RNS.Link.ACCEPT_APP)
            link.set_resource_callback(self._accept)
            link.set_resource_concluded_callback(self._completed)
        except Exception as e:
            self.log.warning("Cannot enable resources link_id=%s: %s", fmt_conn(conn), e)

    def detach(self, link: RNS.Link) -> None:
        conn = _link_conn(link)
        with self._lock:
            self._in_flight.pop(conn, None)

    def reset(self) -> None:
        with self._lock:
            self._in_flight.clear()

    def in_flight(self, conn: bytes) -> int:
        with self._lock:
            return len(self._in_flight.get(bytes(conn), ()))

    def _accept(self, resource: RNS.Resource) -> bool:
        """Advertisement callback. Returning False rejects the transfer."""
        conn = _link_conn(resource.link)
        size = int(getattr(resource, "total_size", None) or getattr(resource, "size", 0))

        with self._lock:
            pending = self._in_flight.get(conn) if conn is not None else None
            accepted = pending is not None and size <= self.limit
            if accepted:
                pending.add(resource)

        if not accepted:
            self.ctx.stats.inc("resources_rejected")
            self.log.warning(
                "Rejected resource link_id=%s size=%s limit=%s",
                fmt_conn(conn),
                size,
                self.limit,
            )
            return False

        self.log.debug("Accepted resource link_id=%s size=%s", fmt_conn(conn), size)
        return True

    def _completed(self, resource: RNS.Resource) -> None:
        link = resource.link
        conn = _link_conn(link)
        with self._lock:
            pending = self._in_flight.get(conn)
            if pending is not None:
                pending.discard(resource)

        if resource.status != RNS.Resource.COMPLETE:
            self.log.warning(
                "Incomplete resource link_id=%s status=%s", fmt_conn(conn), resource.status
            )
            return

        data = resource.data
        try:
            payload = bytes(data.read() if hasattr(data, "read") else data)
        except Exception:
            self.log.exception("Unreadable resource link_id=%s", fmt_conn(conn))
            return

        self.ctx.stats.inc("resources_received")
        self.deliver(link, payload)

    def send(self, link: RNS.Link, payload: bytes) -> bool:
        """Start an outbound transfer. Returns False when it could not be started."""
        conn = _link_conn(link)
        if not self.enabled:
            return False
        if len(payload) > self.limit:
            self.log.error(
                "Envelope over resource limit link_id=%s bytes=%s limit=%s",
                fmt_conn(conn),
                len(payload),
                self.limit,
            )
            return False

        try:
            resource = RNS.Resource(payload, link, advertise=True, auto_compress=False)
        except Exception:
            self.log.exception("Resource setup failed link_id=%s", fmt_conn(conn))
            return False

        with self._lock:
            self._in_flight.setdefault(conn, set()).add(resource)
        self.ctx.stats.inc("resources_sent")
        self.log.debug("Resource out link_id=%s bytes=%s", fmt_conn(conn), len(payload))
        return True
