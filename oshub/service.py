from __future__ import annotations

import logging
import os
import signal
import threading
import time

import RNS

from .codec import encode
from .config import HubRuntimeConfig
from .constants import T_PING
from .context import HubContext
from .lifecycle import SessionLifecycle
from .messages import Outgoing
from .reconciler import DisconnectReconciler
from .relay import HandshakeRelay
from .resources import ResourceManager
from .router import MessageRouter
from .util import expand_path, fmt_conn


class HubService:
    """Binds the signaling hub to a Reticulum destination.

    Every client opens one ``RNS.Link``; its link id is the connection id used
    throughout the core. Callbacks arrive on RNS threads and feed the router
    and the disconnect reconciler, whose queued output is flushed here after
    the handler returns.
    """

    def __init__(self, config: HubRuntimeConfig, *, ctx: HubContext | None = None) -> None:
        self.config = config
        self.log = logging.getLogger("oshub.hub")

        self.ctx = ctx if ctx is not None else HubContext(config)
        self.lifecycle = SessionLifecycle(self.ctx)
        self.router = MessageRouter(
            self.ctx, lifecycle=self.lifecycle, relay=HandshakeRelay(self.ctx)
        )
        self.reconciler = DisconnectReconciler(self.ctx)
        self.resource_manager = ResourceManager(self.ctx, self._on_payload)

        self.identity: RNS.Identity | None = None
        self.destination: RNS.Destination | None = None

        self._links_lock = threading.Lock()
        self._links: dict[bytes, RNS.Link] = {}

        self._shutdown = threading.Event()
        self._threads: list[threading.Thread] = []

    def _fmt_link_id(self, link: RNS.Link) -> str:
        return fmt_conn(getattr(link, "link_id", None))

    def _conn_id(self, link: RNS.Link) -> bytes:
        return bytes(link.link_id)

    def _packet_would_fit(self, link: RNS.Link, payload: bytes) -> bool:
        """Check if payload fits within link MDU without creating/packing packets."""
        try:
            mdu = getattr(link, "MDU", None)
            if mdu is not None:
                return len(payload) <= mdu
            pkt = RNS.Packet(link, payload)
            pkt.pack()
            return True
        except Exception:
            return False

    def start(self) -> None:
        self.log.info("Starting Reticulum")
        self.ctx.stats.set_start_time()
        RNS.Reticulum(configdir=self.config.configdir, require_shared_instance=False)

        if not self.config.identity_path:
            raise RuntimeError("identity_path is not set")
        self.identity = self._load_identity(self.config.identity_path)
        self.ctx.hub_hash = bytes(self.identity.hash)

        parts = [p for p in str(self.config.dest_name).split(".") if p]
        if not parts:
            raise ValueError("dest_name must not be empty")
        app_name, aspects = parts[0], parts[1:]

        self.destination = RNS.Destination(
            self.identity,
            RNS.Destination.IN,
            RNS.Destination.SINGLE,
            app_name,
            *aspects,
        )
        self.destination.set_link_established_callback(self._on_link)

        if self.config.announce_on_start:
            self._announce_once()

        self.log.info(
            "Hub running dest_name=%s dest_hash=%s sessions_stored=%s",
            self.config.dest_name,
            self.destination.hash.hex(),
            self.ctx.store.count(),
        )
        self.log.info(
            "Policy session_ttl_s=%s max_items=%s rate_limit_msgs_per_minute=%s",
            self.config.session_ttl_s,
            self.config.max_items,
            self.config.rate_limit_msgs_per_minute,
        )

        self._spawn("announce", self._announce_loop, self.config.announce_period_s)
        self._spawn("ping", self._ping_loop, self.config.ping_interval_s)
        self._spawn("prune", self._prune_loop, self.config.session_prune_interval_s)
        self._spawn("stats", self._stats_loop, self.config.stats_interval_s)

    def _spawn(self, name: str, target, interval: float) -> None:
        if not interval or float(interval) <= 0:
            return
        t = threading.Thread(target=target, name=f"oshub-{name}", daemon=True)
        t.start()
        self._threads.append(t)

    def _announce_once(self) -> None:
        if self.destination is None:
            return
        try:
            self.destination.announce(
                app_data=encode({"proto": "oshub", "v": 1, "hub": self.config.hub_name})
            )
        except Exception:
            self.log.exception("Announce failed")

    def _announce_loop(self) -> None:
        period = float(self.config.announce_period_s)
        while not self._shutdown.wait(period):
            self._announce_once()

    def _ping_loop(self) -> None:
        interval = float(self.config.ping_interval_s)
        timeout = float(self.config.ping_timeout_s)
        while not self._shutdown.wait(interval):
            now = time.monotonic()
            to_ping, to_teardown = self.router.ping_due(now, timeout)

            for conn in to_teardown:
                link = self._link_for(conn)
                self.log.info("Ping timeout link_id=%s", fmt_conn(conn))
                if link is not None:
                    try:
                        link.teardown()
                    except Exception:
                        self.log.debug("Teardown failed", exc_info=True)

            outgoing: Outgoing = []
            for conn in to_ping:
                self.ctx.stats.inc("pings_out")
                self.ctx.messages.queue(outgoing, conn, T_PING, now)
            self._flush(outgoing)

    def _prune_loop(self) -> None:
        interval = float(self.config.session_prune_interval_s)
        while not self._shutdown.wait(interval):
            outgoing: Outgoing = []
            try:
                expired = self.lifecycle.expire(outgoing)
            except Exception:
                self.log.exception("Session expiry failed")
                continue
            if expired:
                self.log.info("Expired %d session(s)", len(expired))
            self._flush(outgoing)

    def _stats_loop(self) -> None:
        interval = float(self.config.stats_interval_s)
        while not self._shutdown.wait(interval):
            self.log.info("%s", self.ctx.stats.format_stats(self.ctx))

    def run_forever(self) -> None:
        if self.destination is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGTERM, lambda *_: self.stop())

        while not self._shutdown.is_set():
            time.sleep(0.25)

    def stop(self) -> None:
        if self._shutdown.is_set():
            return
        self._shutdown.set()

        self.log.info("Shutting down\n%s", self.ctx.stats.format_stats(self.ctx))

        with self._links_lock:
            links = list(self._links.values())
            self._links.clear()
        self.resource_manager.reset()
        self.ctx.registry.clear_all()

        for link in links:
            try:
                link.teardown()
            except Exception:
                pass

        self.ctx.store.close()

    def _load_identity(self, path: str) -> RNS.Identity:
        p = expand_path(path)
        if not os.path.exists(p):
            raise RuntimeError(f"Identity not found at {p}")
        ident = RNS.Identity.from_file(p)
        if ident is None:
            raise RuntimeError(f"Failed to load identity from {p}")
        return ident

    def _link_for(self, conn: bytes) -> RNS.Link | None:
        with self._links_lock:
            return self._links.get(bytes(conn))

    def _on_link(self, link: RNS.Link) -> None:
        conn = self._conn_id(link)
        with self._links_lock:
            self._links[conn] = link
        self.ctx.registry.register(conn)
        self.router.on_connect(conn)
        self.resource_manager.attach(link)

        link.set_packet_callback(lambda data, pkt: self._on_packet(link, data))
        link.set_link_closed_callback(lambda closed_link: self._on_close(closed_link))

        self.log.info("Link established link_id=%s", fmt_conn(conn))

    def _on_packet(self, link: RNS.Link, data: bytes) -> None:
        self._on_payload(link, data)

    def _on_payload(self, link: RNS.Link, data: bytes) -> None:
        """Route one inbound envelope (packet or completed resource)."""
        outgoing: Outgoing = []
        self.router.route_packet(self._conn_id(link), data, outgoing)

        if self.log.isEnabledFor(logging.DEBUG) and outgoing:
            self.log.debug(
                "Sending %d message(s) link_id=%s",
                len(outgoing),
                self._fmt_link_id(link),
            )
        self._flush(outgoing)

    def _on_close(self, link: RNS.Link) -> None:
        conn = self._conn_id(link)
        with self._links_lock:
            self._links.pop(conn, None)
        self.resource_manager.detach(link)

        outgoing: Outgoing = []
        role = self.reconciler.on_disconnect(conn, outgoing)
        self.router.on_disconnect(conn)

        self.log.info("Link closed role=%s link_id=%s", role, fmt_conn(conn))
        self._flush(outgoing)

    def _flush(self, outgoing: Outgoing) -> None:
        """Send queued payloads. Targets that have gone away are skipped."""
        for conn, payload in outgoing:
            link = self._link_for(conn)
            if link is None:
                self.log.debug("Dropping message for unknown link_id=%s", fmt_conn(conn))
                continue

            self.ctx.stats.inc("bytes_out", len(payload))
            if not self._packet_would_fit(link, payload):
                if not self.resource_manager.send(link, payload):
                    self.log.warning(
                        "Message too large for link link_id=%s bytes=%s",
                        fmt_conn(conn),
                        len(payload),
                    )
                continue

            try:
                RNS.Packet(link, payload).send()
            except OSError as e:
                self.log.warning(
                    "Send failed link_id=%s bytes=%s err=%s",
                    fmt_conn(conn),
                    len(payload),
                    e,
                )
            except Exception:
                self.log.debug(
                    "Send failed link_id=%s bytes=%s",
                    fmt_conn(conn),
                    len(payload),
                    exc_info=True,
                )

