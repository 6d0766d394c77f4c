from __future__ import annotations

import logging
import os
import signal
import threading
import time
from typing import Any

import RNS

from .codec import encode
from .config import HubRuntimeConfig
from .constants import T_ERROR, T_PING
from .embedding import EmbeddingClient
from .envelope import make_envelope
from .index import ChromaInterestIndex, InterestIndex
from .matching import Embedder, MatchOrchestrator
from .presence import PresenceRegistry
from .relay import SignalingRelay
from .retry import RetryPolicy
from .router import MessageRouter
from .session import STATE_REGISTERED, SessionManager
from .stats import StatsManager
from .util import expand_path


class HubService:
    def __init__(
        self,
        config: HubRuntimeConfig,
        *,
        embedder: Embedder | None = None,
        index: InterestIndex | None = None,
    ) -> None:
        self.config = config
        self.log = logging.getLogger("rmatchd.hub")

        # Session state is touched from Reticulum callbacks and the ping
        # thread. Guard it with a single re-entrant lock. Presence has its own
        # lock so HTTP match requests never wait on link traffic.
        self._state_lock = threading.RLock()

        self._shutdown = threading.Event()

        self.presence = PresenceRegistry()
        self.stats_manager = StatsManager(self)
        self.session_manager = SessionManager(self)
        self.relay = SignalingRelay(
            self.presence, self._transmit, on_event=self.stats_manager.inc
        )
        self.router = MessageRouter(self)

        policy = RetryPolicy(
            max_attempts=config.retry_max_attempts,
            backoff_s=config.retry_backoff_s,
            max_backoff_s=config.retry_max_backoff_s,
            budget_s=config.retry_budget_s,
        )
        if embedder is None:
            embedder = EmbeddingClient(
                config.embedding_url,
                api_key=config.resolved_embedding_api_key(),
                dim=config.embedding_dim,
                timeout=config.embedding_timeout_s,
                policy=policy,
            )
        if index is None:
            index = ChromaInterestIndex(
                config.index_host,
                config.index_port,
                ssl=config.index_ssl,
                collection_name=config.index_collection,
                policy=policy,
            )
        self.matcher = MatchOrchestrator(
            self.presence,
            embedder,
            index,
            top_k=config.match_top_k,
            max_matches=config.match_max_results,
        )

        self.identity: RNS.Identity | None = None
        self.destination: RNS.Destination | None = None

        self._http_server: Any = None
        self._ping_thread: threading.Thread | None = None
        self._announce_thread: threading.Thread | None = None

    def _fmt_hash(self, h: Any, *, prefix: int = 12) -> str:
        if isinstance(h, (bytes, bytearray)):
            s = bytes(h).hex()
            return s if prefix <= 0 else s[: min(prefix, len(s))]
        return "-"

    def _fmt_link_id(self, link: Any) -> str:
        lid = getattr(link, "link_id", None)
        if isinstance(lid, (bytes, bytearray)):
            return bytes(lid).hex()
        h = getattr(link, "hash", None)
        if isinstance(h, (bytes, bytearray)):
            return bytes(h).hex()
        return "-"

    def start(self) -> None:
        self.log.info("Starting Reticulum")
        self.stats_manager.set_start_time()
        RNS.Reticulum(configdir=self.config.configdir, require_shared_instance=False)

        if not self.config.identity_path:
            raise RuntimeError("identity_path is not set")
        self.identity = self._load_identity(self.config.identity_path)

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

        if self.config.announce_period_s and self.config.announce_period_s > 0:
            self._announce_thread = threading.Thread(
                target=self._announce_loop,
                name="rmatchd-announce",
                daemon=True,
            )
            self._announce_thread.start()

        self.log.info(
            "Hub running dest_name=%s dest_hash=%s",
            self.config.dest_name,
            self.destination.hash.hex() if self.destination else "-",
        )
        self.log.info(
            "Policy rate_limit_msgs_per_minute=%s match_top_k=%s retry_max_attempts=%s",
            self.config.rate_limit_msgs_per_minute,
            self.config.match_top_k,
            self.config.retry_max_attempts,
        )

        if self.config.ping_interval_s and self.config.ping_interval_s > 0:
            self._ping_thread = threading.Thread(
                target=self._ping_loop, name="rmatchd-ping", daemon=True
            )
            self._ping_thread.start()

        if self.config.http_enabled:
            self._start_http()

    def _start_http(self) -> None:
        from .http_api import HttpServer, create_app

        self._http_server = HttpServer(
            create_app(self), host=self.config.http_host, port=self.config.http_port
        )
        self._http_server.start()
        self.log.info(
            "HTTP API listening on %s:%s", self.config.http_host, self.config.http_port
        )

    def _announce_once(self) -> None:
        if self.destination is None:
            return
        try:
            self.destination.announce(
                app_data=encode({"proto": "rmatch", "v": 1, "hub": self.config.hub_name})
            )
            self.stats_manager.inc("announces")
        except Exception:
            self.log.exception("Announce failed")

    def _announce_loop(self) -> None:
        while not self._shutdown.is_set():
            period = float(self.config.announce_period_s)
            if period <= 0:
                time.sleep(1.0)
                continue

            if self._shutdown.wait(period):
                break
            self._announce_once()

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

        if self._http_server is not None:
            self._http_server.stop()
            self._http_server = None

        with self._state_lock:
            links = self.session_manager.clear_all()

        for link in links:
            try:
                link.teardown()
            except Exception:
                pass

        close = getattr(self.matcher.embedder, "close", None)
        if callable(close):
            close()

        self.log.info("Hub stopped %s", self.stats_manager.format_stats())

    def _load_identity(self, path: str) -> RNS.Identity:
        p = expand_path(path)
        if not os.path.exists(p):
            raise RuntimeError(f"Identity not found at {p}")
        ident = RNS.Identity.from_file(p)
        if ident is None:
            raise RuntimeError(f"Failed to load identity from {p}")
        return ident

    # Transport callbacks

    def _on_link(self, link: RNS.Link) -> None:
        with self._state_lock:
            self.session_manager.on_link_established(link)

        link.set_packet_callback(lambda data, pkt: self._on_packet(link, data))
        link.set_link_closed_callback(lambda closed_link: self._on_close(closed_link))
        link.set_remote_identified_callback(
            lambda identified_link, ident: self._on_remote_identified(
                identified_link, ident
            )
        )

        self.log.info("Link established link_id=%s", self._fmt_link_id(link))

    def _on_remote_identified(
        self, link: RNS.Link, identity: RNS.Identity | None
    ) -> None:
        with self._state_lock:
            self.session_manager.on_remote_identified(link, identity)

    def _on_close(self, link: RNS.Link) -> None:
        with self._state_lock:
            identity, went_offline = self.session_manager.on_link_closed(link)

        self.log.info(
            "Link closed identity=%r offline=%s link_id=%s",
            identity,
            went_offline,
            self._fmt_link_id(link),
        )

    def _on_packet(self, link: RNS.Link, data: bytes) -> None:
        # Packet callbacks can occur concurrently with other link callbacks and
        # background worker threads. Keep state mutations under the shared lock,
        # but avoid holding it while sending. The per-link order lock keeps one
        # sender's relayed messages in arrival order.
        with self._state_lock:
            sess = self.session_manager.get_session(link)
            if sess is None:
                return
            order_lock = sess["order_lock"]

        with order_lock:
            outgoing: list[tuple[RNS.Link, bytes]] = []
            with self._state_lock:
                self.router.route_packet(link, data, outgoing)

            if self.log.isEnabledFor(logging.DEBUG) and outgoing:
                self.log.debug(
                    "Sending %d message(s) for link_id=%s",
                    len(outgoing),
                    self._fmt_link_id(link),
                )
            self._flush(outgoing)

    # Sending

    def _transmit(self, link: RNS.Link, payload: bytes) -> None:
        RNS.Packet(link, payload).send()

    def _send_payload(self, link: RNS.Link, payload: bytes) -> bool:
        self.stats_manager.inc("bytes_out", len(payload))
        try:
            self._transmit(link, payload)
            return True
        except OSError as e:
            # Common failure mode on low-MTU links: packet too large.
            self.log.warning(
                "Send failed link_id=%s bytes=%s err=%s",
                self._fmt_link_id(link),
                len(payload),
                e,
            )
        except Exception:
            self.log.debug(
                "Send failed link_id=%s bytes=%s",
                self._fmt_link_id(link),
                len(payload),
                exc_info=True,
            )
        self.stats_manager.inc("send_failures")
        return False

    def _flush(self, outgoing: list[tuple[RNS.Link, bytes]]) -> None:
        for out_link, payload in outgoing:
            self._send_payload(out_link, payload)

    def _send(self, link: RNS.Link, env: dict) -> None:
        self._send_payload(link, encode(env))

    def _queue_env(
        self, outgoing: list[tuple[RNS.Link, bytes]], link: RNS.Link, env: dict
    ) -> None:
        outgoing.append((link, encode(env)))

    def _emit_error(
        self,
        outgoing: list[tuple[RNS.Link, bytes]] | None,
        link: RNS.Link,
        *,
        text: str,
    ) -> None:
        self.stats_manager.inc("errors_sent")
        env = make_envelope(T_ERROR, body=text)
        if outgoing is None:
            self._send(link, env)
        else:
            self._queue_env(outgoing, link, env)

    def _ping_loop(self) -> None:
        while not self._shutdown.is_set():
            interval = float(self.config.ping_interval_s)
            timeout = float(self.config.ping_timeout_s)
            if interval <= 0:
                time.sleep(1.0)
                continue

            if self._shutdown.wait(interval):
                break
            self._ping_once(time.monotonic(), timeout)

    def _ping_once(self, now: float, timeout: float) -> None:
        to_teardown: list[RNS.Link] = []
        to_ping: list[RNS.Link] = []

        with self._state_lock:
            for link, sess in list(self.session_manager.sessions.items()):
                if sess.get("state") != STATE_REGISTERED:
                    continue

                awaiting = sess.get("awaiting_pong")
                if timeout > 0 and awaiting is not None and (now - float(awaiting)) > timeout:
                    to_teardown.append(link)
                    continue

                if awaiting is None:
                    sess["awaiting_pong"] = now
                    to_ping.append(link)

        # A torn-down link fires its closed callback, which clears presence.
        for link in to_teardown:
            self.log.info("Ping timeout link_id=%s", self._fmt_link_id(link))
            try:
                link.teardown()
            except Exception:
                pass

        for link in to_ping:
            ping = make_envelope(T_PING, body=int(now * 1000))
            self.stats_manager.inc("pings_out")
            self._send(link, ping)
