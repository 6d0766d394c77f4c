from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .util import normalize_identity

if TYPE_CHECKING:
    import RNS

    from .service import HubService

STATE_CONNECTED = "connected"
STATE_REGISTERED = "registered"
STATE_CLOSED = "closed"


@dataclass
class _RateState:
    """Token bucket state for rate limiting."""

    tokens: float
    last_refill: float


class SessionManager:
    """
    Manages the lifecycle of hub connections.

    Each link moves through ``connected`` -> ``registered`` -> ``closed``.
    Registration binds the link to a user identity in the hub's presence
    registry; closing the link removes that binding exactly once, whatever
    state the link reached.

    Methods that touch ``sessions`` must be called with the hub state lock
    held. The presence registry has its own lock.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("rmatchd.session")
        self.sessions: dict[RNS.Link, dict[str, Any]] = {}
        self._rate: dict[RNS.Link, _RateState] = {}

    def on_link_established(self, link: RNS.Link) -> None:
        self.sessions[link] = {
            "state": STATE_CONNECTED,
            "identity": None,
            "peer": None,
            "awaiting_pong": None,
            # Serializes routing of this link's inbound packets so relayed
            # messages leave in the order they arrived.
            "order_lock": threading.Lock(),
        }

        self._rate[link] = _RateState(
            tokens=float(self.hub.config.rate_limit_msgs_per_minute),
            last_refill=time.monotonic(),
        )

        self.log.info("Session created link_id=%s", self.hub._fmt_link_id(link))

    def on_remote_identified(self, link: RNS.Link, identity: RNS.Identity | None) -> bytes | None:
        sess = self.sessions.get(link)
        if sess is None or identity is None:
            return None

        peer_hash = bytes(identity.hash)
        sess["peer"] = peer_hash
        self.log.info(
            "Remote identified peer=%s link_id=%s",
            self.hub._fmt_hash(peer_hash),
            self.hub._fmt_link_id(link),
        )
        return peer_hash

    def register(self, link: RNS.Link, identity: Any) -> bool:
        """
        Bind ``link`` to ``identity``.

        Missing or blank identities are logged and ignored; the session stays
        where it was and False is returned.
        """
        sess = self.sessions.get(link)
        if sess is None or sess["state"] == STATE_CLOSED:
            return False

        ident = normalize_identity(identity)
        if ident is None:
            self.log.warning(
                "Register without identity link_id=%s", self.hub._fmt_link_id(link)
            )
            return False

        came_online = self.hub.presence.register(ident, link)
        old = sess.get("identity")
        sess["identity"] = ident
        sess["state"] = STATE_REGISTERED
        self.hub.stats_manager.inc("registrations")

        if old is not None and old != ident:
            self.log.info(
                "Re-registered %r -> %r link_id=%s",
                old,
                ident,
                self.hub._fmt_link_id(link),
            )
        else:
            self.log.info(
                "Registered identity=%r link_id=%s online_now=%s",
                ident,
                self.hub._fmt_link_id(link),
                came_online,
            )
        return True

    def on_link_closed(self, link: RNS.Link) -> tuple[str | None, bool]:
        """
        Tear down session state for ``link``.

        Returns ``(identity, went_offline)``. Safe to call for links that
        never registered and for links that were already closed.
        """
        sess = self.sessions.pop(link, None)
        self._rate.pop(link, None)
        if sess is not None:
            sess["state"] = STATE_CLOSED

        # Unregister even without a session record; the registry no-ops on
        # links it does not know.
        try:
            identity, went_offline = self.hub.presence.unregister(link)
        except Exception:
            self.log.exception("Presence cleanup failed link_id=%s", self.hub._fmt_link_id(link))
            return None, False

        if went_offline:
            self.log.info("Identity offline identity=%r", identity)
        return identity, went_offline

    def refill_and_take(self, link: RNS.Link, cost: float = 1.0) -> bool:
        """
        Token bucket rate limiting.

        Refills tokens based on elapsed time and attempts to take `cost` tokens.
        Returns True if tokens were available and taken, False if rate limited.
        """
        state = self._rate.get(link)
        if state is None:
            return True

        now = time.monotonic()
        per_min = float(max(1, int(self.hub.config.rate_limit_msgs_per_minute)))
        rate_per_s = per_min / 60.0
        elapsed = max(0.0, now - state.last_refill)
        state.tokens = min(per_min, state.tokens + elapsed * rate_per_s)
        state.last_refill = now

        if state.tokens < cost:
            return False

        state.tokens -= cost
        return True

    def get_session(self, link: RNS.Link) -> dict[str, Any] | None:
        return self.sessions.get(link)

    def identity_of(self, link: RNS.Link) -> str | None:
        sess = self.sessions.get(link)
        if sess is None:
            return None
        return sess.get("identity")

    def clear_all(self) -> list[RNS.Link]:
        """Clear all sessions and return the links for teardown."""
        links = list(self.sessions.keys())
        for sess in self.sessions.values():
            sess["state"] = STATE_CLOSED
        self.sessions.clear()
        self._rate.clear()
        self.hub.presence.clear()
        return links

    def get_stats(self) -> dict[str, Any]:
        total = len(self.sessions)
        registered = sum(
            1 for s in self.sessions.values() if s.get("state") == STATE_REGISTERED
        )
        identified = sum(1 for s in self.sessions.values() if s.get("peer") is not None)

        return {
            "total": total,
            "registered": registered,
            "identified": identified,
        }
