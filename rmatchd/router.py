from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from . import __version__
from .codec import decode
from .constants import (
    B_REGISTERED_HUB,
    B_REGISTERED_IDENTITY,
    B_REGISTERED_VER,
    K_BODY,
    K_DST,
    K_T,
    SIGNAL_NAMES,
    SIGNAL_TYPES,
    T_PING,
    T_PONG,
    T_REGISTER,
    T_REGISTERED,
)
from .envelope import make_envelope, validate_envelope
from .util import normalize_identity

if TYPE_CHECKING:
    import RNS

    from .service import HubService


class MessageRouter:
    """
    Decodes inbound link packets and dispatches them by message type.

    REGISTER goes to the session manager, OFFER/ANSWER/CANDIDATE to the
    signaling relay, PING/PONG drive liveness. Replies and relayed messages
    are appended to ``outgoing`` for the hub to send once it releases the
    state lock.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("rmatchd.router")

    def route_packet(
        self,
        link: RNS.Link,
        data: bytes,
        outgoing: list[tuple[RNS.Link, bytes]],
    ) -> None:
        """
        Main entry point for routing an incoming packet.

        This method should be called with the state lock held.
        """
        sess = self.hub.session_manager.get_session(link)
        if sess is None:
            return

        stats = self.hub.stats_manager
        stats.inc("pkts_in")
        stats.inc("bytes_in", len(data))

        if not self.hub.session_manager.refill_and_take(link, 1.0):
            stats.inc("rate_limited")
            self.log.debug("Rate limited link_id=%s", self.hub._fmt_link_id(link))
            self.hub._emit_error(outgoing, link, text="rate limited")
            return

        try:
            env = decode(data)
            validate_envelope(env)
        except Exception as e:
            stats.inc("pkts_bad")
            self.log.debug(
                "Bad packet link_id=%s bytes=%s err=%s",
                self.hub._fmt_link_id(link),
                len(data),
                e,
            )
            self.hub._emit_error(outgoing, link, text=f"bad message: {e}")
            return

        t = env.get(K_T)

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "RX identity=%r link_id=%s t=%s bytes=%s",
                sess.get("identity"),
                self.hub._fmt_link_id(link),
                t,
                len(data),
            )

        if t == T_PONG:
            self._handle_pong(sess)
        elif t == T_PING:
            self._handle_ping(link, env, outgoing)
        elif t == T_REGISTER:
            self._handle_register(link, env, outgoing)
        elif t in SIGNAL_TYPES:
            self._handle_signal(link, sess, env, outgoing)
        else:
            self.log.debug("Ignoring message type %s link_id=%s", t, self.hub._fmt_link_id(link))

    def _handle_pong(self, sess: dict[str, Any]) -> None:
        self.hub.stats_manager.inc("pongs_in")
        sess["awaiting_pong"] = None

    def _handle_ping(
        self, link: RNS.Link, env: dict, outgoing: list[tuple[RNS.Link, bytes]]
    ) -> None:
        self.hub.stats_manager.inc("pings_in")
        pong = make_envelope(T_PONG, body=env.get(K_BODY))
        self.hub._queue_env(outgoing, link, pong)
        self.hub.stats_manager.inc("pongs_out")

    def _handle_register(
        self, link: RNS.Link, env: dict, outgoing: list[tuple[RNS.Link, bytes]]
    ) -> None:
        identity = env.get(K_BODY)
        if not self.hub.session_manager.register(link, identity):
            self.hub._emit_error(outgoing, link, text="register requires an identity")
            return

        body = {
            B_REGISTERED_IDENTITY: identity,
            B_REGISTERED_HUB: self.hub.config.hub_name,
            B_REGISTERED_VER: str(__version__),
        }
        self.hub._queue_env(outgoing, link, make_envelope(T_REGISTERED, dst=identity, body=body))

    def _handle_signal(
        self,
        link: RNS.Link,
        sess: dict[str, Any],
        env: dict,
        outgoing: list[tuple[RNS.Link, bytes]],
    ) -> None:
        t = env[K_T]
        target = env.get(K_DST)
        self.hub.relay.relay(
            t,
            target,
            env.get(K_BODY),
            src=sess.get("identity"),
            exclude=link,
            outgoing=outgoing,
        )
        if normalize_identity(target) is None:
            self.hub._emit_error(
                outgoing, link, text=f"{SIGNAL_NAMES[t]} requires a target identity"
            )
