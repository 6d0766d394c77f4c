from __future__ import annotations

import logging
from collections.abc import Callable, Hashable
from typing import Any

from .codec import encode
from .constants import SIGNAL_NAMES, SIGNAL_TYPES
from .envelope import make_envelope
from .presence import PresenceRegistry
from .util import normalize_identity


class SignalingRelay:
    """
    Fans WebRTC signaling messages out to every live connection of a target.

    Delivery is best-effort: an offline target means the message is dropped,
    nothing is queued or acknowledged, and the sender is not told. Payloads
    are opaque and forwarded unchanged.
    """

    def __init__(
        self,
        presence: PresenceRegistry,
        send: Callable[[Any, bytes], None],
        *,
        on_event: Callable[[str, int], None] | None = None,
    ) -> None:
        self.presence = presence
        self._send = send
        self._on_event = on_event
        self.log = logging.getLogger("rmatchd.relay")

    def relay(
        self,
        kind: int,
        target: Any,
        payload: Any,
        *,
        src: str | None = None,
        exclude: Hashable | None = None,
        outgoing: list[tuple[Any, bytes]] | None = None,
    ) -> int:
        """
        Deliver ``payload`` tagged with ``kind`` to every connection of ``target``.

        With ``outgoing`` the encoded envelopes are queued for the caller to
        send; otherwise they are sent immediately, one connection at a time.
        Returns the number of connections the message was handed to.
        """
        if kind not in SIGNAL_TYPES:
            raise ValueError(f"not a signaling message type: {kind!r}")
        name = SIGNAL_NAMES[kind]

        ident = normalize_identity(target)
        if ident is None:
            self.log.warning("Dropping %s without target identity src=%r", name, src)
            self._event("relay_invalid")
            return 0

        recipients = [c for c in self.presence.connections_for(ident) if c != exclude]
        if not recipients:
            self.log.debug("Dropping %s for offline target=%r src=%r", name, ident, src)
            self._event("relay_dropped")
            return 0

        env = make_envelope(kind, src=src, dst=ident, body=payload)
        data = encode(env)

        delivered = 0
        for conn in recipients:
            if outgoing is not None:
                outgoing.append((conn, data))
                delivered += 1
                continue
            try:
                self._send(conn, data)
                delivered += 1
            except Exception as e:
                self.log.warning("Relay send failed %s target=%r err=%s", name, ident, e)

        self.log.debug(
            "Relayed %s src=%r target=%r connections=%d", name, src, ident, delivered
        )
        self._event("relayed", delivered)
        return delivered

    def _event(self, key: str, delta: int = 1) -> None:
        if self._on_event is not None and delta:
            self._on_event(key, delta)
