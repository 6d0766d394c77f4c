"""Presence tracking: which identities currently hold live connections."""

from __future__ import annotations

import logging
import threading
from collections.abc import Hashable


class PresenceRegistry:
    """
    Maps each online identity to the set of connections registered for it.

    Invariants:
    - an identity is present only while it has at least one connection
    - a connection is bound to at most one identity at a time

    Both maps are guarded by one lock and every read hands out an immutable
    snapshot, so callers never observe a set mid-mutation. None of the
    operations block on I/O and none of them raise on unknown keys.
    """

    def __init__(self) -> None:
        self.log = logging.getLogger("rmatchd.presence")
        self._lock = threading.Lock()
        self._by_identity: dict[str, set[Hashable]] = {}
        self._by_connection: dict[Hashable, str] = {}

    def register(self, identity: str, connection: Hashable) -> bool:
        """
        Bind ``connection`` to ``identity``.

        Returns True if the identity went from offline to online. A
        connection already bound elsewhere is moved; re-registering under
        the same identity changes nothing.
        """
        with self._lock:
            current = self._by_connection.get(connection)
            if current == identity:
                return False
            if current is not None:
                self._discard_locked(current, connection)

            conns = self._by_identity.get(identity)
            came_online = conns is None
            if conns is None:
                conns = self._by_identity[identity] = set()
            conns.add(connection)
            self._by_connection[connection] = identity

        if current is not None:
            self.log.debug("Connection moved identity=%r -> %r", current, identity)
        return came_online

    def unregister(self, connection: Hashable) -> tuple[str | None, bool]:
        """
        Remove ``connection`` from whichever identity holds it.

        Returns ``(identity, went_offline)``; ``(None, False)`` when the
        connection was never registered.
        """
        with self._lock:
            identity = self._by_connection.pop(connection, None)
            if identity is None:
                return None, False
            went_offline = self._discard_locked(identity, connection)
        return identity, went_offline

    def _discard_locked(self, identity: str, connection: Hashable) -> bool:
        conns = self._by_identity.get(identity)
        if conns is None:
            return False
        conns.discard(connection)
        if conns:
            return False
        del self._by_identity[identity]
        return True

    def connections_for(self, identity: str) -> frozenset:
        with self._lock:
            return frozenset(self._by_identity.get(identity, ()))

    def is_online(self, identity: str) -> bool:
        with self._lock:
            return identity in self._by_identity

    def identity_for(self, connection: Hashable) -> str | None:
        with self._lock:
            return self._by_connection.get(connection)

    def all_online_identities(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._by_identity)

    def counts(self) -> dict[str, int]:
        with self._lock:
            return {
                "identities": len(self._by_identity),
                "connections": len(self._by_connection),
            }

    def clear(self) -> list[Hashable]:
        """Drop all presence and return the connections that were bound."""
        with self._lock:
            conns = list(self._by_connection)
            self._by_identity.clear()
            self._by_connection.clear()
        return conns
