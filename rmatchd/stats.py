"""Statistics tracking and reporting for the matchmaking hub."""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .service import HubService


class StatsManager:
    """
    Lifetime counters for the hub.

    Counts link traffic, registrations, relayed and dropped signaling
    messages, liveness pings, and HTTP matchmaking requests along with the
    dependency failures they ran into.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self._lock = threading.Lock()

        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None

        self._counters: dict[str, int] = {
            "bytes_in": 0,
            "bytes_out": 0,
            "pkts_in": 0,
            "pkts_bad": 0,
            "rate_limited": 0,
            "errors_sent": 0,
            "registrations": 0,
            "relayed": 0,
            "relay_dropped": 0,
            "relay_invalid": 0,
            "send_failures": 0,
            "pings_in": 0,
            "pongs_in": 0,
            "pings_out": 0,
            "pongs_out": 0,
            "announces": 0,
            "interests_stored": 0,
            "match_requests": 0,
            "matches_returned": 0,
            "dependency_failures": 0,
        }

    def set_start_time(self) -> None:
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        with self._lock:
            self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def get(self, key: str) -> int:
        with self._lock:
            return int(self._counters.get(key, 0))

    def snapshot(self) -> dict[str, Any]:
        """Counters plus session and presence figures, for diagnostics."""
        from . import __version__

        started = self.started_monotonic
        uptime_s = (time.monotonic() - started) if started is not None else 0.0

        with self._lock:
            counters = dict(self._counters)
        with self.hub._state_lock:
            sessions = self.hub.session_manager.get_stats()

        return {
            "version": __version__,
            "uptime_s": round(uptime_s, 1),
            "sessions": sessions,
            "presence": self.hub.presence.counts(),
            "counters": counters,
        }

    def format_stats(self) -> str:
        snap = self.snapshot()
        c = snap["counters"]
        return (
            f"rmatchd {snap['version']} uptime_s={snap['uptime_s']} "
            f"sessions={snap['sessions']['total']} "
            f"online={snap['presence']['identities']} "
            f"pkts_in={c['pkts_in']} relayed={c['relayed']} "
            f"dropped={c['relay_dropped']} matches={c['match_requests']} "
            f"dep_failures={c['dependency_failures']}"
        )
