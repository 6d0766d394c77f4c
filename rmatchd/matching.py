from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from .constants import M_IDENTITY, M_INTERESTS, M_LAST_UPDATED
from .errors import ValidationError
from .index import InterestIndex
from .presence import PresenceRegistry
from .util import normalize_identity, normalize_text


class Embedder(Protocol):
    def embed(self, text: str) -> list[float]:
        ...


@dataclass(frozen=True)
class MatchResult:
    identity: str
    interests: str
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {"identity": self.identity, "interests": self.interests, "score": self.score}


@dataclass(frozen=True)
class InterestRecord:
    identity: str
    interests: str
    last_updated: str
    dimensions: int


class MatchOrchestrator:
    """
    Stores interest profiles and finds online users with similar interests.

    The vector index knows nothing about presence, so matching over-fetches
    ``top_k`` neighbors and filters them against the presence registry at
    query time. Network calls happen before the registry is consulted and
    never while one of its locks is held.
    """

    def __init__(
        self,
        presence: PresenceRegistry,
        embedder: Embedder,
        index: InterestIndex,
        *,
        top_k: int = 20,
        max_matches: int = 0,
    ) -> None:
        if int(top_k) < 1:
            raise ValueError("top_k must be at least 1")
        self.presence = presence
        self.embedder = embedder
        self.index = index
        self.top_k = int(top_k)
        self.max_matches = max(0, int(max_matches))
        self.log = logging.getLogger("rmatchd.matching")

    def _validate(self, identity: Any, interests: Any) -> tuple[str, str]:
        ident = normalize_identity(identity)
        text = normalize_text(interests)
        if ident is None or text is None:
            raise ValidationError("missing identity or interests")
        return ident, text

    def store_interests(self, identity: Any, interests: Any) -> InterestRecord:
        ident, text = self._validate(identity, interests)

        vector = self.embedder.embed(text)
        stamp = datetime.now(timezone.utc).isoformat()
        self.index.upsert(
            ident,
            vector,
            {M_IDENTITY: ident, M_INTERESTS: text, M_LAST_UPDATED: stamp},
        )
        self.log.info("Stored interests identity=%r dims=%d", ident, len(vector))
        return InterestRecord(
            identity=ident, interests=text, last_updated=stamp, dimensions=len(vector)
        )

    def find_match(self, identity: Any, interests: Any) -> list[MatchResult]:
        ident, text = self._validate(identity, interests)

        vector = self.embedder.embed(text)
        hits = self.index.query_top_k(vector, self.top_k)

        matches: list[MatchResult] = []
        for hit in hits:
            if hit.identity == ident:
                continue
            if not self.presence.is_online(hit.identity):
                continue
            matches.append(
                MatchResult(
                    identity=hit.identity,
                    interests=str(hit.metadata.get(M_INTERESTS, "")),
                    score=float(hit.score),
                )
            )
            if self.max_matches and len(matches) >= self.max_matches:
                break

        self.log.info(
            "Match identity=%r candidates=%d online_matches=%d",
            ident,
            len(hits),
            len(matches),
        )
        return matches
