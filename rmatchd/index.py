"""Vector index contract and the Chroma-backed implementation."""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from .constants import M_IDENTITY
from .errors import DependencyTransientError, IndexUnavailableError
from .retry import RetryPolicy, call_with_retry

logger = logging.getLogger("rmatchd.index")


@dataclass
class IndexHit:
    """One nearest-neighbor result, best first."""

    identity: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


class InterestIndex(Protocol):
    """Protocol for the external interest vector index."""

    def upsert(self, identity: str, vector: list[float], metadata: dict[str, Any]) -> None:
        ...

    def query_top_k(
        self,
        vector: list[float],
        k: int,
        *,
        where: dict[str, Any] | None = None,
    ) -> list[IndexHit]:
        ...


class ChromaInterestIndex:
    """Interest vectors stored in a Chroma server collection (cosine space)."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 8000,
        *,
        ssl: bool = False,
        collection_name: str = "interests",
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._host = host
        self._port = int(port)
        self._ssl = bool(ssl)
        self._collection_name = collection_name
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._collection: Any = None
        self._connect_lock = threading.Lock()

    def _get_collection(self) -> Any:
        with self._connect_lock:
            if self._collection is not None:
                return self._collection
            try:
                import chromadb
                from chromadb.config import Settings

                client = chromadb.HttpClient(
                    host=self._host,
                    port=self._port,
                    ssl=self._ssl,
                    settings=Settings(anonymized_telemetry=False),
                )
                self._collection = client.get_or_create_collection(
                    name=self._collection_name,
                    embedding_function=None,
                    metadata={"hnsw:space": "cosine"},
                )
            except Exception as e:
                raise DependencyTransientError(f"vector index unavailable: {e}") from e
            logger.info(
                "Connected to vector index %s:%s collection=%s",
                self._host,
                self._port,
                self._collection_name,
            )
            return self._collection

    def _call(self, what: str, fn: Callable[[Any], Any]) -> Any:
        def attempt() -> Any:
            collection = self._get_collection()
            try:
                return fn(collection)
            except Exception as e:
                raise DependencyTransientError(f"{what}: {e}") from e

        return call_with_retry(
            attempt,
            policy=self.policy,
            retry_on=(DependencyTransientError,),
            what=what,
            exhausted=IndexUnavailableError,
            sleep=self._sleep,
        )

    def upsert(self, identity: str, vector: list[float], metadata: dict[str, Any]) -> None:
        self._call(
            "index upsert",
            lambda c: c.upsert(ids=[identity], embeddings=[vector], metadatas=[metadata]),
        )

    def query_top_k(
        self,
        vector: list[float],
        k: int,
        *,
        where: dict[str, Any] | None = None,
    ) -> list[IndexHit]:
        kwargs: dict[str, Any] = {
            "query_embeddings": [vector],
            "n_results": max(1, int(k)),
            "include": ["metadatas", "distances"],
        }
        if where:
            kwargs["where"] = where
        result = self._call("index query", lambda c: c.query(**kwargs))
        return hits_from_chroma(result)


def hits_from_chroma(result: Any) -> list[IndexHit]:
    ids = (result.get("ids") or [[]])[0]
    metas = (result.get("metadatas") or [[]])[0] or []
    distances = (result.get("distances") or [[]])[0] or []

    hits: list[IndexHit] = []
    for idx, record_id in enumerate(ids):
        meta = dict(metas[idx]) if idx < len(metas) and metas[idx] else {}
        distance = distances[idx] if idx < len(distances) else 1.0
        score = 1.0 - float(distance)
        if math.isnan(score):
            score = 0.0
        identity = meta.get(M_IDENTITY) or record_id
        hits.append(IndexHit(identity=str(identity), score=score, metadata=meta))
    return hits
