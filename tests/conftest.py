from __future__ import annotations

import math
import os
import re

import pytest

from rmatchd.codec import decode, encode
from rmatchd.config import HubRuntimeConfig
from rmatchd.envelope import make_envelope
from rmatchd.index import IndexHit
from rmatchd.service import HubService


class FakeLink:
    """Stands in for an RNS.Link: records callbacks, closes on teardown."""

    def __init__(self, name: str = "") -> None:
        self.name = name
        self.link_id = os.urandom(16)
        self.fail_sends = False
        self.torn_down = False
        self._packet_cb = None
        self._closed_cb = None
        self._identified_cb = None

    def set_packet_callback(self, cb) -> None:
        self._packet_cb = cb

    def set_link_closed_callback(self, cb) -> None:
        self._closed_cb = cb

    def set_remote_identified_callback(self, cb) -> None:
        self._identified_cb = cb

    def receive(self, data: bytes) -> None:
        self._packet_cb(data, None)

    def teardown(self) -> None:
        if self.torn_down:
            return
        self.torn_down = True
        if self._closed_cb is not None:
            self._closed_cb(self)

    def __repr__(self) -> str:
        return f"FakeLink({self.name!r})"


class RecordingHub(HubService):
    """HubService that captures outbound packets instead of using RNS."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.sent: list[tuple[FakeLink, bytes]] = []

    def _transmit(self, link, payload: bytes) -> None:
        if getattr(link, "fail_sends", False):
            raise OSError("link gone")
        self.sent.append((link, payload))

    def connect(self, name: str = "") -> FakeLink:
        link = FakeLink(name)
        self._on_link(link)
        return link

    def received(self, link) -> list[dict]:
        return [decode(p) for out, p in self.sent if out is link]


_WORD = re.compile(r"[a-z]+")


class FakeEmbedder:
    """Bag-of-words vectors; records every text it was asked to embed."""

    dim = 32

    def __init__(self) -> None:
        self.calls: list[str] = []

    def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        vec = [0.0] * self.dim
        for word in _WORD.findall(text.lower()):
            vec[sum(map(ord, word)) % self.dim] += 1.0
        return vec


class FakeIndex:
    """In-memory cosine index keyed by identity."""

    def __init__(self) -> None:
        self.records: dict[str, tuple[list[float], dict]] = {}
        self.queries: list[int] = []

    def upsert(self, identity, vector, metadata) -> None:
        self.records[identity] = (list(vector), dict(metadata))

    def query_top_k(self, vector, k, *, where=None) -> list[IndexHit]:
        self.queries.append(k)
        hits = [
            IndexHit(identity=ident, score=_cosine(vector, vec), metadata=meta)
            for ident, (vec, meta) in self.records.items()
        ]
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:k]


def _cosine(a, b) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if not na or not nb:
        return 0.0
    return dot / (na * nb)


def packet(msg_type: int, **kwargs) -> bytes:
    return encode(make_envelope(msg_type, **kwargs))


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def index() -> FakeIndex:
    return FakeIndex()


@pytest.fixture
def hub(embedder, index) -> RecordingHub:
    cfg = HubRuntimeConfig(http_enabled=False)
    return RecordingHub(cfg, embedder=embedder, index=index)
