"""Embedding provider client (Hugging Face feature-extraction endpoint)."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from numbers import Real
from typing import Any

import httpx

from .errors import (
    DependencyTransientError,
    EmbeddingUnavailableError,
    EmptyInputError,
)
from .retry import RetryPolicy, call_with_retry

logger = logging.getLogger("rmatchd.embedding")


def _is_vector(value: Any) -> bool:
    return (
        isinstance(value, list)
        and bool(value)
        and all(isinstance(x, Real) and not isinstance(x, bool) for x in value)
    )


def extract_vector(data: Any, dim: int = 0) -> list[float]:
    """
    Pull one embedding out of a feature-extraction response.

    The endpoint answers with a flat vector, or wraps it in one or two extra
    list levels depending on the pipeline. Anything else is malformed.
    """
    node = data
    for _ in range(3):
        if _is_vector(node):
            vec = [float(x) for x in node]
            if dim and len(vec) != dim:
                logger.warning("Unexpected embedding dimension %d (expected %d)", len(vec), dim)
            return vec
        if isinstance(node, list) and node and isinstance(node[0], list):
            node = node[0]
            continue
        break

    if isinstance(data, dict) and "error" in data:
        raise DependencyTransientError(f"embedding provider error: {data['error']}")
    raise DependencyTransientError("malformed embedding response")


class EmbeddingClient:
    """Turns interest text into a vector, retrying transient failures."""

    def __init__(
        self,
        url: str,
        *,
        api_key: str | None = None,
        dim: int = 384,
        timeout: float = 30.0,
        policy: RetryPolicy | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.url = url
        self.dim = int(dim)
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(timeout=timeout, headers=headers, transport=transport)

    def close(self) -> None:
        self._client.close()

    def embed(self, text: str) -> list[float]:
        if not isinstance(text, str) or not text.strip():
            raise EmptyInputError("text input for embedding is empty")

        return call_with_retry(
            lambda: self._embed_once(text),
            policy=self.policy,
            retry_on=(DependencyTransientError,),
            what="embedding",
            exhausted=EmbeddingUnavailableError,
            sleep=self._sleep,
        )

    def _embed_once(self, text: str) -> list[float]:
        try:
            resp = self._client.post(self.url, json={"inputs": text})
        except httpx.HTTPError as e:
            raise DependencyTransientError(f"embedding request failed: {e}") from e

        # Cold models answer 503 with an estimated load time; treat like any
        # other non-2xx.
        if not resp.is_success:
            raise DependencyTransientError(f"embedding provider returned HTTP {resp.status_code}")

        try:
            data = resp.json()
        except ValueError as e:
            raise DependencyTransientError("embedding response is not JSON") from e

        vec = extract_vector(data, self.dim)
        logger.debug("Embedded %d chars -> %d dims", len(text), len(vec))
        return vec
