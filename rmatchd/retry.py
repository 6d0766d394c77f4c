"""Bounded retry policy for calls to external collaborators."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from .errors import DependencyExhaustedError

T = TypeVar("T")

log = logging.getLogger("rmatchd.retry")


@dataclass(frozen=True)
class RetryPolicy:
    """
    How often, and how patiently, to retry a failing dependency.

    The delay before attempt ``n + 1`` is ``backoff_s * n`` (capped at
    ``max_backoff_s``). Retrying stops after ``max_attempts`` attempts or
    when the next delay would push total sleeping past ``budget_s``.
    """

    max_attempts: int = 3
    backoff_s: float = 2.0
    max_backoff_s: float = 10.0
    budget_s: float = 30.0

    def delay_after(self, attempt: int) -> float:
        return max(0.0, min(self.backoff_s * attempt, self.max_backoff_s))


def call_with_retry(
    fn: Callable[[], T],
    *,
    policy: RetryPolicy,
    retry_on: tuple[type[BaseException], ...],
    what: str,
    exhausted: type[DependencyExhaustedError] = DependencyExhaustedError,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call ``fn`` until it succeeds or the policy gives up.

    Only exceptions listed in ``retry_on`` are retried; anything else
    propagates immediately. On exhaustion ``exhausted`` is raised, chained
    to the last failure.
    """
    attempts = max(1, int(policy.max_attempts))
    slept = 0.0
    last: BaseException | None = None

    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as e:
            last = e
            log.warning("%s failed (attempt %d/%d): %s", what, attempt, attempts, e)

        if attempt == attempts:
            break
        delay = policy.delay_after(attempt)
        if slept + delay > policy.budget_s:
            log.warning("%s retry budget of %.1fs exhausted", what, policy.budget_s)
            break
        sleep(delay)
        slept += delay

    raise exhausted(f"{what} failed after {attempt} attempt(s): {last}", attempts=attempt) from last
