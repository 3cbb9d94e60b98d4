from __future__ import annotations

import time
from typing import Callable, TypeVar

from loguru import logger

from ..config import RetryPolicy
from ..errors import OrchestratorError

T = TypeVar("T")


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    describe: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn``, retrying errors flagged ``retryable`` with exponential backoff."""
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except OrchestratorError as exc:
            if not exc.retryable or attempt >= policy.max_attempts:
                raise
            delay = policy.backoff_seconds * (2 ** (attempt - 1))
            logger.warning(
                "{} failed (attempt {}/{}): {}; retrying in {:.1f}s",
                describe,
                attempt,
                policy.max_attempts,
                exc,
                delay,
            )
            if delay > 0:
                sleep(delay)
