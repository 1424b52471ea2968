"""Bounded exponential backoff for transient Firestore failures."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from toplist_sync.classes.firestore_client import FirestoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 5
    initial_delay_s: float = 0.5
    backoff_factor: float = 2.0
    max_backoff_s: float = 10.0
    jitter: bool = True


DEFAULT_RETRY = RetryConfig()


def _delay_for(config: RetryConfig, attempt: int) -> float:
    delay = min(config.initial_delay_s * (config.backoff_factor ** attempt), config.max_backoff_s)
    if config.jitter:
        return random.uniform(delay / 2, delay)
    return delay


def call_with_backoff(
    operation: Callable[[], T],
    *,
    config: RetryConfig = DEFAULT_RETRY,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "firestore operation",
) -> T:
    """
    Run ``operation``; transient FirestoreErrors are retried up to
    ``config.max_attempts`` times in total, everything else propagates.
    """
    attempt = 0
    while True:
        try:
            return operation()
        except FirestoreError as exc:
            attempt += 1
            if not exc.is_transient or attempt >= config.max_attempts:
                raise
            delay = _delay_for(config, attempt - 1)
            logger.warning(
                "%s failed status=%s attempt=%d next_delay_s=%.2f",
                description,
                exc.status_code,
                attempt,
                delay,
            )
            sleep(delay)
