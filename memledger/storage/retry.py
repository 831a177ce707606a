"""Retry with exponential backoff for remote content stores.

Only TransientStoreError is retried. NotFoundError is permanent and
propagates on the first attempt.
"""

import logging
import random
import time
from typing import Callable, TypeVar

from memledger.protocols import TransientStoreError

logger = logging.getLogger(__name__)
T = TypeVar("T")


class RetryPolicy:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_retries: int = 3,
        initial_delay: float = 0.5,
        max_delay: float = 10.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
    ):
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    def get_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-indexed)."""
        delay = min(self.initial_delay * (self.exponential_base**attempt), self.max_delay)
        if self.jitter:
            delay = delay * (0.5 + random.random())
        return delay


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn``, retrying transient store failures.

    Raises:
        TransientStoreError: After ``policy.max_retries`` retries fail.
        Any other exception from ``fn`` immediately.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except TransientStoreError as e:
            if attempt >= policy.max_retries:
                logger.warning(f"Giving up after {attempt + 1} attempts: {e}")
                raise
            delay = policy.get_delay(attempt)
            logger.debug(f"Transient store error ({e}); retry {attempt + 1} in {delay:.2f}s")
            sleep(delay)
            attempt += 1


class RetryingStore:
    """Wrap a remote ContentStore so put/get retry transient failures."""

    def __init__(self, inner, policy: RetryPolicy, sleep: Callable[[float], None] = time.sleep):
        self.inner = inner
        self.policy = policy
        self.name = getattr(inner, "name", "store")
        self._sleep = sleep

    def put(self, data: bytes) -> str:
        return call_with_retry(lambda: self.inner.put(data), self.policy, self._sleep)

    def get(self, address: str) -> bytes:
        return call_with_retry(lambda: self.inner.get(address), self.policy, self._sleep)

    def close(self) -> None:
        close = getattr(self.inner, "close", None)
        if callable(close):
            close()
