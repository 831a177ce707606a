"""Tests for retry with backoff."""

import pytest

from memledger.protocols import NotFoundError, TransientStoreError
from memledger.storage.retry import RetryingStore, RetryPolicy, call_with_retry


class FlakyStore:
    """Fails ``failures`` times with the given error, then succeeds."""

    name = "flaky"

    def __init__(self, failures: int, error: Exception):
        self.failures = failures
        self.error = error
        self.calls = 0
        self.closed = False

    def put(self, data: bytes) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "QmAddressAddressAddress"

    def get(self, address: str) -> bytes:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return b"data"

    def close(self) -> None:
        self.closed = True


class TestRetryPolicy:
    def test_delay_grows_and_caps(self):
        """Test exponential growth up to max_delay."""
        policy = RetryPolicy(initial_delay=1.0, max_delay=5.0, jitter=False)

        assert policy.get_delay(0) == 1.0
        assert policy.get_delay(1) == 2.0
        assert policy.get_delay(2) == 4.0
        assert policy.get_delay(5) == 5.0

    def test_jitter_stays_in_range(self):
        policy = RetryPolicy(initial_delay=1.0, jitter=True)

        for _ in range(20):
            assert 0.5 <= policy.get_delay(0) <= 1.5


class TestCallWithRetry:
    """Tests for the retry loop."""

    def test_transient_then_success(self):
        """Test that transient failures are retried until success."""
        sleeps = []
        store = FlakyStore(2, TransientStoreError("busy"))

        result = call_with_retry(
            lambda: store.get("x"), RetryPolicy(max_retries=3, jitter=False), sleeps.append
        )

        assert result == b"data"
        assert store.calls == 3
        assert sleeps == [0.5, 1.0]

    def test_gives_up_after_max_retries(self):
        """Test that the last transient error propagates."""
        store = FlakyStore(10, TransientStoreError("down"))

        with pytest.raises(TransientStoreError):
            call_with_retry(lambda: store.get("x"), RetryPolicy(max_retries=2), lambda s: None)
        assert store.calls == 3

    def test_not_found_is_never_retried(self):
        """Test that NotFoundError propagates on the first attempt."""
        store = FlakyStore(10, NotFoundError("QmMissing", "ipfs"))

        with pytest.raises(NotFoundError):
            call_with_retry(lambda: store.get("x"), RetryPolicy(max_retries=5), lambda s: None)
        assert store.calls == 1


class TestRetryingStore:
    def test_put_retries(self):
        inner = FlakyStore(1, TransientStoreError("429"))
        store = RetryingStore(inner, RetryPolicy(max_retries=1), sleep=lambda s: None)

        assert store.put(b"x") == "QmAddressAddressAddress"
        assert store.name == "flaky"

    def test_close_delegates(self):
        inner = FlakyStore(0, TransientStoreError("unused"))
        RetryingStore(inner, RetryPolicy()).close()

        assert inner.closed
