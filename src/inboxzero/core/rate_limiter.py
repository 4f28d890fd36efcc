"""Token bucket rate limiting for outbound Graph API calls.

Graph allows 10,000 requests per 10 minutes per app per mailbox. Every
GraphClient draws from a named bucket before each request so bursts of
snooze/archive calls from a sweep or bulk action do not earn 429s.
"""

import threading
import time

from inboxzero.core.errors import RateLimitExceeded
from inboxzero.core.logging import get_logger

logger = get_logger(__name__)

# Longest a caller may block waiting for a token before giving up
MAX_WAIT_SECONDS = 20.0


class TokenBucket:
    """Thread-safe token bucket.

    Tokens refill continuously at ``rate`` per second up to ``capacity``.
    Each request consumes one token, sleeping until one is available.

    Example:
        limiter = TokenBucket(rate=10.0, capacity=10)
        limiter.consume_sync()  # blocks if the bucket is empty
    """

    def __init__(
        self,
        rate: float = 1.0,
        capacity: int = 1,
        initial_tokens: float | None = None,
    ):
        self.rate = rate
        self.capacity = capacity
        self.tokens = float(capacity if initial_tokens is None else initial_tokens)
        self.last_refill = time.monotonic()
        self._lock = threading.Lock()

    def consume_sync(self, tokens: int = 1) -> bool:
        """Consume tokens, sleeping until enough have refilled.

        Args:
            tokens: Number of tokens to consume

        Returns:
            True once the tokens were consumed

        Raises:
            RateLimitExceeded: If the request exceeds capacity or would wait
                longer than MAX_WAIT_SECONDS
        """
        if tokens > self.capacity:
            raise RateLimitExceeded(
                f"Requested tokens ({tokens}) exceed bucket capacity ({self.capacity})"
            )

        with self._lock:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return True

            required = tokens - self.tokens
            wait_time = required / self.rate
            if wait_time > MAX_WAIT_SECONDS:
                logger.warning(
                    "rate_limit_wait_too_long",
                    wait_time=wait_time,
                    tokens_needed=required,
                )
                raise RateLimitExceeded(f"Rate limit exceeded, would require {wait_time:.2f}s wait")

        # Sleep outside the lock so other threads can refill-check
        logger.debug("rate_limit_waiting", wait_time=wait_time)
        time.sleep(wait_time)

        with self._lock:
            self._refill()
            if self.tokens < tokens:
                raise RateLimitExceeded("Failed to get enough tokens even after waiting")
            self.tokens -= tokens
            return True

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.last_refill = now


_buckets: dict[str, TokenBucket] = {}
_buckets_lock = threading.Lock()


def get_bucket(name: str = "default", rate: float = 1.0, capacity: int = 1) -> TokenBucket:
    """Get or create the shared token bucket for ``name``.

    Rate and capacity only apply when the bucket is first created.
    """
    with _buckets_lock:
        if name not in _buckets:
            _buckets[name] = TokenBucket(rate=rate, capacity=capacity)
        return _buckets[name]
