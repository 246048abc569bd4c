"""Rate limiting primitives for outbound API traffic.

Two limiters live here:
- TokenBucket: proactive request throttling for the Microsoft Graph client.
  It can be slowed down at runtime when the provider reports a Retry-After.
- FixedIntervalPacer: fixed-interval pacing for the sequential drivers
  (triage batch, last-chat resolver). Waits are counted so callers and tests
  can assert how many pauses a run issued.

Both take their clock / sleep function as constructor arguments, so tests
run without real delays.

Standard Rate Limits by Service:
- ms_graph: 10 requests per second (Microsoft Graph API)
"""

import asyncio
import threading
import time
from collections.abc import Awaitable, Callable
from typing import Protocol

from mailcrm.core.errors import RateLimitExceeded
from mailcrm.core.logging import get_logger

logger = get_logger(__name__)

# Longest wait a caller will block for before the bucket gives up
MAX_WAIT_SECONDS = 20.0


class TokenBucket:
    """Token bucket rate limiter.

    Tokens are added at a fixed rate and each request consumes one. If no
    token is available the caller sleeps until one is. A provider-reported
    Retry-After empties the bucket and holds it until that moment passes.

    Example:
        limiter = TokenBucket(rate=10.0, capacity=10)
        limiter.consume_sync()  # may block briefly
    """

    def __init__(
        self,
        rate: float = 1.0,
        capacity: int = 1,
        initial_tokens: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize a token bucket rate limiter.

        Args:
            rate: Token refill rate per second
            capacity: Maximum number of tokens in the bucket
            initial_tokens: Initial number of tokens (defaults to capacity)
            clock: Monotonic clock returning seconds
            sleep: Blocking sleep function
        """
        self.rate = rate
        self.capacity = capacity
        self.tokens = float(capacity if initial_tokens is None else initial_tokens)
        self._clock = clock
        self._sleep = sleep
        self.last_refill = clock()
        self.hold_until = 0.0
        self.lock = threading.Lock()

    def consume_sync(self, tokens: int = 1) -> bool:
        """Consume tokens, blocking until they are available.

        Args:
            tokens: Number of tokens to consume

        Returns:
            True if tokens were consumed

        Raises:
            RateLimitExceeded: If the wait would exceed MAX_WAIT_SECONDS
        """
        if tokens > self.capacity:
            raise RateLimitExceeded(
                f"Requested tokens ({tokens}) exceed bucket capacity ({self.capacity})"
            )

        with self.lock:
            wait_time = self._wait_time(tokens)
            if wait_time <= 0:
                self.tokens -= tokens
                return True

            if wait_time > MAX_WAIT_SECONDS:
                logger.warning(
                    "Rate limit would require excessive wait",
                    wait_time=wait_time,
                    tokens_needed=tokens,
                )
                raise RateLimitExceeded(
                    f"Rate limit exceeded, would require {wait_time:.2f}s wait",
                    retry_after=wait_time,
                )

        logger.debug("Waiting for token bucket refill", wait_time=wait_time)
        self._sleep(wait_time)

        with self.lock:
            self._refill()
            # Sleep granularity can leave us a hair short of a whole token.
            self.tokens = max(self.tokens, float(tokens)) - tokens
            return True

    def apply_retry_after(self, seconds: float) -> None:
        """Empty the bucket and hold it for a provider-reported interval.

        Args:
            seconds: Retry-After value from the provider
        """
        with self.lock:
            self._refill()
            self.tokens = 0.0
            self.hold_until = max(self.hold_until, self._clock() + seconds)
        logger.info("rate_limit_hold_applied", seconds=seconds)

    def _wait_time(self, tokens: int) -> float:
        self._refill()
        now = self._clock()
        hold = max(0.0, self.hold_until - now)
        if hold > 0:
            return hold + tokens / self.rate
        if self.tokens >= tokens:
            return 0.0
        return (tokens - self.tokens) / self.rate

    def _refill(self) -> None:
        """Refill tokens based on elapsed time (none accrue while held)."""
        now = self._clock()
        start = max(self.last_refill, self.hold_until)
        if now > start:
            self.tokens = min(self.capacity, self.tokens + (now - start) * self.rate)
        self.last_refill = now


# Global token bucket instances for different services
_buckets: dict[str, TokenBucket] = {}


def get_bucket(name: str = "default", rate: float = 1.0, capacity: int = 1) -> TokenBucket:
    """Get or create a token bucket for the given name.

    Args:
        name: Bucket name/identifier
        rate: Token refill rate if creating a new bucket
        capacity: Token capacity if creating a new bucket

    Returns:
        TokenBucket instance
    """
    if name not in _buckets:
        _buckets[name] = TokenBucket(rate=rate, capacity=capacity)

    return _buckets[name]


# ---------------------------------------------------------------------------
# Fixed-interval pacing
# ---------------------------------------------------------------------------


class Pacer(Protocol):
    """Pacing hooks used by the sequential drivers."""

    async def item_pause(self) -> None: ...

    async def batch_pause(self) -> None: ...


class FixedIntervalPacer:
    """Fixed-interval pacer: one delay between items, another between batches.

    Attributes:
        item_delay: Seconds to wait on each item_pause()
        batch_delay: Seconds to wait on each batch_pause()
        item_pauses: Number of item pauses issued so far
        batch_pauses: Number of batch pauses issued so far
    """

    def __init__(
        self,
        item_delay: float,
        batch_delay: float = 0.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.item_delay = item_delay
        self.batch_delay = batch_delay
        self._sleep = sleep
        self.item_pauses = 0
        self.batch_pauses = 0

    async def item_pause(self) -> None:
        self.item_pauses += 1
        if self.item_delay > 0:
            await self._sleep(self.item_delay)

    async def batch_pause(self) -> None:
        self.batch_pauses += 1
        if self.batch_delay > 0:
            await self._sleep(self.batch_delay)
