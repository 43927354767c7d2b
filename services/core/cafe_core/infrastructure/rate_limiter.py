"""Redis-backed fleet-wide rate limiter for job execution.

Implements:
- Token bucket shared by every worker (jobs per minute across the fleet)
- Exponential backoff with jitter for deferring work when the bucket is empty

Usage:
    config = RateLimitConfig(name="cafe-jobs", requests_per_minute=10)
    limiter = RateLimiter(redis_client, config)

    if not limiter.acquire():
        delay = BackoffStrategy().get_delay(attempt)
        # re-queue the delivery after `delay` seconds
"""

import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol


class RedisProtocol(Protocol):
    """Subset of the redis-py client used here."""

    def transaction(self, func: Callable[[Any], Any], *watches: str, value_from_callable: bool = False) -> Any: ...


@dataclass
class RateLimitConfig:
    """Configuration for one shared bucket.

    Attributes:
        name: Bucket name (usually the queue name).
        requests_per_minute: Token refill rate.
        bucket_size: Maximum tokens in bucket (burst capacity).
    """

    name: str
    requests_per_minute: int = 10
    bucket_size: int = 0  # 0 means same as requests_per_minute

    def __post_init__(self):
        if self.bucket_size == 0:
            self.bucket_size = self.requests_per_minute


@dataclass
class BackoffStrategy:
    """Exponential backoff for deferred deliveries.

    Attributes:
        base_delay: Initial delay in seconds.
        max_delay: Maximum delay in seconds.
        multiplier: Multiplier for exponential increase.
        jitter: Whether to add random jitter.
    """

    base_delay: float = 6.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: bool = True

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for a deferral attempt.

        Args:
            attempt: The attempt number (1-based).

        Returns:
            Delay in seconds.
        """
        delay = self.base_delay * (self.multiplier ** (max(attempt, 1) - 1))

        if self.jitter:
            # +/- 25% so deferred workers do not wake in lockstep
            jitter_range = delay * 0.25
            delay = delay + random.uniform(-jitter_range, jitter_range)

        delay = min(delay, self.max_delay)

        return max(0.1, delay)


class RateLimiter:
    """Token bucket stored in Redis.

    Uses Redis keys:
    - rate:{name}:tokens - Current token count
    - rate:{name}:last_refill - Timestamp of last refill

    Refill and take happen in one WATCH/MULTI transaction, so two workers
    racing for the last token cannot both get it.
    """

    def __init__(self, redis: RedisProtocol, config: RateLimitConfig, clock=time.time):
        """Initialize the rate limiter.

        Args:
            redis: Redis client.
            config: Rate limit configuration.
            clock: Time source in seconds.
        """
        self.redis = redis
        self.config = config
        self._clock = clock

        self._tokens_key = f"rate:{config.name}:tokens"
        self._refill_key = f"rate:{config.name}:last_refill"

        # Tokens per second
        self._refill_rate = config.requests_per_minute / 60.0

    def acquire(self) -> bool:
        """Attempt to take a token from the bucket.

        Returns:
            True if a token was taken, False if the bucket is empty.
        """
        return self.redis.transaction(
            self._take_token,
            self._tokens_key,
            self._refill_key,
            value_from_callable=True,
        )

    def _take_token(self, pipe: Any) -> bool:
        # Watched reads run immediately; writes after multi() are queued and
        # discarded if either key changed, and redis-py then calls us again
        tokens_raw = pipe.get(self._tokens_key)
        last_refill_raw = pipe.get(self._refill_key)

        now = self._clock()

        if tokens_raw is None:
            # Start full
            tokens = float(self.config.bucket_size)
            last_refill = now
        else:
            tokens = float(tokens_raw)
            last_refill = float(last_refill_raw) if last_refill_raw else now

        elapsed = max(0.0, now - last_refill)
        tokens = min(tokens + elapsed * self._refill_rate, self.config.bucket_size)

        if tokens < 1:
            return False

        pipe.multi()
        pipe.set(self._tokens_key, str(tokens - 1))
        pipe.set(self._refill_key, str(now))
        pipe.expire(self._tokens_key, 3600)
        pipe.expire(self._refill_key, 3600)
        return True
