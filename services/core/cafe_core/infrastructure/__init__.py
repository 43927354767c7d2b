"""Infrastructure components for Cafe Manager.

This package contains infrastructure-level components like:
- Credential encryption
- Fleet rate limiting
- Worker heartbeats and queue counters in Redis
"""

from cafe_core.infrastructure.crypto import (
    CryptoService,
    DecryptionError,
    InvalidKeyError,
)
from cafe_core.infrastructure.heartbeat import (
    HeartbeatRegistry,
    WorkerStatus,
    worker_identity,
)
from cafe_core.infrastructure.queue_counters import QueueCounters, QueueCounts
from cafe_core.infrastructure.rate_limiter import (
    BackoffStrategy,
    RateLimiter,
    RateLimitConfig,
)

__all__ = [
    "BackoffStrategy",
    "CryptoService",
    "DecryptionError",
    "HeartbeatRegistry",
    "InvalidKeyError",
    "QueueCounters",
    "QueueCounts",
    "RateLimiter",
    "RateLimitConfig",
    "WorkerStatus",
    "worker_identity",
]
