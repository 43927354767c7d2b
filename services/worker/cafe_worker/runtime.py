"""Per-process worker runtime.

Celery forks one process per concurrency slot. Each process owns a long-lived
asyncio loop, its browser profile pool, the Redis-backed queue bookkeeping
and the heartbeat thread. The runtime is created on worker_process_init and
torn down on worker_process_shutdown.
"""

import asyncio
import os
import socket
import time
from datetime import datetime, timezone
from typing import Any, Callable, Coroutine, Optional, TypeVar

import redis

from cafe_core.automation.browser_pool import ProfilePool
from cafe_core.config import Settings, get_settings
from cafe_core.domain.services.effects import non_critical
from cafe_core.infra.db import dispose_engine
from cafe_core.infrastructure.crypto import CryptoService
from cafe_core.infrastructure.heartbeat import HeartbeatRegistry, WorkerStatus, worker_identity
from cafe_core.infrastructure.login_signals import ManualLoginSignals
from cafe_core.infrastructure.queue_counters import QueueCounters
from cafe_core.infrastructure.rate_limiter import BackoffStrategy, RateLimitConfig, RateLimiter
from cafe_core.observability import get_collector, get_logger
from cafe_core.observability.metrics import (
    JOB_DURATION,
    JOBS_ACTIVE,
    JOBS_FAILED,
    JOBS_PROCESSED,
)
from cafe_worker.heartbeat import HeartbeatEmitter

logger = get_logger(__name__)

T = TypeVar("T")

_runtime: Optional["WorkerRuntime"] = None


class WorkerRuntime:
    """Resources shared by every job a worker process runs."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        redis_client: Optional[Any] = None,
        pool: Optional[ProfilePool] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or get_settings()

        # Built first: a bad key stops the process before it takes a job
        self.crypto = CryptoService(self.settings.encryption_key)

        self.redis = redis_client or redis.Redis.from_url(
            self.settings.redis_url, decode_responses=True
        )
        self.hostname = self.settings.worker_hostname or socket.gethostname()
        self.pid = os.getpid()
        self.worker_id = worker_identity(self.hostname, self.pid)
        self.started_at = datetime.fromtimestamp(clock(), tz=timezone.utc).isoformat()

        self.loop = asyncio.new_event_loop()
        self.pool = pool or ProfilePool(
            profiles_path=self.settings.profiles_path,
            screenshots_path=self.settings.screenshots_path,
            artifacts_path=self.settings.artifacts_path,
            headless=self.settings.playwright_headless,
            selector_timeout_ms=self.settings.selector_timeout_ms,
            navigation_timeout_ms=self.settings.navigation_timeout_ms,
        )

        queue_name = self.settings.cafe_queue_name
        self.counters = QueueCounters(self.redis, queue_name)
        self.heartbeats = HeartbeatRegistry(
            self.redis,
            info_ttl_seconds=self.settings.worker_info_ttl_seconds,
            online_threshold_seconds=self.settings.worker_online_threshold_seconds,
            clock=clock,
        )
        self.rate_limiter = RateLimiter(
            self.redis,
            RateLimitConfig(name=queue_name, requests_per_minute=self.settings.fleet_rate_limit_per_minute),
            clock=clock,
        )
        self.backoff = BackoffStrategy(max_delay=self.settings.deferral_max_delay_seconds)
        self.login_signals = ManualLoginSignals(self.redis)
        self.metrics = get_collector()

        self.emitter = HeartbeatEmitter(
            self.heartbeats,
            self.status,
            interval_seconds=self.settings.heartbeat_interval_seconds,
        )

    def start(self) -> None:
        self.emitter.start()
        logger.info("Worker runtime started", worker_id=self.worker_id)

    def run(self, coro: Coroutine[Any, Any, T]) -> T:
        """Run a coroutine to completion on the process loop."""
        return self.loop.run_until_complete(coro)

    # -------------------------------------------------------------------------
    # Job bookkeeping
    # -------------------------------------------------------------------------

    def job_started(self, from_retry: bool = False) -> None:
        self.metrics.adjust_gauge(JOBS_ACTIVE, 1)
        with non_critical("queue counters", worker_id=self.worker_id):
            self.counters.mark_started(from_retry=from_retry)

    def job_finished(self, succeeded: bool, duration_seconds: Optional[float] = None) -> None:
        self.metrics.adjust_gauge(JOBS_ACTIVE, -1)
        self.metrics.increment(JOBS_PROCESSED)
        if not succeeded:
            self.metrics.increment(JOBS_FAILED)
        if duration_seconds is not None:
            self.metrics.record_histogram(JOB_DURATION, duration_seconds)
        with non_critical("queue counters", worker_id=self.worker_id):
            self.counters.mark_finished(succeeded)

    def job_retrying(self) -> None:
        self.metrics.adjust_gauge(JOBS_ACTIVE, -1)
        with non_critical("queue counters", worker_id=self.worker_id):
            self.counters.mark_retrying()

    def status(self) -> WorkerStatus:
        return WorkerStatus(
            worker_id=self.worker_id,
            hostname=self.hostname,
            pid=self.pid,
            queue_name=self.settings.cafe_queue_name,
            active_jobs=int(self.metrics.get(JOBS_ACTIVE)),
            processed_jobs=int(self.metrics.get(JOBS_PROCESSED)),
            failed_jobs=int(self.metrics.get(JOBS_FAILED)),
            started_at=self.started_at,
        )

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    def shutdown(self) -> None:
        """Release everything; each step runs even if an earlier one failed."""
        self.emitter.stop()

        with non_critical("close browser pool", worker_id=self.worker_id):
            self.run(self.pool.close_all())
        with non_critical("remove heartbeat", worker_id=self.worker_id):
            self.heartbeats.remove(self.worker_id)

        self.loop.close()
        dispose_engine()

        with non_critical("close redis", worker_id=self.worker_id):
            self.redis.close()

        logger.info("Worker runtime stopped", worker_id=self.worker_id)


def get_runtime() -> WorkerRuntime:
    """Runtime of this process, created on first use outside a worker."""
    global _runtime
    if _runtime is None:
        _runtime = WorkerRuntime()
        _runtime.start()
    return _runtime


def init_runtime(settings: Optional[Settings] = None) -> WorkerRuntime:
    global _runtime
    if _runtime is None:
        _runtime = WorkerRuntime(settings=settings)
        _runtime.start()
    return _runtime


def shutdown_runtime() -> None:
    global _runtime
    if _runtime is not None:
        runtime, _runtime = _runtime, None
        runtime.shutdown()
