"""Queue depth counters kept in Redis.

Celery's Redis broker exposes only the pending list, so the worker keeps
the rest of the counters itself:

- waiting: LLEN of the broker list named after the queue
- active / delayed: incremented and decremented around executions and retries
- completed / failed: monotonically increasing totals
- paused: operator flag checked before a delivery is processed
"""

from dataclasses import dataclass
from typing import Any

KEY_PREFIX = "cafe-manager:queue"


@dataclass
class QueueCounts:
    """Counts read at one instant."""

    waiting: int = 0
    active: int = 0
    delayed: int = 0
    completed: int = 0
    failed: int = 0
    paused: bool = False


class QueueCounters:
    """Counter updates and reads for one queue."""

    def __init__(self, redis: Any, queue_name: str):
        self.redis = redis
        self.queue_name = queue_name

    def _key(self, name: str) -> str:
        return f"{KEY_PREFIX}:{self.queue_name}:{name}"

    def mark_started(self, from_retry: bool = False) -> None:
        """A delivery began executing."""
        pipe = self.redis.pipeline()
        pipe.incr(self._key("active"))
        if from_retry:
            pipe.decr(self._key("delayed"))
        pipe.execute()

    def mark_finished(self, succeeded: bool) -> None:
        """A delivery reached its final outcome."""
        pipe = self.redis.pipeline()
        pipe.decr(self._key("active"))
        pipe.incr(self._key("completed" if succeeded else "failed"))
        pipe.execute()

    def mark_retrying(self) -> None:
        """A delivery stopped executing and was scheduled to run again."""
        pipe = self.redis.pipeline()
        pipe.decr(self._key("active"))
        pipe.incr(self._key("delayed"))
        pipe.execute()

    def set_paused(self, paused: bool) -> None:
        if paused:
            self.redis.set(self._key("paused"), "1")
        else:
            self.redis.delete(self._key("paused"))

    def is_paused(self) -> bool:
        return bool(self.redis.exists(self._key("paused")))

    def read(self) -> QueueCounts:
        """Read every counter.

        Counters are clamped at zero; a crashed worker can leave active or
        delayed decremented past what was incremented after a reset.
        """
        pipe = self.redis.pipeline()
        pipe.llen(self.queue_name)
        for name in ("active", "delayed", "completed", "failed"):
            pipe.get(self._key(name))
        pipe.exists(self._key("paused"))
        waiting, active, delayed, completed, failed, paused = pipe.execute()

        def as_count(value: Any) -> int:
            return max(0, int(value or 0))

        return QueueCounts(
            waiting=as_count(waiting),
            active=as_count(active),
            delayed=as_count(delayed),
            completed=as_count(completed),
            failed=as_count(failed),
            paused=bool(paused),
        )
