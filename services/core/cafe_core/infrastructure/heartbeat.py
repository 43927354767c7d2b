"""Worker liveness registry in Redis.

Each worker process writes its id into a sorted set scored by the
last-beat time in milliseconds, plus a JSON detail record that expires on
its own. Presence queries are score-range queries on the sorted set.
"""

import json
import logging
import os
import socket
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

HEARTBEAT_KEY = "cafe-manager:workers:heartbeat"
WORKER_INFO_PREFIX = "cafe-manager:workers:info:"


def worker_identity(hostname: Optional[str] = None, pid: Optional[int] = None) -> str:
    """Build the worker id "worker-<hostname>-<pid>"."""
    return f"worker-{hostname or socket.gethostname()}-{pid if pid is not None else os.getpid()}"


@dataclass
class WorkerStatus:
    """Detail record published with every heartbeat."""

    worker_id: str
    hostname: str
    pid: int
    queue_name: str
    active_jobs: int = 0
    processed_jobs: int = 0
    failed_jobs: int = 0
    started_at: str = ""
    timestamp: int = 0

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "WorkerStatus":
        data = json.loads(raw)
        fields = cls.__dataclass_fields__
        return cls(**{k: v for k, v in data.items() if k in fields})


class HeartbeatRegistry:
    """Heartbeat writes and presence queries.

    Expects a redis-py client created with decode_responses=True.
    """

    def __init__(
        self,
        redis: Any,
        info_ttl_seconds: int = 60,
        online_threshold_seconds: int = 30,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis
        self.info_ttl_seconds = info_ttl_seconds
        self.online_threshold_seconds = online_threshold_seconds
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _threshold_ms(self) -> int:
        return self._now_ms() - self.online_threshold_seconds * 1000

    @staticmethod
    def info_key(worker_id: str) -> str:
        return f"{WORKER_INFO_PREFIX}{worker_id}"

    def beat(self, status: WorkerStatus) -> None:
        """Record a heartbeat for a worker.

        Args:
            status: Current worker status. Its timestamp is overwritten.
        """
        now_ms = self._now_ms()
        status.timestamp = now_ms

        pipe = self.redis.pipeline()
        pipe.zadd(HEARTBEAT_KEY, {status.worker_id: now_ms})
        pipe.setex(self.info_key(status.worker_id), self.info_ttl_seconds, status.to_json())
        pipe.execute()

    def remove(self, worker_id: str) -> None:
        """Drop a worker's entry and detail record (clean shutdown)."""
        pipe = self.redis.pipeline()
        pipe.zrem(HEARTBEAT_KEY, worker_id)
        pipe.delete(self.info_key(worker_id))
        pipe.execute()

    def count_online(self) -> int:
        """Number of workers whose last beat is within the online threshold."""
        return int(self.redis.zcount(HEARTBEAT_KEY, self._threshold_ms(), "+inf"))

    def list_online(self) -> list[WorkerStatus]:
        """Detail records of online workers.

        Workers whose detail record already expired are reported with
        their id only.
        """
        worker_ids = self.redis.zrangebyscore(HEARTBEAT_KEY, self._threshold_ms(), "+inf")
        if not worker_ids:
            return []

        raw_infos = self.redis.mget([self.info_key(worker_id) for worker_id in worker_ids])

        result = []
        for worker_id, raw in zip(worker_ids, raw_infos):
            if raw:
                try:
                    result.append(WorkerStatus.from_json(raw))
                    continue
                except (ValueError, TypeError):
                    logger.warning("Unreadable worker info record", extra={"worker_id": worker_id})
            result.append(WorkerStatus(worker_id=worker_id, hostname="", pid=0, queue_name=""))
        return result

    def prune_offline(self) -> list[str]:
        """Remove entries older than the online threshold.

        Returns:
            The removed worker ids.
        """
        # Exclusive upper bound: a score equal to the threshold is still online
        upper = f"({self._threshold_ms()}"
        stale = self.redis.zrangebyscore(HEARTBEAT_KEY, "-inf", upper)
        if not stale:
            return []

        pipe = self.redis.pipeline()
        pipe.zremrangebyscore(HEARTBEAT_KEY, "-inf", upper)
        pipe.delete(*[self.info_key(worker_id) for worker_id in stale])
        pipe.execute()

        logger.info("Pruned offline workers", extra={"worker_ids": list(stale)})
        return list(stale)
