"""Periodic queue statistics collection.

One collect() call reads the queue counters and worker presence from Redis,
stores a QueueStatsSnapshot, runs the incident detectors on it and does the
housekeeping (offline heartbeats, snapshot retention). The caller commits.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session as DBSession

from cafe_core.config import Settings, get_settings
from cafe_core.domain.models import QueueStatsSnapshot, utcnow
from cafe_core.domain.services.incidents import IncidentDetector, IncidentThresholds
from cafe_core.infrastructure.heartbeat import HeartbeatRegistry
from cafe_core.infrastructure.queue_counters import QueueCounters
from cafe_core.observability import get_logger

logger = get_logger(__name__)


class QueueStatsCollector:
    """Snapshot writer for one queue."""

    def __init__(
        self,
        db: DBSession,
        redis: Any,
        settings: Optional[Settings] = None,
        queue_name: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.queue_name = queue_name or self.settings.cafe_queue_name
        self._clock = clock

        self.counters = QueueCounters(redis, self.queue_name)
        self.heartbeats = HeartbeatRegistry(
            redis,
            info_ttl_seconds=self.settings.worker_info_ttl_seconds,
            online_threshold_seconds=self.settings.worker_online_threshold_seconds,
        )
        self.detector = IncidentDetector(
            db,
            thresholds=IncidentThresholds.from_settings(self.settings),
            clock=clock,
        )

    def latest_snapshot(self) -> Optional[QueueStatsSnapshot]:
        return (
            self.db.query(QueueStatsSnapshot)
            .filter(QueueStatsSnapshot.queue_name == self.queue_name)
            .order_by(QueueStatsSnapshot.timestamp.desc(), QueueStatsSnapshot.id.desc())
            .first()
        )

    def collect(self) -> QueueStatsSnapshot:
        """Record one snapshot and evaluate incidents against it.

        Returns:
            The new snapshot (flushed, not committed).
        """
        now = self._clock()
        counts = self.counters.read()
        online_workers = self.heartbeats.count_online()

        previous = self.latest_snapshot()
        jobs_per_min = None
        if previous is not None:
            jobs_per_min = max(0, counts.completed - previous.completed)

        snapshot = QueueStatsSnapshot(
            queue_name=self.queue_name,
            timestamp=now,
            waiting=counts.waiting,
            active=counts.active,
            delayed=counts.delayed,
            completed=counts.completed,
            failed=counts.failed,
            paused=counts.paused,
            jobs_per_min=jobs_per_min,
            online_workers=online_workers,
        )
        self.db.add(snapshot)
        self.db.flush()

        self.detector.check_backlog(snapshot)
        self.detector.check_failure_rate(snapshot)

        pruned_workers = self.heartbeats.prune_offline()
        pruned_snapshots = self.prune_snapshots(now)

        logger.info(
            "Queue stats collected",
            queue_name=self.queue_name,
            waiting=counts.waiting,
            active=counts.active,
            delayed=counts.delayed,
            completed=counts.completed,
            failed=counts.failed,
            paused=counts.paused,
            jobs_per_min=jobs_per_min,
            online_workers=online_workers,
            pruned_workers=len(pruned_workers),
            pruned_snapshots=pruned_snapshots,
        )
        return snapshot

    def prune_snapshots(self, now: Optional[datetime] = None) -> int:
        """Delete snapshots older than the retention window.

        Returns:
            Number of deleted rows.
        """
        cutoff = (now or self._clock()) - timedelta(hours=self.settings.snapshot_retention_hours)
        deleted = (
            self.db.query(QueueStatsSnapshot)
            .filter(QueueStatsSnapshot.timestamp < cutoff)
            .delete(synchronize_session=False)
        )
        self.db.flush()
        return deleted
