"""Incident detection for the job queue.

Each detector turns one metric of a fresh QueueStatsSnapshot into at most
one open incident per (type, queue):

- above the warning threshold and nothing open: open a new incident
- open with a different severity: update it
- open and the metric fell below half the warning threshold: resolve it

"Open" means ACTIVE or ACKNOWLEDGED. Open incidents carry
open_key = "<type>:<queue>" under a unique index, so two collectors racing
on the same snapshot can never open duplicates.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session as DBSession

from cafe_core.config import Settings
from cafe_core.domain.models import (
    Incident,
    IncidentSeverity,
    IncidentStatus,
    IncidentType,
    QueueStatsSnapshot,
    utcnow,
)
from cafe_core.observability import get_logger

logger = get_logger(__name__)

RESOLVED_BY_SYSTEM = "SYSTEM"

BACKLOG_ACTION = (
    "Check that workers are online and the queue is not paused. "
    "Add workers if the backlog keeps growing."
)
FAILURE_RATE_ACTION = (
    "Inspect recent failed job logs and screenshots for login challenges "
    "or editor changes, then update selectors or re-initialize sessions."
)


@dataclass
class IncidentThresholds:
    """Detector thresholds."""

    backlog_warning: int = 100
    backlog_critical: int = 500
    failure_rate_warning: float = 10.0
    failure_rate_critical: float = 30.0
    failure_window_minutes: int = 60
    failure_min_sample: int = 10

    @classmethod
    def from_settings(cls, settings: Settings) -> "IncidentThresholds":
        return cls(
            backlog_warning=settings.backlog_warning_threshold,
            backlog_critical=settings.backlog_critical_threshold,
            failure_rate_warning=settings.failure_rate_warning_percent,
            failure_rate_critical=settings.failure_rate_critical_percent,
            failure_window_minutes=settings.failure_rate_window_minutes,
            failure_min_sample=settings.failure_rate_min_sample,
        )


def _severity(value: float, warning: float, critical: float) -> Optional[str]:
    if value >= critical:
        return IncidentSeverity.HIGH
    if value >= warning:
        return IncidentSeverity.MEDIUM
    return None


class IncidentDetector:
    """Opens, updates and resolves queue incidents."""

    def __init__(
        self,
        db: DBSession,
        thresholds: Optional[IncidentThresholds] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.thresholds = thresholds or IncidentThresholds()
        self._clock = clock

    def get_open(self, incident_type: str, queue_name: str) -> Optional[Incident]:
        return (
            self.db.query(Incident)
            .filter(
                Incident.type == incident_type,
                Incident.queue_name == queue_name,
                Incident.status.in_(IncidentStatus.OPEN),
            )
            .order_by(Incident.started_at.desc(), Incident.id.desc())
            .first()
        )

    # -------------------------------------------------------------------------
    # Detectors
    # -------------------------------------------------------------------------

    def check_backlog(self, snapshot: QueueStatsSnapshot) -> Optional[Incident]:
        """Evaluate the waiting count of a snapshot.

        Returns:
            The open incident after evaluation, or None.
        """
        t = self.thresholds
        waiting = snapshot.waiting

        return self._evaluate(
            incident_type=IncidentType.QUEUE_BACKLOG,
            queue_name=snapshot.queue_name,
            value=waiting,
            severity=_severity(waiting, t.backlog_warning, t.backlog_critical),
            resolve_below=t.backlog_warning / 2,
            affected_jobs=waiting,
            title=f"Queue backlog: {snapshot.queue_name}",
            description=(
                f"{waiting} jobs waiting "
                f"(warning {t.backlog_warning}, critical {t.backlog_critical})"
            ),
            recommended_action=BACKLOG_ACTION,
        )

    def check_failure_rate(self, snapshot: QueueStatsSnapshot) -> Optional[Incident]:
        """Evaluate the failure rate over the trailing window.

        Skipped (returns the current open incident untouched) when no
        snapshot is old enough to serve as the window start, or when fewer
        jobs than the minimum sample finished inside the window.
        """
        t = self.thresholds
        open_incident = self.get_open(IncidentType.HIGH_FAILURE_RATE, snapshot.queue_name)

        window_start = snapshot.timestamp - timedelta(minutes=t.failure_window_minutes)
        baseline = (
            self.db.query(QueueStatsSnapshot)
            .filter(
                QueueStatsSnapshot.queue_name == snapshot.queue_name,
                QueueStatsSnapshot.timestamp <= window_start,
            )
            .order_by(QueueStatsSnapshot.timestamp.desc(), QueueStatsSnapshot.id.desc())
            .first()
        )
        if baseline is None:
            logger.debug("No baseline snapshot for failure rate", queue_name=snapshot.queue_name)
            return open_incident

        # Counters can be reset; a negative delta means "unknown", not negative work
        completed = max(0, snapshot.completed - baseline.completed)
        failed = max(0, snapshot.failed - baseline.failed)
        total = completed + failed
        if total < t.failure_min_sample:
            logger.debug(
                "Failure rate sample too small",
                queue_name=snapshot.queue_name,
                sample=total,
            )
            return open_incident

        rate = failed / total * 100

        return self._evaluate(
            incident_type=IncidentType.HIGH_FAILURE_RATE,
            queue_name=snapshot.queue_name,
            value=rate,
            severity=_severity(rate, t.failure_rate_warning, t.failure_rate_critical),
            resolve_below=t.failure_rate_warning / 2,
            affected_jobs=failed,
            title=f"High failure rate: {snapshot.queue_name}",
            description=(
                f"Failure rate over the last {t.failure_window_minutes} min: "
                f"{rate:.1f}% ({failed}/{total})"
            ),
            recommended_action=FAILURE_RATE_ACTION,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _evaluate(
        self,
        incident_type: str,
        queue_name: str,
        value: float,
        severity: Optional[str],
        resolve_below: float,
        affected_jobs: int,
        title: str,
        description: str,
        recommended_action: str,
    ) -> Optional[Incident]:
        incident = self.get_open(incident_type, queue_name)

        if severity is not None:
            if incident is None:
                return self._open(
                    incident_type, queue_name, severity, affected_jobs,
                    title, description, recommended_action,
                )
            if incident.severity != severity:
                logger.info(
                    "Incident severity changed",
                    incident_id=incident.id,
                    incident_type=incident_type,
                    queue_name=queue_name,
                    old_severity=incident.severity,
                    new_severity=severity,
                )
                incident.severity = severity
                incident.affected_jobs = affected_jobs
                incident.description = description
                self.db.flush()
            return incident

        if incident is not None and value < resolve_below:
            self.resolve(incident)
            return None

        return incident

    def _open(
        self,
        incident_type: str,
        queue_name: str,
        severity: str,
        affected_jobs: int,
        title: str,
        description: str,
        recommended_action: str,
    ) -> Optional[Incident]:
        incident = Incident(
            type=incident_type,
            severity=severity,
            queue_name=queue_name,
            affected_jobs=affected_jobs,
            title=title,
            description=description,
            recommended_action=recommended_action,
            status=IncidentStatus.ACTIVE,
            open_key=Incident.make_open_key(incident_type, queue_name),
            started_at=self._clock(),
        )
        try:
            with self.db.begin_nested():
                self.db.add(incident)
        except IntegrityError:
            logger.info(
                "Incident already opened by another collector",
                incident_type=incident_type,
                queue_name=queue_name,
            )
            return self.get_open(incident_type, queue_name)

        logger.warning(
            "Incident opened",
            incident_id=incident.id,
            incident_type=incident_type,
            queue_name=queue_name,
            severity=severity,
            affected_jobs=affected_jobs,
        )
        return incident

    def resolve(self, incident: Incident, resolved_by: str = RESOLVED_BY_SYSTEM) -> None:
        incident.status = IncidentStatus.RESOLVED
        incident.resolved_at = self._clock()
        incident.resolved_by = resolved_by
        incident.open_key = None
        self.db.flush()
        logger.info(
            "Incident resolved",
            incident_id=incident.id,
            incident_type=incident.type,
            queue_name=incident.queue_name,
            resolved_by=resolved_by,
        )
