"""Unit tests for incident detection."""

from datetime import datetime, timedelta

from cafe_core.domain.models import (
    Incident,
    IncidentSeverity,
    IncidentStatus,
    IncidentType,
)
from cafe_core.domain.services.incidents import (
    RESOLVED_BY_SYSTEM,
    IncidentDetector,
    IncidentThresholds,
)
from factories import create_incident, create_snapshot

NOW = datetime(2026, 3, 1, 12, 0, 0)


def _detector(db_session) -> IncidentDetector:
    return IncidentDetector(db_session, clock=lambda: NOW)


def _open_incidents(db_session, incident_type: str) -> list[Incident]:
    return (
        db_session.query(Incident)
        .filter(Incident.type == incident_type, Incident.status.in_(IncidentStatus.OPEN))
        .all()
    )


class TestThresholds:
    """Tests for IncidentThresholds."""

    def test_from_settings(self, test_settings):
        test_settings.backlog_warning_threshold = 20
        thresholds = IncidentThresholds.from_settings(test_settings)

        assert thresholds.backlog_warning == 20
        assert thresholds.backlog_critical == 500
        assert thresholds.failure_min_sample == 10


class TestBacklog:
    """Tests for the backlog detector."""

    def test_below_warning_opens_nothing(self, db_session):
        snapshot = create_snapshot(db_session, NOW, waiting=99)
        assert _detector(db_session).check_backlog(snapshot) is None
        assert _open_incidents(db_session, IncidentType.QUEUE_BACKLOG) == []

    def test_open_escalate_resolve(self, db_session):
        """120 opens MEDIUM, 600 escalates to HIGH, 40 resolves."""
        detector = _detector(db_session)

        incident = detector.check_backlog(create_snapshot(db_session, NOW, waiting=120))
        assert incident.severity == IncidentSeverity.MEDIUM
        assert incident.status == IncidentStatus.ACTIVE
        assert incident.affected_jobs == 120
        assert incident.title == "Queue backlog: cafe-jobs"
        assert incident.open_key == "QUEUE_BACKLOG:cafe-jobs"
        assert incident.started_at == NOW

        escalated = detector.check_backlog(
            create_snapshot(db_session, NOW + timedelta(minutes=1), waiting=600)
        )
        assert escalated.id == incident.id
        assert escalated.severity == IncidentSeverity.HIGH
        assert escalated.affected_jobs == 600
        assert "600 jobs waiting" in escalated.description

        assert detector.check_backlog(
            create_snapshot(db_session, NOW + timedelta(minutes=2), waiting=40)
        ) is None
        db_session.refresh(incident)
        assert incident.status == IncidentStatus.RESOLVED
        assert incident.resolved_by == RESOLVED_BY_SYSTEM
        assert incident.resolved_at == NOW
        assert incident.open_key is None

    def test_same_severity_leaves_incident_alone(self, db_session):
        detector = _detector(db_session)
        incident = detector.check_backlog(create_snapshot(db_session, NOW, waiting=120))

        again = detector.check_backlog(create_snapshot(db_session, NOW, waiting=150))

        assert again.id == incident.id
        assert again.affected_jobs == 120

    def test_between_half_and_warning_stays_open(self, db_session):
        detector = _detector(db_session)
        incident = detector.check_backlog(create_snapshot(db_session, NOW, waiting=120))

        still_open = detector.check_backlog(create_snapshot(db_session, NOW, waiting=70))

        assert still_open.id == incident.id
        assert still_open.status == IncidentStatus.ACTIVE

    def test_acknowledged_incident_counts_as_open(self, db_session):
        acknowledged = create_incident(db_session, status=IncidentStatus.ACKNOWLEDGED)

        incident = _detector(db_session).check_backlog(create_snapshot(db_session, NOW, waiting=200))

        assert incident.id == acknowledged.id
        assert len(_open_incidents(db_session, IncidentType.QUEUE_BACKLOG)) == 1

    def test_reopen_after_resolution(self, db_session):
        detector = _detector(db_session)
        first = detector.check_backlog(create_snapshot(db_session, NOW, waiting=120))
        detector.check_backlog(create_snapshot(db_session, NOW, waiting=10))

        second = detector.check_backlog(create_snapshot(db_session, NOW, waiting=130))

        assert second.id != first.id
        assert db_session.query(Incident).count() == 2

    def test_duplicate_open_returns_existing(self, db_session):
        """A concurrent open loses on the unique open_key and reuses the winner."""
        existing = create_incident(db_session)

        incident = _detector(db_session)._open(
            IncidentType.QUEUE_BACKLOG, "cafe-jobs", IncidentSeverity.HIGH, 600,
            "Queue backlog: cafe-jobs", "600 jobs waiting", "Add workers",
        )

        assert incident.id == existing.id
        assert db_session.query(Incident).count() == 1


class TestFailureRate:
    """Tests for the failure rate detector."""

    def test_no_baseline_skips(self, db_session):
        create_snapshot(db_session, NOW - timedelta(minutes=30), completed=0, failed=0)
        snapshot = create_snapshot(db_session, NOW, completed=0, failed=50)

        assert _detector(db_session).check_failure_rate(snapshot) is None

    def test_small_sample_skips(self, db_session):
        create_snapshot(db_session, NOW - timedelta(minutes=61), completed=100, failed=0)
        snapshot = create_snapshot(db_session, NOW, completed=105, failed=4)

        assert _detector(db_session).check_failure_rate(snapshot) is None

    def test_medium_rate_opens(self, db_session):
        create_snapshot(db_session, NOW - timedelta(minutes=61), completed=100, failed=0)
        snapshot = create_snapshot(db_session, NOW, completed=180, failed=20)

        incident = _detector(db_session).check_failure_rate(snapshot)

        assert incident.type == IncidentType.HIGH_FAILURE_RATE
        assert incident.severity == IncidentSeverity.MEDIUM
        assert incident.affected_jobs == 20
        assert incident.description == "Failure rate over the last 60 min: 20.0% (20/100)"

    def test_high_rate_then_recovery(self, db_session):
        detector = _detector(db_session)
        create_snapshot(db_session, NOW - timedelta(minutes=61), completed=0, failed=0)

        incident = detector.check_failure_rate(create_snapshot(db_session, NOW, completed=10, failed=10))
        assert incident.severity == IncidentSeverity.HIGH

        recovered = detector.check_failure_rate(
            create_snapshot(db_session, NOW, completed=100, failed=2)
        )
        assert recovered is None
        db_session.refresh(incident)
        assert incident.status == IncidentStatus.RESOLVED

    def test_counter_reset_is_clamped(self, db_session):
        """A restart that zeroed the counters yields no negative deltas."""
        create_snapshot(db_session, NOW - timedelta(minutes=61), completed=500, failed=50)
        snapshot = create_snapshot(db_session, NOW, completed=20, failed=0)

        assert _detector(db_session).check_failure_rate(snapshot) is None

    def test_other_queue_is_not_a_baseline(self, db_session):
        create_snapshot(
            db_session, NOW - timedelta(minutes=61), queue_name="system-jobs", completed=0, failed=0
        )
        snapshot = create_snapshot(db_session, NOW, completed=10, failed=10)

        assert _detector(db_session).check_failure_rate(snapshot) is None
