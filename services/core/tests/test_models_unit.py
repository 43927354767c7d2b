"""Unit tests for SQLAlchemy models.

These tests verify defaults, relationships and the uniqueness constraints
the services rely on, using an in-memory SQLite database.
"""

import pytest
from sqlalchemy.exc import IntegrityError

from cafe_core.domain.models import (
    Incident,
    IncidentStatus,
    IncidentType,
    JobLog,
    JobStatus,
    LogLevel,
    PostStatus,
    RunMode,
    SessionStatus,
)
from factories import (
    create_incident,
    create_job,
    create_managed_post,
    create_naver_account,
    create_naver_session,
    create_schedule_run,
)


class TestJob:
    """Tests for Job and JobLog."""

    def test_defaults(self, db_session):
        job = create_job(db_session)

        assert job.status == JobStatus.QUEUED
        assert job.run_mode == RunMode.HEADLESS
        assert job.attempts == 0
        assert job.created_at is not None
        assert job.created_at.tzinfo is None

    def test_logs_relationship(self, db_session):
        job = create_job(db_session)
        db_session.add(JobLog(job_id=job.id, level=LogLevel.INFO, message="first"))
        db_session.add(JobLog(job_id=job.id, level=LogLevel.WARN, message="second"))
        db_session.flush()
        db_session.refresh(job)

        assert [log.message for log in job.logs] == ["first", "second"]

    def test_schedule_run_relationship(self, db_session):
        run = create_schedule_run(db_session)
        job = create_job(db_session, schedule_run_id=run.id)
        db_session.refresh(run)

        assert run.jobs == [job]
        assert job.schedule_run is run


class TestNaverAccount:
    """Tests for accounts and sessions."""

    def test_login_unique_per_user(self, db_session):
        create_naver_account(db_session, user_id=1, login_id="same")
        create_naver_account(db_session, user_id=2, login_id="same")

        with pytest.raises(IntegrityError):
            create_naver_account(db_session, user_id=1, login_id="same")
        db_session.rollback()

    def test_profile_dir_unique(self, db_session):
        account = create_naver_account(db_session)
        create_naver_session(db_session, account, profile_dir="profile-a")

        with pytest.raises(IntegrityError):
            create_naver_session(db_session, account, profile_dir="profile-a")
        db_session.rollback()

    def test_sessions_relationship(self, db_session):
        account = create_naver_account(db_session)
        pending = create_naver_session(db_session, account, status=SessionStatus.PENDING)
        db_session.refresh(account)

        assert account.sessions == [pending]
        assert pending.last_verified_at is None


class TestManagedPost:
    """Tests for ManagedPost."""

    def test_article_unique_per_cafe(self, db_session):
        post = create_managed_post(db_session, cafe_id="10001", article_id="501")
        create_managed_post(db_session, cafe_id="10002", article_id="501")

        assert post.status == PostStatus.ACTIVE
        with pytest.raises(IntegrityError):
            create_managed_post(db_session, cafe_id="10001", article_id="501")
        db_session.rollback()


class TestIncident:
    """Tests for Incident open_key uniqueness."""

    def test_open_key_format(self):
        assert Incident.make_open_key(IncidentType.QUEUE_BACKLOG, "cafe-jobs") == "QUEUE_BACKLOG:cafe-jobs"

    def test_one_open_incident_per_type_and_queue(self, db_session):
        create_incident(db_session)

        with pytest.raises(IntegrityError):
            create_incident(db_session, status=IncidentStatus.ACKNOWLEDGED)
        db_session.rollback()

    def test_resolved_incidents_do_not_collide(self, db_session):
        create_incident(db_session, status=IncidentStatus.RESOLVED)
        create_incident(db_session, status=IncidentStatus.RESOLVED)
        create_incident(db_session)
        create_incident(db_session, incident_type=IncidentType.HIGH_FAILURE_RATE)

        assert db_session.query(Incident).filter(Incident.open_key.isnot(None)).count() == 2
