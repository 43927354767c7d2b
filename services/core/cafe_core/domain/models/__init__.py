"""Domain models for Cafe Manager.

SQLAlchemy ORM models for jobs, schedule runs, Naver accounts and sessions,
managed posts, queue statistics snapshots and incidents.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# ENUMS
# =============================================================================


class JobType(str):
    """Job type values."""

    INIT_SESSION = "INIT_SESSION"
    VERIFY_SESSION = "VERIFY_SESSION"
    CREATE_POST = "CREATE_POST"
    SYNC_POSTS = "SYNC_POSTS"
    DELETE_POST = "DELETE_POST"

    ALL = (INIT_SESSION, VERIFY_SESSION, CREATE_POST, SYNC_POSTS, DELETE_POST)


class JobStatus(str):
    """Job lifecycle values."""

    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    ALL = (QUEUED, PROCESSING, COMPLETED, FAILED, CANCELLED)
    # Never picked up again by a worker
    FINISHED = (COMPLETED, CANCELLED)


class RunMode(str):
    """Browser run mode for a job. DEBUG opens a visible browser."""

    HEADLESS = "HEADLESS"
    DEBUG = "DEBUG"

    ALL = (HEADLESS, DEBUG)


class LogLevel(str):
    """Job log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"

    ALL = (DEBUG, INFO, WARN, ERROR)


class RunStatus(str):
    """Schedule run status values."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    ALL = (PENDING, RUNNING, COMPLETED, FAILED)
    TERMINAL = (COMPLETED, FAILED)


class AccountStatus(str):
    """Naver account status values."""

    ACTIVE = "ACTIVE"
    LOGIN_FAILED = "LOGIN_FAILED"
    DISABLED = "DISABLED"

    ALL = (ACTIVE, LOGIN_FAILED, DISABLED)


class SessionStatus(str):
    """Naver session status values."""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    ERROR = "ERROR"

    ALL = (PENDING, ACTIVE, EXPIRED, ERROR)


class PostStatus(str):
    """Managed post status values."""

    ACTIVE = "ACTIVE"
    DELETED = "DELETED"
    UNKNOWN = "UNKNOWN"

    ALL = (ACTIVE, DELETED, UNKNOWN)


class IncidentType(str):
    """Incident type values."""

    QUEUE_BACKLOG = "QUEUE_BACKLOG"
    HIGH_FAILURE_RATE = "HIGH_FAILURE_RATE"

    ALL = (QUEUE_BACKLOG, HIGH_FAILURE_RATE)


class IncidentSeverity(str):
    """Incident severity values."""

    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

    ALL = (MEDIUM, HIGH)


class IncidentStatus(str):
    """Incident lifecycle values. ACKNOWLEDGED is set by operators."""

    ACTIVE = "ACTIVE"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED = "RESOLVED"

    ALL = (ACTIVE, ACKNOWLEDGED, RESOLVED)
    OPEN = (ACTIVE, ACKNOWLEDGED)


# =============================================================================
# Scheduling and jobs
# =============================================================================


class ScheduleRun(Base):
    """Aggregate of the jobs created by one scheduling trigger."""

    __tablename__ = "schedule_runs"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_jobs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_jobs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_jobs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(
        Enum(*RunStatus.ALL, name="run_status_enum"),
        nullable=False,
        default=RunStatus.PENDING,
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    jobs: Mapped[list["Job"]] = relationship("Job", back_populates="schedule_run")


class Job(Base):
    """One unit of automation work with a typed payload."""

    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    type: Mapped[str] = mapped_column(
        Enum(*JobType.ALL, name="job_type_enum"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    payload_json: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    status: Mapped[str] = mapped_column(
        Enum(*JobStatus.ALL, name="job_status_enum"),
        nullable=False,
        default=JobStatus.QUEUED,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    run_mode: Mapped[str] = mapped_column(
        Enum(*RunMode.ALL, name="run_mode_enum"),
        nullable=False,
        default=RunMode.HEADLESS,
    )

    schedule_run_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("schedule_runs.id"), nullable=True
    )
    sequence_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    screenshot_path: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    # Set once, by the delivery that records the final outcome
    outcome_recorded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    schedule_run: Mapped[Optional["ScheduleRun"]] = relationship(
        "ScheduleRun", back_populates="jobs"
    )
    logs: Mapped[list["JobLog"]] = relationship(
        "JobLog", back_populates="job", order_by="JobLog.id"
    )

    __table_args__ = (
        Index("idx_jobs_status", "status"),
        Index("idx_jobs_user_created", "user_id", "created_at"),
        Index("idx_jobs_schedule_run", "schedule_run_id"),
    )


class JobLog(Base):
    """Log line attached to a job."""

    __tablename__ = "job_logs"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False
    )
    level: Mapped[str] = mapped_column(
        Enum(*LogLevel.ALL, name="log_level_enum"), nullable=False, default=LogLevel.INFO
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)
    meta_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    job: Mapped["Job"] = relationship("Job", back_populates="logs")

    __table_args__ = (Index("idx_job_logs_job", "job_id", "created_at"),)


# =============================================================================
# Naver accounts and sessions
# =============================================================================


class NaverAccount(Base):
    """Naver login credentials owned by a user."""

    __tablename__ = "naver_accounts"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    login_id: Mapped[str] = mapped_column(String(128), nullable=False)
    password_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(
        Enum(*AccountStatus.ALL, name="account_status_enum"),
        nullable=False,
        default=AccountStatus.ACTIVE,
    )
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_login_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    last_login_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    sessions: Mapped[list["NaverSession"]] = relationship(
        "NaverSession", back_populates="account"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "login_id", name="uq_naver_account_login"),
    )


class NaverSession(Base):
    """Persisted authentication state of one account (a browser profile)."""

    __tablename__ = "naver_sessions"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    naver_account_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("naver_accounts.id", ondelete="CASCADE"), nullable=False
    )
    profile_dir: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(
        Enum(*SessionStatus.ALL, name="session_status_enum"),
        nullable=False,
        default=SessionStatus.PENDING,
    )
    last_verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    naver_nickname: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    account: Mapped["NaverAccount"] = relationship("NaverAccount", back_populates="sessions")

    __table_args__ = (Index("idx_naver_sessions_status", "naver_account_id", "status"),)


# =============================================================================
# Managed posts
# =============================================================================


class ManagedPost(Base):
    """Local mirror of an article published on a cafe."""

    __tablename__ = "managed_posts"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    cafe_id: Mapped[str] = mapped_column(String(64), nullable=False)
    board_id: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    article_id: Mapped[str] = mapped_column(String(64), nullable=False)
    article_url: Mapped[str] = mapped_column(String(1024), nullable=False)
    title: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    status: Mapped[str] = mapped_column(
        Enum(*PostStatus.ALL, name="post_status_enum"),
        nullable=False,
        default=PostStatus.ACTIVE,
    )
    created_at_remote: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("cafe_id", "article_id", name="uq_managed_post_article"),
        Index("idx_managed_posts_user", "user_id", "status"),
    )


# =============================================================================
# Worker monitoring
# =============================================================================


class QueueStatsSnapshot(Base):
    """Point-in-time queue counters. Append-only, pruned by retention."""

    __tablename__ = "queue_stats_snapshots"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    queue_name: Mapped[str] = mapped_column(String(64), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    waiting: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    delayed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    paused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    jobs_per_min: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    online_workers: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (Index("idx_queue_stats_queue_time", "queue_name", "timestamp"),)


class Incident(Base):
    """Detected queue anomaly.

    open_key is "<type>:<queue>" while the incident is ACTIVE or ACKNOWLEDGED
    and NULL once RESOLVED, so the unique index allows one open incident per
    (type, queue) and any number of resolved ones.
    """

    __tablename__ = "incidents"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    type: Mapped[str] = mapped_column(
        Enum(*IncidentType.ALL, name="incident_type_enum"), nullable=False
    )
    severity: Mapped[str] = mapped_column(
        Enum(*IncidentSeverity.ALL, name="incident_severity_enum"), nullable=False
    )
    queue_name: Mapped[str] = mapped_column(String(64), nullable=False)
    affected_jobs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    recommended_action: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        Enum(*IncidentStatus.ALL, name="incident_status_enum"),
        nullable=False,
        default=IncidentStatus.ACTIVE,
    )
    open_key: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, unique=True)

    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    acknowledged_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (Index("idx_incidents_queue_status", "queue_name", "status"),)

    @staticmethod
    def make_open_key(incident_type: str, queue_name: str) -> str:
        return f"{incident_type}:{queue_name}"
