"""Job lifecycle service for Cafe Manager.

Moves jobs through QUEUED -> PROCESSING -> COMPLETED | FAILED, writes the
job log, and keeps the counters of the owning schedule run consistent when
several workers finish jobs of the same run concurrently.
"""

import logging
import traceback
from typing import Any, Optional, Union

from sqlalchemy.orm import Session as DBSession
from sqlalchemy.orm.attributes import set_committed_value

from cafe_core.domain.errors import ErrorCode
from cafe_core.domain.models import (
    Job,
    JobLog,
    JobStatus,
    LogLevel,
    RunStatus,
    ScheduleRun,
    utcnow,
)
from cafe_core.observability import get_logger

logger = get_logger(__name__)

# Maximum length for error messages
MAX_ERROR_LENGTH = 5000

# JobLog level -> stdlib level for the mirrored log line
_STDLIB_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class JobService:
    """Service for job state transitions and schedule run bookkeeping."""

    def __init__(self, db: DBSession):
        """Initialize the job service.

        Args:
            db: SQLAlchemy database session.
        """
        self.db = db

    def get_job(self, job_id: int) -> Optional[Job]:
        """Get a job by ID.

        Args:
            job_id: The job ID.

        Returns:
            The Job or None if not found.
        """
        return self.db.query(Job).filter(Job.id == job_id).first()

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def start(self, job: Job) -> Job:
        """Transition a job to PROCESSING and count the attempt.

        The attempt counter is incremented in SQL so concurrent redeliveries
        of the same job never lose an attempt.

        Args:
            job: The job being picked up.

        Returns:
            The refreshed job.
        """
        now = utcnow()
        self.db.query(Job).filter(Job.id == job.id).update(
            {
                Job.status: JobStatus.PROCESSING,
                Job.attempts: Job.attempts + 1,
                Job.started_at: now,
                Job.finished_at: None,
                Job.updated_at: now,
            },
            synchronize_session=False,
        )

        if job.schedule_run_id is not None:
            self.db.query(ScheduleRun).filter(
                ScheduleRun.id == job.schedule_run_id,
                ScheduleRun.status == RunStatus.PENDING,
            ).update(
                {
                    ScheduleRun.status: RunStatus.RUNNING,
                    ScheduleRun.started_at: now,
                    ScheduleRun.updated_at: now,
                },
                synchronize_session=False,
            )

        self.db.flush()
        self.db.refresh(job)
        return job

    def complete(self, job: Job) -> None:
        """Mark a job as COMPLETED and clear any earlier error."""
        job.status = JobStatus.COMPLETED
        job.finished_at = utcnow()
        job.error_message = None
        job.error_code = None
        self.db.flush()

    def fail(
        self,
        job: Job,
        error: Union[str, Exception],
        code: str = ErrorCode.UNKNOWN,
        screenshot_path: Optional[str] = None,
    ) -> None:
        """Mark a job as FAILED with its error.

        Args:
            job: The job.
            error: Error message or exception.
            code: ErrorCode value stored on the job.
            screenshot_path: Diagnostic screenshot taken at failure, if any.
        """
        job.status = JobStatus.FAILED
        job.finished_at = utcnow()
        job.error_message = self.serialize_error(error)
        job.error_code = code
        if screenshot_path:
            job.screenshot_path = screenshot_path
        self.db.flush()

    def is_final_attempt(self, job: Job) -> bool:
        return job.attempts >= job.max_attempts

    def serialize_error(
        self,
        error: Union[str, Exception],
        include_traceback: bool = False,
    ) -> str:
        """Serialize an error to a string suitable for storage.

        Args:
            error: The error message or exception.
            include_traceback: Whether to include traceback.

        Returns:
            Serialized error string (truncated if too long).
        """
        if isinstance(error, str):
            error_str = error
        elif include_traceback:
            error_str = "".join(traceback.format_exception(error))
        else:
            error_str = str(error) or type(error).__name__

        if len(error_str) > MAX_ERROR_LENGTH:
            error_str = error_str[: MAX_ERROR_LENGTH - 3] + "..."

        return error_str

    # -------------------------------------------------------------------------
    # Job log
    # -------------------------------------------------------------------------

    def add_log(
        self,
        job_id: int,
        level: str,
        message: str,
        meta: Optional[dict[str, Any]] = None,
    ) -> JobLog:
        """Append a job log row and mirror it to the process log."""
        entry = JobLog(job_id=job_id, level=level, message=message, meta_json=meta)
        self.db.add(entry)
        self.db.flush()

        logger.log(
            _STDLIB_LEVELS.get(level, logging.INFO),
            message,
            job_id=job_id,
            meta=meta or {},
        )
        return entry

    # -------------------------------------------------------------------------
    # Schedule runs
    # -------------------------------------------------------------------------

    def claim_outcome(self, job: Job) -> bool:
        """Mark the job's final outcome as recorded.

        A conditional UPDATE, so when the same job is delivered more than
        once exactly one delivery wins the claim.

        Returns:
            True if this call claimed it, False if it was already claimed.
        """
        claimed = (
            self.db.query(Job)
            .filter(Job.id == job.id, Job.outcome_recorded.is_(False))
            .update({Job.outcome_recorded: True}, synchronize_session=False)
        )
        set_committed_value(job, "outcome_recorded", True)
        return claimed == 1

    def record_final_outcome(self, job: Job, succeeded: bool) -> bool:
        """Claim the job's final outcome and count it in its schedule run.

        Args:
            job: The finished job.
            succeeded: Whether the job completed.

        Returns:
            False if another delivery already recorded the outcome.
        """
        if not self.claim_outcome(job):
            logger.warning(
                "Job outcome already recorded, not counting again",
                job_id=job.id,
                schedule_run_id=job.schedule_run_id,
            )
            return False

        if job.schedule_run_id is not None:
            self.record_run_outcome(job.schedule_run_id, succeeded=succeeded)
        return True

    def record_run_outcome(self, run_id: int, succeeded: bool) -> Optional[ScheduleRun]:
        """Count one finished job against its schedule run.

        The counter is bumped with a single `col = col + 1` statement that
        also refuses to push completed + failed past total. The terminal
        transition then happens under a row lock, and only while
        finished_at is unset, so it is applied exactly once.

        Args:
            run_id: The schedule run ID.
            succeeded: Whether the job completed.

        Returns:
            The refreshed run, or None if it does not exist.
        """
        column = ScheduleRun.completed_jobs if succeeded else ScheduleRun.failed_jobs
        now = utcnow()

        updated = (
            self.db.query(ScheduleRun)
            .filter(
                ScheduleRun.id == run_id,
                ScheduleRun.completed_jobs + ScheduleRun.failed_jobs < ScheduleRun.total_jobs,
            )
            .update({column: column + 1, ScheduleRun.updated_at: now}, synchronize_session=False)
        )

        run = (
            self.db.query(ScheduleRun)
            .filter(ScheduleRun.id == run_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if run is None:
            logger.warning("Schedule run not found", schedule_run_id=run_id)
            return None

        if not updated:
            logger.warning(
                "Schedule run already has all outcomes counted",
                schedule_run_id=run_id,
                total_jobs=run.total_jobs,
            )

        if run.status == RunStatus.PENDING:
            run.status = RunStatus.RUNNING
            run.started_at = run.started_at or now

        if run.finished_at is None and run.completed_jobs + run.failed_jobs >= run.total_jobs:
            run.status = RunStatus.COMPLETED if run.failed_jobs == 0 else RunStatus.FAILED
            run.finished_at = now
            logger.info(
                "Schedule run finished",
                schedule_run_id=run_id,
                status=run.status,
                completed_jobs=run.completed_jobs,
                failed_jobs=run.failed_jobs,
            )

        self.db.flush()
        return run
