"""Cafe automation tasks.

One task, cafe.process_job, carries a job id from the queue to the
JobProcessor. Before touching the job row it checks the queue pause flag and
the fleet-wide rate limit; either one defers the delivery by re-enqueueing
it with a backoff countdown.
"""

import logging
import time

from cafe_worker.celery_app import app

logger = logging.getLogger(__name__)


@app.task(name="cafe.process_job", bind=True, max_retries=2)
def process_job(self, job_id: int, deferrals: int = 0) -> dict:
    """Run one job.

    Retry policy:
    - TerminalJobError: the job failed for good, no retry.
    - Any other exception: retried with a linear countdown until
      max_retries, after which the job stays FAILED.

    Args:
        job_id: ID of the Job row.
        deferrals: How many times this delivery was already deferred.

    Returns:
        Dictionary with status and details.
    """
    # Import here to avoid circular imports
    from cafe_core.domain.errors import TerminalJobError
    from cafe_core.domain.services.job_processor import JobProcessor
    from cafe_core.infra.db import get_sync_session_factory
    from cafe_worker.runtime import get_runtime

    runtime = get_runtime()
    settings = runtime.settings

    reason = None
    if runtime.counters.is_paused():
        reason = "paused"
    elif not runtime.rate_limiter.acquire():
        reason = "rate_limited"

    if reason is not None:
        countdown = runtime.backoff.get_delay(deferrals + 1)
        self.apply_async(args=(job_id,), kwargs={"deferrals": deferrals + 1}, countdown=countdown)
        logger.info(
            "Job delivery deferred",
            extra={"job_id": job_id, "reason": reason, "countdown": countdown, "deferrals": deferrals + 1},
        )
        return {"status": "deferred", "job_id": job_id, "reason": reason, "countdown": countdown}

    retries = self.request.retries
    runtime.job_started(from_retry=retries > 0)
    started = time.monotonic()

    session = get_sync_session_factory()()
    try:
        processor = JobProcessor(
            session,
            runtime.pool,
            runtime.crypto,
            settings=settings,
            login_signals=runtime.login_signals,
        )
        job = runtime.run(processor.process(job_id, final_attempt=retries >= self.max_retries))
        runtime.job_finished(True, time.monotonic() - started)
        return {"status": job.status.lower(), "job_id": job_id, "attempts": job.attempts}

    except TerminalJobError as exc:
        runtime.job_finished(False, time.monotonic() - started)
        logger.warning(
            "Job failed without retry",
            extra={"job_id": job_id, "error_code": exc.code, "error": exc.message},
        )
        return {
            "status": "failed",
            "job_id": job_id,
            "error": exc.message,
            "error_code": exc.code,
            "retryable": False,
        }

    except Exception as exc:
        if retries < self.max_retries:
            runtime.job_retrying()
            logger.warning(
                "Job failed, retrying",
                extra={"job_id": job_id, "retries": retries, "error": str(exc)},
            )
            raise self.retry(exc=exc, countdown=settings.job_retry_delay_seconds * (retries + 1))

        runtime.job_finished(False, time.monotonic() - started)
        logger.error("Job failed after retries", exc_info=True, extra={"job_id": job_id})
        return {
            "status": "failed",
            "job_id": job_id,
            "error": str(exc),
            "retryable": False,
        }

    finally:
        session.close()
