"""Celery signal handlers: logging setup and worker runtime lifecycle."""

import logging

from celery.signals import (
    setup_logging,
    worker_process_init,
    worker_process_shutdown,
)

from cafe_core.config import get_settings
from cafe_core.observability import configure_logging

SERVICE_NAME = "cafe-worker"

logger = logging.getLogger(__name__)


def consumed_queues(app) -> set[str]:
    """Names of the queues this worker consumes (honours -Q)."""
    return set(app.amqp.queues.consume_from)


@setup_logging.connect
def on_setup_logging(**kwargs) -> None:
    """Replace Celery's logging setup with ours."""
    settings = get_settings()
    configure_logging(
        level=settings.log_level,
        json_format=settings.log_json,
        service_name=SERVICE_NAME,
    )


@worker_process_init.connect
def on_worker_process_init(**kwargs) -> None:
    """Start the browser runtime, on cafe workers only.

    A system worker (-Q system-jobs) has no browser, no heartbeat and is not
    counted as an online cafe worker.
    """
    from cafe_worker.celery_app import CAFE_QUEUE_NAME, app
    from cafe_worker.runtime import init_runtime

    queues = consumed_queues(app)
    if CAFE_QUEUE_NAME not in queues:
        logger.info("Not a cafe worker, runtime not started", extra={"queues": sorted(queues)})
        return

    init_runtime()


@worker_process_shutdown.connect
def on_worker_process_shutdown(**kwargs) -> None:
    from cafe_worker.runtime import shutdown_runtime

    shutdown_runtime()
