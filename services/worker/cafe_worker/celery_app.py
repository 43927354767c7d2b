"""Celery application configuration for Cafe Manager Worker.

Browser jobs and system jobs run on separate workers so a long browser job
never delays a stats snapshot:

    celery -A cafe_worker.celery_app worker                   # cafe-jobs only
    celery -A cafe_worker.celery_app worker -Q system-jobs    # stats, signals
    celery -A cafe_worker.celery_app beat

Only the cafe queue is declared in task_queues, so a worker started without
-Q consumes nothing else. system-jobs is created on demand by the routes
and by -Q.
"""

import os

from celery import Celery
from kombu import Queue

# Celery configuration from environment
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1")
CAFE_QUEUE_NAME = os.getenv("CAFE_QUEUE_NAME", "cafe-jobs")
SYSTEM_QUEUE_NAME = os.getenv("SYSTEM_QUEUE_NAME", "system-jobs")
STATS_INTERVAL_SECONDS = float(os.getenv("STATS_INTERVAL_SECONDS", "60"))

app = Celery(
    "cafe_worker",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
    include=[
        "cafe_worker.tasks.cafe",
        "cafe_worker.tasks.system",
    ],
)

# Celery configuration
app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Task execution
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # Time limits (seconds); manual login alone may take 5 minutes
    task_soft_time_limit=600,
    task_time_limit=660,
    # Queue routing
    task_queues=(Queue(CAFE_QUEUE_NAME),),
    task_create_missing_queues=True,
    task_default_queue=CAFE_QUEUE_NAME,
    task_routes={
        "cafe.*": {"queue": CAFE_QUEUE_NAME},
        "system.*": {"queue": SYSTEM_QUEUE_NAME},
    },
    # One browser job at a time per process
    worker_prefetch_multiplier=1,
    worker_concurrency=1,
    # Logging is configured through the setup_logging signal
    worker_hijack_root_logger=False,
)

# Beat schedule for periodic tasks
app.conf.beat_schedule = {
    "collect-queue-stats": {
        "task": "system.collect_stats_snapshot",
        "schedule": STATS_INTERVAL_SECONDS,
        "args": (),
    },
}

# Signal handlers (logging, worker runtime lifecycle)
import cafe_worker.signals  # noqa: E402,F401


if __name__ == "__main__":
    app.start()
