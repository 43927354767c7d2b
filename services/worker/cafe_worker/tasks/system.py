"""System tasks: queue statistics, incident detection and operator controls."""

import logging

import redis

from cafe_worker.celery_app import app

logger = logging.getLogger(__name__)


@app.task(name="system.collect_stats_snapshot", bind=True, max_retries=0)
def collect_stats_snapshot(self) -> dict:
    """Record a queue stats snapshot and evaluate incidents.

    Runs from Celery beat every minute. A failed cycle is logged and
    dropped; the next one starts from fresh counters.
    """
    from cafe_core.config import get_settings
    from cafe_core.domain.services.queue_stats import QueueStatsCollector
    from cafe_core.infra.db import get_sync_session_factory

    settings = get_settings()
    client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
    session = get_sync_session_factory()()

    try:
        snapshot = QueueStatsCollector(session, client, settings=settings).collect()
        session.commit()
        return {
            "status": "success",
            "queue_name": snapshot.queue_name,
            "waiting": snapshot.waiting,
            "active": snapshot.active,
            "jobs_per_min": snapshot.jobs_per_min,
            "online_workers": snapshot.online_workers,
        }

    except Exception as exc:
        session.rollback()
        logger.error("Stats collection failed", exc_info=True)
        return {"status": "error", "error": str(exc)}

    finally:
        session.close()
        client.close()


@app.task(name="system.signal_manual_login", bind=True, max_retries=0)
def signal_manual_login(self, session_id: int, action: str) -> dict:
    """Tell a job waiting on a login challenge to re-check ("done") or give up ("abort")."""
    from cafe_core.config import get_settings
    from cafe_core.infrastructure.login_signals import ManualLoginSignals

    client = redis.Redis.from_url(get_settings().redis_url, decode_responses=True)
    try:
        ManualLoginSignals(client).send(session_id, action)
    except ValueError as exc:
        return {"status": "error", "error": str(exc)}
    finally:
        client.close()

    logger.info("Manual login signal sent", extra={"session_id": session_id, "action": action})
    return {"status": "success", "session_id": session_id, "action": action}


@app.task(name="system.set_queue_paused", bind=True, max_retries=0)
def set_queue_paused(self, paused: bool) -> dict:
    """Pause or resume the cafe queue.

    While paused, cafe workers defer every delivery instead of running it.
    """
    from cafe_core.config import get_settings
    from cafe_core.infrastructure.queue_counters import QueueCounters

    settings = get_settings()
    client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
    try:
        QueueCounters(client, settings.cafe_queue_name).set_paused(paused)
    finally:
        client.close()

    logger.info(
        "Queue paused" if paused else "Queue resumed",
        extra={"queue_name": settings.cafe_queue_name},
    )
    return {"status": "success", "queue_name": settings.cafe_queue_name, "paused": paused}
