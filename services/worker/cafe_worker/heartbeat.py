"""Heartbeat emitter thread.

Beats once on start, then every interval until stopped. Runs beside the job
thread, so a long browser job never makes the worker look offline.
"""

import logging
import threading
from typing import Callable, Optional

from cafe_core.infrastructure.heartbeat import HeartbeatRegistry, WorkerStatus

logger = logging.getLogger(__name__)


class HeartbeatEmitter:
    """Periodically publishes a worker's status to the registry."""

    def __init__(
        self,
        registry: HeartbeatRegistry,
        status_provider: Callable[[], WorkerStatus],
        interval_seconds: float = 10.0,
    ):
        self.registry = registry
        self.status_provider = status_provider
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def beat_once(self) -> bool:
        """Publish one heartbeat. A failure is logged, never raised."""
        try:
            self.registry.beat(self.status_provider())
            return True
        except Exception:
            logger.warning("Heartbeat failed", exc_info=True)
            return False

    def _run(self) -> None:
        self.beat_once()
        while not self._stop.wait(self.interval_seconds):
            self.beat_once()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="heartbeat", daemon=True)
        self._thread.start()
        logger.info("Heartbeat started", extra={"interval_seconds": self.interval_seconds})

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Heartbeat stopped")
