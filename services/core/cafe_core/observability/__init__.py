"""Observability package for logging and metrics."""

from cafe_core.observability.logging import (
    JsonFormatter,
    StructuredLogger,
    configure_logging,
    get_logger,
)
from cafe_core.observability.metrics import (
    MetricsCollector,
    get_collector,
)

__all__ = [
    "JsonFormatter",
    "StructuredLogger",
    "configure_logging",
    "get_logger",
    "MetricsCollector",
    "get_collector",
]
