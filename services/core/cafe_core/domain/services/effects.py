"""Best-effort side effects.

Some work around a job is nice to have but must never change its outcome:
a diagnostic screenshot, the ManagedPost mirror after a publish, a nickname
lookup. Wrap it in `non_critical` and a failure is logged, then dropped.
"""

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional

_logger = logging.getLogger(__name__)


@contextmanager
def non_critical(label: str, logger: Optional[logging.Logger] = None, **fields: Any) -> Iterator[None]:
    """Run the block, logging (with traceback) and discarding any exception."""
    try:
        yield
    except Exception:
        (logger or _logger).warning(
            "Non-critical step failed: %s",
            label,
            exc_info=True,
            extra={"step": label, **fields},
        )
