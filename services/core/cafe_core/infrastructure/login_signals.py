"""Operator signals for login challenges.

While a job waits for someone to clear a captcha or second-factor prompt
in the visible browser, an operator can post a signal for the session:

- "done": authentication was completed, re-check now
- "abort": stop waiting and fail the login
"""

from typing import Any, Optional

KEY_PREFIX = "cafe-manager:manual-login"
SIGNAL_TTL_SECONDS = 600

DONE = "done"
ABORT = "abort"


class ManualLoginSignals:
    """Read and write manual-login signals in Redis."""

    def __init__(self, redis: Any):
        self.redis = redis

    @staticmethod
    def key(session_id: int) -> str:
        return f"{KEY_PREFIX}:{session_id}"

    def send(self, session_id: int, action: str) -> None:
        if action not in (DONE, ABORT):
            raise ValueError(f"Unknown manual login signal: {action}")
        self.redis.setex(self.key(session_id), SIGNAL_TTL_SECONDS, action)

    def read(self, session_id: int) -> Optional[str]:
        value = self.redis.get(self.key(session_id))
        if isinstance(value, bytes):
            value = value.decode()
        return value if value in (DONE, ABORT) else None

    def clear(self, session_id: int) -> None:
        self.redis.delete(self.key(session_id))
