"""Job error taxonomy.

JobError subclasses carry an ErrorCode that is persisted on the job row.
TerminalJobError marks business failures that the queue must not retry
(bad credentials, undecryptable secrets, expired sessions, invalid payloads).
Every other exception raised by a handler is retried by the queue.
"""

from typing import Optional


class ErrorCode(str):
    """Error codes persisted on jobs and sessions."""

    AUTH_EXPIRED = "AUTH_EXPIRED"
    AUTH_INVALID = "AUTH_INVALID"
    CHALLENGE_REQUIRED = "CHALLENGE_REQUIRED"
    LOGIN_FAILED = "LOGIN_FAILED"
    DECRYPT_FAILED = "DECRYPT_FAILED"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    JOB_NOT_FOUND = "JOB_NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UI_CHANGED = "UI_CHANGED"
    UPLOAD_FAILED = "UPLOAD_FAILED"
    PUBLISH_FAILED = "PUBLISH_FAILED"
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    UNKNOWN = "UNKNOWN"


class JobError(Exception):
    """Handler failure with a persisted error code. Retried by the queue."""

    def __init__(self, message: str, code: str = ErrorCode.UNKNOWN):
        super().__init__(message)
        self.message = message
        self.code = code
        self.screenshot_path: Optional[str] = None


class TerminalJobError(JobError):
    """Business failure that must not be retried automatically."""

    pass


class JobNotFoundError(TerminalJobError):
    """Raised when the job row referenced by a delivery does not exist."""

    def __init__(self, job_id: int):
        super().__init__(f"Job not found: {job_id}", ErrorCode.JOB_NOT_FOUND)
        self.job_id = job_id


class SessionUnavailableError(TerminalJobError):
    """No usable session (missing, or none ACTIVE for the owner)."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCode.SESSION_NOT_FOUND)


class SessionExpiredError(TerminalJobError):
    """Session could not be re-authenticated and was marked EXPIRED."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCode.AUTH_EXPIRED)


class LoginFailedError(TerminalJobError):
    """Login failed (credentials, challenge timeout, decrypt failure)."""

    pass
