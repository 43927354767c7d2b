"""Pydantic schemas for job payloads.

The dashboard writes payloads as camelCase JSON; fields are declared in
snake_case and accept either spelling. Unknown keys are ignored so that
display-only fields added by the dashboard never break a job.
"""

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from cafe_core.domain.errors import ErrorCode, TerminalJobError
from cafe_core.domain.models import JobType


class JobPayload(BaseModel):
    """Base class for job payloads."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        coerce_numbers_to_str=True,
    )


# ============================================================================
# Session payloads
# ============================================================================


class InitSessionPayload(JobPayload):
    """Log a Naver account in and persist its browser profile."""

    account_id: int
    session_id: int
    profile_dir: str = Field(min_length=1)


class VerifySessionPayload(JobPayload):
    """Check that a stored session is still logged in."""

    session_id: int


# ============================================================================
# Post payloads
# ============================================================================


class CreatePostPayload(JobPayload):
    """Publish one article to a cafe board."""

    cafe_id: str = Field(min_length=1)
    board_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    content: str
    image_paths: list[str] = Field(default_factory=list)
    price: Optional[int] = Field(None, ge=0)
    trade_method: Optional[Literal["DIRECT", "DELIVERY", "BOTH"]] = None
    trade_location: Optional[str] = None
    account_id: Optional[int] = None

    # Dashboard context, carried for logs only
    schedule_id: Optional[int] = None
    template_id: Optional[int] = None
    cafe_name: Optional[str] = None
    board_name: Optional[str] = None


class SyncPostsPayload(JobPayload):
    """Refresh the local mirror of the account's articles in a cafe."""

    cafe_id: Optional[str] = None
    account_id: Optional[int] = None


class DeletePostPayload(JobPayload):
    """Delete a managed article (not performed by the worker yet)."""

    managed_post_id: Optional[int] = None
    cafe_id: Optional[str] = None
    article_id: Optional[str] = None


PAYLOAD_MODELS: dict[str, type[JobPayload]] = {
    JobType.INIT_SESSION: InitSessionPayload,
    JobType.VERIFY_SESSION: VerifySessionPayload,
    JobType.CREATE_POST: CreatePostPayload,
    JobType.SYNC_POSTS: SyncPostsPayload,
    JobType.DELETE_POST: DeletePostPayload,
}


def parse_payload(job_type: str, payload: Optional[dict[str, Any]]) -> JobPayload:
    """Validate a raw payload against the model of its job type.

    Raises:
        TerminalJobError: Unknown job type or invalid payload. Retrying
            cannot fix either, so the job fails without a retry.
    """
    model = PAYLOAD_MODELS.get(job_type)
    if model is None:
        raise TerminalJobError(f"Unknown job type: {job_type}", ErrorCode.VALIDATION_ERROR)

    try:
        return model.model_validate(payload or {})
    except ValidationError as exc:
        fields = ", ".join(".".join(str(part) for part in error["loc"]) for error in exc.errors())
        raise TerminalJobError(
            f"Invalid {job_type} payload: {fields or exc}",
            ErrorCode.VALIDATION_ERROR,
        ) from exc
