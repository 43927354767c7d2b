"""Job processor: runs one job through its handler.

process(job_id) loads the job, moves it to PROCESSING, validates the payload
for its type and dispatches to the matching handler. The outcome is written
back to the job, its log and (on the final attempt) its schedule run.

Error contract for callers (the Celery task):
- TerminalJobError and subclasses: the job is FAILED for good, do not retry.
- Any other exception: the job is FAILED for this attempt, retry is allowed.

Handlers that change session or account state before failing commit that
state themselves, because the processor rolls back the open transaction
before it records the failure.
"""

import re
from typing import Any, Awaitable, Callable, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from sqlalchemy.orm import Session as DBSession

from cafe_core.automation.browser_pool import ProfilePool
from cafe_core.automation.naver_cafe import LoginStatus, NaverCafeClient, PostDraft
from cafe_core.config import Settings, get_settings
from cafe_core.domain.errors import (
    ErrorCode,
    JobError,
    JobNotFoundError,
    LoginFailedError,
    SessionExpiredError,
    SessionUnavailableError,
    TerminalJobError,
)
from cafe_core.domain.models import (
    Job,
    JobStatus,
    JobType,
    LogLevel,
    NaverAccount,
    NaverSession,
    RunMode,
)
from cafe_core.domain.schemas.job_payloads import (
    CreatePostPayload,
    DeletePostPayload,
    InitSessionPayload,
    SyncPostsPayload,
    VerifySessionPayload,
    parse_payload,
)
from cafe_core.domain.services.effects import non_critical
from cafe_core.domain.services.jobs import JobService
from cafe_core.domain.services.managed_posts import ManagedPostService
from cafe_core.domain.services.sessions import SessionService
from cafe_core.infrastructure.crypto import CryptoService, DecryptionError
from cafe_core.infrastructure.login_signals import ManualLoginSignals
from cafe_core.observability import get_logger

logger = get_logger(__name__)

Handler = Callable[[Job, Any], Awaitable[None]]

_NETWORK_ERROR = re.compile(r"net::ERR_|ECONNREFUSED|ECONNRESET", re.IGNORECASE)


def error_code_for(exc: BaseException) -> str:
    """ErrorCode stored on a job that failed with `exc`."""
    if isinstance(exc, JobError):
        return exc.code
    if isinstance(exc, PlaywrightTimeoutError):
        return ErrorCode.TIMEOUT
    if isinstance(exc, PlaywrightError) and _NETWORK_ERROR.search(str(exc)):
        return ErrorCode.NETWORK_ERROR
    return ErrorCode.UNKNOWN


class JobProcessor:
    """Executes Naver Cafe jobs against a browser profile pool."""

    def __init__(
        self,
        db: DBSession,
        pool: ProfilePool,
        crypto: CryptoService,
        settings: Optional[Settings] = None,
        login_signals: Optional[ManualLoginSignals] = None,
    ):
        """Initialize the processor.

        Args:
            db: SQLAlchemy database session.
            pool: Browser profile pool of this worker process.
            crypto: Codec for stored account passwords.
            settings: Application settings (defaults to get_settings()).
            login_signals: Operator signals polled during manual login.
        """
        self.db = db
        self.pool = pool
        self.crypto = crypto
        self.settings = settings or get_settings()
        self.login_signals = login_signals

        self.jobs = JobService(db)
        self.sessions = SessionService(db)
        self.posts = ManagedPostService(db)

        self._handlers: dict[str, Handler] = {
            JobType.INIT_SESSION: self._handle_init_session,
            JobType.VERIFY_SESSION: self._handle_verify_session,
            JobType.CREATE_POST: self._handle_create_post,
            JobType.SYNC_POSTS: self._handle_sync_posts,
            JobType.DELETE_POST: self._handle_delete_post,
        }
        missing = set(JobType.ALL) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for job types: {sorted(missing)}")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def process(self, job_id: int, final_attempt: bool = False) -> Job:
        """Run one job to COMPLETED, or to FAILED and re-raise.

        A job that is already finished, or whose final outcome another
        delivery recorded, is returned untouched.

        Args:
            job_id: The job ID.
            final_attempt: The queue will not redeliver this job, so a
                failure now is the job's final outcome.

        Returns:
            The job.

        Raises:
            JobNotFoundError: No job with this ID.
            Exception: Whatever the handler raised, after recording it.
        """
        job = self.jobs.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        if job.status in JobStatus.FINISHED or job.outcome_recorded:
            logger.info("Job already finished, skipping", job_id=job_id, status=job.status)
            return job

        job = self.jobs.start(job)
        self.jobs.add_log(
            job.id,
            LogLevel.INFO,
            f"Job started (attempt {job.attempts}/{job.max_attempts})",
            {"type": job.type, "run_mode": job.run_mode},
        )
        self.db.commit()

        try:
            payload = parse_payload(job.type, job.payload_json)
            await self._handlers[job.type](job, payload)
        except Exception as exc:
            self.db.rollback()
            self._record_failure(job, exc, final_attempt)
            raise

        self.jobs.complete(job)
        self.jobs.add_log(job.id, LogLevel.INFO, "Job completed")
        self.jobs.record_final_outcome(job, succeeded=True)
        self.db.commit()
        return job

    def _record_failure(self, job: Job, exc: Exception, final_attempt: bool) -> None:
        code = error_code_for(exc)
        message = exc.message if isinstance(exc, JobError) else self.jobs.serialize_error(exc)
        final = (
            isinstance(exc, TerminalJobError)
            or final_attempt
            or self.jobs.is_final_attempt(job)
        )

        try:
            self.jobs.fail(job, message, code, getattr(exc, "screenshot_path", None))
            self.jobs.add_log(
                job.id,
                LogLevel.ERROR,
                f"Job failed: {message}",
                {"error_code": code, "attempt": job.attempts, "final": final},
            )
            if final:
                self.jobs.record_final_outcome(job, succeeded=False)
            self.db.commit()
        except Exception:
            # The handler's exception is the one the caller needs to see
            logger.error("Failed to record job failure", exc_info=True, job_id=job.id)
            self.db.rollback()

    def _headed(self, job: Job) -> bool:
        return job.run_mode == RunMode.DEBUG

    # -------------------------------------------------------------------------
    # Authentication helpers
    # -------------------------------------------------------------------------

    def _decrypt_secret(self, session: NaverSession, account: NaverAccount) -> str:
        try:
            return self.crypto.decrypt(account.password_encrypted)
        except DecryptionError as exc:
            reason = "Stored password could not be decrypted"
            self.sessions.mark_error(session, reason, ErrorCode.DECRYPT_FAILED)
            self.sessions.record_login_failure(account, reason)
            self.db.commit()
            raise LoginFailedError(reason, ErrorCode.DECRYPT_FAILED) from exc

    async def _login_flow(
        self,
        job: Job,
        client: NaverCafeClient,
        session: NaverSession,
        account: NaverAccount,
        password: str,
    ) -> Optional[LoginFailedError]:
        """Credential login, with a manual wait when the site challenges.

        Returns:
            None on success, otherwise the error describing the failure.
        """
        result = await client.login(account.login_id, password)
        if result.ok:
            self.jobs.add_log(job.id, LogLevel.INFO, "Login succeeded", {"session_id": session.id})
            return None

        if result.status != LoginStatus.CHALLENGE:
            return LoginFailedError(result.message or "Login failed", ErrorCode.LOGIN_FAILED)

        timeout = self.settings.manual_login_timeout_seconds
        self.jobs.add_log(
            job.id,
            LogLevel.WARN,
            f"{result.message}; waiting up to {timeout}s for manual login",
            {"session_id": session.id, "challenge": result.challenge},
        )
        self.db.commit()

        signal = None
        if self.login_signals is not None:
            signals = self.login_signals
            signals.clear(session.id)

            def signal() -> Optional[str]:
                return signals.read(session.id)

        completed = await client.wait_for_manual_login(
            timeout_seconds=timeout,
            poll_seconds=self.settings.manual_login_poll_seconds,
            signal=signal,
        )
        if completed:
            self.jobs.add_log(job.id, LogLevel.INFO, "Manual login completed", {"session_id": session.id})
            return None

        return LoginFailedError(
            f"Manual verification not completed ({result.challenge})",
            ErrorCode.CHALLENGE_REQUIRED,
        )

    async def _ensure_authenticated(
        self,
        job: Job,
        client: NaverCafeClient,
        session: NaverSession,
    ) -> None:
        """Make sure the profile is logged in, with at most one re-login.

        Raises:
            SessionExpiredError: Re-login failed; the session is EXPIRED.
        """
        if await client.is_logged_in():
            return

        account = session.account
        self.jobs.add_log(
            job.id,
            LogLevel.WARN,
            "Session logged out, attempting re-login",
            {"session_id": session.id},
        )
        password = self._decrypt_secret(session, account)
        failure = await self._login_flow(job, client, session, account, password)

        if failure is None and await client.is_logged_in():
            await self.pool.save_context(session.profile_dir)
            self.sessions.mark_active(session)
            self.sessions.record_login_success(account)
            return

        reason = failure.message if failure else "Still logged out after re-login"
        self.sessions.mark_expired(session, reason)
        self.sessions.record_login_failure(account, reason)
        self.db.commit()
        raise SessionExpiredError(f"Session {session.id} expired: {reason}")

    def _resolve_session(self, job: Job, account_id: Optional[int]) -> NaverSession:
        session = self.sessions.find_active_session(job.user_id, account_id)
        if session is None:
            scope = f"account {account_id}" if account_id is not None else f"user {job.user_id}"
            raise SessionUnavailableError(f"No active Naver session for {scope}")
        return session

    async def _fetch_nickname(self, job: Job, client: NaverCafeClient, profile_dir: str) -> Optional[str]:
        try:
            nickname = await client.fetch_nickname()
        except Exception:
            logger.warning("Nickname lookup failed", exc_info=True, job_id=job.id)
            nickname = None

        if nickname is None:
            with non_critical("nickname screenshot", job_id=job.id):
                await self.pool.save_screenshot(profile_dir, f"nickname-{job.id}")
        return nickname

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    async def _handle_init_session(self, job: Job, payload: InitSessionPayload) -> None:
        session = self.sessions.get_session(payload.session_id)
        if session is None:
            raise SessionUnavailableError(f"Session not found: {payload.session_id}")
        account = self.sessions.get_account(payload.account_id)
        if account is None:
            raise SessionUnavailableError(f"Naver account not found: {payload.account_id}")

        password = self._decrypt_secret(session, account)

        async with self.pool.client(payload.profile_dir, headed=self._headed(job)) as client:
            if await client.is_logged_in():
                self.jobs.add_log(job.id, LogLevel.INFO, "Profile already logged in")
            else:
                failure = await self._login_flow(job, client, session, account, password)
                if failure is not None:
                    with non_critical("login failure screenshot", job_id=job.id):
                        await self.pool.save_screenshot(payload.profile_dir, f"login-failed-{job.id}")
                    self.sessions.mark_error(session, failure.message, failure.code)
                    self.sessions.record_login_failure(account, failure.message)
                    self.db.commit()
                    raise failure

            await self.pool.save_context(payload.profile_dir)
            nickname = await self._fetch_nickname(job, client, payload.profile_dir)

        self.sessions.mark_active(session, nickname)
        self.sessions.record_login_success(account)
        self.jobs.add_log(
            job.id,
            LogLevel.INFO,
            "Session initialized",
            {"session_id": session.id, "nickname": nickname},
        )

    async def _handle_verify_session(self, job: Job, payload: VerifySessionPayload) -> None:
        session = self.sessions.get_session(payload.session_id)
        if session is None:
            raise SessionUnavailableError(f"Session not found: {payload.session_id}")

        async with self.pool.client(session.profile_dir, headed=self._headed(job)) as client:
            valid = await client.is_logged_in()
            failure = None

            if not valid and session.account is not None:
                account = session.account
                self.jobs.add_log(
                    job.id,
                    LogLevel.WARN,
                    "Session logged out, attempting re-login",
                    {"session_id": session.id},
                )
                password = self._decrypt_secret(session, account)
                failure = await self._login_flow(job, client, session, account, password)
                valid = failure is None and await client.is_logged_in()
                if valid:
                    self.sessions.record_login_success(account)

            if not valid:
                reason = failure.message if failure else "Session is no longer logged in"
                self.sessions.mark_expired(session, reason)
                self.db.commit()
                raise SessionExpiredError(f"Session {session.id} expired: {reason}")

            await self.pool.save_context(session.profile_dir)
            nickname = await self._fetch_nickname(job, client, session.profile_dir)

        self.sessions.mark_active(session, nickname)
        self.jobs.add_log(
            job.id,
            LogLevel.INFO,
            "Session verified",
            {"session_id": session.id, "nickname": nickname},
        )

    async def _handle_create_post(self, job: Job, payload: CreatePostPayload) -> None:
        session = self._resolve_session(job, payload.account_id)
        profile_dir = session.profile_dir

        async with self.pool.client(profile_dir, headed=self._headed(job)) as client:
            await self._ensure_authenticated(job, client, session)

            self.jobs.add_log(
                job.id,
                LogLevel.INFO,
                "Publishing article",
                {
                    "cafe_id": payload.cafe_id,
                    "board_id": payload.board_id,
                    "title": payload.title,
                    "images": len(payload.image_paths),
                },
            )
            result = await client.create_post(
                PostDraft(
                    cafe_id=payload.cafe_id,
                    board_id=payload.board_id,
                    title=payload.title,
                    content=payload.content,
                    image_paths=list(payload.image_paths),
                    price=payload.price,
                    trade_method=payload.trade_method,
                    trade_location=payload.trade_location,
                )
            )

            if not result.success:
                screenshot_path = None
                with non_critical("publish failure screenshot", job_id=job.id):
                    screenshot_path = await self.pool.save_screenshot(profile_dir, f"publish-failed-{job.id}")
                with non_critical("publish failure html", job_id=job.id):
                    await self.pool.save_html_snapshot(profile_dir, f"publish-failed-{job.id}")

                error = JobError(result.error or "Publish failed", result.error_code or ErrorCode.PUBLISH_FAILED)
                error.screenshot_path = screenshot_path
                raise error

            job.payload_json = {
                **(job.payload_json or {}),
                "resultUrl": result.article_url,
                "articleId": result.article_id,
            }

            if result.article_id:
                with non_critical("managed post upsert", job_id=job.id):
                    with self.db.begin_nested():
                        self.posts.upsert(
                            user_id=job.user_id,
                            cafe_id=payload.cafe_id,
                            article_id=result.article_id,
                            article_url=result.article_url or "",
                            title=payload.title,
                            board_id=payload.board_id,
                        )

            await self.pool.save_context(profile_dir)

        self.jobs.add_log(
            job.id,
            LogLevel.INFO,
            "Article published",
            {"article_url": result.article_url, "article_id": result.article_id},
        )

    async def _handle_sync_posts(self, job: Job, payload: SyncPostsPayload) -> None:
        if not payload.cafe_id:
            self.jobs.add_log(job.id, LogLevel.WARN, "No cafe_id in payload, nothing to sync")
            return

        session = self._resolve_session(job, payload.account_id)

        async with self.pool.client(session.profile_dir, headed=self._headed(job)) as client:
            await self._ensure_authenticated(job, client, session)
            remote_posts = await client.sync_my_posts(payload.cafe_id)

        created = 0
        for remote in remote_posts:
            _, is_new = self.posts.upsert(
                user_id=job.user_id,
                cafe_id=remote.cafe_id,
                article_id=remote.article_id,
                article_url=remote.article_url,
                title=remote.title,
                board_id=remote.board_id or None,
            )
            created += int(is_new)

        self.jobs.add_log(
            job.id,
            LogLevel.INFO,
            f"Synced {len(remote_posts)} posts",
            {"cafe_id": payload.cafe_id, "created": created},
        )

    async def _handle_delete_post(self, job: Job, payload: DeletePostPayload) -> None:
        # TODO: drive the DELETE_BUTTON / DELETE_CONFIRM flow and mark the ManagedPost DELETED
        self.jobs.add_log(
            job.id,
            LogLevel.WARN,
            "DELETE_POST is not supported by the worker yet; nothing was deleted",
            payload.model_dump(exclude_none=True),
        )

