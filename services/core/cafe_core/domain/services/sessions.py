"""Naver session and account state.

A session is ACTIVE only with last_verified_at set and no error message;
every transition here keeps that true.
"""

from typing import Optional

from sqlalchemy.orm import Session as DBSession

from cafe_core.domain.models import (
    AccountStatus,
    NaverAccount,
    NaverSession,
    SessionStatus,
    utcnow,
)
from cafe_core.observability import get_logger

logger = get_logger(__name__)

MAX_REASON_LENGTH = 2000


def _truncate(reason: Optional[str]) -> Optional[str]:
    if reason and len(reason) > MAX_REASON_LENGTH:
        return reason[: MAX_REASON_LENGTH - 3] + "..."
    return reason


class SessionService:
    """Service for NaverSession and NaverAccount updates."""

    def __init__(self, db: DBSession):
        self.db = db

    def get_session(self, session_id: int) -> Optional[NaverSession]:
        return self.db.query(NaverSession).filter(NaverSession.id == session_id).first()

    def get_account(self, account_id: int) -> Optional[NaverAccount]:
        return self.db.query(NaverAccount).filter(NaverAccount.id == account_id).first()

    def find_active_session(
        self,
        user_id: int,
        account_id: Optional[int] = None,
    ) -> Optional[NaverSession]:
        """Most recently verified ACTIVE session owned by a user.

        Args:
            user_id: Owner of the account.
            account_id: Restrict to one account when given.

        Returns:
            The session, or None if the user has no ACTIVE session.
        """
        query = (
            self.db.query(NaverSession)
            .join(NaverAccount, NaverSession.naver_account_id == NaverAccount.id)
            .filter(
                NaverAccount.user_id == user_id,
                NaverSession.status == SessionStatus.ACTIVE,
            )
        )
        if account_id is not None:
            query = query.filter(NaverAccount.id == account_id)

        return query.order_by(
            NaverSession.last_verified_at.desc(), NaverSession.id.desc()
        ).first()

    # -------------------------------------------------------------------------
    # Session transitions
    # -------------------------------------------------------------------------

    def mark_active(self, session: NaverSession, nickname: Optional[str] = None) -> None:
        session.status = SessionStatus.ACTIVE
        session.last_verified_at = utcnow()
        session.error_message = None
        session.error_code = None
        if nickname:
            session.naver_nickname = nickname
        self.db.flush()
        logger.info("Session active", session_id=session.id, nickname=nickname)

    def mark_expired(self, session: NaverSession, reason: str) -> None:
        session.status = SessionStatus.EXPIRED
        session.error_message = _truncate(reason)
        self.db.flush()
        logger.warning("Session expired", session_id=session.id, reason=reason)

    def mark_error(self, session: NaverSession, reason: str, code: Optional[str] = None) -> None:
        session.status = SessionStatus.ERROR
        session.error_message = _truncate(reason)
        session.error_code = code
        self.db.flush()
        logger.warning("Session error", session_id=session.id, reason=reason, error_code=code)

    # -------------------------------------------------------------------------
    # Account login bookkeeping
    # -------------------------------------------------------------------------

    def record_login_success(self, account: NaverAccount) -> None:
        account.status = AccountStatus.ACTIVE
        account.last_login_at = utcnow()
        account.last_login_status = "SUCCESS"
        account.last_login_error = None
        self.db.flush()

    def record_login_failure(self, account: NaverAccount, reason: str) -> None:
        account.status = AccountStatus.LOGIN_FAILED
        account.last_login_at = utcnow()
        account.last_login_status = "FAILED"
        account.last_login_error = _truncate(reason)
        self.db.flush()
        logger.warning("Account login failed", account_id=account.id, reason=reason)
