"""Local mirror of articles published on cafes."""

from typing import Optional

from sqlalchemy.orm import Session as DBSession

from cafe_core.domain.models import ManagedPost, PostStatus, utcnow


class ManagedPostService:
    """Service for ManagedPost rows, keyed by (cafe_id, article_id)."""

    def __init__(self, db: DBSession):
        self.db = db

    def get(self, cafe_id: str, article_id: str) -> Optional[ManagedPost]:
        return (
            self.db.query(ManagedPost)
            .filter(ManagedPost.cafe_id == cafe_id, ManagedPost.article_id == article_id)
            .first()
        )

    def upsert(
        self,
        user_id: int,
        cafe_id: str,
        article_id: str,
        article_url: str,
        title: str,
        board_id: Optional[str] = None,
    ) -> tuple[ManagedPost, bool]:
        """Insert or refresh a post; a post seen on the site is ACTIVE again.

        Returns:
            Tuple of (post, created).
        """
        now = utcnow()
        post = self.get(cafe_id, article_id)
        created = post is None

        if created:
            post = ManagedPost(
                user_id=user_id,
                cafe_id=cafe_id,
                article_id=article_id,
                board_id=board_id or "",
                created_at_remote=now,
            )
            self.db.add(post)

        post.article_url = article_url
        post.title = title or post.title or ""
        if board_id:
            post.board_id = board_id
        post.status = PostStatus.ACTIVE
        post.deleted_at = None
        post.last_synced_at = now

        self.db.flush()
        return post, created
