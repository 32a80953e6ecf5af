"""
Comment service: submission and moderation for the Article aggregate.

New comments start ``pending`` and are invisible to readers.  Only
moderation changes what the detail view shows, so only moderation
recounts ``Article.comments_count`` and invalidates the cached views.
"""
import logging

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from newsdesk.models import Article, Comment, CommentStatus
from newsdesk.schemas import CommentCreate
from newsdesk.services.invalidation import invalidate_article
from newsdesk.services.queries import utcnow
from newsdesk.services.serializers import pick

logger = logging.getLogger(__name__)

_COMMENT_OUT_FIELDS = ("id", "content", "author_name", "article_id", "user_id", "parent_id", "status", "created_at")


class CommentRejected(ValueError):
    """The article does not accept the comment (closed thread, foreign parent)."""


async def add_comment(
    db: AsyncSession,
    article_id: int,
    data: CommentCreate,
) -> dict | None:
    """
    Append a pending comment to *article_id*.

    Returns None when the article does not exist.  Raises
    ``CommentRejected`` when comments are closed or *parent_id* belongs to
    another article.
    """
    result = await db.execute(
        select(Article.id, Article.allow_comments).where(Article.id == article_id)
    )
    row = result.one_or_none()
    if row is None:
        return None
    if not row.allow_comments:
        raise CommentRejected("Comments are closed for this article")

    if data.parent_id is not None:
        parent_article = (
            await db.execute(select(Comment.article_id).where(Comment.id == data.parent_id))
        ).scalar_one_or_none()
        if parent_article != article_id:
            raise CommentRejected("Parent comment does not belong to this article")

    comment = Comment(
        content=data.content,
        author_name=data.author_name,
        user_id=data.user_id,
        parent_id=data.parent_id,
        article_id=article_id,
        status=CommentStatus.PENDING,
    )
    db.add(comment)
    await db.flush()
    return pick(comment, _COMMENT_OUT_FIELDS)


async def moderate_comment(db: AsyncSession, comment_id: int, status: CommentStatus) -> dict | None:
    """
    Set a comment's moderation status, recount the article's approved
    comments and invalidate.  Returns None when the comment does not exist.
    """
    comment = (
        await db.execute(
            select(Comment).where(Comment.id == comment_id).execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if comment is None:
        return None

    try:
        comment.status = status
        comment.approved_at = utcnow() if status == CommentStatus.APPROVED else None
        await db.flush()
        approved = (
            select(func.count(Comment.id))
            .where(Comment.article_id == comment.article_id, Comment.status == CommentStatus.APPROVED)
            .scalar_subquery()
        )
        await db.execute(
            update(Article)
            .where(Article.id == comment.article_id)
            .values(comments_count=approved)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except Exception:
        await db.rollback()
        logger.warning("Moderation of comment %d rolled back", comment_id)
        raise

    logger.info("Comment %d moderated: %s", comment_id, status.value)
    await invalidate_article(comment.article_id)
    return pick(comment, _COMMENT_OUT_FIELDS)
