"""
Write coordinator for articles.

Every mutation is one unit of work: the article row, its tag links and
its metadata rows are flushed inside a single transaction, committed
together, and only then are the cached views invalidated.  If any step
raises, the session is rolled back and the exception propagates, leaving
neither partial rows nor invalidated-but-unchanged caches behind.

Unlike the read path, these functions own their commit: invalidating
before the transaction is durable would let a concurrent miss cache the
pre-write state.
"""
import logging
from datetime import datetime, timezone

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from newsdesk.models import (
    Article,
    ArticleStatus,
    Comment,
    EditorialStatus,
    article_tags,
)
from newsdesk.schemas import ArticleCreate, ArticleUpdate, DetailLevel
from newsdesk.services import associations, queries
from newsdesk.services.article_service import load_article
from newsdesk.services.invalidation import invalidate_article, invalidate_articles

logger = logging.getLogger(__name__)

_DATETIME_FIELDS = ("published_at", "expires_at")


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


async def unique_slug(db: AsyncSession, text: str) -> str:
    """
    Slugify *text*; on collision append ``-2``, ``-3``, ... using the
    smallest free suffix.
    """
    base = associations.slugify(text) or "article"
    result = await db.execute(
        select(Article.slug).where(or_(Article.slug == base, Article.slug.like(f"{base}-%")))
    )
    taken = set(result.scalars().all())
    if base not in taken:
        return base
    n = 2
    while f"{base}-{n}" in taken:
        n += 1
    return f"{base}-{n}"


def _stamp_transitions(article: Article, changed: set[str], now: datetime) -> None:
    """Fill workflow timestamps implied by status and flag changes."""
    if "status" in changed and article.status == ArticleStatus.PUBLISHED:
        if article.published_at is None:
            article.published_at = now
        article.unpublished_at = None
    if "status" in changed and article.status == ArticleStatus.ARCHIVED:
        article.archived_at = now
    if "editorial_status" in changed and article.editorial_status == EditorialStatus.PENDING_REVIEW:
        article.submitted_at = now
    if "is_featured" in changed:
        article.featured_at = now if article.is_featured else None


async def _refetch(db: AsyncSession, article_id: int) -> dict | None:
    return await load_article(db, queries.plan_by_id(article_id, DetailLevel.FULL))


async def _apply_tags_and_meta(db: AsyncSession, article: Article, data) -> None:
    if data.tags is not None:
        tag_ids = await associations.resolve_tag_ids(db, data.tags)
        article.tags = await associations.load_tags(db, tag_ids)
    await db.flush()
    for key, value in (data.meta or {}).items():
        await associations.set_meta(db, article.id, key, value)


# ---------------------------------------------------------------------------
# Single-article writes
# ---------------------------------------------------------------------------


async def create_article(db: AsyncSession, data: ArticleCreate) -> dict:
    """
    Insert an article with its tags and metadata, then invalidate.

    Returns the FULL representation, read back from the database.
    """
    fields = data.model_dump(exclude={"slug", "tags", "meta"})
    for name in _DATETIME_FIELDS:
        fields[name] = _as_utc(fields[name])
    try:
        article = Article(slug=await unique_slug(db, data.slug or data.title), **fields)
        article.tags = []
        _stamp_transitions(article, set(fields), queries.utcnow())
        db.add(article)
        await _apply_tags_and_meta(db, article, data)
        await db.commit()
    except Exception:
        await db.rollback()
        logger.warning("Article create rolled back (title=%r)", data.title)
        raise

    logger.info("Article %d created (slug=%s)", article.id, article.slug)
    await invalidate_article(article.id, article.slug)
    return await _refetch(db, article.id)


async def update_article(db: AsyncSession, article_id: int, data: ArticleUpdate) -> dict | None:
    """
    Apply the fields explicitly set in *data*.  ``tags=[]`` clears the
    tag set; ``tags`` omitted leaves it alone.  The slug never changes.

    Returns None when the article does not exist.
    """
    result = await db.execute(
        select(Article)
        .where(Article.id == article_id)
        .options(selectinload(Article.tags))
        .execution_options(populate_existing=True)
    )
    article = result.scalar_one_or_none()
    if article is None:
        return None

    changes = data.model_dump(exclude_unset=True, exclude={"tags", "meta"})
    try:
        for name, value in changes.items():
            setattr(article, name, _as_utc(value) if name in _DATETIME_FIELDS else value)
        _stamp_transitions(article, set(changes), queries.utcnow())
        await _apply_tags_and_meta(db, article, data)
        await db.commit()
    except Exception:
        await db.rollback()
        logger.warning("Article %d update rolled back", article_id)
        raise

    await invalidate_article(article.id, article.slug)
    return await _refetch(db, article.id)


async def delete_article(db: AsyncSession, article_id: int) -> bool:
    """
    Remove an article with its tag links, comments and metadata.

    Cached views are dropped before the delete and again after the
    commit, so no entry referring to the row outlives it.
    Returns False when the article does not exist.
    """
    result = await db.execute(select(Article.slug).where(Article.id == article_id))
    slug = result.scalar_one_or_none()
    if slug is None:
        return False

    await invalidate_article(article_id, slug)
    try:
        await db.execute(delete(article_tags).where(article_tags.c.article_id == article_id))
        await db.execute(delete(Comment).where(Comment.article_id == article_id))
        await associations.delete_all_meta(db, article_id)
        deleted = await db.execute(delete(Article).where(Article.id == article_id))
        await db.commit()
    except Exception:
        await db.rollback()
        logger.warning("Article %d delete rolled back", article_id)
        raise

    await invalidate_article(article_id, slug)
    logger.info("Article %d deleted", article_id)
    return deleted.rowcount > 0


# ---------------------------------------------------------------------------
# Bulk writes
# ---------------------------------------------------------------------------


async def _bulk(db: AsyncSession, action: str, article_ids, precondition, values: dict) -> int:
    """
    One UPDATE over *article_ids* restricted by *precondition*; returns
    the number of rows actually changed.  Ids that fail the precondition
    or do not exist are skipped silently.
    """
    ids = sorted(set(article_ids or ()))
    if not ids:
        return 0
    try:
        result = await db.execute(
            update(Article)
            .where(Article.id.in_(ids), precondition)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except Exception:
        await db.rollback()
        logger.warning("Bulk %s rolled back (%d ids)", action, len(ids))
        raise

    affected = result.rowcount
    logger.info("Bulk %s: %d of %d article(s) changed", action, affected, len(ids))
    await invalidate_articles(ids)
    return affected


async def bulk_publish(db: AsyncSession, article_ids, actor_id: int | None = None) -> int:
    """Publish approved articles."""
    now = queries.utcnow()
    return await _bulk(
        db,
        "publish",
        article_ids,
        Article.editorial_status == EditorialStatus.APPROVED,
        {
            "status": ArticleStatus.PUBLISHED,
            "editorial_status": EditorialStatus.PUBLISHED,
            "published_at": now,
            "published_by": actor_id,
            "unpublished_at": None,
        },
    )


async def bulk_unpublish(db: AsyncSession, article_ids, actor_id: int | None = None) -> int:
    """Return published articles to draft."""
    return await _bulk(
        db,
        "unpublish",
        article_ids,
        Article.status == ArticleStatus.PUBLISHED,
        {
            "status": ArticleStatus.DRAFT,
            "editorial_status": EditorialStatus.DRAFT,
            "unpublished_at": queries.utcnow(),
        },
    )


async def bulk_feature(db: AsyncSession, article_ids, actor_id: int | None = None) -> int:
    return await _bulk(
        db,
        "feature",
        article_ids,
        Article.is_featured.is_(False),
        {"is_featured": True, "featured_at": queries.utcnow()},
    )


async def bulk_archive(db: AsyncSession, article_ids, actor_id: int | None = None) -> int:
    return await _bulk(
        db,
        "archive",
        article_ids,
        Article.status != ArticleStatus.ARCHIVED,
        {
            "status": ArticleStatus.ARCHIVED,
            "editorial_status": EditorialStatus.ARCHIVED,
            "archived_at": queries.utcnow(),
        },
    )


BULK_ACTIONS = {
    "publish": bulk_publish,
    "unpublish": bulk_unpublish,
    "feature": bulk_feature,
    "archive": bulk_archive,
}
