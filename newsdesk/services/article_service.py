"""
Article read service: every public read goes through the cache.

Design notes
------------
- Each function builds a plan with ``queries``, then hands a ``compute``
  coroutine to ``cache.get_or_compute`` so a miss runs the plan exactly
  once per process even when many requests arrive together.
- Values are plain JSON dicts; callers get a fresh copy and may mutate it.
- Every cached view carries the ``articles`` tag plus one or more narrow
  tags (see ``invalidation``), so any article write empties all of them.
- A missing article is ``None``; an empty or out-of-range page is a
  ``Page`` with no items.  The router decides what that means over HTTP.
"""
import math
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import load_only, selectinload

from newsdesk.cache import CacheKeys, cache
from newsdesk.config import settings
from newsdesk.models import Article, Tag
from newsdesk.schemas import (
    AnalyticsSummary,
    DailyStat,
    DetailLevel,
    ListingFilters,
    Page,
    RankedEntity,
    ScopedOptions,
    SearchFilters,
    StatusCounts,
)
from newsdesk.services import queries
from newsdesk.services.invalidation import (
    ANALYTICS,
    ARTICLES,
    AUTHORS,
    CATEGORIES,
    EDITORIAL,
    FEATURED,
    LATEST,
    LISTINGS,
    POPULAR,
    RELATED,
    SEARCH,
    STATS,
    TAGS,
    TRENDING,
)
from newsdesk.services.serializers import article_to_dict, comment_to_dict, latest_row_to_dict

# ---------------------------------------------------------------------------
# Plan execution (uncached)
# ---------------------------------------------------------------------------


async def load_article(db: AsyncSession, plan: queries.QueryPlan) -> dict | None:
    """Run a single-article plan, attaching comments for FULL/DETAIL."""
    result = await db.execute(plan.statement)
    article = result.scalar_one_or_none()
    if article is None:
        return None
    data = article_to_dict(article, plan.level)
    comments_stmt = queries.plan_comments(article.id, plan.level)
    if comments_stmt is not None:
        comments = (await db.execute(comments_stmt)).scalars().all()
        with_replies = plan.level == DetailLevel.DETAIL
        data["comments"] = [comment_to_dict(c, with_replies=with_replies) for c in comments]
    return data


async def load_list(db: AsyncSession, plan: queries.QueryPlan) -> list[dict]:
    if plan.empty:
        return []
    result = await db.execute(plan.statement)
    return [article_to_dict(a, plan.level) for a in result.scalars().all()]


async def load_page(db: AsyncSession, plan: queries.QueryPlan) -> dict:
    """
    Two statements on a miss: the COUNT, then the page of rows.  An empty
    plan answers without touching the database.
    """
    if plan.empty:
        total, items = 0, []
    else:
        total = (await db.execute(plan.count_statement)).scalar_one()
        items = await load_list(db, plan)
    return Page(
        items=items,
        total=total,
        page=plan.page,
        page_size=plan.page_size,
        pages=math.ceil(total / plan.page_size) if total > 0 else 0,
    ).model_dump()


# ---------------------------------------------------------------------------
# Single article
# ---------------------------------------------------------------------------


async def find_by_id(
    db: AsyncSession, article_id: int, level: DetailLevel = DetailLevel.SUMMARY
) -> dict | None:
    plan = queries.plan_by_id(article_id, level)
    return await cache.get_or_compute(
        CacheKeys.article(article_id, level.value),
        {ARTICLES},
        settings.CACHE_TTL_ARTICLE,
        lambda: load_article(db, plan),
    )


async def find_by_slug(
    db: AsyncSession, slug: str, level: DetailLevel = DetailLevel.DETAIL
) -> dict | None:
    plan = queries.plan_by_slug(slug, level)
    return await cache.get_or_compute(
        CacheKeys.article_slug(slug, level.value),
        {ARTICLES},
        settings.CACHE_TTL_ARTICLE,
        lambda: load_article(db, plan),
    )


# ---------------------------------------------------------------------------
# Paginated listings
# ---------------------------------------------------------------------------


async def list_published(
    db: AsyncSession,
    filters: ListingFilters | None = None,
    page: int = 1,
    page_size: int | None = None,
) -> dict:
    filters = filters or ListingFilters()
    plan = queries.plan_published_listing(filters, page, page_size)
    return await cache.get_or_compute(
        CacheKeys.listing(filters.model_dump(mode="json"), plan.page, plan.page_size),
        {ARTICLES, LISTINGS},
        settings.CACHE_TTL_LISTING,
        lambda: load_page(db, plan),
    )


async def _list_scoped(
    db: AsyncSession,
    scope: str,
    scope_id: int,
    options: ScopedOptions | None,
    page: int,
    page_size: int | None,
    tags: set[str],
    ttl: int,
) -> dict:
    options = options or ScopedOptions()
    plan = queries.plan_scoped_listing(scope, scope_id, options, page, page_size)
    return await cache.get_or_compute(
        CacheKeys.scoped(scope, scope_id, options.model_dump(mode="json"), plan.page, plan.page_size),
        {ARTICLES, *tags},
        ttl,
        lambda: load_page(db, plan),
    )


async def list_by_category(
    db: AsyncSession,
    category_id: int,
    options: ScopedOptions | None = None,
    page: int = 1,
    page_size: int | None = None,
) -> dict:
    return await _list_scoped(
        db, "category", category_id, options, page, page_size, {CATEGORIES}, settings.CACHE_TTL_CATEGORY
    )


async def list_by_tag(
    db: AsyncSession,
    tag_id: int,
    options: ScopedOptions | None = None,
    page: int = 1,
    page_size: int | None = None,
) -> dict:
    return await _list_scoped(
        db, "tag", tag_id, options, page, page_size, {TAGS}, settings.CACHE_TTL_TAG
    )


async def list_by_author(
    db: AsyncSession,
    author_id: int,
    options: ScopedOptions | None = None,
    page: int = 1,
    page_size: int | None = None,
) -> dict:
    return await _list_scoped(
        db, "author", author_id, options, page, page_size, {AUTHORS}, settings.CACHE_TTL_AUTHOR
    )


async def search(
    db: AsyncSession,
    query_text: str | None,
    filters: SearchFilters | None = None,
    page: int = 1,
    page_size: int | None = None,
) -> dict:
    """
    Free-text search over title, content and excerpt.  ``%`` and ``_`` in
    *query_text* match literally.
    """
    filters = filters or SearchFilters()
    plan = queries.plan_search(query_text, filters, page, page_size)
    key_filters = {"q": (query_text or "").strip(), **filters.model_dump(mode="json")}
    return await cache.get_or_compute(
        CacheKeys.search(key_filters, plan.page, plan.page_size),
        {ARTICLES, LISTINGS, SEARCH},
        settings.CACHE_TTL_SEARCH,
        lambda: load_page(db, plan),
    )


# ---------------------------------------------------------------------------
# Ranked lists
# ---------------------------------------------------------------------------


async def list_featured(db: AsyncSession, limit: int | None = None) -> list[dict]:
    limit = limit or settings.FEATURED_LIMIT
    plan = queries.plan_featured(limit)
    return await cache.get_or_compute(
        CacheKeys.featured(limit),
        {ARTICLES, FEATURED},
        settings.CACHE_TTL_FEATURED,
        lambda: load_list(db, plan),
    )


async def list_trending(
    db: AsyncSession, hours: int | None = None, limit: int | None = None
) -> list[dict]:
    hours = hours or settings.TRENDING_HOURS
    limit = limit or settings.TRENDING_LIMIT
    plan = queries.plan_trending(hours, limit)
    return await cache.get_or_compute(
        CacheKeys.trending(hours, limit),
        {ARTICLES, TRENDING},
        settings.CACHE_TTL_TRENDING,
        lambda: load_list(db, plan),
    )


async def list_popular(
    db: AsyncSession, days: int | None = None, limit: int | None = None
) -> list[dict]:
    days = days or settings.POPULAR_DAYS
    limit = limit or settings.POPULAR_LIMIT
    plan = queries.plan_popular(days, limit)
    return await cache.get_or_compute(
        CacheKeys.popular(days, limit),
        {ARTICLES, POPULAR},
        settings.CACHE_TTL_POPULAR,
        lambda: load_list(db, plan),
    )


async def list_popular_in_category(
    db: AsyncSession, category_id: int, days: int | None = None, limit: int | None = None
) -> list[dict]:
    days = days or settings.POPULAR_DAYS
    limit = limit or settings.POPULAR_LIMIT
    plan = queries.plan_popular(days, limit, category_id=category_id)
    return await cache.get_or_compute(
        CacheKeys.popular_in_category(category_id, days, limit),
        {ARTICLES, POPULAR, CATEGORIES},
        settings.CACHE_TTL_POPULAR,
        lambda: load_list(db, plan),
    )


async def _related(db: AsyncSession, article_id: int, limit: int) -> list[dict]:
    source_q = (
        select(Article)
        .where(Article.id == article_id)
        .options(
            load_only(Article.id, Article.category_id),
            selectinload(Article.tags).load_only(Tag.id),
        )
        .execution_options(populate_existing=True)
    )
    source = (await db.execute(source_q)).scalar_one_or_none()
    if source is None:
        return []
    return await load_list(db, queries.plan_related(source, limit))


async def list_related(db: AsyncSession, article_id: int, limit: int | None = None) -> list[dict]:
    """Articles sharing the category or a tag with *article_id*.  Empty when it does not exist."""
    limit = limit or settings.RELATED_LIMIT
    return await cache.get_or_compute(
        CacheKeys.related(article_id, limit),
        {ARTICLES, RELATED},
        settings.CACHE_TTL_RELATED,
        lambda: _related(db, article_id, limit),
    )


async def _latest(db: AsyncSession, plan: queries.QueryPlan) -> list[dict]:
    result = await db.execute(plan.statement)
    return [latest_row_to_dict(row) for row in result.all()]


async def list_latest(
    db: AsyncSession, limit: int | None = None, exclude_id: int | None = None
) -> list[dict]:
    limit = limit or settings.LATEST_LIMIT
    plan = queries.plan_latest(limit, exclude_id)
    return await cache.get_or_compute(
        CacheKeys.latest(limit, exclude_id),
        {ARTICLES, LATEST},
        settings.CACHE_TTL_LATEST,
        lambda: _latest(db, plan),
    )


# ---------------------------------------------------------------------------
# Editorial dashboards
# ---------------------------------------------------------------------------


async def list_scheduled(db: AsyncSession) -> list[dict]:
    plan = queries.plan_scheduled()
    return await cache.get_or_compute(
        CacheKeys.SCHEDULED,
        {ARTICLES, EDITORIAL},
        settings.CACHE_TTL_STATS,
        lambda: load_list(db, plan),
    )


async def list_pending_review(db: AsyncSession) -> list[dict]:
    plan = queries.plan_pending_review()
    return await cache.get_or_compute(
        CacheKeys.PENDING_REVIEW,
        {ARTICLES, EDITORIAL},
        settings.CACHE_TTL_STATS,
        lambda: load_list(db, plan),
    )


async def _status_counts(db: AsyncSession) -> dict:
    row = (await db.execute(queries.plan_status_counts())).one()
    return StatusCounts(**row._mapping).model_dump()


async def get_status_counts(db: AsyncSession) -> dict:
    return await cache.get_or_compute(
        CacheKeys.STATUS_COUNTS,
        {ARTICLES, STATS},
        settings.CACHE_TTL_STATS,
        lambda: _status_counts(db),
    )


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


async def _analytics(db: AsyncSession, plan: queries.AnalyticsPlan) -> dict:
    totals = (await db.execute(plan.totals)).one()._mapping
    categories = (await db.execute(plan.top_categories)).all()
    authors = (await db.execute(plan.top_authors)).all()
    daily = (await db.execute(plan.daily)).all()

    average = totals["average_reading_time"]
    summary = AnalyticsSummary(
        from_time=plan.from_time,
        to_time=plan.to_time,
        total_articles=totals["total_articles"],
        published_articles=totals["published_articles"],
        draft_articles=totals["draft_articles"],
        scheduled_articles=totals["scheduled_articles"],
        total_views=totals["total_views"],
        total_shares=totals["total_shares"],
        total_comments=totals["total_comments"],
        average_reading_time=round(float(average), 2) if average is not None else None,
        top_categories=[
            RankedEntity(id=r.id, name=r.name, slug=r.slug, articles_count=r.articles_count, total_views=r.total_views)
            for r in categories
        ],
        top_authors=[
            RankedEntity(
                id=r.id, name=r.name, username=r.username, articles_count=r.articles_count, total_views=r.total_views
            )
            for r in authors
        ],
        daily_stats=[
            DailyStat(
                date=str(r.date),
                articles_count=r.articles_count,
                total_views=r.total_views,
                total_shares=r.total_shares,
                total_comments=r.total_comments,
            )
            for r in daily
        ],
    )
    return summary.model_dump(mode="json")


async def get_analytics(
    db: AsyncSession,
    from_time: datetime | None = None,
    to_time: datetime | None = None,
) -> dict:
    """
    Aggregates over ``[from_time, to_time]``; defaults to the last
    ``ANALYTICS_DEFAULT_DAYS`` days.  The default upper bound is rounded up
    to the next minute so repeated dashboard loads share a cache entry.
    """
    if to_time is None:
        to_time = queries.utcnow().replace(second=0, microsecond=0) + timedelta(minutes=1)
    to_time = _as_utc(to_time)
    if from_time is None:
        from_time = to_time - timedelta(days=settings.ANALYTICS_DEFAULT_DAYS)
    from_time = _as_utc(from_time)

    plan = queries.plan_analytics_summary(from_time, to_time)
    return await cache.get_or_compute(
        CacheKeys.analytics(from_time, to_time),
        {ARTICLES, STATS, ANALYTICS},
        settings.CACHE_TTL_ANALYTICS,
        lambda: _analytics(db, plan),
    )
