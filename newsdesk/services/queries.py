"""
Query composer: turns caller intent into SQLAlchemy statements.

Nothing here touches a session.  Every ``plan_*`` function returns a
``QueryPlan`` (or ``AnalyticsPlan``) describing *what* to fetch: filter
predicates, ordering, pagination and the eager-loading shape.  The read
service decides whether to execute it or serve a cached result.

Filters are applied by an explicit, ordered table of predicate
transformers (``LISTING_FILTERS``, ``SEARCH_FILTERS``, ``SCOPED_OPTIONS``).
Each transformer is ``(statement, value) -> statement`` and runs only when
its option is set, so filters compose independently.

Eager loading uses ``selectinload(...).load_only(...)`` with the column
sets in ``PROJECTIONS``; the serializers read exactly the same sets, so a
serializer never touches a column the plan did not load.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Sequence

from sqlalchemy import Select, and_, asc, case, desc, func, or_, select
from sqlalchemy.orm import load_only, selectinload

from newsdesk.config import settings
from newsdesk.models import (
    Article,
    ArticleStatus,
    Category,
    Comment,
    CommentStatus,
    EditorialStatus,
    Tag,
    User,
)
from newsdesk.schemas import DetailLevel, ListingFilters, ListingSort, ScopedOptions, SearchFilters, SearchSort

LIKE_ESCAPE = "\\"


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class QueryPlan:
    """
    A fully specified read.

    ``count_statement`` is present for paginated plans.  ``empty`` marks a
    plan that is known to match nothing; executing it must not hit the
    database.
    """

    statement: Select | None
    level: DetailLevel = DetailLevel.SUMMARY
    count_statement: Select | None = None
    page: int = 1
    page_size: int | None = None
    empty: bool = False


@dataclass(frozen=True)
class AnalyticsPlan:
    from_time: datetime
    to_time: datetime
    totals: Select
    top_categories: Select
    top_authors: Select
    daily: Select


# ---------------------------------------------------------------------------
# Projections (eager-fetch field subsets per detail level)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Projection:
    author: tuple[str, ...]
    category: tuple[str, ...]
    tags: tuple[str, ...]
    editor: tuple[str, ...] = ()
    category_parent: tuple[str, ...] = ()


_AUTHOR_MIN = ("id", "name", "username", "avatar")
_CATEGORY_MIN = ("id", "name", "slug", "color")
_TAG_MIN = ("id", "name", "slug", "color")

PROJECTIONS: dict[DetailLevel, Projection] = {
    DetailLevel.SUMMARY: Projection(author=_AUTHOR_MIN, category=_CATEGORY_MIN, tags=_TAG_MIN),
    DetailLevel.FULL: Projection(
        author=_AUTHOR_MIN + ("email", "bio"),
        category=_CATEGORY_MIN + ("description",),
        tags=_TAG_MIN + ("description",),
    ),
    DetailLevel.DETAIL: Projection(
        author=_AUTHOR_MIN + ("email", "bio", "created_at"),
        category=_CATEGORY_MIN + ("description", "parent_id"),
        tags=_TAG_MIN + ("description",),
        editor=_AUTHOR_MIN,
        category_parent=("id", "name", "slug"),
    ),
}

COMMENT_FIELDS = ("id", "content", "author_name", "user_id", "parent_id", "created_at")
COMMENT_USER_FIELDS = _AUTHOR_MIN
LATEST_FIELDS = ("id", "title", "slug", "excerpt", "published_at")


def _columns(model, fields: Sequence[str]) -> list:
    return [getattr(model, f) for f in fields]


def eager_options(level: DetailLevel) -> list:
    """Loader options for *level*."""
    shape = PROJECTIONS[level]
    category = selectinload(Article.category).load_only(*_columns(Category, shape.category))
    if shape.category_parent:
        category = selectinload(Article.category).options(
            load_only(*_columns(Category, shape.category)),
            selectinload(Category.parent).load_only(*_columns(Category, shape.category_parent)),
        )
    options = [
        selectinload(Article.author).load_only(*_columns(User, shape.author)),
        category,
        selectinload(Article.tags).load_only(*_columns(Tag, shape.tags)),
    ]
    if shape.editor:
        options.append(selectinload(Article.editor).load_only(*_columns(User, shape.editor)))
    return options


def _select_articles(level: DetailLevel = DetailLevel.SUMMARY) -> Select:
    return (
        select(Article)
        .options(*eager_options(level))
        .execution_options(populate_existing=True)
    )


# ---------------------------------------------------------------------------
# Scopes
# ---------------------------------------------------------------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def published_condition(now: datetime):
    """Publicly visible: published, already live, and not expired."""
    return and_(
        Article.status == ArticleStatus.PUBLISHED,
        Article.published_at.is_not(None),
        Article.published_at <= now,
        or_(Article.expires_at.is_(None), Article.expires_at > now),
    )


def scheduled_condition(now: datetime):
    return and_(Article.status == ArticleStatus.SCHEDULED, Article.published_at > now)


def published(stmt: Select, now: datetime) -> Select:
    return stmt.where(published_condition(now))


# ---------------------------------------------------------------------------
# Predicate transformers
# ---------------------------------------------------------------------------

Transformer = Callable[[Select, Any], Select]


def by_category(stmt: Select, category_id: int) -> Select:
    return stmt.where(Article.category_id == category_id)


def by_tag(stmt: Select, tag_id: int) -> Select:
    return stmt.where(Article.tags.any(Tag.id == tag_id))


def by_tag_slug(stmt: Select, slug: str) -> Select:
    return stmt.where(Article.tags.any(Tag.slug == slug))


def by_tag_ids_condition(tag_ids: Sequence[int]):
    return Article.tags.any(Tag.id.in_(tag_ids))


def by_tag_ids(stmt: Select, tag_ids: Sequence[int]) -> Select:
    return stmt.where(by_tag_ids_condition(tag_ids))


def by_author(stmt: Select, author_id: int) -> Select:
    return stmt.where(Article.author_id == author_id)


def featured(stmt: Select, _: bool) -> Select:
    return stmt.where(Article.is_featured.is_(True))


def breaking(stmt: Select, _: bool) -> Select:
    return stmt.where(Article.is_breaking.is_(True))


def recent(stmt: Select, days: int, now: datetime | None = None) -> Select:
    now = now or utcnow()
    return stmt.where(Article.published_at >= now - timedelta(days=days))


def by_type(stmt: Select, article_type) -> Select:
    return stmt.where(Article.type == article_type)


def published_from(stmt: Select, date_from: datetime) -> Select:
    return stmt.where(Article.published_at >= date_from)


def published_to(stmt: Select, date_to: datetime) -> Select:
    return stmt.where(Article.published_at <= date_to)


LISTING_FILTERS: tuple[tuple[str, Transformer], ...] = (
    ("category", by_category),
    ("tag_id", by_tag),
    ("tag", by_tag_slug),
    ("author", by_author),
    ("featured", featured),
    ("breaking", breaking),
    ("recent_days", recent),
    ("type", by_type),
)

SEARCH_FILTERS: tuple[tuple[str, Transformer], ...] = (
    ("category_id", by_category),
    ("tag_ids", by_tag_ids),
    ("author_id", by_author),
    ("date_from", published_from),
    ("date_to", published_to),
)

SCOPED_OPTIONS: tuple[tuple[str, Transformer], ...] = (
    ("featured", featured),
    ("recent_days", recent),
)


def apply_filters(stmt: Select, options, transformers: Sequence[tuple[str, Transformer]]) -> Select:
    """Run each transformer whose option is set on *options*, in table order."""
    for name, transform in transformers:
        value = getattr(options, name, None)
        if value is None or value is False:
            continue
        stmt = transform(stmt, value)
    return stmt


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------

def listing_trending_score():
    return Article.views_count + Article.comments_count * settings.LISTING_TRENDING_COMMENTS_WEIGHT


def trending_score():
    """Composite ranking used by the trending view; weights come from settings."""
    return (
        Article.views_count * settings.TRENDING_VIEWS_WEIGHT
        + Article.comments_count * settings.TRENDING_COMMENTS_WEIGHT
        + Article.shares_count * settings.TRENDING_SHARES_WEIGHT
    )


def listing_order(sort: ListingSort) -> list:
    if sort == ListingSort.POPULAR:
        return [Article.views_count.desc(), Article.published_at.desc(), Article.id.desc()]
    if sort == ListingSort.TRENDING:
        return [listing_trending_score().desc(), Article.published_at.desc(), Article.id.desc()]
    if sort == ListingSort.OLDEST:
        return [Article.published_at.asc(), Article.id.asc()]
    return [Article.published_at.desc(), Article.id.desc()]


_SEARCH_COLUMNS = {
    SearchSort.PUBLISHED_AT: Article.published_at,
    SearchSort.VIEWS_COUNT: Article.views_count,
    SearchSort.COMMENTS_COUNT: Article.comments_count,
    SearchSort.TITLE: Article.title,
}


# ---------------------------------------------------------------------------
# Search helpers
# ---------------------------------------------------------------------------

def escape_like(text: str) -> str:
    """Escape LIKE metacharacters so *text* only ever matches literally."""
    return (
        text.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )


def _matches(column, pattern: str):
    return column.ilike(pattern, escape=LIKE_ESCAPE)


def relevance_score(query_text: str):
    """3 for a title hit, else 2 for an excerpt hit, else 1 for content, else 0."""
    pattern = f"%{escape_like(query_text)}%"
    return case(
        (_matches(Article.title, pattern), 3),
        (_matches(Article.excerpt, pattern), 2),
        (_matches(Article.content, pattern), 1),
        else_=0,
    )


# ---------------------------------------------------------------------------
# Pagination helpers
# ---------------------------------------------------------------------------

def clamp_page(page: int | None, page_size: int | None) -> tuple[int, int]:
    page = max(page or 1, 1)
    page_size = page_size or settings.DEFAULT_PAGE_SIZE
    return page, min(max(page_size, 1), settings.MAX_PAGE_SIZE)


def _paginate(stmt: Select, order: Sequence, page: int, page_size: int, level: DetailLevel) -> QueryPlan:
    count_statement = select(func.count()).select_from(stmt.order_by(None).subquery())
    statement = stmt.order_by(*order).offset((page - 1) * page_size).limit(page_size)
    return QueryPlan(
        statement=statement,
        level=level,
        count_statement=count_statement,
        page=page,
        page_size=page_size,
    )


# ---------------------------------------------------------------------------
# Single-article plans
# ---------------------------------------------------------------------------

def plan_by_id(article_id: int, level: DetailLevel = DetailLevel.SUMMARY) -> QueryPlan:
    stmt = _select_articles(level).where(Article.id == article_id)
    return QueryPlan(statement=stmt, level=level)


def plan_by_slug(slug: str, level: DetailLevel = DetailLevel.DETAIL) -> QueryPlan:
    stmt = _select_articles(level).where(Article.slug == slug)
    return QueryPlan(statement=stmt, level=level)


def plan_comments(article_id: int, level: DetailLevel) -> Select | None:
    """
    Comment thread for a single article.

    ``FULL``: latest approved comments.  ``DETAIL``: latest approved
    top-level comments with their approved replies (oldest first) and the
    commenting users.  ``SUMMARY`` loads no comments.
    """
    if level == DetailLevel.SUMMARY:
        return None
    stmt = (
        select(Comment)
        .where(Comment.article_id == article_id, Comment.status == CommentStatus.APPROVED)
        .options(selectinload(Comment.user).load_only(*_columns(User, COMMENT_USER_FIELDS)))
        .order_by(Comment.created_at.desc(), Comment.id.desc())
        .limit(settings.DETAIL_COMMENT_LIMIT)
        .execution_options(populate_existing=True)
    )
    if level == DetailLevel.DETAIL:
        stmt = stmt.where(Comment.parent_id.is_(None)).options(
            selectinload(
                Comment.replies.and_(Comment.status == CommentStatus.APPROVED)
            ).selectinload(Comment.user).load_only(*_columns(User, COMMENT_USER_FIELDS))
        )
    return stmt


# ---------------------------------------------------------------------------
# Listing plans
# ---------------------------------------------------------------------------

def plan_published_listing(
    filters: ListingFilters,
    page: int = 1,
    page_size: int | None = None,
    now: datetime | None = None,
) -> QueryPlan:
    now = now or utcnow()
    page, page_size = clamp_page(page, page_size)
    stmt = published(_select_articles(), now)
    stmt = apply_filters(stmt, filters, LISTING_FILTERS)
    return _paginate(stmt, listing_order(filters.sort), page, page_size, DetailLevel.SUMMARY)


def plan_scoped_listing(
    scope: str,
    scope_id: int,
    options: ScopedOptions,
    page: int = 1,
    page_size: int | None = None,
    now: datetime | None = None,
) -> QueryPlan:
    """Category / tag / author listings, newest first."""
    scope_filters = {"category": by_category, "tag": by_tag, "author": by_author}
    now = now or utcnow()
    page, page_size = clamp_page(page, page_size)
    stmt = scope_filters[scope](published(_select_articles(), now), scope_id)
    stmt = apply_filters(stmt, options, SCOPED_OPTIONS)
    return _paginate(stmt, listing_order(ListingSort.LATEST), page, page_size, DetailLevel.SUMMARY)


def plan_search(
    query_text: str | None,
    filters: SearchFilters,
    page: int = 1,
    page_size: int | None = None,
    now: datetime | None = None,
) -> QueryPlan:
    now = now or utcnow()
    page, page_size = clamp_page(page, page_size)
    if filters.tag_ids is not None and not filters.tag_ids:
        return QueryPlan(statement=None, page=page, page_size=page_size, empty=True)

    query_text = (query_text or "").strip()
    stmt = published(_select_articles(), now)
    if query_text:
        pattern = f"%{escape_like(query_text)}%"
        stmt = stmt.where(
            or_(
                _matches(Article.title, pattern),
                _matches(Article.content, pattern),
                _matches(Article.excerpt, pattern),
            )
        )
    stmt = apply_filters(stmt, filters, SEARCH_FILTERS)

    if filters.sort_by == SearchSort.RELEVANCE and query_text:
        order = [relevance_score(query_text).desc(), Article.published_at.desc(), Article.id.desc()]
    else:
        column = _SEARCH_COLUMNS.get(filters.sort_by, Article.published_at)
        direction = asc if filters.sort_direction == "asc" else desc
        order = [direction(column), direction(Article.id)]
    return _paginate(stmt, order, page, page_size, DetailLevel.SUMMARY)


def plan_featured(limit: int, now: datetime | None = None) -> QueryPlan:
    now = now or utcnow()
    stmt = (
        published(_select_articles(), now)
        .where(Article.is_featured.is_(True))
        .order_by(Article.featured_at.desc().nulls_last(), Article.published_at.desc(), Article.id.desc())
        .limit(limit)
    )
    return QueryPlan(statement=stmt)


def plan_related(
    article: Article,
    limit: int,
    tag_ids: Sequence[int] | None = None,
    now: datetime | None = None,
) -> QueryPlan:
    """
    Same-category or shared-tag candidates, excluding *article* itself.

    Same-category matches outrank tag-only matches; ties break on views,
    then recency.
    """
    now = now or utcnow()
    if tag_ids is None:
        tag_ids = [tag.id for tag in article.tags]
    same_category = Article.category_id == article.category_id
    match = or_(same_category, by_tag_ids_condition(tag_ids)) if tag_ids else same_category
    weight = case(
        (same_category, settings.RELATED_CATEGORY_WEIGHT),
        else_=settings.RELATED_TAG_WEIGHT,
    )
    stmt = (
        published(_select_articles(), now)
        .where(Article.id != article.id, match)
        .order_by(weight.desc(), Article.views_count.desc(), Article.published_at.desc(), Article.id.desc())
        .limit(limit)
    )
    return QueryPlan(statement=stmt)


def plan_trending(window_hours: int, limit: int, now: datetime | None = None) -> QueryPlan:
    now = now or utcnow()
    stmt = (
        published(_select_articles(), now)
        .where(Article.published_at >= now - timedelta(hours=window_hours))
        .order_by(trending_score().desc(), Article.published_at.desc(), Article.id.desc())
        .limit(limit)
    )
    return QueryPlan(statement=stmt)


def plan_popular(
    window_days: int,
    limit: int,
    category_id: int | None = None,
    now: datetime | None = None,
) -> QueryPlan:
    now = now or utcnow()
    stmt = published(_select_articles(), now).where(
        Article.published_at >= now - timedelta(days=window_days)
    )
    if category_id is not None:
        stmt = by_category(stmt, category_id)
    stmt = stmt.order_by(
        Article.views_count.desc(), Article.engagement_score.desc(), Article.id.desc()
    ).limit(limit)
    return QueryPlan(statement=stmt)


def plan_latest(limit: int, exclude_id: int | None = None, now: datetime | None = None) -> QueryPlan:
    """Minimal column projection for sidebars; rows, not entities."""
    now = now or utcnow()
    stmt = select(*_columns(Article, LATEST_FIELDS)).where(published_condition(now))
    if exclude_id is not None:
        stmt = stmt.where(Article.id != exclude_id)
    stmt = stmt.order_by(Article.published_at.desc(), Article.id.desc()).limit(limit)
    return QueryPlan(statement=stmt)


def plan_scheduled(now: datetime | None = None) -> QueryPlan:
    now = now or utcnow()
    stmt = (
        _select_articles()
        .where(scheduled_condition(now))
        .order_by(Article.published_at.asc(), Article.id.asc())
    )
    return QueryPlan(statement=stmt)


def plan_pending_review() -> QueryPlan:
    stmt = (
        _select_articles()
        .where(Article.editorial_status == EditorialStatus.PENDING_REVIEW)
        .order_by(Article.submitted_at.desc().nulls_last(), Article.id.desc())
    )
    return QueryPlan(statement=stmt)


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------

def _count_where(condition):
    return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)


def plan_status_counts(now: datetime | None = None) -> Select:
    now = now or utcnow()
    return select(
        func.count(Article.id).label("total"),
        _count_where(published_condition(now)).label("published"),
        _count_where(Article.editorial_status == EditorialStatus.DRAFT).label("draft"),
        _count_where(Article.editorial_status == EditorialStatus.PENDING_REVIEW).label("pending"),
        _count_where(scheduled_condition(now)).label("scheduled"),
        _count_where(Article.is_featured.is_(True)).label("featured"),
        _count_where(Article.is_breaking.is_(True)).label("breaking"),
    )


def plan_analytics_summary(
    from_time: datetime,
    to_time: datetime,
    top_n: int | None = None,
    now: datetime | None = None,
) -> AnalyticsPlan:
    """
    Totals over articles *created* in the window; rankings and the daily
    series over articles *published* in the window.
    """
    now = now or utcnow()
    top_n = top_n or settings.ANALYTICS_TOP_N
    created_in_window = Article.created_at.between(from_time, to_time)
    published_in_window = and_(
        published_condition(now), Article.published_at.between(from_time, to_time)
    )

    totals = select(
        func.count(Article.id).label("total_articles"),
        _count_where(published_condition(now)).label("published_articles"),
        _count_where(Article.editorial_status == EditorialStatus.DRAFT).label("draft_articles"),
        _count_where(scheduled_condition(now)).label("scheduled_articles"),
        func.coalesce(func.sum(Article.views_count), 0).label("total_views"),
        func.coalesce(func.sum(Article.shares_count), 0).label("total_shares"),
        func.coalesce(func.sum(Article.comments_count), 0).label("total_comments"),
        func.avg(Article.reading_time).label("average_reading_time"),
    ).where(created_in_window)

    article_count = func.count(Article.id).label("articles_count")
    total_views = func.coalesce(func.sum(Article.views_count), 0).label("total_views")

    top_categories = (
        select(Category.id, Category.name, Category.slug, article_count, total_views)
        .join(Article, Article.category_id == Category.id)
        .where(published_in_window)
        .group_by(Category.id, Category.name, Category.slug)
        .order_by(article_count.desc(), Category.id.asc())
        .limit(top_n)
    )
    top_authors = (
        select(User.id, User.name, User.username, article_count, total_views)
        .join(Article, Article.author_id == User.id)
        .where(published_in_window)
        .group_by(User.id, User.name, User.username)
        .order_by(article_count.desc(), User.id.asc())
        .limit(top_n)
    )

    day = func.date(Article.published_at)
    daily = (
        select(
            day.label("date"),
            func.count(Article.id).label("articles_count"),
            func.coalesce(func.sum(Article.views_count), 0).label("total_views"),
            func.coalesce(func.sum(Article.shares_count), 0).label("total_shares"),
            func.coalesce(func.sum(Article.comments_count), 0).label("total_comments"),
        )
        .where(published_in_window)
        .group_by(day)
        .order_by(day)
    )
    return AnalyticsPlan(from_time, to_time, totals, top_categories, top_authors, daily)
