from datetime import datetime

from fastapi import Query

from newsdesk.config import settings
from newsdesk.models import ArticleType
from newsdesk.schemas import ListingFilters, ScopedOptions, SearchFilters


class PaginationParams:
    """
    Reusable FastAPI dependency that parses and validates pagination
    query parameters.

    Usage in a router::

        @router.get("/articles")
        async def list_articles(pagination: PaginationParams = Depends()):
            ...

    Attributes
    ----------
    page:
        1-based page number (minimum 1).
    page_size:
        Number of items per page, clamped to ``settings.MAX_PAGE_SIZE``
        regardless of the value supplied by the caller.
    """

    def __init__(
        self,
        page: int = Query(1, ge=1, description="Page number (1-based)."),
        page_size: int = Query(
            settings.DEFAULT_PAGE_SIZE,
            ge=1,
            description="Number of items returned per page.",
        ),
    ) -> None:
        self.page = page
        self.page_size = min(page_size, settings.MAX_PAGE_SIZE)


def listing_filters(
    category: int | None = Query(None, description="Category id."),
    tag_id: int | None = Query(None, description="Tag id."),
    tag: str | None = Query(None, description="Tag slug."),
    author: int | None = Query(None, description="Author id."),
    featured: bool | None = Query(None),
    breaking: bool | None = Query(None),
    recent_days: int | None = Query(None, ge=1),
    type: ArticleType | None = Query(None, description="Article type."),
    sort: str | None = Query(None, description="latest, popular, trending or oldest."),
) -> ListingFilters:
    """Unknown ``sort`` values fall back to ``latest``."""
    return ListingFilters(
        category=category,
        tag_id=tag_id,
        tag=tag,
        author=author,
        featured=featured,
        breaking=breaking,
        recent_days=recent_days,
        type=type,
        sort=sort,
    )


def search_filters(
    category_id: int | None = Query(None),
    tag_ids: list[int] | None = Query(None),
    author_id: int | None = Query(None),
    date_from: datetime | None = Query(None),
    date_to: datetime | None = Query(None),
    sort_by: str | None = Query(None, description="relevance, published_at, views_count, comments_count or title."),
    sort_direction: str = Query("desc", pattern="^(asc|desc)$"),
) -> SearchFilters:
    return SearchFilters(
        category_id=category_id,
        tag_ids=tag_ids,
        author_id=author_id,
        date_from=date_from,
        date_to=date_to,
        sort_by=sort_by,
        sort_direction=sort_direction,
    )


def scoped_options(
    featured: bool | None = Query(None),
    recent_days: int | None = Query(None, ge=1),
) -> ScopedOptions:
    return ScopedOptions(featured=featured, recent_days=recent_days)
