from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from newsdesk.models import ArticleStatus, ArticleType, CommentStatus, EditorialStatus


# --- Detail levels ---

class DetailLevel(str, Enum):
    SUMMARY = "summary"
    FULL = "full"
    DETAIL = "detail"


# --- Listing / search filters ---

class ListingSort(str, Enum):
    LATEST = "latest"
    POPULAR = "popular"
    TRENDING = "trending"
    OLDEST = "oldest"


class ListingFilters(BaseModel):
    """
    Options recognised by the published listing.  Anything unset is a
    no-op; unknown keys are ignored.
    """

    category: int | None = None
    tag_id: int | None = None
    tag: str | None = None  # tag slug, matched verbatim even when all digits
    author: int | None = None
    featured: bool | None = None
    breaking: bool | None = None
    recent_days: int | None = Field(None, ge=1)
    type: ArticleType | None = None
    sort: ListingSort = ListingSort.LATEST

    model_config = ConfigDict(extra="ignore")

    @field_validator("featured", "breaking")
    @classmethod
    def _false_is_unset(cls, value: bool | None) -> bool | None:
        return value or None

    @field_validator("sort", mode="before")
    @classmethod
    def _unknown_sort_is_latest(cls, value: Any) -> Any:
        if value is None or value not in {s.value for s in ListingSort}:
            return ListingSort.LATEST
        return value


class SearchSort(str, Enum):
    RELEVANCE = "relevance"
    PUBLISHED_AT = "published_at"
    VIEWS_COUNT = "views_count"
    COMMENTS_COUNT = "comments_count"
    TITLE = "title"


class SearchFilters(BaseModel):
    category_id: int | None = None
    # None = no tag filter; [] = match nothing
    tag_ids: list[int] | None = None
    author_id: int | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    sort_by: SearchSort = SearchSort.PUBLISHED_AT
    sort_direction: str = Field("desc", pattern="^(asc|desc)$")

    model_config = ConfigDict(extra="ignore")

    @field_validator("tag_ids")
    @classmethod
    def _normalise_tag_ids(cls, value: list[int] | None) -> list[int] | None:
        if value is None:
            return None
        return sorted(set(value))

    @field_validator("date_from", "date_to")
    @classmethod
    def _as_utc(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @field_validator("sort_by", mode="before")
    @classmethod
    def _unknown_sort_is_date(cls, value: Any) -> Any:
        if value is None or value not in {s.value for s in SearchSort}:
            return SearchSort.PUBLISHED_AT
        return value


class ScopedOptions(BaseModel):
    """Extra options for category / tag / author listings."""

    featured: bool | None = None
    recent_days: int | None = Field(None, ge=1)

    model_config = ConfigDict(extra="ignore")

    @field_validator("featured")
    @classmethod
    def _false_is_unset(cls, value: bool | None) -> bool | None:
        return value or None


# --- Writes ---

class ArticleCreate(BaseModel):
    title: str = Field(max_length=300)
    content: str
    excerpt: str | None = None
    slug: str | None = Field(None, max_length=350)
    category_id: int
    author_id: int
    editor_id: int | None = None
    type: ArticleType = ArticleType.ARTICLE
    status: ArticleStatus = ArticleStatus.DRAFT
    editorial_status: EditorialStatus = EditorialStatus.DRAFT
    published_at: datetime | None = None
    expires_at: datetime | None = None
    reading_time: float | None = None
    language: str = Field("id", max_length=5)
    is_featured: bool = False
    is_breaking: bool = False
    is_editors_pick: bool = False
    is_sponsored: bool = False
    is_premium: bool = False
    allow_comments: bool = True
    # Each element is an existing tag id or a tag name to find-or-create.
    tags: list[int | str] | None = None
    meta: dict[str, Any] | None = None


class ArticleUpdate(BaseModel):
    title: str | None = Field(None, max_length=300)
    content: str | None = None
    excerpt: str | None = None
    category_id: int | None = None
    editor_id: int | None = None
    type: ArticleType | None = None
    status: ArticleStatus | None = None
    editorial_status: EditorialStatus | None = None
    published_at: datetime | None = None
    expires_at: datetime | None = None
    reading_time: float | None = None
    language: str | None = Field(None, max_length=5)
    is_featured: bool | None = None
    is_breaking: bool | None = None
    is_editors_pick: bool | None = None
    is_sponsored: bool | None = None
    is_premium: bool | None = None
    allow_comments: bool | None = None
    tags: list[int | str] | None = None
    meta: dict[str, Any] | None = None


class BulkRequest(BaseModel):
    article_ids: list[int] = Field(default_factory=list)
    actor_id: int | None = None


class BulkResult(BaseModel):
    action: str
    requested: int
    affected: int


# --- Categories ---

class CategoryCreate(BaseModel):
    name: str = Field(max_length=150)
    slug: str | None = Field(None, max_length=170)
    color: str = Field("#000000", pattern="^#[0-9A-Fa-f]{6}$")
    description: str | None = None
    parent_id: int | None = None
    sort_order: int = 0


class CategoryUpdate(BaseModel):
    name: str | None = Field(None, max_length=150)
    color: str | None = Field(None, pattern="^#[0-9A-Fa-f]{6}$")
    description: str | None = None
    parent_id: int | None = None
    sort_order: int | None = None
    is_active: bool | None = None


# --- Comments ---

class CommentCreate(BaseModel):
    content: str
    author_name: str | None = Field(None, max_length=150)
    user_id: int | None = None
    parent_id: int | None = None


class CommentModerate(BaseModel):
    status: CommentStatus


# --- Pagination ---

class Page(BaseModel):
    items: list
    total: int
    page: int
    page_size: int
    pages: int


# --- Analytics ---

class DailyStat(BaseModel):
    date: str
    articles_count: int
    total_views: int
    total_shares: int
    total_comments: int


class RankedEntity(BaseModel):
    id: int
    name: str
    slug: str | None = None
    username: str | None = None
    articles_count: int
    total_views: int


class AnalyticsSummary(BaseModel):
    from_time: datetime
    to_time: datetime
    total_articles: int
    published_articles: int
    draft_articles: int
    scheduled_articles: int
    total_views: int
    total_shares: int
    total_comments: int
    average_reading_time: float | None
    top_categories: list[RankedEntity] = []
    top_authors: list[RankedEntity] = []
    daily_stats: list[DailyStat] = []


class StatusCounts(BaseModel):
    total: int
    published: int
    draft: int
    pending: int
    scheduled: int
    featured: int
    breaking: int
