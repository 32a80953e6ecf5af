"""
ORM -> plain dict conversion.

Cached values are JSON, so everything returned here is JSON-ready.
Related objects are serialised with the same field tuples the query
plan loaded (``queries.PROJECTIONS``), never more.
"""
from datetime import date, datetime
from enum import Enum
from typing import Any, Sequence

from newsdesk.models import Article, Comment
from newsdesk.schemas import DetailLevel
from newsdesk.services.queries import COMMENT_FIELDS, COMMENT_USER_FIELDS, LATEST_FIELDS, PROJECTIONS


def _plain(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def pick(obj, fields: Sequence[str]) -> dict | None:
    if obj is None:
        return None
    return {f: _plain(getattr(obj, f)) for f in fields}


_ARTICLE_SUMMARY_FIELDS = (
    "id",
    "title",
    "slug",
    "excerpt",
    "type",
    "status",
    "editorial_status",
    "published_at",
    "is_featured",
    "is_breaking",
    "is_editors_pick",
    "is_sponsored",
    "is_premium",
    "views_count",
    "shares_count",
    "likes_count",
    "comments_count",
    "bookmarks_count",
    "engagement_score",
    "reading_time",
    "author_id",
    "category_id",
    "created_at",
)

_ARTICLE_FULL_FIELDS = _ARTICLE_SUMMARY_FIELDS + (
    "content",
    "language",
    "allow_comments",
    "engagement_rate",
    "editor_id",
    "expires_at",
    "submitted_at",
    "featured_at",
    "updated_at",
)


def article_to_dict(article: Article, level: DetailLevel = DetailLevel.SUMMARY) -> dict:
    """Serialise an Article with the relations loaded for *level*."""
    shape = PROJECTIONS[level]
    fields = _ARTICLE_SUMMARY_FIELDS if level == DetailLevel.SUMMARY else _ARTICLE_FULL_FIELDS
    data = pick(article, fields)
    data["author"] = pick(article.author, shape.author)
    data["category"] = pick(article.category, shape.category)
    data["tags"] = [pick(tag, shape.tags) for tag in article.tags]
    if shape.editor:
        data["editor"] = pick(article.editor, shape.editor)
    if shape.category_parent and article.category is not None:
        data["category"]["parent"] = pick(article.category.parent, shape.category_parent)
    return data


def comment_to_dict(comment: Comment, with_replies: bool = False) -> dict:
    data = pick(comment, COMMENT_FIELDS)
    data["status"] = _plain(comment.status)
    data["user"] = pick(comment.user, COMMENT_USER_FIELDS)
    if with_replies:
        data["replies"] = [comment_to_dict(reply) for reply in comment.replies]
    return data


def latest_row_to_dict(row) -> dict:
    return {f: _plain(getattr(row, f)) for f in LATEST_FIELDS}
