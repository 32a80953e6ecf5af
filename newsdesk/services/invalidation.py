"""
Invalidation coordinator.

Every cached read is stamped with coarse tags (``ARTICLE_WRITE_TAGS`` plus
a few narrow ones such as ``featured``).  Any article write removes the
article's exact lookup keys and then flushes every coarse tag, which
over-invalidates on purpose: after a write, the next read of any article
view is a miss.

Cache failures are logged by the cache manager and never fail the write.
"""
import logging

from newsdesk.cache import CacheKeys, cache
from newsdesk.schemas import DetailLevel

logger = logging.getLogger(__name__)

# Coarse tags
ARTICLES = "articles"
LISTINGS = "listings"
RELATED = "related"
TRENDING = "trending"
POPULAR = "popular"
LATEST = "latest"
STATS = "stats"
CATEGORIES = "categories"
TAGS = "tags"
AUTHORS = "authors"
# Narrow tags
FEATURED = "featured"
SEARCH = "search"
EDITORIAL = "editorial"
ANALYTICS = "analytics"

ARTICLE_WRITE_TAGS: frozenset[str] = frozenset(
    {
        ARTICLES,
        LISTINGS,
        RELATED,
        TRENDING,
        POPULAR,
        LATEST,
        STATS,
        CATEGORIES,
        TAGS,
        AUTHORS,
        FEATURED,
        SEARCH,
        EDITORIAL,
        ANALYTICS,
    }
)


def article_keys(article_id: int | None, slug: str | None) -> list[str]:
    """Exact lookup keys, every detail level, for one article."""
    keys: list[str] = []
    if article_id is not None:
        keys += [CacheKeys.article(article_id, level.value) for level in DetailLevel]
    if slug:
        keys += [CacheKeys.article_slug(slug, level.value) for level in DetailLevel]
    return keys


async def invalidate_article(article_id: int | None = None, slug: str | None = None) -> None:
    """Point-invalidate one article, then flush every article-derived view."""
    await cache.forget(*article_keys(article_id, slug))
    removed = await cache.invalidate(ARTICLE_WRITE_TAGS)
    logger.debug("Article write (id=%s) flushed %d cache entries", article_id, removed)


async def invalidate_articles(article_ids) -> None:
    """Bulk writes: same broad flush, point keys for every id."""
    keys: list[str] = []
    for article_id in article_ids:
        keys += article_keys(article_id, None)
    await cache.forget(*keys)
    removed = await cache.invalidate(ARTICLE_WRITE_TAGS)
    logger.debug("Bulk write over %d article(s) flushed %d cache entries", len(keys) // len(DetailLevel), removed)


async def invalidate_taxonomy() -> None:
    """Category edits change breadcrumbs and category listings."""
    await cache.invalidate({CATEGORIES, ARTICLES, LISTINGS, RELATED, ANALYTICS})
