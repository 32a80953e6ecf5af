"""
Query composer tests.

Plans are executed directly (``article_service.load_page`` / ``load_list``
bypass the cache) against seeded SQLite data, so each test checks the
SQL the plan describes rather than the caching around it.
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from newsdesk.models import Article, ArticleStatus, ArticleType, Category, EditorialStatus, Tag, User
from newsdesk.schemas import DetailLevel, ListingFilters, ScopedOptions, SearchFilters
from newsdesk.services import queries
from newsdesk.services.article_service import load_article, load_list, load_page
from newsdesk.services.associations import slugify


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _seed(db: AsyncSession):
    author = User(name="Rina Wijaya", username="rina", email="rina@example.com")
    other = User(name="Bayu Pratama", username="bayu", email="bayu@example.com")
    news = Category(name="News", slug="news")
    sport = Category(name="Sport", slug="sport")
    db.add_all([author, other, news, sport])
    await db.flush()
    return author, other, news, sport


def _article(author: User, category: Category, title: str, hours_ago: float = 1, tags=(), **fields) -> Article:
    values = {
        "title": title,
        "slug": slugify(title),
        "content": f"{title} body text",
        "author_id": author.id,
        "category_id": category.id,
        "status": ArticleStatus.PUBLISHED,
        "editorial_status": EditorialStatus.PUBLISHED,
        "published_at": queries.utcnow() - timedelta(hours=hours_ago),
    }
    values.update(fields)
    article = Article(**values)
    article.tags = list(tags)
    return article


async def _add(db: AsyncSession, *articles: Article) -> None:
    db.add_all(articles)
    await db.commit()


def _titles(items) -> list[str]:
    return [item["title"] for item in items]


# ---------------------------------------------------------------------------
# Published scope
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_published_scope_excludes_drafts_future_and_expired(db_session: AsyncSession):
    author, _, news, _ = await _seed(db_session)
    await _add(
        db_session,
        _article(author, news, "Live"),
        _article(author, news, "Draft", status=ArticleStatus.DRAFT, published_at=None),
        _article(author, news, "Future", hours_ago=-5),
        _article(author, news, "Expired", expires_at=queries.utcnow() - timedelta(minutes=1)),
        _article(author, news, "Not Yet Expired", expires_at=queries.utcnow() + timedelta(days=1)),
    )
    page = await load_page(db_session, queries.plan_published_listing(ListingFilters()))
    assert sorted(_titles(page["items"])) == ["Live", "Not Yet Expired"]
    assert page["total"] == 2


@pytest.mark.asyncio
async def test_scheduled_and_pending_review_scopes(db_session: AsyncSession):
    author, _, news, _ = await _seed(db_session)
    now = queries.utcnow()
    await _add(
        db_session,
        _article(author, news, "Later", status=ArticleStatus.SCHEDULED, published_at=now + timedelta(days=2)),
        _article(author, news, "Sooner", status=ArticleStatus.SCHEDULED, published_at=now + timedelta(hours=2)),
        _article(
            author, news, "Old Review", status=ArticleStatus.DRAFT, published_at=None,
            editorial_status=EditorialStatus.PENDING_REVIEW, submitted_at=now - timedelta(days=1),
        ),
        _article(
            author, news, "New Review", status=ArticleStatus.DRAFT, published_at=None,
            editorial_status=EditorialStatus.PENDING_REVIEW, submitted_at=now - timedelta(hours=1),
        ),
    )
    scheduled = await load_list(db_session, queries.plan_scheduled())
    assert _titles(scheduled) == ["Sooner", "Later"]
    pending = await load_list(db_session, queries.plan_pending_review())
    assert _titles(pending) == ["New Review", "Old Review"]


# ---------------------------------------------------------------------------
# Listing filters and sorts
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_popular_sort_is_non_increasing_across_pages(db_session: AsyncSession):
    author, _, news, _ = await _seed(db_session)
    views = [40, 5, 300, 40, 120, 0, 77]
    await _add(
        db_session,
        *[_article(author, news, f"Story {i}", hours_ago=i + 1, views_count=v) for i, v in enumerate(views)],
    )
    filters = ListingFilters(sort="popular")
    seen: list[int] = []
    for page in (1, 2, 3):
        result = await load_page(db_session, queries.plan_published_listing(filters, page, 3))
        seen += [item["views_count"] for item in result["items"]]
    assert seen == sorted(views, reverse=True)


@pytest.mark.asyncio
async def test_listing_sorts(db_session: AsyncSession):
    author, _, news, _ = await _seed(db_session)
    await _add(
        db_session,
        _article(author, news, "Old", hours_ago=30, views_count=10, comments_count=50),
        _article(author, news, "Mid", hours_ago=20, views_count=100, comments_count=0),
        _article(author, news, "New", hours_ago=10, views_count=60, comments_count=10),
    )

    async def titles(sort):
        page = await load_page(db_session, queries.plan_published_listing(ListingFilters(sort=sort)))
        return _titles(page["items"])

    assert await titles("latest") == ["New", "Mid", "Old"]
    assert await titles("oldest") == ["Old", "Mid", "New"]
    assert await titles("popular") == ["Mid", "New", "Old"]
    # views + comments * 2: Old=110, Mid=100, New=80
    assert await titles("trending") == ["Old", "Mid", "New"]
    assert await titles("no-such-sort") == ["New", "Mid", "Old"]


@pytest.mark.asyncio
async def test_listing_filters_compose(db_session: AsyncSession):
    author, other, news, sport = await _seed(db_session)
    politics = Tag(name="Politics", slug="politics")
    db_session.add(politics)
    await db_session.flush()
    await _add(
        db_session,
        _article(author, news, "Tagged Featured", tags=[politics], is_featured=True),
        _article(author, news, "Tagged Plain", tags=[politics]),
        _article(other, sport, "Sport Breaking", is_breaking=True, type=ArticleType.VIDEO),
        _article(author, news, "Ancient", hours_ago=24 * 40),
    )

    async def titles(**options):
        page = await load_page(db_session, queries.plan_published_listing(ListingFilters(**options)))
        return sorted(_titles(page["items"]))

    assert await titles(tag="politics") == ["Tagged Featured", "Tagged Plain"]
    assert await titles(tag_id=politics.id, featured=True) == ["Tagged Featured"]
    assert await titles(category=sport.id) == ["Sport Breaking"]
    assert await titles(author=other.id, breaking=True, type="video") == ["Sport Breaking"]
    assert "Ancient" not in await titles(recent_days=7)
    # featured=False is "unset", not "only non-featured".
    assert len(await titles(featured=False)) == 4


@pytest.mark.asyncio
async def test_out_of_range_page_is_empty(db_session: AsyncSession):
    author, _, news, _ = await _seed(db_session)
    await _add(db_session, _article(author, news, "Only One"))
    page = await load_page(db_session, queries.plan_published_listing(ListingFilters(), page=9, page_size=10))
    assert page["items"] == []
    assert page["total"] == 1
    assert page["page"] == 9


def test_page_size_is_clamped():
    assert queries.clamp_page(0, 0) == (1, 15)
    assert queries.clamp_page(2, 10_000) == (2, 100)


@pytest.mark.asyncio
async def test_scoped_listing_options(db_session: AsyncSession):
    author, other, news, _ = await _seed(db_session)
    await _add(
        db_session,
        _article(author, news, "Mine Featured", is_featured=True),
        _article(author, news, "Mine Old", hours_ago=24 * 10),
        _article(other, news, "Theirs"),
    )
    plan = queries.plan_scoped_listing("author", author.id, ScopedOptions())
    assert sorted(_titles((await load_page(db_session, plan))["items"])) == ["Mine Featured", "Mine Old"]
    plan = queries.plan_scoped_listing("author", author.id, ScopedOptions(recent_days=3))
    assert _titles((await load_page(db_session, plan))["items"]) == ["Mine Featured"]
    plan = queries.plan_scoped_listing("category", news.id, ScopedOptions(featured=True))
    assert _titles((await load_page(db_session, plan))["items"]) == ["Mine Featured"]


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_search_relevance_title_then_excerpt_then_content(db_session: AsyncSession):
    author, _, news, _ = await _seed(db_session)
    await _add(
        db_session,
        # Newest first in time, so relevance must beat recency.
        _article(author, news, "Catatan Harian", hours_ago=1, excerpt="Ringkas", content="Soal ekonomi lokal"),
        _article(author, news, "Berita Pagi", hours_ago=2, excerpt="Ekonomi tumbuh", content="Isi berita"),
        _article(author, news, "Ekonomi Hari Ini", hours_ago=3, excerpt="Ringkas", content="Isi berita"),
        _article(author, news, "Cuaca", hours_ago=4, excerpt="Cerah", content="Hujan"),
    )
    plan = queries.plan_search("Ekonomi", SearchFilters(sort_by="relevance"))
    page = await load_page(db_session, plan)
    assert _titles(page["items"]) == ["Ekonomi Hari Ini", "Berita Pagi", "Catatan Harian"]


@pytest.mark.asyncio
async def test_search_escapes_wildcards(db_session: AsyncSession):
    author, _, news, _ = await _seed(db_session)
    await _add(
        db_session,
        _article(author, news, "Discount", content="Prices cut by 50% today"),
        _article(author, news, "Stadium", content="50000 fans attended"),
        _article(author, news, "Snake", content="file_name and filename"),
    )
    page = await load_page(db_session, queries.plan_search("50%", SearchFilters()))
    assert _titles(page["items"]) == ["Discount"]
    page = await load_page(db_session, queries.plan_search("e_n", SearchFilters()))
    assert _titles(page["items"]) == ["Snake"]


@pytest.mark.asyncio
async def test_empty_query_lists_everything_by_requested_field(db_session: AsyncSession):
    author, _, news, _ = await _seed(db_session)
    await _add(
        db_session,
        _article(author, news, "Bravo", views_count=5),
        _article(author, news, "Alpha", views_count=9),
    )
    plan = queries.plan_search("", SearchFilters(sort_by="title", sort_direction="asc"))
    assert _titles((await load_page(db_session, plan))["items"]) == ["Alpha", "Bravo"]
    # Relevance without text falls back to the named column ordering.
    plan = queries.plan_search(None, SearchFilters(sort_by="relevance"))
    assert (await load_page(db_session, plan))["total"] == 2


@pytest.mark.asyncio
async def test_search_empty_tag_ids_matches_nothing(db_session: AsyncSession):
    author, _, news, _ = await _seed(db_session)
    await _add(db_session, _article(author, news, "Anything"))

    plan = queries.plan_search("", SearchFilters(tag_ids=[]))
    assert plan.empty
    assert await load_page(db_session, plan) == {
        "items": [], "total": 0, "page": 1, "page_size": 15, "pages": 0,
    }
    # None means no tag filter at all.
    plan = queries.plan_search("", SearchFilters(tag_ids=None))
    assert (await load_page(db_session, plan))["total"] == 1


@pytest.mark.asyncio
async def test_search_filters(db_session: AsyncSession):
    author, other, news, sport = await _seed(db_session)
    economy = Tag(name="Economy", slug="economy")
    db_session.add(economy)
    await db_session.flush()
    await _add(
        db_session,
        _article(author, news, "Market Rally", tags=[economy], hours_ago=2),
        _article(other, sport, "Match Report", hours_ago=48),
    )
    by_tags = SearchFilters(tag_ids=[economy.id, 999])
    assert _titles((await load_page(db_session, queries.plan_search(None, by_tags)))["items"]) == ["Market Rally"]
    by_author = SearchFilters(author_id=other.id)
    assert _titles((await load_page(db_session, queries.plan_search(None, by_author)))["items"]) == ["Match Report"]
    recent = SearchFilters(date_from=queries.utcnow() - timedelta(hours=12))
    assert _titles((await load_page(db_session, queries.plan_search(None, recent)))["items"]) == ["Market Rally"]


def test_search_dates_are_normalised_to_utc():
    naive = SearchFilters(date_from=datetime(2024, 5, 1, 8, 30))
    assert naive.date_from == datetime(2024, 5, 1, 8, 30, tzinfo=timezone.utc)

    jakarta = timezone(timedelta(hours=7))
    aware = SearchFilters(date_to=datetime(2024, 5, 1, 15, 0, tzinfo=jakarta))
    assert aware.date_to == datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)
    assert aware.date_to.tzinfo == timezone.utc


@pytest.mark.asyncio
async def test_all_digit_tag_slug_is_matched_as_slug(db_session: AsyncSession):
    author, _, news, _ = await _seed(db_session)
    election = Tag(name="2024", slug="2024")
    decoy = Tag(name="Decoy", slug="decoy")
    db_session.add_all([election, decoy])
    await db_session.flush()
    await _add(
        db_session,
        _article(author, news, "Election Year", tags=[election]),
        _article(author, news, "Unrelated", tags=[decoy]),
    )

    by_slug = await load_page(db_session, queries.plan_published_listing(ListingFilters(tag="2024")))
    assert _titles(by_slug["items"]) == ["Election Year"]
    by_id = await load_page(db_session, queries.plan_published_listing(ListingFilters(tag_id=decoy.id)))
    assert _titles(by_id["items"]) == ["Unrelated"]


# ---------------------------------------------------------------------------
# Related / trending / popular / featured / latest
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_related_same_category_outranks_shared_tag(db_session: AsyncSession):
    author, _, news, sport = await _seed(db_session)
    shared = Tag(name="Shared", slug="shared")
    db_session.add(shared)
    await db_session.flush()
    source = _article(author, news, "Source", tags=[shared])
    await _add(
        db_session,
        source,
        # The tag-only candidate has far more views; category must still win.
        _article(author, sport, "Tag Only", tags=[shared], views_count=1000),
        _article(author, news, "Category Only", views_count=1),
        _article(author, sport, "Unrelated", views_count=5000),
    )
    plan = queries.plan_related(source, limit=5, tag_ids=[shared.id])
    assert _titles(await load_list(db_session, plan)) == ["Category Only", "Tag Only"]


@pytest.mark.asyncio
async def test_trending_uses_weighted_composite_inside_window(db_session: AsyncSession):
    author, _, news, _ = await _seed(db_session)
    await _add(
        db_session,
        # 0.4 * 100 + 0.6 * 0 = 40
        _article(author, news, "Viewed", hours_ago=2, views_count=100),
        # 0.4 * 10 + 0.6 * 80 = 52
        _article(author, news, "Discussed", hours_ago=3, views_count=10, comments_count=80),
        _article(author, news, "Outside Window", hours_ago=30, views_count=10_000),
    )
    plan = queries.plan_trending(window_hours=24, limit=10)
    assert _titles(await load_list(db_session, plan)) == ["Discussed", "Viewed"]


@pytest.mark.asyncio
async def test_popular_orders_by_views_then_engagement(db_session: AsyncSession):
    author, _, news, sport = await _seed(db_session)
    await _add(
        db_session,
        _article(author, news, "Tie Low", views_count=50, engagement_score=1.0),
        _article(author, news, "Tie High", views_count=50, engagement_score=9.0),
        _article(author, sport, "Top", views_count=90),
        _article(author, news, "Too Old", hours_ago=24 * 30, views_count=999),
    )
    assert _titles(await load_list(db_session, queries.plan_popular(7, 10))) == ["Top", "Tie High", "Tie Low"]
    in_news = queries.plan_popular(7, 10, category_id=news.id)
    assert _titles(await load_list(db_session, in_news)) == ["Tie High", "Tie Low"]


@pytest.mark.asyncio
async def test_featured_orders_by_featured_at(db_session: AsyncSession):
    author, _, news, _ = await _seed(db_session)
    now = queries.utcnow()
    await _add(
        db_session,
        _article(author, news, "Featured Early", is_featured=True, featured_at=now - timedelta(hours=5)),
        _article(author, news, "Featured Late", is_featured=True, featured_at=now - timedelta(hours=1)),
        _article(author, news, "Not Featured"),
    )
    assert _titles(await load_list(db_session, queries.plan_featured(5))) == ["Featured Late", "Featured Early"]


@pytest.mark.asyncio
async def test_latest_is_a_minimal_projection(db_session: AsyncSession):
    author, _, news, _ = await _seed(db_session)
    first = _article(author, news, "First", hours_ago=3)
    await _add(db_session, first, _article(author, news, "Second", hours_ago=2))
    plan = queries.plan_latest(5, exclude_id=first.id)
    rows = (await db_session.execute(plan.statement)).all()
    assert [row.title for row in rows] == ["Second"]
    assert set(rows[0]._mapping.keys()) == set(queries.LATEST_FIELDS)


# ---------------------------------------------------------------------------
# Detail levels
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_detail_levels_shape_related_entities(db_session: AsyncSession):
    author, other, news, _ = await _seed(db_session)
    child = Category(name="Local", slug="local", parent_id=news.id)
    db_session.add(child)
    await db_session.flush()
    article = _article(author, child, "Deep", editor_id=other.id)
    await _add(db_session, article)

    summary = await load_article(db_session, queries.plan_by_id(article.id, DetailLevel.SUMMARY))
    assert set(summary["author"]) == {"id", "name", "username", "avatar"}
    assert "content" not in summary
    assert "comments" not in summary
    assert "editor" not in summary

    detail = await load_article(db_session, queries.plan_by_slug("deep", DetailLevel.DETAIL))
    assert detail["content"] == "Deep body text"
    assert detail["editor"]["username"] == "bayu"
    assert detail["category"]["parent"] == {"id": news.id, "name": "News", "slug": "news"}
    assert detail["comments"] == []


@pytest.mark.asyncio
async def test_missing_article_plan_returns_none(db_session: AsyncSession):
    assert await load_article(db_session, queries.plan_by_id(12345)) is None


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_status_counts(db_session: AsyncSession):
    author, _, news, _ = await _seed(db_session)
    now = queries.utcnow()
    await _add(
        db_session,
        _article(author, news, "Live Featured", is_featured=True),
        _article(author, news, "Live Breaking", is_breaking=True),
        _article(author, news, "Draft", status=ArticleStatus.DRAFT, editorial_status=EditorialStatus.DRAFT, published_at=None),
        _article(author, news, "Queued", status=ArticleStatus.SCHEDULED, published_at=now + timedelta(days=1)),
        _article(
            author, news, "Review", status=ArticleStatus.DRAFT, published_at=None,
            editorial_status=EditorialStatus.PENDING_REVIEW,
        ),
    )
    row = (await db_session.execute(queries.plan_status_counts())).one()
    assert row.total == 5
    assert row.published == 2
    assert row.draft == 1
    assert row.pending == 1
    assert row.scheduled == 1
    assert row.featured == 1
    assert row.breaking == 1


@pytest.mark.asyncio
async def test_analytics_plan_totals(db_session: AsyncSession):
    author, other, news, sport = await _seed(db_session)
    await _add(
        db_session,
        _article(author, news, "A", views_count=10, shares_count=1, comments_count=2, reading_time=4),
        _article(author, news, "B", views_count=20, reading_time=6),
        _article(other, sport, "C", views_count=5),
        _article(author, news, "D", status=ArticleStatus.DRAFT, editorial_status=EditorialStatus.DRAFT, published_at=None),
    )
    now = queries.utcnow()
    plan = queries.plan_analytics_summary(now - timedelta(days=1), now + timedelta(minutes=1))
    totals = (await db_session.execute(plan.totals)).one()
    assert totals.total_articles == 4
    assert totals.published_articles == 3
    assert totals.draft_articles == 1
    assert totals.total_views == 35
    assert float(totals.average_reading_time) == 5.0

    categories = (await db_session.execute(plan.top_categories)).all()
    assert [(r.slug, r.articles_count, r.total_views) for r in categories] == [("news", 2, 30), ("sport", 1, 5)]
    authors = (await db_session.execute(plan.top_authors)).all()
    assert authors[0].username == "rina"
    daily = (await db_session.execute(plan.daily)).all()
    assert sum(r.articles_count for r in daily) == 3


@pytest.mark.asyncio
async def test_plans_do_not_touch_the_session(db_session: AsyncSession):
    plan = queries.plan_published_listing(ListingFilters(category=1, sort="popular"), page=2, page_size=5)
    assert plan.page == 2 and plan.page_size == 5
    assert plan.count_statement is not None
    # Nothing was executed, so nothing exists yet.
    assert (await db_session.execute(select(Article))).scalars().all() == []
