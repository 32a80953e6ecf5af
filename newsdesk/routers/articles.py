from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from newsdesk.database import get_db
from newsdesk.dependencies import PaginationParams, listing_filters, search_filters
from newsdesk.schemas import (
    ArticleCreate,
    ArticleUpdate,
    BulkRequest,
    BulkResult,
    CommentCreate,
    DetailLevel,
    ListingFilters,
    Page,
    SearchFilters,
)
from newsdesk.services import article_service, comment_service, editorial_service

router = APIRouter(prefix="/api/v1/articles", tags=["articles"])


@router.get("", response_model=Page)
async def list_articles(
    filters: ListingFilters = Depends(listing_filters),
    pagination: PaginationParams = Depends(),
    db: AsyncSession = Depends(get_db),
):
    return await article_service.list_published(db, filters, pagination.page, pagination.page_size)


@router.get("/search", response_model=Page)
async def search_articles(
    q: str | None = Query(None, max_length=200),
    filters: SearchFilters = Depends(search_filters),
    pagination: PaginationParams = Depends(),
    db: AsyncSession = Depends(get_db),
):
    return await article_service.search(db, q, filters, pagination.page, pagination.page_size)


@router.get("/featured")
async def featured_articles(limit: int | None = Query(None, ge=1, le=50), db: AsyncSession = Depends(get_db)):
    return await article_service.list_featured(db, limit)


@router.get("/trending")
async def trending_articles(
    hours: int | None = Query(None, ge=1, le=24 * 30),
    limit: int | None = Query(None, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
):
    return await article_service.list_trending(db, hours, limit)


@router.get("/popular")
async def popular_articles(
    days: int | None = Query(None, ge=1, le=365),
    limit: int | None = Query(None, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
):
    return await article_service.list_popular(db, days, limit)


@router.get("/latest")
async def latest_articles(
    limit: int | None = Query(None, ge=1, le=50),
    exclude_id: int | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    return await article_service.list_latest(db, limit, exclude_id)


@router.get("/scheduled")
async def scheduled_articles(db: AsyncSession = Depends(get_db)):
    return await article_service.list_scheduled(db)


@router.get("/pending-review")
async def pending_review_articles(db: AsyncSession = Depends(get_db)):
    return await article_service.list_pending_review(db)


@router.get("/slug/{slug}")
async def get_article_by_slug(
    slug: str,
    level: DetailLevel = Query(DetailLevel.DETAIL),
    db: AsyncSession = Depends(get_db),
):
    article = await article_service.find_by_slug(db, slug, level)
    if not article:
        raise HTTPException(status_code=404, detail="Article not found")
    return article


@router.get("/{article_id}")
async def get_article(
    article_id: int,
    level: DetailLevel = Query(DetailLevel.SUMMARY),
    db: AsyncSession = Depends(get_db),
):
    article = await article_service.find_by_id(db, article_id, level)
    if not article:
        raise HTTPException(status_code=404, detail="Article not found")
    return article


@router.get("/{article_id}/related")
async def related_articles(
    article_id: int,
    limit: int | None = Query(None, ge=1, le=20),
    db: AsyncSession = Depends(get_db),
):
    return await article_service.list_related(db, article_id, limit)


@router.post("", status_code=201)
async def create_article(data: ArticleCreate, db: AsyncSession = Depends(get_db)):
    try:
        return await editorial_service.create_article(db, data)
    except IntegrityError:
        raise HTTPException(status_code=409, detail="Article conflicts with an existing one")
    except LookupError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


@router.put("/{article_id}")
async def update_article(article_id: int, data: ArticleUpdate, db: AsyncSession = Depends(get_db)):
    try:
        article = await editorial_service.update_article(db, article_id, data)
    except IntegrityError:
        raise HTTPException(status_code=409, detail="Article conflicts with an existing one")
    except LookupError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    if not article:
        raise HTTPException(status_code=404, detail="Article not found")
    return article


@router.delete("/{article_id}", status_code=204)
async def delete_article(article_id: int, db: AsyncSession = Depends(get_db)):
    deleted = await editorial_service.delete_article(db, article_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Article not found")


@router.post("/bulk/{action}", response_model=BulkResult)
async def bulk_action(action: str, data: BulkRequest, db: AsyncSession = Depends(get_db)):
    operation = editorial_service.BULK_ACTIONS.get(action)
    if operation is None:
        raise HTTPException(status_code=404, detail=f"Unknown bulk action: {action}")
    affected = await operation(db, data.article_ids, data.actor_id)
    return BulkResult(action=action, requested=len(set(data.article_ids)), affected=affected)


@router.post("/{article_id}/comments", status_code=201)
async def add_comment(article_id: int, data: CommentCreate, db: AsyncSession = Depends(get_db)):
    try:
        comment = await comment_service.add_comment(db, article_id, data)
    except comment_service.CommentRejected as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    if not comment:
        raise HTTPException(status_code=404, detail="Article not found")
    return comment
