from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from newsdesk.cache import cache
from newsdesk.database import get_db
from newsdesk.schemas import AnalyticsSummary, CommentModerate, StatusCounts
from newsdesk.services import article_service, comment_service

router = APIRouter(prefix="/api/v1/admin", tags=["admin"])


@router.get("/analytics", response_model=AnalyticsSummary)
async def analytics(
    from_time: datetime | None = Query(None, alias="from"),
    to_time: datetime | None = Query(None, alias="to"),
    db: AsyncSession = Depends(get_db),
):
    return await article_service.get_analytics(db, from_time, to_time)


@router.get("/status-counts", response_model=StatusCounts)
async def status_counts(db: AsyncSession = Depends(get_db)):
    return await article_service.get_status_counts(db)


@router.get("/cache")
async def cache_stats():
    return cache.stats


@router.put("/comments/{comment_id}")
async def moderate_comment(comment_id: int, data: CommentModerate, db: AsyncSession = Depends(get_db)):
    comment = await comment_service.moderate_comment(db, comment_id, data.status)
    if not comment:
        raise HTTPException(status_code=404, detail="Comment not found")
    return comment
