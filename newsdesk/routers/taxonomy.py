from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from newsdesk.database import get_db
from newsdesk.dependencies import PaginationParams, scoped_options
from newsdesk.schemas import CategoryCreate, CategoryUpdate, Page, ScopedOptions
from newsdesk.services import article_service, category_service

router = APIRouter(prefix="/api/v1", tags=["taxonomy"])


@router.get("/categories")
async def list_categories(db: AsyncSession = Depends(get_db)):
    return await category_service.list_categories(db)


@router.post("/categories", status_code=201)
async def create_category(data: CategoryCreate, db: AsyncSession = Depends(get_db)):
    try:
        return await category_service.create_category(db, data)
    except category_service.CategoryTreeError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except IntegrityError:
        raise HTTPException(status_code=409, detail="Category slug already exists")


@router.put("/categories/{category_id}")
async def update_category(category_id: int, data: CategoryUpdate, db: AsyncSession = Depends(get_db)):
    try:
        category = await category_service.update_category(db, category_id, data)
    except category_service.CategoryTreeError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")
    return category


@router.get("/categories/{category_id}/articles", response_model=Page)
async def category_articles(
    category_id: int,
    options: ScopedOptions = Depends(scoped_options),
    pagination: PaginationParams = Depends(),
    db: AsyncSession = Depends(get_db),
):
    return await article_service.list_by_category(
        db, category_id, options, pagination.page, pagination.page_size
    )


@router.get("/categories/{category_id}/popular")
async def category_popular(category_id: int, db: AsyncSession = Depends(get_db)):
    return await article_service.list_popular_in_category(db, category_id)


@router.get("/tags")
async def list_tags(db: AsyncSession = Depends(get_db)):
    return await category_service.list_tags(db)


@router.get("/tags/{tag_id}/articles", response_model=Page)
async def tag_articles(
    tag_id: int,
    options: ScopedOptions = Depends(scoped_options),
    pagination: PaginationParams = Depends(),
    db: AsyncSession = Depends(get_db),
):
    return await article_service.list_by_tag(db, tag_id, options, pagination.page, pagination.page_size)


@router.get("/authors/{author_id}/articles", response_model=Page)
async def author_articles(
    author_id: int,
    options: ScopedOptions = Depends(scoped_options),
    pagination: PaginationParams = Depends(),
    db: AsyncSession = Depends(get_db),
):
    return await article_service.list_by_author(
        db, author_id, options, pagination.page, pagination.page_size
    )
