"""
Category tree maintenance.

Category rows appear inside every cached article (breadcrumbs) and key
the category listings, so each write here flushes the taxonomy tags.
"""
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from newsdesk.models import Category, Tag
from newsdesk.schemas import CategoryCreate, CategoryUpdate
from newsdesk.services.associations import slugify
from newsdesk.services.invalidation import invalidate_taxonomy
from newsdesk.services.serializers import pick

logger = logging.getLogger(__name__)

CATEGORY_FIELDS = ("id", "name", "slug", "color", "description", "parent_id", "sort_order", "is_active")
TAG_FIELDS = ("id", "name", "slug", "color", "description")


class CategoryTreeError(ValueError):
    """A parent assignment would orphan or loop the category tree."""


async def _ancestor_ids(db: AsyncSession, category_id: int) -> list[int]:
    """Walk ``parent_id`` upward from *category_id* (inclusive)."""
    seen: list[int] = []
    current: int | None = category_id
    while current is not None and current not in seen:
        seen.append(current)
        current = (
            await db.execute(select(Category.parent_id).where(Category.id == current))
        ).scalar_one_or_none()
    return seen


async def _check_parent(db: AsyncSession, category_id: int | None, parent_id: int | None) -> None:
    if parent_id is None:
        return
    exists = (await db.execute(select(Category.id).where(Category.id == parent_id))).scalar_one_or_none()
    if exists is None:
        raise CategoryTreeError(f"Parent category {parent_id} does not exist")
    if category_id is not None and category_id in await _ancestor_ids(db, parent_id):
        raise CategoryTreeError("A category cannot be its own ancestor")


async def list_categories(db: AsyncSession, active_only: bool = True) -> list[dict]:
    q = select(Category)
    if active_only:
        q = q.where(Category.is_active.is_(True))
    result = await db.execute(q.order_by(Category.sort_order, Category.name))
    return [pick(c, CATEGORY_FIELDS) for c in result.scalars().all()]


async def list_tags(db: AsyncSession) -> list[dict]:
    result = await db.execute(select(Tag).order_by(Tag.name))
    return [pick(t, TAG_FIELDS) for t in result.scalars().all()]


async def create_category(db: AsyncSession, data: CategoryCreate) -> dict:
    try:
        await _check_parent(db, None, data.parent_id)
        category = Category(
            name=data.name,
            slug=data.slug or slugify(data.name),
            color=data.color,
            description=data.description,
            parent_id=data.parent_id,
            sort_order=data.sort_order,
        )
        db.add(category)
        await db.flush()
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    logger.info("Category %d created (slug=%s)", category.id, category.slug)
    await invalidate_taxonomy()
    return pick(category, CATEGORY_FIELDS)


async def update_category(db: AsyncSession, category_id: int, data: CategoryUpdate) -> dict | None:
    """Returns None when the category does not exist."""
    category = (
        await db.execute(
            select(Category).where(Category.id == category_id).execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if category is None:
        return None

    changes = data.model_dump(exclude_unset=True)
    try:
        if "parent_id" in changes:
            await _check_parent(db, category_id, changes["parent_id"])
        for name, value in changes.items():
            setattr(category, name, value)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    await invalidate_taxonomy()
    return pick(category, CATEGORY_FIELDS)
