"""
Association collaborator: tag find-or-create and entity metadata.

Both helpers only ``flush``; they run inside the caller's transaction so
the editorial service can commit or roll back the whole unit at once.
"""
import json
import re
from datetime import date, datetime
from typing import Any, Iterable

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from newsdesk.models import ArticleMeta, Tag

_SLUG_STRIP_RE = re.compile(r"[^\w\s-]")
_SLUG_SPACE_RE = re.compile(r"[\s_]+")
_SLUG_DASH_RE = re.compile(r"-+")


def slugify(text: str) -> str:
    """Return a URL-safe, lowercase slug derived from *text*."""
    text = _SLUG_STRIP_RE.sub("", text.lower().strip())
    text = _SLUG_SPACE_RE.sub("-", text)
    return _SLUG_DASH_RE.sub("-", text).strip("-")


# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------

async def find_or_create_tag(db: AsyncSession, name: str) -> Tag:
    """Match on exact name, or on slug so "Banjir" and "banjir" share a tag."""
    name = name.strip()
    slug = slugify(name) or name.lower()
    result = await db.execute(select(Tag).where(or_(Tag.name == name, Tag.slug == slug)).limit(1))
    tag = result.scalar_one_or_none()
    if tag is None:
        tag = Tag(name=name, slug=slug)
        db.add(tag)
        await db.flush()
    return tag


async def resolve_tag_ids(db: AsyncSession, tags: Iterable[int | str]) -> list[int]:
    """
    Map each element to a tag id: ints (and digit strings) are taken as
    existing ids, anything else is a name to find or create.  Duplicates
    are dropped, first occurrence wins.
    """
    tag_ids: list[int] = []
    for item in tags:
        if isinstance(item, int) or (isinstance(item, str) and item.strip().isdigit()):
            tag_id = int(item)
        elif isinstance(item, str) and item.strip():
            tag_id = (await find_or_create_tag(db, item)).id
        else:
            continue
        if tag_id not in tag_ids:
            tag_ids.append(tag_id)
    return tag_ids


async def load_tags(db: AsyncSession, tag_ids: list[int]) -> list[Tag]:
    if not tag_ids:
        return []
    result = await db.execute(select(Tag).where(Tag.id.in_(tag_ids)))
    by_id = {tag.id: tag for tag in result.scalars().all()}
    missing = [tag_id for tag_id in tag_ids if tag_id not in by_id]
    if missing:
        raise LookupError(f"Unknown tag id(s): {missing}")
    return [by_id[tag_id] for tag_id in tag_ids]


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------

def detect_meta_type(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "float"
    if isinstance(value, (datetime, date)):
        return "date"
    if isinstance(value, (dict, list, tuple)):
        return "json"
    return "string"


def decode_meta(meta: ArticleMeta) -> Any:
    value = json.loads(meta.meta_value) if meta.meta_value is not None else None
    if value is None:
        return None
    if meta.meta_type == "date":
        return datetime.fromisoformat(value)
    if meta.meta_type == "integer":
        return int(value)
    if meta.meta_type == "float":
        return float(value)
    if meta.meta_type == "boolean":
        return bool(value)
    return value


async def set_meta(
    db: AsyncSession,
    entity_id: int,
    key: str,
    value: Any,
    entity_type: str = "article",
    is_public: bool = True,
) -> ArticleMeta:
    """Upsert one (entity_type, entity_id, key) row."""
    result = await db.execute(
        select(ArticleMeta).where(
            ArticleMeta.entity_type == entity_type,
            ArticleMeta.entity_id == entity_id,
            ArticleMeta.meta_key == key,
        )
    )
    meta = result.scalar_one_or_none()
    if meta is None:
        meta = ArticleMeta(entity_type=entity_type, entity_id=entity_id, meta_key=key)
        db.add(meta)
    meta.meta_type = detect_meta_type(value)
    meta.meta_value = json.dumps(value, default=str)
    meta.is_public = is_public
    await db.flush()
    return meta


async def get_meta(
    db: AsyncSession,
    entity_id: int,
    key: str,
    default: Any = None,
    entity_type: str = "article",
) -> Any:
    result = await db.execute(
        select(ArticleMeta).where(
            ArticleMeta.entity_type == entity_type,
            ArticleMeta.entity_id == entity_id,
            ArticleMeta.meta_key == key,
        )
    )
    meta = result.scalar_one_or_none()
    return decode_meta(meta) if meta is not None else default


async def get_all_meta(
    db: AsyncSession,
    entity_id: int,
    entity_type: str = "article",
    public_only: bool = False,
) -> dict[str, Any]:
    q = select(ArticleMeta).where(
        ArticleMeta.entity_type == entity_type, ArticleMeta.entity_id == entity_id
    )
    if public_only:
        q = q.where(ArticleMeta.is_public.is_(True))
    result = await db.execute(q.order_by(ArticleMeta.sort_order, ArticleMeta.meta_key))
    return {m.meta_key: decode_meta(m) for m in result.scalars().all()}


async def delete_all_meta(db: AsyncSession, entity_id: int, entity_type: str = "article") -> None:
    await db.execute(
        delete(ArticleMeta).where(
            ArticleMeta.entity_type == entity_type, ArticleMeta.entity_id == entity_id
        )
    )
