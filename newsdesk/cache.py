"""
Tag-indexed cache-aside layer.

Every entry is stored under a deterministic key together with a set of
invalidation tags.  ``CacheManager.invalidate`` drops every entry whose
tag set intersects the given tags; the key index and the tag index are
always mutated together, so a reader never sees a value that one index
has already forgotten.

Two stores share one interface:

- ``MemoryTagStore``: in-process dicts guarded by a single lock.
- ``RedisTagStore``: values as plain Redis strings with ``EX``, tag
  membership in Redis sets, both written inside ``MULTI/EXEC``.

Both stores keep a version counter per tag that ``flush_tags`` bumps; a
write carrying older versions than the store's is dropped.

All public ``CacheManager`` methods are safe to call when the store is
unreachable: reads fall through to the compute function and writes or
invalidations are logged and skipped.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Mapping

import redis.asyncio as redis
from redis.exceptions import WatchError

from newsdesk.config import settings

logger = logging.getLogger(__name__)

_MISSING = object()


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

@dataclass
class _Entry:
    payload: str
    expires_at: float
    tags: frozenset[str] = field(default_factory=frozenset)


def longest_ttl() -> int:
    """The longest configured ``CACHE_TTL_*`` value."""
    return max(v for k, v in settings.model_dump().items() if k.startswith("CACHE_TTL_"))


class MemoryTagStore:
    """
    Two indices, ``key -> entry`` and ``tag -> keys``, under one lock.

    The lock is held only for dictionary bookkeeping, never across an
    ``await``, so readers do not queue behind a slow computation.

    Expired entries are swept every ``sweep_every`` writes, and once the
    store holds ``max_entries`` the oldest writes are evicted first.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int | None = None,
        sweep_every: int = 256,
    ) -> None:
        self._clock = clock
        self._max_entries = max_entries if max_entries is not None else settings.CACHE_MAX_ENTRIES
        self._sweep_every = sweep_every
        self._writes = 0
        self._entries: dict[str, _Entry] = {}
        self._tag_index: dict[str, set[str]] = {}
        self._versions: dict[str, int] = {}
        self._lock = threading.Lock()

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
            self._tag_index.clear()

    def _unlink(self, key: str) -> bool:
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        for tag in entry.tags:
            keys = self._tag_index.get(tag)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._tag_index[tag]
        return True

    def _sweep(self) -> None:
        now = self._clock()
        for key in [k for k, e in self._entries.items() if e.expires_at <= now]:
            self._unlink(key)

    def _evict(self) -> None:
        # dicts keep insertion order and ``set`` re-inserts, so the head is the oldest write
        while len(self._entries) > self._max_entries:
            self._unlink(next(iter(self._entries)))

    async def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                self._unlink(key)
                return None
            return entry.payload

    async def tag_versions(self, tags: Iterable[str]) -> dict[str, int]:
        with self._lock:
            return {tag: self._versions.get(tag, 0) for tag in tags}

    async def set(
        self,
        key: str,
        payload: str,
        ttl: int,
        tags: Iterable[str],
        versions: Mapping[str, int] | None = None,
    ) -> bool:
        tag_set = frozenset(tags)
        with self._lock:
            if versions is not None and any(
                self._versions.get(tag, 0) != versions.get(tag, 0) for tag in tag_set
            ):
                return False
            self._unlink(key)
            self._entries[key] = _Entry(payload, self._clock() + ttl, tag_set)
            for tag in tag_set:
                self._tag_index.setdefault(tag, set()).add(key)
            self._writes += 1
            if self._writes % self._sweep_every == 0:
                self._sweep()
            self._evict()
            return True

    async def delete(self, keys: Iterable[str]) -> int:
        with self._lock:
            return sum(1 for key in keys if self._unlink(key))

    async def flush_tags(self, tags: Iterable[str]) -> int:
        with self._lock:
            doomed: set[str] = set()
            for tag in tags:
                self._versions[tag] = self._versions.get(tag, 0) + 1
                doomed |= self._tag_index.get(tag, set())
            for key in doomed:
                self._unlink(key)
            return len(doomed)

    def __len__(self) -> int:
        return len(self._entries)


class RedisTagStore:
    """
    Redis-backed store.  Tag membership lives in ``<prefix>:tag:<name>``
    sets and every tag has a counter at ``<prefix>:tagver:<name>``.

    ``flush_tags`` WATCHes the tag sets it reads so that an entry tagged
    concurrently is either flushed with the rest or the flush is retried,
    and bumps the counters in the same transaction.  ``set`` WATCHes the
    counters and refuses to store a value computed under older counters,
    so a process that read before another process invalidated cannot
    write its stale result back.

    Tag sets expire after the longest cache TTL so members whose entries
    already expired do not pile up between flushes.
    """

    _FLUSH_RETRIES = 5

    def __init__(
        self,
        url: str | None = None,
        prefix: str = "newsdesk",
        client: redis.Redis | None = None,
        tag_ttl: int | None = None,
    ) -> None:
        self._url = url
        self._prefix = prefix
        self._tag_ttl = tag_ttl if tag_ttl is not None else longest_ttl()
        self._redis: redis.Redis | None = client or redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )

    def _tag_key(self, tag: str) -> str:
        return f"{self._prefix}:tag:{tag}"

    def _version_key(self, tag: str) -> str:
        return f"{self._prefix}:tagver:{tag}"

    async def ping(self) -> bool:
        await self._redis.ping()
        return True

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def get(self, key: str) -> str | None:
        return await self._redis.get(key)

    async def tag_versions(self, tags: Iterable[str]) -> dict[str, int]:
        tags = sorted(set(tags))
        if not tags:
            return {}
        values = await self._redis.mget([self._version_key(tag) for tag in tags])
        return {tag: int(value or 0) for tag, value in zip(tags, values)}

    async def set(
        self,
        key: str,
        payload: str,
        ttl: int,
        tags: Iterable[str],
        versions: Mapping[str, int] | None = None,
    ) -> bool:
        tags = sorted(set(tags))
        tag_ttl = max(ttl, self._tag_ttl)
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                if versions is not None and tags:
                    version_keys = [self._version_key(tag) for tag in tags]
                    await pipe.watch(*version_keys)
                    current = await pipe.mget(version_keys)
                    if any(int(value or 0) != versions.get(tag, 0) for tag, value in zip(tags, current)):
                        return False
                    pipe.multi()
                pipe.set(key, payload, ex=ttl)
                for tag in tags:
                    tag_key = self._tag_key(tag)
                    pipe.sadd(tag_key, key)
                    pipe.expire(tag_key, tag_ttl)
                await pipe.execute()
            except WatchError:
                # an invalidation landed between the version check and EXEC
                return False
        return True

    async def delete(self, keys: Iterable[str]) -> int:
        keys = list(keys)
        if not keys:
            return 0
        return await self._redis.delete(*keys)

    async def flush_tags(self, tags: Iterable[str]) -> int:
        tags = sorted(set(tags))
        tag_keys = [self._tag_key(tag) for tag in tags]
        if not tag_keys:
            return 0
        for _ in range(self._FLUSH_RETRIES):
            async with self._redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(*tag_keys)
                    members = await pipe.sunion(*tag_keys)
                    pipe.multi()
                    pipe.delete(*members, *tag_keys)
                    for tag in tags:
                        pipe.incr(self._version_key(tag))
                    await pipe.execute()
                    return len(members)
                except WatchError:
                    continue
        raise WatchError(f"tag flush kept racing with writers: {tag_keys!r}")


def build_store() -> MemoryTagStore | RedisTagStore:
    """Instantiate the store named by ``settings.CACHE_BACKEND``."""
    if settings.CACHE_BACKEND == "redis":
        return RedisTagStore(settings.REDIS_URL, settings.CACHE_PREFIX)
    return MemoryTagStore()


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------

def fingerprint(filters: Mapping[str, Any]) -> str:
    """
    Stable digest of a filter configuration.

    Unset options (``None``) are dropped so that ``{}`` and
    ``{"tag": None}`` describe the same query; every other value,
    including an empty list, is significant.
    """
    normalised = {k: v for k, v in filters.items() if v is not None}
    canonical = json.dumps(normalised, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha1(canonical.encode()).hexdigest()


class CacheKeys:
    """Builders for every cache key in the application."""

    @staticmethod
    def article(article_id: int, level: str = "summary") -> str:
        return f"article:{article_id}" if level == "summary" else f"article:{level}:{article_id}"

    @staticmethod
    def article_slug(slug: str, level: str = "summary") -> str:
        return f"article:slug:{slug}" if level == "summary" else f"article:slug:{level}:{slug}"

    @staticmethod
    def listing(filters: Mapping[str, Any], page: int, page_size: int) -> str:
        return f"articles:listing:{fingerprint(filters)}:page:{page}:per_page:{page_size}"

    @staticmethod
    def search(filters: Mapping[str, Any], page: int, page_size: int) -> str:
        return f"articles:search:{fingerprint(filters)}:page:{page}:per_page:{page_size}"

    @staticmethod
    def scoped(scope: str, scope_id: int, options: Mapping[str, Any], page: int, page_size: int) -> str:
        return (
            f"{scope}:{scope_id}:articles:{fingerprint(options)}"
            f":page:{page}:per_page:{page_size}"
        )

    @staticmethod
    def featured(limit: int) -> str:
        return f"articles:featured:{limit}"

    @staticmethod
    def trending(hours: int, limit: int) -> str:
        return f"trending:{hours}:{limit}"

    @staticmethod
    def popular(days: int, limit: int) -> str:
        return f"popular:{days}:{limit}"

    @staticmethod
    def popular_in_category(category_id: int, days: int, limit: int) -> str:
        return f"popular:category:{category_id}:days:{days}:limit:{limit}"

    @staticmethod
    def related(article_id: int, limit: int) -> str:
        return f"article:{article_id}:related:{limit}"

    @staticmethod
    def latest(limit: int, exclude_id: int | None) -> str:
        return f"latest:minimal:{limit}:{exclude_id if exclude_id is not None else 'all'}"

    @staticmethod
    def analytics(from_time, to_time) -> str:
        return f"analytics:{from_time.isoformat()}:{to_time.isoformat()}"

    SCHEDULED = "articles:scheduled"
    PENDING_REVIEW = "articles:pending_review"
    STATUS_COUNTS = "article:status:counts"


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class CacheManager:
    """
    Cache-aside manager over a tag-indexed store.

    Concurrent misses for the same key inside one process share a single
    computation: the first caller computes, later callers await its
    result (or its exception).  Across processes a miss may be computed
    more than once.

    ``invalidate`` and ``forget`` advance a generation counter.  A
    computation that started under an older generation neither stores its
    result nor serves callers that arrive after the invalidation.

    Across processes the store's per-tag versions do the same job: the
    versions of an entry's tags are read before computing and the store
    refuses the write if any of them moved, so a value read before another
    process invalidated is never stored after it.
    """

    def __init__(self, store=None, prefix: str | None = None) -> None:
        self._store = store
        self._prefix = prefix if prefix is not None else settings.CACHE_PREFIX
        self._generation: int = 0
        self._inflight: dict[tuple[str, int], asyncio.Future] = {}
        self._hits: int = 0
        self._misses: int = 0
        self._coalesced: int = 0
        self._errors: int = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Create the configured store.  Called once at application startup."""
        if self._store is None:
            self._store = build_store()
        try:
            await self._store.ping()
            logger.info("Cache store ready: %s", type(self._store).__name__)
        except Exception as exc:
            logger.warning("Cache store ping failed, reads will hit the database: %s", exc)

    async def disconnect(self) -> None:
        if self._store is not None:
            await self._store.close()
            self._store = None

    def use_store(self, store) -> None:
        """Swap the backing store (tests, or a runtime backend change)."""
        self._store = store
        self._inflight.clear()
        self._generation += 1

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def _read(self, full_key: str):
        if self._store is None:
            return _MISSING
        try:
            payload = await self._store.get(full_key)
        except Exception as exc:
            self._errors += 1
            logger.debug("Cache GET error for key=%r: %s", full_key, exc)
            return _MISSING
        if payload is None:
            return _MISSING
        try:
            return json.loads(payload)
        except ValueError as exc:
            self._errors += 1
            logger.warning("Cache payload for key=%r is not valid JSON: %s", full_key, exc)
            return _MISSING

    async def _tag_versions(self, tags: frozenset[str]) -> dict[str, int] | None:
        """None when the store is missing or unreachable; the result is then not stored."""
        if self._store is None:
            return None
        try:
            return await self._store.tag_versions(tags)
        except Exception as exc:
            self._errors += 1
            logger.debug("Cache tag version read failed for tags=%s: %s", sorted(tags), exc)
            return None

    async def _write(
        self, full_key: str, payload: str, tags: Iterable[str], ttl: int, versions: Mapping[str, int]
    ) -> None:
        try:
            stored = await self._store.set(full_key, payload, ttl, tags, versions)
        except Exception as exc:
            self._errors += 1
            logger.debug("Cache SET error for key=%r: %s", full_key, exc)
            return
        if not stored:
            logger.debug("Cache SET skipped for key=%r: tags invalidated during compute", full_key)

    async def get(self, key: str):
        """Return the cached value for *key*, or None on a miss or error."""
        value = await self._read(self._key(key))
        if value is _MISSING:
            self._misses += 1
            return None
        self._hits += 1
        return value

    async def get_or_compute(
        self,
        key: str,
        tags: Iterable[str],
        ttl: int,
        compute: Callable[[], Awaitable[Any]],
    ):
        """
        Return the live value at *key*, computing and storing it on a miss.

        *compute* must return something JSON-serialisable.  Every caller
        receives a freshly decoded copy, whether the value came from the
        store, from its own computation or from a coalesced one.  ``None``
        results are returned but not stored.
        """
        full_key = self._key(key)
        value = await self._read(full_key)
        if value is not _MISSING:
            self._hits += 1
            return value
        self._misses += 1

        generation = self._generation
        flight_key = (full_key, generation)
        pending = self._inflight.get(flight_key)
        if pending is not None:
            self._coalesced += 1
            try:
                return json.loads(await asyncio.shield(pending))
            except asyncio.CancelledError:
                if not pending.cancelled():
                    raise
                # The computing caller was cancelled; compute on our own.

        future = asyncio.get_running_loop().create_future()
        self._inflight[flight_key] = future
        tag_set = frozenset(tags)
        try:
            versions = await self._tag_versions(tag_set)
            result = await compute()
            payload = json.dumps(result, default=str)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            future.exception()  # mark retrieved when nobody is waiting
            raise
        finally:
            if self._inflight.get(flight_key) is future:
                del self._inflight[flight_key]

        future.set_result(payload)
        if result is not None and versions is not None and generation == self._generation:
            await self._write(full_key, payload, tag_set, ttl, versions)
        return json.loads(payload)

    async def forget(self, *keys: str) -> None:
        """Remove exact keys."""
        self._generation += 1
        if self._store is None or not keys:
            return
        try:
            await self._store.delete(self._key(k) for k in keys)
        except Exception as exc:
            self._errors += 1
            logger.warning("Cache FORGET failed for %d key(s): %s", len(keys), exc)

    async def invalidate(self, tags: Iterable[str]) -> int:
        """
        Drop every entry tagged with any of *tags*.  Returns the number of
        entries removed (0 when the store is unavailable).
        """
        tags = set(tags)
        self._generation += 1
        if self._store is None or not tags:
            return 0
        try:
            removed = await self._store.flush_tags(tags)
        except Exception as exc:
            self._errors += 1
            logger.warning("Cache INVALIDATE failed for tags=%s: %s", sorted(tags), exc)
            return 0
        logger.debug("Cache invalidated %d entr(y/ies) for tags=%s", removed, sorted(tags))
        return removed

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    @property
    def stats(self) -> dict:
        """Snapshot of counters for the admin endpoint."""
        total = self._hits + self._misses
        return {
            "backend": type(self._store).__name__ if self._store is not None else None,
            "hits": self._hits,
            "misses": self._misses,
            "coalesced": self._coalesced,
            "errors": self._errors,
            "hit_rate": round(self._hits / total * 100, 1) if total > 0 else 0.0,
        }

    def reset_stats(self) -> None:
        self._hits = self._misses = self._coalesced = self._errors = 0


# Module-level singleton shared across all request handlers.
cache = CacheManager()
