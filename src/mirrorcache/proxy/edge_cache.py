"""Request-keyed edge cache consulted before the object cache.

Entries are keyed by the full inbound request URL (api key included), so an
edge hit skips key derivation and the object store entirely.
"""

from __future__ import annotations

import hashlib
import json
from typing import Optional

from cachetools import TTLCache
from redis.asyncio import Redis, from_url as redis_from_url
import structlog

from ..common.schemas import EdgeEntry
from ..common.settings import ProxySettings


LOGGER = structlog.get_logger("mirrorcache.edge_cache")


def edge_fingerprint(edge_key: str) -> str:
    """Hash of an edge key. Edge keys embed credentials and are never logged raw."""
    return hashlib.sha256(edge_key.encode("utf-8")).hexdigest()


class EdgeCache:
    async def get(self, edge_key: str) -> Optional[EdgeEntry]:  # pragma: no cover - interface
        raise NotImplementedError

    async def put(self, edge_key: str, entry: EdgeEntry) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def status(self) -> dict[str, object]:  # pragma: no cover - interface
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class InMemoryEdgeCache(EdgeCache):
    """Per-process edge cache with TTL expiry and a size bound."""

    def __init__(self, max_entries: int, ttl_seconds: float, max_entry_bytes: int) -> None:
        self._entries: TTLCache = TTLCache(maxsize=max(1, max_entries), ttl=max(1.0, ttl_seconds))
        self._max_entry_bytes = max_entry_bytes

    async def get(self, edge_key: str) -> Optional[EdgeEntry]:
        return self._entries.get(edge_key)

    async def put(self, edge_key: str, entry: EdgeEntry) -> None:
        if entry.size > self._max_entry_bytes:
            LOGGER.debug("edge_entry_too_large", edge=edge_fingerprint(edge_key)[:16], bytes=entry.size)
            return
        self._entries[edge_key] = entry

    def __len__(self) -> int:
        return len(self._entries)

    def status(self) -> dict[str, object]:
        return {"backend": "memory", "entries": len(self._entries), "max_entries": self._entries.maxsize}


class RedisEdgeCache(EdgeCache):
    """Redis-backed edge cache shared by every proxy replica.

    Redis failures fail open: lookups become misses and writes are dropped.
    """

    def __init__(self, redis: Redis, ttl_seconds: int, max_entry_bytes: int, prefix: str = "edge:") -> None:
        self._redis = redis
        self._ttl = max(1, int(ttl_seconds))
        self._max_entry_bytes = max_entry_bytes
        self._prefix = prefix

    def _key(self, edge_key: str) -> str:
        return f"{self._prefix}{edge_fingerprint(edge_key)}"

    async def get(self, edge_key: str) -> Optional[EdgeEntry]:
        try:
            record = await self._redis.hgetall(self._key(edge_key))
        except Exception as exc:  # noqa: BLE001 - fail open
            LOGGER.warning("edge_lookup_failed", error=str(exc))
            return None
        if not record:
            return None
        try:
            return EdgeEntry(
                status=int(record[b"status"]),
                headers=[tuple(pair) for pair in json.loads(record[b"headers"])],
                body=record[b"body"],
            )
        except (KeyError, ValueError) as exc:
            LOGGER.warning("edge_entry_corrupt", error=str(exc))
            return None

    async def put(self, edge_key: str, entry: EdgeEntry) -> None:
        if entry.size > self._max_entry_bytes:
            return
        key = self._key(edge_key)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(
                    key,
                    mapping={
                        "status": str(entry.status),
                        "headers": json.dumps(entry.headers),
                        "body": entry.body,
                    },
                )
                pipe.expire(key, self._ttl)
                await pipe.execute()
        except Exception as exc:  # noqa: BLE001 - fail open
            LOGGER.warning("edge_store_failed", error=str(exc))

    def status(self) -> dict[str, object]:
        return {"backend": "redis", "ttl_seconds": self._ttl}

    async def aclose(self) -> None:
        await self._redis.aclose()


def build_edge_cache(settings: ProxySettings) -> EdgeCache:
    if settings.redis_url:
        return RedisEdgeCache(
            redis_from_url(settings.redis_url),
            ttl_seconds=settings.edge_cache_ttl_seconds,
            max_entry_bytes=settings.edge_cache_max_entry_bytes,
        )
    return InMemoryEdgeCache(
        max_entries=settings.edge_cache_max_entries,
        ttl_seconds=settings.edge_cache_ttl_seconds,
        max_entry_bytes=settings.edge_cache_max_entry_bytes,
    )
