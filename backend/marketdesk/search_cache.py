from __future__ import annotations

import logging

from pydantic import TypeAdapter, ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from marketdesk.schemas.market import SymbolSearchResult

logger = logging.getLogger(__name__)

_RESULTS = TypeAdapter(list[SymbolSearchResult])


def search_cache_key(query: str) -> str:
    return f"marketdesk:search:{' '.join(query.lower().split())}"


class SearchCache:
    """TTL cache for symbol search answers. A Redis outage reads as a miss."""

    def __init__(self, client: Redis, ttl_seconds: int) -> None:
        self._client = client
        self._ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, redis_url: str, ttl_seconds: int) -> SearchCache:
        return cls(Redis.from_url(redis_url), ttl_seconds)

    async def get(self, query: str) -> list[SymbolSearchResult] | None:
        try:
            raw = await self._client.get(search_cache_key(query))
        except RedisError as exc:
            logger.warning("Search cache read failed: %s", exc)
            return None

        if not raw:
            return None

        try:
            return _RESULTS.validate_json(raw)
        except ValidationError:
            logger.warning("Discarding unreadable search cache entry for %r", query)
            return None

    async def set(self, query: str, results: list[SymbolSearchResult]) -> None:
        try:
            await self._client.setex(search_cache_key(query), self._ttl_seconds, _RESULTS.dump_json(results))
        except RedisError as exc:
            logger.warning("Search cache write failed: %s", exc)

    async def close(self) -> None:
        await self._client.aclose()
