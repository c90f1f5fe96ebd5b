"""Redis cache for query embeddings."""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Sequence

import redis.asyncio as redis

from obracalc.config import CacheConfig
from obracalc.services.ports import EmbeddingBatch, EmbeddingService

logger = logging.getLogger(__name__)


class RedisCache:
    """JSON values in Redis with a fixed TTL.

    Cache errors are logged and treated as misses.
    """

    def __init__(self, config: CacheConfig, client: redis.Redis | None = None):
        self.config = config
        self.client = client or redis.from_url(
            config.redis_url, encoding="utf-8", decode_responses=True
        )

    async def get(self, key: str) -> object | None:
        try:
            cached = await self.client.get(key)
            if cached:
                return json.loads(cached)
        except Exception as e:
            logger.warning(f"Redis get error for key {key}: {e}")
        return None

    async def set(self, key: str, value: object) -> bool:
        try:
            await self.client.setex(key, self.config.ttl_seconds, json.dumps(value))
            return True
        except Exception as e:
            logger.warning(f"Redis set error for key {key}: {e}")
            return False

    async def close(self) -> None:
        await self.client.aclose()


class CachedEmbeddingService(EmbeddingService):
    """Embedding service decorator that caches single-text lookups.

    Only ``embed_text`` (the query path) is cached; ingestion batches go
    straight to the wrapped service.
    """

    def __init__(self, inner: EmbeddingService, cache: RedisCache, model: str):
        self.inner = inner
        self.cache = cache
        self.model = model
        self.max_dimension = inner.max_dimension

    def _key(self, text: str) -> str:
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
        return f"embedding:{self.model}:{self.max_dimension}:{digest}"

    async def embed_batch(self, texts: Sequence[str]) -> EmbeddingBatch:
        return await self.inner.embed_batch(texts)

    async def embed_text(self, text: str) -> list[float]:
        key = self._key(text)
        cached = await self.cache.get(key)
        if isinstance(cached, list):
            return cached

        vector = await self.inner.embed_text(text)
        await self.cache.set(key, vector)
        return vector
