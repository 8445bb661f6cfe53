"""
Redis cache in front of the similarity oracle.

Pairwise similarity and urgency scores are stable for the same inputs, so
repeat comparisons (the same open issue checked against a burst of new
reports) are served from Redis. Cache failures are logged and ignored;
oracle errors are never cached.
"""

import hashlib
import json
import logging
from typing import Any, Optional

import redis.asyncio as redis

from civic_issues.models.issue_model import AIAnalysis, DamageDepth, SentimentScores
from civic_issues.services.similarity_oracle import SimilarityOracle

logger = logging.getLogger(__name__)


def generate_cache_key(prefix: str, *parts: str) -> str:
    digest = hashlib.md5("\x1f".join(parts).encode("utf-8")).hexdigest()
    return f"oracle:{prefix}:{digest}"


async def connect_redis(redis_url: Optional[str]) -> Optional[redis.Redis]:
    """Connect and ping; returns None (cache disabled) on any failure."""
    if not redis_url:
        logger.info("REDIS_URL not set; oracle cache disabled")
        return None
    if not redis_url.startswith(("redis://", "rediss://", "unix://")):
        logger.warning(f"⚠️ Malformed REDIS_URL detected. Auto-fixing to 'redis://{redis_url}'")
        redis_url = f"redis://{redis_url}"
    try:
        client = redis.from_url(redis_url, decode_responses=True, socket_connect_timeout=5)
        await client.ping()
        logger.info("✅ Redis connected for oracle cache")
        return client
    except Exception as e:
        logger.warning(f"⚠️ Redis unavailable, continuing without oracle cache: {e}")
        return None


class CachedSimilarityOracle(SimilarityOracle):
    """Wraps another oracle and memoizes its scores in Redis."""

    def __init__(self, inner: SimilarityOracle, client: redis.Redis, ttl: int = 3600):
        self.inner = inner
        self.client = client
        self.ttl = ttl
        self.provider = inner.provider

    @property
    def available(self) -> bool:
        return self.inner.available

    async def _get(self, key: str) -> Optional[Any]:
        try:
            cached = await self.client.get(key)
            if cached is not None:
                return json.loads(cached)
        except Exception as e:
            logger.warning(f"Cache retrieval error for key {key}: {e}")
        return None

    async def _set(self, key: str, value: Any) -> None:
        try:
            await self.client.setex(key, self.ttl, json.dumps(value, default=str))
        except Exception as e:
            logger.warning(f"Cache storage error for key {key}: {e}")

    async def text_similarity(self, text1: str, text2: str) -> float:
        # Similarity is symmetric; order the pair so both directions share a key
        key = generate_cache_key("text", *sorted((text1, text2)))
        cached = await self._get(key)
        if cached is not None:
            return float(cached)
        score = await self.inner.text_similarity(text1, text2)
        await self._set(key, score)
        return score

    async def image_similarity(self, image_url1: str, image_url2: str) -> float:
        key = generate_cache_key("image", *sorted((image_url1, image_url2)))
        cached = await self._get(key)
        if cached is not None:
            return float(cached)
        score = await self.inner.image_similarity(image_url1, image_url2)
        await self._set(key, score)
        return score

    async def sentiment_urgency(self, text: str) -> SentimentScores:
        key = generate_cache_key("sentiment", text)
        cached = await self._get(key)
        if cached is not None:
            return SentimentScores(**cached)
        scores = await self.inner.sentiment_urgency(text)
        await self._set(key, scores.model_dump())
        return scores

    async def analyze_image(self, image_url: str) -> AIAnalysis:
        return await self.inner.analyze_image(image_url)

    async def describe_image(self, image_url: str) -> str:
        return await self.inner.describe_image(image_url)

    async def estimate_damage_depth(self, image_url: str, category: str) -> DamageDepth:
        return await self.inner.estimate_damage_depth(image_url, category)
