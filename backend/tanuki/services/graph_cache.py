"""
graph_cache.py

Redis-backed cache of traced relationship graphs.

Cache Strategy:
- Cache key: relationship_graph:{root_id}_{max_depth}
- Cache TTL: 24 hours (Redis expiry, re-checked against the stored timestamp)
- Redis failures are logged and treated as a miss
"""
import json
import logging
import time
from typing import Any, Optional

from tanuki.core.config import settings
from tanuki.schemas import SeriesRelationship

logger = logging.getLogger(__name__)

CACHE_PREFIX = "relationship_graph:"


def graph_cache_key(root_id: str, max_depth: int) -> str:
    return f"{CACHE_PREFIX}{root_id}_{max_depth}"


class GraphCache:
    """Stores graphs as JSON. ``redis`` is any client with async get/set/delete."""

    def __init__(self, redis: Optional[Any] = None, ttl_seconds: Optional[int] = None):
        if redis is None:
            from tanuki.core.redis_client import get_redis
            redis = get_redis()
        self.redis = redis
        self.ttl_seconds = ttl_seconds or settings.graph_cache_ttl_seconds

    async def get(self, root_id: str, max_depth: int) -> Optional[SeriesRelationship]:
        key = graph_cache_key(root_id, max_depth)
        try:
            cached = await self.redis.get(key)
        except Exception as e:
            logger.warning(f"Graph cache read failed for {key}: {e}")
            return None
        if not cached:
            return None

        try:
            entry = json.loads(cached)
            age = time.time() - entry["timestamp"]
            if age >= self.ttl_seconds:
                logger.info(f"Cached graph {key} expired, rebuilding")
                await self.invalidate(root_id, max_depth)
                return None
            graph = SeriesRelationship.model_validate(entry["graph"])
        except Exception as e:
            logger.warning(f"Failed to parse cached graph {key}: {e}")
            return None

        logger.info(f"Using cached graph {key} ({len(graph.nodes)} nodes, {round(age / 60)} minutes old)")
        return graph

    async def set(self, graph: SeriesRelationship, max_depth: int) -> None:
        key = graph_cache_key(graph.root_id, max_depth)
        entry = {
            "graph": graph.model_dump(mode="json", by_alias=True),
            "timestamp": time.time(),
        }
        try:
            await self.redis.set(key, json.dumps(entry), ex=self.ttl_seconds)
            logger.debug(f"Cached graph {key} ({len(graph.nodes)} nodes)")
        except Exception as e:
            logger.warning(f"Failed to cache graph {key}: {e}")

    async def invalidate(self, root_id: str, max_depth: int) -> None:
        key = graph_cache_key(root_id, max_depth)
        try:
            await self.redis.delete(key)
        except Exception as e:
            logger.warning(f"Failed to invalidate cached graph {key}: {e}")
