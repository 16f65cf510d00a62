import json
import time
import unittest

from tanuki.schemas import RelationshipEdge, SeriesNode, SeriesRelationship
from tanuki.services.graph_cache import GraphCache, graph_cache_key

from tanuki_fakes import FakeRedis, make_series


class BrokenRedis:
    async def get(self, key):
        raise ConnectionError("redis unavailable")

    async def set(self, key, value, ex=None):
        raise ConnectionError("redis unavailable")

    async def delete(self, key):
        raise ConnectionError("redis unavailable")


def sample_graph():
    return SeriesRelationship(
        root_id="a",
        nodes=[
            SeriesNode(series=make_series("a", ["action"]), depth=0, cluster="cluster-0"),
            SeriesNode(series=make_series("b", ["action", "drama"]), depth=1, cluster="cluster-0"),
        ],
        edges=[RelationshipEdge(from_id="a", to_id="b", similarity=0.5, shared_tags=["action"], relation_type="SEQUEL")],
        seed_series_ids=["a"],
    )


class TestGraphCache(unittest.IsolatedAsyncioTestCase):
    def test_key(self):
        self.assertEqual(graph_cache_key("abc", 3), "relationship_graph:abc_3")

    async def test_round_trip(self):
        redis = FakeRedis()
        cache = GraphCache(redis)
        graph = sample_graph()
        await cache.set(graph, 3)

        self.assertEqual(redis.expiry["relationship_graph:a_3"], 86400)
        stored = json.loads(redis.store["relationship_graph:a_3"])
        self.assertEqual(stored["graph"]["edges"][0]["from"], "a")

        loaded = await cache.get("a", 3)
        self.assertEqual(loaded.model_dump(), graph.model_dump())
        self.assertIsNone(await cache.get("a", 2))

    async def test_expired_entry_is_dropped(self):
        redis = FakeRedis()
        cache = GraphCache(redis, ttl_seconds=60)
        entry = {"graph": sample_graph().model_dump(mode="json", by_alias=True), "timestamp": time.time() - 61}
        redis.store["relationship_graph:a_3"] = json.dumps(entry)

        self.assertIsNone(await cache.get("a", 3))
        self.assertNotIn("relationship_graph:a_3", redis.store)

    async def test_corrupt_entry_is_a_miss(self):
        redis = FakeRedis()
        redis.store["relationship_graph:a_3"] = "{not json"
        self.assertIsNone(await GraphCache(redis).get("a", 3))

    async def test_redis_failures_are_misses(self):
        cache = GraphCache(BrokenRedis())
        await cache.set(sample_graph(), 3)
        self.assertIsNone(await cache.get("a", 3))
        await cache.invalidate("a", 3)

    async def test_invalidate(self):
        redis = FakeRedis()
        cache = GraphCache(redis)
        await cache.set(sample_graph(), 3)
        await cache.invalidate("a", 3)
        self.assertIsNone(await cache.get("a", 3))


if __name__ == "__main__":
    unittest.main()
