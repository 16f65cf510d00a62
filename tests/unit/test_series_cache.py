import unittest

from tanuki.models import Series
from tanuki.schemas import RawSeriesData, RelatedMedia
from tanuki.services.anilist import AniListAdapter
from tanuki.services.errors import NotFound, UnsupportedProvider
from tanuki.services.providers import AdapterRegistry, CrunchyrollAdapter
from tanuki.services.series_cache import SeriesCacheService

from tanuki_fakes import FakeAniListClient, make_session, media_payload
from test_providers import FakeBridge


def franchise():
    """Three seasons chained by PREQUEL/SEQUEL relations."""
    return {
        10: media_payload(10, "Season One", ["Action"], relations=[("SEQUEL", 11)]),
        11: media_payload(11, "Season Two", ["Action"], relations=[("PREQUEL", 10), ("SEQUEL", 12)]),
        12: media_payload(12, "Season Three", ["Action"], relations=[("PREQUEL", 11)]),
    }


class TestSeriesCache(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.db = make_session()
        self.client = FakeAniListClient(franchise())
        self.cache = SeriesCacheService(self.db, AniListAdapter(self.client))

    def tearDown(self):
        self.db.close()

    async def test_resolve_by_external_id_walks_back_to_first_season(self):
        series = await self.cache.resolve_by_external_id(12)
        self.assertEqual(series.metadata.anilist_id, 10)
        self.assertEqual(series.title, "Season One")
        self.assertEqual(series.url, "anilist://10")
        self.assertEqual(self.db.query(Series).count(), 1)

    async def test_search_by_title_canonicalizes_and_reuses_cache(self):
        first = await self.cache.search_and_cache_by_title("Season Two")
        self.assertEqual(first.metadata.anilist_id, 10)
        calls = len(self.client.calls)

        again = await self.cache.search_and_cache_by_title("Season Three")
        self.assertEqual(again.id, first.id)
        # Search, then the prequel walk 12 -> 11 -> 10; no second row is written
        self.assertEqual(len(self.client.calls) - calls, 4)
        self.assertEqual(self.db.query(Series).count(), 1)

    async def test_search_unknown_title_raises_not_found(self):
        with self.assertRaises(NotFound):
            await self.cache.search_and_cache_by_title("Nothing Like This")

    async def test_prequel_cycle_terminates(self):
        self.client.media = {
            20: media_payload(20, "Loop A", ["Drama"], relations=[("PREQUEL", 21)]),
            21: media_payload(21, "Loop B", ["Drama"], relations=[("PREQUEL", 20)]),
        }
        series = await self.cache.resolve_by_external_id(20)
        self.assertEqual(series.metadata.anilist_id, 21)

    async def test_get_series_is_cache_first(self):
        created = await self.cache.get_series("anilist://10")
        calls = len(self.client.calls)
        cached = await self.cache.get_series("anilist://10")
        self.assertEqual(created.id, cached.id)
        self.assertEqual(len(self.client.calls), calls)
        self.assertEqual(created.tag_values, ["action"])

    async def test_get_series_takes_media_type_from_anilist(self):
        self.client.media[40] = media_payload(40, "Vagabond", ["Action"], media_type="MANGA")
        series = await self.cache.get_series("anilist://40")
        self.assertEqual(series.media_type, "MANGA")
        self.assertEqual(self.client.calls[-1], {"id": 40})

    async def test_get_series_unknown_anilist_id(self):
        with self.assertRaises(NotFound):
            await self.cache.get_series("anilist://999")

    async def test_unregistered_site_is_rejected(self):
        with self.assertRaises(UnsupportedProvider):
            await self.cache.get_series("https://www.example.com/show/1")

    async def test_creation_race_returns_existing_row(self):
        # A concurrent writer already stored the same provider key under another URL
        winner = Series(provider="anilist", external_id="anilist-10", url="anilist://10?legacy", title="Season One")
        self.db.add(winner)
        self.db.commit()

        series = await self.cache.resolve_by_external_id(10)
        self.assertEqual(series.id, winner.id)
        self.assertEqual(self.db.query(Series).count(), 1)

    async def test_create_from_related_keeps_streaming_links(self):
        related = RelatedMedia(
            anilist_id=11,
            title="Season Two",
            relation_type="SEQUEL",
            streaming_links={"Hulu": "https://www.hulu.com/series/2"},
        )
        series = await self.cache.create_from_related(related, "https://www.hulu.com/series/2", "ANIME")
        self.assertEqual(series.url, "https://www.hulu.com/series/2")
        self.assertEqual(series.metadata.streaming_links, {"Hulu": "https://www.hulu.com/series/2"})
        self.assertIsNotNone(self.cache.find_by_anilist_id(11))

    async def test_update_relations_cache(self):
        series = await self.cache.get_series("anilist://10")
        related = [RelatedMedia(anilist_id=11, title="Season Two", relation_type="SEQUEL")]
        self.cache.update_relations_cache(series.id, related)
        stored = self.cache.get_series_by_id(series.id)
        self.assertEqual([r.anilist_id for r in stored.metadata.relations], [11])
        self.assertIsNotNone(stored.metadata.relations_last_fetched)

    async def test_search_and_stats(self):
        await self.cache.get_series("anilist://10")
        await self.cache.get_series("anilist://11")
        self.assertEqual(sorted(s.title for s in self.cache.search_by_title("season")), ["Season One", "Season Two"])
        self.assertEqual(len(self.cache.search_by_title("two")), 1)

        stats = self.cache.get_cache_stats()
        self.assertEqual(stats["total_series"], 2)
        self.assertEqual(stats["total_tags"], 2)
        self.assertEqual(stats["total_relationships"], 0)
        self.assertEqual(stats["by_provider"], [{"provider": "anilist", "count": 2}])


class TestSeriesCacheWithAdapter(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.db = make_session()

    def tearDown(self):
        self.db.close()

    async def test_crunchyroll_url_is_enriched_from_anilist(self):
        url = "https://www.crunchyroll.com/series/GRDV0019R/season-one"
        bridge = FakeBridge({"FETCH_SERIES": {"id": "GRDV0019R", "title": "Season One", "url": url}})
        registry = AdapterRegistry()
        registry.register(CrunchyrollAdapter(bridge))
        cache = SeriesCacheService(self.db, AniListAdapter(FakeAniListClient(franchise())), registry=registry)

        series = await cache.get_series(url)
        self.assertEqual(series.provider, "crunchyroll")
        self.assertEqual(series.external_id, "GRDV0019R")
        self.assertEqual(series.metadata.anilist_id, 10)
        self.assertEqual(series.rating, 8.0)
        self.assertEqual(series.genres, ["Action"])

        refreshed = await cache.refresh(url)
        self.assertEqual(refreshed.id, series.id)
        self.assertEqual(self.db.query(Series).count(), 1)

    def test_persist_generates_tags(self):
        cache = SeriesCacheService(self.db, AniListAdapter(FakeAniListClient({})))
        raw = RawSeriesData(provider="anilist", external_id="anilist-5", url="anilist://5", title="Q", genres=["Comedy", "Sci-Fi"])
        series = cache._persist(raw)
        self.assertEqual(sorted(series.tag_values), ["comedy", "sci-fi"])


if __name__ == "__main__":
    unittest.main()
