import unittest

from tanuki.models import Series
from tanuki.schemas import AniListTitle
from tanuki.services.anilist import AniListAdapter
from tanuki.services.anilist_matcher import AniListMatcher, title_similarity

from tanuki_fakes import FakeAniListClient, make_session, media_payload


class TestAniListMatcher(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.db = make_session()
        self.client = FakeAniListClient({
            30: media_payload(30, "Spy x Family", ["Comedy"]),
        })
        self.matcher = AniListMatcher(self.db, AniListAdapter(self.client))

    def tearDown(self):
        self.db.close()

    def test_title_similarity(self):
        title = AniListTitle(romaji="SPY x FAMILY", english="Spy x Family")
        self.assertEqual(title_similarity("Spy x Family!", title), 1.0)
        self.assertLess(title_similarity("Naruto", title), 0.5)
        self.assertEqual(title_similarity("Naruto", AniListTitle()), 0.0)

    async def test_search_match(self):
        self.assertEqual(await self.matcher.match("https://www.crunchyroll.com/series/G1/spy", "Spy x Family"), 30)
        self.assertIsNone(await self.matcher.match("https://www.crunchyroll.com/series/G2/x", "Unknown"))

    async def test_cached_match_skips_search(self):
        url = "https://www.crunchyroll.com/series/G1/spy"
        self.db.add(Series(
            provider="crunchyroll", external_id="G1", url=url, title="Spy x Family",
            metadata_={"anilist_id": 99},
        ))
        self.db.commit()
        self.assertEqual(await self.matcher.match(url, "Spy x Family"), 99)
        self.assertEqual(self.client.calls, [])


if __name__ == "__main__":
    unittest.main()
