"""
anilist_matcher.py

Match a streaming-site series to its AniList entry by title. A match already
recorded in the cached row's metadata short-circuits the search.
"""
import difflib
import logging
import re
from typing import Optional

from sqlalchemy.orm import Session

from tanuki.models import Series
from tanuki.schemas import AniListTitle
from tanuki.services.anilist import AniListAdapter
from tanuki.services.errors import TanukiError

logger = logging.getLogger(__name__)

LOW_SIMILARITY_WARNING = 0.7

_PUNCTUATION = re.compile(r"[^\w\s]")


def _normalize_title(title: str) -> str:
    return _PUNCTUATION.sub("", title.lower()).strip()


def title_similarity(title: str, candidate: AniListTitle) -> float:
    """Best ratio between ``title`` and any of the AniList title variants."""
    source = _normalize_title(title)
    variants = [t for t in (candidate.romaji, candidate.english, candidate.native) if t]
    if not variants:
        return 0.0
    return max(difflib.SequenceMatcher(None, source, _normalize_title(v)).ratio() for v in variants)


class AniListMatcher:
    def __init__(self, db: Session, adapter: Optional[AniListAdapter] = None):
        self.db = db
        self.adapter = adapter or AniListAdapter()

    async def match(self, url: str, title: str) -> Optional[int]:
        cached = self.db.query(Series).filter(Series.url == url).first()
        if cached and (cached.metadata_ or {}).get("anilist_id"):
            anilist_id = cached.metadata_["anilist_id"]
            logger.info(f"Using cached AniList match {anilist_id} for {url}")
            return anilist_id

        try:
            media = await self.adapter.search_media(title)
        except TanukiError as e:
            logger.error(f"Error matching '{title}' to AniList: {e}")
            return None
        if media is None:
            return None

        similarity = title_similarity(title, media.title)
        if similarity < LOW_SIMILARITY_WARNING:
            # Still returned; callers decide whether to trust it
            logger.warning(f"AniList match '{media.title.display()}' for '{title}' has low similarity ({similarity:.2f})")
        logger.info(f"Matched '{title}' to AniList {media.id} ('{media.title.display()}', similarity {similarity:.2f})")
        return media.id
