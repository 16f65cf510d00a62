"""
In-memory stand-ins shared by the unit tests: a SQLite session, a dict-backed
Redis, and an AniList client that serves canned GraphQL payloads.
"""
from typing import Dict, List, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tanuki.models import Base
from tanuki.schemas import SeriesMetadata, SeriesOut, TagOut


def make_session():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)()


class FakeRedis:
    def __init__(self):
        self.store: Dict[str, str] = {}
        self.expiry: Dict[str, Optional[int]] = {}

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self.store[key] = value
        self.expiry[key] = ex
        return True

    async def delete(self, key):
        self.expiry.pop(key, None)
        return 1 if self.store.pop(key, None) is not None else 0


def streaming_links(media_id: int, site: str = "Netflix") -> List[dict]:
    return [{"url": f"https://stream.example/{media_id}", "site": site, "type": "STREAMING"}]


def media_payload(
    media_id: int,
    title: str,
    genres: List[str],
    media_type: str = "ANIME",
    relations: Optional[List[tuple]] = None,
    recommendations: Optional[List[int]] = None,
    links: Optional[List[dict]] = None,
    tags: Optional[List[dict]] = None,
    unlinked: frozenset = frozenset(),
) -> dict:
    """AniList ``Media`` object as the GraphQL API returns it.

    ``relations`` holds ``(relation_type, media_id)`` pairs; ids in
    ``unlinked`` are exposed without streaming links.
    """
    def node(other_id):
        return {
            "id": other_id,
            "title": {"romaji": f"Media {other_id}", "english": None},
            "type": media_type,
            "externalLinks": [] if other_id in unlinked else streaming_links(other_id),
        }

    return {
        "id": media_id,
        "type": media_type,
        "title": {"romaji": title, "english": title, "native": None},
        "description": "",
        "genres": genres,
        "tags": tags or [],
        "averageScore": 80,
        "popularity": 1000,
        "externalLinks": streaming_links(media_id) if links is None else links,
        "relations": {"edges": [{"relationType": rel, "node": node(other)} for rel, other in relations or []]},
        "recommendations": {
            "edges": [{"node": {"rating": 10, "mediaRecommendation": node(other)}} for other in recommendations or []]
        },
    }


class FakeAniListClient:
    """Serves ``Media`` payloads by id (and by exact title for searches).

    Like AniList, an id lookup filtered to a different media type finds nothing.
    """

    def __init__(self, media: Dict[int, dict]):
        self.media = media
        self.calls: List[dict] = []
        self.callbacks = []

    def add_rate_limit_callback(self, callback):
        self.callbacks.append(callback)

    def remove_rate_limit_callback(self, callback):
        if callback in self.callbacks:
            self.callbacks.remove(callback)

    async def execute(self, query, variables=None):
        variables = variables or {}
        self.calls.append(variables)
        if "search" in variables:
            matches = [m for m in self.media.values() if m["title"]["english"] == variables["search"]]
            if "perPage" in variables:
                return {"Page": {"media": matches}}
            return {"Media": matches[0] if matches else None}
        media = self.media.get(variables.get("id"))
        if media is not None and variables.get("type") not in (None, media["type"]):
            media = None
        return {"Media": media}


def make_series(series_id: str, tags: List[str], links: Optional[Dict[str, str]] = None, url: Optional[str] = None) -> SeriesOut:
    return SeriesOut(
        id=series_id,
        provider="anilist",
        external_id=f"anilist-{series_id}",
        url=url or f"anilist://{series_id}",
        title=f"Series {series_id}",
        tags=[TagOut(value=t, source="genre") for t in tags],
        metadata=SeriesMetadata(streaming_links=links or {}),
    )
