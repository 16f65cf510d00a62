"""
series_cache.py

Database-first series resolution.

Lookups go to the local store first (by URL, then by the AniList id held in
series metadata). On a miss the series is fetched from its source adapter
and/or AniList, normalized, tagged and persisted. Title and id based
resolution canonicalize to the first installment of a franchise by walking
the PREQUEL chain.

Series rows are returned as ``SeriesOut`` snapshots so callers never hold on
to session-bound ORM objects.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tanuki.core.config import settings
from tanuki.models import Relationship, Series, Tag
from tanuki.schemas import AniListMedia, RawSeriesData, RelatedMedia, SeriesMetadata, SeriesOut
from tanuki.services.anilist import AniListAdapter, anilist_url, parse_anilist_url
from tanuki.services.anilist_matcher import AniListMatcher
from tanuki.services.errors import NotFound, PersistenceConflict
from tanuki.services.providers import AdapterRegistry
from tanuki.services.tag_generator import TagGenerator
from tanuki.utils.timezone import utc_now

logger = logging.getLogger(__name__)


class SeriesCacheService:
    def __init__(
        self,
        db: Session,
        anilist: Optional[AniListAdapter] = None,
        registry: Optional[AdapterRegistry] = None,
        tag_generator: Optional[TagGenerator] = None,
    ):
        self.db = db
        self.anilist = anilist or AniListAdapter()
        self.registry = registry or AdapterRegistry()
        self.tag_generator = tag_generator or TagGenerator()
        self.matcher = AniListMatcher(db, self.anilist)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def find_by_url(self, url: str) -> Optional[Series]:
        return self.db.query(Series).filter(Series.url == url).first()

    def find_by_anilist_id(self, anilist_id: int) -> Optional[Series]:
        return (
            self.db.query(Series)
            .filter(Series.metadata_["anilist_id"].as_integer() == anilist_id)
            .first()
        )

    def find_by_provider_key(self, provider: str, external_id: str) -> Optional[Series]:
        return (
            self.db.query(Series)
            .filter(Series.provider == provider, Series.external_id == external_id)
            .first()
        )

    def get_series_by_id(self, series_id: str) -> Optional[SeriesOut]:
        row = self.db.get(Series, series_id)
        return SeriesOut.from_record(row) if row else None

    def search_by_title(self, query: str, limit: int = 10) -> List[SeriesOut]:
        """Case-insensitive substring search over cached series, newest first."""
        rows = (
            self.db.query(Series)
            .filter(Series.title.ilike(f"%{query}%"))
            .order_by(Series.fetched_at.desc())
            .limit(limit)
            .all()
        )
        return [SeriesOut.from_record(r) for r in rows]

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def get_series(self, url: str, force_refresh: bool = False) -> SeriesOut:
        """Resolve a URL to a cached series, fetching it on a miss.

        ``anilist://<id>`` URLs resolve through AniList directly; any other
        URL goes through the adapter registered for its site.
        """
        if not force_refresh:
            cached = self.find_by_url(url)
            if cached is None:
                anilist_id = parse_anilist_url(url)
                if anilist_id is not None:
                    cached = self.find_by_anilist_id(anilist_id)
            if cached is not None:
                logger.debug(f"Series cache hit for {url} ({cached.id})")
                return SeriesOut.from_record(cached)

        logger.info(f"Series cache miss for {url}, fetching from provider")
        anilist_id = parse_anilist_url(url)
        if anilist_id is not None:
            # The id alone identifies the entry; its type comes back with the media
            media = await self._fetch_media(anilist_id, None)
            raw = self.anilist.normalize_to_raw_series(media, url)
            return self._persist(raw, replace=force_refresh)
        return await self._fetch_from_adapter(url, force_refresh)

    resolve = get_series

    async def refresh(self, url: str) -> SeriesOut:
        return await self.get_series(url, force_refresh=True)

    async def resolve_by_external_id(self, anilist_id: int, media_type: str = "ANIME") -> SeriesOut:
        """Resolve an AniList id to the cached first installment of its franchise."""
        existing = self.find_by_anilist_id(anilist_id)
        if existing is not None:
            return SeriesOut.from_record(existing)

        media = await self._fetch_media(anilist_id, media_type)
        return await self._cache_canonical(media, media_type)

    async def search_and_cache_by_title(self, title: str, media_type: str = "ANIME") -> SeriesOut:
        """Search AniList by title and cache the best match's first installment."""
        found = await self.anilist.search_media(title, media_type)
        if found is None:
            raise NotFound(f"No {media_type.lower()} found with title: {title}")

        existing = self.find_by_anilist_id(found.id)
        if existing is not None:
            logger.info(f"Series '{existing.title}' already cached ({existing.id})")
            return SeriesOut.from_record(existing)

        media = await self._fetch_media(found.id, media_type)
        return await self._cache_canonical(media, media_type)

    async def create_from_related(self, related: RelatedMedia, url: str, media_type: str) -> SeriesOut:
        """Fetch and cache a related-media entry discovered during a trace."""
        media = await self._fetch_media(related.anilist_id, media_type)
        raw = self.anilist.normalize_to_raw_series(media, url)
        if related.streaming_links:
            raw.metadata.streaming_links = dict(related.streaming_links)
        return self._persist(raw)

    async def _cache_canonical(self, media: AniListMedia, media_type: str) -> SeriesOut:
        root = await self.walk_prequels(media, media_type)
        if root.id != media.id:
            logger.info(
                f"Using original series '{root.title.display()}' ({root.id}) "
                f"instead of '{media.title.display()}' ({media.id})"
            )
            existing = self.find_by_anilist_id(root.id)
            if existing is not None:
                return SeriesOut.from_record(existing)

        raw = self.anilist.normalize_to_raw_series(root, anilist_url(root.id))
        return self._persist(raw)

    async def walk_prequels(self, media: AniListMedia, media_type: str) -> AniListMedia:
        """Follow same-type PREQUEL relations back to the earliest entry.

        Stops on a cycle, a missing prequel, or after the configured hop limit.
        """
        current = media
        visited = {media.id}
        for _ in range(settings.prequel_hop_limit):
            edge = next(
                (e for e in current.relation_edges()
                 if e.relation_type == "PREQUEL" and e.node.type == media_type),
                None,
            )
            if edge is None:
                break
            prequel_id = edge.node.id
            if prequel_id in visited:
                logger.warning(f"Circular PREQUEL relation between {current.id} and {prequel_id}")
                break
            visited.add(prequel_id)

            logger.info(f"Following PREQUEL relation {current.id} -> {prequel_id}")
            prequel = await self.anilist.get_media_with_relations(prequel_id, media_type)
            if prequel is None:
                break
            current = prequel
        else:
            logger.warning(f"Stopped PREQUEL walk from {media.id} after {settings.prequel_hop_limit} hops")
        return current

    async def _fetch_media(self, anilist_id: int, media_type: Optional[str]) -> AniListMedia:
        media = await self.anilist.get_media_with_relations(anilist_id, media_type)
        if media is None:
            label = (media_type or "media").lower()
            raise NotFound(f"No {label} found on AniList with id {anilist_id}")
        return media

    async def _fetch_from_adapter(self, url: str, force_refresh: bool) -> SeriesOut:
        adapter = self.registry.get_adapter_or_raise(url)
        parsed = adapter.parse_url(url)
        raw = await adapter.fetch_series(parsed["id"])
        if not raw.url:
            raw.url = parsed.get("metadata", {}).get("clean_url") or url
        logger.info(f"Fetched basic series data for '{raw.title}' from {adapter.provider}")

        anilist_id = await self.matcher.match(url, raw.title)
        if anilist_id:
            media = await self.anilist.get_media_with_relations(anilist_id)
            if media is not None:
                enriched = self.anilist.normalize_to_raw_series(media, raw.url)
                raw.description = enriched.description or raw.description
                raw.rating = enriched.rating or raw.rating
                raw.genres = enriched.genres
                raw.title_image = enriched.title_image or raw.title_image
                raw.metadata = SeriesMetadata.model_validate({
                    **raw.metadata.model_dump(exclude_none=True),
                    **enriched.metadata.model_dump(exclude_none=True),
                })
                logger.info(f"Enriched '{raw.title}' with AniList data ({len(raw.genres)} genres)")
        else:
            logger.warning(f"No AniList match for '{raw.title}', using {adapter.provider} data only")

        return self._persist(raw, replace=True)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist(self, raw: RawSeriesData, replace: bool = False) -> SeriesOut:
        """Insert a series with generated tags.

        With ``replace`` an existing row with the same URL is updated in
        place and its tags regenerated. A unique-constraint race is resolved
        by returning the row that won it.
        """
        tags = self.tag_generator.generate_tags(raw)
        row = self.find_by_url(raw.url) if replace else None

        if row is None:
            row = Series(provider=raw.provider, external_id=raw.external_id, url=raw.url)
            self.db.add(row)
        else:
            row.tags.clear()

        row.media_type = raw.media_type
        row.title = raw.title
        row.title_image = raw.title_image
        row.description = raw.description
        row.rating = raw.rating
        row.age_rating = raw.age_rating
        row.languages = raw.languages
        row.genres = raw.genres
        row.content_advisory = raw.content_advisory
        row.metadata_ = raw.metadata.to_column()
        row.tags.extend(
            Tag(value=t.value, source=t.source, confidence=t.confidence, category=t.category)
            for t in tags
        )

        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"Series {raw.provider}/{raw.external_id} already exists (concurrent insert), re-reading")
            winner = self.find_by_provider_key(raw.provider, raw.external_id) or self.find_by_url(raw.url)
            if winner is None:
                logger.error(f"Failed to re-read series {raw.provider}/{raw.external_id} after unique constraint error")
                raise PersistenceConflict(f"Could not persist or re-read series {raw.provider}/{raw.external_id}")
            return SeriesOut.from_record(winner)

        self.db.refresh(row)
        logger.info(f"Series cached: '{row.title}' ({row.id}, {len(row.tags)} tags)")
        return SeriesOut.from_record(row)

    def update_relations_cache(self, series_id: str, relations: List[RelatedMedia]) -> None:
        """Store a fetched related-media set in the series metadata."""
        row = self.db.get(Series, series_id)
        if row is None:
            return
        metadata = SeriesMetadata.model_validate(row.metadata_ or {})
        metadata.relations = relations
        metadata.relations_last_fetched = utc_now()
        row.metadata_ = metadata.to_column()
        self.db.commit()

    def get_cache_stats(self) -> Dict[str, Any]:
        by_provider = self.db.query(Series.provider, func.count(Series.id)).group_by(Series.provider).all()
        by_media_type = self.db.query(Series.media_type, func.count(Series.id)).group_by(Series.media_type).all()
        return {
            "total_series": self.db.query(func.count(Series.id)).scalar(),
            "total_tags": self.db.query(func.count(Tag.id)).scalar(),
            "total_relationships": self.db.query(func.count(Relationship.id)).scalar(),
            "by_provider": [{"provider": p, "count": c} for p, c in by_provider],
            "by_media_type": [{"media_type": m, "count": c} for m, c in by_media_type],
        }
