"""
anilist.py

AniList adapter: GraphQL queries for media lookup and search, normalization
of AniList media into RawSeriesData, and extraction of related media
(relations + recommendations) with their streaming links.
"""
import logging
import re
from typing import Dict, List, Optional

from tanuki.core.config import settings
from tanuki.schemas import AniListMedia, ExternalLink, RawSeriesData, RelatedMedia, SeriesMetadata
from tanuki.services.anilist_client import AniListClient, RateLimitCallback
from tanuki.services.errors import NotFound

logger = logging.getLogger(__name__)

ANILIST_URL_PREFIX = "anilist://"

_LINK_FIELDS = """
    url
    site
    type
"""

_MEDIA_FIELDS = f"""
    id
    type
    title {{
      romaji
      english
      native
    }}
    description
    isAdult
    genres
    tags {{
      name
      rank
      isMediaSpoiler
    }}
    averageScore
    popularity
    format
    status
    episodes
    chapters
    volumes
    duration
    season
    seasonYear
    coverImage {{
      large
    }}
    externalLinks {{{_LINK_FIELDS}}}
"""

_RELATED_NODE_FIELDS = f"""
    id
    title {{
      romaji
      english
    }}
    type
    isAdult
    format
    status
    externalLinks {{{_LINK_FIELDS}}}
"""

MEDIA_WITH_RELATIONS_QUERY = f"""
query ($id: Int, $type: MediaType, $isAdult: Boolean) {{
  Media(id: $id, type: $type, isAdult: $isAdult) {{
    {_MEDIA_FIELDS}
    relations {{
      edges {{
        relationType
        node {{{_RELATED_NODE_FIELDS}}}
      }}
    }}
    recommendations(sort: RATING_DESC, perPage: 20) {{
      edges {{
        node {{
          rating
          mediaRecommendation {{{_RELATED_NODE_FIELDS}}}
        }}
      }}
    }}
  }}
}}
"""

SEARCH_MEDIA_QUERY = f"""
query ($search: String, $type: MediaType, $isAdult: Boolean) {{
  Media(search: $search, type: $type, isAdult: $isAdult) {{
    {_MEDIA_FIELDS}
  }}
}}
"""

SEARCH_MEDIA_PAGE_QUERY = """
query ($search: String, $type: MediaType, $perPage: Int, $isAdult: Boolean) {
  Page(page: 1, perPage: $perPage) {
    media(search: $search, type: $type, isAdult: $isAdult, sort: SEARCH_MATCH) {
      id
      type
      title {
        romaji
        english
        native
      }
      description
      isAdult
      format
      status
      episodes
      chapters
      volumes
      season
      seasonYear
      coverImage {
        large
        medium
      }
    }
  }
}
"""

_HTML_TAG = re.compile(r"<[^>]*>")
_CR_SERIES_ID = re.compile(r"/series/([^/?]+)")
_CR_SLUG = re.compile(r"crunchyroll\.com/([^/?#]+)/?$")


def anilist_url(anilist_id: int) -> str:
    """Synthetic URL for series that have no streaming page of their own."""
    return f"{ANILIST_URL_PREFIX}{anilist_id}"


def parse_anilist_url(url: str) -> Optional[int]:
    if not url.startswith(ANILIST_URL_PREFIX):
        return None
    try:
        return int(url[len(ANILIST_URL_PREFIX):])
    except ValueError:
        return None


class AniListAdapter:
    """Typed access to the AniList queries the engine consumes."""

    provider = "anilist"

    def __init__(self, client: Optional[AniListClient] = None):
        self.client = client or AniListClient()

    def add_rate_limit_callback(self, callback: RateLimitCallback) -> None:
        self.client.add_rate_limit_callback(callback)

    def remove_rate_limit_callback(self, callback: RateLimitCallback) -> None:
        self.client.remove_rate_limit_callback(callback)

    async def search_media(self, title: str, media_type: str = "ANIME", is_adult: Optional[bool] = None) -> Optional[AniListMedia]:
        logger.info(f"Searching AniList for {media_type.lower()} '{title}'")
        variables = {"search": title, "type": media_type}
        if is_adult is not None:
            variables["isAdult"] = is_adult
        try:
            data = await self.client.execute(SEARCH_MEDIA_QUERY, variables)
        except NotFound:
            data = {}
        if not data.get("Media"):
            logger.warning(f"No {media_type.lower()} found on AniList for '{title}'")
            return None
        media = AniListMedia.model_validate(data["Media"])
        logger.info(f"Found AniList match {media.id} ('{media.title.display()}') for '{title}'")
        return media

    async def search_media_multiple(
        self,
        title: str,
        media_type: str = "ANIME",
        per_page: int = 10,
        is_adult: Optional[bool] = None,
    ) -> List[AniListMedia]:
        """Search results for user selection, best match first."""
        variables = {"search": title, "type": media_type, "perPage": per_page}
        if is_adult is not None:
            variables["isAdult"] = is_adult
        try:
            data = await self.client.execute(SEARCH_MEDIA_PAGE_QUERY, variables)
        except NotFound:
            return []
        media = ((data.get("Page") or {}).get("media")) or []
        logger.info(f"Found {len(media)} AniList results for '{title}'")
        return [AniListMedia.model_validate(m) for m in media]

    async def get_media_with_relations(
        self,
        anilist_id: int,
        media_type: Optional[str] = "ANIME",
        is_adult: Optional[bool] = None,
    ) -> Optional[AniListMedia]:
        """Fetch one media entry with its relations and top recommendations.

        With ``media_type=None`` the id is looked up regardless of type.
        Returns None when AniList has no such entry (or it has another type).
        Quota and transport failures propagate.
        """
        label = (media_type or "media").lower()
        logger.info(f"Fetching {label} {anilist_id} with relations from AniList")
        variables = {"id": anilist_id}
        if media_type:
            variables["type"] = media_type
        if is_adult is not None:
            variables["isAdult"] = is_adult
        try:
            data = await self.client.execute(MEDIA_WITH_RELATIONS_QUERY, variables)
        except NotFound:
            data = {}
        if not data.get("Media"):
            logger.warning(f"No {label} found on AniList for id {anilist_id}")
            return None
        media = AniListMedia.model_validate(data["Media"])
        logger.debug(
            f"Fetched AniList {media.id}: {len(media.relation_edges())} relations, "
            f"{len(media.recommendation_edges())} recommendations"
        )
        return media

    def normalize_to_raw_series(self, media: AniListMedia, url: str = "") -> RawSeriesData:
        """Convert AniList media into the provider-neutral record."""
        crunchyroll_link = self.extract_crunchyroll_link(media.external_links)
        url = url or crunchyroll_link or anilist_url(media.id)

        match = _CR_SERIES_ID.search(url)
        external_id = match.group(1) if match else None
        if not external_id:
            slug = _CR_SLUG.search(url)
            external_id = slug.group(1) if slug else f"anilist-{media.id}"

        description = _HTML_TAG.sub("", media.description).strip() if media.description else ""

        top_tags = [
            tag.name for tag in media.tags
            if not tag.is_media_spoiler and tag.rank >= settings.tag_rank_threshold
        ][:settings.top_tags_limit]

        metadata = SeriesMetadata(
            anilist_id=media.id,
            format=media.format,
            status=media.status,
            episodes=media.episodes,
            chapters=media.chapters,
            volumes=media.volumes,
            duration=media.duration,
            season=media.season,
            season_year=media.season_year,
            popularity=media.popularity,
            anilist_tags=media.tags,
            streaming_links=self.extract_streaming_links(media.external_links),
        )

        return RawSeriesData(
            provider="crunchyroll" if "crunchyroll.com" in url else self.provider,
            media_type=media.type or "ANIME",
            external_id=external_id,
            url=url,
            title=media.title.display(),
            title_image=media.cover_image.large if media.cover_image else None,
            description=description,
            rating=media.average_score / 10 if media.average_score else None,
            is_adult=media.is_adult,
            genres=list(media.genres) + top_tags,
            metadata=metadata,
        )

    @staticmethod
    def extract_crunchyroll_link(links: List[ExternalLink]) -> Optional[str]:
        for link in links:
            if "crunchyroll" in link.site.lower():
                return link.url
        return None

    @staticmethod
    def extract_streaming_links(links: List[ExternalLink]) -> Dict[str, str]:
        """Map of platform name -> URL for video streaming and manga reading links."""
        return {link.site: link.url for link in links if link.type == "STREAMING"}

    def get_related_all_platforms(self, media: AniListMedia) -> List[RelatedMedia]:
        """Relations followed by recommendations, across anime and manga."""
        related: List[RelatedMedia] = []

        for edge in media.relation_edges():
            node = edge.node
            related.append(RelatedMedia(
                anilist_id=node.id,
                title=node.title.english or node.title.romaji or "Unknown",
                relation_type=edge.relation_type or "RELATED",
                type=node.type,
                streaming_links=self.extract_streaming_links(node.external_links),
                crunchyroll_url=self.extract_crunchyroll_link(node.external_links),
            ))

        for edge in media.recommendation_edges():
            rec = edge.node.media_recommendation
            if rec is None:
                continue
            related.append(RelatedMedia(
                anilist_id=rec.id,
                title=rec.title.english or rec.title.romaji or "Unknown",
                relation_type="RECOMMENDATION",
                type=rec.type,
                streaming_links=self.extract_streaming_links(rec.external_links),
                crunchyroll_url=self.extract_crunchyroll_link(rec.external_links),
                rating=edge.node.rating,
            ))

        with_links = sum(1 for r in related if r.streaming_links)
        logger.debug(f"AniList {media.id}: {len(related)} related media, {with_links} with streaming links")
        return related
