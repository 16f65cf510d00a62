"""
schemas.py

Pydantic schemas for the relationship graph (Series, Tag, SeriesNode,
RelationshipEdge, SeriesRelationship), trace progress events and the AniList
GraphQL payloads consumed by the engine.
"""
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Optional, Dict, List, Literal, Any
import datetime

from tanuki.utils.timezone import utc_now

MediaType = Literal["ANIME", "MANGA"]
TagSource = Literal["genre", "content", "description", "manual"]

# Relation types that describe the same franchise rather than a recommendation
DIRECT_RELATION_TYPES = frozenset({
    "SEQUEL", "PREQUEL", "PARENT", "SIDE_STORY", "SPIN_OFF",
    "ALTERNATIVE", "SOURCE", "ADAPTATION",
})


# ---------------------------------------------------------------------------
# AniList payloads
# ---------------------------------------------------------------------------

class AniListModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class AniListTitle(AniListModel):
    romaji: Optional[str] = None
    english: Optional[str] = None
    native: Optional[str] = None

    def display(self) -> str:
        return self.english or self.romaji or self.native or "Unknown"


class AniListTag(AniListModel):
    name: str
    rank: int = 0
    is_media_spoiler: bool = False


class ExternalLink(AniListModel):
    url: str
    site: str
    type: Optional[str] = None


class CoverImage(AniListModel):
    large: Optional[str] = None
    medium: Optional[str] = None


class RelatedMediaNode(AniListModel):
    id: int
    title: AniListTitle = Field(default_factory=AniListTitle)
    type: Optional[MediaType] = None
    is_adult: Optional[bool] = None
    format: Optional[str] = None
    status: Optional[str] = None
    external_links: List[ExternalLink] = Field(default_factory=list)

    @field_validator("external_links", mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        return v or []


class RelationEdge(AniListModel):
    relation_type: Optional[str] = None
    node: RelatedMediaNode


class RelationConnection(AniListModel):
    edges: List[RelationEdge] = Field(default_factory=list)


class Recommendation(AniListModel):
    rating: Optional[int] = None
    media_recommendation: Optional[RelatedMediaNode] = None


class RecommendationEdge(AniListModel):
    node: Recommendation


class RecommendationConnection(AniListModel):
    edges: List[RecommendationEdge] = Field(default_factory=list)


class AniListMedia(AniListModel):
    id: int
    type: Optional[MediaType] = None
    title: AniListTitle = Field(default_factory=AniListTitle)
    description: Optional[str] = None
    is_adult: Optional[bool] = None
    genres: List[str] = Field(default_factory=list)
    tags: List[AniListTag] = Field(default_factory=list)
    average_score: Optional[int] = None
    popularity: Optional[int] = None
    format: Optional[str] = None
    status: Optional[str] = None
    episodes: Optional[int] = None
    chapters: Optional[int] = None
    volumes: Optional[int] = None
    duration: Optional[int] = None
    season: Optional[str] = None
    season_year: Optional[int] = None
    cover_image: Optional[CoverImage] = None
    external_links: List[ExternalLink] = Field(default_factory=list)
    relations: Optional[RelationConnection] = None
    recommendations: Optional[RecommendationConnection] = None

    @field_validator("genres", "tags", "external_links", mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        return v or []

    def relation_edges(self) -> List[RelationEdge]:
        return self.relations.edges if self.relations else []

    def recommendation_edges(self) -> List[RecommendationEdge]:
        return self.recommendations.edges if self.recommendations else []


# ---------------------------------------------------------------------------
# Series
# ---------------------------------------------------------------------------

class RelatedMedia(BaseModel):
    """One entry of a series' related-media set (relation or recommendation)."""
    anilist_id: int
    title: str
    relation_type: str
    type: Optional[MediaType] = None
    streaming_links: Dict[str, str] = Field(default_factory=dict)
    crunchyroll_url: Optional[str] = None
    rating: Optional[int] = None

    @property
    def is_direct_relation(self) -> bool:
        return self.relation_type in DIRECT_RELATION_TYPES


class SeriesMetadata(BaseModel):
    """Provider enrichment stored in the series ``metadata`` column."""
    model_config = ConfigDict(extra="ignore")

    anilist_id: Optional[int] = None
    format: Optional[str] = None
    status: Optional[str] = None
    episodes: Optional[int] = None
    chapters: Optional[int] = None
    volumes: Optional[int] = None
    duration: Optional[int] = None
    season: Optional[str] = None
    season_year: Optional[int] = None
    popularity: Optional[int] = None
    anilist_tags: List[AniListTag] = Field(default_factory=list)
    streaming_links: Dict[str, str] = Field(default_factory=dict)
    relations: Optional[List[RelatedMedia]] = None
    relations_last_fetched: Optional[datetime.datetime] = None

    def to_column(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class TagOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    value: str
    source: TagSource
    confidence: float = 1.0
    category: Optional[str] = None


class RawSeriesData(BaseModel):
    """Provider-neutral record produced by adapters before persistence."""
    provider: str
    media_type: MediaType = "ANIME"
    external_id: str
    url: str
    title: str
    title_image: Optional[str] = None
    description: str = ""
    rating: Optional[float] = None
    age_rating: Optional[str] = None
    is_adult: Optional[bool] = None
    languages: List[str] = Field(default_factory=list)
    genres: List[str] = Field(default_factory=list)
    content_advisory: List[str] = Field(default_factory=list)
    metadata: SeriesMetadata = Field(default_factory=SeriesMetadata)


class SeriesOut(BaseModel):
    id: str
    provider: str
    media_type: MediaType = "ANIME"
    external_id: str
    url: str
    title: str
    title_image: Optional[str] = None
    description: str = ""
    rating: Optional[float] = None
    age_rating: Optional[str] = None
    languages: List[str] = Field(default_factory=list)
    genres: List[str] = Field(default_factory=list)
    content_advisory: List[str] = Field(default_factory=list)
    tags: List[TagOut] = Field(default_factory=list)
    metadata: SeriesMetadata = Field(default_factory=SeriesMetadata)
    fetched_at: Optional[datetime.datetime] = None
    updated_at: Optional[datetime.datetime] = None

    @classmethod
    def from_record(cls, row) -> "SeriesOut":
        return cls(
            id=row.id,
            provider=row.provider,
            media_type=row.media_type or "ANIME",
            external_id=row.external_id,
            url=row.url,
            title=row.title,
            title_image=row.title_image,
            description=row.description or "",
            rating=row.rating,
            age_rating=row.age_rating,
            languages=row.languages or [],
            genres=row.genres or [],
            content_advisory=row.content_advisory or [],
            tags=[TagOut.model_validate(t) for t in row.tags],
            metadata=SeriesMetadata.model_validate(row.metadata_ or {}),
            fetched_at=row.fetched_at,
            updated_at=row.updated_at,
        )

    @property
    def tag_values(self) -> List[str]:
        return [t.value for t in self.tags]


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------

class SeriesNode(BaseModel):
    series: SeriesOut
    depth: int
    cluster: Optional[str] = None


class RelationshipEdge(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_id: str = Field(alias="from")
    to_id: str = Field(alias="to")
    similarity: float
    shared_tags: List[str] = Field(default_factory=list)
    relation_type: Optional[str] = None

    @property
    def key(self) -> tuple:
        return (self.from_id, self.to_id)


class SeriesRelationship(BaseModel):
    root_id: str
    nodes: List[SeriesNode] = Field(default_factory=list)
    edges: List[RelationshipEdge] = Field(default_factory=list)
    seed_series_ids: List[str] = Field(default_factory=list)

    def node_ids(self) -> set:
        return {n.series.id for n in self.nodes}


class ScoredNode(SeriesNode):
    personalized_score: float = 0
    matched_tags: List[str] = Field(default_factory=list)
    reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------

TraceStep = Literal["fetching_root", "fetching_relations", "processing_series", "rate_limited", "complete"]


class RateLimitInfo(BaseModel):
    wait_time_ms: int
    attempt: int
    max_retries: int


class TraceProgress(BaseModel):
    step: TraceStep
    current: int
    total: int
    message: str
    rate_limit_info: Optional[RateLimitInfo] = None
    timestamp: datetime.datetime = Field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Personalization
# ---------------------------------------------------------------------------

class UserPreferences(BaseModel):
    user_id: str
    tag_preferences: Dict[str, int] = Field(default_factory=dict)  # tag -> summed votes
    ratings: Dict[str, int] = Field(default_factory=dict)  # series id -> 0-5
    available_services: List[str] = Field(default_factory=list)

    def upvoted_tags(self) -> set:
        return {tag for tag, score in self.tag_preferences.items() if score > 0}


class PersonalizedRelationship(SeriesRelationship):
    nodes: List[ScoredNode] = Field(default_factory=list)
