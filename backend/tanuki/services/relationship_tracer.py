"""
relationship_tracer.py

Builds the relationship graph around a root series.

Traversal is breadth-first over AniList relations and recommendations:
- depth 0 candidates are admitted unconditionally, and the root's
  related set is widened with the recommendations of its SEQUEL chain
- candidates found while expanding a depth 1 node need a tag similarity to
  the root of at least 0.15, deeper ones at least 0.90
- edges carry the similarity to the parent that exposed them

Related-media payloads are cached in each series' metadata for 7 days and
finished graphs in Redis for 24 hours.
"""
import logging
import math
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError

from tanuki.core.config import settings
from tanuki.models import Relationship
from tanuki.schemas import (
    AniListMedia,
    RateLimitInfo,
    RelatedMedia,
    RelationshipEdge,
    SeriesMetadata,
    SeriesNode,
    SeriesOut,
    SeriesRelationship,
    TraceProgress,
)
from tanuki.services.anilist import anilist_url
from tanuki.services.errors import RateLimited
from tanuki.services.graph_cache import GraphCache
from tanuki.services.series_cache import SeriesCacheService
from tanuki.utils.similarity import jaccard_similarity, shared_tags
from tanuki.utils.timezone import is_stale

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[TraceProgress], None]


def normalize_url(url: str) -> str:
    """https, and www. for crunchyroll hosts."""
    normalized = url.strip()
    if normalized.startswith("http:"):
        normalized = "https:" + normalized[len("http:"):]
    if normalized.startswith("https://crunchyroll.com"):
        normalized = "https://www.crunchyroll.com" + normalized[len("https://crunchyroll.com"):]
    return normalized


def candidate_url(related: RelatedMedia) -> str:
    """Crunchyroll link, else any streaming link, else the synthetic AniList URL."""
    url = related.crunchyroll_url or next(iter(related.streaming_links.values()), None)
    return normalize_url(url or anilist_url(related.anilist_id))


def similarity_threshold(parent_depth: int) -> float:
    if parent_depth == 0:
        return 0.0
    if parent_depth == 1:
        return settings.depth1_similarity_threshold
    return settings.deep_similarity_threshold


def cluster_by_tags(nodes: List[SeriesNode]) -> List[SeriesNode]:
    """Greedy clustering in discovery order.

    Each unclustered node opens ``cluster-N`` and absorbs every later
    unclustered node whose tag similarity to it exceeds the cluster threshold.
    """
    clusters: Dict[str, str] = {}
    counter = 0
    for i, node in enumerate(nodes):
        if node.series.id in clusters:
            continue
        cluster_id = f"cluster-{counter}"
        counter += 1
        clusters[node.series.id] = cluster_id
        for other in nodes[i + 1:]:
            if other.series.id in clusters:
                continue
            if jaccard_similarity(node.series.tag_values, other.series.tag_values) > settings.cluster_similarity_threshold:
                clusters[other.series.id] = cluster_id

    logger.info(f"Clustered {len(nodes)} nodes into {counter} clusters")
    return [n.model_copy(update={"cluster": clusters[n.series.id]}) for n in nodes]


class RelationshipTracer:
    def __init__(self, series_cache: SeriesCacheService, graph_cache: Optional[GraphCache] = None):
        self.series_cache = series_cache
        self.anilist = series_cache.anilist
        self.db = series_cache.db
        self.graph_cache = graph_cache if graph_cache is not None else GraphCache()

    async def trace(
        self,
        root_url: str,
        max_depth: int = 3,
        on_progress: Optional[ProgressCallback] = None,
    ) -> SeriesRelationship:
        """Trace relationships from the series at ``root_url``.

        Raises NotFound/UpstreamError when the root cannot be resolved and
        RateLimited when the quota retry budget runs out. Failures on other
        nodes are logged and skipped.
        """
        logger.info(f"Starting relationship trace from {root_url} (max depth {max_depth})")
        self._emit(on_progress, "fetching_root", 0, 1, "Fetching root series...")

        root = await self.series_cache.get_series(root_url)

        cached = await self.graph_cache.get(root.id, max_depth)
        if cached is not None:
            count = len(cached.nodes)
            self._emit(on_progress, "complete", count, count, f"Loaded {count} cached series")
            return cached

        nodes: List[SeriesNode] = [SeriesNode(series=root, depth=0)]
        edges: List[RelationshipEdge] = []

        if on_progress:
            def _on_rate_limit(wait_time_ms: int, attempt: int, max_retries: int) -> None:
                self._emit(
                    on_progress, "rate_limited", len(nodes), len(nodes),
                    f"Waiting for API cooldown ({math.ceil(wait_time_ms / 1000)}s)...",
                    RateLimitInfo(wait_time_ms=wait_time_ms, attempt=attempt, max_retries=max_retries),
                )
            self.anilist.add_rate_limit_callback(_on_rate_limit)

        try:
            await self._traverse(root, max_depth, nodes, edges, on_progress)
        finally:
            if on_progress:
                self.anilist.remove_rate_limit_callback(_on_rate_limit)

        clustered = cluster_by_tags(nodes)
        self.persist_relationships(edges)

        self._emit(on_progress, "complete", len(clustered), len(clustered), f"Discovered {len(clustered)} related series")
        logger.info(f"Relationship trace for {root.id} complete: {len(clustered)} nodes, {len(edges)} edges")

        graph = SeriesRelationship(root_id=root.id, nodes=clustered, edges=edges, seed_series_ids=[root.id])
        await self.graph_cache.set(graph, max_depth)
        return graph

    async def _traverse(
        self,
        root: SeriesOut,
        max_depth: int,
        nodes: List[SeriesNode],
        edges: List[RelationshipEdge],
        on_progress: Optional[ProgressCallback],
    ) -> None:
        root_tags = set(root.tag_values)
        visited: Set[str] = {root.id}
        queue: Deque[Tuple[SeriesOut, int]] = deque([(root, 0)])

        while queue:
            current, depth = queue.popleft()
            if depth >= max_depth:
                continue

            try:
                related = await self.get_related_media(current, depth)
            except RateLimited:
                raise
            except Exception as e:
                if depth == 0:
                    raise
                logger.error(f"Error fetching relations for '{current.title}' ({current.id}): {e}")
                continue

            available = [r for r in related if r.streaming_links]
            logger.info(
                f"'{current.title}' at depth {depth}: {len(related)} related, "
                f"{len(available)} with streaming links"
            )
            self._emit(
                on_progress, "fetching_relations", len(nodes), len(nodes) + len(available),
                f"Found {len(available)} related series, processing...",
            )

            threshold = similarity_threshold(depth)
            for processed, info in enumerate(available, start=1):
                try:
                    candidate = await self._resolve_candidate(info, current)
                except RateLimited:
                    raise
                except Exception as e:
                    logger.error(f"Error processing related series '{info.title}' (AniList {info.anilist_id}): {e}")
                    continue

                verb = "Evaluating" if depth >= 1 else "Processing"
                self._emit(
                    on_progress, "processing_series", len(nodes), len(nodes) + len(available) - processed,
                    f"{verb} {candidate.title}...",
                )

                if candidate.id in visited:
                    continue

                candidate_tags = candidate.tag_values
                if depth >= 1:
                    similarity_to_root = jaccard_similarity(root_tags, candidate_tags)
                    if similarity_to_root < threshold:
                        logger.info(
                            f"Filtering out '{candidate.title}' at depth {depth}: "
                            f"similarity to root {similarity_to_root:.2f} < {threshold}"
                        )
                        continue
                    logger.info(
                        f"Including '{candidate.title}' at depth {depth}: "
                        f"similarity to root {similarity_to_root:.2f} >= {threshold}"
                    )

                visited.add(candidate.id)
                nodes.append(SeriesNode(series=candidate, depth=depth + 1))
                edges.append(RelationshipEdge(
                    from_id=current.id,
                    to_id=candidate.id,
                    similarity=jaccard_similarity(current.tag_values, candidate_tags),
                    shared_tags=shared_tags(current.tag_values, candidate_tags),
                    relation_type=info.relation_type,
                ))
                if depth + 1 < max_depth:
                    queue.append((candidate, depth + 1))

    async def _resolve_candidate(self, info: RelatedMedia, parent: SeriesOut) -> SeriesOut:
        url = candidate_url(info)
        existing = self.series_cache.find_by_url(url) or self.series_cache.find_by_anilist_id(info.anilist_id)
        if existing is not None:
            return SeriesOut.from_record(existing)
        media_type = info.type or parent.media_type or "ANIME"
        logger.info(f"Caching related {media_type.lower()} '{info.title}' (AniList {info.anilist_id})")
        return await self.series_cache.create_from_related(info, url, media_type)

    async def get_related_media(self, series: SeriesOut, depth: int) -> List[RelatedMedia]:
        """Related media for ``series``, from its metadata cache when fresh."""
        metadata = series.metadata
        if not metadata.anilist_id:
            logger.warning(f"No AniList id for series '{series.title}' ({series.id})")
            return []

        if metadata.relations is not None and not self._relations_stale(metadata):
            logger.debug(f"Using {len(metadata.relations)} cached relations for '{series.title}'")
            return metadata.relations

        if metadata.relations is not None:
            logger.info(f"Cached relations for '{series.title}' are stale, refreshing from AniList")

        media = await self.anilist.get_media_with_relations(metadata.anilist_id, series.media_type)
        if media is None:
            logger.warning(f"No AniList data for {series.media_type.lower()} {metadata.anilist_id}")
            return []

        related = self.anilist.get_related_all_platforms(media)
        if depth == 0:
            sequel_recs = await self.collect_sequel_recommendations(media, series.media_type)
            known = {r.anilist_id for r in related}
            new_recs = []
            for rec in sequel_recs:
                if rec.anilist_id not in known:
                    known.add(rec.anilist_id)
                    new_recs.append(rec)
            if new_recs:
                logger.info(f"Adding {len(new_recs)} sequel recommendations for '{series.title}'")
                related = related + new_recs

        self.series_cache.update_relations_cache(series.id, related)
        return related

    @staticmethod
    def _relations_stale(metadata: SeriesMetadata) -> bool:
        return is_stale(metadata.relations_last_fetched, settings.relations_stale_after_days)

    async def collect_sequel_recommendations(self, media: AniListMedia, media_type: str) -> List[RelatedMedia]:
        """Recommendations (not direct relations) from each entry of the SEQUEL chain."""
        recommendations: List[RelatedMedia] = []
        visited = {media.id}
        current = media
        for _ in range(settings.sequel_hop_limit):
            edge = next(
                (e for e in current.relation_edges()
                 if e.relation_type == "SEQUEL" and e.node.type == media_type),
                None,
            )
            if edge is None:
                break
            sequel_id = edge.node.id
            if sequel_id in visited:
                logger.warning(f"Circular SEQUEL relation between {current.id} and {sequel_id}")
                break
            visited.add(sequel_id)

            try:
                sequel = await self.anilist.get_media_with_relations(sequel_id, media_type)
            except RateLimited:
                raise
            except Exception as e:
                logger.error(f"Error fetching sequel {sequel_id} of {current.id}: {e}")
                break
            if sequel is None:
                logger.warning(f"Could not fetch sequel media {sequel_id}")
                break

            recs = [r for r in self.anilist.get_related_all_platforms(sequel) if not r.is_direct_relation]
            logger.debug(f"Sequel '{sequel.title.display()}' contributed {len(recs)} recommendations")
            recommendations.extend(recs)
            current = sequel

        logger.info(f"Collected {len(recommendations)} recommendations from {len(visited) - 1} sequels of {media.id}")
        return recommendations

    def persist_relationships(self, edges: List[RelationshipEdge]) -> None:
        """Upsert edges by (from, to); a failing edge is logged and skipped."""
        for edge in edges:
            try:
                row = (
                    self.db.query(Relationship)
                    .filter(Relationship.from_series_id == edge.from_id, Relationship.to_series_id == edge.to_id)
                    .first()
                )
                if row is None:
                    row = Relationship(from_series_id=edge.from_id, to_series_id=edge.to_id)
                    self.db.add(row)
                row.similarity = edge.similarity
                row.shared_tags = edge.shared_tags
                row.relation_type = edge.relation_type
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"Failed to persist relationship {edge.from_id} -> {edge.to_id}: {e}")
        logger.info(f"Persisted {len(edges)} relationships")

    def get_relationships(self, series_id: str) -> List[RelationshipEdge]:
        """Persisted edges touching ``series_id`` in either direction."""
        rows = (
            self.db.query(Relationship)
            .filter(or_(Relationship.from_series_id == series_id, Relationship.to_series_id == series_id))
            .all()
        )
        return [
            RelationshipEdge(
                from_id=r.from_series_id,
                to_id=r.to_series_id,
                similarity=r.similarity or 0.0,
                shared_tags=r.shared_tags or [],
                relation_type=r.relation_type,
            )
            for r in rows
        ]

    @staticmethod
    def _emit(
        on_progress: Optional[ProgressCallback],
        step: str,
        current: int,
        total: int,
        message: str,
        rate_limit_info: Optional[RateLimitInfo] = None,
    ) -> None:
        if on_progress is None:
            return
        try:
            on_progress(TraceProgress(
                step=step, current=current, total=total, message=message, rate_limit_info=rate_limit_info,
            ))
        except Exception as e:
            logger.warning(f"Progress callback failed on '{step}': {e}")
