"""
personalization.py

Re-weights a traced relationship graph for one user.

Steps:
1. load tag votes, ratings and available services
2. expand around the user's top 4-5 star nodes (bounded)
3. score nodes by tag preferences and ratings
4. drop disliked subtrees and unavailable services (seed series always stay)
5. sort by score and cap the result size
"""
import logging
from typing import Dict, Iterable, List, Optional, Set

from tanuki.core.config import settings
from tanuki.schemas import (
    PersonalizedRelationship,
    RelationshipEdge,
    ScoredNode,
    SeriesNode,
    SeriesRelationship,
    UserPreferences,
)
from tanuki.services.relationship_tracer import RelationshipTracer
from tanuki.services.user_preferences import UserPreferenceService

logger = logging.getLogger(__name__)

RATING_BOOSTS = {5: 10, 4: 5, 0: -100}
RATING_REASONS = {5: "You rated this 5 stars", 4: "You rated this 4 stars", 0: "You disliked this"}


class PersonalizationService:
    def __init__(self, preferences: UserPreferenceService, tracer: Optional[RelationshipTracer] = None):
        self.preferences = preferences
        self.tracer = tracer

    async def personalize(self, graph: SeriesRelationship, user_id: str) -> SeriesRelationship:
        """Personalized copy of ``graph``; the input graph when preferences can't be loaded."""
        try:
            prefs = self.preferences.load_preferences(user_id)
        except Exception as e:
            logger.error(f"Error fetching preferences for user {user_id}, returning base graph: {e}")
            return graph

        expanded = await self.expand_for_highly_rated(graph, prefs) if self.tracer else graph
        scored = score_nodes(expanded.nodes, prefs)
        filtered = filter_nodes(scored, prefs, expanded)
        limited = limit_results(filtered, settings.personalize_max_results, expanded.seed_series_ids)

        kept = {n.series.id for n in limited}
        edges = [e for e in expanded.edges if e.from_id in kept and e.to_id in kept]

        logger.info(
            f"Personalized graph {graph.root_id} for user {user_id}: "
            f"{len(graph.nodes)} base, {len(expanded.nodes)} expanded, "
            f"{len(filtered)} after filtering, {len(limited)} returned"
        )
        return PersonalizedRelationship(
            root_id=expanded.root_id,
            nodes=limited,
            edges=edges,
            seed_series_ids=list(expanded.seed_series_ids),
        )

    async def expand_for_highly_rated(self, graph: SeriesRelationship, prefs: UserPreferences) -> SeriesRelationship:
        """Merge nodes found by re-tracing from the user's best-rated series.

        A new node must carry at least one upvoted tag and share a tag with
        the rated series it was found from.
        """
        upvoted = prefs.upvoted_tags()
        rated = [n for n in graph.nodes if prefs.ratings.get(n.series.id) in (4, 5)]
        if not rated:
            logger.info("No highly-rated series in graph, skipping expansion")
            return graph
        rated.sort(key=lambda n: sum(1 for t in n.series.tag_values if t in upvoted), reverse=True)
        selected = rated[:settings.personalize_expand_top_rated]
        logger.info(f"Expanding graph around {len(selected)} of {len(rated)} highly-rated series")

        max_nodes = settings.personalize_max_nodes
        all_nodes: Dict[str, SeriesNode] = {n.series.id: n for n in graph.nodes}
        all_edges: Dict[tuple, RelationshipEdge] = {}
        for edge in graph.edges:
            all_edges.setdefault(edge.key, edge)

        for rated_node in selected:
            if len(all_nodes) >= max_nodes:
                logger.warning(f"Hit maximum node limit ({max_nodes}) during expansion")
                break
            rated_tags = set(rated_node.series.tag_values)
            try:
                deep = await self.tracer.trace(rated_node.series.url, settings.personalize_expand_depth)
            except Exception as e:
                logger.error(f"Failed to expand for series {rated_node.series.id}: {e}")
                continue

            for node in deep.nodes:
                if node.series.id in all_nodes:
                    continue
                if len(all_nodes) >= max_nodes:
                    break
                tags = node.series.tag_values
                if not any(t in upvoted for t in tags):
                    continue
                if not any(t in rated_tags for t in tags):
                    continue
                all_nodes[node.series.id] = node

            for edge in deep.edges:
                if edge.from_id in all_nodes and edge.to_id in all_nodes:
                    all_edges.setdefault(edge.key, edge)

        logger.info(f"Graph expansion added {len(all_nodes) - len(graph.nodes)} nodes")
        return SeriesRelationship(
            root_id=graph.root_id,
            nodes=list(all_nodes.values()),
            edges=list(all_edges.values()),
            seed_series_ids=list(graph.seed_series_ids),
        )


def score_nodes(nodes: Iterable[SeriesNode], prefs: UserPreferences) -> List[ScoredNode]:
    scored = []
    for node in nodes:
        score = 0
        matched: List[str] = []
        for tag in node.series.tag_values:
            if prefs.tag_preferences.get(tag):
                score += prefs.tag_preferences[tag]
                matched.append(tag)

        rating = prefs.ratings.get(node.series.id)
        score += RATING_BOOSTS.get(rating, 0)
        reason = RATING_REASONS.get(rating)
        if reason is None and matched:
            reason = f"Matches tags: {', '.join(matched[:3])}"

        scored.append(ScoredNode(
            series=node.series,
            depth=node.depth,
            cluster=node.cluster,
            personalized_score=score,
            matched_tags=matched,
            reason=reason,
        ))
    return scored


def descendant_ids(series_id: str, edges: Iterable[RelationshipEdge]) -> Set[str]:
    """Every node reachable from ``series_id`` along directed edges."""
    children: Dict[str, List[str]] = {}
    for edge in edges:
        children.setdefault(edge.from_id, []).append(edge.to_id)

    found: Set[str] = set()
    stack = list(children.get(series_id, []))
    while stack:
        node_id = stack.pop()
        if node_id in found or node_id == series_id:
            continue
        found.add(node_id)
        stack.extend(children.get(node_id, []))
    return found


def filter_nodes(scored: List[ScoredNode], prefs: UserPreferences, graph: SeriesRelationship) -> List[ScoredNode]:
    """Drop disliked subtrees and unavailable services; sort by score, highest first."""
    seeds = set(graph.seed_series_ids)
    excluded: Set[str] = set()
    for node in scored:
        if prefs.ratings.get(node.series.id) == 0 and node.series.id not in seeds:
            excluded.add(node.series.id)
            excluded |= descendant_ids(node.series.id, graph.edges)
    excluded -= seeds

    services = set(prefs.available_services)
    result = []
    for node in scored:
        if node.series.id in excluded:
            continue
        if node.series.id not in seeds and services:
            platforms = node.series.metadata.streaming_links.keys()
            if platforms and not services.intersection(platforms):
                continue
        result.append(node)

    result.sort(key=lambda n: n.personalized_score, reverse=True)
    return result


def limit_results(nodes: List[ScoredNode], max_count: int, seed_series_ids: Iterable[str]) -> List[ScoredNode]:
    """Seeds and the depth 0 root always survive; the rest fill remaining slots in order."""
    seeds = set(seed_series_ids)
    kept = [n for n in nodes if n.series.id in seeds or n.depth == 0]
    others = [n for n in nodes if n.series.id not in seeds and n.depth != 0]
    return kept + others[:max(0, max_count - len(kept))]
