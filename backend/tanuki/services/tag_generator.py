"""
tag_generator.py

Rule-based tag generation for cached series.

Sources (confidence):
- genres -> one tag each (1.0, category 'genre')
- content advisories -> mapped theme tags (0.8)
- theme patterns over title + description (0.9)

Duplicates keep the highest-confidence occurrence; output is sorted by
confidence, highest first.
"""
import logging
import re
from typing import Dict, List, Optional

from pydantic import BaseModel

from tanuki.schemas import RawSeriesData, TagSource

logger = logging.getLogger(__name__)

CONTENT_ADVISORY_TAGS: Dict[str, List[str]] = {
    "violence": ["action", "intense", "mature"],
    "language": ["mature"],
    "sexual content": ["mature", "romance"],
    "sexual themes": ["mature", "romance"],
    "fear": ["horror", "thriller", "dark"],
    "frightening scenes": ["horror", "thriller", "dark"],
    "nudity": ["mature"],
    "suggestive themes": ["ecchi", "romance"],
    "gore": ["horror", "dark", "violent"],
    "drug use": ["mature", "dark"],
    "alcohol": ["mature"],
}

THEME_PATTERNS = [
    # Settings
    (r"high school|school life|academy", ["school", "slice-of-life"]),
    (r"medieval|kingdom|castle|knight", ["medieval", "fantasy"]),
    (r"space|galaxy|planet|spaceship", ["space", "sci-fi"]),
    (r"post-apocalyptic|apocalypse|wasteland", ["post-apocalyptic", "dystopian"]),
    # Genres / themes
    (r"magical girl|mahou shoujo", ["magical-girl", "fantasy"]),
    (r"isekai|another world|transported|reincarnated", ["isekai", "fantasy"]),
    (r"mecha|robot|gundam|pilot", ["mecha", "sci-fi"]),
    (r"romance|love|relationship", ["romance"]),
    (r"comedy|funny|hilarious|humor", ["comedy"]),
    (r"mystery|detective|investigation", ["mystery"]),
    (r"supernatural|ghost|spirit|demon", ["supernatural"]),
    (r"slice of life|everyday|daily life", ["slice-of-life"]),
    (r"sports|tournament|competition|team", ["sports"]),
    (r"psychological|mind|mental", ["psychological"]),
    (r"martial arts|kung fu|fighting|combat", ["martial-arts", "action"]),
    # Character types
    (r"ninja|shinobi", ["ninja", "action"]),
    (r"samurai|ronin|sword", ["samurai", "historical"]),
    (r"vampire|blood", ["vampire", "supernatural"]),
    (r"zombie|undead", ["zombie", "horror"]),
    (r"spy|espionage|agent", ["spy", "thriller"]),
    # Moods
    (r"dark|grim|brutal", ["dark"]),
    (r"wholesome|heartwarming|feel-good", ["wholesome"]),
    (r"epic|grand|legendary", ["epic"]),
]

_COMPILED_PATTERNS = [(re.compile(p, re.IGNORECASE), tags) for p, tags in THEME_PATTERNS]
_WHITESPACE = re.compile(r"\s+")
_INVALID_CHARS = re.compile(r"[^a-z0-9-]")


class GeneratedTag(BaseModel):
    value: str
    source: TagSource
    confidence: float
    category: Optional[str] = None


def normalize_tag_value(value: str) -> str:
    """Lowercase, hyphenated, ``[a-z0-9-]`` only: 'Slice of Life' -> 'slice-of-life'."""
    value = _WHITESPACE.sub("-", value.lower().strip())
    return _INVALID_CHARS.sub("", value)


class TagGenerator:
    def generate_tags(self, series: RawSeriesData) -> List[GeneratedTag]:
        tags: List[GeneratedTag] = []
        tags.extend(self._map_genres(series.genres))
        tags.extend(self._map_content_advisory(series.content_advisory))
        tags.extend(self._match_patterns(series.description, series.title))

        final = self._deduplicate(tags)
        logger.info(f"Generated {len(final)} tags for '{series.title}': {[t.value for t in final]}")
        return final

    @staticmethod
    def _map_genres(genres: List[str]) -> List[GeneratedTag]:
        return [
            GeneratedTag(value=normalize_tag_value(g), source="genre", confidence=1.0, category="genre")
            for g in genres
            if normalize_tag_value(g)
        ]

    @staticmethod
    def _map_content_advisory(advisories: List[str]) -> List[GeneratedTag]:
        tags = []
        for advisory in advisories:
            for value in CONTENT_ADVISORY_TAGS.get(advisory.lower(), []):
                tags.append(GeneratedTag(value=value, source="content", confidence=0.8, category="theme"))
        return tags

    @staticmethod
    def _match_patterns(description: str, title: str) -> List[GeneratedTag]:
        text = f"{title} {description or ''}".lower()
        tags = []
        for pattern, values in _COMPILED_PATTERNS:
            if pattern.search(text):
                for value in values:
                    tags.append(GeneratedTag(value=value, source="description", confidence=0.9, category="theme"))
        return tags

    @staticmethod
    def _deduplicate(tags: List[GeneratedTag]) -> List[GeneratedTag]:
        best: Dict[str, GeneratedTag] = {}
        for tag in tags:
            existing = best.get(tag.value)
            if existing is None or tag.confidence > existing.confidence:
                best[tag.value] = tag
        return sorted(best.values(), key=lambda t: t.confidence, reverse=True)
