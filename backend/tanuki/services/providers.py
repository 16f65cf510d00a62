"""
providers.py

Source adapters for streaming sites and the registry that picks one by URL.

The Crunchyroll adapter does not scrape: it asks an ExtensionBridge (an
opaque request/response RPC, implemented outside this package) for the
series page data and normalizes what comes back.
"""
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import urlparse

from tanuki.schemas import RawSeriesData, SeriesMetadata
from tanuki.services.errors import NotFound, TanukiError, UnsupportedProvider, UpstreamError

logger = logging.getLogger(__name__)


class ExtensionBridge(Protocol):
    async def request(self, payload: Dict[str, Any]) -> Any:
        ...


class ProviderAdapter(ABC):
    provider: str = ""

    @abstractmethod
    def can_handle(self, url: str) -> bool:
        ...

    @abstractmethod
    def parse_url(self, url: str) -> Dict[str, Any]:
        """Return ``{"id": ..., "metadata": {...}}`` for a supported URL."""

    @abstractmethod
    async def fetch_series(self, external_id: str) -> RawSeriesData:
        ...

    @abstractmethod
    async def fetch_related_series(self, external_id: str) -> List[str]:
        ...

    @staticmethod
    def validate_url(url: str) -> None:
        parsed = urlparse(url)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"Invalid URL format: {url}")

    @staticmethod
    def clean_url(url: str) -> str:
        """Drop query string and fragment."""
        parsed = urlparse(url)
        return f"{parsed.scheme}://{parsed.netloc}{parsed.path}"


class CrunchyrollAdapter(ProviderAdapter):
    provider = "crunchyroll"

    _SERIES_URL = re.compile(r"crunchyroll\.com/series/")
    _SERIES_ID = re.compile(r"/series/([^/?]+)")

    def __init__(self, bridge: ExtensionBridge):
        self.bridge = bridge

    def can_handle(self, url: str) -> bool:
        return bool(self._SERIES_URL.search(url))

    def parse_url(self, url: str) -> Dict[str, Any]:
        self.validate_url(url)
        match = self._SERIES_ID.search(url)
        if not match:
            raise ValueError(f"Invalid Crunchyroll series URL: {url}")
        return {"id": match.group(1), "metadata": {"clean_url": self.clean_url(url)}}

    async def fetch_series(self, external_id: str) -> RawSeriesData:
        logger.info(f"Fetching Crunchyroll series {external_id} via extension bridge")
        try:
            raw = await self.bridge.request({
                "action": "FETCH_SERIES",
                "provider": self.provider,
                "seriesId": external_id,
            })
        except TanukiError:
            raise
        except Exception as e:
            logger.error(f"Failed to fetch Crunchyroll series {external_id}: {e}")
            raise UpstreamError(
                "Failed to fetch series data. Ensure the extension is connected and a Crunchyroll series page is open."
            )

        if not raw or not raw.get("id"):
            raise NotFound(f"Series {external_id} not found or failed to extract data from Crunchyroll")
        return self.normalize(raw)

    async def fetch_related_series(self, external_id: str) -> List[str]:
        """Related series URLs; failures degrade to an empty list."""
        try:
            raw = await self.bridge.request({
                "action": "FETCH_RELATED",
                "provider": self.provider,
                "seriesId": external_id,
            })
        except Exception as e:
            logger.error(f"Failed to fetch related Crunchyroll series for {external_id}: {e}")
            return []

        urls = raw.get("urls") if isinstance(raw, dict) else None
        if not isinstance(urls, list):
            logger.warning(f"No related series found for Crunchyroll {external_id}")
            return []
        return [u for u in urls if isinstance(u, str) and "crunchyroll.com/series/" in u]

    def normalize(self, raw: Dict[str, Any]) -> RawSeriesData:
        return RawSeriesData(
            provider=self.provider,
            media_type="ANIME",
            external_id=str(raw.get("id") or raw.get("externalId")),
            url=raw.get("url") or "",
            title=raw.get("title") or "Unknown Title",
            title_image=_title_image(raw),
            description=raw.get("description") or raw.get("extended_description") or "",
            rating=_parse_rating(raw.get("rating")),
            age_rating=_age_rating(raw),
            languages=_first_list(raw, "languages", "audio_locales"),
            genres=[g if isinstance(g, str) else (g.get("name") or g.get("title")) for g in raw.get("genres") or []],
            content_advisory=_first_list(raw, "contentAdvisory", "content_descriptors"),
            metadata=SeriesMetadata(episodes=raw.get("episode_count")),
        )


def _title_image(raw: Dict[str, Any]) -> Optional[str]:
    if raw.get("titleImage"):
        return raw["titleImage"]
    images = raw.get("images") or {}
    for key in ("poster_tall", "poster_wide"):
        try:
            return images[key][0][0]["source"]
        except (KeyError, IndexError, TypeError):
            continue
    return None


def _parse_rating(value) -> Optional[float]:
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _age_rating(raw: Dict[str, Any]) -> Optional[str]:
    if raw.get("ageRating"):
        return raw["ageRating"]
    ratings = raw.get("maturity_ratings")
    if isinstance(ratings, list) and ratings:
        return ratings[0]
    return None


def _first_list(raw: Dict[str, Any], *keys: str) -> List[str]:
    for key in keys:
        if isinstance(raw.get(key), list):
            return raw[key]
    return []


class AdapterRegistry:
    def __init__(self):
        self._adapters: Dict[str, ProviderAdapter] = {}

    def register(self, adapter: ProviderAdapter) -> None:
        if adapter.provider in self._adapters:
            logger.warning(f"Overwriting existing adapter for provider '{adapter.provider}'")
        self._adapters[adapter.provider] = adapter
        logger.info(f"Registered provider adapter '{adapter.provider}'")

    def unregister(self, provider: str) -> bool:
        removed = self._adapters.pop(provider, None) is not None
        if removed:
            logger.info(f"Unregistered provider adapter '{provider}'")
        return removed

    def get_by_provider(self, provider: str) -> Optional[ProviderAdapter]:
        return self._adapters.get(provider)

    def get_adapter(self, url: str) -> Optional[ProviderAdapter]:
        for adapter in self._adapters.values():
            if adapter.can_handle(url):
                return adapter
        return None

    def get_adapter_or_raise(self, url: str) -> ProviderAdapter:
        adapter = self.get_adapter(url)
        if adapter is None:
            raise UnsupportedProvider(
                f"No provider adapter found for URL: {url}. "
                f"Currently supported: {', '.join(self.supported_providers()) or 'none'}"
            )
        return adapter

    def supported_providers(self) -> List[str]:
        return list(self._adapters)

    def __len__(self) -> int:
        return len(self._adapters)
