"""
anilist_client.py

Async AniList GraphQL client with quota-aware spacing and bounded retry on
quota-exceeded responses. One client instance owns one RateLimitState; share
the client (not copies of it) between concurrent traces.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from tanuki.core.config import settings
from tanuki.services.errors import NotFound, RateLimited, UpstreamError
from tanuki.services.rate_limit import RateLimitState

logger = logging.getLogger(__name__)

JSON_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
}

RateLimitCallback = Callable[[int, int, int], None]


def _is_quota_error(error: Any) -> bool:
    if not isinstance(error, dict):
        return False
    return error.get("status") == 429 or "Too Many Requests" in str(error.get("message", ""))


class _QuotaExceeded(Exception):
    pass


class AniListClient:
    """Execute GraphQL queries against AniList.

    ``execute`` returns the ``data`` member of the response. Waits are
    performed through ``sleep`` so callers (and tests) can substitute it.
    """

    def __init__(
        self,
        state: Optional[RateLimitState] = None,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.state = state or RateLimitState()
        self.api_url = api_url or settings.anilist_api_url
        self.timeout = timeout if timeout is not None else settings.anilist_timeout_seconds
        self.max_retries = settings.anilist_max_retries if max_retries is None else max_retries
        self._transport = transport
        self._sleep = sleep
        self._rate_limit_callbacks: List[RateLimitCallback] = []

    def add_rate_limit_callback(self, callback: RateLimitCallback) -> None:
        """Register ``callback(wait_time_ms, attempt, max_retries)``, invoked before each quota wait."""
        self._rate_limit_callbacks.append(callback)

    def remove_rate_limit_callback(self, callback: RateLimitCallback) -> None:
        """Unregister one callback; others registered on this client stay."""
        if callback in self._rate_limit_callbacks:
            self._rate_limit_callbacks.remove(callback)

    async def execute(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        variables = variables or {}
        for attempt in range(self.max_retries + 1):
            await self.state.throttle(self._sleep)
            try:
                return await self._post(query, variables)
            except _QuotaExceeded:
                if attempt >= self.max_retries:
                    logger.error(f"AniList rate limit still exceeded after {attempt + 1} attempts")
                    raise RateLimited(
                        f"AniList rate limit exceeded after {attempt + 1} attempts",
                        attempts=attempt + 1,
                        reset_at_ms=self.state.reset_at_ms,
                    )
                wait_ms = self.state.note_quota_exceeded()
                logger.warning(f"Rate limited, retrying in {wait_ms:.0f}ms (attempt {attempt + 1}/{self.max_retries})")
                for callback in list(self._rate_limit_callbacks):
                    try:
                        callback(int(wait_ms), attempt, self.max_retries)
                    except Exception as e:
                        logger.warning(f"Rate limit callback failed: {e}")
                await self._sleep(wait_ms / 1000)
        # Unreachable: the final attempt either returns or raises
        raise RateLimited("AniList rate limit exceeded", attempts=self.max_retries + 1)

    async def _post(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(
                    self.api_url,
                    json={"query": query, "variables": variables},
                    headers=JSON_HEADERS,
                )
        except httpx.TimeoutException:
            logger.error("Timeout connecting to AniList API.")
            raise UpstreamError("Timeout connecting to AniList API")
        except httpx.RequestError as e:
            logger.error(f"Network error connecting to AniList API: {e}")
            raise UpstreamError(f"Network error connecting to AniList API: {e}")

        self.state.update_from_headers(resp.headers)

        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        errors = payload.get("errors") or []

        if resp.status_code == 429 or any(_is_quota_error(e) for e in errors):
            raise _QuotaExceeded()

        message = _first_message(errors) or f"HTTP {resp.status_code}"
        if resp.status_code == 404:
            raise NotFound(message)
        if resp.is_error:
            logger.error(f"AniList API returned HTTP error {resp.status_code}: {message}")
            raise UpstreamError(f"AniList API error: {message}", status=resp.status_code)
        if errors:
            logger.error(f"AniList GraphQL error: {message}")
            raise UpstreamError(f"AniList GraphQL error: {message}", status=resp.status_code)

        data = payload.get("data")
        if not isinstance(data, dict):
            raise UpstreamError("AniList response did not contain a data object", status=resp.status_code)
        return data


def _first_message(errors) -> Optional[str]:
    for error in errors:
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return None
