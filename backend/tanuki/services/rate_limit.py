"""
rate_limit.py

Quota state for the AniList GraphQL API.

AniList reports the remaining per-minute budget in ``X-RateLimit-*`` headers
and locks a client out for 60 seconds once the budget is exhausted. Requests
are spaced further apart the fewer requests remain.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Mapping, Optional

from tanuki.core.config import settings

logger = logging.getLogger(__name__)

# (remaining <= threshold) -> minimum gap in milliseconds, checked in order
DELAY_TIERS = (
    (3, 30000),
    (8, 20000),
    (15, 12000),
    (25, 8000),
)


def required_delay_ms(remaining: int, min_interval_ms: Optional[int] = None) -> int:
    """Minimum gap between two requests given the remaining quota."""
    baseline = settings.anilist_min_request_interval_ms if min_interval_ms is None else min_interval_ms
    for threshold, delay in DELAY_TIERS:
        if remaining <= threshold:
            return delay
    return baseline


def _now_ms() -> float:
    return time.time() * 1000


class RateLimitState:
    """Lock-guarded quota state owned by a single AniList client.

    ``remaining`` starts at an optimistic default and is corrected from the
    response headers of every call. ``reset_at_ms`` is an epoch timestamp in
    milliseconds (0 when unknown).
    """

    def __init__(
        self,
        initial_remaining: Optional[int] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.remaining = settings.anilist_initial_limit if initial_remaining is None else initial_remaining
        self.limit: Optional[int] = None
        self.reset_at_ms: float = 0
        self.last_request_at_ms: float = 0
        self._clock = clock or _now_ms
        self._lock = asyncio.Lock()

    def now_ms(self) -> float:
        return self._clock()

    def next_delay_ms(self) -> float:
        """Time still to wait before the next request may be sent."""
        required = required_delay_ms(self.remaining)
        elapsed = self.now_ms() - self.last_request_at_ms
        return max(0.0, required - elapsed)

    async def throttle(self, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> None:
        """Wait for the next send slot and claim it.

        Concurrent callers are serialized so each one observes the gap left by
        the previous send.
        """
        async with self._lock:
            delay = self.next_delay_ms()
            if delay > 0:
                if self.remaining <= 3:
                    logger.warning(f"Critical rate limit ({self.remaining} remaining): waiting {delay / 1000:.1f}s")
                else:
                    logger.debug(f"Rate limit spacing ({self.remaining} remaining): waiting {delay / 1000:.1f}s")
                await sleep(delay / 1000)
            self.last_request_at_ms = self.now_ms()

    def update_from_headers(self, headers: Mapping[str, str]) -> None:
        """Apply ``X-RateLimit-*`` headers; missing or malformed values are ignored."""
        remaining = _parse_int(headers.get("x-ratelimit-remaining"))
        reset = _parse_int(headers.get("x-ratelimit-reset"))
        limit = _parse_int(headers.get("x-ratelimit-limit"))

        if remaining is not None:
            self.remaining = remaining
        if reset is not None:
            self.reset_at_ms = reset * 1000
        if limit is not None:
            self.limit = limit
        if remaining is not None or reset is not None:
            logger.debug(f"Rate limit headers: remaining={self.remaining} limit={self.limit} reset_at_ms={self.reset_at_ms}")

    def note_quota_exceeded(self) -> float:
        """Record a quota-exceeded response and return how long to wait (ms).

        With a known future reset we wait until it passes plus a safety buffer.
        Without one we assume the documented cooldown and record a synthetic
        reset so later calls see it.
        """
        now = self.now_ms()
        buffer_ms = settings.anilist_safety_buffer_ms
        if self.reset_at_ms > now:
            wait_ms = max(self.reset_at_ms - now + buffer_ms, buffer_ms)
            logger.info(f"Using known rate limit reset: waiting {wait_ms / 1000:.0f}s (includes {buffer_ms / 1000:.0f}s buffer)")
        else:
            cooldown_ms = settings.anilist_quota_cooldown_ms
            wait_ms = cooldown_ms + buffer_ms
            self.reset_at_ms = now + cooldown_ms
            logger.info(f"No known reset time, assuming {cooldown_ms / 1000:.0f}s cooldown: waiting {wait_ms / 1000:.0f}s")
        self.remaining = 0
        return wait_ms


def _parse_int(value) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        logger.debug(f"Ignoring malformed rate limit header value: {value!r}")
        return None
