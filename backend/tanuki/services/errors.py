"""
errors.py

Exception taxonomy shared by the AniList client, series cache and tracer.
"""
from typing import Optional


class TanukiError(Exception):
    """Base exception for relationship-engine errors."""
    pass


class NotFound(TanukiError):
    """The upstream provider (or local store) has no matching series."""
    pass


class UpstreamError(TanukiError):
    """Malformed or error GraphQL response, or transport failure."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


# Client-level name for the same failure class
ApiError = UpstreamError


class RateLimited(UpstreamError):
    """Quota still exhausted after the bounded retry budget was spent."""

    def __init__(self, message: str, attempts: int = 0, reset_at_ms: Optional[float] = None):
        super().__init__(message, status=429)
        self.attempts = attempts
        self.reset_at_ms = reset_at_ms


class PersistenceConflict(TanukiError):
    """A unique-constraint race could not be recovered by re-reading the winner."""
    pass


class UnsupportedProvider(TanukiError):
    """No registered source adapter can handle the given URL."""
    pass
