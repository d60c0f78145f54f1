"""
Error taxonomy for CourtWatch.
Each error carries a retryable flag so callers can decide between backoff and surfacing.
"""

from typing import Optional


class CourtWatchError(Exception):
    """Base class for all CourtWatch errors."""

    retryable: bool = False

    def __init__(self, message: str, retryable: Optional[bool] = None):
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class AuthError(CourtWatchError):
    """Credentials rejected or the session died. Surfaced to the operator."""


class NetworkError(CourtWatchError):
    """Transport-level failure or unexpected HTTP status. Retried with backoff."""

    retryable = True


class ParseError(CourtWatchError):
    """Page structure did not match what the parser expects."""

    def __init__(self, message: str, page_sample: str = ""):
        super().__init__(message)
        self.page_sample = page_sample


class BookingError(CourtWatchError):
    """The site rejected a reservation step."""


class ConfigError(CourtWatchError):
    """Required settings are missing or invalid."""
