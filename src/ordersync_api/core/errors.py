"""
Error taxonomy for the sync engine.

A carrier or source "not found" is not an error: clients return None.
Unknown carrier status codes are not errors either: they map to an
UNKNOWN(<code>) label.
"""

from typing import Optional


class SyncError(Exception):
    """Base class for sync engine errors."""


class TransportError(SyncError):
    """Network or HTTP failure talking to a source or carrier."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(TransportError):
    """Upstream kept answering 429 after the bounded retries ran out."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class ConfigurationError(SyncError):
    """Missing or rejected credential/endpoint for one store or carrier key."""
