"""Error taxonomy for the verification pipeline.

The dispatcher decides between retry, failure result and dead-letter purely
from the exception class, so strategies and adapters must raise one of these
instead of leaking library exceptions.
"""

from typing import Optional


class TrustPipelineError(Exception):
    """Base class for all pipeline errors."""

    kind = "internal"
    retryable = False

    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class ValidationError(TrustPipelineError):
    """Malformed task message or payload, or an illegal record change."""

    kind = "validation"


class NotFoundError(TrustPipelineError):
    """Subject is missing or soft-deleted."""

    kind = "not_found"


class TransientExternalError(TrustPipelineError):
    """Oracle, market-data or network failure worth retrying."""

    kind = "transient_external"
    retryable = True


class ExternalServiceRejectedError(TrustPipelineError):
    """A provider refused the request outright (auth, bad request)."""

    kind = "external_rejected"


class PersistenceError(TrustPipelineError):
    """Database write failed after the inline retry."""

    kind = "persistence"


class CacheError(TrustPipelineError):
    """Cache backend failure. Never fatal; callers treat it as a miss."""

    kind = "cache"


class ConfigurationError(TrustPipelineError):
    """Invalid static configuration detected at load time."""

    kind = "configuration"
