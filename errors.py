"""
errors.py - Error taxonomy for the extraction pipeline.

Only provider and storage failures are exceptions. Field validation failures
are not: they surface as an empty field with `extracted_fields.<field> = False`
and a lower confidence score (see normalize.py).

Propagation:
    ProviderError / ParseError -> captured as ProviderAttempt metadata,
                                  triggers the next provider in the chain
    StorageError               -> logged, cache/learning degrade to no-ops
    asyncio.TimeoutError       -> caught by the orchestrator, best-effort result
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Classification of a failed provider attempt."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    HTTP_STATUS = "http_status"
    RATE_LIMITED = "rate_limited"
    PARSE = "parse"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset({ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.RATE_LIMITED})


class ExtractionError(Exception):
    """Base class for every error raised inside the extraction subsystem."""


class ProviderError(ExtractionError):
    """A vision provider call failed (transport, status code, rate limit)."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        *,
        provider: str = "",
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.provider = provider
        self.status_code = status_code
        if retryable is None:
            retryable = kind in RETRYABLE_KINDS or (
                kind == ErrorKind.HTTP_STATUS and status_code is not None and status_code >= 500
            )
        self.retryable = retryable

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code is not None:
            return f"{base} (status={self.status_code})"
        return base


class ParseError(ProviderError):
    """Provider responded, but the payload does not match the expected schema."""

    def __init__(self, message: str, *, provider: str = "") -> None:
        super().__init__(message, ErrorKind.PARSE, provider=provider, retryable=False)


class StorageError(ExtractionError):
    """Reading or writing the local key-value store failed."""
