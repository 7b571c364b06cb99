"""
models.py - Data Models for the Bank Detail Extraction Pipeline

This file defines ALL data structures used across the extraction subsystem.
Every module communicates exclusively through these models:

    providers.py    ->  ExtractionResult (one per provider attempt)
    orchestrator.py ->  ExtractionResult (best attempt + ProviderAttempt list)
    cache.py        ->  CacheEntry, CacheStats
    patterns.py     ->  PatternRecord, BankInsight, PatternStatistics

Design principles:
1. A result is created fresh per request and never persisted directly;
   the cache copies it into a CacheEntry on admission
2. Invariants (confidence range, account number shape) are enforced by
   validators here, so no caller can build an invalid result
3. All fields have descriptions - they double as API documentation

Schema relationships:
    ExtractedFields  --used by--> ExtractionResult.extracted_fields
    ProviderAttempt  --used by--> ExtractionResult.attempts
    ExtractionResult --used by--> CacheEntry.data
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from errors import ErrorKind

# Nigerian NUBAN account numbers are exactly 10 digits.
ACCOUNT_NUMBER_LENGTH = 10

MIN_CONFIDENCE = 0
MAX_CONFIDENCE = 100


def utc_now() -> datetime:
    """Timezone-aware current time; every timestamp in the models is UTC."""
    return datetime.now(timezone.utc)


def clamp_confidence(value: Any) -> int:
    """Coerce any numeric-looking value into an int within [0, 100]."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return MIN_CONFIDENCE
    if not math.isfinite(number):
        return MIN_CONFIDENCE
    return int(max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, round(number))))


class ExtractedFields(BaseModel):
    """Per-field presence flags mirroring the normalized values."""

    bank_name: bool = False
    account_number: bool = False
    account_holder_name: bool = False
    amount: bool = False

    @property
    def count(self) -> int:
        """Number of fields that were extracted."""
        return sum((self.bank_name, self.account_number, self.account_holder_name, self.amount))


class ProviderAttempt(BaseModel):
    """Metadata for one call to one vision provider.

    Recorded for every attempt the orchestrator makes, whether the provider
    succeeded, errored or ran out of time. `success` means the provider
    returned a structurally valid payload; a successful attempt can still
    carry a low confidence.
    """

    provider: str = Field(..., description="Provider id, e.g. 'cloud_vision', 'gemini', 'claude'.")
    started_at: datetime = Field(default_factory=utc_now, description="UTC start time of the attempt.")
    duration_ms: int = Field(default=0, ge=0, description="Wall-clock duration of the attempt.")
    success: bool = Field(default=False, description="Whether the provider returned a parseable payload.")
    confidence: int = Field(default=0, ge=0, le=100, description="Normalized confidence of this attempt.")
    error_kind: Optional[ErrorKind] = Field(
        default=None,
        description="Failure classification when success is False (network, timeout, parse, ...).",
    )
    error_message: Optional[str] = Field(default=None, description="Short failure description for logs/UI.")

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> int:
        return clamp_confidence(value)


class ExtractionResult(BaseModel):
    """Canonical bank-transfer details extracted from one image.

    The same shape is produced by every provider adapter and by the
    orchestrator. The orchestrator additionally fills the metadata fields
    (attempts, primary_service, fallback_used, ...).

    Confidence interpretation:
        75-100 = good enough to stop trying further providers
        80-100 = good enough to cache and learn from
        0      = nothing usable, recommend manual entry
    """

    bank_name: str = Field(
        default="",
        description=(
            "Canonical institution name (e.g. 'GTBank', 'Access Bank'). "
            "Empty when the raw value did not resolve to a known bank."
        ),
    )
    account_number: str = Field(
        default="",
        description="Exactly 10 digits (NUBAN) or empty. Never partial.",
    )
    account_holder_name: str = Field(
        default="",
        description="Account holder name with honorifics removed, or empty.",
    )
    amount: str = Field(
        default="",
        description="Plain numeric string without currency symbols or separators, or empty.",
    )
    confidence: int = Field(
        default=0,
        ge=0,
        le=100,
        description="Composite confidence 0-100, clamped.",
    )
    extracted_fields: ExtractedFields = Field(
        default_factory=ExtractedFields,
        description="Per-field presence flags; always consistent with the values above.",
    )
    attempts: list[ProviderAttempt] = Field(
        default_factory=list,
        description="Ordered provider attempts that produced this result.",
    )
    primary_service: Optional[str] = Field(
        default=None,
        description="First provider attempted for this request.",
    )
    fallback_used: bool = Field(
        default=False,
        description="True when more than one provider was attempted.",
    )
    source_provider: Optional[str] = Field(
        default=None,
        description="Provider whose output was selected as the final result.",
    )
    total_duration_ms: int = Field(default=0, ge=0, description="End-to-end orchestration time.")
    from_cache: bool = Field(default=False, description="True when served by the confidence cache.")

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> int:
        return clamp_confidence(value)

    @field_validator("account_number", mode="before")
    @classmethod
    def _account_shape(cls, value: Any) -> str:
        text = str(value or "").strip()
        if text.isdigit() and len(text) == ACCOUNT_NUMBER_LENGTH:
            return text
        return ""

    @field_validator("bank_name", "account_holder_name", "amount", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return str(value or "").strip()

    @model_validator(mode="after")
    def _sync_extracted_fields(self) -> "ExtractionResult":
        self.extracted_fields = ExtractedFields(
            bank_name=bool(self.bank_name),
            account_number=bool(self.account_number),
            account_holder_name=bool(self.account_holder_name),
            amount=bool(self.amount),
        )
        return self

    @classmethod
    def empty(cls) -> "ExtractionResult":
        """Zero-confidence result used when nothing could be extracted."""
        return cls()

    @property
    def is_valid(self) -> bool:
        """Bank and account present with non-zero confidence."""
        return (
            self.extracted_fields.bank_name
            and self.extracted_fields.account_number
            and self.confidence > 0
        )

    @property
    def needs_manual_entry(self) -> bool:
        """Whether the caller should prompt the user to type the details."""
        return self.confidence == 0 or not self.is_valid

    def core_copy(self) -> "ExtractionResult":
        """Copy of the extracted values only, without orchestration metadata."""
        return ExtractionResult(
            bank_name=self.bank_name,
            account_number=self.account_number,
            account_holder_name=self.account_holder_name,
            amount=self.amount,
            confidence=self.confidence,
        )

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "bank_name": "GTBank",
                    "account_number": "0123456789",
                    "account_holder_name": "Adaeze Okafor",
                    "amount": "25000.00",
                    "confidence": 95,
                    "extracted_fields": {
                        "bank_name": True,
                        "account_number": True,
                        "account_holder_name": True,
                        "amount": True,
                    },
                    "attempts": [
                        {
                            "provider": "cloud_vision",
                            "duration_ms": 1840,
                            "success": True,
                            "confidence": 95,
                        }
                    ],
                    "primary_service": "cloud_vision",
                    "fallback_used": False,
                    "source_provider": "cloud_vision",
                }
            ]
        }
    )


class CacheEntry(BaseModel):
    """An admitted extraction held by the confidence cache."""

    model_config = ConfigDict(extra="ignore")

    key: str
    data: ExtractionResult
    created_at: datetime = Field(default_factory=utc_now)
    last_accessed_at: datetime = Field(default_factory=utc_now)
    access_count: int = Field(default=1, ge=0)
    confidence: int = Field(default=0, ge=0, le=100)
    source: str = Field(default="", description="Provider that produced the cached result.")
    extraction_time_ms: int = Field(default=0, ge=0)


class CacheStats(BaseModel):
    """Snapshot returned by ConfidenceCache.stats()."""

    total_entries: int = 0
    hits: int = 0
    misses: int = 0
    hit_rate: float = Field(default=0.0, description="hits / (hits + misses); 0.0 before any lookup.")
    average_confidence: float = 0.0
    most_accessed_banks: list[str] = Field(default_factory=list)
    estimated_size_bytes: int = 0
    oldest_entry: Optional[datetime] = None
    newest_entry: Optional[datetime] = None


class PatternRecord(BaseModel):
    """Learned record for one (bank, account) signature.

    `provider_confidence` keeps a running mean per provider that has
    successfully extracted this signature, so the per-bank best provider
    can be derived even when several providers read the same account.
    """

    model_config = ConfigDict(extra="ignore")

    key: str
    bank_name: str
    account_number: str = ""
    account_holder_name: str = ""
    amount: str = ""
    extraction_method: str = Field(default="", description="Provider that first produced this signature.")
    provider_confidence: dict[str, float] = Field(default_factory=dict)
    success_count: int = Field(default=1, ge=0)
    average_confidence: float = 0.0
    average_extraction_time_ms: float = 0.0
    updated_at: datetime = Field(default_factory=utc_now)


class BankInsight(BaseModel):
    """Per-bank summary of provider performance."""

    model_config = ConfigDict(extra="ignore")

    bank_name: str
    best_method: str = ""
    average_confidence: float = 0.0
    provider_confidence: dict[str, float] = Field(default_factory=dict)
    provider_counts: dict[str, int] = Field(default_factory=dict)


class PatternStatistics(BaseModel):
    """Snapshot returned by PatternStore.get_statistics()."""

    total_patterns: int = 0
    bank_coverage: int = 0
    average_confidence: float = 0.0
    best_performing_banks: list[str] = Field(default_factory=list)
    method_preference: dict[str, int] = Field(default_factory=dict)
