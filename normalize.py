"""
normalize.py - Normalization, validation and confidence scoring.

Four field normalizers:
    canonicalize_bank_name(raw)   -> canonical bank name or ''
    validate_account_number(raw)  -> exactly 10 digits or ''
    clean_holder_name(raw)        -> name without honorifics or ''
    clean_amount(raw)             -> plain numeric string or ''

Scoring:
    score_confidence(fields, bank_band) -> int in [0, 100]

Convenience wrapper:
    normalize_extraction(raw, bank_band) -> ExtractionResult

Design principles:
    - Same normalization for every provider
    - Pure transformations, no external API calls
    - Invalid input degrades to empty fields, never raises
"""

from __future__ import annotations

import math
import re
from enum import Enum
from typing import Any, Mapping, Optional

from logging_config import get_logger, mask_account
from models import ACCOUNT_NUMBER_LENGTH, ExtractedFields, ExtractionResult, clamp_confidence

logger = get_logger(__name__)

# Lower-cased alias -> canonical institution name. Order matters for the
# substring pass: the first alias that matches wins.
BANK_ALIASES: dict[str, str] = {
    "gtb": "GTBank",
    "gtbank": "GTBank",
    "gt bank": "GTBank",
    "guaranty trust": "GTBank",
    "guaranty trust bank": "GTBank",
    "access": "Access Bank",
    "access bank": "Access Bank",
    "diamond bank": "Access Bank",
    "zenith": "Zenith Bank",
    "zenith bank": "Zenith Bank",
    "uba": "United Bank for Africa",
    "united bank": "United Bank for Africa",
    "united bank for africa": "United Bank for Africa",
    "first bank": "First Bank",
    "firstbank": "First Bank",
    "fidelity": "Fidelity Bank",
    "fidelity bank": "Fidelity Bank",
    "stanbic": "Stanbic IBTC Bank",
    "stanbic ibtc": "Stanbic IBTC Bank",
    "stanbic ibtc bank": "Stanbic IBTC Bank",
    "sterling": "Sterling Bank",
    "sterling bank": "Sterling Bank",
    "union bank": "Union Bank",
    "wema": "Wema Bank",
    "wema bank": "Wema Bank",
    "fcmb": "FCMB",
    "first city monument bank": "FCMB",
    "ecobank": "Ecobank",
    "eco bank": "Ecobank",
    "polaris": "Polaris Bank",
    "polaris bank": "Polaris Bank",
    "keystone": "Keystone Bank",
    "keystone bank": "Keystone Bank",
    "unity bank": "Unity Bank",
    "jaiz": "Jaiz Bank",
    "jaiz bank": "Jaiz Bank",
    "palmpay": "PalmPay",
    "palm pay": "PalmPay",
    "palm-pay": "PalmPay",
    "palmcredit": "PalmCredit",
    "palm credit": "PalmCredit",
    "palmaccess": "PalmAccess",
    "palm access": "PalmAccess",
    "opay": "Opay",
    "o-pay": "Opay",
    "o pay": "Opay",
    "opay digital services": "Opay",
    "kuda": "Kuda Bank",
    "kuda bank": "Kuda Bank",
    "kuda microfinance": "Kuda Bank",
    "kuda mfb": "Kuda Bank",
    "vfd": "VFD Microfinance Bank",
    "vfd microfinance": "VFD Microfinance Bank",
    "vfd mfb": "VFD Microfinance Bank",
    "moniepoint": "Moniepoint",
    "monie point": "Moniepoint",
    "moniepoint mfb": "Moniepoint",
    "providus": "Providus Bank",
    "providus bank": "Providus Bank",
    "carbon": "Carbon",
    "carbon microfinance": "Carbon",
    "carbon mfb": "Carbon",
    "9psb": "9 Payment Service Bank",
    "9 psb": "9 Payment Service Bank",
    "9 payment service bank": "9 Payment Service Bank",
    "parallex": "Parallex Bank",
    "parallex bank": "Parallex Bank",
    "taj": "TAJ Bank",
    "taj bank": "TAJ Bank",
    "suntrust": "SunTrust Bank",
    "suntrust bank": "SunTrust Bank",
    "premiumtrust": "PremiumTrust Bank",
    "premium trust": "PremiumTrust Bank",
    "premiumtrust bank": "PremiumTrust Bank",
    "globus": "Globus Bank",
    "globus bank": "Globus Bank",
    "rubies": "Rubies MFB",
    "rubies mfb": "Rubies MFB",
    "sparkle": "Sparkle MFB",
    "sparkle mfb": "Sparkle MFB",
    "fbn": "First Bank",
    "first bank of nigeria": "First Bank",
    "standard chartered": "Standard Chartered",
    "citibank": "Citibank",
}

# Unknown names containing one of these are accepted verbatim.
BANK_KEYWORDS: tuple[str, ...] = ("bank", "microfinance", "pay", "finance")

# A bare generic word names no institution on its own.
GENERIC_BANK_WORDS: frozenset[str] = frozenset(BANK_KEYWORDS) | {"mfb", "trust"}

# Shorter raw strings are too ambiguous for the "alias contains raw" pass.
MIN_SUBSTRING_LENGTH = 3

PLACEHOLDERS = {"", "n/a", "na", "none", "null", "unknown", "not found", "not visible", "-"}

HONORIFIC_PATTERN = re.compile(r"^(?:MR|MRS|MS|MISS|DR|PROF|CHIEF|ENGR)\.?\s+", re.IGNORECASE)
CURRENCY_PATTERN = re.compile(r"(?:NGN|₦|\$|€|£|¥|₹)", re.IGNORECASE)
NUMBER_PATTERN = re.compile(r"\d+(?:\.\d+)?")


class ConfidenceBand(str, Enum):
    """Qualitative confidence reported by some providers for the bank name."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


BAND_POINTS: dict[ConfidenceBand, int] = {
    ConfidenceBand.HIGH: 45,
    ConfidenceBand.MEDIUM: 30,
    ConfidenceBand.LOW: 20,
}
ACCOUNT_POINTS = 35
HOLDER_POINTS = 15
AMOUNT_POINTS = 15


def _is_placeholder(text: str) -> bool:
    return text.strip().strip(".").lower() in PLACEHOLDERS


def canonicalize_bank_name(raw: Any) -> str:
    """Resolve a raw bank name to its canonical form, or '' if rejected."""
    if raw is None:
        return ""

    text = re.sub(r"\s+", " ", str(raw)).strip()
    if _is_placeholder(text):
        return ""

    lowered = text.lower()

    canonical = BANK_ALIASES.get(lowered)
    if canonical:
        logger.debug("canonicalize_bank_name | raw=%r | match=exact | canonical=%r", text, canonical)
        return canonical

    if lowered in GENERIC_BANK_WORDS:
        logger.debug("canonicalize_bank_name | raw=%r | rejected=generic", text)
        return ""

    for alias, canonical in BANK_ALIASES.items():
        if alias in lowered or (len(lowered) >= MIN_SUBSTRING_LENGTH and lowered in alias):
            logger.debug(
                "canonicalize_bank_name | raw=%r | match=substring | alias=%r | canonical=%r",
                text,
                alias,
                canonical,
            )
            return canonical

    if any(keyword in lowered for keyword in BANK_KEYWORDS):
        logger.debug("canonicalize_bank_name | raw=%r | match=keyword | canonical=verbatim", text)
        return text

    logger.debug("canonicalize_bank_name | raw=%r | rejected=True", text)
    return ""


def validate_account_number(raw: Any, length: int = ACCOUNT_NUMBER_LENGTH) -> str:
    """Strip non-digits; accept only an exact `length`-digit result."""
    if raw is None:
        return ""

    digits = re.sub(r"\D", "", str(raw))
    if len(digits) != length:
        if digits:
            logger.debug(
                "validate_account_number | rejected_length=%s | expected=%s",
                len(digits),
                length,
            )
        return ""
    return digits


def clean_holder_name(raw: Any) -> str:
    """Trim, drop placeholders and leading honorifics."""
    if raw is None:
        return ""

    text = re.sub(r"\s+", " ", str(raw)).strip()
    if _is_placeholder(text) or text.startswith("["):
        return ""

    previous = None
    while previous != text:
        previous = text
        text = HONORIFIC_PATTERN.sub("", text).strip()
    return text


def clean_amount(raw: Any) -> str:
    """Normalize an amount into a plain numeric string ('' when unusable)."""
    if raw is None or isinstance(raw, bool):
        return ""

    if isinstance(raw, (int, float)):
        value = float(raw)
        if not math.isfinite(value) or value < 0:
            return ""
        return f"{value:f}".rstrip("0").rstrip(".")

    text = str(raw).strip()
    if _is_placeholder(text):
        return ""
    if text.startswith("-") or (text.startswith("(") and text.endswith(")")):
        logger.debug("clean_amount | negative=%r | fallback=''", text)
        return ""

    text = CURRENCY_PATTERN.sub("", text)
    text = text.replace(",", "").replace(" ", "")
    match = NUMBER_PATTERN.search(text)
    if not match:
        return ""

    candidate = match.group(0)
    try:
        value = float(candidate)
    except ValueError:
        return ""
    if not math.isfinite(value):
        return ""
    return candidate


def parse_confidence_band(raw: Any) -> Optional[ConfidenceBand]:
    """Map 'High' / 'medium' / 'LOW' to a ConfidenceBand, None when unknown."""
    if raw is None:
        return None
    if isinstance(raw, ConfidenceBand):
        return raw
    try:
        return ConfidenceBand(str(raw).strip().lower())
    except ValueError:
        return None


def band_from_score(score: Any) -> ConfidenceBand:
    """Derive a band from a numeric provider confidence."""
    value = clamp_confidence(score)
    if value >= 85:
        return ConfidenceBand.HIGH
    if value >= 60:
        return ConfidenceBand.MEDIUM
    return ConfidenceBand.LOW


def score_confidence(fields: ExtractedFields, bank_band: Optional[ConfidenceBand] = None) -> int:
    """Weighted composite confidence.

    bank name: High 45 / Medium 30 / Low 20 (Medium when no band is known)
    valid account number: 35
    holder name: 15
    amount: 15
    """
    score = 0
    if fields.bank_name:
        score += BAND_POINTS[bank_band or ConfidenceBand.MEDIUM]
    if fields.account_number:
        score += ACCOUNT_POINTS
    if fields.account_holder_name:
        score += HOLDER_POINTS
    if fields.amount:
        score += AMOUNT_POINTS
    return clamp_confidence(score)


def _pick(raw: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        if name in raw and raw[name] is not None:
            return raw[name]
    return None


def normalize_extraction(
    raw: Mapping[str, Any] | None,
    bank_band: Optional[ConfidenceBand] = None,
) -> ExtractionResult:
    """Turn a raw provider dict (camelCase or snake_case keys) into a scored result.

    When no band is given, a numeric `confidence` in the raw payload is
    mapped to a band; the final score is always the composite score, so
    fields that fail validation lower it.
    """
    if not raw:
        return ExtractionResult.empty()

    bank_name = canonicalize_bank_name(_pick(raw, "bank_name", "bankName"))
    account_number = validate_account_number(_pick(raw, "account_number", "accountNumber"))
    holder = clean_holder_name(_pick(raw, "account_holder_name", "accountHolderName"))
    amount = clean_amount(_pick(raw, "amount"))

    if bank_band is None:
        bank_band = parse_confidence_band(_pick(raw, "bank_confidence", "bankConfidence"))
    if bank_band is None:
        reported = _pick(raw, "confidence")
        if reported is not None:
            bank_band = band_from_score(reported)

    fields = ExtractedFields(
        bank_name=bool(bank_name),
        account_number=bool(account_number),
        account_holder_name=bool(holder),
        amount=bool(amount),
    )
    confidence = score_confidence(fields, bank_band)

    result = ExtractionResult(
        bank_name=bank_name,
        account_number=account_number,
        account_holder_name=holder,
        amount=amount,
        confidence=confidence,
    )
    logger.debug(
        "normalize_extraction | bank=%r | account=%s | holder=%s | amount=%r | band=%s | confidence=%s",
        result.bank_name,
        mask_account(result.account_number),
        bool(result.account_holder_name),
        result.amount,
        bank_band.value if bank_band else None,
        result.confidence,
    )
    return result
