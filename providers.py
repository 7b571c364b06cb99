"""
providers.py - Vision provider adapters.

This is the only module that knows provider wire formats. Each adapter:
    1. encodes the image as an inline base64 payload
    2. issues one HTTP request (httpx.AsyncClient, shared and injected)
    3. parses the provider envelope with its own `parse(payload)`
    4. hands the raw fields to normalize.normalize_extraction

Adapters:
    CloudVisionAdapter  ("cloud_vision")  OCR text + heuristic field matching
    GeminiAdapter       ("gemini")        JSON object inside a text part
    ClaudeAdapter       ("claude")        labeled lines with a confidence band

`extract` never raises for provider failures. It returns a ProviderResponse
carrying either the normalized result or a classified ProviderError, and the
orchestrator decides what to do next.
"""

from __future__ import annotations

import base64
import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from rapidfuzz import fuzz

from config import ExtractionSettings
from errors import ErrorKind, ParseError, ProviderError
from logging_config import get_logger
from models import ExtractionResult
from normalize import BANK_ALIASES, ConfidenceBand, normalize_extraction, parse_confidence_band
from prompts import ExtractionContext, json_instruction, labeled_instruction

logger = get_logger(__name__)

CLOUD_VISION_URL = "https://vision.googleapis.com/v1/images:annotate"
GEMINI_URL_TEMPLATE = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
CLAUDE_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"

MAX_OUTPUT_TOKENS = 500

# Minimum rapidfuzz partial_ratio for an OCR'd bank name that is not an exact word match.
FUZZY_BANK_THRESHOLD = 88
# Aliases shorter than this are only matched exactly; fuzzy matching them is noise.
FUZZY_MIN_ALIAS_LENGTH = 4

MIN_OCR_AMOUNT = 1
MAX_OCR_AMOUNT = 10_000_000

ACCOUNT_CANDIDATE_PATTERN = re.compile(r"\b\d{10}\b")
ACCOUNT_CONTEXT_KEYWORDS = ("account", "number", "acct", "a/c")
AMOUNT_PATTERNS = (
    re.compile(r"(?:₦|NGN|\bN)\s*([0-9][0-9,]*(?:\.\d{1,2})?)"),
    re.compile(r"([0-9][0-9,]*(?:\.\d{1,2})?)\s*(?:₦|NGN)", re.IGNORECASE),
    re.compile(
        r"(?:amount|total|sum|value)\s*:?\s*(?:₦|NGN|N)?\s*([0-9][0-9,]*(?:\.\d{1,2})?)",
        re.IGNORECASE,
    ),
)
HOLDER_LABEL_PATTERN = re.compile(
    r"(?:account\s*name|beneficiary(?:\s*name)?)\s*:\s*(.+)$",
    re.IGNORECASE,
)
NAME_LINE_PATTERN = re.compile(r"^[A-Z][A-Za-z'\-]+(?:\s+[A-Z][A-Za-z'\-]+){1,4}$")
NON_NAME_WORDS = {
    "account", "number", "amount", "bank", "transfer", "total", "balance", "name",
    "date", "successful", "receipt", "reference", "transaction", "details", "session",
}

JSON_FENCE_PATTERN = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)

LABELED_BANK_PATTERN = re.compile(
    r"BANK\s*NAME:\s*([^(\n]*?)\s*(?:\(\s*Confidence:\s*(\w+)\s*\))?\s*$",
    re.IGNORECASE | re.MULTILINE,
)
LABELED_ACCOUNT_PATTERN = re.compile(r"ACCOUNT\s*NUMBER:\s*(.*)$", re.IGNORECASE | re.MULTILINE)
LABELED_HOLDER_PATTERN = re.compile(r"ACCOUNT\s*HOLDER(?:\s*NAME)?:\s*(.*)$", re.IGNORECASE | re.MULTILINE)
LABELED_AMOUNT_PATTERN = re.compile(r"AMOUNT:\s*(.*)$", re.IGNORECASE | re.MULTILINE)


@dataclass
class ProviderResponse:
    """Outcome of one adapter call: a result or a classified error."""

    provider: str
    result: Optional[ExtractionResult] = None
    error: Optional[ProviderError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.result is not None


class ProviderAdapter(ABC):
    """Common request/parse/retry behavior shared by all providers."""

    name: str = ""
    default_model: Optional[str] = None

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        *,
        model: Optional[str] = None,
        max_retries: int = 1,
    ) -> None:
        self.client = client
        self.api_key = api_key
        self.model = model or self.default_model
        self.max_retries = max(0, max_retries)

    async def extract(
        self,
        image_bytes: bytes,
        context: Optional[ExtractionContext] = None,
        mime_type: str = "image/jpeg",
    ) -> ProviderResponse:
        encoded = base64.b64encode(image_bytes).decode("ascii")
        retries = 0
        while True:
            try:
                payload = await self._request(encoded, mime_type, context)
                result = self.parse(payload)
                return ProviderResponse(self.name, result=result)
            except ProviderError as exc:
                exc.provider = exc.provider or self.name
                if exc.retryable and retries < self.max_retries:
                    retries += 1
                    logger.warning(
                        "provider_retry | provider=%s | kind=%s | retry=%s/%s | error=%s",
                        self.name,
                        exc.kind.value,
                        retries,
                        self.max_retries,
                        exc,
                    )
                    continue
                logger.warning(
                    "provider_failed | provider=%s | kind=%s | retryable=%s | error=%s",
                    self.name,
                    exc.kind.value,
                    exc.retryable,
                    exc,
                )
                return ProviderResponse(self.name, error=exc)
            except Exception as exc:
                logger.error(
                    "provider_unexpected_error | provider=%s | error_type=%s | error=%s",
                    self.name,
                    type(exc).__name__,
                    exc,
                )
                return ProviderResponse(
                    self.name,
                    error=ProviderError(str(exc) or type(exc).__name__, ErrorKind.UNKNOWN, provider=self.name),
                )

    @abstractmethod
    async def _request(self, encoded_image: str, mime_type: str, context: Optional[ExtractionContext]) -> Any:
        """Send one request and return the decoded JSON payload."""

    @abstractmethod
    def parse(self, payload: Any) -> ExtractionResult:
        """Turn a decoded provider payload into a normalized result."""

    async def _post(
        self,
        url: str,
        body: dict,
        *,
        headers: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> Any:
        try:
            response = await self.client.post(url, json=body, headers=headers, params=params)
        except httpx.TimeoutException as exc:
            raise ProviderError(f"{self.name} request timed out", ErrorKind.TIMEOUT, provider=self.name) from exc
        except httpx.RequestError as exc:
            raise ProviderError(
                f"{self.name} request failed: {type(exc).__name__}",
                ErrorKind.NETWORK,
                provider=self.name,
            ) from exc

        if response.status_code == 429:
            raise ProviderError(
                f"{self.name} rate limited",
                ErrorKind.RATE_LIMITED,
                provider=self.name,
                status_code=429,
            )
        if not response.is_success:
            logger.debug("provider_error_body | provider=%s | body=%r", self.name, response.text[:300])
            raise ProviderError(
                f"{self.name} returned an error status",
                ErrorKind.HTTP_STATUS,
                provider=self.name,
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise ParseError(f"{self.name} response is not valid JSON", provider=self.name) from exc


# ----------------------------------------------------------------------
# Google Cloud Vision (OCR text + heuristics)
# ----------------------------------------------------------------------


def _find_bank(text: str) -> tuple[str, Optional[ConfidenceBand]]:
    lowered = text.lower()
    aliases = sorted(BANK_ALIASES, key=len, reverse=True)

    for alias in aliases:
        if re.search(rf"\b{re.escape(alias)}\b", lowered):
            return BANK_ALIASES[alias], ConfidenceBand.HIGH

    best_alias, best_score = "", 0.0
    for alias in aliases:
        if len(alias) < FUZZY_MIN_ALIAS_LENGTH:
            continue
        score = fuzz.partial_ratio(alias, lowered)
        if score > best_score:
            best_alias, best_score = alias, score
    if best_alias and best_score >= FUZZY_BANK_THRESHOLD:
        logger.debug("ocr_bank_fuzzy | alias=%r | score=%.1f", best_alias, best_score)
        return BANK_ALIASES[best_alias], ConfidenceBand.MEDIUM

    return "", None


def _find_account(lines: list[str]) -> str:
    best, best_score = "", -1
    for index, line in enumerate(lines):
        context = " ".join(lines[max(0, index - 1) : index + 1]).lower()
        for match in ACCOUNT_CANDIDATE_PATTERN.findall(line):
            score = sum(1 for keyword in ACCOUNT_CONTEXT_KEYWORDS if keyword in context)
            if score > best_score:
                best, best_score = match, score
    return best


def _find_amount(text: str, account_number: str) -> str:
    for pattern in AMOUNT_PATTERNS:
        for match in pattern.finditer(text):
            candidate = match.group(1).replace(",", "")
            if not candidate or candidate == account_number:
                continue
            try:
                value = float(candidate)
            except ValueError:
                continue
            if MIN_OCR_AMOUNT <= value <= MAX_OCR_AMOUNT:
                return candidate
    return ""


def _looks_like_name(line: str) -> bool:
    if not (5 < len(line) < 50) or not NAME_LINE_PATTERN.match(line):
        return False
    lowered = line.lower()
    if any(word in NON_NAME_WORDS for word in lowered.split()):
        return False
    return not any(re.search(rf"\b{re.escape(alias)}\b", lowered) for alias in BANK_ALIASES)


def _find_holder(lines: list[str]) -> str:
    for line in lines:
        labeled = HOLDER_LABEL_PATTERN.search(line)
        if labeled and labeled.group(1).strip():
            return labeled.group(1).strip()
    for line in lines:
        if _looks_like_name(line):
            return line
    return ""


def parse_ocr_text(text: str) -> tuple[dict[str, str], Optional[ConfidenceBand]]:
    """Pull the four fields out of free OCR text.

    Returns the raw field dict and the band for the bank name match
    (High for a whole-word alias, Medium for a fuzzy one).
    """
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    bank_name, band = _find_bank(text)
    account_number = _find_account(lines)
    raw = {
        "bank_name": bank_name,
        "account_number": account_number,
        "account_holder_name": _find_holder(lines),
        "amount": _find_amount(text, account_number),
    }
    return raw, band


class CloudVisionAdapter(ProviderAdapter):
    name = "cloud_vision"

    async def _request(self, encoded_image: str, mime_type: str, context: Optional[ExtractionContext]) -> Any:
        body = {
            "requests": [
                {
                    "image": {"content": encoded_image},
                    "features": [
                        {"type": "DOCUMENT_TEXT_DETECTION", "maxResults": 1},
                        {"type": "TEXT_DETECTION", "maxResults": 50},
                    ],
                    "imageContext": {
                        "languageHints": ["en", "en-NG"],
                        "textDetectionParams": {"enableTextDetectionConfidenceScore": True},
                    },
                }
            ]
        }
        return await self._post(CLOUD_VISION_URL, body, params={"key": self.api_key})

    def parse(self, payload: Any) -> ExtractionResult:
        if not isinstance(payload, dict) or not isinstance(payload.get("responses"), list):
            raise ParseError("cloud_vision payload has no 'responses' list", provider=self.name)
        if not payload["responses"]:
            raise ParseError("cloud_vision payload has an empty 'responses' list", provider=self.name)

        first = payload["responses"][0] or {}
        error = first.get("error")
        if error:
            message = error.get("message", "annotation error") if isinstance(error, dict) else str(error)
            raise ProviderError(f"cloud_vision annotation error: {message}", ErrorKind.UNKNOWN, provider=self.name)

        text = (first.get("fullTextAnnotation") or {}).get("text") or ""
        if not text:
            annotations = first.get("textAnnotations") or []
            if annotations and isinstance(annotations[0], dict):
                text = annotations[0].get("description") or ""

        if not text.strip():
            logger.info("cloud_vision_no_text | fallback=empty_result")
            return ExtractionResult.empty()

        raw, band = parse_ocr_text(text)
        return normalize_extraction(raw, band)


# ----------------------------------------------------------------------
# Gemini (JSON object inside a text part)
# ----------------------------------------------------------------------


def _strip_json_fences(text: str) -> str:
    fenced = JSON_FENCE_PATTERN.search(text)
    if fenced:
        return fenced.group(1).strip()
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        return text[start : end + 1]
    return text.strip()


class GeminiAdapter(ProviderAdapter):
    name = "gemini"
    default_model = "gemini-2.0-flash"

    async def _request(self, encoded_image: str, mime_type: str, context: Optional[ExtractionContext]) -> Any:
        body = {
            "contents": [
                {
                    "parts": [
                        {"text": json_instruction(context)},
                        {"inline_data": {"mime_type": mime_type, "data": encoded_image}},
                    ]
                }
            ],
            "generationConfig": {
                "temperature": 0.1,
                "maxOutputTokens": MAX_OUTPUT_TOKENS,
                "responseMimeType": "application/json",
            },
        }
        url = GEMINI_URL_TEMPLATE.format(model=self.model)
        return await self._post(url, body, params={"key": self.api_key})

    def parse(self, payload: Any) -> ExtractionResult:
        try:
            text = payload["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ParseError("gemini payload has no candidate text", provider=self.name) from exc
        if not isinstance(text, str):
            raise ParseError("gemini candidate text is not a string", provider=self.name)

        try:
            data = json.loads(_strip_json_fences(text))
        except ValueError as exc:
            raise ParseError("gemini candidate text is not valid JSON", provider=self.name) from exc
        if not isinstance(data, dict):
            raise ParseError("gemini JSON is not an object", provider=self.name)

        return normalize_extraction(data)


# ----------------------------------------------------------------------
# Claude (labeled text lines)
# ----------------------------------------------------------------------


def _labeled_value(pattern: re.Pattern, text: str) -> Optional[str]:
    match = pattern.search(text)
    if not match:
        return None
    return match.group(1).strip()


class ClaudeAdapter(ProviderAdapter):
    name = "claude"
    default_model = "claude-3-haiku-20240307"

    async def _request(self, encoded_image: str, mime_type: str, context: Optional[ExtractionContext]) -> Any:
        body = {
            "model": self.model,
            "max_tokens": MAX_OUTPUT_TOKENS,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "image",
                            "source": {"type": "base64", "media_type": mime_type, "data": encoded_image},
                        },
                        {"type": "text", "text": labeled_instruction(context)},
                    ],
                }
            ],
        }
        headers = {"x-api-key": self.api_key, "anthropic-version": ANTHROPIC_VERSION}
        return await self._post(CLAUDE_URL, body, headers=headers)

    def parse(self, payload: Any) -> ExtractionResult:
        blocks = payload.get("content") if isinstance(payload, dict) else None
        if not isinstance(blocks, list):
            raise ParseError("claude payload has no 'content' list", provider=self.name)
        text = next(
            (
                block.get("text")
                for block in blocks
                if isinstance(block, dict) and block.get("type") == "text" and block.get("text")
            ),
            None,
        )
        if not text:
            raise ParseError("claude payload has no text block", provider=self.name)

        bank_match = LABELED_BANK_PATTERN.search(text)
        account = _labeled_value(LABELED_ACCOUNT_PATTERN, text)
        if bank_match is None and account is None:
            raise ParseError("claude text has no labeled fields", provider=self.name)

        raw = {
            "bank_name": bank_match.group(1).strip() if bank_match else None,
            "account_number": account,
            "account_holder_name": _labeled_value(LABELED_HOLDER_PATTERN, text),
            "amount": _labeled_value(LABELED_AMOUNT_PATTERN, text),
        }
        band = parse_confidence_band(bank_match.group(2)) if bank_match else None
        return normalize_extraction(raw, band)


ADAPTER_TYPES: dict[str, type[ProviderAdapter]] = {
    CloudVisionAdapter.name: CloudVisionAdapter,
    GeminiAdapter.name: GeminiAdapter,
    ClaudeAdapter.name: ClaudeAdapter,
}


def build_adapters(settings: ExtractionSettings, client: httpx.AsyncClient) -> list[ProviderAdapter]:
    """Adapters for every configured provider that has an API key, in order."""
    models = {GeminiAdapter.name: settings.gemini_model, ClaudeAdapter.name: settings.claude_model}
    adapters: list[ProviderAdapter] = []
    for name in settings.provider_order:
        adapter_type = ADAPTER_TYPES.get(name)
        if adapter_type is None:
            logger.warning("provider_unknown | provider=%s | action=skipped", name)
            continue
        api_key = settings.api_key_for(name)
        if not api_key:
            logger.info("provider_skipped | provider=%s | reason=no_api_key", name)
            continue
        adapters.append(
            adapter_type(client, api_key, model=models.get(name), max_retries=settings.max_retries)
        )
    logger.info("providers_configured | order=%s", ",".join(adapter.name for adapter in adapters) or "none")
    return adapters
