"""
orchestrator.py - Provider fallback chain with caching and learning.

Flow for one image:
    1. Cache short-circuit   (only with both a bank hint and an account hint)
    2. Select provider order (learned per-bank ranking, else configured order)
    3. Attempt providers     (each under min(provider timeout, remaining budget))
    4. Stop early            (first attempt at or above the success threshold)
    5. Assemble              (highest-confidence attempt wins, earliest on ties)
    6. Admit                 (cache + pattern store, at or above the admission threshold)

Every attempt is recorded as a ProviderAttempt whatever its outcome. Provider
errors and timeouts never escape `extract`; the caller always gets an
ExtractionResult, with confidence 0 meaning "ask the user to type it in".
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence, Union

import httpx

from cache import ConfidenceCache
from config import ExtractionSettings
from errors import ErrorKind
from image_prep import PreparedImage, detect_mime_type, prepare_image
from logging_config import get_logger, mask_account
from models import ExtractionResult, ProviderAttempt, utc_now
from normalize import canonicalize_bank_name, validate_account_number
from patterns import PatternStore
from prompts import ExtractionContext
from providers import ProviderAdapter, build_adapters
from storage import KeyValueStorage, create_storage

logger = get_logger(__name__)

ImageInput = Union[bytes, bytearray, str, Path]

SIMILAR_PATTERN_EXAMPLES = 3


class ExtractionOrchestrator:
    """Runs the provider fallback chain for one image at a time."""

    def __init__(
        self,
        adapters: Sequence[ProviderAdapter],
        *,
        settings: Optional[ExtractionSettings] = None,
        cache: Optional[ConfidenceCache] = None,
        patterns: Optional[PatternStore] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self.adapters = list(adapters)
        self.settings = settings or ExtractionSettings()
        self.cache = cache
        self.patterns = patterns
        self._owned_client = http_client
        self._timer = timer

    async def __aenter__(self) -> "ExtractionOrchestrator":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the HTTP client when this orchestrator created it."""
        if self._owned_client is not None:
            await self._owned_client.aclose()
            self._owned_client = None

    # ------------------------------------------------------------------
    # Single image
    # ------------------------------------------------------------------

    async def extract(
        self,
        image: ImageInput,
        budget_ms: Optional[int] = None,
        bank_hint: Optional[str] = None,
        account_hint: Optional[str] = None,
    ) -> ExtractionResult:
        """Extract bank-transfer details from one image within `budget_ms`."""
        started = self._timer()
        budget_s = (budget_ms if budget_ms is not None else self.settings.default_budget_ms) / 1000
        deadline = started + max(0.0, budget_s)

        bank = canonicalize_bank_name(bank_hint) if bank_hint else ""
        account = validate_account_number(account_hint) if account_hint else ""

        cached = await self._cache_lookup(bank, account)
        if cached is not None:
            cached.from_cache = True
            cached.total_duration_ms = self._elapsed_ms(started)
            return cached

        prepared = await self._load_image(image)
        order = await self._select_order(bank)
        context = await self._build_context(bank or bank_hint)

        if not order:
            logger.warning("extract_no_providers | fallback=zero_confidence")

        attempts: list[ProviderAttempt] = []
        best: Optional[ExtractionResult] = None
        best_attempt: Optional[ProviderAttempt] = None

        for adapter in order:
            remaining = deadline - self._timer()
            if remaining <= 0:
                logger.warning(
                    "extract_budget_exhausted | attempts=%s | best_confidence=%s",
                    len(attempts),
                    best.confidence if best else 0,
                )
                break

            timeout = min(self.settings.provider_timeout_ms / 1000, remaining)
            attempt, result = await self._attempt(adapter, prepared, context, timeout)
            attempts.append(attempt)

            if result is not None and (best is None or result.confidence > best.confidence):
                best, best_attempt = result, attempt

            if attempt.confidence >= self.settings.success_threshold:
                break

        final = best.core_copy() if best is not None else ExtractionResult.empty()
        final.attempts = attempts
        final.primary_service = attempts[0].provider if attempts else None
        final.fallback_used = len(attempts) > 1
        final.source_provider = best_attempt.provider if best_attempt else None
        final.total_duration_ms = self._elapsed_ms(started)

        logger.info(
            "extract_complete | bank=%r | account=%s | confidence=%s | source=%s | attempts=%s | "
            "fallback_used=%s | duration_ms=%s",
            final.bank_name,
            mask_account(final.account_number),
            final.confidence,
            final.source_provider,
            len(attempts),
            final.fallback_used,
            final.total_duration_ms,
        )

        if best_attempt is not None:
            await self._admit(final, best_attempt)
        return final

    async def _cache_lookup(self, bank: str, account: str) -> Optional[ExtractionResult]:
        if not (self.settings.caching_enabled and self.cache is not None and bank and account):
            return None
        return await self.cache.get(bank, account)

    async def _load_image(self, image: ImageInput) -> PreparedImage:
        if isinstance(image, (str, Path)):
            data = await asyncio.to_thread(Path(image).read_bytes)
        else:
            data = bytes(image)
        if not data:
            raise ValueError("Image is empty.")
        if self.settings.optimize_images:
            return await asyncio.to_thread(prepare_image, data)
        return PreparedImage(data=data, mime_type=detect_mime_type(data))

    async def _select_order(self, bank: str) -> list[ProviderAdapter]:
        adapters = list(self.adapters)
        if not bank or self.patterns is None:
            return adapters

        ranking = await self.patterns.provider_ranking(bank)
        if not ranking:
            return adapters

        position = {name: index for index, (name, _) in enumerate(ranking)}
        ordered = sorted(adapters, key=lambda adapter: position.get(adapter.name, len(position)))
        logger.info(
            "provider_order_learned | bank=%r | order=%s",
            bank,
            ",".join(adapter.name for adapter in ordered),
        )
        return ordered

    async def _build_context(self, bank_hint: Optional[str]) -> Optional[ExtractionContext]:
        if not bank_hint:
            return None
        examples = []
        if self.patterns is not None:
            examples = await self.patterns.get_similar_patterns(bank_hint, SIMILAR_PATTERN_EXAMPLES)
        return ExtractionContext(bank_hint=bank_hint, examples=examples)

    async def _attempt(
        self,
        adapter: ProviderAdapter,
        prepared: PreparedImage,
        context: Optional[ExtractionContext],
        timeout: float,
    ) -> tuple[ProviderAttempt, Optional[ExtractionResult]]:
        started_at = utc_now()
        t0 = self._timer()
        logger.info("provider_attempt_start | provider=%s | timeout_ms=%s", adapter.name, int(timeout * 1000))

        try:
            response = await asyncio.wait_for(
                adapter.extract(prepared.data, context, prepared.mime_type),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            attempt = ProviderAttempt(
                provider=adapter.name,
                started_at=started_at,
                duration_ms=self._elapsed_ms(t0),
                success=False,
                error_kind=ErrorKind.TIMEOUT,
                error_message=f"No response within {int(timeout * 1000)} ms.",
            )
            logger.warning("provider_attempt_timeout | provider=%s | timeout_ms=%s", adapter.name, int(timeout * 1000))
            return attempt, None
        except Exception as exc:
            logger.error(
                "provider_attempt_error | provider=%s | error_type=%s | error=%s",
                adapter.name,
                type(exc).__name__,
                exc,
                exc_info=True,
            )
            attempt = ProviderAttempt(
                provider=adapter.name,
                started_at=started_at,
                duration_ms=self._elapsed_ms(t0),
                success=False,
                error_kind=ErrorKind.UNKNOWN,
                error_message=str(exc) or type(exc).__name__,
            )
            return attempt, None

        duration_ms = self._elapsed_ms(t0)
        if response.error is not None or response.result is None:
            error = response.error
            attempt = ProviderAttempt(
                provider=adapter.name,
                started_at=started_at,
                duration_ms=duration_ms,
                success=False,
                error_kind=error.kind if error else ErrorKind.UNKNOWN,
                error_message=str(error) if error else "Provider returned no result.",
            )
            return attempt, None

        attempt = ProviderAttempt(
            provider=adapter.name,
            started_at=started_at,
            duration_ms=duration_ms,
            success=True,
            confidence=response.result.confidence,
        )
        logger.info(
            "provider_attempt_complete | provider=%s | confidence=%s | duration_ms=%s",
            adapter.name,
            attempt.confidence,
            duration_ms,
        )
        return attempt, response.result

    async def _admit(self, result: ExtractionResult, source: ProviderAttempt) -> None:
        if result.confidence < self.settings.admission_threshold:
            return
        if self.settings.caching_enabled and self.cache is not None:
            await self.cache.set(
                result.bank_name,
                result.account_number,
                result,
                source.duration_ms,
                source.provider,
            )
        if self.settings.learning_enabled and self.patterns is not None:
            await self.patterns.learn_from_success(result, source.duration_ms, source.provider)

    def _elapsed_ms(self, since: float) -> int:
        return max(0, int((self._timer() - since) * 1000))

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def extract_batch(
        self,
        images: Iterable[ImageInput],
        budget_ms: Optional[int] = None,
        concurrency: Optional[int] = None,
    ) -> list[ExtractionResult]:
        """Extract several images concurrently; one failure never sinks the batch.

        Results come back in input order. A failed image yields a
        zero-confidence result in its slot.
        """
        items = list(images)
        semaphore = asyncio.Semaphore(max(1, concurrency or self.settings.batch_concurrency))

        async def _run(image: ImageInput) -> ExtractionResult:
            async with semaphore:
                return await self.extract(image, budget_ms=budget_ms)

        outcomes = await asyncio.gather(*(_run(image) for image in items), return_exceptions=True)

        results: list[ExtractionResult] = []
        for index, outcome in enumerate(outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(
                    "batch_item_failed | index=%s | error_type=%s | error=%s | fallback=zero_confidence",
                    index,
                    type(outcome).__name__,
                    outcome,
                )
                results.append(ExtractionResult.empty())
            else:
                results.append(outcome)

        logger.info(
            "batch_complete | images=%s | usable=%s",
            len(items),
            sum(1 for result in results if result.confidence > 0),
        )
        return results


def create_orchestrator(
    settings: Optional[ExtractionSettings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    storage: Optional[KeyValueStorage] = None,
) -> ExtractionOrchestrator:
    """Wire storage, cache, pattern store and provider adapters from settings."""
    settings = settings or ExtractionSettings.from_env()
    owned_client = None
    if http_client is None:
        owned_client = httpx.AsyncClient(timeout=httpx.Timeout(settings.provider_timeout_ms / 1000))
        http_client = owned_client

    storage = storage or create_storage(settings)
    cache = ConfidenceCache(storage, admission_threshold=settings.admission_threshold)
    patterns = PatternStore(storage)
    adapters = build_adapters(settings, http_client)

    logger.info(
        "orchestrator_ready | providers=%s | caching=%s | learning=%s | storage=%s",
        ",".join(adapter.name for adapter in adapters) or "none",
        settings.caching_enabled,
        settings.learning_enabled,
        type(storage).__name__,
    )
    return ExtractionOrchestrator(
        adapters,
        settings=settings,
        cache=cache,
        patterns=patterns,
        http_client=owned_client,
    )
