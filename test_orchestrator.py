"""
test_orchestrator.py - Fallback Chain Tests

Fake adapters stand in for the real providers so each scenario controls
confidence, errors and latency directly.

Covers:
- early stop at the success threshold, fallback to the best attempt
- provider errors, unexpected exceptions and per-provider timeouts
- total budget exhaustion
- cache admission, hint-based cache hits, learned provider ordering
- batch extraction (order, isolation, concurrency bound)

Usage: pytest test_orchestrator.py
"""

from __future__ import annotations

import asyncio
import os
import sys
from typing import Callable, Optional, Union

# Ensure we can import from project root
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import httpx
import pytest

from cache import ConfidenceCache
from config import ExtractionSettings
from errors import ErrorKind, ProviderError
from models import ExtractionResult
from normalize import normalize_extraction
from orchestrator import ExtractionOrchestrator, create_orchestrator
from patterns import PatternStore
from prompts import ExtractionContext
from providers import ProviderResponse
from storage import InMemoryStorage

IMAGE = b"\xff\xd8\xff\xe0receipt-one"


class FakeAdapter:
    """Adapter double: fixed (or computed) outcome, optional delay, call bookkeeping."""

    active = 0
    max_active = 0

    def __init__(
        self,
        name: str,
        result: Union[ExtractionResult, Callable[[bytes], ExtractionResult], None] = None,
        *,
        error: Optional[Exception] = None,
        delay: float = 0.0,
    ) -> None:
        self.name = name
        self.result = result
        self.error = error
        self.delay = delay
        self.calls = 0
        self.images: list[bytes] = []
        self.contexts: list[Optional[ExtractionContext]] = []

    async def extract(self, image_bytes, context=None, mime_type="image/jpeg") -> ProviderResponse:
        self.calls += 1
        self.images.append(image_bytes)
        self.contexts.append(context)
        FakeAdapter.active += 1
        FakeAdapter.max_active = max(FakeAdapter.max_active, FakeAdapter.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            FakeAdapter.active -= 1

        if isinstance(self.error, ProviderError):
            return ProviderResponse(self.name, error=self.error)
        if self.error is not None:
            raise self.error
        result = self.result(image_bytes) if callable(self.result) else self.result
        return ProviderResponse(self.name, result=result)


def _result(confidence: int, bank: str = "GTBank", account: str = "0123456789") -> ExtractionResult:
    return ExtractionResult(
        bank_name=bank,
        account_number=account,
        account_holder_name="Adaeze Okafor",
        amount="25000",
        confidence=confidence,
    )


def _settings(**overrides) -> ExtractionSettings:
    values = {"storage_backend": "memory", "optimize_images": False}
    values.update(overrides)
    return ExtractionSettings(**values)


def _orchestrator(adapters, *, with_stores: bool = False, **overrides) -> ExtractionOrchestrator:
    cache = patterns = None
    if with_stores:
        storage = InMemoryStorage()
        cache = ConfidenceCache(storage)
        patterns = PatternStore(storage)
    return ExtractionOrchestrator(adapters, settings=_settings(**overrides), cache=cache, patterns=patterns)


@pytest.fixture(autouse=True)
def _reset_concurrency_counters():
    FakeAdapter.active = 0
    FakeAdapter.max_active = 0
    yield


# ----------------------------------------------------------------------
# Single image
# ----------------------------------------------------------------------


def test_first_confident_provider_stops_the_chain():
    first = FakeAdapter("cloud_vision", _result(85))
    second = FakeAdapter("gemini", _result(100))

    result = asyncio.run(_orchestrator([first, second]).extract(IMAGE))

    assert result.confidence == 85
    assert second.calls == 0
    assert len(result.attempts) == 1
    assert result.primary_service == "cloud_vision"
    assert result.source_provider == "cloud_vision"
    assert result.fallback_used is False
    assert result.from_cache is False


def test_weak_results_fall_back_to_highest_confidence():
    adapters = [
        FakeAdapter("cloud_vision", _result(50)),
        FakeAdapter("gemini", _result(70)),
        FakeAdapter("claude", _result(65)),
    ]

    result = asyncio.run(_orchestrator(adapters).extract(IMAGE))

    assert [attempt.provider for attempt in result.attempts] == ["cloud_vision", "gemini", "claude"]
    assert result.confidence == 70
    assert result.source_provider == "gemini"
    assert result.primary_service == "cloud_vision"
    assert result.fallback_used is True
    assert result.attempts == sorted(result.attempts, key=lambda attempt: attempt.started_at)


def test_ties_keep_the_earliest_attempt():
    adapters = [
        FakeAdapter("cloud_vision", _result(65, bank="Zenith Bank", account="2012345678")),
        FakeAdapter("gemini", _result(65)),
    ]
    result = asyncio.run(_orchestrator(adapters).extract(IMAGE))

    assert result.source_provider == "cloud_vision"
    assert result.bank_name == "Zenith Bank"


def test_provider_error_is_recorded_and_next_provider_used():
    adapters = [
        FakeAdapter("cloud_vision", error=ProviderError("connection refused", ErrorKind.NETWORK)),
        FakeAdapter("gemini", _result(85)),
    ]

    result = asyncio.run(_orchestrator(adapters).extract(IMAGE))

    failed, succeeded = result.attempts
    assert failed.success is False
    assert failed.error_kind is ErrorKind.NETWORK
    assert failed.confidence == 0
    assert succeeded.success is True
    assert result.confidence == 85
    assert result.source_provider == "gemini"


def test_unexpected_exception_is_classified_unknown():
    adapters = [
        FakeAdapter("cloud_vision", error=RuntimeError("adapter bug")),
        FakeAdapter("gemini", _result(90)),
    ]

    result = asyncio.run(_orchestrator(adapters).extract(IMAGE))

    assert result.attempts[0].error_kind is ErrorKind.UNKNOWN
    assert "adapter bug" in result.attempts[0].error_message
    assert result.confidence == 90


def test_slow_provider_times_out_and_chain_continues():
    adapters = [
        FakeAdapter("cloud_vision", _result(100), delay=2.0),
        FakeAdapter("gemini", _result(85)),
    ]
    orchestrator = _orchestrator(adapters, provider_timeout_ms=100)

    result = asyncio.run(orchestrator.extract(IMAGE, budget_ms=1_000))

    assert result.attempts[0].error_kind is ErrorKind.TIMEOUT
    assert result.attempts[0].success is False
    assert result.confidence == 85
    assert result.fallback_used is True
    assert result.primary_service == "cloud_vision"
    assert result.total_duration_ms < 1_000


def test_exhausted_budget_returns_zero_confidence_quickly():
    adapters = [FakeAdapter(name, _result(100), delay=2.0) for name in ("cloud_vision", "gemini", "claude")]
    orchestrator = _orchestrator(adapters, provider_timeout_ms=10_000)

    result = asyncio.run(orchestrator.extract(IMAGE, budget_ms=150))

    assert result.confidence == 0
    assert result.needs_manual_entry
    assert result.attempts
    assert all(attempt.error_kind is ErrorKind.TIMEOUT for attempt in result.attempts)
    assert result.source_provider is None
    assert result.total_duration_ms < 1_000


def test_no_configured_providers_gives_empty_result():
    result = asyncio.run(_orchestrator([]).extract(IMAGE))

    assert result.confidence == 0
    assert result.attempts == []
    assert result.primary_service is None
    assert result.fallback_used is False


def test_empty_image_is_rejected():
    with pytest.raises(ValueError):
        asyncio.run(_orchestrator([FakeAdapter("gemini", _result(90))]).extract(b""))


def test_image_can_be_a_file_path(tmp_path):
    path = tmp_path / "receipt.jpg"
    path.write_bytes(IMAGE)
    adapter = FakeAdapter("gemini", _result(90))
    orchestrator = _orchestrator([adapter])

    asyncio.run(orchestrator.extract(str(path)))
    asyncio.run(orchestrator.extract(path))

    assert adapter.images == [IMAGE, IMAGE]


# ----------------------------------------------------------------------
# Cache and learning
# ----------------------------------------------------------------------


def test_confident_result_is_cached_and_served_for_hinted_lookup():
    adapter = FakeAdapter("gemini", _result(100))
    orchestrator = _orchestrator([adapter], with_stores=True)

    async def scenario():
        first = await orchestrator.extract(IMAGE)
        second = await orchestrator.extract(IMAGE, bank_hint="gtb", account_hint="0123-456-789")
        return first, second

    first, second = asyncio.run(scenario())

    assert first.from_cache is False
    assert second.from_cache is True
    assert second.bank_name == "GTBank"
    assert second.confidence == 100
    assert second.attempts == []
    assert adapter.calls == 1
    assert len(orchestrator.cache) == 1
    assert len(orchestrator.patterns) == 1


def test_below_admission_is_returned_but_not_stored():
    adapter = FakeAdapter("gemini", _result(78))
    orchestrator = _orchestrator([adapter], with_stores=True)

    result = asyncio.run(orchestrator.extract(IMAGE))

    assert result.confidence == 78
    assert len(result.attempts) == 1
    assert len(orchestrator.cache) == 0
    assert len(orchestrator.patterns) == 0


def test_alias_scenario_is_canonicalized_and_admitted():
    raw = {"bankName": "gtb", "accountNumber": "0123456789", "bankConfidence": "High"}
    orchestrator = _orchestrator([FakeAdapter("cloud_vision", normalize_extraction(raw))], with_stores=True)

    async def scenario():
        result = await orchestrator.extract(IMAGE)
        cached = await orchestrator.cache.get("GTBank", "0123456789")
        return result, cached

    result, cached = asyncio.run(scenario())

    assert result.bank_name == "GTBank"
    assert result.confidence >= 80
    assert cached is not None and cached.account_number == "0123456789"


def test_short_account_scenario_is_not_admitted():
    weak = normalize_extraction({"bankName": "gtb", "accountNumber": "12345"})
    orchestrator = _orchestrator([FakeAdapter("cloud_vision", weak)], with_stores=True)

    result = asyncio.run(orchestrator.extract(IMAGE))

    assert result.account_number == ""
    assert result.extracted_fields.account_number is False
    assert result.confidence < 80
    assert len(orchestrator.cache) == 0


def test_caching_disabled_still_learns():
    adapter = FakeAdapter("gemini", _result(95))
    orchestrator = _orchestrator([adapter], with_stores=True, caching_enabled=False)

    async def scenario():
        await orchestrator.extract(IMAGE)
        return await orchestrator.extract(IMAGE, bank_hint="GTBank", account_hint="0123456789")

    second = asyncio.run(scenario())

    assert second.from_cache is False
    assert adapter.calls == 2
    assert len(orchestrator.cache) == 0
    assert len(orchestrator.patterns) == 1


def test_learned_ranking_reorders_providers_for_hinted_bank():
    first = FakeAdapter("cloud_vision", _result(90))
    second = FakeAdapter("gemini", _result(90))
    orchestrator = _orchestrator([first, second], with_stores=True)

    async def scenario():
        await orchestrator.patterns.learn_from_success(_result(97), 1200, "gemini")
        return await orchestrator.extract(IMAGE, bank_hint="GTBank")

    result = asyncio.run(scenario())

    assert result.primary_service == "gemini"
    assert second.calls == 1
    assert first.calls == 0


def test_bank_hint_and_examples_reach_the_provider():
    adapter = FakeAdapter("gemini", _result(90, bank="Opay", account="8012345678"))
    orchestrator = _orchestrator([adapter], with_stores=True)

    async def scenario():
        await orchestrator.patterns.learn_from_success(_result(92, bank="Opay", account="8099999999"), 900, "claude")
        await orchestrator.extract(IMAGE, bank_hint="opay")

    asyncio.run(scenario())

    context = adapter.contexts[0]
    assert context is not None
    assert context.bank_hint == "Opay"
    assert context.profile is not None
    assert [record.account_number for record in context.examples] == ["8099999999"]


def test_unhinted_extract_sends_no_context():
    adapter = FakeAdapter("gemini", _result(90))
    asyncio.run(_orchestrator([adapter]).extract(IMAGE))
    assert adapter.contexts == [None]


# ----------------------------------------------------------------------
# Batch
# ----------------------------------------------------------------------


def test_batch_keeps_order_and_isolates_failures(tmp_path):
    accounts = {b"img-a": "0000000001", b"img-c": "0000000003"}
    adapter = FakeAdapter("gemini", lambda data: _result(90, account=accounts[data]))
    orchestrator = _orchestrator([adapter])

    images = [b"img-a", str(tmp_path / "missing.jpg"), b"img-c", b""]
    results = asyncio.run(orchestrator.extract_batch(images))

    assert len(results) == 4
    assert results[0].account_number == "0000000001"
    assert results[1].confidence == 0
    assert results[2].account_number == "0000000003"
    assert results[3].confidence == 0


def test_batch_respects_concurrency_bound():
    adapter = FakeAdapter("gemini", _result(90), delay=0.05)
    orchestrator = _orchestrator([adapter])

    results = asyncio.run(orchestrator.extract_batch([IMAGE] * 6, concurrency=2))

    assert len(results) == 6
    assert all(result.confidence == 90 for result in results)
    assert FakeAdapter.max_active == 2


# ----------------------------------------------------------------------
# Wiring
# ----------------------------------------------------------------------


def test_create_orchestrator_with_injected_client():
    settings = _settings(gemini_api_key="g-key", anthropic_api_key="a-key")

    async def scenario():
        client = httpx.AsyncClient()
        orchestrator = create_orchestrator(settings, http_client=client, storage=InMemoryStorage())
        names = [adapter.name for adapter in orchestrator.adapters]
        await orchestrator.aclose()
        closed = client.is_closed
        await client.aclose()
        return orchestrator, names, closed

    orchestrator, names, closed = asyncio.run(scenario())

    assert names == ["gemini", "claude"]
    assert orchestrator.cache is not None
    assert orchestrator.patterns is not None
    assert closed is False


def test_owned_client_is_closed_on_exit():
    async def scenario():
        async with create_orchestrator(_settings(), storage=InMemoryStorage()) as orchestrator:
            client = orchestrator._owned_client
            assert client is not None
        return client

    client = asyncio.run(scenario())
    assert client.is_closed


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-v"]))
