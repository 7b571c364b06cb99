"""
test_cache.py - ConfidenceCache Tests

Covers:
- admission gate (>= 80 stored, < 80 no-op)
- hits, misses and access counting
- expiry after MAX_AGE
- capacity eviction of exactly the least recently accessed 20%
- persistence reload, corrupt payloads and failing storage

Usage: pytest test_cache.py
"""

from __future__ import annotations

import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone

# Ensure we can import from project root
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import pytest

from cache import CACHE_STORAGE_KEY, MAX_ENTRIES, ConfidenceCache, make_key
from errors import StorageError
from models import ExtractionResult
from storage import InMemoryStorage, KeyValueStorage


class FakeClock:
    """Deterministic clock; each call returns the current time then ticks one second."""

    def __init__(self) -> None:
        self.now = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        current = self.now
        self.now += timedelta(seconds=1)
        return current

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FailingStorage(KeyValueStorage):
    async def get(self, key):
        raise StorageError("read failed")

    async def set(self, key, value):
        raise StorageError("write failed")

    async def remove(self, key):
        raise StorageError("remove failed")


def _result(bank: str = "GTBank", account: str = "0123456789", confidence: int = 90) -> ExtractionResult:
    return ExtractionResult(
        bank_name=bank,
        account_number=account,
        account_holder_name="Adaeze Okafor",
        confidence=confidence,
    )


def _account(index: int) -> str:
    return f"{index:010d}"


def test_make_key():
    assert make_key("GTBank", "0123456789") == "gtbank_0123456789"
    assert make_key("  United  Bank for Africa ", "2012345678") == "united_bank_for_africa_2012345678"


def test_admitted_result_round_trips():
    async def scenario():
        cache = ConfidenceCache(InMemoryStorage(), clock=FakeClock())
        assert await cache.set("GTBank", "0123456789", _result(confidence=80), 1200, "gemini") is True
        cached = await cache.get("GTBank", "0123456789")
        assert cached is not None
        assert cached.bank_name == "GTBank"
        assert cached.account_number == "0123456789"
        assert cached.confidence == 80

    asyncio.run(scenario())


def test_below_admission_is_noop():
    async def scenario():
        cache = ConfidenceCache(InMemoryStorage(), clock=FakeClock())
        assert await cache.set("GTBank", "0123456789", _result(confidence=79), 900, "claude") is False
        assert await cache.get("GTBank", "0123456789") is None
        stats = await cache.stats()
        assert stats.total_entries == 0
        assert stats.misses == 1

    asyncio.run(scenario())


def test_hits_misses_and_access_counts():
    async def scenario():
        cache = ConfidenceCache(InMemoryStorage(), clock=FakeClock())
        await cache.set("GTBank", "0123456789", _result(), 1000, "gemini")
        await cache.set("Zenith Bank", "2012345678", _result("Zenith Bank", "2012345678"), 1000, "gemini")

        for _ in range(3):
            assert await cache.get("GTBank", "0123456789") is not None
        assert await cache.get("Zenith Bank", "2012345678") is not None
        assert await cache.get("Kuda Bank", "1111111111") is None

        stats = await cache.stats(top_n=1)
        assert stats.hits == 4
        assert stats.misses == 1
        assert stats.hit_rate == pytest.approx(0.8)
        assert stats.most_accessed_banks == ["GTBank"]
        assert stats.average_confidence == pytest.approx(90.0)
        assert stats.estimated_size_bytes > 0
        assert stats.oldest_entry < stats.newest_entry

    asyncio.run(scenario())


def test_hit_rate_is_zero_before_any_lookup():
    async def scenario():
        stats = await ConfidenceCache(InMemoryStorage()).stats()
        assert stats.hit_rate == 0.0
        assert stats.oldest_entry is None

    asyncio.run(scenario())


def test_expired_entries_are_purged_on_lookup():
    async def scenario():
        clock = FakeClock()
        cache = ConfidenceCache(InMemoryStorage(), clock=clock)
        await cache.set("GTBank", "0123456789", _result(), 1000, "gemini")

        clock.advance(days=6)
        assert await cache.get("GTBank", "0123456789") is not None

        clock.advance(days=2)
        assert await cache.get("GTBank", "0123456789") is None
        assert (await cache.stats()).total_entries == 0

    asyncio.run(scenario())


def test_capacity_eviction_removes_oldest_twenty_percent():
    async def scenario():
        cache = ConfidenceCache(InMemoryStorage(), clock=FakeClock())
        for index in range(MAX_ENTRIES + 1):
            await cache.set("GTBank", _account(index), _result(account=_account(index)), 1000, "gemini")

        stats = await cache.stats()
        assert stats.total_entries <= MAX_ENTRIES
        assert stats.total_entries == (MAX_ENTRIES + 1) - (MAX_ENTRIES + 1) // 5

        evicted = (MAX_ENTRIES + 1) // 5
        for index in range(evicted):
            assert await cache.get("GTBank", _account(index)) is None
        for index in (evicted, evicted + 1, MAX_ENTRIES // 2, MAX_ENTRIES):
            assert await cache.get("GTBank", _account(index)) is not None

    asyncio.run(scenario())


def test_eviction_uses_last_access_not_creation_time():
    async def scenario():
        cache = ConfidenceCache(InMemoryStorage(), max_entries=10, clock=FakeClock())
        for index in range(10):
            await cache.set("GTBank", _account(index), _result(account=_account(index)), 1000, "gemini")

        # Touch the two oldest entries so entries 2 and 3 become least recently used.
        await cache.get("GTBank", _account(0))
        await cache.get("GTBank", _account(1))

        await cache.set("GTBank", _account(10), _result(account=_account(10)), 1000, "gemini")

        assert len(cache) == 9
        assert await cache.get("GTBank", _account(2)) is None
        assert await cache.get("GTBank", _account(3)) is None
        assert await cache.get("GTBank", _account(0)) is not None
        assert await cache.get("GTBank", _account(1)) is not None

    asyncio.run(scenario())


def test_bank_aliases_share_one_entry():
    assert make_key("gtb", "0123-456-789") == make_key("GTBank", "0123456789")

    async def scenario():
        cache = ConfidenceCache(InMemoryStorage(), clock=FakeClock())
        await cache.set("GTBank", "0123456789", _result(), 1000, "gemini")

        cached = await cache.get("gtb", "0123456789")
        assert cached is not None and cached.bank_name == "GTBank"

        await cache.set("Guaranty Trust Bank", "0123456789", _result(confidence=95), 1000, "claude")
        assert len(cache) == 1

        assert await cache.invalidate("gtb", "0123456789") is True
        assert len(cache) == 0

    asyncio.run(scenario())


def test_invalidate_and_clear():
    async def scenario():
        cache = ConfidenceCache(InMemoryStorage(), clock=FakeClock())
        await cache.set("GTBank", "0123456789", _result(), 1000, "gemini")
        await cache.set("Opay", "8012345678", _result("Opay", "8012345678"), 1000, "gemini")

        assert await cache.invalidate("GTBank", "0123456789") is True
        assert await cache.invalidate("GTBank", "0123456789") is False
        assert await cache.get("GTBank", "0123456789") is None

        await cache.clear()
        stats = await cache.stats()
        assert stats.total_entries == 0
        assert stats.hits == 0 and stats.misses == 0

    asyncio.run(scenario())


def test_entries_and_counters_survive_reload():
    async def scenario():
        storage = InMemoryStorage()
        clock = FakeClock()
        first = ConfidenceCache(storage, clock=clock)
        await first.set("GTBank", "0123456789", _result(), 1500, "cloud_vision")
        await first.get("GTBank", "0123456789")

        second = ConfidenceCache(storage, clock=clock)
        cached = await second.get("GTBank", "0123456789")
        assert cached is not None and cached.confidence == 90

        stats = await second.stats()
        assert stats.hits == 2
        assert isinstance(stats.oldest_entry, datetime)

    asyncio.run(scenario())


def test_corrupt_payload_is_a_cold_start():
    async def scenario():
        storage = InMemoryStorage()
        await storage.set(CACHE_STORAGE_KEY, b"{not json")
        cache = ConfidenceCache(storage, clock=FakeClock())
        assert await cache.get("GTBank", "0123456789") is None
        assert await cache.set("GTBank", "0123456789", _result(), 1000, "gemini") is True

    asyncio.run(scenario())


def test_failing_storage_degrades_to_memory_only():
    async def scenario():
        cache = ConfidenceCache(FailingStorage(), clock=FakeClock())
        assert await cache.set("GTBank", "0123456789", _result(), 1000, "gemini") is True
        assert await cache.get("GTBank", "0123456789") is not None
        await cache.clear()
        assert len(cache) == 0

    asyncio.run(scenario())


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-v"]))
