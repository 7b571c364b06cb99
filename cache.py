"""
cache.py - Confidence-gated, bounded cache of admitted extractions.

Keyed by (bank name, account number). Only results at or above the admission
threshold are stored; entries expire after MAX_AGE and, when the cache grows
past MAX_ENTRIES, the least recently accessed 20% are evicted in one pass.

The cache is an accelerator, never a source of truth: every storage failure
is logged and the cache keeps working in memory.
"""

from __future__ import annotations

import asyncio
import json
import math
import re
from collections import Counter
from datetime import datetime, timedelta
from typing import Callable, Optional

from pydantic import ValidationError

from errors import StorageError
from logging_config import get_logger, graceful, mask_account
from models import CacheEntry, CacheStats, ExtractionResult, utc_now
from normalize import canonicalize_bank_name, validate_account_number
from storage import KeyValueStorage

logger = get_logger(__name__)

CACHE_STORAGE_KEY = "smart_extraction_cache"
STATS_STORAGE_KEY = "smart_cache_stats"

MAX_ENTRIES = 500
MAX_AGE = timedelta(days=7)
ADMISSION_THRESHOLD = 80
EVICTION_FRACTION = 0.2


def make_key(bank_name: str, account_number: str) -> str:
    """Composite (bank, account) key: 'gtbank_0123456789'.

    Aliases share one key ('gtb' and 'GTBank' both give 'gtbank') and the
    account number is reduced to its digits.
    """
    raw_bank = str(bank_name or "").strip()
    bank = re.sub(r"\s+", "_", (canonicalize_bank_name(raw_bank) or raw_bank).lower())
    raw_account = str(account_number or "").strip()
    account = validate_account_number(raw_account) or raw_account
    return f"{bank}_{account}"


class ConfidenceCache:
    """Bounded store of high-confidence extraction results."""

    def __init__(
        self,
        storage: KeyValueStorage,
        *,
        max_entries: int = MAX_ENTRIES,
        max_age: timedelta = MAX_AGE,
        admission_threshold: int = ADMISSION_THRESHOLD,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.storage = storage
        self.max_entries = max_entries
        self.max_age = max_age
        self.admission_threshold = admission_threshold
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._hits = 0
        self._misses = 0
        self._loaded = False
        self._load_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Loading and persistence
    # ------------------------------------------------------------------

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        async with self._load_lock:
            if self._loaded:
                return
            entries = await self._read_entries()
            counters = await self._read_counters()
            now = self._clock()
            self._entries = {
                key: entry for key, entry in entries.items() if not self._is_expired(entry, now)
            }
            self._hits = int(counters.get("hits", 0) or 0)
            self._misses = int(counters.get("misses", 0) or 0)
            self._loaded = True
            logger.info(
                "cache_loaded | entries=%s | expired_dropped=%s | hits=%s | misses=%s",
                len(self._entries),
                len(entries) - len(self._entries),
                self._hits,
                self._misses,
            )

    @graceful(dict, exceptions=(StorageError,))
    async def _read_entries(self) -> dict[str, CacheEntry]:
        raw = await self.storage.get(CACHE_STORAGE_KEY)
        if raw is None:
            return {}
        try:
            items = json.loads(raw)
        except ValueError as exc:
            logger.warning("cache_load_corrupt | key=%s | error=%s | fallback=cold_start", CACHE_STORAGE_KEY, exc)
            return {}
        if not isinstance(items, list):
            logger.warning("cache_load_corrupt | key=%s | error=not_a_list | fallback=cold_start", CACHE_STORAGE_KEY)
            return {}

        entries: dict[str, CacheEntry] = {}
        for item in items:
            try:
                entry = CacheEntry.model_validate(item)
            except ValidationError as exc:
                logger.warning("cache_entry_skipped | error_count=%s", exc.error_count())
                continue
            entries[entry.key] = entry
        return entries

    @graceful(dict, exceptions=(StorageError,))
    async def _read_counters(self) -> dict:
        raw = await self.storage.get(STATS_STORAGE_KEY)
        if raw is None:
            return {}
        try:
            counters = json.loads(raw)
        except ValueError:
            logger.warning("cache_stats_corrupt | key=%s | fallback=zero", STATS_STORAGE_KEY)
            return {}
        return counters if isinstance(counters, dict) else {}

    def _serialize_entries(self) -> bytes:
        snapshot = list(self._entries.values())
        return json.dumps([entry.model_dump(mode="json") for entry in snapshot]).encode("utf-8")

    @graceful(lambda: None, exceptions=(StorageError,))
    async def _persist_entries(self) -> None:
        await self.storage.set(CACHE_STORAGE_KEY, self._serialize_entries())

    @graceful(lambda: None, exceptions=(StorageError,))
    async def _persist_counters(self) -> None:
        payload = {"hits": self._hits, "misses": self._misses}
        await self.storage.set(STATS_STORAGE_KEY, json.dumps(payload).encode("utf-8"))

    def _is_expired(self, entry: CacheEntry, now: datetime) -> bool:
        return now - entry.created_at > self.max_age

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get(self, bank_name: str, account_number: str) -> Optional[ExtractionResult]:
        """Return the cached result, or None on a miss (absent or expired)."""
        await self._ensure_loaded()
        key = make_key(bank_name, account_number)
        entry = self._entries.get(key)
        now = self._clock()

        if entry is None:
            self._misses += 1
            await self._persist_counters()
            logger.debug("cache_miss | bank=%r | account=%s", bank_name, mask_account(account_number))
            return None

        if self._is_expired(entry, now):
            self._entries.pop(key, None)
            self._misses += 1
            await self._persist_entries()
            await self._persist_counters()
            logger.info("cache_expired | bank=%r | account=%s", bank_name, mask_account(account_number))
            return None

        entry.access_count += 1
        entry.last_accessed_at = now
        self._hits += 1
        await self._persist_entries()
        await self._persist_counters()
        logger.info(
            "cache_hit | bank=%r | account=%s | access_count=%s | confidence=%s",
            bank_name,
            mask_account(account_number),
            entry.access_count,
            entry.confidence,
        )
        return entry.data.model_copy(deep=True)

    async def set(
        self,
        bank_name: str,
        account_number: str,
        result: ExtractionResult,
        extraction_time_ms: int = 0,
        provider_id: str = "",
    ) -> bool:
        """Admit `result` when its confidence reaches the threshold.

        Returns True when the entry was written.
        """
        if result.confidence < self.admission_threshold:
            logger.debug(
                "cache_set_skipped | bank=%r | confidence=%s | threshold=%s",
                bank_name,
                result.confidence,
                self.admission_threshold,
            )
            return False

        await self._ensure_loaded()
        key = make_key(bank_name, account_number)
        now = self._clock()
        self._entries[key] = CacheEntry(
            key=key,
            data=result.core_copy(),
            created_at=now,
            last_accessed_at=now,
            access_count=1,
            confidence=result.confidence,
            source=provider_id,
            extraction_time_ms=max(0, int(extraction_time_ms)),
        )

        if len(self._entries) > self.max_entries:
            self._evict()

        await self._persist_entries()
        logger.info(
            "cache_set | bank=%r | account=%s | confidence=%s | source=%s | size=%s",
            bank_name,
            mask_account(account_number),
            result.confidence,
            provider_id,
            len(self._entries),
        )
        return True

    def _evict(self) -> None:
        snapshot = sorted(self._entries.values(), key=lambda entry: entry.last_accessed_at)
        count = math.floor(len(snapshot) * EVICTION_FRACTION)
        for entry in snapshot[:count]:
            self._entries.pop(entry.key, None)
        logger.info("cache_evicted | removed=%s | remaining=%s", count, len(self._entries))

    async def invalidate(self, bank_name: str, account_number: str) -> bool:
        """Drop one entry. Returns True when something was removed."""
        await self._ensure_loaded()
        removed = self._entries.pop(make_key(bank_name, account_number), None)
        if removed is None:
            return False
        await self._persist_entries()
        logger.info("cache_invalidated | bank=%r | account=%s", bank_name, mask_account(account_number))
        return True

    async def clear(self) -> None:
        """Remove every entry and reset the hit/miss counters."""
        await self._ensure_loaded()
        self._entries.clear()
        self._hits = 0
        self._misses = 0
        await self._remove_persisted()
        logger.info("cache_cleared")

    @graceful(lambda: None, exceptions=(StorageError,))
    async def _remove_persisted(self) -> None:
        await self.storage.remove(CACHE_STORAGE_KEY)
        await self.storage.remove(STATS_STORAGE_KEY)

    async def stats(self, top_n: int = 5) -> CacheStats:
        await self._ensure_loaded()
        snapshot = list(self._entries.values())
        lookups = self._hits + self._misses

        bank_access: Counter[str] = Counter()
        for entry in snapshot:
            if entry.data.bank_name:
                bank_access[entry.data.bank_name] += entry.access_count

        created = [entry.created_at for entry in snapshot]
        return CacheStats(
            total_entries=len(snapshot),
            hits=self._hits,
            misses=self._misses,
            hit_rate=(self._hits / lookups) if lookups else 0.0,
            average_confidence=(
                sum(entry.confidence for entry in snapshot) / len(snapshot) if snapshot else 0.0
            ),
            most_accessed_banks=[bank for bank, _ in bank_access.most_common(top_n)],
            estimated_size_bytes=len(self._serialize_entries()),
            oldest_entry=min(created) if created else None,
            newest_entry=max(created) if created else None,
        )

    def __len__(self) -> int:
        return len(self._entries)
