"""
patterns.py - Per-bank provider performance learning.

Every admitted extraction is folded into a PatternRecord for its
(bank, account) signature and into a BankInsight for its bank. Both keep
running means (`new = (old + value) / 2`), so recent outcomes weigh more
than old ones.

The orchestrator reads this store to order providers: for a hinted bank,
the provider with the best historical confidence goes first.
"""

from __future__ import annotations

import asyncio
import json
import math
from collections import Counter, defaultdict
from datetime import datetime
from typing import Callable, Optional

from pydantic import ValidationError

from cache import make_key
from errors import StorageError
from logging_config import get_logger, graceful, mask_account
from models import BankInsight, ExtractionResult, PatternRecord, PatternStatistics, utc_now
from normalize import canonicalize_bank_name
from storage import KeyValueStorage

logger = get_logger(__name__)

PATTERNS_STORAGE_KEY = "extraction_patterns"
INSIGHTS_STORAGE_KEY = "pattern_insights"

MAX_PATTERNS = 1000
EVICTION_FRACTION = 0.2


def _running_mean(old: float, value: float) -> float:
    return (old + value) / 2


def _bank_id(bank_name: str) -> str:
    text = str(bank_name or "").strip()
    return (canonicalize_bank_name(text) or text).lower()


class PatternStore:
    """Learning store of successful extractions, capped at `max_patterns` records."""

    def __init__(
        self,
        storage: KeyValueStorage,
        *,
        max_patterns: int = MAX_PATTERNS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.storage = storage
        self.max_patterns = max_patterns
        self._clock = clock
        self._records: dict[str, PatternRecord] = {}
        self._insights: dict[str, BankInsight] = {}
        self._loaded = False
        self._load_lock = asyncio.Lock()

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        async with self._load_lock:
            if self._loaded:
                return
            records = await self._read_list(PATTERNS_STORAGE_KEY, PatternRecord)
            insights = await self._read_list(INSIGHTS_STORAGE_KEY, BankInsight)
            self._records = {record.key: record for record in records}
            self._insights = {_bank_id(insight.bank_name): insight for insight in insights}
            self._loaded = True
            logger.info(
                "patterns_loaded | records=%s | banks=%s",
                len(self._records),
                len(self._insights),
            )

    @graceful(list, exceptions=(StorageError,))
    async def _read_list(self, key: str, model) -> list:
        raw = await self.storage.get(key)
        if raw is None:
            return []
        try:
            items = json.loads(raw)
        except ValueError as exc:
            logger.warning("patterns_load_corrupt | key=%s | error=%s | fallback=cold_start", key, exc)
            return []
        if not isinstance(items, list):
            return []

        parsed = []
        for item in items:
            try:
                parsed.append(model.model_validate(item))
            except ValidationError as exc:
                logger.warning("patterns_item_skipped | key=%s | error_count=%s", key, exc.error_count())
        return parsed

    @graceful(lambda: None, exceptions=(StorageError,))
    async def _persist(self) -> None:
        records = [record.model_dump(mode="json") for record in list(self._records.values())]
        insights = [insight.model_dump(mode="json") for insight in list(self._insights.values())]
        await self.storage.set(PATTERNS_STORAGE_KEY, json.dumps(records).encode("utf-8"))
        await self.storage.set(INSIGHTS_STORAGE_KEY, json.dumps(insights).encode("utf-8"))

    async def learn_from_success(
        self,
        result: ExtractionResult,
        extraction_time_ms: int,
        provider_id: str,
    ) -> Optional[PatternRecord]:
        """Merge one successful extraction into the signature record and bank insight."""
        if not result.bank_name:
            logger.debug("learn_skipped | reason=no_bank_name | provider=%s", provider_id)
            return None

        await self._ensure_loaded()
        key = make_key(result.bank_name, result.account_number)
        now = self._clock()
        confidence = float(result.confidence)
        elapsed = float(max(0, extraction_time_ms))

        record = self._records.get(key)
        if record is not None:
            record.success_count += 1
            record.average_confidence = _running_mean(record.average_confidence, confidence)
            record.average_extraction_time_ms = _running_mean(record.average_extraction_time_ms, elapsed)
            previous = record.provider_confidence.get(provider_id)
            record.provider_confidence[provider_id] = (
                confidence if previous is None else _running_mean(previous, confidence)
            )
            record.account_holder_name = result.account_holder_name or record.account_holder_name
            record.amount = result.amount or record.amount
            record.updated_at = now
        else:
            record = PatternRecord(
                key=key,
                bank_name=result.bank_name,
                account_number=result.account_number,
                account_holder_name=result.account_holder_name,
                amount=result.amount,
                extraction_method=provider_id,
                provider_confidence={provider_id: confidence},
                success_count=1,
                average_confidence=confidence,
                average_extraction_time_ms=elapsed,
                updated_at=now,
            )
            self._records[key] = record

        self._update_insight(result.bank_name, provider_id, confidence)

        if len(self._records) > self.max_patterns:
            self._evict()

        await self._persist()
        logger.info(
            "pattern_learned | bank=%r | account=%s | provider=%s | confidence=%s | success_count=%s",
            result.bank_name,
            mask_account(result.account_number),
            provider_id,
            result.confidence,
            record.success_count,
        )
        return record

    def _update_insight(self, bank_name: str, provider_id: str, confidence: float) -> None:
        bank_id = _bank_id(bank_name)
        insight = self._insights.get(bank_id)
        if insight is None:
            insight = BankInsight(bank_name=bank_name, average_confidence=confidence)
            self._insights[bank_id] = insight
        else:
            insight.average_confidence = _running_mean(insight.average_confidence, confidence)

        previous = insight.provider_confidence.get(provider_id)
        insight.provider_confidence[provider_id] = (
            confidence if previous is None else _running_mean(previous, confidence)
        )
        insight.provider_counts[provider_id] = insight.provider_counts.get(provider_id, 0) + 1
        insight.best_method = max(insight.provider_confidence.items(), key=lambda item: item[1])[0]

    def _evict(self) -> None:
        snapshot = sorted(self._records.values(), key=lambda record: record.updated_at)
        count = math.floor(len(snapshot) * EVICTION_FRACTION)
        for record in snapshot[:count]:
            self._records.pop(record.key, None)
        logger.info("patterns_evicted | removed=%s | remaining=%s", count, len(self._records))

    def _records_for(self, bank_name: str) -> list[PatternRecord]:
        bank_id = _bank_id(bank_name)
        return [record for record in list(self._records.values()) if _bank_id(record.bank_name) == bank_id]

    async def provider_ranking(self, bank_name: str) -> list[tuple[str, float]]:
        """Providers seen for this bank, best average confidence first."""
        if not bank_name:
            return []
        await self._ensure_loaded()

        samples: dict[str, list[float]] = defaultdict(list)
        for record in self._records_for(bank_name):
            for provider, value in record.provider_confidence.items():
                samples[provider].append(value)

        if not samples:
            insight = self._insights.get(_bank_id(bank_name))
            if insight is None:
                return []
            averages = dict(insight.provider_confidence)
        else:
            averages = {provider: sum(values) / len(values) for provider, values in samples.items()}

        # sorted() is stable, so ties keep first-seen order.
        return sorted(averages.items(), key=lambda item: item[1], reverse=True)

    async def get_best_method_for_bank(self, bank_name: str) -> Optional[str]:
        ranking = await self.provider_ranking(bank_name)
        return ranking[0][0] if ranking else None

    async def get_similar_patterns(self, bank_name: str, n: int = 3) -> list[PatternRecord]:
        """Up to `n` records for this bank, highest average confidence first."""
        await self._ensure_loaded()
        records = sorted(self._records_for(bank_name), key=lambda record: record.average_confidence, reverse=True)
        return [record.model_copy(deep=True) for record in records[: max(0, n)]]

    async def get_insights(self, bank_name: str) -> Optional[BankInsight]:
        await self._ensure_loaded()
        insight = self._insights.get(_bank_id(bank_name))
        return insight.model_copy(deep=True) if insight else None

    async def get_statistics(self, top_n: int = 5) -> PatternStatistics:
        await self._ensure_loaded()
        records = list(self._records.values())
        insights = list(self._insights.values())

        best_banks = sorted(insights, key=lambda insight: insight.average_confidence, reverse=True)
        methods = Counter(record.extraction_method for record in records if record.extraction_method)

        return PatternStatistics(
            total_patterns=len(records),
            bank_coverage=len({_bank_id(record.bank_name) for record in records}),
            average_confidence=(
                sum(record.average_confidence for record in records) / len(records) if records else 0.0
            ),
            best_performing_banks=[insight.bank_name for insight in best_banks[:top_n]],
            method_preference=dict(methods),
        )

    async def reset(self) -> None:
        """Forget every learned record and insight."""
        await self._ensure_loaded()
        self._records.clear()
        self._insights.clear()
        await self._remove_persisted()
        logger.info("patterns_reset")

    @graceful(lambda: None, exceptions=(StorageError,))
    async def _remove_persisted(self) -> None:
        await self.storage.remove(PATTERNS_STORAGE_KEY)
        await self.storage.remove(INSIGHTS_STORAGE_KEY)

    def __len__(self) -> int:
        return len(self._records)
