"""
test_storage.py - Key-Value Storage Backend Tests

Covers:
- InMemoryStorage get/set/remove
- JsonFileStorage atomic writes under a temp directory
- StorageError on invalid keys and unwritable locations
- create_storage backend selection

Usage: pytest test_storage.py
"""

from __future__ import annotations

import asyncio
import os
import sys

# Ensure we can import from project root
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import pytest

from config import ExtractionSettings
from errors import StorageError
from storage import InMemoryStorage, JsonFileStorage, create_storage


def test_in_memory_round_trip():
    async def scenario():
        storage = InMemoryStorage()
        assert await storage.get("smart_extraction_cache") is None
        await storage.set("smart_extraction_cache", b"[]")
        assert await storage.get("smart_extraction_cache") == b"[]"
        await storage.remove("smart_extraction_cache")
        await storage.remove("smart_extraction_cache")
        assert await storage.get("smart_extraction_cache") is None

    asyncio.run(scenario())


@pytest.mark.parametrize("key", ["", "../escape", "with space", "slash/key"])
def test_invalid_keys_raise_storage_error(key):
    async def scenario():
        with pytest.raises(StorageError):
            await InMemoryStorage().set(key, b"x")

    asyncio.run(scenario())


def test_json_file_storage_round_trip(tmp_path):
    async def scenario():
        storage = JsonFileStorage(str(tmp_path / "store"))
        assert await storage.get("extraction_patterns") is None

        await storage.set("extraction_patterns", b'[{"key": "gtbank_0123456789"}]')
        await storage.set("extraction_patterns", b"[]")
        assert await storage.get("extraction_patterns") == b"[]"

        reopened = JsonFileStorage(str(tmp_path / "store"))
        assert await reopened.get("extraction_patterns") == b"[]"

        await storage.remove("extraction_patterns")
        assert await storage.get("extraction_patterns") is None

    asyncio.run(scenario())
    assert list((tmp_path / "store").glob("*.tmp")) == []


def test_json_file_storage_write_failure_is_storage_error(tmp_path):
    blocker = tmp_path / "not_a_directory"
    blocker.write_text("occupied", encoding="utf-8")

    async def scenario():
        storage = JsonFileStorage(str(blocker))
        with pytest.raises(StorageError):
            await storage.set("smart_cache_stats", b"{}")

    asyncio.run(scenario())


def test_create_storage_selects_backend(tmp_path):
    memory = create_storage(ExtractionSettings(storage_backend="memory"))
    assert isinstance(memory, InMemoryStorage)

    file_backed = create_storage(ExtractionSettings(storage_backend="file", storage_dir=str(tmp_path)))
    assert isinstance(file_backed, JsonFileStorage)
    assert file_backed.directory == tmp_path.resolve()

    # postgres without a URL falls back to the file backend
    fallback = create_storage(ExtractionSettings(storage_backend="postgres", storage_dir=str(tmp_path)))
    assert isinstance(fallback, JsonFileStorage)


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-v"]))
