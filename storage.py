"""
storage.py - Local key-value persistence for the cache and pattern store.

The cache and the pattern store persist through a tiny byte-oriented
interface (get / set / remove), so tests run against memory and deployments
pick a JSON-file directory or a PostgreSQL table.

Every backend failure surfaces as StorageError; callers decide whether to
degrade (the cache and pattern store always do).
"""

from __future__ import annotations

import asyncio
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from config import ExtractionSettings
from errors import StorageError
from logging_config import get_logger

logger = get_logger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


def _check_key(key: str) -> str:
    if not key or not _KEY_PATTERN.match(key):
        raise StorageError(f"Invalid storage key: {key!r}")
    return key


class KeyValueStorage(ABC):
    """Async byte-string key-value store."""

    @abstractmethod
    async def get(self, key: str) -> Optional[bytes]:
        """Return the stored bytes, or None when the key is absent."""

    @abstractmethod
    async def set(self, key: str, value: bytes) -> None:
        """Store `value` under `key`, replacing any previous value."""

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Delete `key`; absent keys are ignored."""


class InMemoryStorage(KeyValueStorage):
    """Process-local store; contents vanish with the process."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}

    async def get(self, key: str) -> Optional[bytes]:
        return self._data.get(_check_key(key))

    async def set(self, key: str, value: bytes) -> None:
        self._data[_check_key(key)] = bytes(value)

    async def remove(self, key: str) -> None:
        self._data.pop(_check_key(key), None)

    def keys(self) -> list[str]:
        return sorted(self._data)


class JsonFileStorage(KeyValueStorage):
    """Disk-backed store: one file per key, atomic temp-file + replace writes."""

    def __init__(self, directory: Optional[str] = None) -> None:
        target = directory or os.getenv("EXTRACTION_STORAGE_DIR", "data/extraction_store")
        self.directory = Path(target).resolve()

    def _path(self, key: str) -> Path:
        return self.directory / f"{_check_key(key)}.json"

    def _read(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_bytes()

    def _write(self, key: str, value: bytes) -> None:
        path = self._path(key)
        self.directory.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            mode="wb",
            dir=str(self.directory),
            delete=False,
            suffix=".tmp",
            prefix=f"{key}-",
        ) as tmp_file:
            tmp_file.write(value)
            tmp_file.flush()
            os.fsync(tmp_file.fileno())
            tmp_path = Path(tmp_file.name)

        os.replace(tmp_path, path)

    def _unlink(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            path.unlink()

    async def get(self, key: str) -> Optional[bytes]:
        try:
            return await asyncio.to_thread(self._read, key)
        except StorageError:
            raise
        except OSError as exc:
            raise StorageError(f"Failed to read {key!r} from {self.directory}: {exc}") from exc

    async def set(self, key: str, value: bytes) -> None:
        try:
            await asyncio.to_thread(self._write, key, value)
        except StorageError:
            raise
        except OSError as exc:
            raise StorageError(f"Failed to write {key!r} to {self.directory}: {exc}") from exc

    async def remove(self, key: str) -> None:
        try:
            await asyncio.to_thread(self._unlink, key)
        except StorageError:
            raise
        except OSError as exc:
            raise StorageError(f"Failed to remove {key!r} from {self.directory}: {exc}") from exc


class PostgresStorage(KeyValueStorage):
    """PostgreSQL-backed store for server deployments."""

    def __init__(self, database_url: str, table_name: str = "extraction_kv") -> None:
        self.database_url = str(database_url or "").strip()
        if not self.database_url:
            raise ValueError("database_url is required for PostgresStorage.")
        if not re.match(r"^[A-Za-z_][A-Za-z0-9_]*$", table_name):
            raise ValueError("table_name must be a valid SQL identifier.")
        self.table_name = table_name
        self._psycopg = self._import_psycopg()
        self._table_ready = False

    @staticmethod
    def _import_psycopg():
        try:
            import psycopg  # type: ignore

            return psycopg
        except Exception as exc:
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. Install with: pip install psycopg[binary]"
            ) from exc

    def _connect(self):
        return self._psycopg.connect(self.database_url, autocommit=True)

    def _ensure_table(self, conn) -> None:
        if self._table_ready:
            return
        query = (
            f"CREATE TABLE IF NOT EXISTS {self.table_name} ("
            "key TEXT PRIMARY KEY,"
            "value BYTEA NOT NULL,"
            "updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()"
            ")"
        )
        with conn.cursor() as cur:
            cur.execute(query)
        self._table_ready = True

    def _read(self, key: str) -> Optional[bytes]:
        with self._connect() as conn:
            self._ensure_table(conn)
            with conn.cursor() as cur:
                cur.execute(f"SELECT value FROM {self.table_name} WHERE key = %s", (key,))
                row = cur.fetchone()
        if not row:
            return None
        return bytes(row[0])

    def _write(self, key: str, value: bytes) -> None:
        query = (
            f"INSERT INTO {self.table_name} (key, value, updated_at) "
            "VALUES (%s, %s, NOW()) "
            "ON CONFLICT (key) "
            "DO UPDATE SET value = EXCLUDED.value, updated_at = NOW()"
        )
        with self._connect() as conn:
            self._ensure_table(conn)
            with conn.cursor() as cur:
                cur.execute(query, (key, value))

    def _delete(self, key: str) -> None:
        with self._connect() as conn:
            self._ensure_table(conn)
            with conn.cursor() as cur:
                cur.execute(f"DELETE FROM {self.table_name} WHERE key = %s", (key,))

    async def get(self, key: str) -> Optional[bytes]:
        try:
            return await asyncio.to_thread(self._read, _check_key(key))
        except StorageError:
            raise
        except Exception as exc:
            raise StorageError(f"PostgreSQL read failed for {key!r}: {exc}") from exc

    async def set(self, key: str, value: bytes) -> None:
        try:
            await asyncio.to_thread(self._write, _check_key(key), bytes(value))
        except StorageError:
            raise
        except Exception as exc:
            raise StorageError(f"PostgreSQL write failed for {key!r}: {exc}") from exc

    async def remove(self, key: str) -> None:
        try:
            await asyncio.to_thread(self._delete, _check_key(key))
        except StorageError:
            raise
        except Exception as exc:
            raise StorageError(f"PostgreSQL delete failed for {key!r}: {exc}") from exc


def create_storage(settings: ExtractionSettings) -> KeyValueStorage:
    """Build the storage backend named by `settings.storage_backend`."""
    backend = settings.storage_backend
    if backend == "postgres":
        if settings.database_url:
            return PostgresStorage(settings.database_url)
        logger.warning("storage_config_warning | backend=postgres | database_url=missing | fallback=file")
        backend = "file"
    if backend == "file":
        return JsonFileStorage(settings.storage_dir)
    return InMemoryStorage()
