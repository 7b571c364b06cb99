"""
config.py - Runtime settings for the extraction subsystem.

Settings come from environment variables, with a local `.env` file loaded
first (python-dotenv). Every value has a default so the pipeline runs with
no configuration at all; providers without an API key are simply skipped.
"""

from __future__ import annotations

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from logging_config import get_logger

logger = get_logger(__name__)

try:
    load_dotenv()
except UnicodeDecodeError:
    # Fallback for legacy Windows-encoded .env files.
    load_dotenv(encoding="cp1252")

DEFAULT_PROVIDER_ORDER = ["cloud_vision", "gemini", "claude"]
STORAGE_BACKENDS = {"memory", "file", "postgres"}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    logger.warning("config_invalid_bool | name=%s | value=%r | fallback=%s", name, raw, default)
    return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning("config_invalid_int | name=%s | value=%r | fallback=%s", name, raw, default)
        return default


def _env_str(name: str) -> Optional[str]:
    raw = os.getenv(name, "").strip()
    return raw or None


class ExtractionSettings(BaseModel):
    """All tunables for the orchestrator, cache, pattern store and providers."""

    provider_order: list[str] = Field(default_factory=lambda: list(DEFAULT_PROVIDER_ORDER))
    default_budget_ms: int = Field(default=30_000, gt=0)
    provider_timeout_ms: int = Field(default=10_000, gt=0)
    success_threshold: int = Field(default=75, ge=0, le=100)
    admission_threshold: int = Field(default=80, ge=0, le=100)
    caching_enabled: bool = True
    learning_enabled: bool = True
    max_retries: int = Field(default=1, ge=0)
    batch_concurrency: int = Field(default=3, ge=1)
    optimize_images: bool = True

    storage_backend: str = "file"
    storage_dir: str = "data/extraction_store"
    database_url: Optional[str] = None

    cloud_vision_api_key: Optional[str] = None
    gemini_api_key: Optional[str] = None
    anthropic_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.0-flash"
    claude_model: str = "claude-3-haiku-20240307"

    @field_validator("provider_order", mode="before")
    @classmethod
    def _split_providers(cls, value):
        if isinstance(value, str):
            value = value.split(",")
        seen: list[str] = []
        for item in value or []:
            name = str(item).strip().lower()
            if name and name not in seen:
                seen.append(name)
        return seen or list(DEFAULT_PROVIDER_ORDER)

    @field_validator("storage_backend", mode="before")
    @classmethod
    def _storage_backend(cls, value):
        text = str(value or "file").strip().lower()
        if text not in STORAGE_BACKENDS:
            logger.warning("config_invalid_storage_backend | value=%r | fallback=file", value)
            return "file"
        return text

    def api_key_for(self, provider: str) -> Optional[str]:
        return {
            "cloud_vision": self.cloud_vision_api_key,
            "gemini": self.gemini_api_key,
            "claude": self.anthropic_api_key,
        }.get(provider)

    @classmethod
    def from_env(cls) -> "ExtractionSettings":
        """Build settings from the process environment (after .env is loaded)."""
        defaults = cls()
        return cls(
            provider_order=os.getenv("EXTRACTION_PROVIDERS") or defaults.provider_order,
            default_budget_ms=_env_int("EXTRACTION_BUDGET_MS", defaults.default_budget_ms),
            provider_timeout_ms=_env_int("EXTRACTION_PROVIDER_TIMEOUT_MS", defaults.provider_timeout_ms),
            success_threshold=_env_int("EXTRACTION_SUCCESS_THRESHOLD", defaults.success_threshold),
            admission_threshold=_env_int("EXTRACTION_ADMISSION_THRESHOLD", defaults.admission_threshold),
            caching_enabled=_env_bool("EXTRACTION_CACHING_ENABLED", defaults.caching_enabled),
            learning_enabled=_env_bool("EXTRACTION_LEARNING_ENABLED", defaults.learning_enabled),
            max_retries=_env_int("EXTRACTION_MAX_RETRIES", defaults.max_retries),
            batch_concurrency=_env_int("EXTRACTION_BATCH_CONCURRENCY", defaults.batch_concurrency),
            optimize_images=_env_bool("EXTRACTION_OPTIMIZE_IMAGES", defaults.optimize_images),
            storage_backend=os.getenv("EXTRACTION_STORAGE_BACKEND", defaults.storage_backend),
            storage_dir=os.getenv("EXTRACTION_STORAGE_DIR", defaults.storage_dir),
            database_url=_env_str("DATABASE_URL"),
            cloud_vision_api_key=_env_str("GOOGLE_CLOUD_VISION_API_KEY"),
            gemini_api_key=_env_str("GEMINI_API_KEY"),
            anthropic_api_key=_env_str("ANTHROPIC_API_KEY"),
            gemini_model=_env_str("GEMINI_MODEL") or defaults.gemini_model,
            claude_model=_env_str("CLAUDE_MODEL") or defaults.claude_model,
        )
