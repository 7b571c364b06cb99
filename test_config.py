"""
test_config.py - Settings and environment parsing checks.

Usage: pytest test_config.py
"""

from __future__ import annotations

import os
import sys

# Ensure we can import from project root
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import pytest
from pydantic import ValidationError

from config import DEFAULT_PROVIDER_ORDER, ExtractionSettings

ENV_NAMES = (
    "EXTRACTION_PROVIDERS",
    "EXTRACTION_BUDGET_MS",
    "EXTRACTION_PROVIDER_TIMEOUT_MS",
    "EXTRACTION_SUCCESS_THRESHOLD",
    "EXTRACTION_ADMISSION_THRESHOLD",
    "EXTRACTION_CACHING_ENABLED",
    "EXTRACTION_LEARNING_ENABLED",
    "EXTRACTION_MAX_RETRIES",
    "EXTRACTION_BATCH_CONCURRENCY",
    "EXTRACTION_OPTIMIZE_IMAGES",
    "EXTRACTION_STORAGE_BACKEND",
    "EXTRACTION_STORAGE_DIR",
    "DATABASE_URL",
    "GOOGLE_CLOUD_VISION_API_KEY",
    "GEMINI_API_KEY",
    "ANTHROPIC_API_KEY",
    "GEMINI_MODEL",
    "CLAUDE_MODEL",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults_without_environment(clean_env):
    settings = ExtractionSettings.from_env()

    assert settings.provider_order == DEFAULT_PROVIDER_ORDER
    assert settings.default_budget_ms == 30_000
    assert settings.provider_timeout_ms == 10_000
    assert settings.success_threshold == 75
    assert settings.admission_threshold == 80
    assert settings.caching_enabled is True
    assert settings.learning_enabled is True
    assert settings.storage_backend == "file"
    assert settings.gemini_api_key is None


def test_environment_overrides(clean_env):
    clean_env.setenv("EXTRACTION_PROVIDERS", " Gemini, claude ,gemini,, ")
    clean_env.setenv("EXTRACTION_BUDGET_MS", "12000")
    clean_env.setenv("EXTRACTION_CACHING_ENABLED", "no")
    clean_env.setenv("EXTRACTION_STORAGE_BACKEND", "Memory")
    clean_env.setenv("GEMINI_API_KEY", "  g-key  ")
    clean_env.setenv("ANTHROPIC_API_KEY", "")
    clean_env.setenv("GEMINI_MODEL", "gemini-1.5-pro")

    settings = ExtractionSettings.from_env()

    assert settings.provider_order == ["gemini", "claude"]
    assert settings.default_budget_ms == 12_000
    assert settings.caching_enabled is False
    assert settings.storage_backend == "memory"
    assert settings.gemini_api_key == "g-key"
    assert settings.anthropic_api_key is None
    assert settings.gemini_model == "gemini-1.5-pro"


def test_malformed_values_fall_back_to_defaults(clean_env):
    clean_env.setenv("EXTRACTION_BUDGET_MS", "soon")
    clean_env.setenv("EXTRACTION_LEARNING_ENABLED", "maybe")
    clean_env.setenv("EXTRACTION_STORAGE_BACKEND", "redis")

    settings = ExtractionSettings.from_env()

    assert settings.default_budget_ms == 30_000
    assert settings.learning_enabled is True
    assert settings.storage_backend == "file"


def test_out_of_range_values_are_rejected():
    with pytest.raises(ValidationError):
        ExtractionSettings(success_threshold=120)
    with pytest.raises(ValidationError):
        ExtractionSettings(default_budget_ms=0)


def test_api_key_lookup_by_provider():
    settings = ExtractionSettings(cloud_vision_api_key="cv", gemini_api_key="g", anthropic_api_key="a")

    assert settings.api_key_for("cloud_vision") == "cv"
    assert settings.api_key_for("gemini") == "g"
    assert settings.api_key_for("claude") == "a"
    assert settings.api_key_for("mystery") is None


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-v"]))
