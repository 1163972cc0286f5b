"""Tests for environment-driven configuration."""

import os
import sys
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import pytest

from retrieval_services.settings import load_settings

ENV_VARS = (
    "RATE_LIMIT_MAX_REQUESTS_PER_HOUR",
    "RATE_LIMIT_MAX_TOKENS_PER_HOUR",
    "RATE_LIMIT_MAX_CONCURRENT",
    "PROVIDER_API_KEYS",
    "PROVIDER_API_KEY",
    "PROVIDER_API_KEY_2",
    "PROVIDER_API_KEY_3",
    "EMBEDDING_PROVIDER",
    "QDRANT_URL",
    "QDRANT_COLLECTION",
    "SEARCH_SIMILARITY_THRESHOLD",
    "SEARCH_FILTER_ENABLED",
    "CHUNK_OVERLAP",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Unset every variable read by load_settings, restoring them afterwards."""
    for var in ENV_VARS:
        # setenv first so monkeypatch also undoes values loaded from .env files
        monkeypatch.setenv(var, "")
        monkeypatch.delenv(var)


def test_defaults():
    settings = load_settings()

    assert settings.admission.max_requests_per_hour == 30
    assert settings.admission.max_tokens_per_hour == 100_000
    assert settings.admission.max_concurrent_requests == 3
    assert settings.admission.provider_keys == []
    assert settings.search.top_k == 8
    assert settings.search.similarity_threshold == 0.68
    assert settings.chunking.max_chunk_size == 700
    assert settings.chunking.overlap == 150
    assert settings.fanout.max_parallel_queries == 3
    assert settings.fanout.max_parallel_searches == 5
    assert settings.embedding_provider == "openai"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_MAX_REQUESTS_PER_HOUR", "50")
    monkeypatch.setenv("SEARCH_SIMILARITY_THRESHOLD", "0.5")
    monkeypatch.setenv("SEARCH_FILTER_ENABLED", "false")
    monkeypatch.setenv("QDRANT_URL", "http://qdrant:6333")
    monkeypatch.setenv("EMBEDDING_PROVIDER", "huggingface")

    settings = load_settings()

    assert settings.admission.max_requests_per_hour == 50
    assert settings.search.similarity_threshold == 0.5
    assert settings.search.filter_enabled is False
    assert settings.qdrant_url == "http://qdrant:6333"
    assert settings.embedding_provider == "huggingface"


def test_invalid_number_falls_back_to_default(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_MAX_CONCURRENT", "three")

    assert load_settings().admission.max_concurrent_requests == 3


def test_comma_separated_provider_keys(monkeypatch):
    monkeypatch.setenv("PROVIDER_API_KEYS", "key-a, key-b,,key-c")

    assert load_settings().admission.provider_keys == ["key-a", "key-b", "key-c"]


def test_numbered_provider_keys(monkeypatch):
    monkeypatch.setenv("PROVIDER_API_KEY", "key-a")
    monkeypatch.setenv("PROVIDER_API_KEY_3", "key-c")

    assert load_settings().admission.provider_keys == ["key-a", "key-c"]


def test_env_file_does_not_override_environment(tmp_path, monkeypatch):
    env_file = tmp_path / ".env"
    env_file.write_text("QDRANT_COLLECTION=from_file\nQDRANT_URL=http://file:6333\n", encoding="utf-8")
    monkeypatch.setenv("QDRANT_URL", "http://env:6333")

    settings = load_settings(str(env_file))

    assert settings.collection_name == "from_file"
    assert settings.qdrant_url == "http://env:6333"


def test_invalid_chunk_overlap_is_rejected(monkeypatch):
    monkeypatch.setenv("CHUNK_OVERLAP", "900")

    with pytest.raises(ValueError):
        load_settings()
