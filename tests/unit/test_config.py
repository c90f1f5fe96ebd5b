"""Tests for obracalc.config - environment loading."""

from decimal import Decimal

import pytest

from obracalc.config import AppConfig


def test_from_env_defaults():
    config = AppConfig.from_env()

    assert config.db.url == "sqlite+aiosqlite:///:memory:"
    assert config.log_level == "DEBUG"
    assert config.vector.index_dimension == 768
    assert config.ingestion.concurrency == 5
    assert config.ingestion.max_attempts == 3
    assert config.ingestion.backoff_base_seconds == 2.0
    assert config.ingestion.max_consecutive_batch_failures == 3
    assert config.matching.similarity_floor == 0.60
    assert config.matching.material_markup == Decimal("1.4")
    assert config.cache.enabled is False
    assert config.llm.api_key is None


def test_missing_database_url_fails_fast(monkeypatch):
    monkeypatch.delenv("DATABASE_URL")

    with pytest.raises(KeyError, match="DATABASE_URL"):
        AppConfig.from_env()


def test_overrides(monkeypatch):
    monkeypatch.setenv("INGEST_CONCURRENCY", "2")
    monkeypatch.setenv("MATCH_SIMILARITY_FLOOR", "0.7")
    monkeypatch.setenv("MATCH_SINGULAR_KEYWORDS", "ascensor, grua torre")
    monkeypatch.setenv("EMBEDDING_CACHE_ENABLED", "true")

    config = AppConfig.from_env()

    assert config.ingestion.concurrency == 2
    assert config.matching.similarity_floor == 0.7
    assert config.matching.singular_keywords == ["ascensor", "grua torre"]
    assert config.cache.enabled is True
