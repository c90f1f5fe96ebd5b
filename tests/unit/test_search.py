"""Tests for obracalc.matching.search - catalog search with fallback."""

import pytest

from conftest import FakeEmbeddingService, InMemoryCatalogStore, candidate, make_record
from obracalc.matching.search import CatalogSearchService, SearchStrategy


@pytest.fixture
def store():
    records = [
        make_record("12345", "Tabique de ladrillo hueco", chapter="Albañilería"),
        make_record("DRA010", "Demolición de alicatado de paredes", chapter="Demoliciones"),
    ]
    return InMemoryCatalogStore(records)


@pytest.mark.asyncio
async def test_identifier_search(store, matching_config):
    service = CatalogSearchService(store, FakeEmbeddingService(), matching_config)

    response = await service.search("12345")

    assert response.strategy is SearchStrategy.IDENTIFIER
    assert response.results[0].record.code == "12345"
    assert response.results[0].score == 1.0


@pytest.mark.asyncio
async def test_vector_search(store, matching_config):
    store.neighbors = [candidate(store.records[(2024, "DRA010")], 0.83)]
    embeddings = FakeEmbeddingService()
    service = CatalogSearchService(store, embeddings, matching_config)

    response = await service.search("quitar azulejos", unit="m2")

    assert response.strategy is SearchStrategy.VECTOR
    assert response.results[0].query_variant == "quitar azulejos"
    assert embeddings.texts == ["quitar azulejos (m²)"]


@pytest.mark.asyncio
async def test_falls_back_to_text_search(store, matching_config):
    service = CatalogSearchService(
        store, FakeEmbeddingService(error=ConnectionError("fetch failed")), matching_config
    )

    response = await service.search("alicatado")

    assert response.strategy is SearchStrategy.TEXT
    assert [c.record.code for c in response.results] == ["DRA010"]
    assert "fetch failed" in response.error


@pytest.mark.asyncio
async def test_blank_query(store, matching_config):
    service = CatalogSearchService(store, FakeEmbeddingService(), matching_config)

    response = await service.search("   ")

    assert response.results == []
