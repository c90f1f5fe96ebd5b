"""Tests for obracalc.web routes.

Services and the job queue are replaced through FastAPI dependency
overrides; no database, Redis or model calls are made.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from conftest import chat_response, make_record
from obracalc.config import AppConfig, LLMConfig, MatchingConfig
from obracalc.matching.aggregator import BudgetAggregator, ProgressEvent
from obracalc.matching.decomposer import Decomposer
from obracalc.matching.search import SearchResponse, SearchStrategy
from obracalc.models import IngestionJob, MatchCandidate, MatchType, ResolvedLineItem
from obracalc.services.openai_services import OpenAIGenerationService
from obracalc.web.app import create_app
from obracalc.web.dependencies import get_queue, get_services


@pytest.fixture
def services(tmp_path):
    services = MagicMock()
    services.config = AppConfig.from_env()
    services.config.upload_dir = str(tmp_path / "uploads")
    services.jobs.create = AsyncMock(side_effect=lambda job: job)
    services.jobs.get = AsyncMock(return_value=None)
    services.jobs.list_recent = AsyncMock(return_value=[])
    services.catalog.delete_by_year = AsyncMock(return_value=12)
    return services


@pytest.fixture
def queue():
    queue = MagicMock()
    queue.enqueue_job = AsyncMock()
    return queue


@pytest.fixture
def app(services, queue):
    """Create test app with dependencies overridden."""
    test_app = create_app()
    test_app.dependency_overrides[get_services] = lambda: services
    test_app.dependency_overrides[get_queue] = lambda: queue
    return test_app


@pytest.fixture
def client(app):
    return TestClient(app)


def line_item(**overrides):
    fields = dict(
        quantity=Decimal("2"),
        unit_price=Decimal("25"),
        code="DRA010",
        description="Demolición de alicatado",
        unit="m²",
        match_type=MatchType.LABOR,
        match_confidence=85,
    )
    fields.update(overrides)
    return ResolvedLineItem.priced(**fields)


class TestIngestionRoutes:
    def test_upload_enqueues_job(self, client, services, queue, tmp_path):
        response = client.post(
            "/ingestion/jobs",
            files={"file": ("precios_2024.pdf", b"%PDF-1.4 test", "application/pdf")},
            data={"year": "2024", "start_page": "3"},
        )

        assert response.status_code == 202
        body = response.json()
        assert body["source_document"].endswith("precios_2024.pdf")
        assert body["year"] == 2024
        assert body["status"] == "pending"

        services.jobs.create.assert_awaited_once()
        args = queue.enqueue_job.await_args
        assert args.args[0] == "ingest_catalog_task"
        assert args.args[1] == body["id"]
        assert args.kwargs["start_page"] == 3
        assert args.kwargs["_job_id"] == f"ingest:{body['id']}"
        saved = list((tmp_path / "uploads").iterdir())
        assert len(saved) == 1
        assert saved[0].read_bytes() == b"%PDF-1.4 test"

    def test_upload_rejects_non_pdf(self, client, queue):
        response = client.post(
            "/ingestion/jobs",
            files={"file": ("precios.xlsx", b"data", "application/octet-stream")},
            data={"year": "2024"},
        )

        assert response.status_code == 400
        queue.enqueue_job.assert_not_awaited()

    def test_upload_requires_year(self, client):
        response = client.post(
            "/ingestion/jobs",
            files={"file": ("precios.pdf", b"%PDF", "application/pdf")},
        )

        assert response.status_code == 422

    def test_get_job(self, client, services):
        job = IngestionJob(source_document="precios.pdf", year=2024, total_pages=10, processed_pages=4)
        services.jobs.get.return_value = job

        response = client.get(f"/ingestion/jobs/{job.id}")

        assert response.status_code == 200
        assert response.json()["processed_pages"] == 4

    def test_get_missing_job(self, client):
        response = client.get("/ingestion/jobs/does-not-exist")

        assert response.status_code == 404

    def test_list_jobs(self, client, services):
        response = client.get("/ingestion/jobs?limit=5")

        assert response.status_code == 200
        assert response.json() == []
        services.jobs.list_recent.assert_awaited_once_with(5)


class TestCatalogRoutes:
    def test_search(self, client, services):
        record = make_record("DRA010", "Demolición de alicatado", embedding=[1.0, 0.0])
        search_service = MagicMock()
        search_service.search = AsyncMock(
            return_value=SearchResponse(
                strategy=SearchStrategy.VECTOR,
                results=[MatchCandidate(record=record, score=0.83)],
            )
        )
        services.search.return_value = search_service

        response = client.get("/catalog/search?q=picar+azulejos&year=2024&kind=work")

        assert response.status_code == 200
        body = response.json()
        assert body["strategy"] == "vector"
        assert body["results"][0]["code"] == "DRA010"
        assert body["results"][0]["score"] == 0.83
        assert "embedding" not in body["results"][0]
        filters = search_service.search.await_args.args[2]
        assert filters.year == 2024
        assert filters.kind == "work"

    def test_search_rejects_unknown_kind(self, client):
        response = client.get("/catalog/search?q=x&kind=machinery")

        assert response.status_code == 422

    def test_delete_year(self, client, services):
        response = client.delete("/catalog/2023")

        assert response.status_code == 200
        assert response.json() == {"year": 2023, "deleted": 12}
        services.catalog.delete_by_year.assert_awaited_once_with(2023)


class TestBudgetRoutes:
    def test_resolve_decompose_request(self, client, services):
        async def handle(request, sink):
            await sink.emit(ProgressEvent("decomposition_start", {"description": request.description}))
            await sink.emit(ProgressEvent("complete", {"item_count": 1}))
            return [line_item(order=1)]

        aggregator = MagicMock()
        aggregator.handle = AsyncMock(side_effect=handle)
        services.aggregator.return_value = aggregator

        response = client.post(
            "/budget/resolve", json={"kind": "decompose", "description": "Reformar baño"}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["items"][0]["code"] == "DRA010"
        assert Decimal(str(body["total"])) == Decimal("50")
        assert [e["type"] for e in body["events"]] == ["decomposition_start", "complete"]

    def test_resolve_rejects_unknown_kind(self, client):
        response = client.post("/budget/resolve", json={"kind": "translate", "description": "x"})

        assert response.status_code == 422

    def test_resolve_empty_description(self, client):
        response = client.post("/budget/resolve", json={"kind": "decompose", "description": ""})

        assert response.status_code == 422

    def test_resolve_item(self, client, services):
        resolver = MagicMock()
        resolver.resolve_text = AsyncMock(return_value=line_item())
        services.resolver.return_value = resolver

        response = client.post(
            "/budget/item", json={"description": "Picar azulejos", "unit": "m²", "quantity": "2"}
        )

        assert response.status_code == 200
        assert response.json()["order"] == 1
        assert resolver.resolve_text.await_args.kwargs["quantity"] == Decimal("2")

    def test_resolve_unparseable_decomposition(self, client, services):
        llm = MagicMock()
        llm.chat.completions.create = AsyncMock(return_value=chat_response("no es JSON"))
        generation = OpenAIGenerationService(LLMConfig(api_key="sk-test"), client=llm)
        services.aggregator.return_value = BudgetAggregator(
            resolver=MagicMock(), decomposer=Decomposer(generation), config=MatchingConfig()
        )

        response = client.post(
            "/budget/resolve", json={"kind": "decompose", "description": "Reformar baño"}
        )

        assert response.status_code == 422
        assert "Unusable decomposition answer" in response.json()["detail"]
