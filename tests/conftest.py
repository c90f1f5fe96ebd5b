"""Pytest configuration and fixtures for ObraCalc tests.

Provides in-memory fakes of the external collaborators (extraction,
embeddings, generation, catalog store, job status sink) and small PDF
documents whose pages can be told apart after splitting.
"""

from __future__ import annotations

from collections.abc import Sequence
from decimal import Decimal
from io import BytesIO
from types import SimpleNamespace
from typing import Any

import pytest
import pytest_asyncio
from pydantic import BaseModel
from pypdf import PdfReader, PdfWriter

from obracalc.config import DBConfig, IngestionConfig, MatchingConfig
from obracalc.db.catalog_repository import CatalogRepository, cosine_similarity
from obracalc.db.connection import Database
from obracalc.db.job_repository import JobRepository
from obracalc.models import CatalogRecord, ItemKind, LogEntry, MatchCandidate, TokenUsage
from obracalc.services.ports import (
    CatalogStore,
    EmbeddingBatch,
    EmbeddingService,
    ExtractionService,
    GenerationService,
    JobStatusSink,
    SearchFilters,
)

BASE_PAGE_WIDTH = 200
EMBEDDING_DIMENSION = 8


def make_pdf(pages: int) -> bytes:
    """Blank PDF whose page N (1-based) is ``BASE_PAGE_WIDTH + N`` points wide."""
    writer = PdfWriter()
    for number in range(1, pages + 1):
        writer.add_blank_page(width=BASE_PAGE_WIDTH + number, height=842)
    buffer = BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def page_number_of(document: bytes) -> int:
    """1-based page number of a single-page document produced from ``make_pdf``."""
    page = PdfReader(BytesIO(document)).pages[0]
    return round(float(page.mediabox.width)) - BASE_PAGE_WIDTH


def default_page_output(page: int) -> dict[str, Any]:
    return {
        "items": [
            {
                "code": f"ITEM{page:03d}",
                "description": f"Partida de la página {page}",
                "unit": "m2",
                "price_total": "1.200,50",
            }
        ]
    }


def make_record(
    code: str,
    description: str = "Demolición de alicatado de paredes",
    kind: ItemKind = ItemKind.WORK,
    price: str = "12.50",
    unit: str = "m²",
    year: int = 2024,
    **fields: Any,
) -> CatalogRecord:
    return CatalogRecord(
        code=code,
        description=description,
        kind=kind,
        price_total=Decimal(price),
        unit=unit,
        year=year,
        **fields,
    )


def chat_response(content: str | None, total_tokens: int = 42) -> SimpleNamespace:
    """Shape of an OpenAI chat completion as read by the adapters."""
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(total_tokens=total_tokens),
    )


def candidate(record: CatalogRecord, score: float) -> MatchCandidate:
    return MatchCandidate(record=record, score=score)


class FakeExtractionService(ExtractionService):
    """Extraction fake keyed by page number.

    ``outputs[page]`` may be a dict (returned), an exception (raised on
    every attempt) or a list consumed one entry per attempt.
    """

    def __init__(self, outputs: dict[int, Any] | None = None, tokens: int = 100):
        self.outputs = outputs or {}
        self.tokens = tokens
        self.calls: list[int] = []
        self.instructions: dict[int, str] = {}

    async def extract(self, document, instructions, output_model):
        page = page_number_of(document)
        self.calls.append(page)
        self.instructions[page] = instructions

        outcome = self.outputs.get(page)
        if isinstance(outcome, list):
            outcome = outcome.pop(0) if outcome else None
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is None:
            outcome = default_page_output(page)
        return output_model.model_validate(outcome), TokenUsage(extraction_tokens=self.tokens)


class FakeEmbeddingService(EmbeddingService):
    """Deterministic embeddings; ``vectors`` maps exact texts to vectors."""

    def __init__(
        self,
        dimension: int = EMBEDDING_DIMENSION,
        vectors: dict[str, list[float]] | None = None,
        error: Exception | None = None,
        fail_on: str | None = None,
    ):
        self.max_dimension = dimension
        self.vectors = vectors or {}
        self.error = error
        self.fail_on = fail_on
        self.texts: list[str] = []

    async def embed_batch(self, texts: Sequence[str]) -> EmbeddingBatch:
        if self.error is not None:
            raise self.error
        vectors = []
        for text in texts:
            if self.fail_on and self.fail_on in text:
                raise ConnectionError(f"connection reset while embedding {text!r}")
            self.texts.append(text)
            vectors.append(self.vectors.get(text, [1.0] * self.max_dimension))
        return EmbeddingBatch(vectors=vectors, tokens=10 * len(texts))


class FakeGenerationService(GenerationService):
    """Answers prompts from a queue of dicts or exceptions."""

    def __init__(self, responses: list[Any] | None = None):
        self.responses = list(responses or [])
        self.prompts: list[str] = []

    async def generate(self, prompt: str, output_model: type[BaseModel] | None = None):
        self.prompts.append(prompt)
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        if output_model is None:
            return response
        return output_model.model_validate(response)


class InMemoryCatalogStore(CatalogStore):
    """Catalog store fake keyed by ``(year, code)``.

    ``neighbors`` short-circuits vector search with fixed candidates;
    ``upsert_error`` makes every upsert raise.
    """

    def __init__(self, records: Sequence[CatalogRecord] = ()):
        self.records: dict[tuple[int, str], CatalogRecord] = {r.identity: r for r in records}
        self.neighbors: list[MatchCandidate] | None = None
        self.upsert_error: Exception | None = None
        self.upsert_calls = 0

    async def upsert_batch(self, records):
        self.upsert_calls += 1
        if self.upsert_error is not None:
            raise self.upsert_error
        for record in records:
            self.records[record.identity] = record
        return len(records)

    async def find_by_page(self, page, year):
        return [r for r in self.records.values() if r.source_page == page and r.year == year]

    async def find_by_identifier(self, identifier):
        matches = [r for r in self.records.values() if identifier in (r.code, r.sku)]
        return max(matches, key=lambda r: r.year) if matches else None

    async def nearest_neighbors(self, vector, k, filters: SearchFilters | None = None):
        if self.neighbors is not None:
            return list(self.neighbors[:k])
        scored = [
            MatchCandidate(record=r, score=max(0.0, min(1.0, cosine_similarity(vector, r.embedding))))
            for r in self.records.values()
            if r.embedding
        ]
        return sorted(scored, key=lambda c: c.score, reverse=True)[:k]

    async def search_by_text(self, query, limit=10, filters=None):
        needle = query.lower()
        return [r for r in self.records.values() if needle in r.search_text.lower()][:limit]

    async def delete_by_year(self, year):
        doomed = [key for key in self.records if key[0] == year]
        for key in doomed:
            del self.records[key]
        return len(doomed)


class InMemoryJobSink(JobStatusSink):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.statuses: list[dict[str, Any]] = []
        self.logs: list[LogEntry] = []

    async def upsert_status(self, job_id, fields):
        if self.fail:
            raise ConnectionError("status store unreachable")
        self.statuses.append(dict(fields))

    async def append_log(self, job_id, entry):
        if self.fail:
            raise ConnectionError("status store unreachable")
        self.logs.append(entry)


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def ingestion_config() -> IngestionConfig:
    return IngestionConfig(concurrency=5, max_attempts=3, backoff_base_seconds=2.0)


@pytest.fixture
def matching_config() -> MatchingConfig:
    return MatchingConfig()


@pytest.fixture
def catalog_store() -> InMemoryCatalogStore:
    return InMemoryCatalogStore()


@pytest.fixture
def job_sink() -> InMemoryJobSink:
    return InMemoryJobSink()


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Set up test environment variables."""
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("EMBEDDING_CACHE_ENABLED", raising=False)


@pytest_asyncio.fixture
async def db():
    """In-memory SQLite database with the schema created."""
    database = Database(DBConfig(url="sqlite+aiosqlite:///:memory:"))
    await database.create_all()
    yield database
    await database.dispose()


@pytest.fixture
def catalog(db) -> CatalogRepository:
    return CatalogRepository(db, batch_size=2)


@pytest.fixture
def jobs(db) -> JobRepository:
    return JobRepository(db)
