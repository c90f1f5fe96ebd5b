"""Tests for obracalc.ingestion.orchestrator - batched, resumable ingestion."""

import pytest

from conftest import (
    FakeEmbeddingService,
    FakeExtractionService,
    InMemoryCatalogStore,
    InMemoryJobSink,
    make_pdf,
    make_record,
)
from obracalc.config import IngestionConfig
from obracalc.ingestion.enricher import EmbeddingEnricher
from obracalc.ingestion.extractor import ExtractionWorker
from obracalc.ingestion.orchestrator import IngestionOrchestrator, stamp_context
from obracalc.models import ChapterContext, IngestionJob, JobStatus, LogLevel


def build_orchestrator(extraction, store, sink, config, sleep, embeddings=None):
    embeddings = embeddings or FakeEmbeddingService()
    return IngestionOrchestrator(
        worker=ExtractionWorker(extraction, config, sleep=sleep),
        enricher=EmbeddingEnricher(embeddings, index_dimension=embeddings.max_dimension),
        store=store,
        sink=sink,
        config=config,
    )


def new_job() -> IngestionJob:
    return IngestionJob(source_document="precios_2024.pdf", year=2024)


class TestRun:
    @pytest.mark.asyncio
    async def test_failed_page_is_isolated(self, catalog_store, job_sink, ingestion_config, fake_sleep):
        extraction = FakeExtractionService({7: TimeoutError("timed out")})
        orchestrator = build_orchestrator(
            extraction, catalog_store, job_sink, ingestion_config, fake_sleep
        )

        job = await orchestrator.run(new_job(), make_pdf(10))

        assert job.status is JobStatus.COMPLETED
        assert job.total_pages == 10
        assert job.processed_pages == 10
        assert job.failed_pages == 1
        assert job.total_items == 9
        assert sorted(r.source_page for r in catalog_store.records.values()) == [
            1, 2, 3, 4, 5, 6, 8, 9, 10
        ]
        warnings = [e.message for e in job.logs if e.level is LogLevel.WARNING]
        assert any("Page 7" in message and "0 items" in message for message in warnings)
        assert job_sink.statuses[-1]["status"] is JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_token_usage_is_accumulated(self, catalog_store, job_sink, ingestion_config, fake_sleep):
        orchestrator = build_orchestrator(
            FakeExtractionService(tokens=50), catalog_store, job_sink, ingestion_config, fake_sleep
        )

        job = await orchestrator.run(new_job(), make_pdf(3))

        assert job.usage.extraction_tokens == 150
        assert job.usage.embedding_tokens == 30

    @pytest.mark.asyncio
    async def test_resume_skips_ingested_pages(self, catalog_store, job_sink, ingestion_config, fake_sleep):
        extraction = FakeExtractionService()
        orchestrator = build_orchestrator(
            extraction, catalog_store, job_sink, ingestion_config, fake_sleep
        )
        await orchestrator.run(new_job(), make_pdf(10))
        calls_after_first_run = len(extraction.calls)

        job = await orchestrator.run(new_job(), make_pdf(10))

        assert job.status is JobStatus.COMPLETED
        assert job.skipped_pages == 10
        assert job.processed_pages == 10
        assert job.total_items == 0
        assert len(extraction.calls) == calls_after_first_run
        assert len(catalog_store.records) == 10

    @pytest.mark.asyncio
    async def test_page_window(self, catalog_store, job_sink, ingestion_config, fake_sleep):
        extraction = FakeExtractionService()
        orchestrator = build_orchestrator(
            extraction, catalog_store, job_sink, ingestion_config, fake_sleep
        )

        job = await orchestrator.run(new_job(), make_pdf(10), start_page=4, max_pages=3)

        assert job.total_pages == 3
        assert sorted(extraction.calls) == [4, 5, 6]

    @pytest.mark.asyncio
    async def test_batches_are_gated(self, catalog_store, job_sink, fake_sleep):
        config = IngestionConfig(concurrency=2)
        extraction = FakeExtractionService()
        orchestrator = build_orchestrator(extraction, catalog_store, job_sink, config, fake_sleep)

        await orchestrator.run(new_job(), make_pdf(5))

        assert set(extraction.calls[:2]) == {1, 2}
        assert set(extraction.calls[2:4]) == {3, 4}
        assert extraction.calls[4] == 5
        assert catalog_store.upsert_calls == 3

    @pytest.mark.asyncio
    async def test_chapter_context_carries_across_pages(self, catalog_store, job_sink, fake_sleep):
        config = IngestionConfig(concurrency=2)
        extraction = FakeExtractionService(
            {
                1: {
                    "chapter": "Demoliciones",
                    "items": [
                        {
                            "code": "DRA010",
                            "description": "Demolición de alicatado",
                            "chapter": "Demoliciones",
                            "price_total": "8,40",
                        }
                    ],
                },
                2: {"items": [{"code": "DRA020", "description": "Demolición de solado", "price_total": "9,10"}]},
                3: {"items": [{"code": "DRA030", "description": "Demolición de tabique", "price_total": "6,00"}]},
            }
        )
        orchestrator = build_orchestrator(extraction, catalog_store, job_sink, config, fake_sleep)

        await orchestrator.run(new_job(), make_pdf(3))

        chapters = {r.code: r.chapter for r in catalog_store.records.values()}
        assert chapters == {"DRA010": "Demoliciones", "DRA020": "Demoliciones", "DRA030": "Demoliciones"}
        assert 'Current chapter (from previous pages): "Demoliciones"' in extraction.instructions[3]

    @pytest.mark.asyncio
    async def test_network_batch_failures_are_skipped(self, catalog_store, job_sink, ingestion_config, fake_sleep):
        catalog_store.upsert_error = ConnectionError("connection reset by peer")
        orchestrator = build_orchestrator(
            FakeExtractionService(), catalog_store, job_sink, ingestion_config, fake_sleep
        )

        job = await orchestrator.run(new_job(), make_pdf(10))

        assert job.status is JobStatus.COMPLETED
        assert job.processed_pages == 10
        assert job.failed_pages == 10
        assert job.total_items == 0

    @pytest.mark.asyncio
    async def test_circuit_breaker_opens(self, catalog_store, job_sink, ingestion_config, fake_sleep):
        catalog_store.upsert_error = ConnectionError("connection reset by peer")
        orchestrator = build_orchestrator(
            FakeExtractionService(), catalog_store, job_sink, ingestion_config, fake_sleep
        )

        job = await orchestrator.run(new_job(), make_pdf(20))

        assert job.status is JobStatus.FAILED
        assert "3 consecutive batch failures" in job.error
        assert job.processed_pages == 10
        assert catalog_store.upsert_calls == 3

    @pytest.mark.asyncio
    async def test_non_network_batch_error_fails_job(self, catalog_store, job_sink, ingestion_config, fake_sleep):
        catalog_store.upsert_error = ValueError("value too long for column")
        orchestrator = build_orchestrator(
            FakeExtractionService(), catalog_store, job_sink, ingestion_config, fake_sleep
        )

        job = await orchestrator.run(new_job(), make_pdf(10))

        assert job.status is JobStatus.FAILED
        assert job.processed_pages == 0
        assert "value too long" in job.error
        assert job.logs[-1].level is LogLevel.ERROR

    @pytest.mark.asyncio
    async def test_dimension_mismatch_fails_job(self, catalog_store, job_sink, ingestion_config, fake_sleep):
        embeddings = FakeEmbeddingService(vectors={"Partida de la página 1 (ITEM001 m²)": [1.0]})
        orchestrator = build_orchestrator(
            FakeExtractionService(), catalog_store, job_sink, ingestion_config, fake_sleep, embeddings
        )

        job = await orchestrator.run(new_job(), make_pdf(3))

        assert job.status is JobStatus.FAILED
        assert "dimension mismatch" in job.error
        assert catalog_store.records == {}

    @pytest.mark.asyncio
    async def test_status_sink_failures_do_not_affect_job(self, catalog_store, ingestion_config, fake_sleep):
        orchestrator = build_orchestrator(
            FakeExtractionService(), catalog_store, InMemoryJobSink(fail=True), ingestion_config, fake_sleep
        )

        job = await orchestrator.run(new_job(), make_pdf(3))

        assert job.status is JobStatus.COMPLETED
        assert job.total_items == 3

    @pytest.mark.asyncio
    async def test_terminal_job_is_rejected(self, catalog_store, job_sink, ingestion_config, fake_sleep):
        orchestrator = build_orchestrator(
            FakeExtractionService(), catalog_store, job_sink, ingestion_config, fake_sleep
        )
        job = new_job()
        job.status = JobStatus.COMPLETED

        with pytest.raises(ValueError):
            await orchestrator.run(job, make_pdf(1))

    @pytest.mark.asyncio
    async def test_start_page_beyond_document_fails(self, catalog_store, job_sink, ingestion_config, fake_sleep):
        orchestrator = build_orchestrator(
            FakeExtractionService(), catalog_store, job_sink, ingestion_config, fake_sleep
        )

        job = await orchestrator.run(new_job(), make_pdf(2), start_page=5)

        assert job.status is JobStatus.FAILED


def test_stamp_context_fills_missing_chapter_only():
    context = ChapterContext(chapter="Solados", section="Cerámicos")
    items = [make_record("A"), make_record("B", chapter="Alicatados")]

    stamped = stamp_context(items, context)

    assert (stamped[0].chapter, stamped[0].section) == ("Solados", "Cerámicos")
    assert stamped[1].chapter == "Alicatados"
    assert stamped[1].section is None
