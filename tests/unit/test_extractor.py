"""Tests for obracalc.ingestion.extractor - page extraction with retry."""

from decimal import Decimal

import pytest

from conftest import FakeExtractionService, make_pdf
from obracalc.core.errors import ErrorKind
from obracalc.ingestion.extractor import ExtractionWorker, PageExtractionOutput, to_catalog_records
from obracalc.ingestion.splitter import split_pages
from obracalc.models import ChapterContext, ItemKind


@pytest.fixture
def page_three():
    return split_pages(make_pdf(5), 2)


class TestToCatalogRecords:
    def test_converts_locale_numbers_and_breakdown(self):
        output = PageExtractionOutput.model_validate(
            {
                "items": [
                    {
                        "code": "RSG010b",
                        "description": "Solado de baldosas cerámicas",
                        "unit": "m2",
                        "kind": "work",
                        "price_total": "1.200,50",
                        "price_labor": "30,00",
                        "breakdown": [
                            {
                                "code": "mo020",
                                "description": "Oficial 1ª solador",
                                "kind": "labor",
                                "unit": "h",
                                "quantity": "0,350",
                                "unit_price": "20,00",
                            }
                        ],
                    }
                ]
            }
        )

        records = to_catalog_records(output, 2024, 3, "precios.pdf", tokens=100)

        assert len(records) == 1
        record = records[0]
        assert record.price_total == Decimal("1200.50")
        assert record.price_labor == Decimal("30.00")
        assert record.kind is ItemKind.WORK
        assert record.source_page == 3
        assert record.extraction_tokens == 100
        assert record.breakdown[0].quantity == Decimal("0.350")
        assert record.breakdown[0].subtotal == Decimal("7.00")

    def test_drops_invalid_items(self):
        output = PageExtractionOutput.model_validate(
            {
                "items": [
                    {"code": "A1", "description": "Valid", "price_total": "10,00"},
                    {"code": "A2", "description": "No price", "price_total": "consultar"},
                ]
            }
        )

        records = to_catalog_records(output, 2024, 1, None)

        assert [r.code for r in records] == ["A1"]


class TestExtractionWorker:
    @pytest.mark.asyncio
    async def test_success_advances_context(self, page_three, ingestion_config, fake_sleep):
        service = FakeExtractionService(
            {
                3: {
                    "chapter": "Demoliciones",
                    "items": [{"code": "DRA010", "description": "Demolición", "price_total": "8,40"}],
                }
            }
        )
        worker = ExtractionWorker(service, ingestion_config, sleep=fake_sleep)

        result = await worker.extract(page_three, ChapterContext(), page_number=3, year=2024)

        assert not result.failed
        assert result.attempts == 1
        assert [r.code for r in result.items] == ["DRA010"]
        assert result.context == ChapterContext(chapter="Demoliciones")
        assert result.usage.extraction_tokens == 100

    @pytest.mark.asyncio
    async def test_instructions_carry_running_context(self, page_three, ingestion_config, fake_sleep):
        service = FakeExtractionService()
        worker = ExtractionWorker(service, ingestion_config, sleep=fake_sleep)

        result = await worker.extract(
            page_three, ChapterContext(chapter="Albañilería"), page_number=3, year=2024
        )

        assert 'Current chapter (from previous pages): "Albañilería"' in service.instructions[3]
        assert result.context == ChapterContext(chapter="Albañilería")

    @pytest.mark.asyncio
    async def test_retries_with_exponential_backoff(self, page_three, ingestion_config, fake_sleep):
        service = FakeExtractionService(
            {3: [TimeoutError("timed out"), ConnectionError("fetch failed"), None]}
        )
        worker = ExtractionWorker(service, ingestion_config, sleep=fake_sleep)

        result = await worker.extract(page_three, ChapterContext(), page_number=3, year=2024)

        assert not result.failed
        assert result.attempts == 3
        assert service.calls == [3, 3, 3]
        assert fake_sleep.delays == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_exhausted_retries_return_failed_page(
        self, page_three, ingestion_config, fake_sleep
    ):
        service = FakeExtractionService({3: TimeoutError("timed out")})
        worker = ExtractionWorker(service, ingestion_config, sleep=fake_sleep)
        context = ChapterContext(chapter="Demoliciones")

        result = await worker.extract(page_three, context, page_number=3, year=2024)

        assert result.failed
        assert result.items == []
        assert result.attempts == 3
        assert result.error_kind is ErrorKind.NETWORK
        assert result.context == context
        assert len(service.calls) == 3

    @pytest.mark.asyncio
    async def test_rate_limit_is_classified(self, page_three, ingestion_config, fake_sleep):
        service = FakeExtractionService({3: RuntimeError("429 Too Many Requests")})
        worker = ExtractionWorker(service, ingestion_config, sleep=fake_sleep)

        result = await worker.extract(page_three, ChapterContext(), page_number=3, year=2024)

        assert result.failed
        assert result.error_kind is ErrorKind.RATE_LIMIT

    @pytest.mark.asyncio
    async def test_bad_rows_do_not_fail_the_page(self, page_three, ingestion_config, fake_sleep):
        service = FakeExtractionService(
            {
                3: {
                    "items": [
                        {"code": "A1", "description": "Partida válida", "price_total": "12,50"},
                        {"code": None, "description": "Fila sin código", "price_total": "3,00"},
                        {"code": "  ", "description": "Código en blanco", "price_total": "4,00"},
                        {"code": "A4", "description": "Sin precio"},
                    ]
                }
            }
        )
        worker = ExtractionWorker(service, ingestion_config, sleep=fake_sleep)

        result = await worker.extract(page_three, ChapterContext(), page_number=3, year=2024)

        assert not result.failed
        assert [r.code for r in result.items] == ["A1"]
        assert service.calls == [3]
        assert fake_sleep.delays == []
