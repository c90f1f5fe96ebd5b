"""Page-level extraction worker.

Turns one page (or a small page-range chunk) of a price book into
``CatalogRecord`` objects through the extraction service, with bounded
retry and classified exponential backoff. A page that still fails after
the last attempt comes back as an empty, failed result instead of an
exception, so one bad page never aborts the run.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Literal

from pydantic import BaseModel, Field, ValidationError
from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt, wait_exponential

from obracalc.config import IngestionConfig
from obracalc.core.errors import ErrorKind, classify_error
from obracalc.ingestion.splitter import deduplicate_by_code
from obracalc.models import (
    BreakdownComponent,
    CatalogRecord,
    ChapterContext,
    ItemKind,
    TokenUsage,
)
from obracalc.services.ports import ExtractionService

logger = logging.getLogger(__name__)

Number = str | float | int | None


class ExtractedComponent(BaseModel):
    code: str | None = None
    description: str = ""
    kind: Literal["labor", "material", "machinery", "other"] = "other"
    unit: str | None = None
    quantity: Number = Field(None, description="Yield per unit, as printed (e.g. '0,350')")
    unit_price: Number = Field(None, description="Unit price as printed (e.g. '1.200,50')")


class ExtractedItem(BaseModel):
    code: str | None = Field(None, description="Item code as printed (e.g. 'RSG010b')")
    description: str = ""
    unit: str = Field("ud", description="Unit of measure (m², m, ud, kg, h, pa)")
    kind: Literal["work", "material"] = Field(
        "work", description="'work' for composite items with labour, 'material' for bare resources"
    )
    price_total: Number = Field(None, description="Total unit price as printed")
    price_labor: Number = None
    price_material: Number = None
    chapter: str | None = Field(None, description="Only if a chapter heading on this page covers the item")
    section: str | None = None
    breakdown: list[ExtractedComponent] = Field(default_factory=list)


class PageExtractionOutput(BaseModel):
    """Output shape requested from the extraction service."""

    chapter: str | None = Field(None, description="New chapter heading seen on this page, if any")
    section: str | None = Field(None, description="New section heading seen on this page, if any")
    items: list[ExtractedItem] = Field(default_factory=list)


EXTRACTION_INSTRUCTIONS = """\
Analyze this PDF page VISUALLY. It is a Spanish construction price book.
Extract every priced item that has a code and a price. Do not skip any.

Numbers: copy them exactly as printed. In this locale ',' is the decimal
separator and '.' is the thousands separator ("1.200,50" is 1200.50).

For each item:
- kind: "work" if it is a composite item (labour + materials, usually with a
  breakdown of descompuestos below it), "material" if it is a bare resource.
- breakdown: indented rows (codes like 'mt...', 'mo...', 'mq...') under the item,
  with their yield (quantity), unit and unit price.
- chapter/section: only when a heading printed on THIS page covers the item.

Current chapter (from previous pages): "{chapter}"
Current section (from previous pages): "{section}"

If you see a NEW chapter or section heading (large or bold text), report it in
the top-level "chapter"/"section" fields. If there are no items, return an
empty list.
"""


@dataclass
class PageResult:
    """Outcome of extracting one page."""

    page_number: int  # 1-based
    items: list[CatalogRecord] = field(default_factory=list)
    reported_chapter: str | None = None
    reported_section: str | None = None
    context: ChapterContext = field(default_factory=ChapterContext)
    usage: TokenUsage = field(default_factory=TokenUsage)
    failed: bool = False
    error: str | None = None
    error_kind: ErrorKind | None = None
    attempts: int = 0


def to_catalog_records(
    output: PageExtractionOutput,
    year: int,
    page_number: int | None,
    source_document: str | None,
    tokens: int = 0,
) -> list[CatalogRecord]:
    """Convert extraction output into validated records.

    Items without a code, or that fail validation (typically a missing or
    unreadable price), are dropped one by one with a warning; duplicate
    codes keep the longest description.
    """
    records: list[CatalogRecord] = []
    per_item_tokens = tokens // len(output.items) if output.items else 0

    for item in output.items:
        if not item.code or not item.code.strip():
            logger.warning(f"Skipping item without code on page {page_number}: {item.description!r}")
            continue
        try:
            records.append(
                CatalogRecord(
                    code=item.code.strip(),
                    description=item.description.strip(),
                    unit=item.unit,
                    kind=ItemKind(item.kind),
                    chapter=item.chapter,
                    section=item.section,
                    price_total=item.price_total,
                    price_labor=item.price_labor,
                    price_material=item.price_material,
                    breakdown=[
                        BreakdownComponent(
                            code=c.code,
                            description=c.description or (c.code or ""),
                            kind=c.kind,
                            unit=c.unit,
                            quantity=c.quantity,
                            unit_price=c.unit_price,
                        )
                        for c in item.breakdown
                    ],
                    year=year,
                    source_page=page_number,
                    source_document=source_document,
                    extraction_tokens=per_item_tokens or None,
                )
            )
        except ValidationError as e:
            logger.warning(f"Skipping invalid item {item.code!r} on page {page_number}: {e}")

    return deduplicate_by_code(records)


class ExtractionWorker:
    """Extracts one page with retry, backoff and failure isolation."""

    def __init__(
        self,
        service: ExtractionService,
        config: IngestionConfig,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.service = service
        self.config = config
        self.sleep = sleep

    def build_instructions(self, context: ChapterContext) -> str:
        return EXTRACTION_INSTRUCTIONS.format(
            chapter=context.chapter or "", section=context.section or ""
        )

    def _log_retry(self, page_number: int) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            kind = classify_error(exc) if exc else ErrorKind.OTHER
            delay = retry_state.next_action.sleep if retry_state.next_action else 0
            logger.warning(
                f"Page {page_number}: attempt {retry_state.attempt_number}/"
                f"{self.config.max_attempts} failed ({kind.value} error): {exc}. "
                f"Retrying in {delay:.0f}s"
            )

        return before_sleep

    async def extract(
        self,
        document: bytes,
        context: ChapterContext,
        page_number: int,
        year: int,
        source_document: str | None = None,
    ) -> PageResult:
        """Extract items from one page.

        Returns a ``PageResult`` whose ``context`` is the running context
        advanced by any headings reported on this page. Never raises for
        extraction failures; ``failed`` is set instead.
        """
        attempts = 0
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.max_attempts),
            wait=wait_exponential(multiplier=self.config.backoff_base_seconds, exp_base=2),
            sleep=self.sleep,
            before_sleep=self._log_retry(page_number),
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    output, usage = await self.service.extract(
                        document, self.build_instructions(context), PageExtractionOutput
                    )
        except Exception as e:
            kind = classify_error(e)
            logger.error(
                f"Page {page_number}: extraction failed after {attempts} attempts "
                f"({kind.value} error): {e}"
            )
            return PageResult(
                page_number=page_number,
                context=context,
                failed=True,
                error=str(e),
                error_kind=kind,
                attempts=attempts,
            )

        items = to_catalog_records(
            output, year, page_number, source_document, tokens=usage.extraction_tokens
        )
        logger.info(f"Page {page_number}: extracted {len(items)} items")

        return PageResult(
            page_number=page_number,
            items=items,
            reported_chapter=output.chapter,
            reported_section=output.section,
            context=context.advance(output.chapter, output.section),
            usage=usage,
            attempts=attempts,
        )
