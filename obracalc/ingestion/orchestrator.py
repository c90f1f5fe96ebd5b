"""Catalog ingestion orchestrator.

Drives one ingestion job from PDF to persisted, vectorized records.

Key features:
- Bounded concurrency: pages are extracted in batches of ``concurrency``;
  the next batch starts only after the whole previous batch finished.
- Resumable: pages that already have records for ``(page, year)`` are
  skipped without calling extraction.
- Isolated failures: a page that fails extraction contributes zero items;
  a batch that fails embedding/persistence with a network error is logged
  and skipped; any other batch error fails the job.
- Circuit breaker: consecutive batch failures abort the job.
- Observable: counters and log entries are pushed to the job status sink
  after every batch. Sink failures never affect the job.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from obracalc.config import IngestionConfig
from obracalc.core.errors import CircuitBreakerOpenError, ErrorKind, classify_error
from obracalc.core.logging import bind_job, unbind_job
from obracalc.ingestion.enricher import EmbeddingEnricher
from obracalc.ingestion.extractor import ExtractionWorker, PageResult
from obracalc.ingestion.splitter import deduplicate_by_code, page_count, split_pages
from obracalc.models import (
    CatalogRecord,
    ChapterContext,
    IngestionJob,
    JobStatus,
    LogEntry,
    LogLevel,
    TokenUsage,
    utcnow,
)
from obracalc.services.ports import CatalogStore, JobStatusSink

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.SUCCESS: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


@dataclass
class BatchOutcome:
    """Accounting for one finished batch."""

    pages: range  # 0-based page indices
    items_saved: int = 0
    skipped_pages: list[int] = field(default_factory=list)  # 1-based
    failed_pages: list[PageResult] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    context: ChapterContext = field(default_factory=ChapterContext)


def stamp_context(items: list[CatalogRecord], context: ChapterContext) -> list[CatalogRecord]:
    """Fill missing chapter/section of items from the running context."""
    stamped = []
    for item in items:
        if item.chapter is None and context.chapter is not None:
            item = item.model_copy(
                update={"chapter": context.chapter, "section": item.section or context.section}
            )
        stamped.append(item)
    return stamped


class IngestionOrchestrator:
    """Runs ingestion jobs: split, extract, enrich, persist."""

    def __init__(
        self,
        worker: ExtractionWorker,
        enricher: EmbeddingEnricher,
        store: CatalogStore,
        sink: JobStatusSink,
        config: IngestionConfig,
    ):
        self.worker = worker
        self.enricher = enricher
        self.store = store
        self.sink = sink
        self.config = config

    # ------------------------------------------------------------------
    # Status sink helpers (best effort)
    # ------------------------------------------------------------------

    async def _emit_status(self, job: IngestionJob, **fields: Any) -> None:
        for key, value in fields.items():
            setattr(job, key, value)
        job.updated_at = utcnow()

        payload = {
            "status": job.status,
            "total_pages": job.total_pages,
            "processed_pages": job.processed_pages,
            "skipped_pages": job.skipped_pages,
            "failed_pages": job.failed_pages,
            "total_items": job.total_items,
            "usage": job.usage,
            "current_activity": job.current_activity,
            "error": job.error,
        }
        try:
            await self.sink.upsert_status(job.id, payload)
        except Exception as e:
            logger.warning(f"Job status update failed for {job.id}: {e}")

    async def _log(self, job: IngestionJob, message: str, level: LogLevel = LogLevel.INFO) -> None:
        entry = LogEntry(message=message, level=level)
        job.logs.append(entry)
        logger.log(_LOG_LEVELS[level], message)
        try:
            await self.sink.append_log(job.id, entry)
        except Exception as e:
            logger.warning(f"Job log append failed for {job.id}: {e}")

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(
        self,
        job: IngestionJob,
        document: bytes,
        start_page: int = 1,
        max_pages: int | None = None,
    ) -> IngestionJob:
        """Run ``job`` over ``document``.

        Args:
            job: Pending job; updated in place and returned
            document: Full PDF bytes
            start_page: First page to process (1-based)
            max_pages: Process at most this many pages

        Returns:
            The job in a terminal state (completed or failed)
        """
        if job.status.is_terminal:
            raise ValueError(f"Job {job.id} already {job.status.value}")

        bind_job(job.id)
        try:
            await self._emit_status(
                job, status=JobStatus.PROCESSING, current_activity="Reading document"
            )
            await self._log(job, f"Starting ingestion of {job.source_document} (year {job.year})")

            await self._run_batches(job, document, start_page, max_pages)

            await self._emit_status(
                job, status=JobStatus.COMPLETED, current_activity="Completed"
            )
            await self._log(
                job,
                f"Ingestion completed: {job.processed_pages}/{job.total_pages} pages, "
                f"{job.total_items} items, {job.skipped_pages} skipped, "
                f"{job.failed_pages} failed, {job.usage.total_tokens} tokens",
                LogLevel.SUCCESS,
            )
        except Exception as e:
            logger.error(f"Ingestion job {job.id} failed: {e}", exc_info=True)
            await self._log(job, f"Ingestion failed: {e}", LogLevel.ERROR)
            await self._emit_status(
                job, status=JobStatus.FAILED, error=str(e), current_activity="Failed"
            )
        finally:
            unbind_job()

        return job

    async def _run_batches(
        self, job: IngestionJob, document: bytes, start_page: int, max_pages: int | None
    ) -> None:
        total = page_count(document)
        first = max(start_page, 1) - 1
        last = total if max_pages is None else min(first + max_pages, total)
        if first >= total:
            raise ValueError(f"start_page {start_page} is beyond the document ({total} pages)")

        await self._emit_status(job, total_pages=last - first)
        await self._log(job, f"Found {total} pages; processing pages {first + 1} to {last}")

        context = ChapterContext()
        consecutive_failures = 0
        batch_size = max(self.config.concurrency, 1)

        for batch_start in range(first, last, batch_size):
            pages = range(batch_start, min(batch_start + batch_size, last))
            label = f"pages {pages.start + 1}-{pages.stop}"
            await self._emit_status(job, current_activity=f"Processing {label}")

            try:
                outcome = await self._process_batch(job, document, pages, context)
            except Exception as e:
                kind = classify_error(e)
                consecutive_failures += 1

                if consecutive_failures >= self.config.max_consecutive_batch_failures:
                    raise CircuitBreakerOpenError(
                        f"{consecutive_failures} consecutive batch failures, last at {label}: {e}"
                    ) from e

                if kind is not ErrorKind.NETWORK:
                    raise

                job.failed_pages += len(pages)
                await self._emit_status(job, processed_pages=job.processed_pages + len(pages))
                await self._log(
                    job,
                    f"Batch {label} failed with a network error and was skipped "
                    f"({consecutive_failures}/{self.config.max_consecutive_batch_failures}): {e}",
                    LogLevel.WARNING,
                )
                continue

            consecutive_failures = 0
            context = outcome.context
            await self._account(job, outcome, label)

    async def _account(self, job: IngestionJob, outcome: BatchOutcome, label: str) -> None:
        for failed in outcome.failed_pages:
            cause = failed.error_kind.value if failed.error_kind else "unknown"
            await self._log(
                job,
                f"Page {failed.page_number} failed extraction after {failed.attempts} attempts "
                f"({cause} error) and contributes 0 items: {failed.error}",
                LogLevel.WARNING,
            )
        if outcome.skipped_pages:
            skipped = ", ".join(str(p) for p in outcome.skipped_pages)
            await self._log(job, f"Skipped already ingested pages: {skipped}")

        job.skipped_pages += len(outcome.skipped_pages)
        job.failed_pages += len(outcome.failed_pages)
        job.usage = job.usage + outcome.usage
        await self._emit_status(
            job,
            processed_pages=job.processed_pages + len(outcome.pages),
            total_items=job.total_items + outcome.items_saved,
        )
        await self._log(
            job,
            f"Batch {label}: {outcome.items_saved} items saved "
            f"({job.processed_pages}/{job.total_pages} pages)",
            LogLevel.SUCCESS,
        )

    async def _process_batch(
        self,
        job: IngestionJob,
        document: bytes,
        pages: range,
        context: ChapterContext,
    ) -> BatchOutcome:
        outcome = BatchOutcome(pages=pages)

        existing: dict[int, list[CatalogRecord]] = {}
        to_extract: list[int] = []
        for index in pages:
            records = await self.store.find_by_page(index + 1, job.year)
            if records:
                existing[index] = records
            else:
                to_extract.append(index)

        # Every page starts from the context at the batch start; the walk
        # below restores page order.
        results = await asyncio.gather(
            *(
                self.worker.extract(
                    split_pages(document, index),
                    context,
                    page_number=index + 1,
                    year=job.year,
                    source_document=job.source_document,
                )
                for index in to_extract
            )
        )
        by_index = dict(zip(to_extract, results))

        items: list[CatalogRecord] = []
        for index in pages:
            if index in existing:
                outcome.skipped_pages.append(index + 1)
                last = existing[index][-1]
                context = context.advance(last.chapter, last.section)
                continue

            result = by_index[index]
            outcome.usage = outcome.usage + result.usage
            if result.failed:
                outcome.failed_pages.append(result)
                continue

            items.extend(stamp_context(result.items, context))
            context = context.advance(result.reported_chapter, result.reported_section)

        if items:
            items = deduplicate_by_code(items)
            tokens_before = self.enricher.tokens_used
            enriched = await self.enricher.enrich(items)
            outcome.usage = outcome.usage + TokenUsage(
                embedding_tokens=self.enricher.tokens_used - tokens_before
            )
            outcome.items_saved = await self.store.upsert_batch(enriched)

        outcome.context = context
        return outcome
