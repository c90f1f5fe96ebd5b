"""arq worker: runs catalog ingestion jobs in the background.

Start with ``arq obracalc.worker.WorkerSettings``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from arq.connections import ArqRedis

from obracalc.bootstrap import Services, build_services
from obracalc.config import AppConfig
from obracalc.core.logging import configure_logging
from obracalc.core.queue import get_redis_settings
from obracalc.db.job_repository import JobRepository
from obracalc.models import IngestionJob, JobStatus, LogEntry, LogLevel

logger = logging.getLogger(__name__)


async def startup(ctx: dict[str, Any]) -> None:
    """Initialize resources when worker starts."""
    config = AppConfig.from_env()
    configure_logging(config.log_level, config.json_logs)
    ctx["services"] = build_services(config)
    logger.info("Worker started. Database connection initialized.")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Cleanup resources when worker stops."""
    services: Services = ctx["services"]
    await services.close()
    logger.info("Worker stopped. Database connection closed.")


async def ingest_catalog_task(
    ctx: dict[str, Any],
    job_id: str,
    pdf_path: str,
    start_page: int = 1,
    max_pages: int | None = None,
) -> dict[str, Any]:
    """Run a stored ingestion job over the PDF at ``pdf_path``."""
    services: Services = ctx["services"]
    job = await services.jobs.get(job_id)
    if job is None:
        raise ValueError(f"Ingestion job {job_id} not found")
    if job.status.is_terminal:
        logger.warning(f"Ingestion job {job_id} already {job.status.value}; skipping")
        return {"job_id": job_id, "status": job.status.value}

    try:
        document = Path(pdf_path).read_bytes()
    except OSError as e:
        await services.jobs.append_log(
            job_id, LogEntry(message=f"Cannot read {pdf_path}: {e}", level=LogLevel.ERROR)
        )
        await services.jobs.upsert_status(job_id, {"status": JobStatus.FAILED, "error": str(e)})
        raise

    job = await services.orchestrator().run(
        job, document, start_page=start_page, max_pages=max_pages
    )
    return {
        "job_id": job.id,
        "status": job.status.value,
        "processed_pages": job.processed_pages,
        "total_items": job.total_items,
    }


async def enqueue_ingestion(
    queue: ArqRedis,
    jobs: JobRepository,
    pdf_path: str,
    year: int,
    start_page: int = 1,
    max_pages: int | None = None,
) -> IngestionJob:
    """Create the pending job record and enqueue it for the worker."""
    job = IngestionJob(source_document=Path(pdf_path).name, year=year)
    job.logs.append(LogEntry(message=f"Queued ingestion of {job.source_document}"))
    await jobs.create(job)
    await queue.enqueue_job(
        "ingest_catalog_task",
        job.id,
        pdf_path,
        start_page=start_page,
        max_pages=max_pages,
        _job_id=f"ingest:{job.id}",
    )
    logger.info(f"Enqueued ingestion job {job.id} for {pdf_path}")
    return job


class WorkerSettings:
    functions = [ingest_catalog_task]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = get_redis_settings()
    job_timeout = 6 * 60 * 60  # Large catalogs take hours
    max_tries = 1  # Orchestrator is resumable; re-runs are explicit
