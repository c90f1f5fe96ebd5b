"""Ingestion job status persistence."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select

from obracalc.db.connection import Database
from obracalc.db.models import IngestionJobModel
from obracalc.models import IngestionJob, JobStatus, LogEntry, TokenUsage
from obracalc.services.ports import JobStatusSink

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = {
    "status",
    "total_pages",
    "processed_pages",
    "skipped_pages",
    "failed_pages",
    "total_items",
    "current_activity",
    "error",
}


def to_job(row: IngestionJobModel) -> IngestionJob:
    return IngestionJob(
        id=row.id,
        source_document=row.source_document,
        year=row.year,
        status=JobStatus(row.status),
        total_pages=row.total_pages,
        processed_pages=row.processed_pages,
        skipped_pages=row.skipped_pages,
        failed_pages=row.failed_pages,
        total_items=row.total_items,
        usage=TokenUsage(
            extraction_tokens=row.extraction_tokens,
            embedding_tokens=row.embedding_tokens,
        ),
        logs=[LogEntry(**entry) for entry in (row.logs or [])],
        current_activity=row.current_activity,
        error=row.error,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class JobRepository(JobStatusSink):
    """Job status sink backed by the ``ingestion_jobs`` table."""

    def __init__(self, db: Database):
        self.db = db

    async def create(self, job: IngestionJob) -> IngestionJob:
        async with self.db.session() as session:
            session.add(
                IngestionJobModel(
                    id=job.id,
                    source_document=job.source_document,
                    year=job.year,
                    status=job.status.value,
                    total_pages=job.total_pages,
                    logs=[entry.model_dump(mode="json") for entry in job.logs],
                )
            )
        return job

    async def get(self, job_id: str) -> IngestionJob | None:
        async with self.db.session() as session:
            row = await session.get(IngestionJobModel, job_id)
            return to_job(row) if row else None

    async def list_recent(self, limit: int = 20) -> list[IngestionJob]:
        async with self.db.session() as session:
            stmt = (
                select(IngestionJobModel)
                .order_by(IngestionJobModel.created_at.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [to_job(row) for row in result.scalars().all()]

    async def upsert_status(self, job_id: str, fields: dict[str, Any]) -> None:
        """Update status fields of an existing job.

        ``usage`` may be passed as a ``TokenUsage``; unknown keys are ignored.
        """
        async with self.db.session() as session:
            row = await session.get(IngestionJobModel, job_id)
            if row is None:
                logger.warning(f"Status update for unknown job {job_id}")
                return

            for key, value in fields.items():
                if key == "usage" and isinstance(value, TokenUsage):
                    row.extraction_tokens = value.extraction_tokens
                    row.embedding_tokens = value.embedding_tokens
                elif key in _UPDATABLE_FIELDS:
                    if isinstance(value, JobStatus):
                        value = value.value
                    setattr(row, key, value)

    async def append_log(self, job_id: str, entry: LogEntry) -> None:
        async with self.db.session() as session:
            row = await session.get(IngestionJobModel, job_id)
            if row is None:
                logger.warning(f"Log entry for unknown job {job_id}")
                return
            # Reassign so the JSON column is flagged dirty
            row.logs = [*(row.logs or []), entry.model_dump(mode="json")]
