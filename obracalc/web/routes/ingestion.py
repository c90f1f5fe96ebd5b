"""Ingestion routes for the ObraCalc API.

Uploaded price books are stored under the configured upload directory and
processed by the arq worker; clients poll the job for progress.

Routes:
- POST /ingestion/jobs          - Upload a PDF price book and enqueue ingestion
- GET  /ingestion/jobs          - Recent ingestion jobs
- GET  /ingestion/jobs/{job_id} - Progress and log of one job
"""

from __future__ import annotations

import logging
from pathlib import Path
from uuid import uuid4

from arq.connections import ArqRedis
from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status

from obracalc.bootstrap import Services
from obracalc.models import IngestionJob
from obracalc.web.dependencies import get_queue, get_services
from obracalc.worker import enqueue_ingestion

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ingestion", tags=["ingestion"])


@router.post("/jobs", status_code=status.HTTP_202_ACCEPTED, response_model=IngestionJob)
async def create_ingestion_job(
    file: UploadFile = File(...),
    year: int = Form(...),
    start_page: int = Form(default=1, ge=1),
    max_pages: int | None = Form(default=None, ge=1),
    services: Services = Depends(get_services),
    queue: ArqRedis = Depends(get_queue),
):
    """Upload a PDF price book and enqueue it for the worker."""
    filename = Path(file.filename or "catalog.pdf").name
    if not filename.lower().endswith(".pdf"):
        raise HTTPException(status_code=400, detail="Only PDF price books are supported")

    upload_dir = Path(services.config.upload_dir)
    upload_dir.mkdir(parents=True, exist_ok=True)
    target = upload_dir / f"{uuid4().hex}_{filename}"
    target.write_bytes(await file.read())

    job = await enqueue_ingestion(
        queue, services.jobs, str(target.resolve()), year, start_page, max_pages
    )
    logger.info(f"Accepted upload {filename} as job {job.id}")
    return job


@router.get("/jobs", response_model=list[IngestionJob])
async def list_ingestion_jobs(
    limit: int = 20,
    services: Services = Depends(get_services),
):
    return await services.jobs.list_recent(limit)


@router.get("/jobs/{job_id}", response_model=IngestionJob)
async def get_ingestion_job(job_id: str, services: Services = Depends(get_services)):
    """Progress, counters and log of one ingestion job."""
    job = await services.jobs.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return job
