"""
Sync enrichment routes.
POST   /enrichment/jobs                        — queue a sync job (or route to bulk in auto/bulk mode)
GET    /enrichment/jobs                        — list jobs (filter by table / column)
GET    /enrichment/jobs/{job_id}               — job detail
DELETE /enrichment/jobs                        — cancel by job_id / column_id / all, optional reset_stuck
POST   /enrichment/jobs/{job_id}/force-complete — close a stuck job
GET    /enrichment/progress/{job_id}           — next page of completed row ids for a client
POST   /enrichment/run                         — ad-hoc run, all rows in parallel
POST   /enrichment/retry-cell                  — re-run one cell now
POST   /enrichment/extract-datapoint           — copy one structured key into a new column
GET    /enrichment/events                      — audit trail for a table / column / job
"""
import logging
import uuid
from typing import Literal, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session, sessionmaker

from gridwise.config import settings
from gridwise.database import get_db, get_session_factory
from gridwise.dao.config_dao import get_config
from gridwise.dao.job_dao import get_job, job_summary, list_jobs
from gridwise.dao.row_dao import count_rows
from gridwise.engine.bulk_orchestrator import submit_bulk
from gridwise.engine.datapoint_extractor import extract_datapoint
from gridwise.engine.sync_runner import (
    cancel_sync_jobs, create_sync_job, force_complete_job, reset_stuck_cells, retry_cell, run_adhoc,
)
from gridwise.exceptions import EnrichmentError
from gridwise.providers.batch_provider import BatchProvider, get_batch_provider
from gridwise.providers.model_provider import ModelProvider, get_model_provider
from gridwise.routes.errors import http_error
from gridwise.routes.batch_routes import serialize_submission
from gridwise.services.audit_service import list_events, serialize_event
from gridwise.services.progress_tracker import ProgressTracker

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/enrichment", tags=["Enrichment"])


# ── Pydantic schemas ──────────────────────────────────────────────────────────

class EnrichmentRequest(BaseModel):
    config_id: str
    table_id: str
    target_column_id: str
    row_ids: Optional[list[str]] = None
    only_empty: bool = False
    include_errors: bool = False
    force_rerun: bool = False
    mode: Literal["sync", "bulk", "auto"] = "sync"

class RunRequest(BaseModel):
    config_id: str
    table_id: str
    target_column_id: str
    row_ids: list[str]

class RetryCellRequest(BaseModel):
    row_id: str
    column_id: str

class ExtractDatapointRequest(BaseModel):
    table_id: str
    source_column_id: str
    key: str
    column_name: Optional[str] = None


# ── Jobs ──────────────────────────────────────────────────────────────────────

@router.post("/jobs", status_code=202)
async def create_enrichment_job(
    body          : EnrichmentRequest,
    db            : Session = Depends(get_db),
    batch_provider: BatchProvider = Depends(get_batch_provider),
):
    row_count = len(body.row_ids) if body.row_ids else count_rows(db, body.table_id)
    use_bulk = body.mode == "bulk" or (body.mode == "auto" and row_count > settings.bulk_threshold_rows)

    selection = dict(
        row_ids=body.row_ids,
        only_empty=body.only_empty,
        include_errors=body.include_errors,
        force_rerun=body.force_rerun,
    )
    try:
        if use_bulk:
            submission = await submit_bulk(
                db, batch_provider, body.config_id, body.table_id, body.target_column_id, **selection,
            )
            return {"mode": "bulk", **serialize_submission(submission)}

        job = await create_sync_job(db, body.config_id, body.table_id, body.target_column_id, **selection)
    except EnrichmentError as e:
        raise http_error(e)

    logger.info("Queued sync job %s — %d rows on column %s", job.id, len(job.row_ids), job.target_column_id)
    return {"mode": "sync", "job_id": job.id, "status": job.status.value, "total_rows": len(job.row_ids)}


@router.get("/jobs")
def get_jobs(table_id: Optional[str] = None, column_id: Optional[str] = None, limit: int = 50,
             db: Session = Depends(get_db)):
    return [job_summary(j) for j in list_jobs(db, table_id=table_id, column_id=column_id, limit=limit)]


@router.get("/jobs/{job_id}")
def get_job_detail(job_id: str, db: Session = Depends(get_db)):
    try:
        return job_summary(get_job(db, job_id))
    except EnrichmentError as e:
        raise http_error(e)


@router.delete("/jobs")
async def cancel_jobs(
    job_id     : Optional[str] = None,
    column_id  : Optional[str] = None,
    cancel_all : bool = Query(False, alias="all"),
    reset_stuck: bool = False,
    db         : Session = Depends(get_db),
):
    if reset_stuck:
        return {"reset_rows": reset_stuck_cells(db, column_id=column_id)}
    try:
        jobs = await cancel_sync_jobs(db, job_id=job_id, column_id=column_id, cancel_all=cancel_all)
    except EnrichmentError as e:
        raise http_error(e)
    return {"cancelled": [j.id for j in jobs], "count": len(jobs)}


@router.post("/jobs/{job_id}/force-complete")
async def force_complete(job_id: str, db: Session = Depends(get_db)):
    try:
        job = await force_complete_job(db, job_id)
    except EnrichmentError as e:
        raise http_error(e)
    return job_summary(job)


@router.get("/progress/{job_id}")
def poll_progress(job_id: str, client_id: str = "default", db: Session = Depends(get_db)):
    progress = ProgressTracker(db).poll(job_id, client_id)
    if progress is None:
        raise HTTPException(status_code=404, detail="No progress recorded for this job (unknown or expired)")
    return progress


# ── Ad-hoc run / retry / extraction ───────────────────────────────────────────

@router.post("/run", status_code=202)
def run_enrichment(
    body            : RunRequest,
    background_tasks: BackgroundTasks,
    db              : Session = Depends(get_db),
    session_factory : sessionmaker = Depends(get_session_factory),
    provider        : ModelProvider = Depends(get_model_provider),
):
    if not body.row_ids:
        raise HTTPException(status_code=400, detail="row_ids must not be empty")
    try:
        get_config(db, body.config_id)
    except EnrichmentError as e:
        raise http_error(e)

    run_id = str(uuid.uuid4())
    ProgressTracker(db).start(run_id, len(body.row_ids))
    background_tasks.add_task(
        run_adhoc, session_factory, provider, run_id,
        body.config_id, body.table_id, body.target_column_id, body.row_ids,
    )
    return {"job_id": run_id, "status": "running", "total_rows": len(body.row_ids)}


@router.post("/retry-cell")
async def retry_single_cell(
    body    : RetryCellRequest,
    db      : Session = Depends(get_db),
    provider: ModelProvider = Depends(get_model_provider),
):
    try:
        outcome = await retry_cell(db, provider, body.row_id, body.column_id)
    except EnrichmentError as e:
        raise http_error(e)
    return {
        "row_id"   : outcome.row_id,
        "column_id": body.column_id,
        "success"  : outcome.success,
        "error"    : outcome.error,
        "cost"     : outcome.cost,
        "cell"     : outcome.cell,
    }


@router.post("/extract-datapoint", status_code=201)
async def extract(body: ExtractDatapointRequest, db: Session = Depends(get_db)):
    try:
        column, filled = await extract_datapoint(db, body.table_id, body.source_column_id, body.key, body.column_name)
    except EnrichmentError as e:
        raise http_error(e)
    return {"column_id": column.id, "column_name": column.name, "rows_filled": filled}


@router.get("/events")
def get_events(
    table_id : Optional[str] = None,
    column_id: Optional[str] = None,
    entity_id: Optional[str] = None,
    limit    : int = 100,
    db       : Session = Depends(get_db),
):
    if not (table_id or column_id or entity_id):
        raise HTTPException(status_code=400, detail="Provide table_id, column_id or entity_id")
    return [serialize_event(e) for e in list_events(db, table_id, column_id, entity_id, limit)]
