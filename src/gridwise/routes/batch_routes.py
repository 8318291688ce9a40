"""
Bulk enrichment routes.
POST /enrichment/batch                          — submit rows to the provider batch API
GET  /enrichment/batch/status                   — jobs by job / column / table / group (refreshes active ones)
POST /enrichment/batch/cancel                   — cancel active bulk jobs for a column (or one job)
POST /enrichment/batch/{job_id}/mark-error      — admin: fail a job and sweep its cells
POST /enrichment/batch/{job_id}/force-sync      — admin: run one reconciliation step now
POST /enrichment/batch/{job_id}/process-results — admin: merge results from a known output file
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from gridwise.database import get_db
from gridwise.dao.batch_job_dao import batch_job_summary, get_batch_job, group_summary, list_batch_jobs
from gridwise.engine.bulk_orchestrator import BulkSubmission, submit_bulk
from gridwise.engine.job_reconciler import (
    cancel_bulk_jobs, force_sync_job, mark_job_error, process_results_manually, refresh_statuses,
)
from gridwise.exceptions import EnrichmentError
from gridwise.providers.batch_provider import BatchProvider, get_batch_provider
from gridwise.routes.errors import http_error

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/enrichment/batch", tags=["Bulk Enrichment"])


# ── Pydantic schemas ──────────────────────────────────────────────────────────

class BulkRequest(BaseModel):
    config_id: str
    table_id: str
    target_column_id: str
    row_ids: Optional[list[str]] = None
    only_empty: bool = False
    include_errors: bool = False
    force_rerun: bool = False

class CancelRequest(BaseModel):
    column_id: Optional[str] = None
    job_id: Optional[str] = None

class MarkErrorRequest(BaseModel):
    message: str = "Marked as failed by admin"

class ProcessResultsRequest(BaseModel):
    output_file_id: str


# ── Serializer helper ─────────────────────────────────────────────────────────

def serialize_submission(submission: BulkSubmission) -> dict:
    return {
        "batch_group_id" : submission.batch_group_id,
        "total_rows"     : submission.total_rows,
        "submitted_rows" : submission.submitted_rows,
        "failed_rows"    : submission.failed_rows,
        "created_columns": submission.created_columns,
        "jobs"           : [
            {
                "job_id"           : j.job_id,
                "batch_number"     : j.batch_number,
                "row_count"        : j.row_count,
                "status"           : j.status,
                "external_batch_id": j.external_batch_id,
                "error"            : j.error,
            }
            for j in submission.jobs
        ],
    }


# ── Routes ────────────────────────────────────────────────────────────────────

@router.post("", status_code=202)
async def submit(
    body    : BulkRequest,
    db      : Session = Depends(get_db),
    provider: BatchProvider = Depends(get_batch_provider),
):
    try:
        submission = await submit_bulk(
            db, provider, body.config_id, body.table_id, body.target_column_id,
            row_ids=body.row_ids,
            only_empty=body.only_empty,
            include_errors=body.include_errors,
            force_rerun=body.force_rerun,
        )
    except EnrichmentError as e:
        raise http_error(e)
    return serialize_submission(submission)


@router.get("/status")
async def status(
    job_id   : Optional[str] = None,
    column_id: Optional[str] = None,
    table_id : Optional[str] = None,
    group_id : Optional[str] = None,
    refresh  : bool = True,
    db       : Session = Depends(get_db),
    provider : BatchProvider = Depends(get_batch_provider),
):
    if job_id:
        try:
            jobs = [get_batch_job(db, job_id)]
        except EnrichmentError as e:
            raise http_error(e)
    elif column_id or table_id or group_id:
        jobs = list_batch_jobs(db, table_id=table_id, column_id=column_id, group_id=group_id)
    else:
        raise HTTPException(status_code=400, detail="Provide job_id, column_id, table_id or group_id")

    if refresh:
        await refresh_statuses(db, provider, jobs)

    if job_id:
        return batch_job_summary(jobs[0])
    if group_id:
        return {"group_id": group_id, **group_summary(jobs), "jobs": [batch_job_summary(j) for j in jobs]}
    return [batch_job_summary(j) for j in jobs]


@router.post("/cancel")
async def cancel(
    body    : CancelRequest,
    db      : Session = Depends(get_db),
    provider: BatchProvider = Depends(get_batch_provider),
):
    try:
        jobs = await cancel_bulk_jobs(db, provider, column_id=body.column_id, job_id=body.job_id)
    except EnrichmentError as e:
        raise http_error(e)
    return {"cancelled": [j.id for j in jobs], "count": len(jobs)}


@router.post("/{job_id}/mark-error")
async def mark_error(job_id: str, body: MarkErrorRequest, db: Session = Depends(get_db)):
    try:
        job = await mark_job_error(db, job_id, body.message)
    except EnrichmentError as e:
        raise http_error(e)
    return batch_job_summary(job)


@router.post("/{job_id}/force-sync")
async def force_sync(
    job_id  : str,
    db      : Session = Depends(get_db),
    provider: BatchProvider = Depends(get_batch_provider),
):
    try:
        return await force_sync_job(db, provider, job_id)
    except EnrichmentError as e:
        raise http_error(e)


@router.post("/{job_id}/process-results")
async def process_results(
    job_id  : str,
    body    : ProcessResultsRequest,
    db      : Session = Depends(get_db),
    provider: BatchProvider = Depends(get_batch_provider),
):
    try:
        job = await process_results_manually(db, provider, job_id, body.output_file_id)
    except EnrichmentError as e:
        raise http_error(e)
    return batch_job_summary(job)
