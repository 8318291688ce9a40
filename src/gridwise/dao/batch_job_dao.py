import logging
from sqlalchemy.orm import Session

from gridwise.database import generate_id, utcnow
from gridwise.models.batch_job import (
    BatchEnrichmentJob, BatchJobStatus,
    ACTIVE_BATCH_STATUSES, POLLABLE_BATCH_STATUSES, TERMINAL_BATCH_STATUSES,
)
from gridwise.exceptions import JobNotFoundError

logger = logging.getLogger(__name__)


def get_batch_job(db: Session, job_id: str) -> BatchEnrichmentJob:
    job = db.query(BatchEnrichmentJob).filter(BatchEnrichmentJob.id == job_id).first()
    if not job:
        raise JobNotFoundError(f"Batch job {job_id} not found")
    return job


def list_batch_jobs(
        db: Session,
        table_id: str | None = None,
        column_id: str | None = None,
        group_id: str | None = None,
        limit: int = 100,
) -> list[BatchEnrichmentJob]:
    q = db.query(BatchEnrichmentJob)
    if table_id:
        q = q.filter(BatchEnrichmentJob.table_id == table_id)
    if column_id:
        q = q.filter(BatchEnrichmentJob.target_column_id == column_id)
    if group_id:
        q = q.filter(BatchEnrichmentJob.batch_group_id == group_id)
    return q.order_by(BatchEnrichmentJob.created_at.desc(), BatchEnrichmentJob.batch_number).limit(limit).all()


def get_pollable_jobs(db: Session) -> list[BatchEnrichmentJob]:
    return (
        db.query(BatchEnrichmentJob)
        .filter(BatchEnrichmentJob.status.in_(POLLABLE_BATCH_STATUSES))
        .order_by(BatchEnrichmentJob.created_at)
        .all()
    )


def get_active_batch_jobs(db: Session, column_id: str) -> list[BatchEnrichmentJob]:
    return (
        db.query(BatchEnrichmentJob)
        .filter(
            BatchEnrichmentJob.target_column_id == column_id,
            BatchEnrichmentJob.status.in_(ACTIVE_BATCH_STATUSES),
        )
        .all()
    )


def create_batch_job(
        db: Session,
        table_id: str,
        config_id: str,
        target_column_id: str,
        row_mappings: dict[str, str],
        batch_group_id: str | None = None,
        batch_number: int | None = None,
        total_batches: int | None = None,
) -> BatchEnrichmentJob:
    job = BatchEnrichmentJob(
        id=generate_id(),
        table_id=table_id,
        config_id=config_id,
        target_column_id=target_column_id,
        status=BatchJobStatus.UPLOADING,
        external_status="pending_upload",
        row_mappings=row_mappings,
        total_rows=len(row_mappings),
        batch_group_id=batch_group_id,
        batch_number=batch_number,
        total_batches=total_batches,
    )
    db.add(job)
    db.commit()
    return job


def update_batch_job(db: Session, job: BatchEnrichmentJob, **fields) -> BatchEnrichmentJob:
    for key, value in fields.items():
        setattr(job, key, value)
    job.updated_at = utcnow()
    if job.status in TERMINAL_BATCH_STATUSES and job.completed_at is None:
        job.completed_at = utcnow()
    db.commit()
    return job


def batch_job_summary(job: BatchEnrichmentJob) -> dict:
    return {
        "id"               : job.id,
        "table_id"         : job.table_id,
        "config_id"        : job.config_id,
        "target_column_id" : job.target_column_id,
        "status"           : job.status.value,
        "external_batch_id": job.external_batch_id,
        "external_status"  : job.external_status,
        "total_rows"       : job.total_rows,
        "processed_count"  : job.processed_count,
        "success_count"    : job.success_count,
        "error_count"      : job.error_count,
        "total_cost"       : round(job.total_cost or 0.0, 6),
        "batch_group_id"   : job.batch_group_id,
        "batch_number"     : job.batch_number,
        "total_batches"    : job.total_batches,
        "last_error"       : job.last_error,
        "created_at"       : job.created_at.isoformat() if job.created_at else None,
        "submitted_at"     : job.submitted_at.isoformat() if job.submitted_at else None,
        "completed_at"     : job.completed_at.isoformat() if job.completed_at else None,
    }


def group_summary(jobs: list[BatchEnrichmentJob]) -> dict:
    """Aggregate counters across the jobs of one batch group."""
    statuses = {j.status for j in jobs}
    if statuses == {BatchJobStatus.COMPLETE}:
        overall = BatchJobStatus.COMPLETE.value
    elif statuses == {BatchJobStatus.ERROR}:
        overall = BatchJobStatus.ERROR.value
    elif statuses == {BatchJobStatus.CANCELLED}:
        overall = BatchJobStatus.CANCELLED.value
    else:
        overall = BatchJobStatus.PROCESSING.value
    return {
        "status"         : overall,
        "total_batches"  : len(jobs),
        "total_rows"     : sum(j.total_rows for j in jobs),
        "processed_count": sum(j.processed_count for j in jobs),
        "success_count"  : sum(j.success_count for j in jobs),
        "error_count"    : sum(j.error_count for j in jobs),
        "total_cost"     : round(sum(j.total_cost or 0.0 for j in jobs), 6),
    }
