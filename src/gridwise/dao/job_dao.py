import logging
from sqlalchemy.orm import Session

from gridwise.database import generate_id, utcnow
from gridwise.models.enrichment_job import EnrichmentJob, EnrichmentJobStatus, ACTIVE_JOB_STATUSES
from gridwise.exceptions import JobNotFoundError

logger = logging.getLogger(__name__)


def get_job(db: Session, job_id: str) -> EnrichmentJob:
    job = db.query(EnrichmentJob).filter(EnrichmentJob.id == job_id).first()
    if not job:
        raise JobNotFoundError(f"Enrichment job {job_id} not found")
    return job


def get_active_jobs(db: Session, column_id: str | None = None) -> list[EnrichmentJob]:
    q = db.query(EnrichmentJob).filter(EnrichmentJob.status.in_(ACTIVE_JOB_STATUSES))
    if column_id:
        q = q.filter(EnrichmentJob.target_column_id == column_id)
    return q.order_by(EnrichmentJob.created_at).all()


def list_jobs(db: Session, table_id: str | None = None, column_id: str | None = None, limit: int = 50) -> list[EnrichmentJob]:
    q = db.query(EnrichmentJob)
    if table_id:
        q = q.filter(EnrichmentJob.table_id == table_id)
    if column_id:
        q = q.filter(EnrichmentJob.target_column_id == column_id)
    return q.order_by(EnrichmentJob.created_at.desc()).limit(limit).all()


def create_job(
        db: Session,
        table_id: str,
        config_id: str,
        target_column_id: str,
        row_ids: list[str],
        output_columns: dict[str, str] | None = None,
) -> EnrichmentJob:
    job = EnrichmentJob(
        id=generate_id(),
        table_id=table_id,
        config_id=config_id,
        target_column_id=target_column_id,
        row_ids=list(row_ids),
        output_columns=dict(output_columns or {}),
        status=EnrichmentJobStatus.PENDING,
    )
    db.add(job)
    db.commit()
    return job


def set_job_status(db: Session, job: EnrichmentJob, status: EnrichmentJobStatus, error: str | None = None) -> EnrichmentJob:
    job.status = status
    job.updated_at = utcnow()
    if error is not None:
        job.error = error
    if status in (EnrichmentJobStatus.COMPLETE, EnrichmentJobStatus.CANCELLED, EnrichmentJobStatus.ERROR):
        job.completed_at = utcnow()
    db.commit()
    return job


def job_summary(job: EnrichmentJob) -> dict:
    return {
        "id"              : job.id,
        "table_id"        : job.table_id,
        "config_id"       : job.config_id,
        "target_column_id": job.target_column_id,
        "status"          : job.status.value,
        "total_rows"      : len(job.row_ids or []),
        "current_index"   : job.current_index,
        "processed_count" : job.processed_count,
        "error_count"     : job.error_count,
        "total_cost"      : round(job.total_cost or 0.0, 6),
        "error"           : job.error,
        "created_at"      : job.created_at.isoformat() if job.created_at else None,
        "updated_at"      : job.updated_at.isoformat() if job.updated_at else None,
        "completed_at"    : job.completed_at.isoformat() if job.completed_at else None,
    }
