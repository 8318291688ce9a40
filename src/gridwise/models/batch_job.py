# gridwise/models/batch_job.py
import enum
from sqlalchemy import Column, String, Integer, Float, Text, DateTime, Enum, JSON
from gridwise.database import Base, utcnow

class BatchJobStatus(str, enum.Enum):
    UPLOADING   = "uploading"
    SUBMITTED   = "submitted"
    PROCESSING  = "processing"
    DOWNLOADING = "downloading"
    COMPLETE    = "complete"
    ERROR       = "error"
    CANCELLED   = "cancelled"

# Jobs the reconciler polls. UPLOADING has no external id yet.
POLLABLE_BATCH_STATUSES = (BatchJobStatus.SUBMITTED, BatchJobStatus.PROCESSING, BatchJobStatus.DOWNLOADING)
ACTIVE_BATCH_STATUSES   = (BatchJobStatus.UPLOADING, *POLLABLE_BATCH_STATUSES)
TERMINAL_BATCH_STATUSES = (BatchJobStatus.COMPLETE, BatchJobStatus.ERROR, BatchJobStatus.CANCELLED)

class BatchEnrichmentJob(Base):
    """
    One provider batch job. Large submissions are split across several of these
    sharing a `batch_group_id`. `row_mappings` maps custom_id -> row id so results
    and failure sweeps never need a table scan.
    """
    __tablename__ = "batch_enrichment_jobs"

    id                  = Column(String(64), primary_key=True)
    table_id            = Column(String(64), nullable=False, index=True)
    config_id           = Column(String(64), nullable=False)
    target_column_id    = Column(String(64), nullable=False, index=True)
    status              = Column(Enum(BatchJobStatus), default=BatchJobStatus.UPLOADING, nullable=False)

    external_batch_id   = Column(String(128), nullable=True)
    external_status     = Column(String(64), nullable=True)   # raw provider status
    input_file_id       = Column(String(128), nullable=True)
    output_file_id      = Column(String(128), nullable=True)
    error_file_id       = Column(String(128), nullable=True)
    row_mappings        = Column(JSON, nullable=False, default=dict)

    total_rows          = Column(Integer, default=0, nullable=False)
    processed_count     = Column(Integer, default=0, nullable=False)
    success_count       = Column(Integer, default=0, nullable=False)
    error_count         = Column(Integer, default=0, nullable=False)
    total_input_tokens  = Column(Integer, default=0, nullable=False)
    total_output_tokens = Column(Integer, default=0, nullable=False)
    total_cost          = Column(Float, default=0.0, nullable=False)

    batch_group_id      = Column(String(64), nullable=True, index=True)
    batch_number        = Column(Integer, nullable=True)     # 1-based position within the group
    total_batches       = Column(Integer, nullable=True)

    last_error          = Column(Text, nullable=True)
    created_at          = Column(DateTime, default=utcnow)
    updated_at          = Column(DateTime, default=utcnow)
    submitted_at        = Column(DateTime, nullable=True)
    completed_at        = Column(DateTime, nullable=True)
