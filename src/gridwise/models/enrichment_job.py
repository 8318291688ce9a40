# gridwise/models/enrichment_job.py
import enum
from sqlalchemy import Column, String, Integer, Float, Text, DateTime, Enum, JSON
from gridwise.database import Base, utcnow

class EnrichmentJobStatus(str, enum.Enum):
    PENDING   = "pending"
    RUNNING   = "running"
    COMPLETE  = "complete"
    CANCELLED = "cancelled"
    ERROR     = "error"

ACTIVE_JOB_STATUSES = (EnrichmentJobStatus.PENDING, EnrichmentJobStatus.RUNNING)

class EnrichmentJob(Base):
    """Persistent sync job. The background driver advances `current_index` through `row_ids`."""
    __tablename__ = "enrichment_jobs"

    id               = Column(String(64), primary_key=True)
    table_id         = Column(String(64), nullable=False, index=True)
    config_id        = Column(String(64), nullable=False)
    target_column_id = Column(String(64), nullable=False, index=True)
    row_ids          = Column(JSON, nullable=False, default=list)
    output_columns   = Column(JSON, nullable=False, default=dict)     # output field name -> column id, fixed at creation
    current_index    = Column(Integer, default=0, nullable=False)
    processed_count  = Column(Integer, default=0, nullable=False)
    error_count      = Column(Integer, default=0, nullable=False)
    total_cost       = Column(Float, default=0.0, nullable=False)
    status           = Column(Enum(EnrichmentJobStatus), default=EnrichmentJobStatus.PENDING, nullable=False)
    error            = Column(Text, nullable=True)
    created_at       = Column(DateTime, default=utcnow)
    updated_at       = Column(DateTime, default=utcnow)
    completed_at     = Column(DateTime, nullable=True)
