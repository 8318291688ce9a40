from sqlalchemy import Column, Index, Integer, String, DateTime, JSON, func
from gridwise.database import Base


class AuditLog(Base):
    """
    Append-only history of enrichment activity on a table.
    Rows are never updated; readers page through them by table or column.
    """
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_table_column", "table_id", "column_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(64), nullable=False)          # ENRICHMENT_JOB_CREATED, BATCH_CHUNK_FAILED, ...
    entity_type = Column(String(32), nullable=False)         # enrichment_job | batch_job | cell
    entity_id = Column(String(128), nullable=False, index=True)
    table_id = Column(String(36), nullable=True)
    column_id = Column(String(36), nullable=True)            # target enrichment column
    actor = Column(String(128), nullable=False, default="system")
    detail = Column(JSON, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
