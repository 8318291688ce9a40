# gridwise/models/row.py
from sqlalchemy import Column, String, JSON, DateTime
from gridwise.database import Base, utcnow


class Row(Base):
    """
    One table row. `data` maps column id -> serialized cell value
    ({"value", "status", "error", "enrichmentData", "rawResponse", "metadata", "batchJobId"}).
    The whole map is replaced on every write.
    """
    __tablename__ = "rows"

    id         = Column(String(64), primary_key=True)
    table_id   = Column(String(64), nullable=False, index=True)
    data       = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
