# gridwise/models/progress_entry.py
from sqlalchemy import Column, String, JSON, DateTime
from gridwise.database import Base


class ProgressEntry(Base):
    """Shared key/value store with expiry backing progress tracking."""
    __tablename__ = "progress_entries"

    key        = Column(String(256), primary_key=True)
    value      = Column(JSON, nullable=True)
    expires_at = Column(DateTime, nullable=False, index=True)
