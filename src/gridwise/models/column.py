# gridwise/models/column.py
import enum
from sqlalchemy import Column, String, Integer, Enum, DateTime
from gridwise.database import Base, utcnow

class ColumnType(str, enum.Enum):
    TEXT       = "text"
    NUMBER     = "number"
    URL        = "url"
    EMAIL      = "email"
    DATE       = "date"
    FORMULA    = "formula"
    ENRICHMENT = "enrichment"

class TableColumn(Base):
    __tablename__ = "columns"

    id                   = Column(String(64), primary_key=True)
    table_id             = Column(String(64), nullable=False, index=True)
    name                 = Column(String(256), nullable=False)
    type                 = Column(Enum(ColumnType), default=ColumnType.TEXT, nullable=False)
    width                = Column(Integer, default=150)
    order                = Column(Integer, default=0, nullable=False)
    enrichment_config_id = Column(String(64), nullable=True)
    created_at           = Column(DateTime, default=utcnow)
