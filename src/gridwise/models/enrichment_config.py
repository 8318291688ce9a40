# gridwise/models/enrichment_config.py
from sqlalchemy import Column, String, Text, Float, JSON, DateTime
from gridwise.database import Base, utcnow


class EnrichmentConfig(Base):
    __tablename__ = "enrichment_configs"

    id             = Column(String(64), primary_key=True)
    name           = Column(String(256), nullable=False)
    model          = Column(String(128), nullable=False)
    prompt         = Column(Text, nullable=False)                # template with {{Column Name}} tokens
    input_columns  = Column(JSON, nullable=False, default=list)  # column ids, informational
    output_columns = Column(JSON, nullable=True)                 # ordered output field names
    output_format  = Column(String(32), default="text")         # text | json
    temperature    = Column(Float, default=0.7)
    created_at     = Column(DateTime, default=utcnow)
