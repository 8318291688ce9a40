from sqlalchemy.orm import Session

from gridwise.models.enrichment_config import EnrichmentConfig
from gridwise.exceptions import ConfigNotFoundError


def get_config(db: Session, config_id: str) -> EnrichmentConfig:
    config = db.query(EnrichmentConfig).filter(EnrichmentConfig.id == config_id).first()
    if not config:
        raise ConfigNotFoundError(f"Enrichment config {config_id} not found")
    return config
