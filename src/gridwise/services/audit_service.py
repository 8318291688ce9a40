import logging
from sqlalchemy.orm import Session
from gridwise.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


def log_event(
        db: Session,
        event_type: str,
        entity_type: str,
        entity_id: str,
        table_id: str | None = None,
        column_id: str | None = None,
        detail: dict | None = None,
        actor: str = "system",
) -> AuditLog:
    """
    Record one enrichment lifecycle event and commit it.

    Usage:
        log_event(db, "BATCH_JOB_COMPLETED", "batch_job", job.id,
                  table_id=job.table_id, column_id=job.target_column_id,
                  detail={"success": 120, "errors": 3})
    """
    entry = AuditLog(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        table_id=table_id,
        column_id=column_id,
        actor=actor,
        detail=detail,
    )
    db.add(entry)
    db.commit()
    logger.info("AUDIT [%s] %s/%s column=%s", event_type, entity_type, entity_id, column_id)
    return entry


def list_events(
        db: Session,
        table_id: str | None = None,
        column_id: str | None = None,
        entity_id: str | None = None,
        limit: int = 100,
) -> list[AuditLog]:
    q = db.query(AuditLog)
    if table_id:
        q = q.filter(AuditLog.table_id == table_id)
    if column_id:
        q = q.filter(AuditLog.column_id == column_id)
    if entity_id:
        q = q.filter(AuditLog.entity_id == entity_id)
    return q.order_by(AuditLog.id.desc()).limit(limit).all()


def serialize_event(e: AuditLog) -> dict:
    return {
        "id"         : e.id,
        "event_type" : e.event_type,
        "entity_type": e.entity_type,
        "entity_id"  : e.entity_id,
        "table_id"   : e.table_id,
        "column_id"  : e.column_id,
        "actor"      : e.actor,
        "detail"     : e.detail,
        "created_at" : e.created_at.isoformat() if e.created_at else None,
    }
