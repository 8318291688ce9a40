import logging
from sqlalchemy import func
from sqlalchemy.orm import Session

from gridwise.database import generate_id
from gridwise.models.column import TableColumn, ColumnType
from gridwise.exceptions import ColumnNotFoundError

logger = logging.getLogger(__name__)


def get_columns(db: Session, table_id: str) -> list[TableColumn]:
    return db.query(TableColumn).filter(TableColumn.table_id == table_id).order_by(TableColumn.order).all()


def get_column(db: Session, column_id: str) -> TableColumn:
    column = db.query(TableColumn).filter(TableColumn.id == column_id).first()
    if not column:
        raise ColumnNotFoundError(f"Column {column_id} not found")
    return column


def create_column(
        db: Session,
        table_id: str,
        name: str,
        column_type: ColumnType = ColumnType.TEXT,
) -> TableColumn:
    max_order = db.query(func.max(TableColumn.order)).filter(TableColumn.table_id == table_id).scalar()
    column = TableColumn(
        id=generate_id(),
        table_id=table_id,
        name=name,
        type=column_type,
        order=(max_order or 0) + 1,
    )
    db.add(column)
    db.commit()
    logger.info("Created column '%s' (%s) on table %s", name, column.id, table_id)
    return column


def resolve_output_columns(
        db: Session,
        table_id: str,
        output_names: list[str] | None,
        create_missing: bool = False,
) -> dict[str, str]:
    """
    Output field name -> column id, matched case-insensitively.
    Missing columns are skipped, or created as text columns when `create_missing`.
    """
    if not output_names:
        return {}
    by_name = {c.name.strip().lower(): c.id for c in get_columns(db, table_id)}

    resolved: dict[str, str] = {}
    for name in output_names:
        column_id = by_name.get(name.strip().lower())
        if column_id is None and create_missing:
            column_id = create_column(db, table_id, name).id
            by_name[name.strip().lower()] = column_id
        if column_id is not None:
            resolved[name] = column_id
    return resolved
