import logging
from sqlalchemy import update
from sqlalchemy.orm import Session

from gridwise.database import utcnow
from gridwise.models.row import Row
from gridwise.states.cell_state import CellStatus, CellValue, IN_FLIGHT_STATUSES

logger = logging.getLogger(__name__)

# Keeps IN (...) lists under SQLite's bound-parameter limit
ID_QUERY_CHUNK = 900


def get_row(db: Session, row_id: str) -> Row | None:
    return db.query(Row).filter(Row.id == row_id).first()


def get_rows(db: Session, row_ids: list[str]) -> list[Row]:
    rows: list[Row] = []
    for i in range(0, len(row_ids), ID_QUERY_CHUNK):
        chunk = row_ids[i:i + ID_QUERY_CHUNK]
        rows.extend(db.query(Row).filter(Row.id.in_(chunk)).all())
    return rows


def get_rows_by_table(db: Session, table_id: str) -> list[Row]:
    return db.query(Row).filter(Row.table_id == table_id).order_by(Row.created_at, Row.id).all()


def query_by_table_and_column_status(
        db: Session,
        table_id: str,
        column_id: str,
        statuses: list[CellStatus],
) -> list[Row]:
    """
    Full table scan filtered on one column's cell status.
    Only used when a job has no persisted row mappings.
    """
    wanted = {s.value for s in statuses}
    return [
        row for row in db.query(Row).filter(Row.table_id == table_id).all()
        if ((row.data or {}).get(column_id) or {}).get("status") in wanted
    ]


def select_rows_for_enrichment(
        db: Session,
        table_id: str,
        target_column_id: str,
        row_ids: list[str] | None = None,
        only_empty: bool = False,
        include_errors: bool = False,
        force_rerun: bool = False,
) -> list[Row]:
    """
    Row selection for a new run:
      force_rerun    — every requested row, even cells already in flight
      only_empty     — rows whose target cell has no value (errors only with include_errors)
      default        — every requested row whose target cell is not already in flight
    """
    rows = get_rows(db, row_ids) if row_ids else get_rows_by_table(db, table_id)
    if row_ids:
        order = {row_id: i for i, row_id in enumerate(row_ids)}
        rows = sorted((r for r in rows if r.table_id == table_id), key=lambda r: order[r.id])
    if force_rerun:
        return rows

    selected = []
    for row in rows:
        cell = CellValue.from_storage((row.data or {}).get(target_column_id))
        if cell.in_flight:
            continue
        if only_empty:
            if cell.status == CellStatus.ERROR and not include_errors:
                continue
            if not cell.is_empty:
                continue
        selected.append(row)
    return selected


def update_row(db: Session, row_id: str, cell_map: dict[str, dict]) -> Row | None:
    """Replace one row's full cell map."""
    row = get_row(db, row_id)
    if not row:
        logger.warning("Row %s vanished before write — skipping", row_id)
        return None
    row.data = cell_map
    row.updated_at = utcnow()
    db.commit()
    return row


def merge_row_cells(db: Session, row_id: str, cells: dict[str, dict]) -> Row | None:
    """Single read-modify-write of one row's cell map."""
    row = get_row(db, row_id)
    if not row:
        logger.warning("Row %s vanished before write — skipping", row_id)
        return None
    return update_row(db, row_id, {**(row.data or {}), **cells})


def bulk_update_rows(db: Session, updates: list[tuple[str, dict]]) -> None:
    """Replace full cell maps for many rows in one UPDATE-by-primary-key batch."""
    if not updates:
        return
    now = utcnow()
    db.execute(update(Row), [{"id": row_id, "data": data, "updated_at": now} for row_id, data in updates])
    db.commit()


def reset_cells(db: Session, row_ids: list[str], column_ids: list[str], statuses=IN_FLIGHT_STATUSES) -> int:
    """Clear the status of cells stuck in `statuses`; values are kept. Returns rows touched."""
    wanted = {s.value for s in statuses}
    updates = []
    for row in get_rows(db, row_ids):
        data = dict(row.data or {})
        changed = False
        for column_id in column_ids:
            cell = data.get(column_id)
            if cell and cell.get("status") in wanted:
                data[column_id] = {k: v for k, v in cell.items() if k not in ("status", "error", "batchJobId")}
                changed = True
        if changed:
            updates.append((row.id, data))
    bulk_update_rows(db, updates)
    return len(updates)


def count_rows(db: Session, table_id: str) -> int:
    return db.query(Row).filter(Row.table_id == table_id).count()
