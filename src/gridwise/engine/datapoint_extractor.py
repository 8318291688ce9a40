import logging
from sqlalchemy.orm import Session

from gridwise.dao.column_dao import get_column, create_column
from gridwise.dao.row_dao import get_rows_by_table
from gridwise.dao.row_writer import ChunkedRowWriter
from gridwise.exceptions import InvalidRequestError
from gridwise.models.column import ColumnType, TableColumn
from gridwise.states.cell_state import CellStatus

logger = logging.getLogger(__name__)


def _datapoint(cell: dict, key: str):
    value = (cell.get("enrichmentData") or {}).get(key)
    # Cells written before structured output existed only carry `value`
    if value is None and key == "result":
        value = cell.get("value")
    return value


async def extract_datapoint(
        db: Session,
        table_id: str,
        source_column_id: str,
        key: str,
        column_name: str | None = None,
) -> tuple[TableColumn, int]:
    """
    Copy one key of an enrichment column's structured output into a new text column.
    Returns the new column and the number of rows that received a value.
    """
    source = get_column(db, source_column_id)
    if source.type != ColumnType.ENRICHMENT:
        raise InvalidRequestError(f"Column {source_column_id} is not an enrichment column")

    column = create_column(db, table_id, column_name or key, ColumnType.TEXT)

    updates = []
    filled = 0
    for row in get_rows_by_table(db, table_id):
        data = row.data or {}
        value = _datapoint(data.get(source_column_id) or {}, key)
        cell = {"value": value}
        if value is not None:
            cell["status"] = CellStatus.COMPLETE.value
            filled += 1
        updates.append((row.id, {**data, column.id: cell}))

    await ChunkedRowWriter(db).write(updates)
    logger.info("Extracted '%s' from column %s into %s (%d/%d rows)", key, source_column_id, column.id, filled, len(updates))
    return column, filled
