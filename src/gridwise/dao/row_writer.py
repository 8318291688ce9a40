"""
ChunkedRowWriter pushes many full-row cell maps to the row store in
fixed-size chunks with a bounded number of chunks in flight.

Each chunk is independent: a failed chunk is logged and counted, the rest
still land. There is no cross-chunk rollback.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from sqlalchemy.orm import Session

from gridwise.config import settings
from gridwise.dao.row_dao import bulk_update_rows, get_rows
from gridwise.states.cell_state import CellValue, lockstep

logger = logging.getLogger(__name__)

RowUpdate = tuple[str, dict]
ChunkApplier = Callable[[list[RowUpdate]], Awaitable[None]]


@dataclass
class WriteResult:
    written: int = 0
    failed: int = 0
    failed_row_ids: list[str] = field(default_factory=list)


def split_chunks(items: list, size: int) -> list[list]:
    if size < 1:
        raise ValueError("chunk size must be >= 1")
    return [items[i:i + size] for i in range(0, len(items), size)]


class ChunkedRowWriter:

    def __init__(
            self,
            db: Session | None = None,
            chunk_size: int | None = None,
            max_in_flight: int | None = None,
            apply_chunk: ChunkApplier | None = None,
    ):
        if db is None and apply_chunk is None:
            raise ValueError("ChunkedRowWriter needs a session or an apply_chunk callable")
        self.db = db
        self.chunk_size = chunk_size or settings.write_chunk_size
        self.max_in_flight = max_in_flight or settings.write_parallel_chunks
        self._apply = apply_chunk or self._apply_sql

    async def _apply_sql(self, chunk: list[RowUpdate]) -> None:
        bulk_update_rows(self.db, chunk)

    async def write(self, updates: list[RowUpdate]) -> WriteResult:
        result = WriteResult()
        if not updates:
            return result

        semaphore = asyncio.Semaphore(self.max_in_flight)
        chunks = split_chunks(updates, self.chunk_size)

        async def _write_chunk(index: int, chunk: list[RowUpdate]) -> None:
            async with semaphore:
                try:
                    await self._apply(chunk)
                    result.written += len(chunk)
                except Exception as exc:
                    logger.error("[Writer] chunk %d/%d (%d rows) failed: %s", index + 1, len(chunks), len(chunk), exc)
                    if self.db is not None:
                        self.db.rollback()
                    result.failed += len(chunk)
                    result.failed_row_ids.extend(row_id for row_id, _ in chunk)

        await asyncio.gather(*(_write_chunk(i, c) for i, c in enumerate(chunks)))
        logger.info("[Writer] wrote %d rows in %d chunks (%d failed)", result.written, len(chunks), result.failed)
        return result


async def write_cell_states(
        db: Session,
        row_ids: list[str],
        target_column_id: str,
        output_columns: dict[str, str],
        make_cell: Callable[[dict], CellValue],
        only_if: Callable[[dict], bool] | None = None,
) -> WriteResult:
    """
    Move the target cell (and its output columns, in lockstep) of many rows into a new state.
    `make_cell` and `only_if` receive the row's current serialized target cell.
    """
    updates = []
    for row in get_rows(db, row_ids):
        data = row.data or {}
        current = data.get(target_column_id) or {}
        if only_if is not None and not only_if(current):
            continue
        cells = lockstep(target_column_id, make_cell(current), output_columns, data)
        updates.append((row.id, {**data, **cells}))
    return await ChunkedRowWriter(db).write(updates)
