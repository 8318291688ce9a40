from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ── Cell status lifecycle ────────────────────────────────────────────────────

class CellStatus(str, Enum):
    PENDING          = "pending"            # queued in a sync job, value untouched
    PROCESSING       = "processing"         # model call in flight
    BATCH_SUBMITTED  = "batch_submitted"    # shipped to a provider batch job
    BATCH_PROCESSING = "batch_processing"   # provider reported work started
    COMPLETE         = "complete"
    ERROR            = "error"


IN_FLIGHT_STATUSES = frozenset({
    CellStatus.PENDING,
    CellStatus.PROCESSING,
    CellStatus.BATCH_SUBMITTED,
    CellStatus.BATCH_PROCESSING,
})
TERMINAL_STATUSES = frozenset({CellStatus.COMPLETE, CellStatus.ERROR})

# Entering PENDING / PROCESSING / BATCH_SUBMITTED is always allowed (resubmit, manual retry).
# ERROR can always be recorded. Only these two are restricted:
_RESTRICTED_SOURCES: dict[CellStatus, frozenset] = {
    CellStatus.COMPLETE:         IN_FLIGHT_STATUSES,
    CellStatus.BATCH_PROCESSING: frozenset({CellStatus.BATCH_SUBMITTED}),
}


def can_transition(current: CellStatus | None, new: CellStatus) -> bool:
    allowed = _RESTRICTED_SOURCES.get(new)
    if allowed is None:
        return True
    return current in allowed


# ── Serialized cell ──────────────────────────────────────────────────────────

class CellMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    input_tokens: int = Field(0, alias="inputTokens")
    output_tokens: int = Field(0, alias="outputTokens")
    time_taken_ms: int = Field(0, alias="timeTakenMs")
    total_cost: float = Field(0.0, alias="totalCost")
    forced_to_finish_early: bool = Field(False, alias="forcedToFinishEarly")


class CellValue(BaseModel):
    """
    What a row stores per column id. Invariants:
      - status == ERROR  <=> error is set
      - in-flight statuses carry no value (PENDING keeps the previous one)
      - batch_job_id tags cells owned by a bulk job
    """
    model_config = ConfigDict(populate_by_name=True)

    value: Any = None
    status: CellStatus | None = None
    error: str | None = None
    enrichment_data: dict[str, Any] | None = Field(None, alias="enrichmentData")
    raw_response: str | None = Field(None, alias="rawResponse")
    metadata: CellMetadata | None = None
    batch_job_id: str | None = Field(None, alias="batchJobId")

    @classmethod
    def from_storage(cls, data: dict | None) -> "CellValue":
        if not data:
            return cls()
        return cls.model_validate(data)

    def to_storage(self) -> dict:
        data = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        data["value"] = self.value
        return data

    @property
    def in_flight(self) -> bool:
        return self.status in IN_FLIGHT_STATUSES

    @property
    def is_empty(self) -> bool:
        return self.value is None or self.value == ""


# ── Transitions ──────────────────────────────────────────────────────────────

def pending(cell: CellValue) -> CellValue:
    return cell.model_copy(update={"status": CellStatus.PENDING, "error": None})


def processing() -> CellValue:
    return CellValue(status=CellStatus.PROCESSING)


def batch_submitted(batch_job_id: str) -> CellValue:
    return CellValue(status=CellStatus.BATCH_SUBMITTED, batch_job_id=batch_job_id)


def complete(
        display_value: Any,
        structured_data: dict | None,
        raw_response: str | None,
        metadata: CellMetadata,
        batch_job_id: str | None = None,
) -> CellValue:
    return CellValue(
        value=display_value,
        status=CellStatus.COMPLETE,
        enrichment_data=structured_data,
        raw_response=raw_response,
        metadata=metadata,
        batch_job_id=batch_job_id,
    )


def failed(message: str, metadata: CellMetadata | None = None, batch_job_id: str | None = None) -> CellValue:
    return CellValue(status=CellStatus.ERROR, error=message, metadata=metadata, batch_job_id=batch_job_id)


def _lookup(structured: dict, name: str) -> Any:
    if name in structured:
        return structured[name]
    lowered = name.lower()
    for key, value in structured.items():
        if key.lower() == lowered:
            return value
    return None


def lockstep(
        target_column_id: str,
        target: CellValue,
        output_columns: dict[str, str],
        existing: dict | None = None,
) -> dict[str, dict]:
    """
    Cells to write for one row: the target cell plus every output column moved
    to the matching state. `output_columns` maps output field name -> column id.
    Returns column id -> serialized cell, ready to merge into the row's cell map.
    """
    existing = existing or {}
    cells = {target_column_id: target.to_storage()}

    for name, column_id in output_columns.items():
        if column_id == target_column_id:
            continue
        if target.status == CellStatus.COMPLETE:
            raw = _lookup(target.enrichment_data or {}, name)
            cell = CellValue(value=None if raw is None else str(raw), status=CellStatus.COMPLETE)
        elif target.status == CellStatus.PENDING:
            cell = pending(CellValue.from_storage(existing.get(column_id)))
        else:
            cell = CellValue(status=target.status, error=target.error, batch_job_id=target.batch_job_id)
        cells[column_id] = cell.to_storage()

    return cells
