"""Tests for gridwise.states.cell_state."""
import pytest

from gridwise.states import cell_state
from gridwise.states.cell_state import CellMetadata, CellStatus, CellValue, can_transition, lockstep

OUTPUTS = {"capital": "col-capital", "population": "col-pop"}


def test_storage_round_trip_uses_camel_case_keys():
    cell = cell_state.complete("Berlin", {"capital": "Berlin"}, '{"capital": "Berlin"}',
                               CellMetadata(input_tokens=10, output_tokens=5, total_cost=0.001))
    stored = cell.to_storage()

    assert stored["value"] == "Berlin"
    assert stored["status"] == "complete"
    assert stored["enrichmentData"] == {"capital": "Berlin"}
    assert stored["rawResponse"] == '{"capital": "Berlin"}'
    assert stored["metadata"]["inputTokens"] == 10
    assert "error" not in stored
    assert CellValue.from_storage(stored) == cell


def test_processing_clears_value_and_error():
    stored = cell_state.processing().to_storage()
    assert stored == {"value": None, "status": "processing"}


def test_error_sets_message_and_clears_value():
    cell = cell_state.failed("boom")
    assert cell.status == CellStatus.ERROR
    assert cell.error == "boom"
    assert cell.value is None


def test_pending_keeps_previous_value():
    previous = CellValue(value="old", status=CellStatus.COMPLETE)
    cell = cell_state.pending(previous)
    assert cell.status == CellStatus.PENDING
    assert cell.value == "old"


def test_batch_submitted_tags_job():
    cell = cell_state.batch_submitted("job-1")
    assert cell.to_storage() == {"value": None, "status": "batch_submitted", "batchJobId": "job-1"}


@pytest.mark.parametrize("current, new, allowed", [
    (None, CellStatus.PROCESSING, True),
    (CellStatus.COMPLETE, CellStatus.PROCESSING, True),
    (CellStatus.ERROR, CellStatus.BATCH_SUBMITTED, True),
    (CellStatus.PROCESSING, CellStatus.COMPLETE, True),
    (CellStatus.BATCH_PROCESSING, CellStatus.COMPLETE, True),
    (None, CellStatus.COMPLETE, False),
    (CellStatus.COMPLETE, CellStatus.COMPLETE, False),
    (CellStatus.BATCH_SUBMITTED, CellStatus.BATCH_PROCESSING, True),
    (CellStatus.PROCESSING, CellStatus.BATCH_PROCESSING, False),
    (None, CellStatus.ERROR, True),
])
def test_can_transition(current, new, allowed):
    assert can_transition(current, new) is allowed


def test_lockstep_complete_distributes_matched_values():
    target = cell_state.complete("2 datapoints", {"Capital": "Berlin", "population": 3_700_000}, "{}", CellMetadata())
    cells = lockstep("col-enrich", target, OUTPUTS)

    assert cells["col-enrich"]["status"] == "complete"
    assert cells["col-capital"] == {"value": "Berlin", "status": "complete"}
    assert cells["col-pop"] == {"value": "3700000", "status": "complete"}


def test_lockstep_complete_with_missing_key_writes_null():
    target = cell_state.complete("Berlin", {"capital": "Berlin"}, "{}", CellMetadata())
    cells = lockstep("col-enrich", target, OUTPUTS)
    assert cells["col-pop"] == {"value": None, "status": "complete"}


def test_lockstep_error_mirrors_message():
    cells = lockstep("col-enrich", cell_state.failed("timeout"), OUTPUTS)
    for column_id in OUTPUTS.values():
        assert cells[column_id] == {"value": None, "status": "error", "error": "timeout"}


def test_lockstep_batch_submitted_tags_outputs():
    cells = lockstep("col-enrich", cell_state.batch_submitted("job-9"), OUTPUTS)
    assert cells["col-capital"]["batchJobId"] == "job-9"
    assert cells["col-capital"]["status"] == "batch_submitted"


def test_lockstep_pending_keeps_existing_output_values():
    existing = {"col-capital": {"value": "Bonn", "status": "complete"}}
    cells = lockstep("col-enrich", cell_state.pending(CellValue()), OUTPUTS, existing)
    assert cells["col-capital"] == {"value": "Bonn", "status": "pending"}
    assert cells["col-pop"] == {"value": None, "status": "pending"}


def test_lockstep_skips_output_that_is_the_target():
    cells = lockstep("col-capital", cell_state.processing(), {"capital": "col-capital"})
    assert cells == {"col-capital": {"value": None, "status": "processing"}}
