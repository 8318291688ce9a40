"""
Drives bulk jobs to a terminal state by polling the batch provider.

Provider status          -> local status
    validating / in_progress / finalizing -> processing (counters mirrored)
    completed (with files)                -> downloading -> complete (results merged)
    completed (no files)                  -> error
    failed / expired                      -> error
    cancelled / cancelling                -> cancelled
Every failure path sweeps the job's still-pending cells into error, so a
terminal job never leaves cells in batch_submitted/batch_processing.

A sweep only polls non-terminal jobs, so re-running it is a no-op for
anything already reconciled.
"""
import logging

from sqlalchemy.orm import Session

from gridwise.config import BATCH_PRICING
from gridwise.dao.batch_job_dao import (
    get_batch_job, get_pollable_jobs, get_active_batch_jobs, update_batch_job,
)
from gridwise.dao.column_dao import resolve_output_columns
from gridwise.dao.config_dao import get_config
from gridwise.dao.row_dao import get_rows, query_by_table_and_column_status
from gridwise.dao.row_writer import ChunkedRowWriter, write_cell_states
from gridwise.exceptions import ConfigNotFoundError, InvalidRequestError
from gridwise.models.batch_job import (
    BatchEnrichmentJob, BatchJobStatus, ACTIVE_BATCH_STATUSES, TERMINAL_BATCH_STATUSES,
)
from gridwise.providers.batch_provider import (
    BatchProvider, BatchStatus, BatchResultLine, parse_batch_results, row_id_from_custom_id,
)
from gridwise.providers.model_provider import calculate_cost
from gridwise.services.audit_service import log_event
from gridwise.services.response_parser import parse_response
from gridwise.states import cell_state
from gridwise.states.cell_state import CellMetadata, CellStatus, CellValue

logger = logging.getLogger(__name__)

PROVIDER_PROCESSING_STATES = {"validating", "in_progress", "finalizing"}
PROVIDER_CANCELLED_STATES = {"cancelled", "cancelling"}
BATCH_CELL_STATUSES = [CellStatus.BATCH_SUBMITTED, CellStatus.BATCH_PROCESSING]

NO_OUTPUT_MESSAGE = "Batch completed but no output file available"
FAILED_MESSAGE = "Batch job failed"
EXPIRED_MESSAGE = "Batch job expired (exceeded 24 hour window)"
CANCELLED_MESSAGE = "Batch job was cancelled"
USER_CANCELLED_MESSAGE = "Cancelled by user"
MISSING_RESULT_MESSAGE = "Row was not returned by the batch provider (exceeded batch row limit)"


# ── Cell ownership ───────────────────────────────────────────────────────────

def _output_columns(db: Session, job: BatchEnrichmentJob) -> dict[str, str]:
    try:
        config = get_config(db, job.config_id)
    except ConfigNotFoundError:
        logger.warning("[Reconciler] config %s gone — updating target column only for job %s", job.config_id, job.id)
        return {}
    return resolve_output_columns(db, job.table_id, config.output_columns)


def _job_row_ids(db: Session, job: BatchEnrichmentJob) -> list[str]:
    if job.row_mappings:
        return list(job.row_mappings.values())
    # Jobs without a persisted mapping: find cells still tagged for this column
    rows = query_by_table_and_column_status(db, job.table_id, job.target_column_id, BATCH_CELL_STATUSES)
    return [r.id for r in rows]


def _awaiting_job(job_id: str):
    wanted = {s.value for s in BATCH_CELL_STATUSES}

    def _check(current: dict) -> bool:
        return current.get("status") in wanted and current.get("batchJobId") in (None, job_id)
    return _check


def _accepts_result(current: CellValue, job_id: str, manual: bool = False) -> bool:
    """
    A cell takes a batch result unless someone else (retry, newer job) now owns it.
    Manual processing also overwrites cells this job already closed, e.g. after mark_job_error.
    """
    if current.batch_job_id not in (None, job_id) or current.status == CellStatus.PROCESSING:
        return False
    if manual and current.batch_job_id == job_id:
        return True
    return cell_state.can_transition(current.status, CellStatus.COMPLETE)


async def sweep_job_cells(db: Session, job: BatchEnrichmentJob, message: str) -> int:
    """Error out every cell still waiting on this job. Returns rows written."""
    job_id = job.id
    result = await write_cell_states(
        db, _job_row_ids(db, job), job.target_column_id, _output_columns(db, job),
        make_cell=lambda _: cell_state.failed(message, batch_job_id=job_id),
        only_if=_awaiting_job(job_id),
    )
    if result.written:
        logger.info("[Reconciler] swept %d cell(s) of job %s: %s", result.written, job_id, message)
    return result.written


# ── Result processing ────────────────────────────────────────────────────────

def _result_cell(line: BatchResultLine | None, job_id: str) -> tuple[CellValue, float]:
    if line is None:
        return cell_state.failed(MISSING_RESULT_MESSAGE, batch_job_id=job_id), 0.0
    if line.error:
        return cell_state.failed(line.error, batch_job_id=job_id), 0.0

    cost = calculate_cost(line.input_tokens, line.output_tokens, BATCH_PRICING)
    parsed = parse_response(line.content)
    metadata = CellMetadata(
        input_tokens=line.input_tokens,
        output_tokens=line.output_tokens,
        time_taken_ms=0,
        total_cost=cost,
    )
    return cell_state.complete(parsed.display_value, parsed.structured_data, line.content, metadata, job_id), cost


async def process_results(
        db: Session,
        provider: BatchProvider,
        job: BatchEnrichmentJob,
        manual: bool = False,
) -> BatchEnrichmentJob:
    """Download output/error files, merge every line into its row, close the job."""
    lines: list[BatchResultLine] = []
    for file_id in (job.output_file_id, job.error_file_id):
        if file_id:
            lines.extend(parse_batch_results(await provider.download_results(file_id)))

    mappings = job.row_mappings or {}
    by_row: dict[str, BatchResultLine] = {}
    for line in lines:
        by_row[mappings.get(line.custom_id) or row_id_from_custom_id(line.custom_id)] = line

    expected = list(mappings.values()) or list(by_row)
    output_columns = _output_columns(db, job)

    updates = []
    success = errors = skipped = 0
    input_tokens = output_tokens = 0
    total_cost = 0.0
    for row in get_rows(db, expected):
        data = row.data or {}
        current = CellValue.from_storage(data.get(job.target_column_id))
        if not _accepts_result(current, job.id, manual):
            skipped += 1
            continue

        line = by_row.get(row.id)
        cell, cost = _result_cell(line, job.id)
        if cell.status == CellStatus.COMPLETE:
            success += 1
            input_tokens += line.input_tokens
            output_tokens += line.output_tokens
            total_cost += cost
        else:
            errors += 1
        updates.append((row.id, {**data, **cell_state.lockstep(job.target_column_id, cell, output_columns, data)}))

    await ChunkedRowWriter(db).write(updates)
    if skipped:
        logger.info("[Reconciler] job %s: %d row(s) now owned elsewhere, result dropped", job.id, skipped)
    if not mappings:
        errors += await sweep_job_cells(db, job, MISSING_RESULT_MESSAGE)

    update_batch_job(
        db, job,
        status=BatchJobStatus.COMPLETE,
        processed_count=success + errors,
        success_count=success,
        error_count=errors,
        total_input_tokens=input_tokens,
        total_output_tokens=output_tokens,
        total_cost=total_cost,
    )
    log_event(db, "BATCH_JOB_COMPLETED", "batch_job", job.id, job.table_id, job.target_column_id, detail={
        "success": success, "errors": errors, "cost": round(total_cost, 6),
    })

    for file_id in (job.input_file_id, job.output_file_id, job.error_file_id):
        await provider.delete_file(file_id)
    return job


# ── Status mapping ───────────────────────────────────────────────────────────

def _mirrored_fields(status: BatchStatus) -> dict:
    fields = {
        "external_status": status.status,
        "output_file_id": status.output_file_id,
        "error_file_id": status.error_file_id,
    }
    if status.request_counts:
        counts = status.request_counts
        fields.update(
            processed_count=counts.completed + counts.failed,
            success_count=counts.completed,
            error_count=counts.failed,
        )
    return fields


async def _fail_job(
        db: Session,
        job: BatchEnrichmentJob,
        message: str,
        status: BatchJobStatus = BatchJobStatus.ERROR,
        **fields,
) -> None:
    update_batch_job(db, job, status=status, last_error=message, **fields)
    await sweep_job_cells(db, job, message)
    event = "BATCH_JOB_CANCELLED" if status == BatchJobStatus.CANCELLED else "BATCH_JOB_FAILED"
    log_event(db, event, "batch_job", job.id, job.table_id, job.target_column_id, detail={"error": message})


async def reconcile_job(db: Session, provider: BatchProvider, job: BatchEnrichmentJob) -> dict:
    """One polling step for one job."""
    if job.status in TERMINAL_BATCH_STATUSES or not job.external_batch_id:
        return {"job_id": job.id, "status": job.status.value, "action": "skipped"}

    status = await provider.get_status(job.external_batch_id)
    fields = _mirrored_fields(status)
    provider_status = status.status

    if provider_status == "completed":
        if status.output_file_id or status.error_file_id:
            update_batch_job(db, job, status=BatchJobStatus.DOWNLOADING, **fields)
            await process_results(db, provider, job)
            action = "processed"
        else:
            await _fail_job(db, job, NO_OUTPUT_MESSAGE, **fields)
            action = "failed"
    elif provider_status in PROVIDER_PROCESSING_STATES:
        update_batch_job(db, job, status=BatchJobStatus.PROCESSING, **fields)
        action = "processing"
    elif provider_status == "failed":
        await _fail_job(db, job, "; ".join(status.errors) or FAILED_MESSAGE, **fields)
        action = "failed"
    elif provider_status == "expired":
        await _fail_job(db, job, EXPIRED_MESSAGE, **fields)
        action = "failed"
    elif provider_status in PROVIDER_CANCELLED_STATES:
        await _fail_job(db, job, CANCELLED_MESSAGE, status=BatchJobStatus.CANCELLED, **fields)
        action = "cancelled"
    else:
        update_batch_job(db, job, **fields)
        action = "mirrored"

    logger.info("[Reconciler] job %s: provider=%s local=%s (%s)", job.id, provider_status, job.status.value, action)
    return {"job_id": job.id, "status": job.status.value, "external_status": provider_status, "action": action}


async def reconcile_all(db: Session, provider: BatchProvider) -> list[dict]:
    """One sweep over every pollable job. Safe to run as often as you like."""
    results = []
    for job in get_pollable_jobs(db):
        job_id = job.id
        try:
            results.append(await reconcile_job(db, provider, job))
        except Exception as e:
            logger.error("[Reconciler] job %s failed to reconcile: %s", job_id, e)
            db.rollback()
            results.append({"job_id": job_id, "action": "error", "error": str(e)})
    return results


async def refresh_statuses(db: Session, provider: BatchProvider, jobs: list[BatchEnrichmentJob]) -> None:
    """Mirror provider status and counters for active jobs. Never downloads or transitions."""
    for job in jobs:
        if job.status in TERMINAL_BATCH_STATUSES or not job.external_batch_id:
            continue
        try:
            status = await provider.get_status(job.external_batch_id)
        except Exception as e:
            logger.warning("[Reconciler] status refresh for job %s failed: %s", job.id, e)
            continue
        fields = _mirrored_fields(status)
        fields.pop("output_file_id")
        fields.pop("error_file_id")
        update_batch_job(db, job, **fields)


# ── Cancellation and admin operations ────────────────────────────────────────

async def cancel_bulk_jobs(
        db: Session,
        provider: BatchProvider,
        column_id: str | None = None,
        job_id: str | None = None,
) -> list[BatchEnrichmentJob]:
    """Cancel upstream best-effort, then always cancel locally and sweep the cells."""
    if job_id:
        job = get_batch_job(db, job_id)
        jobs = [job] if job.status in ACTIVE_BATCH_STATUSES else []
    elif column_id:
        jobs = get_active_batch_jobs(db, column_id)
    else:
        raise InvalidRequestError("Provide column_id or job_id")

    for job in jobs:
        if job.external_batch_id:
            try:
                await provider.cancel_job(job.external_batch_id)
            except Exception as e:
                logger.warning("[Reconciler] upstream cancel of %s failed, cancelling locally: %s", job.external_batch_id, e)
        await _fail_job(db, job, USER_CANCELLED_MESSAGE, status=BatchJobStatus.CANCELLED, external_status="cancelled")
    return jobs


async def mark_job_error(db: Session, job_id: str, message: str) -> BatchEnrichmentJob:
    job = get_batch_job(db, job_id)
    await _fail_job(db, job, message)
    return job


async def force_sync_job(db: Session, provider: BatchProvider, job_id: str) -> dict:
    return await reconcile_job(db, provider, get_batch_job(db, job_id))


async def process_results_manually(
        db: Session,
        provider: BatchProvider,
        job_id: str,
        output_file_id: str,
) -> BatchEnrichmentJob:
    job = get_batch_job(db, job_id)
    if job.status == BatchJobStatus.COMPLETE:
        raise InvalidRequestError(f"Batch job {job_id} is already complete")
    update_batch_job(db, job, output_file_id=output_file_id, status=BatchJobStatus.DOWNLOADING)
    return await process_results(db, provider, job, manual=True)
