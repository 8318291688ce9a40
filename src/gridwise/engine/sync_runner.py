"""
Sync enrichment: one model call per row, written straight back to the row.

Two ways in:
  - run_adhoc           — process a row set now, all rows in parallel
  - process_job_tick    — background driver step for a persisted EnrichmentJob;
                          advances the job cursor by settings.sync_batch_size rows,
                          dispatching in provider-sized chunks with a delay between them
Per-row failures are written into the cells and never raised.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable

from sqlalchemy.orm import Session, sessionmaker

from gridwise.config import settings, RateLimits
from gridwise.database import utcnow
from gridwise.dao.column_dao import get_columns, get_column, resolve_output_columns
from gridwise.dao.config_dao import get_config
from gridwise.dao.job_dao import create_job, get_active_jobs, get_job, set_job_status
from gridwise.dao.row_dao import get_row, merge_row_cells, reset_cells, select_rows_for_enrichment
from gridwise.dao.row_writer import split_chunks, write_cell_states
from gridwise.exceptions import EnrichmentError, InvalidRequestError, RowNotFoundError
from gridwise.models.column import TableColumn
from gridwise.models.enrichment_config import EnrichmentConfig
from gridwise.models.enrichment_job import EnrichmentJob, EnrichmentJobStatus, ACTIVE_JOB_STATUSES
from gridwise.providers.model_provider import ModelProvider, calculate_cost, get_pricing, get_rate_limits
from gridwise.services.audit_service import log_event
from gridwise.services.progress_tracker import ProgressTracker
from gridwise.services.prompt_builder import build_prompt
from gridwise.services.response_parser import parse_response
from gridwise.states import cell_state
from gridwise.states.cell_state import CellMetadata, CellStatus, CellValue

logger = logging.getLogger(__name__)

STALLED_MESSAGE = "Enrichment job stalled and was force-completed"


@dataclass
class EnrichmentContext:
    config: EnrichmentConfig
    columns: list[TableColumn]
    target_column_id: str
    output_columns: dict[str, str] = field(default_factory=dict)   # output field name -> column id

    @property
    def output_fields(self) -> list[str]:
        return list(self.config.output_columns or [])


@dataclass
class RowOutcome:
    row_id: str
    success: bool
    cost: float = 0.0
    error: str | None = None
    cell: dict | None = None


def load_context(db: Session, config_id: str, table_id: str, target_column_id: str) -> EnrichmentContext:
    config = get_config(db, config_id)
    return EnrichmentContext(
        config=config,
        columns=get_columns(db, table_id),
        target_column_id=target_column_id,
        output_columns=resolve_output_columns(db, table_id, config.output_columns),
    )


# ── Per-row execution ────────────────────────────────────────────────────────

async def enrich_row(db: Session, provider: ModelProvider, ctx: EnrichmentContext, row_id: str) -> RowOutcome:
    row = get_row(db, row_id)
    if not row:
        return RowOutcome(row_id, False, error="Row not found")

    prompt = build_prompt(ctx.config.prompt, row.data or {}, ctx.columns, ctx.output_fields)
    try:
        result = await provider.invoke(prompt, ctx.config.model, temperature=ctx.config.temperature)
    except Exception as exc:
        message = str(exc) or exc.__class__.__name__
        logger.warning("[Runner] row %s failed: %s", row_id, message)
        cell = cell_state.failed(message)
        merge_row_cells(db, row_id, cell_state.lockstep(ctx.target_column_id, cell, ctx.output_columns))
        return RowOutcome(row_id, False, error=message, cell=cell.to_storage())

    cost = calculate_cost(result.input_tokens, result.output_tokens, get_pricing(ctx.config.model))
    parsed = parse_response(result.text)
    cell = cell_state.complete(
        parsed.display_value,
        parsed.structured_data,
        result.text,
        CellMetadata(
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            time_taken_ms=result.time_taken_ms,
            total_cost=cost,
        ),
    )
    merge_row_cells(db, row_id, cell_state.lockstep(ctx.target_column_id, cell, ctx.output_columns))
    return RowOutcome(row_id, True, cost=cost, cell=cell.to_storage())


async def mark_rows(db: Session, ctx: EnrichmentContext, row_ids: list[str], make_cell: Callable[[dict], CellValue]) -> None:
    await write_cell_states(db, row_ids, ctx.target_column_id, ctx.output_columns, make_cell)


async def run_rows(
        db: Session,
        provider: ModelProvider,
        ctx: EnrichmentContext,
        row_ids: list[str],
        rate_limits: RateLimits | None = None,
        on_row_done: Callable[[RowOutcome], None] | None = None,
        should_continue: Callable[[], bool] | None = None,
) -> list[RowOutcome]:
    """
    Without `rate_limits` every row is dispatched at once. With them, rows go out in
    chunks of `concurrent_requests`, sleeping `delay_between_chunks_ms` between chunks;
    `should_continue` is checked before each chunk. Rows are marked processing right
    before their chunk is dispatched.
    """

    async def _one(row_id: str) -> RowOutcome:
        outcome = await enrich_row(db, provider, ctx, row_id)
        if on_row_done:
            on_row_done(outcome)
        return outcome

    if rate_limits is None:
        await mark_rows(db, ctx, row_ids, lambda _: cell_state.processing())
        return list(await asyncio.gather(*(_one(r) for r in row_ids)))

    outcomes: list[RowOutcome] = []
    chunks = split_chunks(row_ids, rate_limits.concurrent_requests)
    for i, chunk in enumerate(chunks):
        if should_continue and not should_continue():
            logger.info("[Runner] stopping dispatch after %d/%d rows", len(outcomes), len(row_ids))
            break
        await mark_rows(db, ctx, chunk, lambda _: cell_state.processing())
        outcomes.extend(await asyncio.gather(*(_one(r) for r in chunk)))
        if rate_limits.delay_between_chunks_ms and i < len(chunks) - 1:
            await asyncio.sleep(rate_limits.delay_between_chunks_ms / 1000)
    return outcomes


# ── Ad-hoc run ───────────────────────────────────────────────────────────────

async def run_adhoc(
        session_factory: sessionmaker,
        provider: ModelProvider,
        run_id: str,
        config_id: str,
        table_id: str,
        target_column_id: str,
        row_ids: list[str],
) -> list[RowOutcome]:
    """Background task. Opens its own session and reports progress under `run_id`."""
    db = session_factory()
    try:
        ctx = load_context(db, config_id, table_id, target_column_id)
        tracker = ProgressTracker(db)
        tracker.start(run_id, len(row_ids))

        outcomes = await run_rows(
            db, provider, ctx, row_ids,
            on_row_done=lambda o: tracker.record_completed(run_id, [o.row_id]),
        )
        tracker.finish(run_id, "complete")
        logger.info(
            "[Runner] ad-hoc run %s finished — %d rows, %d errors, $%.6f",
            run_id, len(outcomes), sum(1 for o in outcomes if not o.success), sum(o.cost for o in outcomes),
        )
        return outcomes
    except Exception:
        logger.exception("[Runner] ad-hoc run %s crashed", run_id)
        ProgressTracker(db).finish(run_id, "error")
        raise
    finally:
        db.close()


# ── Persistent sync jobs ─────────────────────────────────────────────────────

async def create_sync_job(
        db: Session,
        config_id: str,
        table_id: str,
        target_column_id: str,
        row_ids: list[str] | None = None,
        only_empty: bool = False,
        include_errors: bool = False,
        force_rerun: bool = False,
) -> EnrichmentJob:
    """Queue rows for the background driver. Any active job on the same column is cancelled first."""
    ctx = load_context(db, config_id, table_id, target_column_id)

    cancelled = await cancel_sync_jobs(db, column_id=target_column_id)
    if cancelled:
        logger.info("Auto-cancelled %d active job(s) on column %s", len(cancelled), target_column_id)

    rows = select_rows_for_enrichment(
        db, table_id, target_column_id, row_ids,
        only_empty=only_empty, include_errors=include_errors, force_rerun=force_rerun,
    )
    if not rows:
        raise InvalidRequestError("No rows matched the selection")

    job = create_job(db, table_id, config_id, target_column_id, [r.id for r in rows], ctx.output_columns)
    await mark_rows(db, ctx, job.row_ids, lambda current: cell_state.pending(CellValue.from_storage(current)))
    ProgressTracker(db).start(job.id, len(job.row_ids))

    log_event(db, "ENRICHMENT_JOB_CREATED", "enrichment_job", job.id, table_id, target_column_id,
              detail={"rows": len(job.row_ids)})
    return job


def _job_column_ids(job: EnrichmentJob) -> list[str]:
    outputs = (job.output_columns or {}).values()
    return [job.target_column_id, *(c for c in outputs if c != job.target_column_id)]


async def _sweep_unfinished(db: Session, job: EnrichmentJob, message: str) -> int:
    """Error out cells of this job still pending/processing. Needs only the job, not its config."""
    stuck = {CellStatus.PENDING.value, CellStatus.PROCESSING.value}
    result = await write_cell_states(
        db, job.row_ids or [], job.target_column_id, job.output_columns or {},
        make_cell=lambda _: cell_state.failed(message),
        only_if=lambda current: current.get("status") in stuck,
    )
    return result.written


async def complete_sync_job(db: Session, job: EnrichmentJob, forced: bool = False) -> EnrichmentJob:
    if forced:
        swept = await _sweep_unfinished(db, job, STALLED_MESSAGE)
        job.error = f"Force-completed with {swept} unfinished row(s)" if swept else None
    set_job_status(db, job, EnrichmentJobStatus.COMPLETE)
    ProgressTracker(db).finish(job.id, "complete")
    event = "ENRICHMENT_JOB_STALE" if forced else "ENRICHMENT_JOB_COMPLETED"
    log_event(db, event, "enrichment_job", job.id, job.table_id, job.target_column_id, detail={
        "processed": job.processed_count, "errors": job.error_count, "cost": job.total_cost,
    })
    return job


async def force_complete_job(db: Session, job_id: str) -> EnrichmentJob:
    return await complete_sync_job(db, get_job(db, job_id), forced=True)


async def cancel_sync_jobs(
        db: Session,
        job_id: str | None = None,
        column_id: str | None = None,
        cancel_all: bool = False,
) -> list[EnrichmentJob]:
    """
    Stops dispatch for matching active jobs. Calls already in flight still finish
    and write their result; queued (pending) cells get their status cleared.
    """
    if job_id:
        job = get_job(db, job_id)
        jobs = [job] if job.status in ACTIVE_JOB_STATUSES else []
    elif column_id or cancel_all:
        jobs = get_active_jobs(db, column_id=None if cancel_all else column_id)
    else:
        raise InvalidRequestError("Provide job_id, column_id or all")

    for job in jobs:
        set_job_status(db, job, EnrichmentJobStatus.CANCELLED)
        remaining = (job.row_ids or [])[job.current_index:]
        reset_cells(db, remaining, _job_column_ids(job), statuses=[CellStatus.PENDING])
        ProgressTracker(db).finish(job.id, "cancelled")
        log_event(db, "ENRICHMENT_JOB_CANCELLED", "enrichment_job", job.id, job.table_id, job.target_column_id,
                  detail={"remaining": len(remaining)})
    return jobs


def reset_stuck_cells(db: Session, column_id: str | None = None) -> int:
    """Clear pending/processing statuses left behind by cancelled jobs."""
    q = db.query(EnrichmentJob).filter(EnrichmentJob.status == EnrichmentJobStatus.CANCELLED)
    if column_id:
        q = q.filter(EnrichmentJob.target_column_id == column_id)

    touched = 0
    for job in q.all():
        touched += reset_cells(
            db, job.row_ids or [], _job_column_ids(job),
            statuses=[CellStatus.PENDING, CellStatus.PROCESSING],
        )
    return touched


def _is_active(db: Session, job_id: str) -> bool:
    job = db.query(EnrichmentJob).filter(EnrichmentJob.id == job_id).first()
    return job is not None and job.status in ACTIVE_JOB_STATUSES


async def process_job_tick(db: Session, provider: ModelProvider, job: EnrichmentJob) -> dict:
    """Advance one job by up to settings.sync_batch_size rows."""
    if job.status not in ACTIVE_JOB_STATUSES:
        return {"job_id": job.id, "processed": 0, "status": job.status.value}

    start = job.current_index
    batch = (job.row_ids or [])[start:start + settings.sync_batch_size]
    if not batch:
        await complete_sync_job(db, job)
        return {"job_id": job.id, "processed": 0, "status": job.status.value}

    ctx = load_context(db, job.config_id, job.table_id, job.target_column_id)
    set_job_status(db, job, EnrichmentJobStatus.RUNNING)
    tracker = ProgressTracker(db)

    outcomes = await run_rows(
        db, provider, ctx, batch,
        rate_limits=get_rate_limits(ctx.config.model),
        on_row_done=lambda o: tracker.record_completed(job.id, [o.row_id]),
        should_continue=lambda: _is_active(db, job.id),
    )

    db.refresh(job)
    job.current_index = start + len(outcomes)
    job.processed_count += len(outcomes)
    job.error_count += sum(1 for o in outcomes if not o.success)
    job.total_cost += sum(o.cost for o in outcomes)
    job.updated_at = utcnow()
    db.commit()

    if job.status == EnrichmentJobStatus.CANCELLED:
        logger.info("[Driver] job %s cancelled mid-batch at row %d", job.id, job.current_index)
    elif job.current_index >= len(job.row_ids):
        await complete_sync_job(db, job)
    return {"job_id": job.id, "processed": len(outcomes), "status": job.status.value}


def _is_stale(job: EnrichmentJob) -> bool:
    cutoff = utcnow() - timedelta(minutes=settings.stale_job_minutes)
    return job.current_index > 0 and job.updated_at is not None and job.updated_at < cutoff


async def drive_active_jobs(db: Session, provider: ModelProvider) -> list[dict]:
    """One driver tick across every pending/running job."""
    results = []
    for job in get_active_jobs(db):
        try:
            if _is_stale(job):
                logger.warning("[Driver] job %s stale since %s — force-completing", job.id, job.updated_at)
                await complete_sync_job(db, job, forced=True)
                results.append({"job_id": job.id, "processed": 0, "status": "stale"})
                continue
            results.append(await process_job_tick(db, provider, job))
        except EnrichmentError as e:
            logger.error("[Driver] job %s failed: %s", job.id, e)
            db.rollback()
            set_job_status(db, job, EnrichmentJobStatus.ERROR, error=str(e))
            await _sweep_unfinished(db, job, str(e))
            ProgressTracker(db).finish(job.id, "error")
            results.append({"job_id": job.id, "processed": 0, "status": "error", "error": str(e)})
        except Exception:
            logger.exception("[Driver] job %s tick crashed", job.id)
            db.rollback()
    return results


# ── Single-cell retry ────────────────────────────────────────────────────────

async def retry_cell(db: Session, provider: ModelProvider, row_id: str, column_id: str) -> RowOutcome:
    column = get_column(db, column_id)
    if not column.enrichment_config_id:
        raise InvalidRequestError(f"Column {column_id} has no enrichment config")
    row = get_row(db, row_id)
    if not row:
        raise RowNotFoundError(f"Row {row_id} not found")

    ctx = load_context(db, column.enrichment_config_id, row.table_id, column_id)
    merge_row_cells(db, row_id, cell_state.lockstep(column_id, cell_state.processing(), ctx.output_columns))
    outcome = await enrich_row(db, provider, ctx, row_id)

    log_event(db, "CELL_RETRIED", "cell", row_id, row.table_id, column_id, detail={
        "success": outcome.success, "error": outcome.error,
    })
    return outcome
