"""
Bulk enrichment through the provider batch API.

Row sets above the provider's per-job ceiling are split into several provider
jobs sharing one batch_group_id. Each chunk is submitted independently: a failed
upload or job creation errors out that chunk's rows and the rest carry on.

Per chunk:
    1. build prompts + JSONL, create the local job record (uploading)
    2. upload the request file
    3. tag the chunk's cells batch_submitted with the job id
    4. create the provider job (submitted)
"""
import logging
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from gridwise.config import settings
from gridwise.database import generate_id, utcnow
from gridwise.dao.batch_job_dao import create_batch_job, update_batch_job
from gridwise.dao.column_dao import get_columns, resolve_output_columns
from gridwise.dao.config_dao import get_config
from gridwise.dao.row_dao import select_rows_for_enrichment
from gridwise.dao.row_writer import split_chunks, write_cell_states
from gridwise.exceptions import InvalidRequestError
from gridwise.models.batch_job import BatchJobStatus
from gridwise.models.enrichment_config import EnrichmentConfig
from gridwise.providers.batch_provider import BatchProvider, build_batch_jsonl
from gridwise.services.audit_service import log_event
from gridwise.services.prompt_builder import build_prompt
from gridwise.states import cell_state

logger = logging.getLogger(__name__)


@dataclass
class ChunkResult:
    job_id: str
    batch_number: int
    row_count: int
    status: str
    external_batch_id: str | None = None
    error: str | None = None


@dataclass
class BulkSubmission:
    batch_group_id: str | None
    total_rows: int
    jobs: list[ChunkResult] = field(default_factory=list)
    created_columns: list[str] = field(default_factory=list)

    @property
    def submitted_rows(self) -> int:
        return sum(j.row_count for j in self.jobs if j.status == BatchJobStatus.SUBMITTED.value)

    @property
    def failed_rows(self) -> int:
        return sum(j.row_count for j in self.jobs if j.status == BatchJobStatus.ERROR.value)


async def submit_bulk(
        db: Session,
        provider: BatchProvider,
        config_id: str,
        table_id: str,
        target_column_id: str,
        row_ids: list[str] | None = None,
        only_empty: bool = False,
        include_errors: bool = False,
        force_rerun: bool = False,
) -> BulkSubmission:
    config = get_config(db, config_id)
    rows = select_rows_for_enrichment(
        db, table_id, target_column_id, row_ids,
        only_empty=only_empty, include_errors=include_errors, force_rerun=force_rerun,
    )
    if not rows:
        raise InvalidRequestError("No rows matched the selection")
    if len(rows) > settings.bulk_max_rows:
        raise InvalidRequestError(f"Bulk submissions are limited to {settings.bulk_max_rows} rows (got {len(rows)})")

    existing_ids = {c.id for c in get_columns(db, table_id)}
    output_columns = resolve_output_columns(db, table_id, config.output_columns, create_missing=True)
    created = [name for name, column_id in output_columns.items() if column_id not in existing_ids]
    columns = get_columns(db, table_id)

    # Prompts are built up front, before any commit expires the loaded rows
    prompts = [(row.id, build_prompt(config.prompt, row.data or {}, columns, config.output_columns)) for row in rows]
    chunks = split_chunks(prompts, settings.bulk_rows_per_job)
    group_id = generate_id() if len(chunks) > 1 else None

    submission = BulkSubmission(batch_group_id=group_id, total_rows=len(prompts), created_columns=created)
    for number, chunk in enumerate(chunks, start=1):
        result = await _submit_chunk(
            db, provider, config, table_id, target_column_id, output_columns, chunk,
            group_id=group_id,
            batch_number=number if group_id else None,
            total_batches=len(chunks) if group_id else None,
        )
        submission.jobs.append(result)

    logger.info(
        "[Bulk] table %s column %s — %d rows in %d job(s), %d failed",
        table_id, target_column_id, submission.total_rows, len(chunks), submission.failed_rows,
    )
    return submission


async def _submit_chunk(
        db: Session,
        provider: BatchProvider,
        config: EnrichmentConfig,
        table_id: str,
        target_column_id: str,
        output_columns: dict[str, str],
        prompts: list[tuple[str, str]],
        group_id: str | None,
        batch_number: int | None,
        total_batches: int | None,
) -> ChunkResult:
    content, mappings = build_batch_jsonl(prompts, settings.batch_deployment)
    row_ids = list(mappings.values())
    job = create_batch_job(
        db, table_id, config.id, target_column_id, mappings,
        batch_group_id=group_id, batch_number=batch_number, total_batches=total_batches,
    )
    job_id = job.id
    label = f"{batch_number}/{total_batches}" if group_id else "1/1"

    file_id = None
    try:
        file_id = await provider.upload_file(content, f"enrichment-{job_id}.jsonl")
        update_batch_job(db, job, input_file_id=file_id, external_status="uploaded")

        await write_cell_states(
            db, row_ids, target_column_id, output_columns,
            make_cell=lambda _: cell_state.batch_submitted(job_id),
        )

        status = await provider.create_job(file_id, {"jobId": job_id, "tableId": table_id})
        update_batch_job(
            db, job,
            status=BatchJobStatus.SUBMITTED,
            external_batch_id=status.id,
            external_status=status.status,
            submitted_at=utcnow(),
        )
    except Exception as exc:
        message = str(exc) or exc.__class__.__name__
        logger.error("[Bulk] chunk %s (job %s) submission failed: %s", label, job_id, message)
        db.rollback()
        update_batch_job(db, job, status=BatchJobStatus.ERROR, last_error=message)
        await write_cell_states(
            db, row_ids, target_column_id, output_columns,
            make_cell=lambda _: cell_state.failed(f"Batch submission failed: {message}", batch_job_id=job_id),
        )
        await provider.delete_file(file_id)
        log_event(db, "BATCH_CHUNK_FAILED", "batch_job", job_id, table_id, target_column_id, detail={"chunk": label, "error": message})
        return ChunkResult(job_id, batch_number or 1, len(row_ids), BatchJobStatus.ERROR.value, error=message)

    log_event(db, "BATCH_CHUNK_SUBMITTED", "batch_job", job_id, table_id, target_column_id, detail={
        "chunk": label, "rows": len(row_ids), "external_batch_id": job.external_batch_id,
    })
    return ChunkResult(job_id, batch_number or 1, len(row_ids), BatchJobStatus.SUBMITTED.value, job.external_batch_id)
