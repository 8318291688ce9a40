"""
Batch-inference provider (Azure OpenAI / OpenAI batch API).

Request files are JSONL, one chat-completion request per row, keyed by
custom_id "row-{row_id}". Results come back as JSONL keyed the same way.
"""
import json
import logging

from openai import AsyncAzureOpenAI, AsyncOpenAI
from pydantic import BaseModel, Field
from tenacity import retry, stop_after_attempt, wait_exponential

from gridwise.config import settings
from gridwise.exceptions import ProviderNotConfiguredError

logger = logging.getLogger(__name__)

BATCH_ENDPOINT = "/v1/chat/completions"
CUSTOM_ID_PREFIX = "row-"


class RequestCounts(BaseModel):
    total: int = 0
    completed: int = 0
    failed: int = 0


class BatchStatus(BaseModel):
    id: str
    status: str
    output_file_id: str | None = None
    error_file_id: str | None = None
    request_counts: RequestCounts | None = None
    errors: list[str] = Field(default_factory=list)


class BatchResultLine(BaseModel):
    custom_id: str
    content: str | None = None
    error: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0


# ── JSONL codec ──────────────────────────────────────────────────────────────

def custom_id_for(row_id: str) -> str:
    return f"{CUSTOM_ID_PREFIX}{row_id}"


def row_id_from_custom_id(custom_id: str) -> str:
    return custom_id[len(CUSTOM_ID_PREFIX):] if custom_id.startswith(CUSTOM_ID_PREFIX) else custom_id


def build_batch_jsonl(
        prompts: list[tuple[str, str]],
        deployment: str,
        max_completion_tokens: int | None = None,
) -> tuple[str, dict[str, str]]:
    """
    prompts: (row_id, prompt) pairs.
    Returns the JSONL body and the custom_id -> row_id mapping to persist with the job.
    """
    lines = []
    mappings: dict[str, str] = {}
    for row_id, prompt in prompts:
        custom_id = custom_id_for(row_id)
        mappings[custom_id] = row_id
        lines.append(json.dumps({
            "custom_id": custom_id,
            "method": "POST",
            "url": BATCH_ENDPOINT,
            "body": {
                "model": deployment,
                "messages": [{"role": "user", "content": prompt}],
                "max_completion_tokens": max_completion_tokens or settings.max_output_tokens,
            },
        }))
    return "\n".join(lines), mappings


def parse_batch_results(content: str) -> list[BatchResultLine]:
    """Malformed lines are logged and skipped."""
    results = []
    for line_no, line in enumerate(content.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except ValueError:
            logger.warning("[Batch] skipping malformed result line %d", line_no)
            continue

        custom_id = record.get("custom_id")
        if not custom_id:
            logger.warning("[Batch] result line %d has no custom_id", line_no)
            continue

        error = record.get("error")
        if error:
            results.append(BatchResultLine(
                custom_id=custom_id,
                error=error.get("message") or error.get("code") or "Unknown batch error",
            ))
            continue

        response = record.get("response") or {}
        body = response.get("body") or {}
        if response.get("status_code", 200) >= 400:
            body_error = body.get("error") or {}
            results.append(BatchResultLine(
                custom_id=custom_id,
                error=body_error.get("message") or f"Request failed with status {response.get('status_code')}",
            ))
            continue

        usage = body.get("usage") or {}
        choices = body.get("choices") or []
        message = (choices[0].get("message") or {}) if choices else {}
        results.append(BatchResultLine(
            custom_id=custom_id,
            content=message.get("content"),
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
        ))
    return results


def _to_status(batch) -> BatchStatus:
    counts = getattr(batch, "request_counts", None)
    errors = getattr(batch, "errors", None)
    return BatchStatus(
        id=batch.id,
        status=batch.status,
        output_file_id=getattr(batch, "output_file_id", None),
        error_file_id=getattr(batch, "error_file_id", None),
        request_counts=RequestCounts(
            total=counts.total or 0,
            completed=counts.completed or 0,
            failed=counts.failed or 0,
        ) if counts else None,
        errors=[e.message for e in (errors.data or []) if getattr(e, "message", None)] if errors else [],
    )


# ── Client ───────────────────────────────────────────────────────────────────

class BatchProvider:

    def __init__(self, client: AsyncOpenAI | None = None):
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            if settings.azure_openai_endpoint and settings.azure_openai_api_key:
                self._client = AsyncAzureOpenAI(
                    azure_endpoint=settings.azure_openai_endpoint,
                    api_key=settings.azure_openai_api_key,
                    api_version=settings.azure_openai_api_version,
                )
            elif settings.openai_api_key:
                self._client = AsyncOpenAI(api_key=settings.openai_api_key)
            else:
                raise ProviderNotConfiguredError("Batch provider needs AZURE_OPENAI_* or OPENAI_API_KEY")
        return self._client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def upload_file(self, content: str, filename: str) -> str:
        uploaded = await self.client.files.create(file=(filename, content.encode("utf-8")), purpose="batch")
        logger.info("[Batch] uploaded %s as %s", filename, uploaded.id)
        return uploaded.id

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def create_job(self, input_file_id: str, metadata: dict[str, str]) -> BatchStatus:
        batch = await self.client.batches.create(
            input_file_id=input_file_id,
            endpoint=BATCH_ENDPOINT,
            completion_window=settings.batch_completion_window,
            metadata=metadata,
        )
        logger.info("[Batch] created provider job %s (%s)", batch.id, batch.status)
        return _to_status(batch)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def get_status(self, batch_id: str) -> BatchStatus:
        return _to_status(await self.client.batches.retrieve(batch_id))

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def download_results(self, file_id: str) -> str:
        response = await self.client.files.content(file_id)
        return response.text

    async def cancel_job(self, batch_id: str) -> None:
        await self.client.batches.cancel(batch_id)
        logger.info("[Batch] cancel requested for %s", batch_id)

    async def delete_file(self, file_id: str | None) -> None:
        """Best-effort cleanup; never raises."""
        if not file_id:
            return
        try:
            await self.client.files.delete(file_id)
        except Exception as exc:
            logger.warning("[Batch] could not delete file %s: %s", file_id, exc)


_provider: BatchProvider | None = None


def get_batch_provider() -> BatchProvider:
    global _provider
    if _provider is None:
        _provider = BatchProvider()
    return _provider
