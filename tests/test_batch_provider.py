"""Tests for gridwise.providers.batch_provider."""
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from gridwise.providers.batch_provider import (
    BatchProvider, build_batch_jsonl, parse_batch_results, row_id_from_custom_id,
)


def test_jsonl_has_one_chat_request_per_row():
    content, mappings = build_batch_jsonl([("r1", "Capital of Germany?"), ("r2", "Capital of France?")], "gpt-5-mini", 256)
    lines = [json.loads(line) for line in content.splitlines()]

    assert mappings == {"row-r1": "r1", "row-r2": "r2"}
    assert lines[0] == {
        "custom_id": "row-r1",
        "method": "POST",
        "url": "/v1/chat/completions",
        "body": {
            "model": "gpt-5-mini",
            "messages": [{"role": "user", "content": "Capital of Germany?"}],
            "max_completion_tokens": 256,
        },
    }


def test_custom_id_prefix_is_stripped():
    assert row_id_from_custom_id("row-abc-123") == "abc-123"
    assert row_id_from_custom_id("legacy") == "legacy"


def _success(custom_id: str, content: str, prompt_tokens: int = 10, completion_tokens: int = 4) -> str:
    return json.dumps({
        "custom_id": custom_id,
        "response": {
            "status_code": 200,
            "body": {
                "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens},
                "choices": [{"message": {"content": content}}],
            },
        },
    })


def test_parse_results_success_error_and_garbage():
    content = "\n".join([
        _success("row-r1", '{"capital": "Berlin"}'),
        json.dumps({"custom_id": "row-r2", "error": {"code": "rate_limit", "message": None}}),
        json.dumps({"custom_id": "row-r3", "response": {"status_code": 400, "body": {"error": {"message": "bad prompt"}}}}),
        "this is not json",
        json.dumps({"response": {}}),
        "",
    ])
    results = parse_batch_results(content)

    assert [r.custom_id for r in results] == ["row-r1", "row-r2", "row-r3"]
    assert results[0].content == '{"capital": "Berlin"}'
    assert (results[0].input_tokens, results[0].output_tokens) == (10, 4)
    assert results[1].error == "rate_limit"
    assert results[2].error == "bad prompt"


@pytest.fixture
def openai_client():
    client = MagicMock()
    client.files.create = AsyncMock(return_value=SimpleNamespace(id="file-1"))
    client.files.content = AsyncMock(return_value=SimpleNamespace(text="line"))
    client.files.delete = AsyncMock(side_effect=RuntimeError("already gone"))
    client.batches.create = AsyncMock(return_value=SimpleNamespace(
        id="batch-1", status="validating", output_file_id=None, error_file_id=None,
        request_counts=None, errors=None,
    ))
    client.batches.retrieve = AsyncMock(return_value=SimpleNamespace(
        id="batch-1", status="failed", output_file_id=None, error_file_id="file-err",
        request_counts=SimpleNamespace(total=2, completed=0, failed=2),
        errors=SimpleNamespace(data=[SimpleNamespace(message="quota exceeded"), SimpleNamespace(message=None)]),
    ))
    client.batches.cancel = AsyncMock()
    return client


@pytest.mark.asyncio
async def test_client_calls(openai_client):
    provider = BatchProvider(client=openai_client)

    assert await provider.upload_file("{}", "x.jsonl") == "file-1"
    _, kwargs = openai_client.files.create.call_args
    assert kwargs["purpose"] == "batch"

    created = await provider.create_job("file-1", {"jobId": "j1", "tableId": "t1"})
    assert created.id == "batch-1"
    _, kwargs = openai_client.batches.create.call_args
    assert kwargs["completion_window"] == "24h"
    assert kwargs["metadata"] == {"jobId": "j1", "tableId": "t1"}

    status = await provider.get_status("batch-1")
    assert status.status == "failed"
    assert status.errors == ["quota exceeded"]
    assert status.request_counts.failed == 2

    assert await provider.download_results("file-err") == "line"


@pytest.mark.asyncio
async def test_delete_file_is_best_effort(openai_client):
    provider = BatchProvider(client=openai_client)
    await provider.delete_file("file-1")
    await provider.delete_file(None)
    assert openai_client.files.delete.await_count == 1
