"""HTTP surface tests: routing, error mapping and cron auth."""
import pytest
from fastapi.testclient import TestClient

from gridwise.database import get_db, get_session_factory
from gridwise.dao.row_dao import get_row
from gridwise.engine import bulk_orchestrator
from gridwise.main import app
from gridwise.providers.batch_provider import get_batch_provider
from gridwise.providers.model_provider import get_model_provider
from gridwise.routes import cron_routes, enrichment_routes


@pytest.fixture
def client(db, session_factory, mock_model_provider, mock_batch_provider):
    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_model_provider] = lambda: mock_model_provider
    app.dependency_overrides[get_batch_provider] = lambda: mock_batch_provider
    yield TestClient(app)
    app.dependency_overrides.clear()


def _job_request(table, **overrides) -> dict:
    return {
        "config_id": table.config_id,
        "table_id": table.table_id,
        "target_column_id": table.target,
        **overrides,
    }


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_create_sync_job(client, table):
    response = client.post("/enrichment/jobs", json=_job_request(table))

    assert response.status_code == 202
    body = response.json()
    assert body["mode"] == "sync"
    assert body["total_rows"] == 3

    detail = client.get(f"/enrichment/jobs/{body['job_id']}").json()
    assert detail["status"] == "pending"


def test_auto_mode_routes_large_tables_to_bulk(client, table, monkeypatch, mock_batch_provider):
    monkeypatch.setattr(enrichment_routes.settings, "bulk_threshold_rows", 2)

    response = client.post("/enrichment/jobs", json=_job_request(table, mode="auto"))

    assert response.status_code == 202
    body = response.json()
    assert body["mode"] == "bulk"
    assert body["submitted_rows"] == 3
    mock_batch_provider.create_job.assert_awaited_once()


def test_unknown_config_is_404(client, table):
    response = client.post("/enrichment/jobs", json=_job_request(table, config_id="nope"))
    assert response.status_code == 404


def test_unknown_job_is_404(client):
    assert client.get("/enrichment/jobs/missing").status_code == 404
    assert client.get("/enrichment/batch/status", params={"job_id": "missing"}).status_code == 404


def test_cancel_without_target_is_400(client):
    assert client.delete("/enrichment/jobs").status_code == 400
    assert client.post("/enrichment/batch/cancel", json={}).status_code == 400


def test_adhoc_run_reports_progress(client, table):
    response = client.post("/enrichment/run", json=_job_request(table, row_ids=table.row_ids))
    assert response.status_code == 202
    run_id = response.json()["job_id"]

    # TestClient runs background tasks before returning
    progress = client.get(f"/enrichment/progress/{run_id}", params={"client_id": "tab-1"}).json()
    assert progress["status"] == "complete"
    assert sorted(progress["row_ids"]) == table.row_ids

    again = client.get(f"/enrichment/progress/{run_id}", params={"client_id": "tab-1"}).json()
    assert again["row_ids"] == []


def test_unknown_progress_is_404(client):
    assert client.get("/enrichment/progress/nope").status_code == 404


def test_retry_cell(client, table, db):
    response = client.post("/enrichment/retry-cell", json={"row_id": "r3", "column_id": table.target})

    assert response.status_code == 200
    assert response.json()["success"] is True
    db.expire_all()
    assert get_row(db, "r3").data[table.output]["value"] == "Tokyo"


def test_bulk_group_status(client, table, monkeypatch):
    monkeypatch.setattr(bulk_orchestrator.settings, "bulk_rows_per_job", 2)
    submitted = client.post("/enrichment/batch", json=_job_request(table)).json()
    group_id = submitted["batch_group_id"]

    response = client.get("/enrichment/batch/status", params={"group_id": group_id, "refresh": False})

    body = response.json()
    assert body["group_id"] == group_id
    assert body["status"] == "processing"
    assert body["total_batches"] == 2
    assert body["total_rows"] == 3
    assert len(body["jobs"]) == 2


def test_status_requires_a_filter(client):
    assert client.get("/enrichment/batch/status").status_code == 400


def test_cron_requires_secret_when_configured(client, monkeypatch):
    monkeypatch.setattr(cron_routes.settings, "cron_secret", "s3cret")

    assert client.get("/cron/process-batch").status_code == 401
    ok = client.get("/cron/process-batch", headers={"Authorization": "Bearer s3cret"})
    assert ok.status_code == 200
    assert ok.json() == {"jobs_checked": 0, "results": []}


def test_cron_drives_sync_jobs(client, table, db):
    client.post("/enrichment/jobs", json=_job_request(table))

    response = client.get("/cron/process-enrichment")

    assert response.status_code == 200
    assert response.json()["jobs_processed"] == 1
    db.expire_all()
    assert get_row(db, "r1").data[table.output]["value"] == "Berlin"


def test_events_follow_a_column(client, table):
    job_id = client.post("/enrichment/jobs", json=_job_request(table)).json()["job_id"]
    client.delete("/enrichment/jobs", params={"job_id": job_id})

    events = client.get("/enrichment/events", params={"column_id": table.target}).json()

    assert [e["event_type"] for e in events] == ["ENRICHMENT_JOB_CANCELLED", "ENRICHMENT_JOB_CREATED"]
    assert all(e["entity_id"] == job_id and e["table_id"] == table.table_id for e in events)
    assert client.get("/enrichment/events").status_code == 400
