"""Pytest configuration and fixtures."""
import re
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from gridwise.database import Base
from gridwise.models.column import TableColumn, ColumnType
from gridwise.models.enrichment_config import EnrichmentConfig
from gridwise.models.row import Row
from gridwise.models import audit_log, batch_job, enrichment_job, progress_entry  # noqa: F401
from gridwise.providers.batch_provider import BatchStatus, RequestCounts
from gridwise.providers.model_provider import ModelResult

TABLE_ID = "tbl-1"
CONFIG_ID = "cfg-capital"
COUNTRY_COLUMN = "col-country"
TARGET_COLUMN = "col-enrich"
CAPITAL_COLUMN = "col-capital"

CAPITALS = {"Germany": "Berlin", "France": "Paris", "Japan": "Tokyo"}


@pytest.fixture
def engine():
    """Fresh in-memory SQLite database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def table(db) -> SimpleNamespace:
    """
    Table with a Country column, an enrichment column configured to ask for the
    capital, and a `capital` output column. One row per entry in CAPITALS.
    """
    db.add(EnrichmentConfig(
        id=CONFIG_ID,
        name="Capital lookup",
        model="gemini-2.5-flash",
        prompt="Capital of {{Country}}?",
        input_columns=[COUNTRY_COLUMN],
        output_columns=["capital"],
        temperature=0.0,
    ))
    db.add_all([
        TableColumn(id=COUNTRY_COLUMN, table_id=TABLE_ID, name="Country", type=ColumnType.TEXT, order=1),
        TableColumn(id=TARGET_COLUMN, table_id=TABLE_ID, name="Enrichment", type=ColumnType.ENRICHMENT,
                    order=2, enrichment_config_id=CONFIG_ID),
        TableColumn(id=CAPITAL_COLUMN, table_id=TABLE_ID, name="capital", type=ColumnType.TEXT, order=3),
    ])
    row_ids = []
    for i, country in enumerate(CAPITALS, start=1):
        row_id = f"r{i}"
        row_ids.append(row_id)
        db.add(Row(id=row_id, table_id=TABLE_ID, data={COUNTRY_COLUMN: {"value": country}}))
    db.commit()

    return SimpleNamespace(
        table_id=TABLE_ID,
        config_id=CONFIG_ID,
        target=TARGET_COLUMN,
        output=CAPITAL_COLUMN,
        country=COUNTRY_COLUMN,
        row_ids=row_ids,
    )


def capital_answer(prompt: str) -> ModelResult:
    country = re.search(r"Capital of (\w+)\?", prompt).group(1)
    return ModelResult(
        text=f'```json\n{{"capital": "{CAPITALS[country]}"}}\n```',
        input_tokens=1000,
        output_tokens=500,
        time_taken_ms=12,
    )


@pytest.fixture
def mock_model_provider():
    """Model provider answering 'Capital of X?' prompts with fenced JSON."""
    provider = MagicMock()
    provider.invoke = AsyncMock(side_effect=lambda prompt, *args, **kwargs: capital_answer(prompt))
    return provider


@pytest.fixture
def mock_batch_provider():
    """Batch provider whose uploads and job creation succeed."""
    provider = MagicMock()
    provider.upload_file = AsyncMock(return_value="file-in-1")
    provider.create_job = AsyncMock(return_value=BatchStatus(id="batch-ext-1", status="validating"))
    provider.get_status = AsyncMock(return_value=BatchStatus(
        id="batch-ext-1", status="in_progress", request_counts=RequestCounts(total=3, completed=1, failed=0),
    ))
    provider.download_results = AsyncMock(return_value="")
    provider.cancel_job = AsyncMock(return_value=None)
    provider.delete_file = AsyncMock(return_value=None)
    return provider
