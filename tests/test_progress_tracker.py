"""Tests for gridwise.services.progress_tracker."""
from datetime import timedelta

from gridwise.database import utcnow
from gridwise.models.progress_entry import ProgressEntry
from gridwise.services.progress_tracker import ProgressTracker, kv_get, kv_set, purge_expired


def test_unknown_job_polls_none(db):
    assert ProgressTracker(db).poll("missing", "client-a") is None


def test_clients_page_independently(db):
    tracker = ProgressTracker(db, page_size=2)
    tracker.start("job-1", total=5)
    tracker.record_completed("job-1", ["r1", "r2", "r3"])

    first = tracker.poll("job-1", "client-a")
    assert first["row_ids"] == ["r1", "r2"]
    assert first["has_more"] is True
    assert first["completed"] == 3

    second = tracker.poll("job-1", "client-a")
    assert second["row_ids"] == ["r3"]
    assert second["has_more"] is False

    # another client starts from the beginning
    assert tracker.poll("job-1", "client-b")["row_ids"] == ["r1", "r2"]

    tracker.record_completed("job-1", ["r4"])
    assert tracker.poll("job-1", "client-a")["row_ids"] == ["r4"]


def test_completed_ids_only_grow_and_dedupe(db):
    tracker = ProgressTracker(db)
    tracker.start("job-1", total=3)
    tracker.record_completed("job-1", ["r1", "r2"])
    tracker.record_completed("job-1", ["r2", "r3"])

    progress = tracker.poll("job-1", "c")
    assert progress["row_ids"] == ["r1", "r2", "r3"]


def test_finish_sets_status(db):
    tracker = ProgressTracker(db)
    tracker.start("job-1", total=1)
    tracker.finish("job-1", "complete")
    assert tracker.poll("job-1", "c")["status"] == "complete"


def test_record_without_start_is_ignored(db):
    tracker = ProgressTracker(db)
    tracker.record_completed("ghost", ["r1"])
    assert tracker.poll("ghost", "c") is None


def test_expired_entries_vanish(db):
    db.add(ProgressEntry(key="progress:old", value={"completed": [], "total": 1, "status": "running"},
                         expires_at=utcnow() - timedelta(seconds=1)))
    db.commit()
    assert kv_get(db, "progress:old") is None

    kv_set(db, "a", 1, ttl_seconds=60)
    db.add(ProgressEntry(key="b", value=2, expires_at=utcnow() - timedelta(minutes=5)))
    db.commit()
    assert purge_expired(db) == 1
    assert kv_get(db, "a") == 1
