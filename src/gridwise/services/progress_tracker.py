"""
Progress tracking for sync jobs, backed by the progress_entries key/value table.

    progress:{job_id}           -> {"completed": [...row ids], "total": n, "status": s}
    cursor:{job_id}:{client_id} -> {"offset": n}

Completed ids only ever grow. Each poller keeps its own cursor so it can page
through newly completed rows without re-fetching the ones it has already seen.
Entries expire after settings.progress_ttl_seconds.
"""
import logging
from datetime import timedelta
from typing import Any

from sqlalchemy.orm import Session

from gridwise.config import settings
from gridwise.database import utcnow
from gridwise.models.progress_entry import ProgressEntry

logger = logging.getLogger(__name__)


# ── Key/value store with expiry ──────────────────────────────────────────────

def kv_get(db: Session, key: str) -> Any:
    entry = db.get(ProgressEntry, key)
    if entry is None:
        return None
    if entry.expires_at <= utcnow():
        db.delete(entry)
        db.commit()
        return None
    return entry.value


def kv_set(db: Session, key: str, value: Any, ttl_seconds: int | None = None) -> None:
    expires_at = utcnow() + timedelta(seconds=ttl_seconds or settings.progress_ttl_seconds)
    entry = db.get(ProgressEntry, key)
    if entry is None:
        db.add(ProgressEntry(key=key, value=value, expires_at=expires_at))
    else:
        entry.value = value
        entry.expires_at = expires_at
    db.commit()


def purge_expired(db: Session) -> int:
    removed = db.query(ProgressEntry).filter(ProgressEntry.expires_at <= utcnow()).delete()
    db.commit()
    if removed:
        logger.info("[Progress] purged %d expired entries", removed)
    return removed


# ── Tracker ──────────────────────────────────────────────────────────────────

def _progress_key(job_id: str) -> str:
    return f"progress:{job_id}"


def _cursor_key(job_id: str, client_id: str) -> str:
    return f"cursor:{job_id}:{client_id}"


class ProgressTracker:

    def __init__(self, db: Session, page_size: int | None = None):
        self.db = db
        self.page_size = page_size or settings.progress_page_size

    def start(self, job_id: str, total: int) -> None:
        kv_set(self.db, _progress_key(job_id), {"completed": [], "total": total, "status": "running"})

    def record_completed(self, job_id: str, row_ids: list[str]) -> None:
        state = kv_get(self.db, _progress_key(job_id))
        if state is None:
            logger.warning("[Progress] no entry for job %s — recording skipped", job_id)
            return
        seen = set(state["completed"])
        additions = [r for r in row_ids if r not in seen]
        if additions:
            kv_set(self.db, _progress_key(job_id), {**state, "completed": state["completed"] + additions})

    def finish(self, job_id: str, status: str = "complete") -> None:
        state = kv_get(self.db, _progress_key(job_id))
        if state is not None:
            kv_set(self.db, _progress_key(job_id), {**state, "status": status})

    def poll(self, job_id: str, client_id: str) -> dict | None:
        """Next page of completed row ids for this client. None when the job is unknown or expired."""
        state = kv_get(self.db, _progress_key(job_id))
        if state is None:
            return None

        cursor = kv_get(self.db, _cursor_key(job_id, client_id)) or {"offset": 0}
        offset = cursor["offset"]
        completed = state["completed"]
        page = completed[offset:offset + self.page_size]
        kv_set(self.db, _cursor_key(job_id, client_id), {"offset": offset + len(page)})

        return {
            "job_id"   : job_id,
            "status"   : state["status"],
            "total"    : state["total"],
            "completed": len(completed),
            "row_ids"  : page,
            "has_more" : offset + len(page) < len(completed),
        }
