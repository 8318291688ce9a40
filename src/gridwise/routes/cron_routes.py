"""
External cron triggers. Both are idempotent and safe to call more often
than jobs actually change.
GET /cron/process-batch      — one JobReconciler sweep over active bulk jobs
GET /cron/process-enrichment — one sync-driver tick over active sync jobs
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from gridwise.config import settings
from gridwise.database import get_db
from gridwise.engine.job_reconciler import reconcile_all
from gridwise.engine.sync_runner import drive_active_jobs
from gridwise.providers.batch_provider import BatchProvider, get_batch_provider
from gridwise.providers.model_provider import ModelProvider, get_model_provider
from gridwise.services.progress_tracker import purge_expired

logger = logging.getLogger(__name__)


def verify_cron_secret(authorization: Optional[str] = Header(None)):
    if settings.cron_secret and authorization != f"Bearer {settings.cron_secret}":
        raise HTTPException(status_code=401, detail="Unauthorized")


router = APIRouter(prefix="/cron", tags=["Cron"], dependencies=[Depends(verify_cron_secret)])


@router.get("/process-batch")
async def process_batch(db: Session = Depends(get_db), provider: BatchProvider = Depends(get_batch_provider)):
    results = await reconcile_all(db, provider)
    return {"jobs_checked": len(results), "results": results}


@router.get("/process-enrichment")
async def process_enrichment(db: Session = Depends(get_db), provider: ModelProvider = Depends(get_model_provider)):
    results = await drive_active_jobs(db, provider)
    purge_expired(db)
    return {"jobs_processed": len(results), "results": results}
