import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.orm import Session
from gridwise.database import engine, SessionLocal, Base
from gridwise.config import settings
from gridwise.engine.job_reconciler import reconcile_all
from gridwise.engine.sync_runner import drive_active_jobs
from gridwise.providers.batch_provider import get_batch_provider
from gridwise.providers.model_provider import get_model_provider
from gridwise.services.progress_tracker import purge_expired
from gridwise.routes.enrichment_routes import router as enrichment_router
from gridwise.routes.batch_routes import router as batch_router
from gridwise.routes.cron_routes import router as cron_router
# ensure every table is registered on Base.metadata before create_all
from gridwise.models import audit_log, batch_job, column, enrichment_config, enrichment_job, progress_entry, row  # noqa: F401
import uvicorn

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


async def _scheduled_reconcile():
    """Polls the batch provider for every active bulk job."""
    db: Session = SessionLocal()
    try:
        results = await reconcile_all(db, get_batch_provider())
        if results:
            logger.info("[Scheduler] Reconciled %d bulk job(s)", len(results))
    except Exception as e:
        logger.error("[Scheduler] Reconcile sweep failed: %s", e)
    finally:
        db.close()


async def _scheduled_drive():
    """Advances every pending/running sync job by one batch."""
    db: Session = SessionLocal()
    try:
        results = await drive_active_jobs(db, get_model_provider())
        if results:
            logger.info("[Scheduler] Driver tick touched %d sync job(s)", len(results))
        purge_expired(db)
    except Exception as e:
        logger.error("[Scheduler] Driver tick failed: %s", e)
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created/verified")
    if settings.scheduler_enabled:
        scheduler.add_job(
            _scheduled_reconcile,
            trigger="interval",
            seconds=settings.reconcile_interval_seconds,
            id="reconcile_bulk_jobs",
            name="Bulk job reconciliation",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.add_job(
            _scheduled_drive,
            trigger="interval",
            seconds=settings.driver_interval_seconds,
            id="drive_sync_jobs",
            name="Sync enrichment driver",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.start()
        logger.info("APScheduler started — %d jobs registered", len(scheduler.get_jobs()))
    yield
    # Shutdown
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("APScheduler stopped")


app = FastAPI(
    title="Gridwise",
    description="LLM enrichment engine for tabular data — FastAPI + SQLAlchemy + LangChain + batch inference",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(enrichment_router)
app.include_router(batch_router)
app.include_router(cron_router)


@app.get("/health")
def health():
    return {"status": "ok", "scheduler_jobs": len(scheduler.get_jobs())}


def start():
    """Entry point for the `gridwise` console script"""
    uvicorn.run(app, host=settings.app_host, port=settings.app_port, reload=settings.debug)
