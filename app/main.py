import asyncio
import os

from fastapi import Depends, FastAPI
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.logging_config import get_logger, setup_logging
from app.routers import jobs, webhook
from app.services.job_worker import outbound_worker_loop

setup_logging(settings.log_level)

app = FastAPI(
    title="Leadflow API",
    description="Inbound message pipeline with idempotent auto-replies",
    version="0.1.0",
)

app.include_router(webhook.router)
app.include_router(jobs.router)

worker_logger = get_logger("outbound_worker")
_outbound_worker_task: asyncio.Task | None = None


def _is_outbound_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.outbound_worker_enabled


@app.on_event("startup")
async def start_outbound_worker() -> None:
    global _outbound_worker_task
    if not _is_outbound_worker_enabled():
        return
    if _outbound_worker_task is None or _outbound_worker_task.done():
        _outbound_worker_task = asyncio.create_task(outbound_worker_loop())
        worker_logger.info("Outbound worker started")


@app.on_event("shutdown")
async def stop_outbound_worker() -> None:
    global _outbound_worker_task
    if _outbound_worker_task is None:
        return
    _outbound_worker_task.cancel()
    try:
        await _outbound_worker_task
    except asyncio.CancelledError:
        pass
    _outbound_worker_task = None


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok"}
