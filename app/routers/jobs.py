"""Manual / cron trigger for the outbound job worker."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.database import get_db
from app.schemas.webhook import OutboundRunResponse
from app.services.job_worker import process_outbound_jobs

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("/run-outbound", response_model=OutboundRunResponse)
def run_outbound(limit: int = Query(default=10, ge=1, le=100), db: Session = Depends(get_db)):
    results = process_outbound_jobs(db, limit=limit)
    return OutboundRunResponse(ok=True, **results)
