"""Run routes."""

import logging
from datetime import date
from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from distill.database import get_db
from distill.schemas.run import (
    CancelResponse,
    JobInputPreview,
    JobOutputResponse,
    ResetResponse,
    ResumeResponse,
    RunCreate,
    RunDetail,
    RunSummary,
    TickResult,
)
from distill.services import runs as run_service
from distill.services.advisory_lock import AdvisoryLockManager, get_lock_manager
from distill.services.summarizer import Summarizer
from distill.services.tick import process_tick

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/distill/runs", tags=["runs"])


def get_summarizer() -> Summarizer:
    """Summarizer dependency; overridden in tests."""
    return Summarizer()


@router.post("", response_model=RunDetail, status_code=201)
def create_run(data: RunCreate, db: Session = Depends(get_db)):
    """Create a run with a frozen config and one job per eligible day."""
    run = run_service.create_run(db, data)
    return run_service.get_run_detail(db, run.id)


@router.get("", response_model=List[RunSummary])
def list_runs(limit: int = Query(50, ge=1, le=run_service.MAX_LIST_LIMIT), db: Session = Depends(get_db)):
    return run_service.list_runs(db, limit)


@router.get("/{run_id}", response_model=RunDetail)
def get_run(run_id: str, db: Session = Depends(get_db)):
    return run_service.get_run_detail(db, run_id)


@router.post("/{run_id}/tick", response_model=TickResult)
def tick_run(
    run_id: str,
    db: Session = Depends(get_db),
    lock_manager: AdvisoryLockManager = Depends(get_lock_manager),
    summarizer: Summarizer = Depends(get_summarizer),
):
    """Process at most one queued day of the run."""
    return process_tick(db, run_id, summarizer=summarizer, lock_manager=lock_manager)


@router.post("/{run_id}/resume", response_model=ResumeResponse)
def resume_run(
    run_id: str,
    db: Session = Depends(get_db),
    lock_manager: AdvisoryLockManager = Depends(get_lock_manager),
):
    return run_service.resume_run(db, run_id, lock_manager=lock_manager)


@router.post("/{run_id}/cancel", response_model=CancelResponse)
def cancel_run(run_id: str, db: Session = Depends(get_db)):
    return run_service.cancel_run(db, run_id)


@router.post("/{run_id}/jobs/{day_date}/reset", response_model=ResetResponse)
def reset_job(run_id: str, day_date: date, db: Session = Depends(get_db)):
    return run_service.reset_job(db, run_id, day_date)


@router.get("/{run_id}/jobs/{day_date}/input", response_model=JobInputPreview)
def get_job_input(run_id: str, day_date: date, db: Session = Depends(get_db)):
    """Preview the bundle the next attempt would summarize."""
    return run_service.get_job_input(db, run_id, day_date)


@router.get("/{run_id}/jobs/{day_date}/output", response_model=JobOutputResponse)
def get_job_output(run_id: str, day_date: date, db: Session = Depends(get_db)):
    return run_service.get_job_output(db, run_id, day_date)
