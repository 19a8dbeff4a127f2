"""Run status derived from job status counts.

``Run.status`` is a cache of ``determine_run_status``; every job mutation is
followed by ``recompute_run_status`` in the same transaction.
"""

from typing import Dict

from sqlalchemy import func
from sqlalchemy.orm import Session

from distill.models.job import Job, JobStatus
from distill.models.run import Run, RunStatus


def empty_counts() -> Dict[str, int]:
    return {status.lower(): 0 for status in JobStatus.ALL}


def determine_run_status(counts: Dict[str, int]) -> str:
    queued = counts.get("queued", 0)
    running = counts.get("running", 0)
    succeeded = counts.get("succeeded", 0)
    failed = counts.get("failed", 0)
    cancelled = counts.get("cancelled", 0)

    if running > 0:
        return RunStatus.RUNNING
    if queued > 0:
        if succeeded + failed + cancelled > 0:
            return RunStatus.RUNNING
        return RunStatus.QUEUED
    if failed > 0:
        return RunStatus.FAILED
    if succeeded > 0:
        return RunStatus.COMPLETED
    return RunStatus.QUEUED


def count_jobs_by_status(db: Session, run_id: str) -> Dict[str, int]:
    """Job counts keyed by lowercase status, zero-filled."""
    counts = empty_counts()
    rows = db.query(Job.status, func.count(Job.id)).filter(Job.run_id == run_id).group_by(Job.status).all()
    for status, count in rows:
        counts[status.lower()] = count
    return counts


def recompute_run_status(db: Session, run: Run) -> Dict[str, int]:
    """Refresh ``run.status`` from job counts and return the counts.

    A CANCELLED run keeps its status.
    """
    db.flush()
    counts = count_jobs_by_status(db, run.id)
    if run.status != RunStatus.CANCELLED:
        run.status = determine_run_status(counts)
    return counts
