"""Spend caps checked around every paid LLM call."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from distill.config import settings
from distill.errors import BudgetExceededError
from distill.models.classify_run import ClassifyRun
from distill.models.job import Job


@dataclass
class BudgetPolicy:
    max_usd_per_run: Optional[float] = None
    max_usd_per_day: Optional[float] = None


def get_spend_caps() -> BudgetPolicy:
    """Caps from settings; zero or negative values mean no cap."""

    def positive(value: Optional[float]) -> Optional[float]:
        return value if value is not None and value > 0 else None

    return BudgetPolicy(
        max_usd_per_run=positive(settings.LLM_MAX_USD_PER_RUN),
        max_usd_per_day=positive(settings.LLM_MAX_USD_PER_DAY),
    )


def assert_within_budget(
    next_cost_usd: float,
    spent_usd_run_so_far: float,
    spent_usd_day_so_far: float,
    policy: BudgetPolicy,
):
    """Raise BudgetExceededError if the next call would cross a cap."""
    if policy.max_usd_per_run is not None:
        if spent_usd_run_so_far + next_cost_usd > policy.max_usd_per_run:
            raise BudgetExceededError(next_cost_usd, spent_usd_run_so_far, policy.max_usd_per_run, "per_run")

    if policy.max_usd_per_day is not None:
        if spent_usd_day_so_far + next_cost_usd > policy.max_usd_per_day:
            raise BudgetExceededError(next_cost_usd, spent_usd_day_so_far, policy.max_usd_per_day, "per_day")


def get_run_spend_usd(db: Session, run_id: str) -> float:
    """Total recorded job spend for a run, failed attempts included."""
    total = db.query(func.sum(Job.cost_usd)).filter(Job.run_id == run_id).scalar()
    return float(total or 0.0)


def get_calendar_day_spend_usd(db: Session, now_utc: Optional[datetime] = None) -> float:
    """Spend from jobs and classify runs finished on the current UTC day."""
    now_utc = now_utc or datetime.utcnow()
    start = datetime(now_utc.year, now_utc.month, now_utc.day)
    end = start + timedelta(days=1)

    job_total = (
        db.query(func.sum(Job.cost_usd)).filter(Job.finished_at >= start, Job.finished_at < end).scalar()
    )
    classify_total = (
        db.query(func.sum(ClassifyRun.cost_usd))
        .filter(ClassifyRun.finished_at >= start, ClassifyRun.finished_at < end)
        .scalar()
    )
    return float(job_total or 0.0) + float(classify_total or 0.0)
