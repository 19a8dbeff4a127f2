"""Job and Output models."""

import uuid
from datetime import datetime

from sqlalchemy import Column, Date, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from distill.database import Base, JSONType


class JobStatus:
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    ALL = (QUEUED, RUNNING, SUCCEEDED, FAILED, CANCELLED)


class Stage:
    CLASSIFY = "classify"
    SUMMARIZE = "summarize"


class Job(Base):
    """One calendar day's unit of work within a run.

    Transitions:
        QUEUED -> RUNNING            (tick claims it)
        RUNNING -> SUCCEEDED|FAILED  (tick completes)
        FAILED -> QUEUED             (resume/reset, attempt += 1, error cleared)
        QUEUED|RUNNING|FAILED -> CANCELLED (run cancel)

    Usage columns accumulate across attempts.
    """

    __tablename__ = "jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    run_id = Column(String(36), ForeignKey("runs.id", ondelete="CASCADE"), nullable=False)
    day_date = Column(Date, nullable=False)
    status = Column(Text, nullable=False, default=JobStatus.QUEUED)
    attempt = Column(Integer, nullable=False, default=1)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    tokens_in = Column(Integer)
    tokens_out = Column(Integer)
    cost_usd = Column(Float)
    error = Column(Text)  # JSON: {code, message, at, retriable}

    run = relationship("Run", back_populates="jobs")
    outputs = relationship("Output", back_populates="job", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("run_id", "day_date", name="uq_jobs_run_day"),
        Index("idx_jobs_run_status", "run_id", "status"),
    )

    def add_usage(self, tokens_in: int, tokens_out: int, cost_usd: float):
        """Add usage from an attempt on top of earlier attempts."""
        self.tokens_in = (self.tokens_in or 0) + tokens_in
        self.tokens_out = (self.tokens_out or 0) + tokens_out
        self.cost_usd = (self.cost_usd or 0.0) + cost_usd

    def requeue(self):
        """Move back to QUEUED for another attempt."""
        self.status = JobStatus.QUEUED
        self.attempt = (self.attempt or 1) + 1
        self.error = None
        self.started_at = None
        self.finished_at = None


class Output(Base):
    """Produced text for one (job, stage) plus the hashes that produced it."""

    __tablename__ = "outputs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    job_id = Column(String(36), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False)
    stage = Column(Text, nullable=False)
    output_text = Column(Text, nullable=False)
    output_json = Column(JSONType, nullable=False)
    model = Column(Text, nullable=False)
    prompt_version_id = Column(String(36), nullable=False)
    label_spec = Column(JSONType)
    bundle_hash = Column(String(64), nullable=False)
    bundle_context_hash = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    job = relationship("Job", back_populates="outputs")

    __table_args__ = (UniqueConstraint("job_id", "stage", name="uq_outputs_job_stage"),)
