"""Run and RunBatch models."""

import uuid
from datetime import datetime

from sqlalchemy import Column, Date, DateTime, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from distill.database import Base, JSONType


class RunStatus:
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    TERMINAL = (COMPLETED, CANCELLED)


class Run(Base):
    """A multi-day summarization job with a frozen configuration."""

    __tablename__ = "runs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    # Cache of determine_run_status(job counts); CANCELLED is authoritative
    status = Column(Text, nullable=False, default=RunStatus.QUEUED)
    import_batch_id = Column(String(36), ForeignKey("import_batches.id"), nullable=False)  # first canonical batch
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    sources = Column(JSONType, nullable=False)
    filter_profile_id = Column(String(36), ForeignKey("filter_profiles.id"), nullable=False)
    model = Column(Text, nullable=False)
    config = Column(JSONType, nullable=False)  # RunConfig, see schemas.run
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    jobs = relationship("Job", back_populates="run", order_by="Job.day_date", cascade="all, delete-orphan")
    run_batches = relationship(
        "RunBatch",
        back_populates="run",
        order_by=lambda: [RunBatch.created_at, RunBatch.import_batch_id],
        cascade="all, delete-orphan",
    )

    __table_args__ = (Index("idx_runs_status", "status"),)


class RunBatch(Base):
    """Join row mapping a run to one contributing import batch.

    ``created_at`` is copied from the import batch, so ``(created_at,
    import_batch_id)`` is the canonical batch order of the run.
    """

    __tablename__ = "run_batches"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    run_id = Column(String(36), ForeignKey("runs.id", ondelete="CASCADE"), nullable=False)
    import_batch_id = Column(String(36), ForeignKey("import_batches.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    run = relationship("Run", back_populates="run_batches")

    __table_args__ = (
        UniqueConstraint("run_id", "import_batch_id", name="uq_run_batches_run_batch"),
        Index("idx_run_batches_run_id", "run_id"),
    )
