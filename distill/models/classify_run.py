"""ClassifyRun model."""

import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, Float, ForeignKey, Index, Integer, String, Text

from distill.database import Base, JSONType


class ClassifyRun(Base):
    """One classification invocation over an import batch, with its own progress."""

    __tablename__ = "classify_runs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    import_batch_id = Column(String(36), ForeignKey("import_batches.id", ondelete="CASCADE"), nullable=False)
    model = Column(Text, nullable=False)
    prompt_version_id = Column(String(36), ForeignKey("prompt_versions.id"), nullable=False)
    mode = Column(Text, nullable=False)  # 'stub' or 'real'
    status = Column(Text, nullable=False, default="running")  # 'running', 'succeeded', 'failed'

    total_atoms = Column(Integer, nullable=False, default=0)
    processed_atoms = Column(Integer, nullable=False, default=0)
    newly_labeled = Column(Integer, nullable=False, default=0)
    skipped_already_labeled = Column(Integer, nullable=False, default=0)
    labeled_total = Column(Integer, nullable=False, default=0)

    skipped_bad_output = Column(Integer, nullable=False, default=0)
    aliased_count = Column(Integer, nullable=False, default=0)

    # Null until a real-mode call reports usage
    tokens_in = Column(Integer)
    tokens_out = Column(Integer)
    cost_usd = Column(Float)

    error_json = Column(JSONType)
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    finished_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (Index("idx_classify_runs_batch_spec", "import_batch_id", "model", "prompt_version_id"),)
