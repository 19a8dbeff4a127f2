"""Import batch, message atom and label models.

These rows are written by the importer and the classifier and are only read
by the tick engine.
"""

import uuid
from datetime import datetime

from sqlalchemy import Column, Date, DateTime, Float, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from distill.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class Source:
    CHATGPT = "chatgpt"
    CLAUDE = "claude"
    GROK = "grok"

    ALL = (CHATGPT, CLAUDE, GROK)


class Role:
    USER = "user"
    ASSISTANT = "assistant"


class ImportBatch(Base):
    """One imported export file; carries the timezone its days were cut in."""

    __tablename__ = "import_batches"

    id = Column(String(36), primary_key=True, default=_uuid)
    source = Column(Text, nullable=False)
    original_filename = Column(Text, nullable=False)
    timezone = Column(Text, nullable=False)  # IANA name, e.g. 'America/New_York'
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    atoms = relationship("MessageAtom", back_populates="import_batch", cascade="all, delete-orphan")


class MessageAtom(Base):
    """A single message turn."""

    __tablename__ = "message_atoms"

    id = Column(String(36), primary_key=True, default=_uuid)
    atom_stable_id = Column(String(64), nullable=False, unique=True)
    import_batch_id = Column(String(36), ForeignKey("import_batches.id", ondelete="CASCADE"), nullable=False)
    source = Column(Text, nullable=False)
    role = Column(Text, nullable=False)  # 'user' or 'assistant'
    timestamp_utc = Column(DateTime, nullable=False)  # naive UTC
    day_date = Column(Date, nullable=False)  # local day in the batch timezone
    text = Column(Text, nullable=False)
    text_hash = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    import_batch = relationship("ImportBatch", back_populates="atoms")
    labels = relationship("MessageLabel", back_populates="atom", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_message_atoms_batch_day", "import_batch_id", "day_date"),
        Index("idx_message_atoms_source", "source"),
    )


class MessageLabel(Base):
    """Category assigned to an atom under one (model, prompt version) label spec."""

    __tablename__ = "message_labels"

    id = Column(String(36), primary_key=True, default=_uuid)
    message_atom_id = Column(String(36), ForeignKey("message_atoms.id", ondelete="CASCADE"), nullable=False)
    category = Column(Text, nullable=False)
    confidence = Column(Float, nullable=False)
    model = Column(Text, nullable=False)
    prompt_version_id = Column(String(36), ForeignKey("prompt_versions.id"), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    atom = relationship("MessageAtom", back_populates="labels")

    __table_args__ = (
        UniqueConstraint("message_atom_id", "prompt_version_id", "model", name="uq_message_labels_spec"),
        Index("idx_message_labels_atom", "message_atom_id"),
    )
