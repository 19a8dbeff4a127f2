"""Filter profile and prompt version models."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, String, Text

from distill.database import Base, JSONType


class FilterMode:
    INCLUDE = "include"
    EXCLUDE = "exclude"

    ALL = (INCLUDE, EXCLUDE)


class FilterProfile(Base):
    """Named category filter; snapshotted into a run's config at creation."""

    __tablename__ = "filter_profiles"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(Text, nullable=False, unique=True)
    mode = Column(Text, nullable=False)
    categories = Column(JSONType, nullable=False)  # list of lowercase category names
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class PromptVersion(Base):
    """Versioned prompt template for the classify or summarize stage."""

    __tablename__ = "prompt_versions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    stage = Column(Text, nullable=False)  # 'classify' or 'summarize'
    version_label = Column(Text, nullable=False)
    template_text = Column(Text, nullable=False)
    is_active = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
