"""Pytest configuration and fixtures."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LLM_MODE", "dry_run")

from datetime import date, datetime, timedelta
from types import SimpleNamespace
from typing import Iterable, List, Optional

import pytest
from sqlalchemy.orm import sessionmaker

import distill.models  # noqa: F401
from distill.database import Base, build_engine
from distill.models.batch import ImportBatch, MessageAtom, MessageLabel
from distill.models.profile import FilterProfile, PromptVersion
from distill.schemas.run import LabelSpec, RunCreate
from distill.services.advisory_lock import AdvisoryLockManager
from distill.services.atoms import compute_atom_stable_id, compute_text_hash, local_day_date
from distill.services.summarizer import SummaryResult

LABEL_MODEL = "stub_v1"
RUN_MODEL = "stub_summarizer_v1"


@pytest.fixture(scope="function")
def test_db():
    """Create a test database for each test."""
    # Use in-memory SQLite for testing
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()

    yield db

    db.close()
    engine.dispose()


class Factory:
    """Builds store rows for tests."""

    def __init__(self, db):
        self.db = db
        self._counter = 0

    def _next(self) -> int:
        self._counter += 1
        return self._counter

    def batch(self, timezone: str = "UTC", source: str = "chatgpt", created_at: Optional[datetime] = None):
        batch = ImportBatch(
            source=source,
            original_filename=f"export-{self._next()}.json",
            timezone=timezone,
            created_at=created_at or datetime(2024, 2, 1, 12, 0, 0),
        )
        self.db.add(batch)
        self.db.commit()
        return batch

    def atom(
        self,
        batch: ImportBatch,
        timestamp: datetime,
        text: str,
        role: str = "user",
        source: Optional[str] = None,
    ):
        source = source or batch.source
        atom = MessageAtom(
            atom_stable_id=compute_atom_stable_id(source, timestamp, role, text, message_id=f"m{self._next()}"),
            import_batch_id=batch.id,
            source=source,
            role=role,
            timestamp_utc=timestamp,
            day_date=local_day_date(timestamp, batch.timezone),
            text=text,
            text_hash=compute_text_hash(text),
        )
        self.db.add(atom)
        self.db.commit()
        return atom

    def prompt_version(self, stage: str = "classify", active: bool = True, template: str = "Classify."):
        prompt_version = PromptVersion(
            stage=stage,
            version_label=f"{stage}_v{self._next()}",
            template_text=template,
            is_active=active,
        )
        self.db.add(prompt_version)
        self.db.commit()
        return prompt_version

    def filter_profile(self, mode: str = "include", categories: Iterable[str] = ("work", "learning")):
        profile = FilterProfile(name=f"profile-{self._next()}", mode=mode, categories=list(categories))
        self.db.add(profile)
        self.db.commit()
        return profile

    def label(self, atom: MessageAtom, category: str, prompt_version: PromptVersion, model: str = LABEL_MODEL):
        label = MessageLabel(
            message_atom_id=atom.id,
            category=category,
            confidence=0.9,
            model=model,
            prompt_version_id=prompt_version.id,
        )
        self.db.add(label)
        self.db.commit()
        return label

    def labeled_atom(self, batch, timestamp, text, category, prompt_version, role="user", source=None):
        atom = self.atom(batch, timestamp, text, role=role, source=source)
        self.label(atom, category, prompt_version)
        return atom


@pytest.fixture
def factory(test_db):
    return Factory(test_db)


@pytest.fixture
def seeded(factory):
    """One UTC batch with labeled user atoms on three days, plus an off-filter day.

    Days 2024-01-15..17 each have 'work' atoms. 2024-01-18 only has a
    'personal' atom, which the include filter drops.
    """
    classify_pv = factory.prompt_version("classify")
    summarize_pv = factory.prompt_version("summarize", template="Summarize the day.")
    profile = factory.filter_profile("include", ["work", "learning"])
    batch = factory.batch()

    days: List[date] = []
    for offset in range(3):
        base = datetime(2024, 1, 15, 9, 0, 0) + timedelta(days=offset)
        factory.labeled_atom(batch, base, f"Planning item {offset}", "work", classify_pv)
        factory.labeled_atom(batch, base + timedelta(hours=2), f"Follow up {offset}", "learning", classify_pv)
        factory.labeled_atom(batch, base + timedelta(hours=3), f"Reply {offset}", "work", classify_pv, role="assistant")
        days.append(base.date())
    factory.labeled_atom(batch, datetime(2024, 1, 18, 9, 0, 0), "Private note", "personal", classify_pv)

    return SimpleNamespace(
        batch=batch,
        classify_pv=classify_pv,
        summarize_pv=summarize_pv,
        profile=profile,
        days=days,
    )


def make_run_request(seeded, **overrides) -> RunCreate:
    fields = dict(
        import_batch_id=seeded.batch.id,
        start_date=date(2024, 1, 1),
        end_date=date(2024, 1, 31),
        sources=["chatgpt"],
        filter_profile_id=seeded.profile.id,
        model=RUN_MODEL,
        label_spec=LabelSpec(model=LABEL_MODEL, prompt_version_id=seeded.classify_pv.id),
    )
    fields.update(overrides)
    return RunCreate(**fields)


@pytest.fixture
def lock_manager():
    manager = AdvisoryLockManager("sqlite://")
    yield manager
    manager.close(timeout=1)


class FakeSummarizer:
    """Summarizer double that records calls and can fail on demand."""

    def __init__(self, tokens_in: int = 100, tokens_out: int = 20, cost_usd: float = 0.01):
        self.calls = []
        self.tokens_in = tokens_in
        self.tokens_out = tokens_out
        self.cost_usd = cost_usd
        self.errors = []

    def fail_with(self, *errors):
        self.errors.extend(errors)

    def summarize(self, bundle_text, context):
        self.calls.append((bundle_text, context))
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        return SummaryResult(
            text=f"summary of {context.day_date.isoformat()}",
            tokens_in=self.tokens_in,
            tokens_out=self.tokens_out,
            cost_usd=self.cost_usd,
        )


@pytest.fixture
def summarizer():
    return FakeSummarizer()
