"""Tests for batch classification."""

from datetime import datetime, timedelta

import pytest

from distill.errors import InvalidInputError, LlmBadOutputError, LlmProviderError, NotFoundError
from distill.models.batch import MessageLabel
from distill.models.classify_run import ClassifyRun
from distill.services.classify import (
    STUB_CATEGORIES,
    STUB_CONFIDENCE,
    classify_batch,
    classify_run_to_response,
    compute_stub_category,
    get_classify_run,
    parse_classify_output,
)
from distill.services.llm_client import LlmResponse

STUB_MODEL = "stub_v1"
REAL_MODEL = "openai/gpt-4o-mini"


class FakeLLMClient:
    """Returns queued replies; exceptions in the queue are raised."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    def chat_completion(self, model, messages, temperature=0.2, max_tokens=2000):
        self.calls.append(messages)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return LlmResponse(text=reply, tokens_in=10, tokens_out=5, cost_usd=0.001)


@pytest.fixture
def batch_with_atoms(factory):
    batch = factory.batch()
    base = datetime(2024, 1, 15, 9, 0, 0)
    atoms = [
        factory.atom(batch, base + timedelta(minutes=i), f"Message {i}", role="user" if i % 2 == 0 else "assistant")
        for i in range(4)
    ]
    return batch, atoms


@pytest.fixture
def classify_pv(factory):
    return factory.prompt_version("classify")


def test_stub_mode_labels_every_atom(test_db, batch_with_atoms, classify_pv):
    """Test deterministic stub labels for user and assistant atoms."""
    batch, atoms = batch_with_atoms

    classify_run = classify_batch(test_db, batch.id, STUB_MODEL, classify_pv.id, "stub")

    assert classify_run.status == "succeeded"
    assert classify_run.total_atoms == 4
    assert classify_run.processed_atoms == 4
    assert classify_run.newly_labeled == 4
    assert classify_run.tokens_in is None
    for atom in atoms:
        label = test_db.query(MessageLabel).filter(MessageLabel.message_atom_id == atom.id).one()
        assert label.category == compute_stub_category(atom.atom_stable_id)
        assert label.confidence == STUB_CONFIDENCE


def test_stub_category_is_stable():
    """Test that the stub category depends only on the stable id."""
    assert compute_stub_category("abc") == compute_stub_category("abc")
    assert compute_stub_category("abc") in STUB_CATEGORIES


def test_already_labeled_atoms_are_skipped(test_db, batch_with_atoms, classify_pv, factory):
    """Test atom-level idempotency under the same label spec."""
    batch, atoms = batch_with_atoms
    factory.label(atoms[0], "work", classify_pv, model=STUB_MODEL)

    first = classify_batch(test_db, batch.id, STUB_MODEL, classify_pv.id, "stub")
    assert first.skipped_already_labeled == 1
    assert first.newly_labeled == 3
    assert first.processed_atoms == 4
    assert first.labeled_total == 4

    second = classify_batch(test_db, batch.id, STUB_MODEL, classify_pv.id, "stub")
    assert second.skipped_already_labeled == 4
    assert second.newly_labeled == 0
    assert test_db.query(MessageLabel).count() == 4


def test_other_label_spec_is_not_skipped(test_db, batch_with_atoms, classify_pv, factory):
    """Test that labels under another model do not count as done."""
    batch, atoms = batch_with_atoms
    factory.label(atoms[0], "work", classify_pv, model="stub_v0")

    classify_run = classify_batch(test_db, batch.id, STUB_MODEL, classify_pv.id, "stub")

    assert classify_run.skipped_already_labeled == 0
    assert classify_run.newly_labeled == 4


def test_empty_batch(test_db, factory, classify_pv):
    """Test that a batch without atoms succeeds with zero progress."""
    batch = factory.batch()

    classify_run = classify_batch(test_db, batch.id, STUB_MODEL, classify_pv.id, "stub")

    assert classify_run.status == "succeeded"
    assert classify_run.total_atoms == 0
    assert classify_run.processed_atoms == 0


def test_real_mode_counts_bad_output_and_aliases(test_db, batch_with_atoms, classify_pv):
    """Test that malformed output is skipped without aborting the batch."""
    batch, _atoms = batch_with_atoms
    client = FakeLLMClient(
        '{"category": "work", "confidence": 0.9}',
        '```json\n{"category": "Ethics", "confidence": 0.7}\n```',
        "I think this is about work.",
        '{"category": "banana", "confidence": 0.5}',
    )

    classify_run = classify_batch(test_db, batch.id, REAL_MODEL, classify_pv.id, "real", llm_client=client)

    assert classify_run.status == "succeeded"
    assert classify_run.processed_atoms == 4
    assert classify_run.newly_labeled == 2
    assert classify_run.skipped_bad_output == 2
    assert classify_run.aliased_count == 1
    assert classify_run.tokens_in == 40
    assert classify_run.tokens_out == 20
    assert classify_run.cost_usd == pytest.approx(0.004)
    categories = sorted(label.category for label in test_db.query(MessageLabel).all())
    assert categories == ["personal", "work"]
    assert client.calls[0][1]["content"] == "Message 0"


def test_real_mode_failure_keeps_checkpoint(test_db, batch_with_atoms, classify_pv):
    """Test that a collaborator failure marks the run failed at the last checkpoint."""
    batch, _atoms = batch_with_atoms
    client = FakeLLMClient(
        '{"category": "work", "confidence": 0.9}',
        '{"category": "learning", "confidence": 0.8}',
        LlmProviderError("openrouter", "Provider returned HTTP 500"),
    )

    with pytest.raises(LlmProviderError):
        classify_batch(
            test_db, batch.id, REAL_MODEL, classify_pv.id, "real", llm_client=client, checkpoint_every=2
        )

    classify_run = test_db.query(ClassifyRun).one()
    assert classify_run.status == "failed"
    assert classify_run.processed_atoms == 2
    assert classify_run.error_json == {"code": "LLM_PROVIDER_ERROR", "message": "Provider returned HTTP 500"}
    assert classify_run.finished_at is not None
    assert test_db.query(MessageLabel).count() == 2

    response = classify_run_to_response(get_classify_run(test_db, classify_run.id))
    assert response.last_error.code == "LLM_PROVIDER_ERROR"
    assert response.progress.processed_atoms == 2
    assert response.warnings.skipped_bad_output == 0


def test_failure_mid_checkpoint_keeps_usage(test_db, batch_with_atoms, classify_pv):
    """Test that usage of calls after the last checkpoint survives the rollback."""
    batch, _atoms = batch_with_atoms
    client = FakeLLMClient(
        '{"category": "work", "confidence": 0.9}',
        '{"category": "learning", "confidence": 0.8}',
        '{"category": "creative", "confidence": 0.7}',
        LlmProviderError("openrouter", "Provider returned HTTP 500"),
    )

    with pytest.raises(LlmProviderError):
        classify_batch(
            test_db, batch.id, REAL_MODEL, classify_pv.id, "real", llm_client=client, checkpoint_every=2
        )

    test_db.expire_all()
    classify_run = test_db.query(ClassifyRun).one()
    assert classify_run.status == "failed"
    assert classify_run.processed_atoms == 2
    assert test_db.query(MessageLabel).count() == 2
    assert classify_run.tokens_in == 30
    assert classify_run.tokens_out == 15
    assert classify_run.cost_usd == pytest.approx(0.003)


def test_labeled_total_counts_unflushed_labels(test_db, batch_with_atoms, classify_pv):
    """Test the final label count when no checkpoint commit happened mid-run."""
    batch, _atoms = batch_with_atoms

    classify_run = classify_batch(test_db, batch.id, STUB_MODEL, classify_pv.id, "stub", checkpoint_every=100)

    test_db.expire_all()
    stored = test_db.query(ClassifyRun).one()
    assert stored.newly_labeled == 4
    assert stored.labeled_total == 4
    assert classify_run_to_response(stored).totals.labeled_total == 4


def test_classify_preconditions(test_db, batch_with_atoms, classify_pv):
    """Test mode, model and reference validation."""
    batch, _atoms = batch_with_atoms

    with pytest.raises(InvalidInputError):
        classify_batch(test_db, batch.id, STUB_MODEL, classify_pv.id, "fast")
    with pytest.raises(InvalidInputError):
        classify_batch(test_db, batch.id, REAL_MODEL, classify_pv.id, "stub")
    with pytest.raises(NotFoundError):
        classify_batch(test_db, "missing", STUB_MODEL, classify_pv.id, "stub")
    with pytest.raises(NotFoundError):
        classify_batch(test_db, batch.id, STUB_MODEL, "missing", "stub")
    assert test_db.query(ClassifyRun).count() == 0


def test_get_classify_run_not_found(test_db):
    """Test NotFound for an unknown classify run."""
    with pytest.raises(NotFoundError):
        get_classify_run(test_db, "missing")


@pytest.mark.parametrize(
    "text, category, confidence",
    [
        ('{"category": "work", "confidence": 0.9}', "work", 0.9),
        ('Sure! {"category": "Mental Health", "confidence": 1}', "mental_health", 1.0),
        ('```\n{"category": "addiction-recovery", "confidence": 0}\n```', "addiction_recovery", 0.0),
    ],
)
def test_parse_classify_output(text, category, confidence):
    """Test tolerant parsing of classifier output."""
    label = parse_classify_output(text)

    assert label.category == category
    assert label.confidence == confidence
    assert label.aliased_from is None


def test_parse_classify_output_alias():
    """Test that aliased categories are mapped and reported."""
    label = parse_classify_output('{"category": "moral", "confidence": 0.6}')

    assert label.category == "personal"
    assert label.aliased_from == "moral"


@pytest.mark.parametrize(
    "text",
    [
        "no json here",
        "[1, 2]",
        '{"confidence": 0.5}',
        '{"category": "sports", "confidence": 0.5}',
        '{"category": "work"}',
        '{"category": "work", "confidence": true}',
        '{"category": "work", "confidence": 1.5}',
    ],
)
def test_parse_classify_output_rejects(text):
    """Test that unusable output raises LlmBadOutputError."""
    with pytest.raises(LlmBadOutputError):
        parse_classify_output(text)
