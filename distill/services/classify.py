"""Batch classification with persisted progress.

Every atom in a batch gets at most one label per (model, prompt version).
Atoms that already have one are skipped. Stub mode derives the category from
the atom's stable id; real mode asks the LLM once per atom.
"""

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import inspect, select
from sqlalchemy.orm import Session

from distill.config import settings
from distill.errors import InvalidInputError, LlmBadOutputError, NotFoundError
from distill.models.batch import ImportBatch, MessageAtom, MessageLabel
from distill.models.classify_run import ClassifyRun
from distill.models.profile import PromptVersion
from distill.schemas.classify import (
    ClassifyError,
    ClassifyProgress,
    ClassifyRunResponse,
    ClassifyTotals,
    ClassifyUsage,
    ClassifyWarnings,
)
from distill.services.budget import assert_within_budget, get_calendar_day_spend_usd, get_spend_caps
from distill.services.hashing import hash_to_uint32, sha256
from distill.services.llm_client import LLMClient

logger = logging.getLogger(__name__)

CATEGORIES = (
    "work",
    "learning",
    "creative",
    "mundane",
    "personal",
    "other",
    "medical",
    "mental_health",
    "addiction_recovery",
    "intimacy",
    "financial",
    "legal",
    "embarrassing",
)

# Order matters: stub labels index into this tuple
STUB_CATEGORIES = ("work", "learning", "creative", "mundane", "personal", "other")

CATEGORY_ALIASES = {
    "ethical": "personal",
    "ethics": "personal",
    "moral": "personal",
    "values": "personal",
}

STUB_CONFIDENCE = 0.5

MODES = ("stub", "real")

USAGE_FIELDS = ("tokens_in", "tokens_out", "cost_usd")

DEFAULT_CLASSIFY_PROMPT = (
    "Classify the user's message into exactly one category from: "
    + ", ".join(CATEGORIES)
    + '. Respond with JSON only: {"category": "<category>", "confidence": <0..1>}.'
)


class ClassifyRunStatus:
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class ParsedLabel:
    category: str
    confidence: float
    aliased_from: Optional[str] = None


def compute_stub_category(atom_stable_id: str) -> str:
    return STUB_CATEGORIES[hash_to_uint32(sha256(atom_stable_id)) % len(STUB_CATEGORIES)]


def _normalize_category(raw: str) -> str:
    return re.sub(r"[\s\-]+", "_", raw.strip().lower())


def _load_json(text: str):
    stripped = text.strip()
    fenced = re.match(r"^```[a-zA-Z]*\s*(.*?)\s*```$", stripped, re.DOTALL)
    if fenced:
        stripped = fenced.group(1).strip()
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        pass

    # Chatter before or after the object
    start, end = stripped.find("{"), stripped.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(stripped[start : end + 1])
        except json.JSONDecodeError:
            pass
    raise LlmBadOutputError("Classifier output is not valid JSON")


def parse_classify_output(text: str) -> ParsedLabel:
    """Parse ``{"category": ..., "confidence": ...}`` from model output.

    Tolerates code fences and chatter around the JSON object.

    Raises:
        LlmBadOutputError: If no valid label can be read.
    """
    data = _load_json(text)
    if not isinstance(data, dict):
        raise LlmBadOutputError("Classifier output is not a JSON object")

    raw_category = data.get("category")
    if not isinstance(raw_category, str) or not raw_category.strip():
        raise LlmBadOutputError("Classifier output is missing category")

    category = _normalize_category(raw_category)
    aliased_from = None
    if category in CATEGORY_ALIASES:
        aliased_from = raw_category
        category = CATEGORY_ALIASES[category]
    if category not in CATEGORIES:
        raise LlmBadOutputError("Classifier output has invalid category", {"category": category[:64]})

    confidence = data.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        raise LlmBadOutputError("Classifier output is missing numeric confidence")
    if confidence < 0 or confidence > 1:
        raise LlmBadOutputError("Classifier confidence out of range")

    return ParsedLabel(category=category, confidence=float(confidence), aliased_from=aliased_from)


def _labeled_count(db: Session, import_batch_id: str, model: str, prompt_version_id: str) -> int:
    return (
        db.query(MessageLabel)
        .join(MessageAtom, MessageAtom.id == MessageLabel.message_atom_id)
        .filter(
            MessageAtom.import_batch_id == import_batch_id,
            MessageLabel.model == model,
            MessageLabel.prompt_version_id == prompt_version_id,
        )
        .count()
    )


def classify_batch(
    db: Session,
    import_batch_id: str,
    model: str,
    prompt_version_id: str,
    mode: str,
    llm_client: Optional[LLMClient] = None,
    checkpoint_every: Optional[int] = None,
) -> ClassifyRun:
    """Label every unlabeled atom of a batch and return the finished ClassifyRun.

    Progress is committed every ``checkpoint_every`` atoms. If an exception
    escapes, uncommitted labels roll back, the run is marked failed with
    counters at the last checkpoint, and the exception is re-raised.

    Raises:
        InvalidInputError: Unknown mode, or a non-stub model in stub mode.
        NotFoundError: Unknown batch or prompt version.
    """
    if mode not in MODES:
        raise InvalidInputError(f"mode must be one of: {', '.join(MODES)}")
    if mode == "stub" and not model.startswith("stub"):
        raise InvalidInputError("stub mode requires a stub model")

    if not db.query(ImportBatch).filter(ImportBatch.id == import_batch_id).first():
        raise NotFoundError("ImportBatch", import_batch_id)
    prompt_version = db.query(PromptVersion).filter(PromptVersion.id == prompt_version_id).first()
    if not prompt_version:
        raise NotFoundError("PromptVersion", prompt_version_id)

    checkpoint_every = checkpoint_every or settings.CLASSIFY_CHECKPOINT_EVERY
    total_atoms = db.query(MessageAtom).filter(MessageAtom.import_batch_id == import_batch_id).count()
    already_labeled = _labeled_count(db, import_batch_id, model, prompt_version_id)

    classify_run = ClassifyRun(
        import_batch_id=import_batch_id,
        model=model,
        prompt_version_id=prompt_version_id,
        mode=mode,
        status=ClassifyRunStatus.RUNNING,
        total_atoms=total_atoms,
        processed_atoms=already_labeled,
        skipped_already_labeled=already_labeled,
        labeled_total=already_labeled,
    )
    if mode == "real":
        classify_run.tokens_in = 0
        classify_run.tokens_out = 0
        classify_run.cost_usd = 0.0
    db.add(classify_run)
    db.commit()
    run_id = classify_run.id

    logger.info(f"Classify run {run_id} started: {total_atoms} atoms, {already_labeled} already labeled")

    try:
        _classify_pending(db, classify_run, prompt_version, llm_client, checkpoint_every)
        db.flush()
        classify_run.labeled_total = _labeled_count(db, import_batch_id, model, prompt_version_id)
        classify_run.status = ClassifyRunStatus.SUCCEEDED
        classify_run.finished_at = datetime.utcnow()
        db.commit()
    except Exception as e:
        # Paid calls since the last checkpoint stay on the spend ledger
        loaded = inspect(classify_run).dict
        usage = {key: loaded.get(key) for key in USAGE_FIELDS}
        db.rollback()
        classify_run = db.query(ClassifyRun).filter(ClassifyRun.id == run_id).first()
        for key, value in usage.items():
            if value is not None:
                setattr(classify_run, key, value)
        code = getattr(e, "code", None) or "CLASSIFY_ERROR"
        message = getattr(e, "message", None) or type(e).__name__
        classify_run.status = ClassifyRunStatus.FAILED
        classify_run.error_json = {"code": code, "message": message}
        classify_run.finished_at = datetime.utcnow()
        db.commit()
        logger.error(f"Classify run {run_id} failed at {classify_run.processed_atoms} atoms: {code}")
        raise

    logger.info(f"Classify run {run_id} succeeded: {classify_run.newly_labeled} newly labeled")
    return classify_run


def _classify_pending(
    db: Session,
    classify_run: ClassifyRun,
    prompt_version: PromptVersion,
    llm_client: Optional[LLMClient],
    checkpoint_every: int,
):
    labeled_ids = select(MessageLabel.message_atom_id).where(
        MessageLabel.model == classify_run.model,
        MessageLabel.prompt_version_id == classify_run.prompt_version_id,
    )
    pending = (
        db.query(MessageAtom)
        .filter(
            MessageAtom.import_batch_id == classify_run.import_batch_id,
            MessageAtom.id.notin_(labeled_ids),
        )
        .order_by(MessageAtom.timestamp_utc, MessageAtom.atom_stable_id)
        .all()
    )

    if classify_run.mode == "real" and llm_client is None:
        llm_client = LLMClient()
    policy = get_spend_caps()
    spent_day = get_calendar_day_spend_usd(db) if classify_run.mode == "real" else 0.0
    system_prompt = prompt_version.template_text or DEFAULT_CLASSIFY_PROMPT

    since_checkpoint = 0
    for atom in pending:
        if classify_run.mode == "stub":
            label = ParsedLabel(category=compute_stub_category(atom.atom_stable_id), confidence=STUB_CONFIDENCE)
        else:
            label = _classify_real(classify_run, atom, system_prompt, llm_client, policy, spent_day)

        if label is not None:
            db.add(
                MessageLabel(
                    message_atom_id=atom.id,
                    category=label.category,
                    confidence=label.confidence,
                    model=classify_run.model,
                    prompt_version_id=classify_run.prompt_version_id,
                )
            )
            classify_run.newly_labeled += 1
            classify_run.labeled_total += 1
            if label.aliased_from is not None:
                classify_run.aliased_count += 1

        classify_run.processed_atoms += 1
        since_checkpoint += 1
        if since_checkpoint >= checkpoint_every:
            db.commit()
            since_checkpoint = 0


def _classify_real(classify_run, atom, system_prompt, llm_client, policy, spent_day) -> Optional[ParsedLabel]:
    """One LLM call; returns None for unusable output."""
    assert_within_budget(0.0, classify_run.cost_usd, spent_day + classify_run.cost_usd, policy)
    response = llm_client.chat_completion(
        model=classify_run.model,
        messages=[
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": atom.text},
        ],
        temperature=0.0,
        max_tokens=100,
    )
    classify_run.tokens_in += response.tokens_in
    classify_run.tokens_out += response.tokens_out
    classify_run.cost_usd += response.cost_usd

    try:
        return parse_classify_output(response.text)
    except LlmBadOutputError as e:
        logger.warning(f"Classify run {classify_run.id}: bad output for atom {atom.id}: {e.message}")
        classify_run.skipped_bad_output += 1
        return None


def get_classify_run(db: Session, classify_run_id: str) -> ClassifyRun:
    classify_run = db.query(ClassifyRun).filter(ClassifyRun.id == classify_run_id).first()
    if not classify_run:
        raise NotFoundError("ClassifyRun", classify_run_id)
    return classify_run


def classify_run_to_response(classify_run: ClassifyRun) -> ClassifyRunResponse:
    error = classify_run.error_json
    return ClassifyRunResponse(
        id=classify_run.id,
        import_batch_id=classify_run.import_batch_id,
        model=classify_run.model,
        prompt_version_id=classify_run.prompt_version_id,
        mode=classify_run.mode,
        status=classify_run.status,
        progress=ClassifyProgress(
            total_atoms=classify_run.total_atoms,
            processed_atoms=classify_run.processed_atoms,
        ),
        totals=ClassifyTotals(
            newly_labeled=classify_run.newly_labeled,
            skipped_already_labeled=classify_run.skipped_already_labeled,
            labeled_total=classify_run.labeled_total,
        ),
        warnings=ClassifyWarnings(
            skipped_bad_output=classify_run.skipped_bad_output,
            aliased_count=classify_run.aliased_count,
        ),
        usage=ClassifyUsage(
            tokens_in=classify_run.tokens_in,
            tokens_out=classify_run.tokens_out,
            cost_usd=classify_run.cost_usd,
        ),
        last_error=ClassifyError(**error) if error else None,
        started_at=classify_run.started_at.isoformat() + "Z" if classify_run.started_at else None,
        finished_at=classify_run.finished_at.isoformat() + "Z" if classify_run.finished_at else None,
    )
