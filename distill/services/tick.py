"""Tick executor: advance a run by at most one day-job per call.

Each tick takes the run's advisory lock without waiting. A busy lock means
another tick is in flight and the caller gets the current progress back
unchanged. Job selection, the job's outcome and the run status recompute are
committed together in one transaction.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from distill.errors import LlmError, NotFoundError
from distill.models.job import Job, JobStatus, Output, Stage
from distill.models.profile import PromptVersion
from distill.models.run import Run, RunStatus
from distill.schemas.run import JobProgress, JobResult, RunConfig, TickResult
from distill.services.advisory_lock import AdvisoryLockManager, run_lock_key
from distill.services.advisory_lock import lock_manager as default_lock_manager
from distill.services.budget import (
    BudgetPolicy,
    assert_within_budget,
    get_calendar_day_spend_usd,
    get_run_spend_usd,
    get_spend_caps,
)
from distill.services.bundle import Bundle, build_bundle, estimate_tokens, segment_bundle
from distill.services.pricing import estimate_cost_from_snapshot, is_stub_model
from distill.services.run_status import count_jobs_by_status, recompute_run_status
from distill.services.summarizer import SummarizeContext, Summarizer

logger = logging.getLogger(__name__)


@dataclass
class _Usage:
    tokens_in: int = 0
    tokens_out: int = 0
    cost_usd: float = 0.0


def utc_iso(value: datetime) -> str:
    return value.isoformat(timespec="milliseconds") + "Z"


def job_error_payload(code: str, message: str, retriable: bool) -> str:
    return json.dumps(
        {"code": code, "message": message, "at": utc_iso(datetime.utcnow()), "retriable": retriable},
        sort_keys=True,
    )


def job_to_result(job: Job, reused: bool = False) -> JobResult:
    return JobResult(
        day_date=job.day_date,
        status=job.status,
        attempt=job.attempt,
        tokens_in=job.tokens_in or 0,
        tokens_out=job.tokens_out or 0,
        cost_usd=job.cost_usd or 0.0,
        error=json.loads(job.error) if job.error else None,
        reused=reused,
    )


def load_run_config(run: Run) -> RunConfig:
    return RunConfig.model_validate(run.config)


def build_run_bundle(db: Session, run: Run, day_date) -> Bundle:
    """Bundle for one day of a run, driven only by the frozen config."""
    config = load_run_config(run)
    return build_bundle(
        db,
        day_date=day_date,
        import_batch_ids=config.import_batch_ids,
        sources=run.sources,
        label_spec=config.label_spec,
        filter_profile=config.filter_profile_snapshot,
        model=run.model,
        summarize_prompt_version_id=config.prompt_version_ids.summarize,
        timezone=config.timezone,
    )


def build_tick_result(
    db: Session,
    run: Run,
    jobs: List[JobResult],
    busy: bool = False,
    counts: Optional[Dict[str, int]] = None,
) -> TickResult:
    if counts is None:
        counts = count_jobs_by_status(db, run.id)
    return TickResult(
        run_id=run.id,
        processed=len(jobs),
        busy=busy,
        jobs=jobs,
        progress=JobProgress(**counts),
        run_status=run.status,
    )


def _next_queued_job(db: Session, run_id: str) -> Optional[Job]:
    return (
        db.query(Job)
        .filter(Job.run_id == run_id, Job.status == JobStatus.QUEUED)
        .order_by(Job.day_date)
        .with_for_update(skip_locked=True)
        .first()
    )


def _summarize(
    db: Session,
    run: Run,
    config: RunConfig,
    bundle: Bundle,
    summarizer: Summarizer,
    usage: _Usage,
) -> Tuple[str, Dict[str, Any]]:
    """Summarize a bundle, segment by segment if it is over the token budget.

    Usage is accumulated into ``usage`` as calls complete so partial spend
    survives a failure on a later segment.
    """
    policy: BudgetPolicy = get_spend_caps()
    spent_run = get_run_spend_usd(db, run.id)
    spent_day = get_calendar_day_spend_usd(db)

    prompt_version = db.query(PromptVersion).filter(PromptVersion.id == config.prompt_version_ids.summarize).first()
    template_text = prompt_version.template_text if prompt_version else None

    def call(text: str, segment_index: Optional[int]) -> str:
        assert_within_budget(0.0, spent_run + usage.cost_usd, spent_day + usage.cost_usd, policy)
        result = summarizer.summarize(
            text,
            SummarizeContext(
                model=run.model,
                prompt_version_id=config.prompt_version_ids.summarize,
                day_date=bundle.day_date,
                template_text=template_text,
                segment_index=segment_index,
            ),
        )
        usage.tokens_in += result.tokens_in or 0
        usage.tokens_out += result.tokens_out or 0
        usage.cost_usd += result.cost_usd or 0.0
        assert_within_budget(0.0, spent_run + usage.cost_usd, spent_day + usage.cost_usd, policy)
        return result.text

    estimated = estimate_tokens(bundle.text)
    meta: Dict[str, Any] = {"atom_count": bundle.atom_count, "estimated_input_tokens": estimated}

    if estimated <= config.max_input_tokens:
        meta["segmented"] = False
        return call(bundle.text, None), meta

    segments = segment_bundle(bundle.atoms, bundle.content_hash, config.max_input_tokens)
    logger.info(f"Run {run.id} day {bundle.day_date}: {len(segments)} segments (~{estimated} tokens)")

    summaries = []
    for segment in segments:
        summaries.append(f"## Segment {segment.index + 1}\n\n{call(segment.text, segment.index)}")

    meta.update(
        {
            "segmented": True,
            "segment_count": len(segments),
            "segment_ids": [s.segment_id for s in segments],
        }
    )
    return "\n\n".join(summaries), meta


def _process_job(db: Session, run: Run, job: Job, summarizer: Summarizer) -> JobResult:
    config = load_run_config(run)

    job.status = JobStatus.RUNNING
    job.started_at = datetime.utcnow()
    job.finished_at = None
    db.flush()

    bundle = build_run_bundle(db, run, job.day_date)
    existing = db.query(Output).filter(Output.job_id == job.id, Output.stage == Stage.SUMMARIZE).first()

    if bundle.atom_count == 0:
        if existing is not None:
            db.delete(existing)
        job.status = JobStatus.SUCCEEDED
        job.finished_at = datetime.utcnow()
        logger.info(f"Run {run.id} day {job.day_date}: empty bundle")
        return job_to_result(job)

    if (
        existing is not None
        and existing.bundle_context_hash == bundle.context_hash
        and existing.bundle_hash == bundle.content_hash
    ):
        job.status = JobStatus.SUCCEEDED
        job.finished_at = datetime.utcnow()
        logger.info(f"Run {run.id} day {job.day_date}: reusing output {bundle.context_hash[:16]}")
        return job_to_result(job, reused=True)

    usage = _Usage()
    try:
        output_text, meta = _summarize(db, run, config, bundle, summarizer, usage)
    except LlmError as e:
        logger.warning(f"Run {run.id} day {job.day_date} failed: {e.code}")
        job.add_usage(usage.tokens_in, usage.tokens_out, usage.cost_usd)
        job.status = JobStatus.FAILED
        job.finished_at = datetime.utcnow()
        job.error = job_error_payload(e.code, e.message, e.retriable)
        return job_to_result(job)
    except Exception as e:
        logger.error(f"Run {run.id} day {job.day_date} summarizer error", exc_info=True)
        job.add_usage(usage.tokens_in, usage.tokens_out, usage.cost_usd)
        job.status = JobStatus.FAILED
        job.finished_at = datetime.utcnow()
        job.error = job_error_payload("PROCESSING_ERROR", type(e).__name__, True)
        return job_to_result(job)

    if config.pricing_snapshot is not None and not is_stub_model(run.model) and usage.cost_usd == 0:
        usage.cost_usd = estimate_cost_from_snapshot(config.pricing_snapshot, usage.tokens_in, usage.tokens_out)

    fields = {
        "output_text": output_text,
        "output_json": {"meta": meta},
        "model": run.model,
        "prompt_version_id": config.prompt_version_ids.summarize,
        "label_spec": config.label_spec.model_dump(),
        "bundle_hash": bundle.content_hash,
        "bundle_context_hash": bundle.context_hash,
    }
    if existing is None:
        db.add(Output(job_id=job.id, stage=Stage.SUMMARIZE, **fields))
    else:
        for key, value in fields.items():
            setattr(existing, key, value)
        existing.created_at = datetime.utcnow()

    job.add_usage(usage.tokens_in, usage.tokens_out, usage.cost_usd)
    job.status = JobStatus.SUCCEEDED
    job.finished_at = datetime.utcnow()
    job.error = None
    logger.info(
        f"Run {run.id} day {job.day_date}: succeeded, {bundle.atom_count} atoms, "
        f"tokens {usage.tokens_in}/{usage.tokens_out}"
    )
    return job_to_result(job)


def process_tick(
    db: Session,
    run_id: str,
    summarizer: Optional[Summarizer] = None,
    lock_manager: Optional[AdvisoryLockManager] = None,
) -> TickResult:
    """Run one tick for ``run_id``.

    Raises:
        NotFoundError: If the run does not exist.
        LockManagerClosedError: If the process is shutting down.
    """
    lock_manager = lock_manager or default_lock_manager
    summarizer = summarizer or Summarizer()

    run = db.query(Run).filter(Run.id == run_id).first()
    if not run:
        raise NotFoundError("Run", run_id)

    with lock_manager.hold(run_lock_key(run_id)) as handle:
        if handle is None:
            logger.info(f"Tick for run {run_id} skipped: busy")
            return build_tick_result(db, run, [], busy=True)

        # Another process may have moved the run while we waited for the lock
        db.expire_all()
        run = db.query(Run).filter(Run.id == run_id).first()
        if run.status in RunStatus.TERMINAL:
            return build_tick_result(db, run, [])

        try:
            job = _next_queued_job(db, run_id)
            jobs: List[JobResult] = []
            if job is not None:
                jobs.append(_process_job(db, run, job, summarizer))
            counts = recompute_run_status(db, run)
            db.commit()
        except Exception:
            db.rollback()
            raise

        return build_tick_result(db, run, jobs, counts=counts)
