"""Run lifecycle: creation with a frozen config, controls and read-only views."""

import logging
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from distill.config import settings
from distill.errors import ConflictError, InvalidInputError, NoEligibleDaysError, NotFoundError, TimezoneMismatchError
from distill.models.batch import ImportBatch, Source
from distill.models.job import Job, JobStatus, Output, Stage
from distill.models.profile import FilterMode, FilterProfile, PromptVersion
from distill.models.run import Run, RunBatch, RunStatus
from distill.schemas.run import (
    CancelResponse,
    FilterProfileSnapshot,
    JobInputPreview,
    JobOutputResponse,
    JobProgress,
    PromptVersionIds,
    ResetResponse,
    ResumeResponse,
    RunConfig,
    RunCreate,
    RunDetail,
    RunSummary,
    RunTotals,
)
from distill.services.advisory_lock import AdvisoryLockManager, run_lock_key
from distill.services.advisory_lock import lock_manager as default_lock_manager
from distill.services.atoms import find_eligible_days
from distill.services.bundle import estimate_tokens
from distill.services.pricing import build_pricing_snapshot, has_pricing, is_stub_model
from distill.services.run_status import count_jobs_by_status, recompute_run_status
from distill.services.tick import build_run_bundle, job_to_result, load_run_config

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 200


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() + "Z" if value else None


def validate_run_request(data: RunCreate) -> List[str]:
    """Check request shape and return the requested batch ids.

    Touches no store, so malformed requests never reach the database.
    """
    has_single = data.import_batch_id is not None
    has_list = data.import_batch_ids is not None
    if has_single == has_list:
        raise InvalidInputError("Provide exactly one of import_batch_id or import_batch_ids")

    if has_list:
        batch_ids = list(data.import_batch_ids)
        if not batch_ids:
            raise InvalidInputError("import_batch_ids must not be empty")
        if len(set(batch_ids)) != len(batch_ids):
            raise InvalidInputError("import_batch_ids must not contain duplicates")
    else:
        batch_ids = [data.import_batch_id]

    if not data.sources:
        raise InvalidInputError("sources must not be empty")
    unknown = sorted(set(data.sources) - set(Source.ALL))
    if unknown:
        raise InvalidInputError(f"Unknown sources: {', '.join(unknown)}", details={"sources": unknown})

    if data.start_date > data.end_date:
        raise InvalidInputError("start_date must not be after end_date")

    return batch_ids


def load_canonical_batches(db: Session, batch_ids: List[str]) -> List[ImportBatch]:
    """Load batches in canonical order: created_at, then id."""
    batches = db.query(ImportBatch).filter(ImportBatch.id.in_(batch_ids)).all()
    found = {b.id for b in batches}
    for batch_id in batch_ids:
        if batch_id not in found:
            raise NotFoundError("ImportBatch", batch_id)
    return sorted(batches, key=lambda b: (b.created_at, b.id))


def create_run(db: Session, data: RunCreate) -> Run:
    """Create a run with its frozen config and one QUEUED job per eligible day.

    Raises:
        InvalidInputError: Malformed request.
        NotFoundError: Unknown batch, filter profile or prompt version.
        TimezoneMismatchError: Batches were imported with different timezones.
        NoEligibleDaysError: No day in range has an eligible atom.
    """
    requested_ids = validate_run_request(data)

    batches = load_canonical_batches(db, requested_ids)
    timezones = sorted({b.timezone for b in batches})
    if len(timezones) > 1:
        raise TimezoneMismatchError(timezones, [b.id for b in batches])
    batch_ids = [b.id for b in batches]

    filter_profile = db.query(FilterProfile).filter(FilterProfile.id == data.filter_profile_id).first()
    if not filter_profile:
        raise NotFoundError("FilterProfile", data.filter_profile_id)
    if filter_profile.mode.lower() not in FilterMode.ALL:
        raise InvalidInputError(f"Filter profile has unknown mode: {filter_profile.mode}")

    summarize_prompt = (
        db.query(PromptVersion)
        .filter(PromptVersion.stage == Stage.SUMMARIZE, PromptVersion.is_active.is_(True))
        .order_by(PromptVersion.created_at.desc())
        .first()
    )
    if not summarize_prompt:
        raise NotFoundError("Active summarize prompt version")

    label_prompt = db.query(PromptVersion).filter(PromptVersion.id == data.label_spec.prompt_version_id).first()
    if not label_prompt:
        raise NotFoundError("PromptVersion", data.label_spec.prompt_version_id)

    snapshot = FilterProfileSnapshot(
        name=filter_profile.name,
        mode=filter_profile.mode.lower(),
        categories=[c.lower() for c in filter_profile.categories],
    )

    eligible_days = find_eligible_days(
        db,
        batch_ids,
        data.start_date,
        data.end_date,
        data.sources,
        data.label_spec.model,
        data.label_spec.prompt_version_id,
        snapshot.mode,
        snapshot.categories,
    )
    if not eligible_days:
        raise NoEligibleDaysError()

    pricing_snapshot = None
    if not is_stub_model(data.model) and has_pricing(data.model):
        pricing_snapshot = build_pricing_snapshot(data.model)

    config = RunConfig(
        prompt_version_ids=PromptVersionIds(summarize=summarize_prompt.id),
        label_spec=data.label_spec,
        filter_profile_snapshot=snapshot,
        timezone=timezones[0],
        max_input_tokens=data.max_input_tokens or settings.DEFAULT_MAX_INPUT_TOKENS,
        import_batch_ids=batch_ids,
        pricing_snapshot=pricing_snapshot,
    )

    run = Run(
        status=RunStatus.QUEUED,
        import_batch_id=batch_ids[0],
        start_date=data.start_date,
        end_date=data.end_date,
        sources=list(data.sources),
        filter_profile_id=filter_profile.id,
        model=data.model,
        config=config.model_dump(mode="json"),
    )
    db.add(run)
    db.flush()

    for batch in batches:
        db.add(RunBatch(run_id=run.id, import_batch_id=batch.id, created_at=batch.created_at))
    for day in eligible_days:
        db.add(Job(run_id=run.id, day_date=day, status=JobStatus.QUEUED, attempt=1))

    recompute_run_status(db, run)
    db.commit()
    db.refresh(run)

    logger.info(f"Created run {run.id}: {len(eligible_days)} jobs over {len(batch_ids)} batch(es)")
    return run


def get_run(db: Session, run_id: str) -> Run:
    run = db.query(Run).filter(Run.id == run_id).first()
    if not run:
        raise NotFoundError("Run", run_id)
    return run


def _get_job(db: Session, run_id: str, day_date: date) -> Job:
    job = db.query(Job).filter(Job.run_id == run_id, Job.day_date == day_date).first()
    if not job:
        raise NotFoundError("Job", f"{run_id}/{day_date.isoformat()}")
    return job


def run_batch_ids(run: Run) -> List[str]:
    return [rb.import_batch_id for rb in run.run_batches]


def list_runs(db: Session, limit: int = 50) -> List[RunSummary]:
    """Runs newest first."""
    limit = max(1, min(limit, MAX_LIST_LIMIT))
    runs = db.query(Run).order_by(Run.created_at.desc(), Run.id).limit(limit).all()
    return [
        RunSummary(
            id=r.id,
            status=r.status,
            import_batch_ids=run_batch_ids(r),
            start_date=r.start_date,
            end_date=r.end_date,
            model=r.model,
            created_at=_iso(r.created_at),
        )
        for r in runs
    ]


def get_run_detail(db: Session, run_id: str) -> RunDetail:
    """Status, config echo, progress and totals. Read-only."""
    run = get_run(db, run_id)
    counts = count_jobs_by_status(db, run.id)

    tokens_in, tokens_out, cost_usd, job_count = (
        db.query(
            func.coalesce(func.sum(Job.tokens_in), 0),
            func.coalesce(func.sum(Job.tokens_out), 0),
            func.coalesce(func.sum(Job.cost_usd), 0.0),
            func.count(Job.id),
        )
        .filter(Job.run_id == run.id)
        .one()
    )

    batch_ids = run_batch_ids(run)
    return RunDetail(
        id=run.id,
        status=run.status,
        import_batch_id=batch_ids[0] if batch_ids else run.import_batch_id,
        import_batch_ids=batch_ids,
        start_date=run.start_date,
        end_date=run.end_date,
        sources=run.sources,
        filter_profile_id=run.filter_profile_id,
        model=run.model,
        config=load_run_config(run),
        progress=JobProgress(**counts),
        totals=RunTotals(
            jobs=job_count,
            tokens_in=int(tokens_in),
            tokens_out=int(tokens_out),
            cost_usd=float(cost_usd),
        ),
        jobs=[job_to_result(j) for j in run.jobs],
        created_at=_iso(run.created_at),
        updated_at=_iso(run.updated_at),
    )


def resume_run(db: Session, run_id: str, lock_manager: Optional[AdvisoryLockManager] = None) -> ResumeResponse:
    """Requeue FAILED jobs, and RUNNING jobs stranded by a crashed tick.

    RUNNING jobs are only touched when the run lock is free, so a tick in
    flight keeps its job.

    Raises:
        NotFoundError: Unknown run.
        ConflictError: CANNOT_RESUME_CANCELLED.
    """
    lock_manager = lock_manager or default_lock_manager
    run = get_run(db, run_id)
    if run.status == RunStatus.CANCELLED:
        raise ConflictError("CANNOT_RESUME_CANCELLED", "Cannot resume a cancelled run")

    with lock_manager.hold(run_lock_key(run_id)) as handle:
        statuses = [JobStatus.FAILED]
        if handle is not None:
            statuses.append(JobStatus.RUNNING)

        try:
            jobs = db.query(Job).filter(Job.run_id == run_id, Job.status.in_(statuses)).all()
            for job in jobs:
                job.requeue()
            recompute_run_status(db, run)
            db.commit()
        except Exception:
            db.rollback()
            raise

    logger.info(f"Resumed run {run_id}: {len(jobs)} job(s) requeued")
    return ResumeResponse(run_id=run.id, status=run.status, jobs_requeued=len(jobs))


def reset_job(db: Session, run_id: str, day_date: date) -> ResetResponse:
    """Requeue one job for another attempt.

    The stored output is kept; if the rebuilt bundle hashes still match it the
    next tick reuses it instead of summarizing again.

    Raises:
        NotFoundError: Unknown run or no job for that day.
        ConflictError: CANNOT_RESET_CANCELLED, or JOB_NOT_RESETTABLE for a
            RUNNING or CANCELLED job.
    """
    run = get_run(db, run_id)
    if run.status == RunStatus.CANCELLED:
        raise ConflictError("CANNOT_RESET_CANCELLED", "Cannot reset a job of a cancelled run")

    job = _get_job(db, run_id, day_date)
    if job.status in (JobStatus.RUNNING, JobStatus.CANCELLED):
        raise ConflictError(
            "JOB_NOT_RESETTABLE",
            f"Cannot reset a job in status {job.status}",
            details={"status": job.status},
        )

    job.requeue()
    recompute_run_status(db, run)
    db.commit()

    logger.info(f"Reset job {run_id}/{day_date}: attempt {job.attempt}")
    return ResetResponse(run_id=run.id, day_date=job.day_date, status=job.status, attempt=job.attempt)


def cancel_run(db: Session, run_id: str) -> CancelResponse:
    """Cancel every unfinished job and the run itself.

    Raises:
        NotFoundError: Unknown run.
        ConflictError: ALREADY_COMPLETED.
    """
    run = get_run(db, run_id)
    if run.status == RunStatus.COMPLETED:
        raise ConflictError("ALREADY_COMPLETED", "Cannot cancel a completed run")
    if run.status == RunStatus.CANCELLED:
        return CancelResponse(run_id=run.id, status=run.status, jobs_cancelled=0)

    jobs = (
        db.query(Job)
        .filter(
            Job.run_id == run_id,
            Job.status.in_([JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.FAILED]),
        )
        .all()
    )
    now = datetime.utcnow()
    for job in jobs:
        job.status = JobStatus.CANCELLED
        job.finished_at = job.finished_at or now
    run.status = RunStatus.CANCELLED
    db.commit()

    logger.info(f"Cancelled run {run_id}: {len(jobs)} job(s) cancelled")
    return CancelResponse(run_id=run.id, status=run.status, jobs_cancelled=len(jobs))


def get_job_input(db: Session, run_id: str, day_date: date) -> JobInputPreview:
    """Rebuild the day's bundle for inspection. Read-only, never cached."""
    run = get_run(db, run_id)
    _get_job(db, run_id, day_date)
    bundle = build_run_bundle(db, run, day_date)
    return JobInputPreview(
        run_id=run.id,
        day_date=day_date,
        atom_count=bundle.atom_count,
        estimated_tokens=estimate_tokens(bundle.text),
        bundle_hash=bundle.content_hash,
        bundle_context_hash=bundle.context_hash,
        text=bundle.text,
    )


def get_job_output(db: Session, run_id: str, day_date: date) -> JobOutputResponse:
    get_run(db, run_id)
    job = _get_job(db, run_id, day_date)
    output = db.query(Output).filter(Output.job_id == job.id, Output.stage == Stage.SUMMARIZE).first()
    if not output:
        raise NotFoundError("Output", f"{run_id}/{day_date.isoformat()}")
    return JobOutputResponse(
        run_id=run_id,
        day_date=day_date,
        stage=output.stage,
        model=output.model,
        prompt_version_id=output.prompt_version_id,
        bundle_hash=output.bundle_hash,
        bundle_context_hash=output.bundle_context_hash,
        output_text=output.output_text,
        output_json=output.output_json,
        created_at=_iso(output.created_at),
    )
