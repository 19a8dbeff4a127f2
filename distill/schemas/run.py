"""Run-related Pydantic schemas."""

from datetime import date
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class LabelSpec(BaseModel):
    """Which labels a run reads: one (model, classify prompt version) pair."""

    model: str
    prompt_version_id: str


class FilterProfileSnapshot(BaseModel):
    name: str
    mode: str
    categories: List[str]


class PromptVersionIds(BaseModel):
    summarize: str


class ModelPricing(BaseModel):
    """Rates captured when a run was created."""

    provider: str
    model: str
    input_per_million_usd: float
    output_per_million_usd: float
    captured_at: str


class RunConfig(BaseModel):
    """Frozen run configuration, written once at creation.

    Ticks read everything they need from here, never from the live filter
    profile or prompt tables.
    """

    model_config = ConfigDict(frozen=True)

    config_version: int = 1
    prompt_version_ids: PromptVersionIds
    label_spec: LabelSpec
    filter_profile_snapshot: FilterProfileSnapshot
    timezone: str
    max_input_tokens: int
    import_batch_ids: List[str]
    pricing_snapshot: Optional[ModelPricing] = None


class RunCreate(BaseModel):
    """Schema for creating a new run."""

    import_batch_id: Optional[str] = None
    import_batch_ids: Optional[List[str]] = None
    start_date: date
    end_date: date
    sources: List[str]
    filter_profile_id: str
    model: str
    label_spec: LabelSpec
    max_input_tokens: Optional[int] = Field(default=None, gt=0)

    @field_validator("sources")
    @classmethod
    def lowercase_sources(cls, value: List[str]) -> List[str]:
        return [s.lower() for s in value]


class JobProgress(BaseModel):
    queued: int = 0
    running: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0


class JobResult(BaseModel):
    """Per-day job state as reported by tick and run detail."""

    day_date: date
    status: str
    attempt: int
    tokens_in: int = 0
    tokens_out: int = 0
    cost_usd: float = 0.0
    error: Optional[Dict[str, Any]] = None
    reused: bool = False


class TickResult(BaseModel):
    run_id: str
    processed: int
    busy: bool = False
    jobs: List[JobResult]
    progress: JobProgress
    run_status: str


class RunTotals(BaseModel):
    jobs: int
    tokens_in: int
    tokens_out: int
    cost_usd: float


class RunSummary(BaseModel):
    id: str
    status: str
    import_batch_ids: List[str]
    start_date: date
    end_date: date
    model: str
    created_at: Optional[str] = None


class RunDetail(BaseModel):
    id: str
    status: str
    import_batch_id: str
    import_batch_ids: List[str]
    start_date: date
    end_date: date
    sources: List[str]
    filter_profile_id: str
    model: str
    config: RunConfig
    progress: JobProgress
    totals: RunTotals
    jobs: List[JobResult]
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ResumeResponse(BaseModel):
    run_id: str
    status: str
    jobs_requeued: int


class ResetResponse(BaseModel):
    run_id: str
    day_date: date
    status: str
    attempt: int


class CancelResponse(BaseModel):
    run_id: str
    status: str
    jobs_cancelled: int


class JobInputPreview(BaseModel):
    """Bundle that the next tick would feed to the summarizer for a day."""

    run_id: str
    day_date: date
    atom_count: int
    estimated_tokens: int
    bundle_hash: str
    bundle_context_hash: str
    text: str


class JobOutputResponse(BaseModel):
    run_id: str
    day_date: date
    stage: str
    model: str
    prompt_version_id: str
    bundle_hash: str
    bundle_context_hash: str
    output_text: str
    output_json: Dict[str, Any]
    created_at: Optional[str] = None
