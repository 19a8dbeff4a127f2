"""Classification Pydantic schemas."""

from typing import Optional

from pydantic import BaseModel


class ClassifyRequest(BaseModel):
    import_batch_id: str
    model: str
    prompt_version_id: str
    mode: str  # 'stub' or 'real'


class ClassifyProgress(BaseModel):
    total_atoms: int
    processed_atoms: int


class ClassifyTotals(BaseModel):
    newly_labeled: int
    skipped_already_labeled: int
    labeled_total: int


class ClassifyWarnings(BaseModel):
    skipped_bad_output: int
    aliased_count: int


class ClassifyUsage(BaseModel):
    tokens_in: Optional[int] = None
    tokens_out: Optional[int] = None
    cost_usd: Optional[float] = None


class ClassifyError(BaseModel):
    code: str
    message: str


class ClassifyRunResponse(BaseModel):
    """ClassifyRun status; ``progress``, ``totals`` and ``warnings`` are kept apart."""

    id: str
    import_batch_id: str
    model: str
    prompt_version_id: str
    mode: str
    status: str
    progress: ClassifyProgress
    totals: ClassifyTotals
    warnings: ClassifyWarnings
    usage: ClassifyUsage
    last_error: Optional[ClassifyError] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
