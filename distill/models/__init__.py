"""SQLAlchemy ORM models."""

from distill.models.batch import ImportBatch, MessageAtom, MessageLabel
from distill.models.classify_run import ClassifyRun
from distill.models.job import Job, JobStatus, Output, Stage
from distill.models.profile import FilterProfile, PromptVersion
from distill.models.run import Run, RunBatch, RunStatus

__all__ = [
    "ImportBatch",
    "MessageAtom",
    "MessageLabel",
    "FilterProfile",
    "PromptVersion",
    "Run",
    "RunBatch",
    "RunStatus",
    "Job",
    "JobStatus",
    "Output",
    "Stage",
    "ClassifyRun",
]
