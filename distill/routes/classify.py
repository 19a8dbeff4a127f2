"""Classification routes."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from distill.database import get_db
from distill.schemas.classify import ClassifyRequest, ClassifyRunResponse
from distill.services.classify import classify_batch, classify_run_to_response, get_classify_run
from distill.services.llm_client import LLMClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/distill", tags=["classify"])


def get_llm_client() -> LLMClient:
    return LLMClient()


@router.post("/classify", response_model=ClassifyRunResponse)
def classify(data: ClassifyRequest, db: Session = Depends(get_db), llm_client: LLMClient = Depends(get_llm_client)):
    """Classify every atom of an import batch under one label spec."""
    classify_run = classify_batch(
        db,
        import_batch_id=data.import_batch_id,
        model=data.model,
        prompt_version_id=data.prompt_version_id,
        mode=data.mode,
        llm_client=llm_client,
    )
    return classify_run_to_response(classify_run)


@router.get("/classify-runs/{classify_run_id}", response_model=ClassifyRunResponse)
def get_classify_run_status(classify_run_id: str, db: Session = Depends(get_db)):
    """Read-only progress of a classify run."""
    return classify_run_to_response(get_classify_run(db, classify_run_id))
