"""Summarizer collaborator used by the tick executor."""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from distill.services.bundle import estimate_tokens
from distill.services.hashing import sha256
from distill.services.llm_client import LLMClient
from distill.services.pricing import is_stub_model

logger = logging.getLogger(__name__)

DEFAULT_SUMMARIZE_PROMPT = (
    "Summarize the following messages from one day. "
    "Group related topics, keep concrete decisions and open questions, and write in plain prose."
)


@dataclass
class SummarizeContext:
    model: str
    prompt_version_id: str
    day_date: date
    template_text: Optional[str] = None
    segment_index: Optional[int] = None


@dataclass
class SummaryResult:
    text: str
    tokens_in: int = 0
    tokens_out: int = 0
    cost_usd: float = 0.0


class Summarizer:
    """Turns bundle text into a summary.

    ``stub*`` models produce a deterministic placeholder without any call.
    Everything else goes through the LLM client, which raises ``LlmError``
    subclasses on failure.
    """

    def __init__(self, llm_client: Optional[LLMClient] = None):
        self.llm_client = llm_client or LLMClient()

    def summarize(self, bundle_text: str, context: SummarizeContext) -> SummaryResult:
        if is_stub_model(context.model):
            return self._stub_summary(bundle_text, context)

        messages = [
            {"role": "system", "content": context.template_text or DEFAULT_SUMMARIZE_PROMPT},
            {"role": "user", "content": bundle_text},
        ]
        response = self.llm_client.chat_completion(model=context.model, messages=messages)
        return SummaryResult(
            text=response.text,
            tokens_in=response.tokens_in,
            tokens_out=response.tokens_out,
            cost_usd=response.cost_usd,
        )

    def _stub_summary(self, bundle_text: str, context: SummarizeContext) -> SummaryResult:
        digest = sha256(bundle_text)[:12]
        text = f"[stub summary] {context.day_date.isoformat()} ({len(bundle_text)} chars, {digest})"
        return SummaryResult(text=text, tokens_in=estimate_tokens(bundle_text), tokens_out=estimate_tokens(text))
