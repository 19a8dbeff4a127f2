"""Tests for the LLM client and summarizer."""

import json
from datetime import date

import httpx
import pytest
from tenacity import wait_none

from distill.config import settings
from distill.errors import LlmProviderError, MissingApiKeyError
from distill.services.llm_client import LLMClient
from distill.services.summarizer import DEFAULT_SUMMARIZE_PROMPT, SummarizeContext, Summarizer

MODEL = "openai/gpt-4o-mini"


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    monkeypatch.setattr(LLMClient._post.retry, "wait", wait_none())


def _completion(content="A summary.", prompt_tokens=1000, completion_tokens=200):
    return {
        "choices": [{"message": {"role": "assistant", "content": content}}],
        "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens},
    }


def _real_client(handler, monkeypatch):
    monkeypatch.setattr(settings, "OPENROUTER_API_KEY", "test-key")
    return LLMClient(http_client=httpx.Client(transport=httpx.MockTransport(handler)), mode="real")


def test_dry_run_makes_no_request():
    """Test dry-run placeholder responses."""
    client = LLMClient(mode="dry_run")

    response = client.chat_completion(MODEL, [{"role": "user", "content": "hello"}])

    assert response.dry_run is True
    assert response.text.startswith("[DRY RUN] Model: openai/gpt-4o-mini")
    assert response.tokens_in > 0
    assert response.cost_usd == 0.0


def test_real_mode_requires_api_key(monkeypatch):
    """Test that a missing key fails before any request."""
    monkeypatch.setattr(settings, "OPENROUTER_API_KEY", None)
    client = LLMClient(mode="real")

    with pytest.raises(MissingApiKeyError) as exc_info:
        client.chat_completion(MODEL, [{"role": "user", "content": "hello"}])
    assert exc_info.value.retriable is False


def test_real_completion(monkeypatch):
    """Test request shape, usage and cost."""
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=_completion())

    client = _real_client(handler, monkeypatch)
    response = client.chat_completion(
        MODEL,
        [{"role": "system", "content": "Summarize."}, {"role": "user", "content": "day text"}],
    )

    assert response.text == "A summary."
    assert response.tokens_in == 1000
    assert response.tokens_out == 200
    assert response.cost_usd == pytest.approx(1000 / 1e6 * 0.15 + 200 / 1e6 * 0.6)

    request = seen[0]
    assert request.url.path.endswith("/chat/completions")
    assert request.headers["Authorization"] == "Bearer test-key"
    payload = json.loads(request.content)
    assert payload["model"] == MODEL
    assert payload["messages"][0]["content"].startswith("SECURITY WARNINGS:")
    assert payload["messages"][0]["content"].endswith("Summarize.")
    assert payload["messages"][1] == {"role": "user", "content": "day text"}


def test_retryable_status_is_retried(monkeypatch):
    """Test that a 503 is retried and a later success returned."""
    responses = [httpx.Response(503), httpx.Response(200, json=_completion())]
    calls = []

    def handler(request):
        calls.append(request)
        return responses[len(calls) - 1]

    client = _real_client(handler, monkeypatch)

    assert client.chat_completion(MODEL, [{"role": "user", "content": "x"}]).text == "A summary."
    assert len(calls) == 2


def test_retries_are_bounded(monkeypatch):
    """Test that persistent 500s surface as a provider error."""
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500)

    client = _real_client(handler, monkeypatch)

    with pytest.raises(LlmProviderError) as exc_info:
        client.chat_completion(MODEL, [{"role": "user", "content": "x"}])
    assert len(calls) == 3
    assert exc_info.value.code == "LLM_PROVIDER_ERROR"
    assert exc_info.value.details["status"] == 500


def test_client_error_is_not_retried(monkeypatch):
    """Test that a 400 fails on the first attempt."""
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, json={"error": {"message": "bad request"}})

    client = _real_client(handler, monkeypatch)

    with pytest.raises(LlmProviderError) as exc_info:
        client.chat_completion(MODEL, [{"role": "user", "content": "x"}])
    assert len(calls) == 1
    assert exc_info.value.message == "Provider returned HTTP 400"


def test_malformed_response(monkeypatch):
    """Test that a response without content is a provider error."""
    client = _real_client(lambda request: httpx.Response(200, json={"choices": []}), monkeypatch)

    with pytest.raises(LlmProviderError):
        client.chat_completion(MODEL, [{"role": "user", "content": "x"}])


def test_unpriced_model_costs_nothing(monkeypatch):
    """Test that unknown models record zero cost instead of failing."""
    client = _real_client(lambda request: httpx.Response(200, json=_completion()), monkeypatch)

    response = client.chat_completion("mistral/unknown-model", [{"role": "user", "content": "x"}])

    assert response.cost_usd == 0.0
    assert response.tokens_in == 1000


class RecordingClient:
    def __init__(self):
        self.calls = []

    def chat_completion(self, model, messages, temperature=0.2, max_tokens=2000):
        self.calls.append((model, messages))
        return LLMClient(mode="dry_run").chat_completion(model, messages)


def test_stub_summary_is_deterministic():
    """Test that stub models never reach the LLM client."""
    llm = RecordingClient()
    summarizer = Summarizer(llm_client=llm)
    context = SummarizeContext(model="stub_summarizer_v1", prompt_version_id="pv", day_date=date(2024, 1, 15))

    first = summarizer.summarize("bundle text", context)
    second = summarizer.summarize("bundle text", context)

    assert first == second
    assert first.text.startswith("[stub summary] 2024-01-15 (11 chars, ")
    assert first.cost_usd == 0.0
    assert llm.calls == []


def test_summary_uses_prompt_template():
    """Test that the prompt version's template is the system message."""
    llm = RecordingClient()
    summarizer = Summarizer(llm_client=llm)

    summarizer.summarize(
        "bundle text",
        SummarizeContext(model=MODEL, prompt_version_id="pv", day_date=date(2024, 1, 15), template_text="Be brief."),
    )
    summarizer.summarize("bundle text", SummarizeContext(model=MODEL, prompt_version_id="pv", day_date=date(2024, 1, 15)))

    assert llm.calls[0][1] == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "bundle text"},
    ]
    assert llm.calls[1][1][0]["content"] == DEFAULT_SUMMARIZE_PROMPT
