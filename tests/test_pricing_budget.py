"""Tests for model pricing and spend caps."""

from datetime import datetime, timedelta

import pytest
from conftest import make_run_request

from distill.config import settings
from distill.errors import BudgetExceededError, UnknownModelPricingError
from distill.services.budget import (
    BudgetPolicy,
    assert_within_budget,
    get_calendar_day_spend_usd,
    get_run_spend_usd,
    get_spend_caps,
)
from distill.services.pricing import (
    build_pricing_snapshot,
    estimate_cost_from_snapshot,
    estimate_cost_usd,
    get_rate,
    has_pricing,
    split_model,
)
from distill.services.runs import create_run


def test_split_model():
    """Test provider inference."""
    assert split_model("openai/gpt-4o") == ("openai", "gpt-4o")
    assert split_model("Anthropic/claude-3-5-haiku") == ("anthropic", "claude-3-5-haiku")
    assert split_model("claude-3-5-haiku") == ("anthropic", "claude-3-5-haiku")
    assert split_model("gpt-4o-mini") == ("openai", "gpt-4o-mini")


def test_rates():
    """Test rate lookup, stub models and unknown models."""
    assert get_rate("openai/gpt-4o") == (2.5, 10.0)
    assert get_rate("stub_summarizer_v1") == (0.0, 0.0)
    assert not has_pricing("openai/gpt-99")
    with pytest.raises(UnknownModelPricingError):
        get_rate("openai/gpt-99")


def test_estimate_cost():
    """Test per-million pricing."""
    assert estimate_cost_usd("openai/gpt-4o", 1_000_000, 100_000) == pytest.approx(3.5)


def test_pricing_snapshot():
    """Test that a snapshot prices the same as the live table."""
    snapshot = build_pricing_snapshot("anthropic/claude-3-5-haiku")

    assert snapshot.provider == "anthropic"
    assert snapshot.captured_at.endswith("Z")
    assert estimate_cost_from_snapshot(snapshot, 2000, 500) == pytest.approx(
        estimate_cost_usd("anthropic/claude-3-5-haiku", 2000, 500)
    )


def test_assert_within_budget():
    """Test run and day caps."""
    policy = BudgetPolicy(max_usd_per_run=1.0, max_usd_per_day=2.0)

    assert_within_budget(0.5, 0.5, 0.5, policy)
    with pytest.raises(BudgetExceededError) as exc_info:
        assert_within_budget(0.1, 0.95, 0.95, policy)
    assert exc_info.value.details["limit_type"] == "per_run"

    with pytest.raises(BudgetExceededError) as exc_info:
        assert_within_budget(0.1, 0.1, 1.95, policy)
    assert exc_info.value.details["limit_type"] == "per_day"

    assert_within_budget(100.0, 100.0, 100.0, BudgetPolicy())


def test_spend_caps_from_settings(monkeypatch):
    """Test that non-positive caps mean no cap."""
    monkeypatch.setattr(settings, "LLM_MAX_USD_PER_RUN", 0.0)
    monkeypatch.setattr(settings, "LLM_MAX_USD_PER_DAY", 5.0)

    policy = get_spend_caps()

    assert policy.max_usd_per_run is None
    assert policy.max_usd_per_day == 5.0


def test_spend_queries(test_db, seeded):
    """Test run spend and calendar-day spend."""
    run = create_run(test_db, make_run_request(seeded))
    now = datetime(2024, 3, 10, 15, 0, 0)
    first, second, third = run.jobs
    first.cost_usd, first.finished_at = 0.25, now - timedelta(hours=1)
    second.cost_usd, second.finished_at = 0.5, now - timedelta(days=1)
    third.cost_usd = 0.125
    test_db.commit()

    assert get_run_spend_usd(test_db, run.id) == pytest.approx(0.875)
    assert get_calendar_day_spend_usd(test_db, now) == pytest.approx(0.25)
