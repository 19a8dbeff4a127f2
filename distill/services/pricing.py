"""Per-model token pricing.

Rates are USD per 1M tokens and live in the repository; nothing is fetched at
runtime. Stub models are free.
"""

from datetime import datetime
from typing import Dict, Tuple

from distill.errors import UnknownModelPricingError
from distill.schemas.run import ModelPricing

# provider -> model -> (input per 1M, output per 1M)
RATE_TABLE: Dict[str, Dict[str, Tuple[float, float]]] = {
    "openai": {
        "gpt-4o": (2.5, 10.0),
        "gpt-4o-mini": (0.15, 0.6),
        "gpt-4.1": (2.0, 8.0),
        "gpt-4.1-mini": (0.4, 1.6),
        "gpt-4.1-nano": (0.1, 0.4),
    },
    "anthropic": {
        "claude-sonnet-4-5": (3.0, 15.0),
        "claude-3-5-sonnet": (3.0, 15.0),
        "claude-3-5-haiku": (0.8, 4.0),
    },
}


def is_stub_model(model: str) -> bool:
    return model.startswith("stub")


def split_model(model: str) -> Tuple[str, str]:
    """Split ``provider/model`` ids; bare ids get an inferred provider."""
    if "/" in model:
        provider, name = model.split("/", 1)
        return provider.lower(), name
    return infer_provider(model), model


def infer_provider(model: str) -> str:
    lower = model.lower()
    if is_stub_model(lower):
        return "stub"
    if "claude" in lower or "anthropic" in lower:
        return "anthropic"
    return "openai"


def get_rate(model: str) -> Tuple[float, float]:
    """Return (input, output) USD per 1M tokens.

    Raises:
        UnknownModelPricingError: If the model is not in the rate table.
    """
    if is_stub_model(model):
        return 0.0, 0.0
    provider, name = split_model(model)
    rate = RATE_TABLE.get(provider, {}).get(name)
    if rate is None:
        raise UnknownModelPricingError(provider, name)
    return rate


def has_pricing(model: str) -> bool:
    try:
        get_rate(model)
    except UnknownModelPricingError:
        return False
    return True


def estimate_cost_usd(model: str, tokens_in: int, tokens_out: int) -> float:
    input_rate, output_rate = get_rate(model)
    return (tokens_in / 1_000_000) * input_rate + (tokens_out / 1_000_000) * output_rate


def build_pricing_snapshot(model: str) -> ModelPricing:
    """Capture the current rates for a model so a run keeps them."""
    input_rate, output_rate = get_rate(model)
    provider, name = split_model(model)
    return ModelPricing(
        provider=provider,
        model=name,
        input_per_million_usd=input_rate,
        output_per_million_usd=output_rate,
        captured_at=datetime.utcnow().isoformat() + "Z",
    )


def estimate_cost_from_snapshot(snapshot: ModelPricing, tokens_in: int, tokens_out: int) -> float:
    return (tokens_in / 1_000_000) * snapshot.input_per_million_usd + (
        tokens_out / 1_000_000
    ) * snapshot.output_per_million_usd
