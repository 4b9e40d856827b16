"""
Model Registry — validated lookup from model id to tier, pricing and provider
=============================================================================
Model names arrive as free-form strings from PRD files, CLI flags and
history rows. Everything that needs a model's tier or price goes through
get_model(), which accepts ids and aliases case-insensitively and raises
UnknownModelError for anything not registered.

Pricing is USD per 1M tokens. The first model listed for a tier is that
tier's default. Premium pricing dominates every other tier, which the cost
estimator relies on for its optimistic <= expected <= pessimistic ordering.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from .models import TIER_ORDER, Tier


class UnknownModelError(KeyError):
    """Raised when a model id or alias is not in the registry."""

    def __init__(self, model: str) -> None:
        super().__init__(model)
        self.model = model

    def __str__(self) -> str:
        known = ", ".join(m.id for m in MODELS)
        return f"Unknown model '{self.model}'. Known models: {known}"


@dataclass(frozen=True)
class ModelInfo:
    id: str
    tier: Tier
    provider: str
    input_cost: float       # per 1M input tokens
    output_cost: float      # per 1M output tokens
    context_window: int
    aliases: tuple[str, ...] = field(default=())
    enabled: bool = True


# ─────────────────────────────────────────────
# Providers
# ─────────────────────────────────────────────

PROVIDER_KEYS: dict[str, str] = {
    "anthropic": "ANTHROPIC_API_KEY",
    "google": "GOOGLE_API_KEY",
    "openai": "OPENAI_API_KEY",
    "groq": "GROQ_API_KEY",
    "vibeproxy": "VIBEPROXY_API_KEY",
}


# ─────────────────────────────────────────────
# Registry (tier default first)
# ─────────────────────────────────────────────

MODELS: tuple[ModelInfo, ...] = (
    # free
    ModelInfo("vibe-opus", Tier.FREE, "vibeproxy", 0.0, 0.0, 200_000,
              ("vibeproxy-opus",)),
    ModelInfo("vibe-sonnet", Tier.FREE, "vibeproxy", 0.0, 0.0, 200_000,
              ("vibeproxy-sonnet",)),
    ModelInfo("gemini-3-pro", Tier.FREE, "vibeproxy", 0.0, 0.0, 1_000_000,
              ("gemini-3",)),
    ModelInfo("llama-70b", Tier.FREE, "groq", 0.0, 0.0, 128_000,
              ("llama", "llama-3.3-70b")),
    ModelInfo("llama-8b", Tier.FREE, "groq", 0.0, 0.0, 128_000,
              ("llama-3.1-8b",)),
    ModelInfo("mixtral", Tier.FREE, "groq", 0.0, 0.0, 32_000,
              ("mixtral-8x7b",)),
    ModelInfo("deepseek-r1", Tier.FREE, "groq", 0.0, 0.0, 128_000,
              ("deepseek",)),
    # cheap
    ModelInfo("flash", Tier.CHEAP, "google", 0.075, 0.30, 1_000_000,
              ("gemini-flash", "gemini-2.0-flash")),
    ModelInfo("haiku", Tier.CHEAP, "anthropic", 0.25, 1.25, 200_000,
              ("claude-haiku",)),
    ModelInfo("gpt-4o-mini", Tier.CHEAP, "openai", 0.15, 0.60, 128_000,
              ("4o-mini",)),
    # mid
    ModelInfo("pro", Tier.MID, "google", 1.25, 5.00, 2_000_000,
              ("gemini-pro", "gemini-1.5-pro")),
    ModelInfo("sonnet", Tier.MID, "anthropic", 3.0, 15.0, 200_000,
              ("claude-sonnet",)),
    ModelInfo("gpt-4o", Tier.MID, "openai", 2.50, 10.0, 128_000,
              ("4o",)),
    # premium
    ModelInfo("opus", Tier.PREMIUM, "anthropic", 15.0, 75.0, 200_000,
              ("claude-opus",)),
    ModelInfo("o1", Tier.PREMIUM, "openai", 15.0, 60.0, 128_000,
              ("o1-preview",)),
    ModelInfo("thinking", Tier.PREMIUM, "google", 10.0, 40.0, 1_000_000,
              ("gemini-thinking",)),
)

_BY_NAME: dict[str, ModelInfo] = {}
for _m in MODELS:
    _BY_NAME[_m.id.lower()] = _m
    for _alias in _m.aliases:
        _BY_NAME[_alias.lower()] = _m


# ─────────────────────────────────────────────
# Lookups
# ─────────────────────────────────────────────

def find_model(name: str) -> Optional[ModelInfo]:
    """Case-insensitive lookup by id or alias; None when unknown."""
    return _BY_NAME.get(name.strip().lower())


def get_model(name: str) -> ModelInfo:
    info = find_model(name)
    if info is None:
        raise UnknownModelError(name)
    return info


def is_known_model(name: str) -> bool:
    return find_model(name) is not None


def models_in_tier(tier: Tier) -> list[ModelInfo]:
    return [m for m in MODELS if m.tier == tier and m.enabled]


def default_model_for_tier(tier: Tier) -> str:
    return models_in_tier(tier)[0].id


def tier_of(name: str) -> Tier:
    return get_model(name).tier


def next_tier(tier: Tier) -> Optional[Tier]:
    idx = TIER_ORDER.index(tier)
    return TIER_ORDER[idx + 1] if idx + 1 < len(TIER_ORDER) else None


def previous_tier(tier: Tier) -> Optional[Tier]:
    idx = TIER_ORDER.index(tier)
    return TIER_ORDER[idx - 1] if idx > 0 else None


def escalation_path(name: str) -> list[str]:
    """
    Models to try after `name` fails: the rest of its tier in registry
    order, then every model of each higher tier.

    The premium default is the ceiling and has no path.
    """
    info = get_model(name)
    if info.id == default_model_for_tier(Tier.PREMIUM):
        return []
    path = [m.id for m in models_in_tier(info.tier) if m.id != info.id]
    for tier in TIER_ORDER[info.tier.rank + 1:]:
        path.extend(m.id for m in models_in_tier(tier))
    return path


def estimate_cost(name: str, input_tokens: int, output_tokens: int) -> float:
    info = get_model(name)
    return (input_tokens / 1_000_000) * info.input_cost + \
           (output_tokens / 1_000_000) * info.output_cost


def cheapest_model() -> ModelInfo:
    """Cheapest enabled model by combined price; first registered wins ties."""
    return min(
        (m for m in MODELS if m.enabled),
        key=lambda m: m.input_cost + m.output_cost,
    )


def available_models(env: Optional[dict[str, str]] = None) -> list[ModelInfo]:
    """Enabled models whose provider API key is present in the environment."""
    env = os.environ if env is None else env
    return [
        m for m in MODELS
        if m.enabled and env.get(PROVIDER_KEYS.get(m.provider, ""))
    ]
