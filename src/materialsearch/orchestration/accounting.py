"""Token usage bookkeeping and cost estimation.

Provider-reported usage always wins. When a turn finishes without any usage
report, :func:`estimate_usage` approximates token counts at four characters per
token. That ratio is a rough heuristic, not tokenizer-accurate, and the
resulting cost is an estimate rather than a billing figure.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Mapping

from ..utils.payloads import get_field

__all__ = [
    "CHARS_PER_TOKEN",
    "TokenUsage",
    "ModelPricing",
    "DEFAULT_PRICING",
    "estimate_tokens",
    "estimate_usage",
    "resolve_pricing",
    "estimate_cost_usd",
]

LOGGER = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4


@dataclass(slots=True)
class TokenUsage:
    input_tokens: int = 0
    cached_input_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_payload(cls, payload: Any) -> "TokenUsage | None":
        """Read a Responses API usage block or an Agents SDK ``Usage`` object."""

        if payload is None:
            return None
        input_tokens = _as_int(get_field(payload, "input_tokens", "prompt_tokens"))
        output_tokens = _as_int(get_field(payload, "output_tokens", "completion_tokens"))
        input_details = get_field(payload, "input_tokens_details", "prompt_tokens_details")
        output_details = get_field(payload, "output_tokens_details", "completion_tokens_details")
        cached = _as_int(get_field(input_details, "cached_tokens"))
        reasoning = _as_int(get_field(output_details, "reasoning_tokens"))
        total = _as_int(get_field(payload, "total_tokens")) or input_tokens + output_tokens
        if not any((input_tokens, output_tokens, total)):
            return None
        return cls(input_tokens, cached, output_tokens, reasoning, total)

    def add(self, other: "TokenUsage") -> None:
        self.input_tokens += other.input_tokens
        self.cached_input_tokens += other.cached_input_tokens
        self.output_tokens += other.output_tokens
        self.reasoning_tokens += other.reasoning_tokens
        self.total_tokens += other.total_tokens

    def to_dict(self) -> dict[str, int]:
        return {
            "inputTokens": self.input_tokens,
            "cachedInputTokens": self.cached_input_tokens,
            "outputTokens": self.output_tokens,
            "reasoningTokens": self.reasoning_tokens,
            "totalTokens": self.total_tokens,
        }


@dataclass(slots=True, frozen=True)
class ModelPricing:
    """USD per one million tokens."""

    input: float
    cached_input: float
    output: float


DEFAULT_PRICING: Mapping[str, ModelPricing] = {
    "gpt-5": ModelPricing(1.25, 0.125, 10.0),
    "gpt-5-mini": ModelPricing(0.25, 0.025, 2.0),
    "gpt-5-nano": ModelPricing(0.05, 0.005, 0.40),
    "gpt-4.1": ModelPricing(2.0, 0.50, 8.0),
    "gpt-4.1-mini": ModelPricing(0.40, 0.10, 1.60),
    "gpt-4o": ModelPricing(2.50, 1.25, 10.0),
    "gpt-4o-mini": ModelPricing(0.15, 0.075, 0.60),
    "o4-mini": ModelPricing(1.10, 0.275, 4.40),
}


def estimate_tokens(chars: int) -> int:
    if chars <= 0:
        return 0
    return math.ceil(chars / CHARS_PER_TOKEN)


def estimate_usage(
    *,
    query_chars: int,
    injected_chars: int,
    reasoning_chars: int,
    answer_chars: int,
) -> TokenUsage:
    """Approximate usage for a turn that never received a usage report.

    Input covers the user query plus every search result injected into the
    conversation; reasoning traces and the answer count as output.
    """

    input_tokens = estimate_tokens(query_chars + injected_chars)
    reasoning_tokens = estimate_tokens(reasoning_chars)
    output_tokens = estimate_tokens(answer_chars) + reasoning_tokens
    return TokenUsage(
        input_tokens=input_tokens,
        cached_input_tokens=0,
        output_tokens=output_tokens,
        reasoning_tokens=reasoning_tokens,
        total_tokens=input_tokens + output_tokens,
    )


def resolve_pricing(
    model: str,
    overrides: Mapping[str, Mapping[str, float]] | None = None,
) -> tuple[str, ModelPricing] | None:
    """Find pricing for ``model`` by longest matching prefix.

    ``overrides`` maps a model prefix to ``{input, cached_input, output}`` and
    takes precedence over the defaults.
    """

    table: dict[str, ModelPricing] = dict(DEFAULT_PRICING)
    for key, raw in (overrides or {}).items():
        try:
            table[key] = ModelPricing(
                float(raw["input"]),
                float(raw.get("cached_input", raw["input"])),
                float(raw["output"]),
            )
        except (KeyError, TypeError, ValueError):
            LOGGER.warning("Ignoring malformed pricing override for %s", key)
    normalized = (model or "").strip().lower()
    candidates = [key for key in table if normalized.startswith(key.lower())]
    if not candidates:
        return None
    best = max(candidates, key=len)
    return best, table[best]


def estimate_cost_usd(
    model: str,
    usage: TokenUsage,
    overrides: Mapping[str, Mapping[str, float]] | None = None,
) -> float | None:
    """Cost of ``usage`` for ``model``, or ``None`` when the model is unpriced."""

    resolved = resolve_pricing(model, overrides)
    if resolved is None:
        return None
    _, pricing = resolved
    cached = min(usage.cached_input_tokens, usage.input_tokens)
    uncached = usage.input_tokens - cached
    cost = (
        uncached * pricing.input
        + cached * pricing.cached_input
        + usage.output_tokens * pricing.output
    ) / 1_000_000
    return round(cost, 6)


def _as_int(value: Any) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0
