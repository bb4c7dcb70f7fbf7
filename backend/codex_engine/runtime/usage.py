"""
Usage accounting for Codex turns.

Codex reports ``input_tokens``, ``cached_input_tokens`` and ``output_tokens``
on ``turn.completed``. Cache accounting is not exposed the way other runtimes
do it, so the cache fields stay at zero.
"""

from typing import Any, Dict, Optional

from .types import TokenUsage

# USD per 1M tokens
CODEX_PRICING = {
    "input": 10.0,
    "output": 30.0,
}


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


class UsageAccountant:
    """Pure helpers; stateless."""

    @staticmethod
    def normalize(raw: Optional[Dict[str, Any]]) -> TokenUsage:
        """
        Normalize a provider usage payload.

        Args:
            raw: ``usage`` object from ``turn.completed`` (may be None)

        Returns:
            TokenUsage with ``total_tokens = max(provided_total, input + output)``
        """
        raw = raw or {}
        input_tokens = _as_int(raw.get("input_tokens"))
        output_tokens = _as_int(raw.get("output_tokens"))
        provided_total = _as_int(raw.get("total_tokens"))

        return TokenUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=max(provided_total, input_tokens + output_tokens),
            cache_read_tokens=0,
            cache_creation_tokens=0,
        )

    @staticmethod
    def estimate_cost(usage: Optional[TokenUsage]) -> float:
        if usage is None:
            return 0.0
        return (
            usage.input_tokens / 1_000_000 * CODEX_PRICING["input"]
            + usage.output_tokens / 1_000_000 * CODEX_PRICING["output"]
        )

    @staticmethod
    def format_cost(cost_usd: float) -> str:
        """``$0.00`` for zero, 4 decimals under one cent, otherwise 2."""
        if cost_usd == 0:
            return "$0.00"
        if cost_usd < 0.01:
            return f"${cost_usd:.4f}"
        return f"${cost_usd:.2f}"
