"""Cost estimation for provider usage.

Pricing is USD per 1M tokens. Model-level entries win; otherwise the
provider default applies. Estimates only, never billing-grade.
"""

import logging
import math
from typing import Optional

logger = logging.getLogger(__name__)

PRICING: dict[str, dict[str, dict[str, float]]] = {
    "gemini": {
        "default": {"input": 0.075, "output": 0.30},
        "gemini-2.5-flash": {"input": 0.075, "output": 0.30},
        "gemini-2.5-pro": {"input": 1.25, "output": 10.00},
    },
    "openai": {
        "default": {"input": 2.50, "output": 10.00},
        "gpt-4o": {"input": 2.50, "output": 10.00},
        "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    },
    "anthropic": {
        "default": {"input": 3.00, "output": 15.00},
        "claude-sonnet-4-20250514": {"input": 3.00, "output": 15.00},
        "claude-3-5-haiku-20241022": {"input": 0.80, "output": 4.00},
    },
    "perplexity": {
        "default": {"input": 1.00, "output": 1.00},
        "sonar-pro": {"input": 3.00, "output": 15.00},
        "sonar": {"input": 1.00, "output": 1.00},
    },
}


def _price_for(provider: str, model: str) -> Optional[dict[str, float]]:
    table = PRICING.get(provider)
    if table is None:
        return None
    return table.get(model) or table["default"]


def calculate_cost(
    provider: str,
    model: str = "",
    input_tokens: Optional[int] = None,
    output_tokens: Optional[int] = None,
    total_tokens: Optional[int] = None,
) -> float:
    """Estimate the USD cost of one call.

    With an input/output breakdown each side is priced separately.
    With only a total, assume a 50/50 split at the average price.
    Unknown providers cost 0.
    """
    pricing = _price_for(provider, model)
    if pricing is None:
        logger.warning(f"No pricing for provider '{provider}', costing as 0")
        return 0.0

    if input_tokens is not None and output_tokens is not None:
        return (
            (input_tokens / 1_000_000) * pricing["input"]
            + (output_tokens / 1_000_000) * pricing["output"]
        )

    if not total_tokens:
        return 0.0
    avg_price = (pricing["input"] + pricing["output"]) / 2
    return (total_tokens / 1_000_000) * avg_price


def estimate_tokens(text: str) -> int:
    """Rough token estimate (~4 chars per token for English)."""
    return math.ceil(len(text) / 4)


def format_cost(cost_usd: float) -> str:
    if cost_usd < 0.01:
        return f"{cost_usd * 100:.3f}¢"
    return f"${cost_usd:.4f}"


def format_tokens(tokens: int) -> str:
    if tokens >= 1_000_000:
        return f"{tokens / 1_000_000:.1f}M"
    if tokens >= 1_000:
        return f"{tokens / 1_000:.1f}K"
    return str(tokens)
