"""
Simple size estimation for world-info budgets, with configurable strategies.

Strategies:
- whitespace: count whitespace-delimited tokens
- char_approx: approximate by character length (≈4 chars per token)
- chars: raw character count

Configuration via WorldInfoSettings:
  token_estimator_mode: "whitespace" | "char_approx" | "chars"
  token_char_approx_divisor: int (default 4)
"""

from math import ceil
from typing import Optional

from lorebook_engine.app.core.config import load_world_info_config


def count_tokens(text: Optional[str], strategy: Optional[str] = None) -> int:
    """
    Count tokens using the configured strategy.

    Args:
        text: input text (None treated as empty)
        strategy: override strategy ("whitespace" | "char_approx" | "chars")

    Returns:
        Estimated token count as int
    """
    if not text:
        return 0

    settings = load_world_info_config()
    chosen = (strategy or settings.token_estimator_mode or "whitespace").lower()

    if chosen == "chars":
        return len(text)

    if chosen == "char_approx":
        div = settings.token_char_approx_divisor if settings.token_char_approx_divisor > 0 else 4
        return int(ceil(len(text) / div))

    # default: whitespace
    return len(text.split())
