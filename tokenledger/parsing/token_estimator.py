"""Character-based token estimation."""

from __future__ import annotations

import math
from collections.abc import Callable, Mapping

# Any callable ``(text, model) -> tokens`` can stand in for the estimator
EstimateFn = Callable[[str, str], int]

DEFAULT_TOKENS_PER_CHAR = 0.25

# Tokens per character, matched by substring against the model id in order
DEFAULT_RATIOS: dict[str, float] = {
    "gpt-4o": 0.25,
    "gpt-4.1": 0.25,
    "gpt-4": 0.25,
    "gpt-5": 0.25,
    "o1": 0.25,
    "o3": 0.25,
    "o4-mini": 0.25,
    "claude-sonnet": 0.24,
    "claude-opus": 0.24,
    "claude-haiku": 0.24,
    "claude": 0.24,
    "gemini": 0.26,
    "grok": 0.25,
}


class TokenEstimator:
    """Estimate token counts as ``ceil(len(text) * ratio)`` per model.

    Example:
        >>> estimator = TokenEstimator()
        >>> estimator("hello world", "gpt-4o")
        3
    """

    def __init__(
        self,
        ratios: Mapping[str, float] | None = None,
        default_ratio: float = DEFAULT_TOKENS_PER_CHAR,
    ) -> None:
        """Initialize estimator.

        Args:
            ratios: Tokens-per-character by model id fragment
            default_ratio: Ratio used when no fragment matches
        """
        self.ratios = dict(DEFAULT_RATIOS if ratios is None else ratios)
        self.default_ratio = default_ratio

    def ratio_for(self, model: str | None) -> float:
        """Return the tokens-per-character ratio for a model id."""
        if not model:
            return self.default_ratio
        for fragment, ratio in self.ratios.items():
            if fragment in model or fragment.replace("-", "", 1) in model:
                return ratio
        return self.default_ratio

    def __call__(self, text: str, model: str = "") -> int:
        if not text:
            return 0
        return math.ceil(len(text) * self.ratio_for(model))
