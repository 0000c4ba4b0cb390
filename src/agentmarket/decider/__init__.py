"""Pricing, bid selection and work verification strategies."""

from ..bidding.rank import ScoreWeights
from ..config import Settings
from .base import BidQuote, Decider, Selection
from .llm import LLMDecider
from .rules import RuleBasedDecider, complexity_tier


def create_decider(settings: Settings) -> Decider:
    """Build the decider named by the ``decider`` setting."""
    weights = ScoreWeights.from_settings(settings)
    if settings.decider == "rules":
        return RuleBasedDecider(weights)
    if settings.decider == "llm":
        return LLMDecider(weights)
    raise ValueError(f"Unknown decider: {settings.decider}")


__all__ = [
    "BidQuote",
    "Decider",
    "LLMDecider",
    "RuleBasedDecider",
    "Selection",
    "complexity_tier",
    "create_decider",
]
