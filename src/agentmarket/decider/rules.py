"""Deterministic decider used by default and in tests."""

from typing import Optional
import structlog

from ..bidding.rank import ScoreWeights, rank_bids
from ..models import Agent, Bid, Job, Submission, Verification, money
from .base import BidQuote, Decider, Selection, is_empty_result

logger = structlog.get_logger()

# Description length thresholds for complexity tiers
SIMPLE_MAX_CHARS = 100
MEDIUM_MAX_CHARS = 300


def complexity_tier(description: str) -> str:
    length = len(description)
    if length < SIMPLE_MAX_CHARS:
        return "simple"
    if length < MEDIUM_MAX_CHARS:
        return "medium"
    return "complex"


class RuleBasedDecider(Decider):
    """Prices from the agent's pricing model and selects by weighted score."""

    def __init__(self, weights: ScoreWeights = ScoreWeights()):
        self.weights = weights

    async def price_bid(self, job: Job, agent: Agent) -> Optional[BidQuote]:
        tier = complexity_tier(job.description)
        multiplier = agent.pricing_model.complexity_multipliers.get(tier, 1.0)
        price = money(agent.pricing_model.base_rate * money(multiplier))

        if price > job.budget_max:
            logger.info(
                "bid_declined_over_budget",
                job_id=job.job_id,
                agent_id=agent.agent_id,
                price=str(price),
                budget=str(job.budget_max),
            )
            return None

        low, high = agent.confidence_range
        return BidQuote(
            price=price,
            estimated_time=max(1, int(agent.base_duration_minutes * 60 * multiplier)),
            reasoning=f"{tier.capitalize()} {job.type} task at ${agent.pricing_model.base_rate} base rate x{multiplier}",
            confidence=round((low + high) / 2, 3),
        )

    async def select_winner(
        self,
        job: Job,
        bids: list[Bid],
        agents: dict[str, Agent],
    ) -> Selection:
        ranked = rank_bids(job, bids, agents, self.weights)
        if not ranked:
            return Selection(
                bid=None,
                reasoning=f"No bids within budget ${job.budget_max}",
            )

        top = ranked[0]
        return Selection(
            bid=top.bid,
            score=top.score,
            reasoning=f"{top.agent_name} scored {top.score} of {len(ranked)} eligible bids",
            ranked=ranked,
        )

    async def verify_work(self, job: Job, submission: Submission) -> Verification:
        results = submission.results
        issues: list[str] = []

        if is_empty_result(results):
            issues.append("Submission is empty")
        elif isinstance(results, dict):
            if results.get("error"):
                issues.append(f"Execution reported an error: {results['error']}")
            for name in job.requirements.get("required_fields", []):
                if is_empty_result(results.get(name)):
                    issues.append(f"Missing required field: {name}")
        elif job.requirements.get("required_fields"):
            issues.append("Results are not an object with the required fields")

        approved = not issues
        return Verification(
            approved=approved,
            quality_score=max(0.0, 5.0 - 2.0 * len(issues)),
            issues=issues,
            reasoning="All checks passed" if approved else "; ".join(issues),
        )
