"""LLM-backed decider."""

import json
from typing import Any, Awaitable, Callable, Optional
import structlog

from ..bidding.rank import ScoreWeights, rank_bids
from ..errors import ExternalServiceError
from ..llm import call_llm_json
from ..models import Agent, Bid, Job, Submission, Verification, money
from .base import BidQuote, Decider, Selection

logger = structlog.get_logger()


BID_SYSTEM_PROMPT = """You are a {agent_type} agent calculating a competitive bid for a job.

Your base rate: ${base_rate} per task
Job type: {job_type}
Client budget: ${budget}

Calculate a competitive bid that:
- Covers your costs with reasonable profit margin
- Stays under budget
- Accounts for task complexity (simple 1x, medium 1.5x, complex 2x multiplier)

Return JSON only: {{"bidPrice": 2.50, "reasoning": "...", "estimatedTimeSeconds": 30}}"""

SELECT_SYSTEM_PROMPT = """You are evaluating bids for a job. Select the best bid based on:
- Price vs budget
- Agent reasoning quality
- Estimated delivery time

Your budget: ${budget}

Return JSON only: {{"decision": "accept", "selectedAgentId": "agent-id", "reasoning": "..."}}
If no suitable bids, return: {{"decision": "reject", "selectedAgentId": null, "reasoning": "..."}}"""

VERIFY_SYSTEM_PROMPT = """You are verifying completed work. Check if:
1. All requirements met
2. Data quality acceptable
3. Format correct

Return JSON only: {"approved": true, "qualityScore": 4.5, "issues": [], "reasoning": "..."}"""


class LLMDecider(Decider):
    """Asks the LLM to price, select and verify.

    Bid scores are still computed so a dry run can show the ranking next to
    the model's choice.
    """

    def __init__(
        self,
        weights: ScoreWeights = ScoreWeights(),
        call_json: Callable[..., Awaitable[dict]] = call_llm_json,
    ):
        self.weights = weights
        self.call_json = call_json

    async def price_bid(self, job: Job, agent: Agent) -> Optional[BidQuote]:
        result = await self.call_json(
            prompt=f"Job: {job.description}",
            system_prompt=BID_SYSTEM_PROMPT.format(
                agent_type=agent.type,
                base_rate=agent.pricing_model.base_rate,
                job_type=job.type,
                budget=job.budget_max,
            ),
        )
        try:
            price = money(result["bidPrice"])
            eta = int(result.get("estimatedTimeSeconds", agent.base_duration_minutes * 60))
        except (KeyError, TypeError, ValueError) as e:
            raise ExternalServiceError(f"Unusable bid calculation from LLM: {e}")

        if price > job.budget_max or price < 0:
            logger.info("llm_bid_declined", job_id=job.job_id, agent_id=agent.agent_id, price=str(price))
            return None

        low, high = agent.confidence_range
        return BidQuote(
            price=price,
            estimated_time=max(1, eta),
            reasoning=str(result.get("reasoning", "")),
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
            return Selection(bid=None, reasoning=f"No bids within budget ${job.budget_max}")

        payload = [
            {
                "agentId": r.bid.agent_id,
                "price": str(r.bid.price),
                "reasoning": r.bid.reasoning,
                "estimatedTime": str(r.bid.estimated_time),
            }
            for r in ranked
        ]
        result = await self.call_json(
            prompt=f"Job: {job.description}\n\nBids:\n{json.dumps(payload, indent=2)}",
            system_prompt=SELECT_SYSTEM_PROMPT.format(budget=job.budget_max),
        )

        reasoning = str(result.get("reasoning", ""))
        if result.get("decision") != "accept":
            return Selection(bid=None, reasoning=reasoning or "All bids rejected", ranked=ranked)

        chosen = next((r for r in ranked if r.bid.agent_id == result.get("selectedAgentId")), None)
        if chosen is None:
            raise ExternalServiceError(
                f"LLM selected agent {result.get('selectedAgentId')!r} which has no eligible bid"
            )
        return Selection(bid=chosen.bid, score=chosen.score, reasoning=reasoning, ranked=ranked)

    async def verify_work(self, job: Job, submission: Submission) -> Verification:
        result = await self.call_json(
            prompt=(
                f"Job: {job.description}\n\n"
                f"Requirements: {json.dumps(job.requirements, default=str)}\n\n"
                f"Submission: {json.dumps(submission.results, default=str)}"
            ),
            system_prompt=VERIFY_SYSTEM_PROMPT,
        )
        if "approved" not in result:
            raise ExternalServiceError("LLM verification reply has no 'approved' field")

        issues: Any = result.get("issues") or []
        return Verification(
            approved=bool(result["approved"]),
            quality_score=float(result.get("qualityScore", 0.0)),
            issues=[str(i) for i in issues] if isinstance(issues, list) else [str(issues)],
            reasoning=str(result.get("reasoning", "")),
        )
