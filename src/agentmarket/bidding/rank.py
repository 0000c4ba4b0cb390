"""Bid ranking algorithm."""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
import structlog

from ..config import Settings
from ..models import Agent, Bid, Job

logger = structlog.get_logger()


@dataclass(frozen=True)
class ScoreWeights:
    """Weights and reference points for bid scoring."""
    price: float = 0.3
    confidence: float = 0.5
    eta: float = 0.2
    price_reference: Decimal = Decimal("1.00")
    eta_reference_minutes: float = 10.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScoreWeights":
        return cls(
            price=settings.score_weight_price,
            confidence=settings.score_weight_confidence,
            eta=settings.score_weight_eta,
            price_reference=settings.score_price_reference_usd,
            eta_reference_minutes=settings.score_eta_reference_minutes,
        )


@dataclass
class RankedBid:
    bid: Bid
    score: float
    agent_name: str = "Unknown"
    rank: int = 0

    def to_dict(self) -> dict:
        return {
            **self.bid.model_dump(mode="json"),
            "agent_name": self.agent_name,
            "rank_score": self.score,
            "rank": self.rank,
        }


def bid_confidence(bid: Bid, agent: Optional[Agent]) -> float:
    """Stated confidence, falling back to the agent's reputation (0-5 scaled to 0-1)."""
    if bid.confidence is not None:
        return bid.confidence
    if agent is None:
        return 0.5
    return max(0.0, min(1.0, agent.reputation_score / 5.0))


def calculate_bid_score(
    bid: Bid,
    agent: Optional[Agent] = None,
    weights: ScoreWeights = ScoreWeights(),
) -> float:
    """Calculate ranking score for a bid.

    Each factor is on a 0-10 scale:
    - Price: lower is better, 0 at or above the price reference
    - Confidence: stated confidence (or reputation) times 10
    - Speed: faster is better, 0 at or above the ETA reference
    """
    price_ratio = float(bid.price / weights.price_reference) if weights.price_reference else 1.0
    price_score = max(0.0, 10 * (1 - price_ratio))

    confidence_score = bid_confidence(bid, agent) * 10

    eta_minutes = bid.estimated_time / 60
    eta_score = max(0.0, 10 * (1 - eta_minutes / weights.eta_reference_minutes))

    score = (
        weights.price * price_score
        + weights.confidence * confidence_score
        + weights.eta * eta_score
    )
    return round(score, 3)


def rank_bids(
    job: Job,
    bids: list[Bid],
    agents: dict[str, Agent],
    weights: ScoreWeights = ScoreWeights(),
) -> list[RankedBid]:
    """Rank eligible bids for a job, best first.

    Bids above the job's budget are not eligible. Equal scores go to the
    earliest submission.
    """
    ranked = []
    for bid in bids:
        if bid.price > job.budget_max:
            logger.debug("bid_over_budget", job_id=job.job_id, bid_id=bid.bid_id, price=str(bid.price))
            continue
        agent = agents.get(bid.agent_id)
        ranked.append(RankedBid(
            bid=bid,
            score=calculate_bid_score(bid, agent, weights),
            agent_name=agent.name if agent else "Unknown",
        ))

    ranked.sort(key=lambda r: (-r.score, r.bid.submitted_at, r.bid.bid_id))
    for i, item in enumerate(ranked):
        item.rank = i + 1

    logger.info(
        "bids_ranked",
        job_id=job.job_id,
        bid_count=len(ranked),
        top_bid=ranked[0].bid.bid_id if ranked else None,
    )
    return ranked


def get_top_bid(
    job: Job,
    bids: list[Bid],
    agents: dict[str, Agent],
    weights: ScoreWeights = ScoreWeights(),
) -> Optional[RankedBid]:
    """Get the highest-ranked eligible bid."""
    ranked = rank_bids(job, bids, agents, weights)
    return ranked[0] if ranked else None
