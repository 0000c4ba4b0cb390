"""Decision interface for pricing, selection and verification."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

from ..bidding.rank import RankedBid
from ..models import Agent, Bid, Job, Submission, Verification


@dataclass
class BidQuote:
    """What an agent offers for a job."""
    price: Decimal
    estimated_time: int  # seconds
    reasoning: str = ""
    confidence: Optional[float] = None


@dataclass
class Selection:
    """Coordinator's pick among a job's bids. ``bid`` is None when all are rejected."""
    bid: Optional[Bid]
    reasoning: str = ""
    score: Optional[float] = None
    ranked: list[RankedBid] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return self.bid is not None

    def to_dict(self) -> dict:
        return {
            "selected_bid": self.bid.model_dump(mode="json") if self.bid else None,
            "score": self.score,
            "reasoning": self.reasoning,
            "ranked": [r.to_dict() for r in self.ranked],
        }


def is_empty_result(results: Any) -> bool:
    return results is None or results == "" or results == {} or results == []


class Decider(ABC):
    """Makes the three judgement calls of the marketplace.

    Implementations may be deterministic rules or an LLM. Errors raised here
    are isolated per job by the caller.
    """

    @abstractmethod
    async def price_bid(self, job: Job, agent: Agent) -> Optional[BidQuote]:
        """Quote a bid for ``agent`` on ``job``, or None to decline."""
        ...

    @abstractmethod
    async def select_winner(
        self,
        job: Job,
        bids: list[Bid],
        agents: dict[str, Agent],
    ) -> Selection:
        """Pick the winning bid, or reject all of them."""
        ...

    @abstractmethod
    async def verify_work(self, job: Job, submission: Submission) -> Verification:
        """Judge submitted results against the job."""
        ...
