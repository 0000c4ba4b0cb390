"""In-memory store used by default and in tests."""

from typing import Optional

from ..models import Agent, Bid, Escrow, EscrowStatus, Job, JobStatus, Transaction
from .base import MarketStore


class InMemoryStore(MarketStore):
    """Dict-backed store.

    Records are copied on the way in and out so callers never share state
    with the store.
    """

    def __init__(self):
        self._jobs: dict[str, Job] = {}
        self._bids: dict[str, Bid] = {}
        self._agents: dict[str, Agent] = {}
        self._transactions: list[Transaction] = []
        self._escrows: dict[str, Escrow] = {}

    async def save_job(self, job: Job) -> None:
        self._jobs[job.job_id] = job.model_copy(deep=True)

    async def get_job(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def list_jobs(self, status: Optional[JobStatus] = None) -> list[Job]:
        jobs = [j for j in self._jobs.values() if status is None or j.status == status]
        jobs.sort(key=lambda j: j.posted_at)
        return [j.model_copy(deep=True) for j in jobs]

    async def save_bid(self, bid: Bid) -> None:
        self._bids[bid.bid_id] = bid.model_copy(deep=True)

    async def get_bid(self, bid_id: str) -> Optional[Bid]:
        bid = self._bids.get(bid_id)
        return bid.model_copy(deep=True) if bid else None

    async def list_bids(self, job_id: str) -> list[Bid]:
        bids = [b for b in self._bids.values() if b.job_id == job_id]
        bids.sort(key=lambda b: b.submitted_at)
        return [b.model_copy(deep=True) for b in bids]

    async def save_agent(self, agent: Agent) -> None:
        self._agents[agent.agent_id] = agent.model_copy(deep=True)

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        agent = self._agents.get(agent_id)
        return agent.model_copy(deep=True) if agent else None

    async def list_agents(self) -> list[Agent]:
        return [a.model_copy(deep=True) for a in self._agents.values()]

    async def append_transaction(self, txn: Transaction) -> None:
        self._transactions.append(txn.model_copy(deep=True))

    async def list_transactions(
        self,
        job_id: Optional[str] = None,
        wallet: Optional[str] = None,
    ) -> list[Transaction]:
        result = []
        for txn in self._transactions:
            if job_id is not None and txn.job_id != job_id:
                continue
            if wallet is not None and wallet not in (txn.from_wallet, txn.to_wallet):
                continue
            result.append(txn.model_copy(deep=True))
        return result

    async def save_escrow(self, escrow: Escrow) -> None:
        self._escrows[escrow.escrow_id] = escrow.model_copy(deep=True)

    async def get_escrow(self, escrow_id: str) -> Optional[Escrow]:
        escrow = self._escrows.get(escrow_id)
        return escrow.model_copy(deep=True) if escrow else None

    async def list_escrows(self, status: Optional[EscrowStatus] = None) -> list[Escrow]:
        return [
            e.model_copy(deep=True)
            for e in self._escrows.values()
            if status is None or e.status == status
        ]
