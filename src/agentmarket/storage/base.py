"""Abstract storage interface for marketplace records."""

from abc import ABC, abstractmethod
from typing import Optional

from ..models import Agent, Bid, Escrow, EscrowStatus, Job, JobStatus, Transaction


class MarketStore(ABC):
    """Persistence for jobs, bids, agents, transactions and escrows.

    Implementations keep records in memory or in MongoDB. Components never
    mutate a returned record in place; they save a changed copy.
    """

    # ============================================================
    # Lifecycle
    # ============================================================

    async def connect(self) -> None:
        """Open connections and create indexes."""

    async def close(self) -> None:
        """Release connections."""

    # ============================================================
    # Job Operations
    # ============================================================

    @abstractmethod
    async def save_job(self, job: Job) -> None:
        """Insert or replace a job."""
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def list_jobs(self, status: Optional[JobStatus] = None) -> list[Job]:
        """Jobs ordered by posting time, optionally filtered by status."""
        ...

    # ============================================================
    # Bid Operations
    # ============================================================

    @abstractmethod
    async def save_bid(self, bid: Bid) -> None:
        ...

    @abstractmethod
    async def get_bid(self, bid_id: str) -> Optional[Bid]:
        ...

    @abstractmethod
    async def list_bids(self, job_id: str) -> list[Bid]:
        """Bids for a job ordered by submission time."""
        ...

    # ============================================================
    # Agent Operations
    # ============================================================

    @abstractmethod
    async def save_agent(self, agent: Agent) -> None:
        ...

    @abstractmethod
    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        ...

    @abstractmethod
    async def list_agents(self) -> list[Agent]:
        ...

    # ============================================================
    # Ledger Operations
    # ============================================================

    @abstractmethod
    async def append_transaction(self, txn: Transaction) -> None:
        """Append a ledger entry. Entries are never updated."""
        ...

    @abstractmethod
    async def list_transactions(
        self,
        job_id: Optional[str] = None,
        wallet: Optional[str] = None,
    ) -> list[Transaction]:
        """Transactions in append order, optionally filtered."""
        ...

    @abstractmethod
    async def save_escrow(self, escrow: Escrow) -> None:
        ...

    @abstractmethod
    async def get_escrow(self, escrow_id: str) -> Optional[Escrow]:
        ...

    @abstractmethod
    async def list_escrows(self, status: Optional[EscrowStatus] = None) -> list[Escrow]:
        ...
