"""Marketplace wiring: one store, one coordinator, one worker per agent."""

import asyncio
from decimal import Decimal
from typing import Callable, Optional
import structlog

from .agents import AgentWorker
from .bidding import BidCollector
from .config import Settings, get_settings
from .coordinator import Coordinator
from .decider import Decider, create_decider
from .errors import DuplicateBid, InvalidTransition, NotFound, ValidationError
from .events import JobEventBus
from .jobs import JobStore
from .models import Agent, Bid, Job, PricingModel, Transaction, money, utcnow
from .payments import Ledger, TransferVerifier
from .storage import MarketStore, create_store

logger = structlog.get_logger()

# Wallets that never bid or execute work
NON_WORKER_TYPES = {"coordinator", "platform"}

SEED_WORKERS = [
    {
        "agent_id": "scraper-agent",
        "name": "Web Scraper",
        "type": "web_scraping",
        "description": "Gathers structured data from websites and public sources.",
        "base_rate": "1.00",
        "confidence_range": (0.80, 0.88),
        "base_duration_minutes": 2,
        "reputation_score": 4.0,
    },
    {
        "agent_id": "analyst-agent",
        "name": "Data Analyst",
        "type": "analysis",
        "description": "Extracts trends, patterns and actionable insights from datasets.",
        "base_rate": "1.50",
        "confidence_range": (0.90, 0.94),
        "base_duration_minutes": 5,
        "reputation_score": 4.5,
    },
    {
        "agent_id": "research-pro",
        "name": "Research Pro",
        "type": "analysis",
        "description": "Comprehensive research with multiple validation passes.",
        "base_rate": "2.50",
        "confidence_range": (0.95, 0.99),
        "base_duration_minutes": 8,
        "reputation_score": 4.8,
    },
    {
        "agent_id": "writer-agent",
        "name": "Content Writer",
        "type": "writing",
        "description": "Writes structured reports, articles and marketing copy.",
        "base_rate": "1.25",
        "confidence_range": (0.90, 0.94),
        "base_duration_minutes": 5,
        "reputation_score": 4.2,
    },
    {
        "agent_id": "quick-assistant",
        "name": "Quick Assistant",
        "type": "writing",
        "description": "Fast, affordable help for simple writing tasks.",
        "base_rate": "0.50",
        "confidence_range": (0.80, 0.88),
        "base_duration_minutes": 2,
        "reputation_score": 3.8,
    },
]


def seed_worker(profile: dict) -> Agent:
    return Agent(
        agent_id=profile["agent_id"],
        name=profile["name"],
        type=profile["type"],
        description=profile["description"],
        reputation_score=profile["reputation_score"],
        pricing_model=PricingModel(base_rate=profile["base_rate"]),
        confidence_range=profile["confidence_range"],
        base_duration_minutes=profile["base_duration_minutes"],
    )


class Marketplace:
    """Owns every component and the background loops."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[MarketStore] = None,
        decider: Optional[Decider] = None,
        verifier: Optional[TransferVerifier] = None,
        clock: Callable = utcnow,
    ):
        self.settings = settings or get_settings()
        self.store = store or create_store(self.settings)
        self.events = JobEventBus()
        self.jobs = JobStore(self.store, self.events, clock=clock)
        self.bids = BidCollector(self.jobs, window_seconds=self.settings.bid_window_seconds)
        self.ledger = Ledger(
            self.store,
            platform_wallet_id=self.settings.platform_wallet_id,
            platform_fee_rate=self.settings.platform_fee_rate,
            clock=clock,
        )
        self.decider = decider or create_decider(self.settings)
        self.coordinator = Coordinator(
            self.jobs,
            self.bids,
            self.ledger,
            self.decider,
            coordinator_id=self.settings.coordinator_agent_id,
            interval_seconds=self.settings.coordinator_interval_seconds,
            job_timeout_seconds=self.settings.job_timeout_seconds,
            max_window_extensions=self.settings.max_window_extensions,
        )
        self.verifier = verifier
        self.workers: dict[str, AgentWorker] = {}
        self._tasks: list[asyncio.Task] = []
        self._started = False

    # ============================================================
    # Lifecycle
    # ============================================================

    async def start(self, run_loops: Optional[bool] = None) -> None:
        """Connect storage, seed wallets and optionally start the loops."""
        if not self._started:
            await self.store.connect()
            await self.ensure_system_wallets()
            if self.settings.seed_agents:
                await self.seed_agents()
            for agent in await self.store.list_agents():
                if agent.type not in NON_WORKER_TYPES:
                    self._add_worker(agent.agent_id)
            self._started = True

        if run_loops is None:
            run_loops = self.settings.run_agents
        if run_loops and not self._tasks:
            self._tasks.append(asyncio.create_task(self.coordinator.run()))
            for worker in self.workers.values():
                self._tasks.append(asyncio.create_task(worker.run()))
            logger.info("marketplace_loops_started", workers=len(self.workers))

    async def stop(self) -> None:
        self.coordinator.stop()
        for worker in self.workers.values():
            worker.stop()
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.store.close()
        logger.info("marketplace_stopped")

    async def ensure_system_wallets(self) -> None:
        await self.ledger.open_wallet(Agent(
            agent_id=self.settings.coordinator_agent_id,
            name="Coordinator",
            type="coordinator",
            description="Posts escrow for accepted bids and verifies work.",
            wallet_balance=self.settings.coordinator_initial_balance,
            reputation_score=5.0,
        ))
        await self.ledger.open_wallet(Agent(
            agent_id=self.settings.platform_wallet_id,
            name="Platform",
            type="platform",
            description="Collects platform fees.",
        ))

    async def seed_agents(self) -> None:
        existing = {a.agent_id for a in await self.store.list_agents()}
        created = 0
        for profile in SEED_WORKERS:
            if profile["agent_id"] in existing:
                continue
            await self.ledger.open_wallet(seed_worker(profile))
            created += 1
        logger.info("seed_agents_ready", created=created, total=len(SEED_WORKERS))

    # ============================================================
    # Agents
    # ============================================================

    def _add_worker(self, agent_id: str) -> AgentWorker:
        worker = self.workers.get(agent_id)
        if worker is None:
            worker = AgentWorker(
                agent_id,
                self.bids,
                self.coordinator,
                self.decider,
                executor_mode=self.settings.executor,
                interval_seconds=self.settings.worker_interval_seconds,
            )
            self.workers[agent_id] = worker
        return worker

    async def register_agent(self, agent: Agent) -> Agent:
        """Open a wallet for a new agent and give it a worker."""
        opened = await self.ledger.open_wallet(agent)
        if opened.type not in NON_WORKER_TYPES:
            worker = self._add_worker(opened.agent_id)
            if self._tasks:
                self._tasks.append(asyncio.create_task(worker.run()))
        return opened

    async def get_agent(self, agent_id: str) -> Agent:
        agent = await self.store.get_agent(agent_id)
        if agent is None:
            raise NotFound(f"Agent {agent_id} not found")
        return agent

    # ============================================================
    # On-demand operations
    # ============================================================

    async def collect_demo_bids(self, job_id: str) -> list[Bid]:
        """Ask every worker of the job's type to bid now."""
        job = await self.jobs.get(job_id)
        placed = []
        for agent in await self.store.list_agents():
            if agent.type != job.type or agent.agent_id not in self.workers:
                continue
            try:
                bid = await self.workers[agent.agent_id].bid_on(job)
            except DuplicateBid:
                continue
            if bid is not None:
                placed.append(bid)
        logger.info("demo_bids_collected", job_id=job_id, count=len(placed))
        return placed

    async def execute(self, job_id: str) -> Job:
        """Have the assigned agent's worker run the job now."""
        job = await self.jobs.get(job_id)
        if job.accepted_bid is None:
            raise InvalidTransition(f"Job {job_id} has no accepted bid to execute")
        worker = self.workers.get(job.accepted_bid.agent_id) or self._add_worker(job.accepted_bid.agent_id)
        return await worker.execute(job_id)

    async def deposit_from_chain(self, agent_id: str, tx_hash: str) -> Transaction:
        """Credit an agent with a verified on-chain token transfer."""
        await self.get_agent(agent_id)
        verifier = self.verifier or TransferVerifier(self.settings)
        transfer = await verifier.verify(tx_hash)
        usd = money(verifier.to_usd(transfer.amount))
        if usd <= Decimal("0"):
            raise ValidationError("Transfer amount is too small to credit")
        return await self.ledger.deposit(agent_id, usd, reference=tx_hash)
