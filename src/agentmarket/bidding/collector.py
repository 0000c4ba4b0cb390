"""Bid submission and the bidding window."""

from datetime import datetime, timedelta
from typing import Any, Optional
import structlog

from ..errors import DuplicateBid, NotFound, ValidationError, WindowClosed
from ..jobs import JobStore
from ..models import Bid, Job, JobStatus, money, new_id

logger = structlog.get_logger()


class BidCollector:
    """Accepts at most one bid per agent per job while the window is open.

    A job's window closes ``window_seconds`` after posting. Each time the
    coordinator finds no bids the window is extended by the same length.
    """

    def __init__(self, jobs: JobStore, window_seconds: float = 5.0):
        self.jobs = jobs
        self.store = jobs.store
        self.window_seconds = window_seconds

    def window_closes_at(self, job: Job) -> datetime:
        length = timedelta(seconds=self.window_seconds)
        return job.posted_at + length * (job.window_extensions + 1)

    def window_open(self, job: Job, now: Optional[datetime] = None) -> bool:
        now = now or self.jobs.clock()
        return job.status == JobStatus.ACCEPTING_BIDS and now < self.window_closes_at(job)

    async def submit(
        self,
        job_id: str,
        agent_id: str,
        price: Any,
        estimated_time: Any,
        reasoning: str = "",
        confidence: Optional[float] = None,
    ) -> Bid:
        """Record a bid.

        Raises:
            NotFound: unknown job or agent
            WindowClosed: job no longer accepting bids
            DuplicateBid: agent already bid on this job
            ValidationError: malformed price, ETA or confidence
        """
        try:
            amount = money(price)
        except ValueError:
            raise ValidationError(f"Bid price is not an amount: {price!r}")
        if amount < 0:
            raise ValidationError("Bid price cannot be negative")
        try:
            eta = int(estimated_time)
        except (TypeError, ValueError):
            raise ValidationError(f"estimated_time must be whole seconds: {estimated_time!r}")
        if eta <= 0:
            raise ValidationError("estimated_time must be positive")
        if confidence is not None and not 0 <= confidence <= 1:
            raise ValidationError("confidence must be between 0 and 1")

        async with self.jobs.locked(job_id):
            job = await self.jobs.get(job_id)
            agent = await self.store.get_agent(agent_id)
            if agent is None:
                raise NotFound(f"Agent {agent_id} not found")

            now = self.jobs.clock()
            if not self.window_open(job, now):
                logger.info("bid_rejected_window_closed", job_id=job_id, agent_id=agent_id)
                raise WindowClosed(f"Job {job_id} is not accepting bids (status {job.status.value})")

            existing = await self.store.list_bids(job_id)
            if any(b.agent_id == agent_id for b in existing):
                logger.info("bid_rejected_duplicate", job_id=job_id, agent_id=agent_id)
                raise DuplicateBid(f"Agent {agent_id} already bid on job {job_id}")

            bid = Bid(
                bid_id=new_id("bid"),
                job_id=job_id,
                agent_id=agent_id,
                price=amount,
                estimated_time=eta,
                reasoning=reasoning,
                confidence=confidence,
                submitted_at=now,
            )
            await self.store.save_bid(bid)
            await self.jobs.replace(
                job,
                log=f"{agent.name} bid ${amount} ({eta}s)",
            )

        logger.info(
            "bid_submitted",
            job_id=job_id,
            bid_id=bid.bid_id,
            agent_id=agent_id,
            price=str(amount),
            estimated_time=eta,
        )
        return bid

    async def list_by_job(self, job_id: str) -> list[Bid]:
        """Bids for a job in submission order."""
        await self.jobs.get(job_id)
        return await self.store.list_bids(job_id)

    async def get(self, bid_id: str) -> Bid:
        bid = await self.store.get_bid(bid_id)
        if bid is None:
            raise NotFound(f"Bid {bid_id} not found")
        return bid
