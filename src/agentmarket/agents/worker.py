"""Simulated agent worker: bids on matching jobs and executes won work."""

import asyncio
from typing import Optional
import structlog

from ..bidding import BidCollector
from ..decider import Decider
from ..errors import DuplicateBid, InvalidTransition, NotFound, WindowClosed
from ..models import Bid, Job, JobStatus
from .executors import BaseExecutor, get_executor

logger = structlog.get_logger()


class AgentWorker:
    """One worker per simulated agent.

    Each pass bids on open jobs of the agent's type it has not bid on yet,
    then executes in-progress jobs assigned to it that have no submission.
    """

    def __init__(
        self,
        agent_id: str,
        bids: BidCollector,
        coordinator,
        decider: Decider,
        executor: Optional[BaseExecutor] = None,
        executor_mode: str = "rules",
        interval_seconds: float = 2.0,
    ):
        self.agent_id = agent_id
        self.bids = bids
        self.jobs = bids.jobs
        self.coordinator = coordinator
        self.decider = decider
        self.executor = executor
        self.executor_mode = executor_mode
        self.interval_seconds = interval_seconds
        self.running = False
        self._executing: set[str] = set()

    async def _agent(self):
        agent = await self.jobs.store.get_agent(self.agent_id)
        if agent is None:
            raise NotFound(f"Agent {self.agent_id} not found")
        return agent

    # ============================================================
    # Bidding
    # ============================================================

    async def bid_on(self, job: Job) -> Optional[Bid]:
        """Price and submit a bid for one job. Returns None when declined."""
        agent = await self._agent()
        quote = await self.decider.price_bid(job, agent)
        if quote is None:
            return None

        bid = await self.bids.submit(
            job_id=job.job_id,
            agent_id=self.agent_id,
            price=quote.price,
            estimated_time=quote.estimated_time,
            reasoning=quote.reasoning,
            confidence=quote.confidence,
        )
        return bid

    async def poll_for_jobs(self) -> list[Bid]:
        """Bid on every open job of this agent's type not yet bid on."""
        agent = await self._agent()
        placed = []
        now = self.jobs.clock()
        for job in await self.jobs.list_by_status(JobStatus.ACCEPTING_BIDS):
            if job.type != agent.type or not self.bids.window_open(job, now):
                continue
            existing = await self.jobs.store.list_bids(job.job_id)
            if any(b.agent_id == self.agent_id for b in existing):
                continue

            logger.info("job_found", agent_id=self.agent_id, job_id=job.job_id)
            try:
                bid = await self.bid_on(job)
            except (DuplicateBid, WindowClosed) as e:
                logger.info("bid_skipped", agent_id=self.agent_id, job_id=job.job_id, reason=e.reasoning)
                continue
            except Exception as e:
                logger.error("bid_failed", agent_id=self.agent_id, job_id=job.job_id, error=str(e))
                continue

            if bid is None:
                logger.info("bid_declined", agent_id=self.agent_id, job_id=job.job_id)
            else:
                placed.append(bid)
        return placed

    # ============================================================
    # Execution
    # ============================================================

    def _executor_for(self, job: Job) -> BaseExecutor:
        return self.executor or get_executor(job.type, self.executor_mode)

    async def execute(self, job_id: str) -> Job:
        """Run the work for one assigned job and submit it.

        Execution errors fail the job through the coordinator.
        """
        job = await self.jobs.get(job_id)
        if job.status != JobStatus.IN_PROGRESS or job.accepted_bid is None:
            raise InvalidTransition(f"Job {job_id} is {job.status.value}, not in progress")
        if job.accepted_bid.agent_id != self.agent_id:
            raise InvalidTransition(f"Job {job_id} is assigned to {job.accepted_bid.agent_id}")
        if job.submission is not None:
            raise InvalidTransition(f"Work for job {job_id} was already submitted")
        if job_id in self._executing:
            return job

        self._executing.add(job_id)
        try:
            logger.info("job_execution_started", agent_id=self.agent_id, job_id=job_id)
            await self.jobs.add_log(job_id, "info", f"{self.agent_id} started work")
            try:
                results = await self._executor_for(job).execute(job)
            except Exception as e:
                logger.error("job_execution_failed", agent_id=self.agent_id, job_id=job_id, error=str(e))
                return await self.coordinator.fail_job(job_id, f"Execution failed: {e}")

            job = await self.coordinator.submit_work(job_id, self.agent_id, results)
            logger.info("job_execution_complete", agent_id=self.agent_id, job_id=job_id)
            return job
        finally:
            self._executing.discard(job_id)

    async def execute_assigned_jobs(self) -> list[str]:
        """Execute every in-progress job assigned to this agent without a submission."""
        done = []
        for job in await self.jobs.list_by_status(JobStatus.IN_PROGRESS):
            if job.accepted_bid is None or job.accepted_bid.agent_id != self.agent_id:
                continue
            if job.submission is not None or job.job_id in self._executing:
                continue
            try:
                await self.execute(job.job_id)
                done.append(job.job_id)
            except Exception as e:
                logger.error("execute_assigned_error", agent_id=self.agent_id, job_id=job.job_id, error=str(e))
        return done

    # ============================================================
    # Loop
    # ============================================================

    async def tick(self) -> None:
        try:
            await self.poll_for_jobs()
        except Exception as e:
            logger.error("poll_for_jobs_error", agent_id=self.agent_id, error=str(e))
        try:
            await self.execute_assigned_jobs()
        except Exception as e:
            logger.error("execute_jobs_error", agent_id=self.agent_id, error=str(e))

    async def run(self) -> None:
        """Run until ``stop()``, waking early on job events."""
        self.running = True
        subscription = self.jobs.events.subscribe(self.agent_id)
        logger.info("agent_worker_started", agent_id=self.agent_id, interval=self.interval_seconds)
        try:
            while self.running:
                await self.tick()
                await self.jobs.events.wait(subscription, self.interval_seconds)
        except asyncio.CancelledError:
            logger.info("agent_worker_cancelled", agent_id=self.agent_id)
            raise
        finally:
            self.jobs.events.unsubscribe(subscription)
            logger.info("agent_worker_stopped", agent_id=self.agent_id)

    def stop(self) -> None:
        self.running = False
