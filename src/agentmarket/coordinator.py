"""Coordinator: bid evaluation, acceptance, verification and the watchdog.

Job state machine:

    accepting_bids --(window elapsed, bids)--> evaluating --(bid accepted)--> in_progress
    accepting_bids --(window elapsed, no bids)--> accepting_bids (window extended)
    evaluating --(all bids rejected)--> accepting_bids
    in_progress --(verified)--> completed
    in_progress --(rejected, failed or timed out)--> failed

Escrow is created before a job becomes ``in_progress`` and settled before
it becomes ``completed`` or ``failed``.
"""

import asyncio
from datetime import timedelta
from typing import Any, Optional
import structlog

from .bidding import BidCollector
from .decider import Decider, Selection
from .errors import EscrowNotHeld, InsufficientBalance, InvalidTransition, ValidationError
from .jobs import JobStore
from .models import AcceptedBid, AgentStatus, Job, JobStatus, Submission, Verification
from .payments import Ledger

logger = structlog.get_logger()


class Coordinator:
    """Drives jobs from bidding through settlement."""

    def __init__(
        self,
        jobs: JobStore,
        bids: BidCollector,
        ledger: Ledger,
        decider: Decider,
        coordinator_id: str = "coordinator-agent",
        interval_seconds: float = 3.0,
        job_timeout_seconds: float = 300.0,
        max_window_extensions: Optional[int] = None,
    ):
        self.jobs = jobs
        self.bids = bids
        self.ledger = ledger
        self.decider = decider
        self.coordinator_id = coordinator_id
        self.interval_seconds = interval_seconds
        self.job_timeout_seconds = job_timeout_seconds
        self.max_window_extensions = max_window_extensions
        self.running = False

    @property
    def store(self):
        return self.jobs.store

    # ============================================================
    # Bid evaluation
    # ============================================================

    async def evaluate_pending_bids(self) -> list[str]:
        """Evaluate every job whose bidding window has closed.

        Returns the ids of jobs that were looked at.
        """
        evaluated = []
        now = self.jobs.clock()
        for job in await self.jobs.list_by_status(JobStatus.ACCEPTING_BIDS):
            if self.bids.window_open(job, now):
                continue
            try:
                await self._evaluate_job(job.job_id)
                evaluated.append(job.job_id)
            except Exception as e:
                logger.error("bid_evaluation_error", job_id=job.job_id, error=str(e))
        return evaluated

    async def _evaluate_job(self, job_id: str) -> None:
        async with self.jobs.locked(job_id):
            job = await self.jobs.get(job_id)
            if job.status != JobStatus.ACCEPTING_BIDS or self.bids.window_open(job):
                return

            bids = await self.store.list_bids(job_id)
            if not bids:
                await self._reopen_or_expire(job, "no bids received")
                return

            logger.info("evaluating_bids", job_id=job_id, bid_count=len(bids))
            job = await self.jobs.replace(
                job,
                status=JobStatus.EVALUATING,
                log=f"Evaluating {len(bids)} bids",
            )

        agents = {a.agent_id: a for a in await self.store.list_agents()}
        try:
            selection = await self.decider.select_winner(job, bids, agents)
        except Exception as e:
            logger.error("bid_selection_failed", job_id=job_id, error=str(e))
            await self.fail_job(job_id, f"Bid evaluation failed: {e}")
            return

        if not selection.accepted:
            logger.info("bids_rejected", job_id=job_id, reasoning=selection.reasoning)
            async with self.jobs.locked(job_id):
                job = await self.jobs.get(job_id)
                if job.status == JobStatus.EVALUATING:
                    await self._reopen_or_expire(job, selection.reasoning or "all bids rejected")
            return

        try:
            await self._accept(
                job_id,
                selection.bid.bid_id,
                reasoning=selection.reasoning,
                from_status=JobStatus.EVALUATING,
            )
        except InvalidTransition as e:
            # Someone else settled the job while the decider ran
            job = await self.jobs.get(job_id)
            logger.info("bid_acceptance_skipped", job_id=job_id, status=job.status.value, reason=e.reasoning)
        except (InsufficientBalance, ValidationError) as e:
            logger.warning("bid_acceptance_failed", job_id=job_id, bid_id=selection.bid.bid_id, error=e.reasoning)
            await self.fail_job(job_id, e.reasoning)
        except Exception as e:
            logger.error("bid_acceptance_error", job_id=job_id, bid_id=selection.bid.bid_id, error=str(e))
            await self.fail_job(job_id, f"Bid acceptance failed: {e}")

    async def _reopen_or_expire(self, job: Job, reason: str) -> Job:
        """Extend the bidding window, or fail once extensions run out. Caller holds the job lock."""
        if self.max_window_extensions is not None and job.window_extensions >= self.max_window_extensions:
            logger.info("bidding_expired", job_id=job.job_id, reason=reason)
            return await self.jobs.replace(
                job,
                status=JobStatus.FAILED,
                failure_reason=reason,
                completed_at=self.jobs.clock(),
                log=f"Bidding closed: {reason}",
                level="error",
            )

        logger.info("extending_bidding_window", job_id=job.job_id, extensions=job.window_extensions + 1)
        return await self.jobs.replace(
            job,
            status=JobStatus.ACCEPTING_BIDS,
            window_extensions=job.window_extensions + 1,
        )

    async def select(self, job_id: str) -> Selection:
        """Dry run: what the decider would pick right now, without accepting."""
        job = await self.jobs.get(job_id)
        bids = await self.store.list_bids(job_id)
        agents = {a.agent_id: a for a in await self.store.list_agents()}
        return await self.decider.select_winner(job, bids, agents)

    async def accept_bid(self, job_id: str, bid_id: str, reasoning: str = "") -> Job:
        """Fund escrow for a bid and start the job.

        Only jobs still accepting bids qualify. A job the coordinator is
        evaluating belongs to the coordinator until it decides.

        Raises:
            InsufficientBalance: coordinator cannot fund the bid; job unchanged
            InvalidTransition: job is not open for acceptance
        """
        return await self._accept(job_id, bid_id, reasoning, from_status=JobStatus.ACCEPTING_BIDS)

    async def _accept(self, job_id: str, bid_id: str, reasoning: str, from_status: JobStatus) -> Job:
        bid = await self.bids.get(bid_id)

        async with self.jobs.locked(job_id):
            job = await self.jobs.get(job_id)
            if job.status != from_status:
                raise InvalidTransition(f"Job {job_id} cannot accept a bid while {job.status.value}")
            if bid.job_id != job_id:
                raise ValidationError(f"Bid {bid_id} is not for job {job_id}")
            if bid.price > job.budget_max:
                raise ValidationError(f"Bid ${bid.price} exceeds budget ${job.budget_max}")

            escrow_id = await self.ledger.create_escrow(
                self.coordinator_id, bid.agent_id, bid.price, job_id
            )
            message = f"Accepted bid from {bid.agent_id} for ${bid.price}, escrow {escrow_id}"
            if reasoning:
                message += f": {reasoning}"
            job = await self.jobs.replace(
                job,
                status=JobStatus.IN_PROGRESS,
                accepted_bid=AcceptedBid(
                    bid_id=bid.bid_id,
                    agent_id=bid.agent_id,
                    price=bid.price,
                    accepted_at=self.jobs.clock(),
                ),
                escrow_id=escrow_id,
                log=message,
            )

        await self.ledger.set_status(bid.agent_id, AgentStatus.BUSY)
        logger.info("bid_accepted", job_id=job_id, bid_id=bid_id, agent_id=bid.agent_id, escrow_id=escrow_id)
        return job

    # ============================================================
    # Work submission and verification
    # ============================================================

    async def submit_work(self, job_id: str, agent_id: str, results: Any) -> Job:
        """Record the assigned agent's results."""
        if results is None:
            raise ValidationError("results are required")

        async with self.jobs.locked(job_id):
            job = await self.jobs.get(job_id)
            if job.status != JobStatus.IN_PROGRESS:
                raise InvalidTransition(f"Job {job_id} is {job.status.value}, not in progress")
            if job.accepted_bid.agent_id != agent_id:
                raise ValidationError(f"Agent {agent_id} is not assigned to job {job_id}")
            if job.submission is not None:
                raise InvalidTransition(f"Work for job {job_id} was already submitted")

            job = await self.jobs.replace(
                job,
                submission=Submission(agent_id=agent_id, results=results, submitted_at=self.jobs.clock()),
                log=f"Work submitted by {agent_id}",
            )

        logger.info("work_submitted", job_id=job_id, agent_id=agent_id)
        return job

    async def verify(self, job_id: str) -> tuple[Verification, Job]:
        """Verify submitted work and settle escrow.

        Approved work releases escrow to the agent and completes the job;
        rejected work refunds the payer and fails the job.
        """
        job = await self.jobs.get(job_id)
        if job.status != JobStatus.IN_PROGRESS or job.submission is None:
            raise InvalidTransition(f"Job {job_id} has no submitted work to verify")

        verification = await self.decider.verify_work(job, job.submission)

        async with self.jobs.locked(job_id):
            job = await self.jobs.get(job_id)
            if job.status != JobStatus.IN_PROGRESS:
                raise InvalidTransition(f"Job {job_id} was settled while verifying")
            agent_id = job.accepted_bid.agent_id

            if verification.approved:
                await self.ledger.release_escrow(job.escrow_id, to_agent=agent_id, job_id=job_id)
                job = await self.jobs.replace(
                    job,
                    status=JobStatus.COMPLETED,
                    verification=verification,
                    completed_at=self.jobs.clock(),
                    log=f"Work approved (quality {verification.quality_score}), payment released to {agent_id}",
                )
            else:
                await self.ledger.cancel_escrow(job.escrow_id, job_id=job_id)
                job = await self.jobs.replace(
                    job,
                    status=JobStatus.FAILED,
                    verification=verification,
                    failure_reason=f"Verification failed: {verification.reasoning}",
                    completed_at=self.jobs.clock(),
                    log=f"Work rejected: {verification.reasoning}",
                    level="error",
                )

        await self._free_agent(agent_id)
        logger.info("work_verified", job_id=job_id, approved=verification.approved, agent_id=agent_id)
        return verification, job

    async def verify_submitted(self) -> list[str]:
        """Verify every in-progress job with a submission."""
        verified = []
        for job in await self.jobs.list_by_status(JobStatus.IN_PROGRESS):
            if job.submission is None:
                continue
            try:
                await self.verify(job.job_id)
                verified.append(job.job_id)
            except Exception as e:
                logger.error("verification_error", job_id=job.job_id, error=str(e))
        return verified

    # ============================================================
    # Failure
    # ============================================================

    async def fail_job(self, job_id: str, reason: str, require_no_submission: bool = False) -> Job:
        """Fail a job, refunding any held escrow.

        With ``require_no_submission`` a job whose work arrived in the
        meantime is left alone and ``InvalidTransition`` is raised.
        """
        async with self.jobs.locked(job_id):
            job = await self.jobs.get(job_id)
            if job.is_terminal:
                raise InvalidTransition(f"Job {job_id} is already {job.status.value}")
            if require_no_submission and job.submission is not None:
                raise InvalidTransition(f"Work for job {job_id} was submitted before it timed out")

            if job.escrow_id:
                try:
                    await self.ledger.cancel_escrow(job.escrow_id, job_id=job_id)
                except EscrowNotHeld:
                    logger.warning("fail_job_escrow_already_settled", job_id=job_id, escrow_id=job.escrow_id)

            job = await self.jobs.replace(
                job,
                status=JobStatus.FAILED,
                failure_reason=reason,
                completed_at=self.jobs.clock(),
                log=f"Job failed: {reason}",
                level="error",
            )

        if job.accepted_bid:
            await self._free_agent(job.accepted_bid.agent_id)
        logger.info("job_failed", job_id=job_id, reason=reason)
        return job

    async def watchdog(self) -> list[str]:
        """Fail in-progress jobs whose agent has not submitted in time."""
        now = self.jobs.clock()
        timeout = timedelta(seconds=self.job_timeout_seconds)
        expired = []
        for job in await self.jobs.list_by_status(JobStatus.IN_PROGRESS):
            if job.submission is not None or job.accepted_bid is None:
                continue
            if now - job.accepted_bid.accepted_at < timeout:
                continue
            try:
                await self.fail_job(
                    job.job_id,
                    f"No submission within {int(self.job_timeout_seconds)} seconds",
                    require_no_submission=True,
                )
                expired.append(job.job_id)
            except InvalidTransition as e:
                logger.info("watchdog_skipped", job_id=job.job_id, reason=e.reasoning)
            except Exception as e:
                logger.error("watchdog_error", job_id=job.job_id, error=str(e))
        return expired

    async def _free_agent(self, agent_id: str) -> None:
        for other in await self.jobs.list_by_status(JobStatus.IN_PROGRESS):
            if other.accepted_bid and other.accepted_bid.agent_id == agent_id:
                return
        await self.ledger.set_status(agent_id, AgentStatus.AVAILABLE)

    # ============================================================
    # Loop
    # ============================================================

    async def tick(self) -> None:
        """One pass: evaluate bids, verify submissions, expire stuck jobs."""
        for step in (self.evaluate_pending_bids, self.verify_submitted, self.watchdog):
            try:
                await step()
            except Exception as e:
                logger.error("coordinator_step_failed", step=step.__name__, error=str(e))

    async def run(self) -> None:
        """Run until ``stop()``, waking early on job events."""
        self.running = True
        subscription = self.jobs.events.subscribe("coordinator")
        logger.info("coordinator_started", agent_id=self.coordinator_id, interval=self.interval_seconds)
        try:
            while self.running:
                await self.tick()
                await self.jobs.events.wait(subscription, self.interval_seconds)
        except asyncio.CancelledError:
            logger.info("coordinator_cancelled")
            raise
        finally:
            self.jobs.events.unsubscribe(subscription)
            logger.info("coordinator_stopped")

    def stop(self) -> None:
        self.running = False
