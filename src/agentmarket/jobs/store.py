"""Job records and their status transitions."""

from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, AsyncIterator, Callable, Optional
import structlog

from ..errors import NotFound, ValidationError
from ..events import JobEvent, JobEventBus
from ..locks import KeyedLocks
from ..models import Job, JobLog, JobStatus, money, new_id, utcnow
from ..storage import MarketStore

logger = structlog.get_logger()


class JobStore:
    """Creates, reads and updates jobs.

    Every read-modify-write of a job happens under that job's lock. Use
    ``update`` for a single change, or hold ``locked(job_id)`` and call
    ``replace`` for sequences that read the job first.
    """

    def __init__(
        self,
        store: MarketStore,
        events: Optional[JobEventBus] = None,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.events = events or JobEventBus()
        self.clock = clock
        self._locks = KeyedLocks()

    async def create(
        self,
        job_type: str,
        description: str,
        budget_max: Any,
        requirements: Optional[dict] = None,
        posted_by: str = "anonymous",
    ) -> Job:
        """Post a new job, open for bids immediately."""
        if not job_type:
            raise ValidationError("Job type is required")
        if not description or not description.strip():
            raise ValidationError("Job description is required")
        if budget_max is None:
            raise ValidationError("budget_max is required")
        try:
            budget = money(budget_max)
        except ValueError:
            raise ValidationError(f"budget_max is not an amount: {budget_max!r}")
        if budget <= Decimal("0"):
            raise ValidationError("budget_max must be greater than zero")

        job = Job(
            job_id=new_id("job"),
            type=job_type,
            description=description.strip(),
            requirements=requirements or {},
            budget_max=budget,
            posted_by=posted_by or "anonymous",
            posted_at=self.clock(),
        )
        job.logs.append(JobLog(
            level="info",
            message=f"Job posted with budget ${budget}",
            timestamp=job.posted_at,
        ))
        await self.store.save_job(job)

        logger.info("job_created", job_id=job.job_id, type=job.type, budget=str(budget))
        self.events.publish(JobEvent(job_id=job.job_id, status=job.status))
        return job

    async def get(self, job_id: str) -> Job:
        job = await self.store.get_job(job_id)
        if job is None:
            raise NotFound(f"Job {job_id} not found")
        return job

    async def list_by_status(self, status: JobStatus) -> list[Job]:
        return await self.store.list_jobs(status=status)

    async def list_all(self) -> list[Job]:
        return await self.store.list_jobs()

    @asynccontextmanager
    async def locked(self, job_id: str) -> AsyncIterator[None]:
        async with self._locks.hold(job_id):
            yield

    async def replace(
        self,
        job: Job,
        log: Optional[str] = None,
        level: str = "info",
        **changes,
    ) -> Job:
        """Save ``job`` with ``changes`` applied. Caller holds the job lock."""
        previous = job.status
        updated = job.model_copy(update=changes, deep=True)
        if log:
            updated.logs.append(JobLog(level=level, message=log, timestamp=self.clock()))
        await self.store.save_job(updated)

        if updated.status != previous:
            logger.info(
                "job_status_changed",
                job_id=job.job_id,
                previous=previous.value,
                status=updated.status.value,
            )
            self.events.publish(JobEvent(
                job_id=job.job_id,
                status=updated.status,
                previous=previous,
            ))
        return updated

    async def update(self, job_id: str, **changes) -> Job:
        """Apply ``changes`` to the current stored job under its lock."""
        async with self.locked(job_id):
            job = await self.get(job_id)
            return await self.replace(job, **changes)

    async def add_log(self, job_id: str, level: str, message: str) -> Job:
        """Append a user-visible log line to a job."""
        async with self.locked(job_id):
            job = await self.get(job_id)
            return await self.replace(job, log=message, level=level)
