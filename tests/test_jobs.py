"""Tests for job records, events and locks."""

import asyncio
from decimal import Decimal

import pytest

from agentmarket.errors import NotFound, ValidationError
from agentmarket.events import JobEvent, JobEventBus
from agentmarket.jobs import JobStore
from agentmarket.locks import KeyedLocks
from agentmarket.models import JobStatus
from agentmarket.storage import InMemoryStore


@pytest.fixture
def jobs(clock):
    return JobStore(InMemoryStore(), clock=clock)


class TestCreate:
    async def test_new_job_accepts_bids(self, jobs, clock):
        job = await jobs.create("analysis", "  Analyze pricing  ", "5", requirements={"format": "json"})

        assert job.job_id.startswith("job_")
        assert job.status == JobStatus.ACCEPTING_BIDS
        assert job.description == "Analyze pricing"
        assert job.budget_max == Decimal("5.00")
        assert job.posted_at == clock()
        assert job.logs[0].message == "Job posted with budget $5.00"
        assert (await jobs.get(job.job_id)).requirements == {"format": "json"}

    @pytest.mark.parametrize(
        "job_type, description, budget",
        [
            ("", "Analyze", "5"),
            ("analysis", "", "5"),
            ("analysis", "   ", "5"),
            ("analysis", "Analyze", None),
            ("analysis", "Analyze", "0"),
            ("analysis", "Analyze", "-2"),
            ("analysis", "Analyze", "lots"),
        ],
    )
    async def test_rejects_invalid_jobs(self, jobs, job_type, description, budget):
        with pytest.raises(ValidationError):
            await jobs.create(job_type, description, budget)
        assert await jobs.list_all() == []

    async def test_unknown_job(self, jobs):
        with pytest.raises(NotFound):
            await jobs.get("job_missing")


class TestUpdate:
    async def test_status_change_publishes_event(self, jobs):
        sub = jobs.events.subscribe("test")
        job = await jobs.create("analysis", "Analyze", "5")
        await jobs.update(job.job_id, status=JobStatus.EVALUATING)

        events = await jobs.events.wait(sub, timeout=0.1)
        assert [(e.status, e.previous) for e in events] == [
            (JobStatus.ACCEPTING_BIDS, None),
            (JobStatus.EVALUATING, JobStatus.ACCEPTING_BIDS),
        ]

    async def test_no_event_without_status_change(self, jobs):
        job = await jobs.create("analysis", "Analyze", "5")
        sub = jobs.events.subscribe("test")
        await jobs.update(job.job_id, window_extensions=1)
        assert await jobs.events.wait(sub, timeout=0.01) == []

    async def test_add_log(self, jobs):
        job = await jobs.create("analysis", "Analyze", "5")
        updated = await jobs.add_log(job.job_id, "warning", "slow agent")
        assert updated.logs[-1].level == "warning"
        assert updated.logs[-1].message == "slow agent"
        assert len((await jobs.get(job.job_id)).logs) == 2

    async def test_list_by_status(self, jobs):
        first = await jobs.create("analysis", "One", "5")
        await jobs.create("analysis", "Two", "5")
        await jobs.update(first.job_id, status=JobStatus.FAILED)

        failed = await jobs.list_by_status(JobStatus.FAILED)
        assert [j.job_id for j in failed] == [first.job_id]
        assert len(await jobs.list_all()) == 2

    async def test_returned_jobs_are_copies(self, jobs):
        job = await jobs.create("analysis", "Analyze", "5")
        job.status = JobStatus.COMPLETED
        assert (await jobs.get(job.job_id)).status == JobStatus.ACCEPTING_BIDS


class TestEventBus:
    async def test_fan_out(self):
        bus = JobEventBus()
        a, b = bus.subscribe("a"), bus.subscribe("b")
        bus.publish(JobEvent(job_id="job_1", status=JobStatus.FAILED))
        assert len(await bus.wait(a, 0.1)) == 1
        assert len(await bus.wait(b, 0.1)) == 1

    async def test_full_queue_drops_oldest(self):
        bus = JobEventBus()
        sub = bus.subscribe("slow")
        for i in range(300):
            bus.publish(JobEvent(job_id=f"job_{i}", status=JobStatus.ACCEPTING_BIDS))
        events = await bus.wait(sub, 0.1)
        assert len(events) == 256
        assert events[0].job_id == "job_44"
        assert events[-1].job_id == "job_299"

    async def test_unsubscribe(self):
        bus = JobEventBus()
        sub = bus.subscribe("gone")
        bus.unsubscribe(sub)
        assert bus.subscriber_count == 0


class TestKeyedLocks:
    async def test_same_key_serializes(self):
        locks = KeyedLocks()
        order = []

        async def worker(name):
            async with locks.hold("job_1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order == ["a-in", "a-out", "b-in", "b-out"]

    async def test_multiple_keys_deduplicated(self):
        locks = KeyedLocks()
        async with locks.hold("b", "a", "a"):
            assert locks.locked("a") and locks.locked("b")
        assert not locks.locked("a")
