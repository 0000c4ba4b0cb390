"""Tests for simulated agent workers and executors."""

from decimal import Decimal

import pytest
from conftest import place_bids

from agentmarket.agents import AgentWorker
from agentmarket.agents.executors import EXECUTORS, BaseExecutor, EchoExecutor, get_executor
from agentmarket.errors import InvalidTransition
from agentmarket.models import EscrowStatus, JobStatus


class FailingExecutor(BaseExecutor):
    async def execute(self, job):
        raise RuntimeError("browser crashed")


async def assigned_job(market, agent_id="analyst-agent"):
    job = await market.jobs.create("analysis", "Summarize quarterly revenue", "5.00")
    [bid] = await place_bids(market, job.job_id, [(agent_id, "3.00", 0.9, 60)])
    return await market.coordinator.accept_bid(job.job_id, bid.bid_id)


class TestBidding:
    async def test_bids_only_on_own_type(self, market):
        analysis = await market.jobs.create("analysis", "Analyze churn", "5.00")
        await market.jobs.create("writing", "Write a blog post", "5.00")

        placed = await market.workers["analyst-agent"].poll_for_jobs()

        assert [b.job_id for b in placed] == [analysis.job_id]
        bid = placed[0]
        # Short description: simple tier at the $1.50 base rate
        assert bid.price == Decimal("1.50")
        assert bid.estimated_time == 300
        assert bid.confidence == pytest.approx(0.92)

    async def test_does_not_bid_twice(self, market):
        await market.jobs.create("analysis", "Analyze churn", "5.00")
        worker = market.workers["analyst-agent"]

        assert len(await worker.poll_for_jobs()) == 1
        assert await worker.poll_for_jobs() == []

    async def test_declines_over_budget(self, market):
        job = await market.jobs.create("analysis", "Analyze churn", "2.00")

        placed = await market.workers["research-pro"].poll_for_jobs()

        assert placed == []
        assert await market.bids.list_by_job(job.job_id) == []

    async def test_ignores_closed_windows(self, market, clock):
        await market.jobs.create("analysis", "Analyze churn", "5.00")
        clock.advance(5)
        assert await market.workers["analyst-agent"].poll_for_jobs() == []

    async def test_demo_bids_from_every_matching_worker(self, market):
        job = await market.jobs.create("analysis", "Analyze churn", "5.00")

        bids = await market.collect_demo_bids(job.job_id)
        assert sorted(b.agent_id for b in bids) == ["analyst-agent", "research-pro"]

        # Second call finds nothing new
        assert await market.collect_demo_bids(job.job_id) == []


class TestExecution:
    async def test_execute_submits_results(self, market):
        job = await assigned_job(market)

        job = await market.workers["analyst-agent"].execute(job.job_id)

        assert job.submission.agent_id == "analyst-agent"
        assert "Summarize quarterly revenue" in job.submission.results["summary"]
        assert any("started work" in log.message for log in job.logs)

    async def test_executor_failure_fails_job_and_refunds(self, market):
        job = await assigned_job(market)
        worker = AgentWorker("analyst-agent", market.bids, market.coordinator, market.decider,
                             executor=FailingExecutor())

        job = await worker.execute(job.job_id)

        assert job.status == JobStatus.FAILED
        assert job.failure_reason == "Execution failed: browser crashed"
        assert (await market.ledger.get_escrow(job.escrow_id)).status == EscrowStatus.CANCELLED
        assert await market.ledger.balance("coordinator-agent") == Decimal("100.00")

    async def test_other_agent_cannot_execute(self, market):
        job = await assigned_job(market)
        with pytest.raises(InvalidTransition):
            await market.workers["research-pro"].execute(job.job_id)

    async def test_execute_requires_in_progress(self, market):
        job = await market.jobs.create("analysis", "Analyze churn", "5.00")
        with pytest.raises(InvalidTransition):
            await market.workers["analyst-agent"].execute(job.job_id)

    async def test_execute_assigned_jobs(self, market):
        job = await assigned_job(market)
        worker = market.workers["analyst-agent"]

        assert await worker.execute_assigned_jobs() == [job.job_id]
        assert await worker.execute_assigned_jobs() == []

    async def test_marketplace_execute_without_acceptance(self, market):
        job = await market.jobs.create("analysis", "Analyze churn", "5.00")
        with pytest.raises(InvalidTransition):
            await market.execute(job.job_id)


class TestExecutors:
    def test_registry_covers_seed_types(self):
        for job_type in ("web_scraping", "analysis", "writing"):
            assert ("rules", job_type) in EXECUTORS
            assert ("llm", job_type) in EXECUTORS

    def test_unknown_type_falls_back(self):
        assert isinstance(get_executor("translation"), EchoExecutor)

    async def test_scrape_fills_required_fields(self, market):
        job = await market.jobs.create(
            "web_scraping",
            "Collect pricing pages",
            "5.00",
            requirements={"websites": ["a.com", "b.com"], "required_fields": ["price"]},
        )
        results = await get_executor("web_scraping").execute(job)
        assert len(results["records"]) == 2
        assert results["price"] == ["price from a.com", "price from b.com"]
