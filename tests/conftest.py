"""Shared fixtures for agentmarket tests."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from agentmarket.api import create_app
from agentmarket.config import Settings
from agentmarket.marketplace import Marketplace


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


def make_settings(**overrides) -> Settings:
    values = {
        "storage_backend": "memory",
        "decider": "rules",
        "executor": "rules",
        "run_agents": False,
        "seed_agents": True,
        "bid_window_seconds": 5.0,
        "coordinator_initial_balance": Decimal("100.00"),
        "platform_fee_rate": Decimal("0"),
        "max_window_extensions": None,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
async def market(settings, clock):
    """Started marketplace with seeded agents and no background loops."""
    m = Marketplace(settings, clock=clock)
    await m.start(run_loops=False)
    yield m
    await m.stop()


@pytest.fixture
def client(settings):
    """API client; startup seeds the wallets, loops stay off."""
    app = create_app(Marketplace(settings))
    with TestClient(app) as c:
        yield c


async def place_bids(market, job_id, bids):
    """Submit ``(agent_id, price, confidence, eta_seconds)`` bids in order."""
    placed = []
    for agent_id, price, confidence, eta in bids:
        placed.append(await market.bids.submit(
            job_id=job_id,
            agent_id=agent_id,
            price=price,
            estimated_time=eta,
            reasoning=f"bid from {agent_id}",
            confidence=confidence,
        ))
        market.jobs.clock.advance(0.1)
    return placed


# The three bids from the $5 end-to-end scenario
SCENARIO_BIDS = [
    ("scraper-agent", "1.50", 0.90, 120),
    ("analyst-agent", "3.00", 0.95, 60),
    ("research-pro", "4.50", 0.99, 300),
]
