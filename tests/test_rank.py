"""Tests for bid scoring and ranking."""

from datetime import datetime, timedelta, timezone

import pytest

from agentmarket.bidding.rank import ScoreWeights, calculate_bid_score, get_top_bid, rank_bids
from agentmarket.models import Agent, Bid, Job

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def make_job(budget="5.00"):
    return Job(job_id="job_1", type="analysis", description="Analyze data", budget_max=budget, posted_at=T0)


def make_bid(bid_id, price, confidence, eta, offset=0.0, agent_id=None):
    return Bid(
        bid_id=bid_id,
        job_id="job_1",
        agent_id=agent_id or f"agent_{bid_id}",
        price=price,
        estimated_time=eta,
        confidence=confidence,
        submitted_at=T0 + timedelta(seconds=offset),
    )


class TestCalculateBidScore:
    def test_scenario_scores(self):
        assert calculate_bid_score(make_bid("a", "1.50", 0.90, 120)) == pytest.approx(6.1)
        assert calculate_bid_score(make_bid("b", "3.00", 0.95, 60)) == pytest.approx(6.55)
        assert calculate_bid_score(make_bid("c", "4.50", 0.99, 300)) == pytest.approx(5.95)

    def test_cheap_bids_earn_price_points(self):
        # $0.50 is half the $1.00 reference: price score 5, weighted 1.5
        score = calculate_bid_score(make_bid("a", "0.50", 0.0, 600))
        assert score == pytest.approx(1.5)

    def test_components_floor_at_zero(self):
        assert calculate_bid_score(make_bid("a", "100.00", 0.0, 10_000)) == 0.0

    def test_deterministic(self):
        bid = make_bid("a", "2.00", 0.87, 90)
        assert calculate_bid_score(bid) == calculate_bid_score(bid.model_copy())

    def test_confidence_falls_back_to_reputation(self):
        bid = make_bid("a", "5.00", None, 600)
        agent = Agent(agent_id="agent_a", name="A", type="analysis", reputation_score=4.0)
        # 4.0 / 5 = 0.8 confidence -> 8 * 0.5
        assert calculate_bid_score(bid, agent) == pytest.approx(4.0)

    def test_custom_weights(self):
        weights = ScoreWeights(price=1.0, confidence=0.0, eta=0.0)
        assert calculate_bid_score(make_bid("a", "0.25", 0.9, 60), weights=weights) == pytest.approx(7.5)


class TestRankBids:
    def test_scenario_winner_is_three_dollar_bid(self):
        bids = [
            make_bid("a", "1.50", 0.90, 120, offset=0),
            make_bid("b", "3.00", 0.95, 60, offset=1),
            make_bid("c", "4.50", 0.99, 300, offset=2),
        ]
        ranked = rank_bids(make_job(), bids, {})
        assert [r.bid.bid_id for r in ranked] == ["b", "a", "c"]
        assert [r.rank for r in ranked] == [1, 2, 3]

    def test_tie_goes_to_earliest_submission(self):
        late = make_bid("late", "2.00", 0.9, 60, offset=5)
        early = make_bid("early", "2.00", 0.9, 60, offset=1)
        ranked = rank_bids(make_job(), [late, early], {})
        assert ranked[0].bid.bid_id == "early"
        assert ranked[0].score == ranked[1].score

    def test_over_budget_bids_not_eligible(self):
        bids = [make_bid("over", "6.00", 1.0, 10), make_bid("ok", "4.00", 0.5, 600)]
        ranked = rank_bids(make_job("5.00"), bids, {})
        assert [r.bid.bid_id for r in ranked] == ["ok"]

    def test_bid_at_budget_is_eligible(self):
        ranked = rank_bids(make_job("5.00"), [make_bid("a", "5.00", 0.9, 60)], {})
        assert len(ranked) == 1

    def test_no_bids(self):
        assert rank_bids(make_job(), [], {}) == []
        assert get_top_bid(make_job(), [], {}) is None

    def test_agent_name_attached(self):
        agent = Agent(agent_id="agent_a", name="Alpha", type="analysis")
        ranked = rank_bids(make_job(), [make_bid("a", "1.00", 0.9, 60)], {"agent_a": agent})
        assert ranked[0].agent_name == "Alpha"
        assert ranked[0].to_dict()["rank_score"] == ranked[0].score
