"""Bid collection and ranking."""

from .collector import BidCollector
from .rank import RankedBid, ScoreWeights, calculate_bid_score, get_top_bid, rank_bids

__all__ = [
    "BidCollector",
    "RankedBid",
    "ScoreWeights",
    "calculate_bid_score",
    "get_top_bid",
    "rank_bids",
]
