"""Payout subsystem — ranking and prize allocation."""

from podium.payout.prizes import PrizeCalculator, PrizeDistribution
from podium.payout.ranking import rank_entries

__all__ = ["PrizeCalculator", "PrizeDistribution", "rank_entries"]
