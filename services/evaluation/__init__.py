"""Bid evaluation services package."""

from .ranking import BidEntry, EvaluationProgress, TechnicalStatus, rank_bids, select_l1
from .engine import BidEvaluationEngine

__all__ = [
    "BidEntry",
    "EvaluationProgress",
    "TechnicalStatus",
    "rank_bids",
    "select_l1",
    "BidEvaluationEngine",
]
