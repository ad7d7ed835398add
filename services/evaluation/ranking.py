"""Ordering rules for bids and L1 (lowest qualified bid) selection."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional, Tuple


class TechnicalStatus(str, Enum):
    PENDING = "PENDING"
    QUALIFIED = "QUALIFIED"
    DISQUALIFIED = "DISQUALIFIED"


class EvaluationProgress(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


@dataclass
class BidEntry:
    proposal_id: str
    bid_amount: Optional[float]
    technical_status: str
    received_at: Optional[datetime]
    evaluation_id: Optional[str] = None

    @property
    def is_qualified(self) -> bool:
        return self.technical_status == TechnicalStatus.QUALIFIED.value


def _arrival_key(bid: BidEntry) -> Tuple[datetime, str]:
    return (bid.received_at or datetime.max, bid.evaluation_id or bid.proposal_id)


def rank_key(bid: BidEntry):
    """Ascending amount, unpriced bids last, then earliest received."""
    return (bid.bid_amount is None, bid.bid_amount or 0.0) + _arrival_key(bid)


def rank_bids(bids: Iterable[BidEntry]) -> List[BidEntry]:
    return sorted(bids, key=rank_key)


def select_l1(bids: Iterable[BidEntry]) -> Optional[BidEntry]:
    """
    Lowest bid_amount among QUALIFIED bids with a price. Equal amounts go to
    the bid received first, then the lowest evaluation id.
    """
    candidates = [bid for bid in bids if bid.is_qualified and bid.bid_amount is not None]
    if not candidates:
        return None
    return min(candidates, key=lambda bid: (bid.bid_amount,) + _arrival_key(bid))
