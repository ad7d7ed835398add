"""
Unit Tests: Bid Ranking and L1 Selection
========================================
"""

from datetime import datetime, timedelta

import pytest

from services.evaluation import BidEntry, rank_bids, select_l1

T0 = datetime(2026, 3, 1, 10, 0, 0)


def bid(proposal_id, amount, status="QUALIFIED", minutes=0, evaluation_id=None):
    return BidEntry(
        proposal_id=proposal_id,
        bid_amount=amount,
        technical_status=status,
        received_at=T0 + timedelta(minutes=minutes),
        evaluation_id=evaluation_id or f"eval-{proposal_id}",
    )


@pytest.mark.unit
class TestSelectL1:

    def test_minimum_qualified_amount_wins(self):
        bids = [bid("a", 100.0), bid("b", 80.0), bid("c", 95.5)]
        assert select_l1(bids).proposal_id == "b"

    def test_disqualified_and_pending_bids_are_ignored(self):
        bids = [
            bid("cheap-but-out", 10.0, status="DISQUALIFIED"),
            bid("pending", 20.0, status="PENDING"),
            bid("ok", 300.0),
        ]
        assert select_l1(bids).proposal_id == "ok"

    def test_no_qualified_bid_gives_none(self):
        bids = [bid("a", 10.0, status="DISQUALIFIED"), bid("b", 20.0, status="PENDING")]
        assert select_l1(bids) is None

    def test_qualified_without_amount_is_not_l1(self):
        assert select_l1([bid("a", None)]) is None
        assert select_l1([bid("a", None), bid("b", 50.0)]).proposal_id == "b"

    def test_equal_amounts_go_to_earliest_received(self):
        bids = [bid("late", 80.0, minutes=30), bid("early", 80.0, minutes=5)]
        assert select_l1(bids).proposal_id == "early"

    def test_equal_amount_and_time_fall_back_to_evaluation_id(self):
        bids = [bid("x", 80.0, evaluation_id="eval-2"), bid("y", 80.0, evaluation_id="eval-1")]
        assert select_l1(bids).proposal_id == "y"

    def test_selection_does_not_depend_on_input_order(self):
        bids = [bid("a", 100.0, minutes=1), bid("b", 80.0, minutes=2), bid("c", 80.0, minutes=3)]
        assert select_l1(bids).proposal_id == select_l1(list(reversed(bids))).proposal_id == "b"


@pytest.mark.unit
class TestRankBids:

    def test_ascending_with_unpriced_last(self):
        bids = [bid("none", None), bid("high", 120.0), bid("low", 90.0)]
        assert [entry.proposal_id for entry in rank_bids(bids)] == ["low", "high", "none"]

    def test_ranking_includes_unqualified_bids(self):
        bids = [bid("q", 100.0), bid("d", 50.0, status="DISQUALIFIED")]
        assert [entry.proposal_id for entry in rank_bids(bids)] == ["d", "q"]

    def test_unpriced_bids_keep_arrival_order(self):
        bids = [bid("second", None, minutes=2), bid("first", None, minutes=1)]
        assert [entry.proposal_id for entry in rank_bids(bids)] == ["first", "second"]
