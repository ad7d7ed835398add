"""
Bid Evaluation API Routes
Authority-side technical evaluation and L1 determination.
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from core.dependencies import get_current_identity, read_json
from core.exceptions import InvalidTransitionError
from core.identity import CallerIdentity
from database import get_db
from services.evaluation import BidEvaluationEngine

router = APIRouter()


@router.get("/api/evaluation/tenders")
async def tenders_for_evaluation(
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    return {"tenders": BidEvaluationEngine(db).list_tenders_for_evaluation(user)}


@router.post("/api/evaluation/tenders/{tender_id}/initialize")
async def initialize_evaluation(
    tender_id: str,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    return BidEvaluationEngine(db).initialize_tender_evaluation(tender_id, user)


@router.get("/api/evaluation/tenders/{tender_id}")
async def evaluation_details(
    tender_id: str,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    return BidEvaluationEngine(db).get_tender_evaluation_details(tender_id, user)


@router.get("/api/evaluation/tenders/{tender_id}/bids")
async def tender_bids(
    tender_id: str,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    return {"bids": BidEvaluationEngine(db).get_bids_for_tender(tender_id, user)}


@router.put("/api/evaluation/tenders/{tender_id}/bids/{proposal_id}")
async def update_bid_evaluation(
    tender_id: str,
    proposal_id: str,
    request: Request,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    data = await read_json(request)
    engine = BidEvaluationEngine(db)
    # The engine writes unconditionally; closed evaluations are guarded here
    if engine.is_evaluation_completed(tender_id, user):
        raise InvalidTransitionError(
            "Evaluation for this tender is completed; bids can no longer be updated",
            current="COMPLETED",
        )
    return engine.update_bid_evaluation(proposal_id, data, user, tender_id=tender_id)


@router.post("/api/evaluation/tenders/{tender_id}/complete")
async def complete_evaluation(
    tender_id: str,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    return BidEvaluationEngine(db).complete_evaluation(tender_id, user)
