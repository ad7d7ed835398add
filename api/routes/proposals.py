"""
Proposal API Routes
Bidder drafting, finalize/publish/versioning, submission and authority review.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from core.dependencies import get_current_identity, read_json
from core.identity import CallerIdentity
from database import get_db
from services.proposal_lifecycle import ProposalLifecycleManager

router = APIRouter()


@router.get("/api/proposals")
async def list_my_proposals(
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    return {"proposals": ProposalLifecycleManager(db).list_for_bidder(user)}


@router.post("/api/tenders/{tender_id}/proposals", status_code=201)
async def create_proposal(
    tender_id: str,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    return ProposalLifecycleManager(db).create_draft(tender_id, user)


@router.get("/api/proposals/{proposal_id}")
async def get_proposal(
    proposal_id: str,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    return ProposalLifecycleManager(db).get_proposal(proposal_id, user)


@router.put("/api/proposals/{proposal_id}/sections/{section_id}")
async def save_section_response(
    proposal_id: str,
    section_id: str,
    request: Request,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    data = await read_json(request)
    return ProposalLifecycleManager(db).save_section_response(proposal_id, section_id, data.get("content"), user)


@router.put("/api/proposals/{proposal_id}/bid-amount")
async def set_bid_amount(
    proposal_id: str,
    request: Request,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    data = await read_json(request)
    return ProposalLifecycleManager(db).set_bid_amount(proposal_id, data.get("bid_amount"), user)


@router.post("/api/proposals/{proposal_id}/finalize")
async def finalize_proposal(
    proposal_id: str,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    return ProposalLifecycleManager(db).finalize(proposal_id, user)


@router.post("/api/proposals/{proposal_id}/publish")
async def publish_proposal(
    proposal_id: str,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    return ProposalLifecycleManager(db).publish(proposal_id, user)


@router.post("/api/proposals/{proposal_id}/revert")
async def revert_proposal(
    proposal_id: str,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    return ProposalLifecycleManager(db).revert_to_draft(proposal_id, user)


@router.post("/api/proposals/{proposal_id}/new-version", status_code=201)
async def create_new_version(
    proposal_id: str,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    return ProposalLifecycleManager(db).create_new_version(proposal_id, user)


@router.get("/api/proposals/{proposal_id}/versions")
async def get_version_history(
    proposal_id: str,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    return ProposalLifecycleManager(db).get_version_history(proposal_id, user)


@router.get("/api/proposals/{proposal_id}/versions/{version_number}")
async def get_version_snapshot(
    proposal_id: str,
    version_number: int,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    return ProposalLifecycleManager(db).get_version_snapshot(proposal_id, version_number, user)


@router.post("/api/proposals/{proposal_id}/submit")
async def submit_proposal(
    proposal_id: str,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    return ProposalLifecycleManager(db).submit(proposal_id, user)


@router.get("/api/authority/proposals")
async def list_submitted_proposals(
    tender_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    proposals = ProposalLifecycleManager(db).list_submitted_for_authority(
        user, tender_id=tender_id, limit=limit, offset=offset
    )
    return {"proposals": proposals}


@router.post("/api/authority/proposals/{proposal_id}/status")
async def set_review_status(
    proposal_id: str,
    request: Request,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    data = await read_json(request)
    return ProposalLifecycleManager(db).set_review_status(proposal_id, data.get("status"), user)
