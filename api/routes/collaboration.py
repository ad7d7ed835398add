"""
Collaboration API Routes
Section assignments, delegated editing and threaded comments for proposals
and uploaded tenders.
"""

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from core.dependencies import get_current_identity, read_json
from core.identity import CallerIdentity
from database import get_db
from services.collaboration import CollaborationEngine, SectionTarget

router = APIRouter()


def _comment_kwargs(data: dict) -> dict:
    return {
        "parent_comment_id": data.get("parent_comment_id"),
        "selection_start": data.get("selection_start"),
        "selection_end": data.get("selection_end"),
        "quoted_text": data.get("quoted_text"),
    }


# ==================== Assignments ====================


@router.get("/api/collaborator/assignments")
async def my_assignments(
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    return CollaborationEngine(db).list_assignments_for_user(user.user_id)


@router.get("/api/proposals/{proposal_id}/assignments")
async def proposal_assignments(
    proposal_id: str,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    return {"assignments": CollaborationEngine(db).get_section_assignments(proposal_id, user)}


@router.post("/api/proposals/{proposal_id}/sections/{section_id}/assignments", status_code=201)
async def assign_proposal_section(
    proposal_id: str,
    section_id: str,
    request: Request,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    data = await read_json(request)
    target = SectionTarget.for_proposal(proposal_id, section_id)
    return CollaborationEngine(db).assign_section(target, data.get("user_id"), data.get("permission"), user)


@router.delete("/api/proposals/{proposal_id}/sections/{section_id}/assignments/{assignee_id}")
async def unassign_proposal_section(
    proposal_id: str,
    section_id: str,
    assignee_id: str,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    CollaborationEngine(db).unassign_section(SectionTarget.for_proposal(proposal_id, section_id), assignee_id, user)
    return {"success": True}


@router.get("/api/uploaded-tenders/{uploaded_tender_id}/assignments")
async def uploaded_assignments(
    uploaded_tender_id: str,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    assignments = CollaborationEngine(db).get_section_assignments(uploaded_tender_id, user, uploaded=True)
    return {"assignments": assignments}


@router.post("/api/uploaded-tenders/{uploaded_tender_id}/sections/{section_key}/assignments", status_code=201)
async def assign_uploaded_section(
    uploaded_tender_id: str,
    section_key: str,
    request: Request,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    data = await read_json(request)
    target = SectionTarget.for_uploaded(uploaded_tender_id, section_key)
    return CollaborationEngine(db).assign_section(target, data.get("user_id"), data.get("permission"), user)


@router.delete("/api/uploaded-tenders/{uploaded_tender_id}/sections/{section_key}/assignments/{assignee_id}")
async def unassign_uploaded_section(
    uploaded_tender_id: str,
    section_key: str,
    assignee_id: str,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    target = SectionTarget.for_uploaded(uploaded_tender_id, section_key)
    CollaborationEngine(db).unassign_section(target, assignee_id, user)
    return {"success": True}


# ==================== Delegated section content ====================


@router.get("/api/collaborator/proposals/{proposal_id}/sections/{section_id}")
async def get_proposal_section(
    proposal_id: str,
    section_id: str,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    return CollaborationEngine(db).get_section_content(SectionTarget.for_proposal(proposal_id, section_id), user)


@router.put("/api/collaborator/proposals/{proposal_id}/sections/{section_id}")
async def update_proposal_section(
    proposal_id: str,
    section_id: str,
    request: Request,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    data = await read_json(request)
    target = SectionTarget.for_proposal(proposal_id, section_id)
    return CollaborationEngine(db).update_section_content(target, data.get("content"), user)


@router.get("/api/collaborator/uploaded-tenders/{uploaded_tender_id}/sections/{section_key}")
async def get_uploaded_section(
    uploaded_tender_id: str,
    section_key: str,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    target = SectionTarget.for_uploaded(uploaded_tender_id, section_key)
    return CollaborationEngine(db).get_section_content(target, user)


@router.put("/api/collaborator/uploaded-tenders/{uploaded_tender_id}/sections/{section_key}")
async def update_uploaded_section(
    uploaded_tender_id: str,
    section_key: str,
    request: Request,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    data = await read_json(request)
    target = SectionTarget.for_uploaded(uploaded_tender_id, section_key)
    return CollaborationEngine(db).update_section_content(target, data.get("content"), user)


# ==================== Comments ====================


@router.get("/api/proposals/{proposal_id}/sections/{section_id}/comments")
async def list_proposal_comments(
    proposal_id: str,
    section_id: str,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    target = SectionTarget.for_proposal(proposal_id, section_id)
    return {"comments": CollaborationEngine(db).list_comments(target, user)}


@router.post("/api/proposals/{proposal_id}/sections/{section_id}/comments", status_code=201)
async def add_proposal_comment(
    proposal_id: str,
    section_id: str,
    request: Request,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    data = await read_json(request)
    target = SectionTarget.for_proposal(proposal_id, section_id)
    return CollaborationEngine(db).add_comment(target, data.get("content"), user, **_comment_kwargs(data))


@router.get("/api/uploaded-tenders/{uploaded_tender_id}/sections/{section_key}/comments")
async def list_uploaded_comments(
    uploaded_tender_id: str,
    section_key: str,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    target = SectionTarget.for_uploaded(uploaded_tender_id, section_key)
    return {"comments": CollaborationEngine(db).list_comments(target, user)}


@router.post("/api/uploaded-tenders/{uploaded_tender_id}/sections/{section_key}/comments", status_code=201)
async def add_uploaded_comment(
    uploaded_tender_id: str,
    section_key: str,
    request: Request,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    data = await read_json(request)
    target = SectionTarget.for_uploaded(uploaded_tender_id, section_key)
    return CollaborationEngine(db).add_comment(target, data.get("content"), user, **_comment_kwargs(data))


@router.put("/api/comments/{comment_id}")
async def update_comment(
    comment_id: str,
    request: Request,
    uploaded: bool = Query(False),
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    data = await read_json(request)
    return CollaborationEngine(db).update_comment(comment_id, data.get("content"), user, uploaded=uploaded)


@router.delete("/api/comments/{comment_id}")
async def delete_comment(
    comment_id: str,
    uploaded: bool = Query(False),
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    removed = CollaborationEngine(db).delete_comment(comment_id, user, uploaded=uploaded)
    return {"success": True, "removed": removed}


@router.post("/api/comments/{comment_id}/resolve")
async def resolve_comment(
    comment_id: str,
    uploaded: bool = Query(False),
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    return CollaborationEngine(db).resolve_comment(comment_id, user, uploaded=uploaded)


@router.post("/api/comments/{comment_id}/unresolve")
async def unresolve_comment(
    comment_id: str,
    uploaded: bool = Query(False),
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    return CollaborationEngine(db).unresolve_comment(comment_id, user, uploaded=uploaded)


@router.get("/api/proposals/{proposal_id}/comment-counts")
async def comment_counts(
    proposal_id: str,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    return {"counts": CollaborationEngine(db).get_comment_counts(proposal_id, user)}


@router.get("/api/proposals/{proposal_id}/activity")
async def proposal_activity(
    proposal_id: str,
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    return {"activity": CollaborationEngine(db).get_activity(proposal_id, user, limit=limit)}
