"""
Tender Authoring API Routes
Authorities create tenders, manage their sections and publish them.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from core.dependencies import get_current_identity, read_json
from core.identity import CallerIdentity
from database import get_db
from services.tender_authoring import TenderAuthoringService

router = APIRouter()


@router.get("/api/tenders")
async def list_tenders(
    status: Optional[str] = Query(None, description="DRAFT or PUBLISHED"),
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    return {"tenders": TenderAuthoringService(db).list_tenders(user, status=status)}


@router.post("/api/tenders", status_code=201)
async def create_tender(
    request: Request,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    data = await read_json(request)
    return TenderAuthoringService(db).create_tender(data, user)


@router.get("/api/tenders/{tender_id}")
async def get_tender(
    tender_id: str,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    return TenderAuthoringService(db).get_tender(tender_id, user)


@router.put("/api/tenders/{tender_id}")
async def update_tender(
    tender_id: str,
    request: Request,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    data = await read_json(request)
    return TenderAuthoringService(db).update_tender(tender_id, data, user)


@router.delete("/api/tenders/{tender_id}")
async def delete_tender(
    tender_id: str,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    TenderAuthoringService(db).delete_tender(tender_id, user)
    return {"success": True}


@router.post("/api/tenders/{tender_id}/publish")
async def publish_tender(
    tender_id: str,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    return TenderAuthoringService(db).publish_tender(tender_id, user)


@router.post("/api/tenders/{tender_id}/sections", status_code=201)
async def add_section(
    tender_id: str,
    request: Request,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    data = await read_json(request)
    return TenderAuthoringService(db).add_section(tender_id, data, user)


@router.post("/api/tenders/{tender_id}/sections/reorder")
async def reorder_sections(
    tender_id: str,
    request: Request,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    data = await read_json(request)
    sections = TenderAuthoringService(db).reorder_sections(tender_id, data.get("section_ids"), user)
    return {"sections": sections}


@router.put("/api/tenders/{tender_id}/sections/{section_id}")
async def update_section(
    tender_id: str,
    section_id: str,
    request: Request,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    data = await read_json(request)
    return TenderAuthoringService(db).update_section(tender_id, section_id, data, user)


@router.delete("/api/tenders/{tender_id}/sections/{section_id}")
async def delete_section(
    tender_id: str,
    section_id: str,
    db: Session = Depends(get_db),
    user: CallerIdentity = Depends(get_current_identity),
):
    TenderAuthoringService(db).delete_section(tender_id, section_id, user)
    return {"success": True}
