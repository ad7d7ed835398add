"""
Tender authoring for authorities: tender details and ordered sections.

Tenders and their sections are editable only while DRAFT; publishing
freezes them.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.exceptions import AuthorizationError, InvalidTransitionError, NotFoundError, ValidationError
from core.identity import CallerIdentity
from database import TenderDB, TenderSectionDB

logger = logging.getLogger(__name__)

EDITABLE_TENDER_FIELDS = ("title", "description", "submission_deadline", "estimated_value")
EDITABLE_SECTION_FIELDS = ("title", "description", "is_mandatory")


class TenderStatus(str, Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"


def _parse_datetime(value, field: str) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"{field} must be an ISO-8601 date", details={field: value}) from None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _parse_amount(value, field: str) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number", details={field: value}) from None
    if isinstance(value, bool) or not math.isfinite(amount) or amount < 0:
        raise ValidationError(f"{field} must be a non-negative number", details={field: value})
    return amount


class TenderAuthoringService:
    """Create, edit, order and publish tenders owned by an authority organization."""

    def __init__(self, db: Session):
        self.db = db

    def _get_tender(self, tender_id: str) -> TenderDB:
        tender = self.db.query(TenderDB).filter(TenderDB.id == tender_id).first()
        if not tender:
            raise NotFoundError("Tender not found", {"tender_id": tender_id})
        return tender

    def _get_owned_tender(self, tender_id: str, user: CallerIdentity) -> TenderDB:
        tender = self._get_tender(tender_id)
        if not user.is_authority or tender.organization_id != user.organization_id:
            raise AuthorizationError("Tender belongs to another organization")
        return tender

    def _get_editable_tender(self, tender_id: str, user: CallerIdentity) -> TenderDB:
        tender = self._get_owned_tender(tender_id, user)
        if tender.status != TenderStatus.DRAFT.value:
            raise InvalidTransitionError(
                "Published tenders cannot be modified",
                current=tender.status,
            )
        return tender

    def _get_section(self, tender: TenderDB, section_id: str) -> TenderSectionDB:
        section = self.db.query(TenderSectionDB).filter(
            TenderSectionDB.id == section_id,
            TenderSectionDB.tender_id == tender.id,
        ).first()
        if not section:
            raise NotFoundError("Section not found", {"section_id": section_id})
        return section

    def _commit(self, action: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Tender %s failed", action)
            raise

    # ------------------------------------------------------------------
    # Tenders
    # ------------------------------------------------------------------

    def create_tender(self, data: Dict[str, Any], user: CallerIdentity) -> Dict[str, Any]:
        if not user.is_authority or not user.organization_id:
            raise AuthorizationError("Only authorities can create tenders")

        title = (data.get("title") or "").strip()
        if not title:
            raise ValidationError("Missing required field: title")

        tender = TenderDB(
            organization_id=user.organization_id,
            created_by=user.user_id,
            title=title,
            description=data.get("description"),
            status=TenderStatus.DRAFT.value,
            submission_deadline=_parse_datetime(data.get("submission_deadline"), "submission_deadline"),
            estimated_value=_parse_amount(data.get("estimated_value"), "estimated_value"),
        )
        self.db.add(tender)
        self._commit("create")
        self.db.refresh(tender)

        logger.info(f"Tender {tender.id} created by {user.user_id}")
        return tender.to_dict(include_sections=True)

    def update_tender(self, tender_id: str, data: Dict[str, Any], user: CallerIdentity) -> Dict[str, Any]:
        tender = self._get_editable_tender(tender_id, user)

        updates = {field: data[field] for field in EDITABLE_TENDER_FIELDS if field in data}
        if not updates:
            raise ValidationError("No fields to update")

        if "title" in updates:
            title = (updates["title"] or "").strip()
            if not title:
                raise ValidationError("Title cannot be empty")
            tender.title = title
        if "description" in updates:
            tender.description = updates["description"]
        if "submission_deadline" in updates:
            tender.submission_deadline = _parse_datetime(updates["submission_deadline"], "submission_deadline")
        if "estimated_value" in updates:
            tender.estimated_value = _parse_amount(updates["estimated_value"], "estimated_value")

        self._commit("update")
        self.db.refresh(tender)
        return tender.to_dict(include_sections=True)

    def delete_tender(self, tender_id: str, user: CallerIdentity) -> None:
        tender = self._get_editable_tender(tender_id, user)
        self.db.delete(tender)
        self._commit("delete")
        logger.info(f"Tender {tender_id} deleted by {user.user_id}")

    def get_tender(self, tender_id: str, user: CallerIdentity) -> Dict[str, Any]:
        """Authorities see their own tenders in any status; everyone else only PUBLISHED ones."""
        tender = self._get_tender(tender_id)
        if user.is_authority and tender.organization_id == user.organization_id:
            return tender.to_dict(include_sections=True)
        if tender.status != TenderStatus.PUBLISHED.value:
            raise NotFoundError("Tender not found", {"tender_id": tender_id})
        return tender.to_dict(include_sections=True)

    def list_tenders(self, user: CallerIdentity, status: Optional[str] = None) -> List[Dict[str, Any]]:
        query = self.db.query(TenderDB)
        if user.is_authority:
            query = query.filter(TenderDB.organization_id == user.organization_id)
        else:
            query = query.filter(TenderDB.status == TenderStatus.PUBLISHED.value)
        if status:
            query = query.filter(TenderDB.status == status)
        return [tender.to_dict() for tender in query.order_by(TenderDB.created_at.desc()).all()]

    def publish_tender(self, tender_id: str, user: CallerIdentity) -> Dict[str, Any]:
        tender = self._get_owned_tender(tender_id, user)
        if tender.status != TenderStatus.DRAFT.value:
            raise InvalidTransitionError(
                "Tender is already published",
                current=tender.status,
                target=TenderStatus.PUBLISHED.value,
            )

        section_count = self.db.query(func.count(TenderSectionDB.id)).filter(
            TenderSectionDB.tender_id == tender.id
        ).scalar()
        if not section_count:
            raise ValidationError("Tender must have at least one section before publishing")

        tender.status = TenderStatus.PUBLISHED.value
        tender.published_at = datetime.utcnow()
        self._commit("publish")
        self.db.refresh(tender)

        logger.info(f"Tender {tender.id} published with {section_count} section(s)")
        return tender.to_dict(include_sections=True)

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------

    def add_section(self, tender_id: str, data: Dict[str, Any], user: CallerIdentity) -> Dict[str, Any]:
        tender = self._get_editable_tender(tender_id, user)

        title = (data.get("title") or "").strip()
        if not title:
            raise ValidationError("Missing required field: title")

        max_order = self.db.query(func.max(TenderSectionDB.order_index)).filter(
            TenderSectionDB.tender_id == tender.id
        ).scalar() or 0

        section = TenderSectionDB(
            tender_id=tender.id,
            title=title,
            description=data.get("description"),
            order_index=max_order + 1,
            is_mandatory=bool(data.get("is_mandatory", True)),
        )
        self.db.add(section)
        self._commit("section create")
        self.db.refresh(section)
        return section.to_dict()

    def update_section(self, tender_id: str, section_id: str, data: Dict[str, Any], user: CallerIdentity) -> Dict[str, Any]:
        tender = self._get_editable_tender(tender_id, user)
        section = self._get_section(tender, section_id)

        updates = {field: data[field] for field in EDITABLE_SECTION_FIELDS if field in data}
        if not updates:
            raise ValidationError("No fields to update")

        if "title" in updates:
            title = (updates["title"] or "").strip()
            if not title:
                raise ValidationError("Title cannot be empty")
            section.title = title
        if "description" in updates:
            section.description = updates["description"]
        if "is_mandatory" in updates:
            section.is_mandatory = bool(updates["is_mandatory"])

        self._commit("section update")
        self.db.refresh(section)
        return section.to_dict()

    def delete_section(self, tender_id: str, section_id: str, user: CallerIdentity) -> None:
        tender = self._get_editable_tender(tender_id, user)
        section = self._get_section(tender, section_id)
        self.db.delete(section)
        self._commit("section delete")

    def reorder_sections(self, tender_id: str, section_ids: List[str], user: CallerIdentity) -> List[Dict[str, Any]]:
        """Apply a new order given the complete list of section ids."""
        tender = self._get_editable_tender(tender_id, user)
        sections = {
            section.id: section
            for section in self.db.query(TenderSectionDB).filter(TenderSectionDB.tender_id == tender.id).all()
        }

        if not isinstance(section_ids, list) or len(section_ids) != len(set(section_ids)) \
                or set(section_ids) != set(sections):
            raise ValidationError("Section order must list every section of the tender exactly once")

        try:
            # Move out of the way first so the unique (tender_id, order_index) never collides
            for offset, section in enumerate(sections.values(), start=1):
                section.order_index = -offset
            self.db.flush()
            for position, section_id in enumerate(section_ids, start=1):
                sections[section_id].order_index = position
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(f"Failed to reorder sections of tender {tender_id}")
            raise

        ordered = (
            self.db.query(TenderSectionDB)
            .filter(TenderSectionDB.tender_id == tender.id)
            .order_by(TenderSectionDB.order_index)
            .all()
        )
        return [section.to_dict() for section in ordered]
