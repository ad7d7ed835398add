"""
Proposal lifecycle manager.

Drives a proposal through DRAFT -> FINAL -> PUBLISHED (with FINAL -> DRAFT
revert), the bidder submission flow DRAFT -> SUBMITTED -> UNDER_REVIEW ->
ACCEPTED/REJECTED, and versioning of published proposals.
"""

from __future__ import annotations

import logging
import math
import os
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from core.exceptions import AuthorizationError, InvalidTransitionError, NotFoundError, ValidationError
from core.identity import CallerIdentity
from database import (
    ProposalDB,
    ProposalSectionResponseDB,
    ProposalVersionDB,
    SectionActivityDB,
    TenderDB,
    TenderSectionDB,
    upsert,
)
from services.collaboration import ActivityType
from .state_machine import REVIEW_TARGETS, ProposalStatus, assert_transition

logger = logging.getLogger(__name__)

MIN_SECTION_CONTENT_LENGTH = int(os.getenv("PROPOSAL_MIN_SECTION_LENGTH", "1"))

REVIEW_VISIBLE_STATUSES = (
    ProposalStatus.SUBMITTED.value,
    ProposalStatus.UNDER_REVIEW.value,
    ProposalStatus.ACCEPTED.value,
    ProposalStatus.REJECTED.value,
)


class ProposalLifecycleManager:
    """Status transitions, section responses and version snapshots for proposals."""

    def __init__(self, db: Session, min_section_length: Optional[int] = None):
        self.db = db
        self.min_section_length = MIN_SECTION_CONTENT_LENGTH if min_section_length is None else min_section_length

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _get_proposal(self, proposal_id: str) -> ProposalDB:
        proposal = self.db.query(ProposalDB).filter(ProposalDB.id == proposal_id).first()
        if not proposal:
            raise NotFoundError("Proposal not found", {"proposal_id": proposal_id})
        return proposal

    def _get_owned_proposal(self, proposal_id: str, user: CallerIdentity) -> ProposalDB:
        proposal = self._get_proposal(proposal_id)
        if not user.organization_id or proposal.organization_id != user.organization_id:
            raise AuthorizationError("You do not have access to this proposal")
        return proposal

    def _get_tender(self, tender_id: str) -> TenderDB:
        tender = self.db.query(TenderDB).filter(TenderDB.id == tender_id).first()
        if not tender:
            raise NotFoundError("Tender not found", {"tender_id": tender_id})
        return tender

    def _section_contents(self, proposal: ProposalDB) -> List[Dict[str, Any]]:
        """Ordered section list of the proposal's tender, joined with this proposal's responses."""
        sections = (
            self.db.query(TenderSectionDB)
            .filter(TenderSectionDB.tender_id == proposal.tender_id)
            .order_by(TenderSectionDB.order_index)
            .all()
        )
        responses = {
            response.section_id: response
            for response in self.db.query(ProposalSectionResponseDB)
            .filter(ProposalSectionResponseDB.proposal_id == proposal.id)
            .all()
        }
        contents = []
        for section in sections:
            response = responses.get(section.id)
            contents.append({
                "section_id": section.id,
                "title": section.title,
                "order_index": section.order_index,
                "is_mandatory": bool(section.is_mandatory),
                "content": response.content if response else "",
                "last_edited_by": response.last_edited_by if response else None,
                "comment_count": (response.comment_count or 0) if response else 0,
            })
        return contents

    def _require_draft(self, proposal: ProposalDB) -> None:
        if proposal.status != ProposalStatus.DRAFT.value:
            raise ValidationError(
                f"Proposal is {proposal.status}; only DRAFT proposals can be edited",
                details={"status": proposal.status},
            )

    def _validate_mandatory_sections(self, proposal: ProposalDB) -> None:
        """Raise ValidationError listing mandatory sections without enough content."""
        incomplete = []
        for section in self._section_contents(proposal):
            if not section["is_mandatory"]:
                continue
            content_length = len((section["content"] or "").strip())
            if content_length < max(self.min_section_length, 1):
                incomplete.append({
                    "id": section["section_id"],
                    "title": section["title"],
                    "content_length": content_length,
                })

        if incomplete:
            raise ValidationError(
                f"{len(incomplete)} mandatory section(s) are incomplete",
                incomplete_sections=[section["id"] for section in incomplete],
                details={"sections": incomplete},
            )

    def _snapshot(self, proposal: ProposalDB, user: CallerIdentity, notes: str) -> None:
        """Store the current section contents for this version (latest snapshot wins)."""
        now = datetime.utcnow()
        upsert(
            self.db,
            ProposalVersionDB,
            {
                "root_proposal_id": proposal.root_proposal_id,
                "proposal_id": proposal.id,
                "version_number": proposal.version,
                "status": proposal.status,
                "snapshot_data": {
                    "proposal_id": proposal.id,
                    "version": proposal.version,
                    "status": proposal.status,
                    "bid_amount": proposal.bid_amount,
                    "sections": self._section_contents(proposal),
                },
                "notes": notes,
                "created_by": user.user_id,
                "created_at": now,
            },
            ["root_proposal_id", "version_number"],
            ["proposal_id", "status", "snapshot_data", "notes", "created_by", "created_at"],
        )

    def _log_activity(
        self,
        proposal_id: str,
        user: CallerIdentity,
        activity_type: ActivityType,
        section_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.db.add(SectionActivityDB(
            proposal_id=proposal_id,
            section_ref=section_id,
            user_id=user.user_id,
            activity_type=activity_type.value,
            activity_metadata=metadata or {},
        ))

    def _commit(self, action: str, proposal: ProposalDB) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Failed to %s proposal %s", action, proposal.id)
            raise
        self.db.refresh(proposal)

    # ------------------------------------------------------------------
    # Bidder-side drafting
    # ------------------------------------------------------------------

    def create_draft(self, tender_id: str, user: CallerIdentity) -> Dict[str, Any]:
        if not user.organization_id:
            raise AuthorizationError("User is not associated with an organization")

        tender = self._get_tender(tender_id)
        if tender.status != "PUBLISHED":
            raise ValidationError("Tender is not open for proposals", details={"tender_status": tender.status})

        existing = self.db.query(ProposalDB).filter(
            ProposalDB.tender_id == tender_id,
            ProposalDB.organization_id == user.organization_id,
            ProposalDB.is_superseded.is_(False),
        ).first()
        if existing:
            raise ValidationError(
                "A proposal already exists for this tender",
                details={"proposal_id": existing.id},
            )

        proposal_id = str(uuid.uuid4())
        proposal = ProposalDB(
            id=proposal_id,
            tender_id=tender_id,
            organization_id=user.organization_id,
            created_by=user.user_id,
            status=ProposalStatus.DRAFT.value,
            version=1,
            root_proposal_id=proposal_id,
        )
        self.db.add(proposal)
        try:
            self.db.flush()
            self._log_activity(proposal_id, user, ActivityType.PROPOSAL_CREATE, metadata={"tender_id": tender_id})
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ValidationError("A proposal already exists for this tender") from None
        self.db.refresh(proposal)

        logger.info(f"Created proposal {proposal.id} for tender {tender_id} (org {user.organization_id})")
        return proposal.to_dict()

    def get_proposal(self, proposal_id: str, user: CallerIdentity) -> Dict[str, Any]:
        """Bidders read their own proposals; authorities read proposals on tenders they own."""
        proposal = self._get_proposal(proposal_id)
        if proposal.organization_id != user.organization_id:
            tender = self._get_tender(proposal.tender_id)
            if not (user.is_authority and tender.organization_id == user.organization_id):
                raise AuthorizationError("You do not have access to this proposal")

        data = proposal.to_dict()
        data["tender"] = proposal.tender.to_dict() if proposal.tender else None
        data["sections"] = self._section_contents(proposal)
        return data

    def save_section_response(self, proposal_id: str, section_id: str, content: str, user: CallerIdentity) -> Dict[str, Any]:
        proposal = self._get_owned_proposal(proposal_id, user)
        self._require_draft(proposal)

        if not isinstance(content, str) or not content.strip():
            raise ValidationError("Content is required")

        section = self.db.query(TenderSectionDB).filter(
            TenderSectionDB.id == section_id,
            TenderSectionDB.tender_id == proposal.tender_id,
        ).first()
        if not section:
            raise ValidationError("Section does not belong to this tender", details={"section_id": section_id})

        now = datetime.utcnow()
        try:
            upsert(
                self.db,
                ProposalSectionResponseDB,
                {
                    "proposal_id": proposal.id,
                    "section_id": section_id,
                    "content": content,
                    "last_edited_by": user.user_id,
                    "created_at": now,
                    "updated_at": now,
                },
                ["proposal_id", "section_id"],
                ["content", "last_edited_by", "updated_at"],
            )
            proposal.updated_at = now
            self._log_activity(proposal.id, user, ActivityType.EDIT, section_id, {"content_length": len(content)})
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Failed to save section %s for proposal %s", section_id, proposal.id)
            raise

        response = self.db.query(ProposalSectionResponseDB).filter(
            ProposalSectionResponseDB.proposal_id == proposal.id,
            ProposalSectionResponseDB.section_id == section_id,
        ).first()
        return response.to_dict()

    def set_bid_amount(self, proposal_id: str, amount, user: CallerIdentity) -> Dict[str, Any]:
        proposal = self._get_owned_proposal(proposal_id, user)
        self._require_draft(proposal)

        try:
            value = float(amount)
        except (TypeError, ValueError):
            raise ValidationError("Bid amount must be a number", details={"bid_amount": amount}) from None
        if isinstance(amount, bool) or not math.isfinite(value) or value < 0:
            raise ValidationError("Bid amount must be a non-negative number", details={"bid_amount": amount})

        proposal.bid_amount = round(value, 2)
        self._commit("price", proposal)
        return proposal.to_dict()

    # ------------------------------------------------------------------
    # Finalize / publish / revert
    # ------------------------------------------------------------------

    def finalize(self, proposal_id: str, user: CallerIdentity) -> Dict[str, Any]:
        proposal = self._get_owned_proposal(proposal_id, user)
        target = assert_transition(proposal.status, ProposalStatus.FINAL)
        self._validate_mandatory_sections(proposal)

        try:
            self._snapshot(proposal, user, "Auto-snapshot before finalize")
            proposal.status = target.value
            proposal.finalized_at = datetime.utcnow()
            self._log_activity(proposal.id, user, ActivityType.PROPOSAL_FINALIZE, metadata={"version": proposal.version})
        except SQLAlchemyError:
            self.db.rollback()
            raise
        self._commit("finalize", proposal)

        logger.info(f"Proposal {proposal.id} finalized by {user.user_id}")
        return proposal.to_dict()

    def publish(self, proposal_id: str, user: CallerIdentity) -> Dict[str, Any]:
        proposal = self._get_owned_proposal(proposal_id, user)
        target = assert_transition(proposal.status, ProposalStatus.PUBLISHED)

        try:
            self._snapshot(proposal, user, f"Published version {proposal.version}")
            proposal.status = target.value
            proposal.published_at = datetime.utcnow()
            self._log_activity(proposal.id, user, ActivityType.PROPOSAL_PUBLISH, metadata={"version": proposal.version})
        except SQLAlchemyError:
            self.db.rollback()
            raise
        self._commit("publish", proposal)

        logger.info(f"Proposal {proposal.id} v{proposal.version} published by {user.user_id}")
        return proposal.to_dict()

    def revert_to_draft(self, proposal_id: str, user: CallerIdentity) -> Dict[str, Any]:
        proposal = self._get_owned_proposal(proposal_id, user)
        target = assert_transition(proposal.status, ProposalStatus.DRAFT)

        proposal.status = target.value
        proposal.finalized_at = None
        self._log_activity(proposal.id, user, ActivityType.PROPOSAL_REVERT)
        self._commit("revert", proposal)

        logger.info(f"Proposal {proposal.id} reverted to draft by {user.user_id}")
        return proposal.to_dict()

    # ------------------------------------------------------------------
    # Versioning
    # ------------------------------------------------------------------

    def create_new_version(self, proposal_id: str, user: CallerIdentity) -> Dict[str, Any]:
        """
        Carry a PUBLISHED proposal forward into a new DRAFT version.

        The source is claimed with a conditional update (only one caller can
        flip ``is_superseded``), and the unique (root, version) constraint
        rejects any second version N+1 that slips past it.
        """
        proposal = self._get_owned_proposal(proposal_id, user)
        if proposal.status != ProposalStatus.PUBLISHED.value:
            raise InvalidTransitionError(
                "New versions can only be created from PUBLISHED proposals",
                current=proposal.status,
                target=ProposalStatus.DRAFT.value,
            )
        if proposal.is_superseded:
            raise InvalidTransitionError(
                f"Version {proposal.version} has already been superseded",
                current=proposal.status,
            )

        source_responses = [
            (response.section_id, response.content, response.last_edited_by)
            for response in proposal.responses
        ]
        new_id = str(uuid.uuid4())

        try:
            claimed = self.db.query(ProposalDB).filter(
                ProposalDB.id == proposal.id,
                ProposalDB.is_superseded.is_(False),
            ).update({ProposalDB.is_superseded: True}, synchronize_session="fetch")
            if not claimed:
                self.db.rollback()
                raise InvalidTransitionError(
                    f"Version {proposal.version} has already been superseded",
                    current=proposal.status,
                )

            latest_version = self.db.query(func.max(ProposalDB.version)).filter(
                ProposalDB.root_proposal_id == proposal.root_proposal_id
            ).scalar() or proposal.version
            new_version = latest_version + 1

            new_proposal = ProposalDB(
                id=new_id,
                tender_id=proposal.tender_id,
                organization_id=proposal.organization_id,
                created_by=user.user_id,
                status=ProposalStatus.DRAFT.value,
                version=new_version,
                root_proposal_id=proposal.root_proposal_id,
                parent_proposal_id=proposal.id,
                bid_amount=proposal.bid_amount,
            )
            self.db.add(new_proposal)
            self.db.flush()

            for section_id, content, last_edited_by in source_responses:
                self.db.add(ProposalSectionResponseDB(
                    proposal_id=new_id,
                    section_id=section_id,
                    content=content,
                    last_edited_by=last_edited_by,
                ))
            self._log_activity(new_id, user, ActivityType.PROPOSAL_NEW_VERSION, metadata={
                "version": new_version,
                "parent_proposal_id": proposal.id,
            })

            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise InvalidTransitionError(
                f"A newer version of proposal {proposal.root_proposal_id} already exists",
                current=ProposalStatus.PUBLISHED.value,
            ) from None
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Failed to create new version of proposal %s", proposal.id)
            raise

        new_proposal = self._get_proposal(new_id)
        logger.info(
            f"Created proposal version {new_proposal.version} ({new_proposal.id}) "
            f"from {proposal.id} with {len(source_responses)} section(s)"
        )
        return new_proposal.to_dict()

    def get_version_history(self, proposal_id: str, user: CallerIdentity) -> Dict[str, Any]:
        proposal = self._get_owned_proposal(proposal_id, user)

        chain = (
            self.db.query(ProposalDB)
            .filter(ProposalDB.root_proposal_id == proposal.root_proposal_id)
            .order_by(ProposalDB.version.desc())
            .all()
        )
        snapshots = (
            self.db.query(ProposalVersionDB)
            .filter(ProposalVersionDB.root_proposal_id == proposal.root_proposal_id)
            .order_by(ProposalVersionDB.version_number.desc())
            .all()
        )
        current = next((item for item in chain if not item.is_superseded), chain[0])

        versions = []
        for item in chain:
            entry = item.to_dict()
            entry["is_current"] = item.id == current.id
            versions.append(entry)

        return {
            "root_proposal_id": proposal.root_proposal_id,
            "current_proposal_id": current.id,
            "current_version": current.version,
            "current_status": current.status,
            "proposal_versions": versions,
            "version_snapshots": [snapshot.to_dict() for snapshot in snapshots],
        }

    def get_version_snapshot(self, proposal_id: str, version_number: int, user: CallerIdentity) -> Dict[str, Any]:
        proposal = self._get_owned_proposal(proposal_id, user)
        snapshot = self.db.query(ProposalVersionDB).filter(
            ProposalVersionDB.root_proposal_id == proposal.root_proposal_id,
            ProposalVersionDB.version_number == version_number,
        ).first()
        if not snapshot:
            raise NotFoundError("Version not found", {"version_number": version_number})
        return snapshot.to_dict(include_snapshot=True)

    # ------------------------------------------------------------------
    # Submission and review
    # ------------------------------------------------------------------

    def submit(self, proposal_id: str, user: CallerIdentity) -> Dict[str, Any]:
        proposal = self._get_owned_proposal(proposal_id, user)
        target = assert_transition(proposal.status, ProposalStatus.SUBMITTED)
        self._validate_mandatory_sections(proposal)

        proposal.status = target.value
        proposal.submitted_at = datetime.utcnow()
        self._log_activity(proposal.id, user, ActivityType.PROPOSAL_SUBMIT, metadata={"tender_id": proposal.tender_id})
        self._commit("submit", proposal)

        logger.info(f"Proposal {proposal.id} submitted for tender {proposal.tender_id}")
        return proposal.to_dict()

    def set_review_status(self, proposal_id: str, status: str, user: CallerIdentity) -> Dict[str, Any]:
        """Authority-side review transitions: SUBMITTED -> UNDER_REVIEW -> ACCEPTED/REJECTED."""
        proposal = self._get_proposal(proposal_id)
        tender = self._get_tender(proposal.tender_id)
        if not user.is_authority or tender.organization_id != user.organization_id:
            raise AuthorizationError("Only the issuing authority can review this proposal")

        try:
            requested = ProposalStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown review status '{status}'") from None
        if requested not in REVIEW_TARGETS:
            raise ValidationError(f"'{status}' is not a review status")

        target = assert_transition(proposal.status, requested)
        proposal.status = target.value
        self._commit("review", proposal)

        logger.info(f"Proposal {proposal.id} moved to {target.value} by authority {user.user_id}")
        return proposal.to_dict()

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    def list_for_bidder(self, user: CallerIdentity) -> List[Dict[str, Any]]:
        if not user.organization_id:
            return []

        rows = (
            self.db.query(ProposalDB, TenderDB)
            .join(TenderDB, TenderDB.id == ProposalDB.tender_id)
            .filter(
                ProposalDB.organization_id == user.organization_id,
                ProposalDB.is_superseded.is_(False),
            )
            .order_by(ProposalDB.created_at.desc())
            .all()
        )
        results = []
        for proposal, tender in rows:
            entry = proposal.to_dict()
            entry["tender_title"] = tender.title
            entry["tender_status"] = tender.status
            results.append(entry)
        return results

    def list_submitted_for_authority(
        self,
        user: CallerIdentity,
        tender_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        if not user.is_authority:
            raise AuthorizationError("Only authorities can list submitted proposals")

        query = (
            self.db.query(ProposalDB, TenderDB)
            .join(TenderDB, TenderDB.id == ProposalDB.tender_id)
            .filter(
                TenderDB.organization_id == user.organization_id,
                ProposalDB.status.in_(REVIEW_VISIBLE_STATUSES),
            )
        )
        if tender_id:
            query = query.filter(ProposalDB.tender_id == tender_id)

        rows = query.order_by(ProposalDB.submitted_at.desc()).offset(offset).limit(limit).all()
        results = []
        for proposal, tender in rows:
            entry = proposal.to_dict()
            entry["tender_title"] = tender.title
            entry["organization_name"] = proposal.organization.name if proposal.organization else None
            results.append(entry)
        return results
