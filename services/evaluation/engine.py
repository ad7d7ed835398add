"""
Bid evaluation engine.

Tracks per-bid technical qualification and scoring for a tender and computes
the tender-wide L1 when the authority completes the evaluation. Every
operation is restricted to an AUTHORITY user of the organization that owns
the tender.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from core.exceptions import AuthorizationError, InvalidTransitionError, NotFoundError, ValidationError
from core.identity import CallerIdentity
from database import (
    BidEvaluationDB,
    OrganizationDB,
    ProposalDB,
    TenderDB,
    TenderEvaluationStatusDB,
    insert_ignore,
)
from .ranking import BidEntry, EvaluationProgress, TechnicalStatus, rank_bids, select_l1

logger = logging.getLogger(__name__)


def _parse_number(value, field: str, minimum: Optional[float] = None) -> Optional[float]:
    """Parse an optional numeric input; None and blank strings mean 'not provided'."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", details={field: value})
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number", details={field: value}) from None
    if not math.isfinite(number):
        raise ValidationError(f"{field} must be a finite number", details={field: value})
    if minimum is not None and number < minimum:
        raise ValidationError(f"{field} must be at least {minimum}", details={field: value})
    return round(number, 2)


class BidEvaluationEngine:
    """Evaluation state for the bids received on a tender."""

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Lookups and checks
    # ------------------------------------------------------------------

    def _get_tender(self, tender_id: str) -> TenderDB:
        tender = self.db.query(TenderDB).filter(TenderDB.id == tender_id).first()
        if not tender:
            raise NotFoundError("Tender not found", {"tender_id": tender_id})
        return tender

    @staticmethod
    def _require_tender_owner(tender: TenderDB, user: CallerIdentity) -> None:
        if not user.is_authority or not user.organization_id or tender.organization_id != user.organization_id:
            raise AuthorizationError("Only the issuing authority can evaluate this tender")

    def _get_owned_tender(self, tender_id: str, user: CallerIdentity) -> TenderDB:
        tender = self._get_tender(tender_id)
        self._require_tender_owner(tender, user)
        return tender

    def _get_status_row(self, tender_id: str) -> Optional[TenderEvaluationStatusDB]:
        return self.db.query(TenderEvaluationStatusDB).filter(
            TenderEvaluationStatusDB.tender_id == tender_id
        ).first()

    def _active_proposals(self, tender_id: str):
        return (
            self.db.query(ProposalDB, OrganizationDB)
            .outerjoin(OrganizationDB, OrganizationDB.id == ProposalDB.organization_id)
            .filter(ProposalDB.tender_id == tender_id, ProposalDB.is_superseded.is_(False))
            .all()
        )

    def is_evaluation_completed(self, tender_id: str, user: Optional[CallerIdentity] = None) -> bool:
        """When ``user`` is given, tender ownership is checked before anything is revealed."""
        if user is not None:
            self._get_owned_tender(tender_id, user)
        status_row = self._get_status_row(tender_id)
        return bool(status_row) and status_row.evaluation_status == EvaluationProgress.COMPLETED.value

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    def list_tenders_for_evaluation(self, user: CallerIdentity) -> List[Dict[str, Any]]:
        """Published tenders of the caller's organization with evaluation progress."""
        if not user.is_authority:
            raise AuthorizationError("Only authorities can evaluate tenders")

        tenders = (
            self.db.query(TenderDB)
            .filter(TenderDB.organization_id == user.organization_id, TenderDB.status == "PUBLISHED")
            .order_by(TenderDB.published_at.desc())
            .all()
        )
        if not tenders:
            return []

        tender_ids = [tender.id for tender in tenders]
        bid_counts = dict(
            self.db.query(ProposalDB.tender_id, func.count(ProposalDB.id))
            .filter(ProposalDB.tender_id.in_(tender_ids), ProposalDB.is_superseded.is_(False))
            .group_by(ProposalDB.tender_id)
            .all()
        )
        statuses = {
            row.tender_id: row
            for row in self.db.query(TenderEvaluationStatusDB)
            .filter(TenderEvaluationStatusDB.tender_id.in_(tender_ids))
            .all()
        }

        results = []
        for tender in tenders:
            status_row = statuses.get(tender.id)
            entry = tender.to_dict()
            entry.update({
                "bid_count": bid_counts.get(tender.id, 0),
                "evaluation_status": status_row.evaluation_status if status_row else EvaluationProgress.PENDING.value,
                "bids_qualified": status_row.bids_qualified if status_row else 0,
                "l1_amount": status_row.l1_amount if status_row else None,
            })
            results.append(entry)
        return results

    def get_bids_for_tender(self, tender_id: str, user: CallerIdentity) -> List[Dict[str, Any]]:
        """Ranked view: ascending bid amount, unpriced bids last, then by arrival."""
        self._get_owned_tender(tender_id, user)
        return self._ranked_bids(tender_id)

    def _ranked_bids(self, tender_id: str) -> List[Dict[str, Any]]:
        rows = (
            self.db.query(ProposalDB, OrganizationDB, BidEvaluationDB)
            .outerjoin(OrganizationDB, OrganizationDB.id == ProposalDB.organization_id)
            .outerjoin(BidEvaluationDB, BidEvaluationDB.proposal_id == ProposalDB.id)
            .filter(ProposalDB.tender_id == tender_id, ProposalDB.is_superseded.is_(False))
            .all()
        )

        entries = {}
        payloads = {}
        for proposal, organization, evaluation in rows:
            amount = evaluation.bid_amount if evaluation else proposal.bid_amount
            entry = BidEntry(
                proposal_id=proposal.id,
                bid_amount=amount,
                technical_status=evaluation.technical_status if evaluation else TechnicalStatus.PENDING.value,
                received_at=proposal.submitted_at or proposal.created_at,
                evaluation_id=evaluation.id if evaluation else None,
            )
            entries[proposal.id] = entry
            payloads[proposal.id] = {
                "proposal_id": proposal.id,
                "organization_id": proposal.organization_id,
                "organization_name": (evaluation.organization_name if evaluation else None)
                or (organization.name if organization else None),
                "proposal_status": proposal.status,
                "version": proposal.version,
                "submitted_at": proposal.submitted_at.isoformat() if proposal.submitted_at else None,
                "bid_amount": amount,
                "technical_status": entry.technical_status,
                "evaluation": evaluation.to_dict() if evaluation else None,
            }

        ranked = []
        for position, entry in enumerate(rank_bids(entries.values()), start=1):
            payload = payloads[entry.proposal_id]
            payload["position"] = position
            ranked.append(payload)
        return ranked

    def get_tender_evaluation_details(self, tender_id: str, user: CallerIdentity) -> Dict[str, Any]:
        tender = self._get_owned_tender(tender_id, user)
        status_row = self._get_status_row(tender_id)
        return {
            "tender": tender.to_dict(),
            "evaluation": status_row.to_dict() if status_row else None,
            "bids": self._ranked_bids(tender_id),
        }

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def initialize_tender_evaluation(self, tender_id: str, user: CallerIdentity) -> Dict[str, Any]:
        """
        Create the tender's evaluation status row and one PENDING evaluation
        per active proposal. Returns the existing row unchanged when called again.
        """
        self._get_owned_tender(tender_id, user)

        existing = self._get_status_row(tender_id)
        if existing:
            return existing.to_dict()

        proposals = self._active_proposals(tender_id)
        evaluation_rows = [
            {
                "tender_id": tender_id,
                "proposal_id": proposal.id,
                "organization_name": organization.name if organization else None,
                "bid_amount": proposal.bid_amount,
                "technical_status": TechnicalStatus.PENDING.value,
                "status": EvaluationProgress.PENDING.value,
            }
            for proposal, organization in proposals
        ]

        try:
            status_row = TenderEvaluationStatusDB(
                tender_id=tender_id,
                evaluation_status=EvaluationProgress.IN_PROGRESS.value,
                total_bids_received=len(proposals),
            )
            self.db.add(status_row)
            self.db.flush()
            inserted = insert_ignore(self.db, BidEvaluationDB, evaluation_rows, ["proposal_id"])
            self.db.commit()
        except IntegrityError:
            # Another request initialized the same tender first
            self.db.rollback()
            existing = self._get_status_row(tender_id)
            if existing:
                return existing.to_dict()
            raise
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(f"Failed to initialize evaluation for tender {tender_id}")
            raise

        logger.info(f"Initialized evaluation for tender {tender_id}: {len(proposals)} bid(s), {inserted} new row(s)")
        return self._get_status_row(tender_id).to_dict()

    def update_bid_evaluation(
        self,
        proposal_id: str,
        data: Dict[str, Any],
        user: CallerIdentity,
        tender_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Partial update of one bid's evaluation. Absent or null fields keep
        their stored value; all inputs are validated before anything is written.

        When ``tender_id`` is given the bid must belong to that tender.
        """
        evaluation = self.db.query(BidEvaluationDB).filter(BidEvaluationDB.proposal_id == proposal_id).first()
        if evaluation and tender_id is not None and evaluation.tender_id != tender_id:
            evaluation = None
        if not evaluation:
            proposal_exists = self.db.query(ProposalDB.id).filter(ProposalDB.id == proposal_id).first()
            message = "Bid evaluation not found" if proposal_exists else "Proposal not found"
            raise NotFoundError(message, {"proposal_id": proposal_id})
        self._get_owned_tender(evaluation.tender_id, user)

        data = data or {}
        technical_status = data.get("technical_status")
        if technical_status is not None:
            try:
                technical_status = TechnicalStatus(technical_status).value
            except ValueError:
                raise ValidationError(
                    "technical_status must be PENDING, QUALIFIED or DISQUALIFIED",
                    details={"technical_status": technical_status},
                ) from None

        technical_score = _parse_number(data.get("technical_score"), "technical_score")
        bid_amount = _parse_number(data.get("bid_amount"), "bid_amount", minimum=0)
        remarks = data.get("remarks")
        if remarks is not None and not isinstance(remarks, str):
            raise ValidationError("remarks must be text", details={"remarks": remarks})

        if technical_status is not None:
            evaluation.technical_status = technical_status
        if technical_score is not None:
            evaluation.technical_score = technical_score
        if bid_amount is not None:
            evaluation.bid_amount = bid_amount
        if remarks is not None:
            evaluation.remarks = remarks
        evaluation.evaluator_user_id = user.user_id
        evaluation.evaluated_at = datetime.utcnow()
        evaluation.status = EvaluationProgress.IN_PROGRESS.value

        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(f"Failed to update evaluation for proposal {proposal_id}")
            raise
        self.db.refresh(evaluation)
        return evaluation.to_dict()

    def complete_evaluation(self, tender_id: str, user: CallerIdentity) -> Dict[str, Any]:
        """Compute L1 and the qualification counts, then close the evaluation."""
        self._get_owned_tender(tender_id, user)

        status_row = self._get_status_row(tender_id)
        if not status_row:
            raise NotFoundError("Evaluation has not been initialized for this tender", {"tender_id": tender_id})
        if status_row.evaluation_status == EvaluationProgress.COMPLETED.value:
            raise InvalidTransitionError(
                "Evaluation is already completed",
                current=status_row.evaluation_status,
                target=EvaluationProgress.COMPLETED.value,
            )

        evaluations = (
            self.db.query(BidEvaluationDB, ProposalDB)
            .join(ProposalDB, ProposalDB.id == BidEvaluationDB.proposal_id)
            .filter(BidEvaluationDB.tender_id == tender_id, ProposalDB.is_superseded.is_(False))
            .all()
        )
        bids = [
            BidEntry(
                proposal_id=evaluation.proposal_id,
                bid_amount=evaluation.bid_amount,
                technical_status=evaluation.technical_status,
                received_at=proposal.submitted_at or proposal.created_at,
                evaluation_id=evaluation.id,
            )
            for evaluation, proposal in evaluations
        ]
        l1 = select_l1(bids)
        qualified = sum(1 for bid in bids if bid.technical_status == TechnicalStatus.QUALIFIED.value)
        disqualified = sum(1 for bid in bids if bid.technical_status == TechnicalStatus.DISQUALIFIED.value)
        now = datetime.utcnow()

        try:
            claimed = self.db.query(TenderEvaluationStatusDB).filter(
                TenderEvaluationStatusDB.tender_id == tender_id,
                TenderEvaluationStatusDB.evaluation_status != EvaluationProgress.COMPLETED.value,
            ).update({
                TenderEvaluationStatusDB.evaluation_status: EvaluationProgress.COMPLETED.value,
                TenderEvaluationStatusDB.bids_qualified: qualified,
                TenderEvaluationStatusDB.bids_disqualified: disqualified,
                TenderEvaluationStatusDB.l1_proposal_id: l1.proposal_id if l1 else None,
                TenderEvaluationStatusDB.l1_amount: l1.bid_amount if l1 else None,
                TenderEvaluationStatusDB.completed_at: now,
                TenderEvaluationStatusDB.updated_at: now,
            }, synchronize_session=False)
            if not claimed:
                self.db.rollback()
                raise InvalidTransitionError(
                    "Evaluation is already completed",
                    current=EvaluationProgress.COMPLETED.value,
                    target=EvaluationProgress.COMPLETED.value,
                )

            self.db.query(BidEvaluationDB).filter(BidEvaluationDB.tender_id == tender_id).update({
                BidEvaluationDB.status: EvaluationProgress.COMPLETED.value,
                BidEvaluationDB.updated_at: now,
            }, synchronize_session=False)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(f"Failed to complete evaluation for tender {tender_id}")
            raise

        self.db.expire_all()
        status_row = self._get_status_row(tender_id)
        logger.info(
            f"Completed evaluation for tender {tender_id}: {qualified} qualified, "
            f"{disqualified} disqualified, L1={status_row.l1_amount} ({status_row.l1_proposal_id})"
        )
        return status_row.to_dict()
