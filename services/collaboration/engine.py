"""
Section-level collaboration: assignments, delegated editing and threaded comments.

Every gated operation goes through ``PermissionResolver.require`` with an
explicit capability. Assignment management is reserved for the organization
that owns the proposal or uploaded tender.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import func, inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.exceptions import AuthorizationError, NotFoundError, ValidationError
from core.identity import CallerIdentity
from database import (
    ProposalCollaboratorDB,
    ProposalCommentDB,
    ProposalDB,
    ProposalSectionResponseDB,
    SectionActivityDB,
    TenderDB,
    TenderSectionDB,
    UploadedCollaboratorDB,
    UploadedCommentDB,
    UploadedSectionDraftDB,
    UploadedTenderDB,
    UserDB,
    upsert,
)
from .permissions import (
    Capability,
    PermissionResolver,
    SectionPermission,
    SectionTarget,
    permission_flags,
)

logger = logging.getLogger(__name__)


class ActivityType(str, Enum):
    EDIT = "EDIT"
    COMMENT = "COMMENT"
    RESOLVE_COMMENT = "RESOLVE_COMMENT"
    ASSIGN = "ASSIGN"
    UNASSIGN = "UNASSIGN"
    PROPOSAL_CREATE = "PROPOSAL_CREATE"
    PROPOSAL_FINALIZE = "PROPOSAL_FINALIZE"
    PROPOSAL_PUBLISH = "PROPOSAL_PUBLISH"
    PROPOSAL_REVERT = "PROPOSAL_REVERT"
    PROPOSAL_NEW_VERSION = "PROPOSAL_NEW_VERSION"
    PROPOSAL_SUBMIT = "PROPOSAL_SUBMIT"


class CollaborationEngine:
    """Assignments, delegated section editing and comment threads."""

    def __init__(self, db: Session, resolver: Optional[PermissionResolver] = None):
        self.db = db
        self.resolver = resolver or PermissionResolver(db)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _get_proposal(self, proposal_id: str) -> ProposalDB:
        proposal = self.db.query(ProposalDB).filter(ProposalDB.id == proposal_id).first()
        if not proposal:
            raise NotFoundError("Proposal not found", {"proposal_id": proposal_id})
        return proposal

    def _get_uploaded_tender(self, uploaded_tender_id: str) -> UploadedTenderDB:
        uploaded = self.db.query(UploadedTenderDB).filter(UploadedTenderDB.id == uploaded_tender_id).first()
        if not uploaded:
            raise NotFoundError("Uploaded tender not found", {"uploaded_tender_id": uploaded_tender_id})
        return uploaded

    def _owner_org(self, root_id: str, uploaded: bool) -> str:
        if uploaded:
            return self._get_uploaded_tender(root_id).organization_id
        return self._get_proposal(root_id).organization_id

    def _is_owner(self, root_id: str, uploaded: bool, user: CallerIdentity) -> bool:
        return bool(user.organization_id) and self._owner_org(root_id, uploaded) == user.organization_id

    def _require_owner(self, root_id: str, uploaded: bool, user: CallerIdentity) -> None:
        if not self._is_owner(root_id, uploaded, user):
            raise AuthorizationError("Only the owning organization can manage collaborators")

    def _section_info(self, target: SectionTarget) -> Dict[str, Any]:
        """Title and ownership data for the target section; raises if the section is not part of it."""
        if target.is_uploaded:
            uploaded = self._get_uploaded_tender(target.uploaded_tender_id)
            title = uploaded.section_title(target.section_key)
            if title is None:
                raise NotFoundError("Section not found in uploaded tender", {"section_key": target.section_key})
            return {"section_title": title, "tender_title": uploaded.title}

        proposal = self._get_proposal(target.proposal_id)
        section = self.db.query(TenderSectionDB).filter(
            TenderSectionDB.id == target.section_id,
            TenderSectionDB.tender_id == proposal.tender_id,
        ).first()
        if not section:
            raise NotFoundError("Section not found in this proposal's tender", {"section_id": target.section_id})
        return {
            "section_title": section.title,
            "is_mandatory": bool(section.is_mandatory),
            "proposal_status": proposal.status,
        }

    def _log_activity(self, target: SectionTarget, user_id: str, activity_type: ActivityType, metadata: Optional[Dict[str, Any]] = None) -> None:
        self.db.add(SectionActivityDB(
            proposal_id=target.proposal_id,
            uploaded_tender_id=target.uploaded_tender_id,
            section_ref=target.section_ref,
            user_id=user_id,
            activity_type=activity_type.value,
            activity_metadata=metadata or {},
        ))

    def _commit(self, action: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Collaboration %s failed", action)
            raise

    def _table_available(self, model) -> bool:
        return inspect(self.db.get_bind()).has_table(model.__tablename__)

    @staticmethod
    def _comment_model(uploaded: bool):
        return UploadedCommentDB if uploaded else ProposalCommentDB

    def _comment_target(self, comment) -> SectionTarget:
        if isinstance(comment, UploadedCommentDB):
            return SectionTarget.for_uploaded(comment.uploaded_tender_id, comment.section_key)
        return SectionTarget.for_proposal(comment.proposal_id, comment.section_id)

    def _target_filters(self, model, target: SectionTarget) -> List[Any]:
        if target.is_uploaded:
            return [model.uploaded_tender_id == target.uploaded_tender_id, model.section_key == target.section_key]
        return [model.proposal_id == target.proposal_id, model.section_id == target.section_id]

    def _adjust_comment_count(self, target: SectionTarget, delta: int) -> None:
        model = UploadedSectionDraftDB if target.is_uploaded else ProposalSectionResponseDB
        row = self.db.query(model).filter(*self._target_filters(model, target)).first()
        if row:
            row.comment_count = max((row.comment_count or 0) + delta, 0)

    def _get_comment(self, comment_id: str, uploaded: bool):
        model = self._comment_model(uploaded)
        comment = self.db.query(model).filter(model.id == comment_id).first()
        if not comment:
            raise NotFoundError("Comment not found", {"comment_id": comment_id})
        return comment

    @staticmethod
    def _thread(comment) -> List[Any]:
        """The comment followed by every descendant reply."""
        nodes = [comment]
        for reply in comment.replies:
            nodes.extend(CollaborationEngine._thread(reply))
        return nodes

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    def assign_section(self, target: SectionTarget, assignee_user_id: str, permission: str, user: CallerIdentity) -> Dict[str, Any]:
        level = SectionPermission.assignable(permission)
        self._require_owner(target.root_id, target.is_uploaded, user)

        try:
            self._section_info(target)
        except NotFoundError as exc:
            raise ValidationError("Section does not belong to this tender", details=exc.details) from None

        assignee = self.db.query(UserDB).filter(UserDB.id == assignee_user_id).first()
        if not assignee:
            raise NotFoundError("User not found", {"user_id": assignee_user_id})

        now = datetime.utcnow()
        model = UploadedCollaboratorDB if target.is_uploaded else ProposalCollaboratorDB
        if target.is_uploaded:
            values = {"uploaded_tender_id": target.uploaded_tender_id, "section_key": target.section_key}
            conflict = ["uploaded_tender_id", "section_key", "user_id"]
        else:
            values = {"proposal_id": target.proposal_id, "section_id": target.section_id}
            conflict = ["proposal_id", "section_id", "user_id"]
        values.update({
            "user_id": assignee_user_id,
            "permission": level.value,
            "assigned_by": user.user_id,
            "assigned_at": now,
        })

        upsert(self.db, model, values, conflict, ["permission", "assigned_by", "assigned_at"])
        self._log_activity(target, user.user_id, ActivityType.ASSIGN, {
            "assignee_user_id": assignee_user_id,
            "permission": level.value,
        })
        self._commit("assign")

        assignment = self.db.query(model).filter(
            *self._target_filters(model, target),
            model.user_id == assignee_user_id,
        ).first()
        logger.info(f"Assigned {level.value} on {target.section_ref} to user {assignee_user_id}")
        return assignment.to_dict()

    def unassign_section(self, target: SectionTarget, assignee_user_id: str, user: CallerIdentity) -> None:
        self._require_owner(target.root_id, target.is_uploaded, user)

        model = UploadedCollaboratorDB if target.is_uploaded else ProposalCollaboratorDB
        assignment = self.db.query(model).filter(
            *self._target_filters(model, target),
            model.user_id == assignee_user_id,
        ).first()
        if not assignment:
            raise NotFoundError("Assignment not found")

        self.db.delete(assignment)
        self._log_activity(target, user.user_id, ActivityType.UNASSIGN, {"assignee_user_id": assignee_user_id})
        self._commit("unassign")
        logger.info(f"Removed user {assignee_user_id} from {target.section_ref}")

    def get_section_assignments(self, root_id: str, user: CallerIdentity, uploaded: bool = False) -> Dict[str, List[Dict[str, Any]]]:
        """Assignments of a proposal (or uploaded tender), grouped by section."""
        self._require_owner(root_id, uploaded, user)

        if uploaded:
            rows = (
                self.db.query(UploadedCollaboratorDB, UserDB)
                .join(UserDB, UserDB.id == UploadedCollaboratorDB.user_id)
                .filter(UploadedCollaboratorDB.uploaded_tender_id == root_id)
                .order_by(UploadedCollaboratorDB.assigned_at)
                .all()
            )
        else:
            rows = (
                self.db.query(ProposalCollaboratorDB, UserDB)
                .join(UserDB, UserDB.id == ProposalCollaboratorDB.user_id)
                .filter(ProposalCollaboratorDB.proposal_id == root_id)
                .order_by(ProposalCollaboratorDB.assigned_at)
                .all()
            )

        grouped: Dict[str, List[Dict[str, Any]]] = {}
        for assignment, assignee in rows:
            section_ref = assignment.section_key if uploaded else assignment.section_id
            entry = assignment.to_dict()
            entry["user_name"] = assignee.name
            entry["user_email"] = assignee.email
            grouped.setdefault(section_ref, []).append(entry)
        return grouped

    def list_assignments_for_user(self, user_id: str) -> Dict[str, Any]:
        """All sections delegated to a user across platform and uploaded tenders, newest first."""
        assignments: List[Dict[str, Any]] = []

        platform_rows = (
            self.db.query(ProposalCollaboratorDB, TenderSectionDB, ProposalDB, TenderDB)
            .join(TenderSectionDB, TenderSectionDB.id == ProposalCollaboratorDB.section_id)
            .join(ProposalDB, ProposalDB.id == ProposalCollaboratorDB.proposal_id)
            .join(TenderDB, TenderDB.id == ProposalDB.tender_id)
            .filter(ProposalCollaboratorDB.user_id == user_id)
            .all()
        )
        for assignment, section, proposal, tender in platform_rows:
            entry = assignment.to_dict()
            entry.update({
                "target_type": "proposal",
                "section_title": section.title,
                "tender_id": tender.id,
                "tender_title": tender.title,
                "proposal_status": proposal.status,
                "_assigned_at": assignment.assigned_at,
            })
            assignments.append(entry)

        uploaded_rows = (
            self.db.query(UploadedCollaboratorDB, UploadedTenderDB)
            .join(UploadedTenderDB, UploadedTenderDB.id == UploadedCollaboratorDB.uploaded_tender_id)
            .filter(UploadedCollaboratorDB.user_id == user_id)
            .all()
        )
        for assignment, uploaded in uploaded_rows:
            entry = assignment.to_dict()
            entry.update({
                "target_type": "uploaded_tender",
                "section_title": uploaded.section_title(assignment.section_key) or assignment.section_key,
                "tender_title": uploaded.title,
                "_assigned_at": assignment.assigned_at,
            })
            assignments.append(entry)

        assignments.sort(key=lambda item: item["_assigned_at"] or datetime.min, reverse=True)
        for entry in assignments:
            entry.pop("_assigned_at")

        can_edit = sum(1 for item in assignments if item["permission"] == SectionPermission.EDIT.value)
        # Each assignment counts once: can_edit + can_comment == total
        can_comment = sum(1 for item in assignments if item["permission"] == SectionPermission.READ_AND_COMMENT.value)
        return {
            "assignments": assignments,
            "stats": {
                "total": len(assignments),
                "can_edit": can_edit,
                "can_comment": can_comment,
            },
        }

    # ------------------------------------------------------------------
    # Section content
    # ------------------------------------------------------------------

    def get_section_content(self, target: SectionTarget, user: CallerIdentity) -> Dict[str, Any]:
        permission = self.resolver.require(user.user_id, target, Capability.VIEW_SECTION)
        info = self._section_info(target)

        model = UploadedSectionDraftDB if target.is_uploaded else ProposalSectionResponseDB
        row = self.db.query(model).filter(*self._target_filters(model, target)).first()

        data = target.to_dict()
        data.update({
            "section_title": info["section_title"],
            "content": (row.content or "") if row else "",
            "last_edited_by": row.last_edited_by if row else None,
            "updated_at": row.updated_at.isoformat() if row and row.updated_at else None,
            "comment_count": (row.comment_count or 0) if row else 0,
            "permission": permission.value,
        })
        data.update(permission_flags(permission))
        if not target.is_uploaded:
            data["is_mandatory"] = info["is_mandatory"]
            data["proposal_status"] = info["proposal_status"]
        return data

    def update_section_content(self, target: SectionTarget, content: str, user: CallerIdentity) -> Dict[str, Any]:
        self.resolver.require(user.user_id, target, Capability.EDIT_SECTION)
        if not isinstance(content, str):
            raise ValidationError("Content is required")

        info = self._section_info(target)
        if not target.is_uploaded and info["proposal_status"] != "DRAFT":
            raise ValidationError(
                f"Proposal is {info['proposal_status']}; only DRAFT proposals can be edited",
                details={"status": info["proposal_status"]},
            )

        now = datetime.utcnow()
        if target.is_uploaded:
            upsert(
                self.db,
                UploadedSectionDraftDB,
                {
                    "uploaded_tender_id": target.uploaded_tender_id,
                    "section_key": target.section_key,
                    "content": content,
                    "last_edited_by": user.user_id,
                    "updated_at": now,
                },
                ["uploaded_tender_id", "section_key"],
                ["content", "last_edited_by", "updated_at"],
            )
        else:
            upsert(
                self.db,
                ProposalSectionResponseDB,
                {
                    "proposal_id": target.proposal_id,
                    "section_id": target.section_id,
                    "content": content,
                    "last_edited_by": user.user_id,
                    "created_at": now,
                    "updated_at": now,
                },
                ["proposal_id", "section_id"],
                ["content", "last_edited_by", "updated_at"],
            )
        self._log_activity(target, user.user_id, ActivityType.EDIT, {"content_length": len(content)})
        self._commit("section update")

        logger.info(f"User {user.user_id} updated section {target.section_ref}")
        return self.get_section_content(target, user)

    # ------------------------------------------------------------------
    # Comments
    # ------------------------------------------------------------------

    def add_comment(
        self,
        target: SectionTarget,
        content: str,
        user: CallerIdentity,
        parent_comment_id: Optional[str] = None,
        selection_start: Optional[int] = None,
        selection_end: Optional[int] = None,
        quoted_text: Optional[str] = None,
    ) -> Dict[str, Any]:
        self.resolver.require(user.user_id, target, Capability.COMMENT_SECTION)

        if not isinstance(content, str) or not content.strip():
            raise ValidationError("Comment content is required")

        if (selection_start is None) != (selection_end is None):
            raise ValidationError("Selection anchors need both a start and an end offset")
        if selection_start is not None:
            if isinstance(selection_start, bool) or isinstance(selection_end, bool) \
                    or not isinstance(selection_start, int) or not isinstance(selection_end, int):
                raise ValidationError("Selection offsets must be integers")
            if selection_start < 0 or selection_end < selection_start:
                raise ValidationError(
                    "Selection offsets must satisfy 0 <= start <= end",
                    details={"selection_start": selection_start, "selection_end": selection_end},
                )

        self._section_info(target)
        model = self._comment_model(target.is_uploaded)

        if parent_comment_id:
            parent = self.db.query(model).filter(
                model.id == parent_comment_id,
                *self._target_filters(model, target),
            ).first()
            if not parent:
                raise ValidationError(
                    "Parent comment not found in this section",
                    details={"parent_comment_id": parent_comment_id},
                )

        fields = {
            "user_id": user.user_id,
            "parent_comment_id": parent_comment_id,
            "content": content.strip(),
            "selection_start": selection_start,
            "selection_end": selection_end,
            "quoted_text": quoted_text,
        }
        if target.is_uploaded:
            comment = UploadedCommentDB(uploaded_tender_id=target.uploaded_tender_id, section_key=target.section_key, **fields)
        else:
            comment = ProposalCommentDB(proposal_id=target.proposal_id, section_id=target.section_id, **fields)

        self.db.add(comment)
        self._adjust_comment_count(target, 1)
        self._log_activity(target, user.user_id, ActivityType.COMMENT, {
            "is_reply": bool(parent_comment_id),
            "has_selection": selection_start is not None,
        })
        self._commit("comment")
        self.db.refresh(comment)
        return comment.to_dict()

    def list_comments(self, target: SectionTarget, user: CallerIdentity) -> List[Dict[str, Any]]:
        """Comment threads of a section as a nested tree, oldest first. Owners may always read."""
        if not self._is_owner(target.root_id, target.is_uploaded, user):
            self.resolver.require(user.user_id, target, Capability.VIEW_SECTION)

        model = self._comment_model(target.is_uploaded)
        if not self._table_available(model):
            logger.warning(f"{model.__tablename__} table is missing; returning no comments")
            return []

        comments = (
            self.db.query(model)
            .filter(*self._target_filters(model, target))
            .order_by(model.created_at, model.id)
            .all()
        )

        nodes: Dict[str, Dict[str, Any]] = {}
        for comment in comments:
            node = comment.to_dict()
            node["replies"] = []
            nodes[comment.id] = node

        roots = []
        for comment in comments:
            node = nodes[comment.id]
            parent = nodes.get(comment.parent_comment_id) if comment.parent_comment_id else None
            if parent is not None:
                parent["replies"].append(node)
            else:
                roots.append(node)
        return roots

    def update_comment(self, comment_id: str, content: str, user: CallerIdentity, uploaded: bool = False) -> Dict[str, Any]:
        comment = self._get_comment(comment_id, uploaded)
        if comment.user_id != user.user_id:
            raise AuthorizationError("Only the author can edit this comment")
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("Comment content is required")

        comment.content = content.strip()
        comment.updated_at = datetime.utcnow()
        self._commit("comment update")
        self.db.refresh(comment)
        return comment.to_dict()

    def delete_comment(self, comment_id: str, user: CallerIdentity, uploaded: bool = False) -> int:
        """Delete a comment and its replies. Returns the number of comments removed."""
        comment = self._get_comment(comment_id, uploaded)
        target = self._comment_target(comment)
        if comment.user_id != user.user_id and not self._is_owner(target.root_id, target.is_uploaded, user):
            raise AuthorizationError("Only the author or the owning organization can delete this comment")

        removed = len(self._thread(comment))
        self.db.delete(comment)
        self._adjust_comment_count(target, -removed)
        self._commit("comment delete")

        logger.info(f"Deleted comment {comment_id} ({removed} including replies)")
        return removed

    def _set_resolution(self, comment_id: str, user: CallerIdentity, uploaded: bool, resolved: bool) -> Dict[str, Any]:
        comment = self._get_comment(comment_id, uploaded)
        target = self._comment_target(comment)
        allowed = (
            comment.user_id == user.user_id
            or self._is_owner(target.root_id, target.is_uploaded, user)
            or self.resolver.has_capability(user.user_id, target, Capability.COMMENT_SECTION)
        )
        if not allowed:
            raise AuthorizationError("You do not have permission to resolve this comment")

        now = datetime.utcnow()
        for node in self._thread(comment):
            node.is_resolved = resolved
            node.resolved_by = user.user_id if resolved else None
            node.resolved_at = now if resolved else None

        if resolved:
            self._log_activity(target, user.user_id, ActivityType.RESOLVE_COMMENT, {"comment_id": comment.id})
        self._commit("comment resolution")
        self.db.refresh(comment)
        return comment.to_dict()

    def resolve_comment(self, comment_id: str, user: CallerIdentity, uploaded: bool = False) -> Dict[str, Any]:
        return self._set_resolution(comment_id, user, uploaded, True)

    def unresolve_comment(self, comment_id: str, user: CallerIdentity, uploaded: bool = False) -> Dict[str, Any]:
        return self._set_resolution(comment_id, user, uploaded, False)

    def get_comment_counts(self, proposal_id: str, user: CallerIdentity) -> Dict[str, Dict[str, int]]:
        self._require_owner(proposal_id, False, user)

        rows = (
            self.db.query(
                ProposalCommentDB.section_id,
                ProposalCommentDB.is_resolved,
                func.count(ProposalCommentDB.id),
            )
            .filter(ProposalCommentDB.proposal_id == proposal_id)
            .group_by(ProposalCommentDB.section_id, ProposalCommentDB.is_resolved)
            .all()
        )
        counts: Dict[str, Dict[str, int]] = {}
        for section_id, is_resolved, count in rows:
            bucket = counts.setdefault(section_id, {"total": 0, "unresolved": 0})
            bucket["total"] += count
            if not is_resolved:
                bucket["unresolved"] += count
        return counts

    # ------------------------------------------------------------------
    # Activity
    # ------------------------------------------------------------------

    def get_activity(self, proposal_id: str, user: CallerIdentity, limit: int = 50) -> List[Dict[str, Any]]:
        self._require_owner(proposal_id, False, user)
        entries = (
            self.db.query(SectionActivityDB)
            .filter(SectionActivityDB.proposal_id == proposal_id)
            .order_by(SectionActivityDB.created_at.desc())
            .limit(limit)
            .all()
        )
        return [entry.to_dict() for entry in entries]
