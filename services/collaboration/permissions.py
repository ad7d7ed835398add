"""
Section permission resolution.

Access to a section comes only from a collaborator row for that exact
(target, section, user) triple. Account role and organization membership
never grant section access here.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional

from sqlalchemy.orm import Session

from core.exceptions import AuthorizationError, ValidationError
from database import ProposalCollaboratorDB, UploadedCollaboratorDB


class SectionPermission(str, Enum):
    EDIT = "EDIT"
    READ_AND_COMMENT = "READ_AND_COMMENT"
    NONE = "NONE"

    @classmethod
    def assignable(cls, value) -> "SectionPermission":
        """Parse a permission that may be stored on a collaborator row."""
        try:
            permission = cls(value)
        except ValueError:
            permission = cls.NONE
        if permission is cls.NONE:
            raise ValidationError(
                "Invalid permission. Must be EDIT or READ_AND_COMMENT",
                details={"permission": value},
            )
        return permission


class Capability(str, Enum):
    VIEW_SECTION = "VIEW_SECTION"
    COMMENT_SECTION = "COMMENT_SECTION"
    EDIT_SECTION = "EDIT_SECTION"


CAPABILITY_GRANTS: Dict[Capability, FrozenSet[SectionPermission]] = {
    Capability.VIEW_SECTION: frozenset({SectionPermission.EDIT, SectionPermission.READ_AND_COMMENT}),
    Capability.COMMENT_SECTION: frozenset({SectionPermission.EDIT, SectionPermission.READ_AND_COMMENT}),
    Capability.EDIT_SECTION: frozenset({SectionPermission.EDIT}),
}


@dataclass(frozen=True)
class SectionTarget:
    """
    A section of either a platform proposal (``proposal_id`` + ``section_id``)
    or an uploaded tender (``uploaded_tender_id`` + ``section_key``).
    """

    proposal_id: Optional[str] = None
    section_id: Optional[str] = None
    uploaded_tender_id: Optional[str] = None
    section_key: Optional[str] = None

    def __post_init__(self):
        platform = bool(self.proposal_id and self.section_id)
        uploaded = bool(self.uploaded_tender_id and self.section_key)
        if platform == uploaded:
            raise ValidationError(
                "A section target needs either proposal_id and section_id, "
                "or uploaded_tender_id and section_key"
            )

    @classmethod
    def for_proposal(cls, proposal_id: str, section_id: str) -> "SectionTarget":
        return cls(proposal_id=proposal_id, section_id=section_id)

    @classmethod
    def for_uploaded(cls, uploaded_tender_id: str, section_key: str) -> "SectionTarget":
        return cls(uploaded_tender_id=uploaded_tender_id, section_key=section_key)

    @property
    def is_uploaded(self) -> bool:
        return self.uploaded_tender_id is not None

    @property
    def root_id(self) -> str:
        return self.uploaded_tender_id if self.is_uploaded else self.proposal_id

    @property
    def section_ref(self) -> str:
        return self.section_key if self.is_uploaded else self.section_id

    def to_dict(self) -> Dict[str, Optional[str]]:
        if self.is_uploaded:
            return {"uploaded_tender_id": self.uploaded_tender_id, "section_key": self.section_key}
        return {"proposal_id": self.proposal_id, "section_id": self.section_id}


class PermissionResolver:
    """Exact-match lookup of a user's permission over one section."""

    def __init__(self, db: Session):
        self.db = db

    def resolve(self, user_id: str, target: SectionTarget) -> SectionPermission:
        if target.is_uploaded:
            row = self.db.query(UploadedCollaboratorDB.permission).filter(
                UploadedCollaboratorDB.uploaded_tender_id == target.uploaded_tender_id,
                UploadedCollaboratorDB.section_key == target.section_key,
                UploadedCollaboratorDB.user_id == user_id,
            ).first()
        else:
            row = self.db.query(ProposalCollaboratorDB.permission).filter(
                ProposalCollaboratorDB.proposal_id == target.proposal_id,
                ProposalCollaboratorDB.section_id == target.section_id,
                ProposalCollaboratorDB.user_id == user_id,
            ).first()

        if not row:
            return SectionPermission.NONE
        try:
            return SectionPermission(row[0])
        except ValueError:
            return SectionPermission.NONE

    def has_capability(self, user_id: str, target: SectionTarget, capability: Capability) -> bool:
        return self.resolve(user_id, target) in CAPABILITY_GRANTS[capability]

    def require(self, user_id: str, target: SectionTarget, capability: Capability) -> SectionPermission:
        """Return the caller's permission, or raise AuthorizationError if it lacks ``capability``."""
        permission = self.resolve(user_id, target)
        if permission not in CAPABILITY_GRANTS[capability]:
            raise AuthorizationError(
                "You do not have permission to perform this action on this section",
                {"required_capability": capability.value, "permission": permission.value},
            )
        return permission


def permission_flags(permission: SectionPermission) -> Dict[str, bool]:
    return {
        "can_edit": permission in CAPABILITY_GRANTS[Capability.EDIT_SECTION],
        "can_comment": permission in CAPABILITY_GRANTS[Capability.COMMENT_SECTION],
    }
