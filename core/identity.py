"""
Caller identity handed to every service call by the API layer.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class UserRole(str, Enum):
    AUTHORITY = "AUTHORITY"
    BIDDER = "BIDDER"
    ASSISTER = "ASSISTER"


@dataclass(frozen=True)
class CallerIdentity:
    """Already-authenticated caller: who they are and which organization they act for."""

    user_id: str
    organization_id: Optional[str]
    role: str

    @property
    def is_authority(self) -> bool:
        return self.role == UserRole.AUTHORITY.value

    @property
    def is_bidder(self) -> bool:
        return self.role == UserRole.BIDDER.value

    @classmethod
    def from_user(cls, user) -> "CallerIdentity":
        return cls(user_id=user.id, organization_id=user.organization_id, role=user.role)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "organization_id": self.organization_id,
            "role": self.role,
        }
