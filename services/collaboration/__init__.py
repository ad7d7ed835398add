"""Section collaboration services package."""

from .permissions import Capability, PermissionResolver, SectionPermission, SectionTarget
from .engine import ActivityType, CollaborationEngine

__all__ = [
    "Capability",
    "PermissionResolver",
    "SectionPermission",
    "SectionTarget",
    "ActivityType",
    "CollaborationEngine",
]
