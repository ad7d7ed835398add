"""
Typed errors raised by the proposal, collaboration and evaluation services.

The HTTP layer maps each class to a status code in ``app.py``; the services
themselves carry no transport concept.
"""

from typing import Any, Dict, List, Optional


class TenderHubError(Exception):
    """Base class for all domain errors."""

    code = "error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"detail": self.message, "code": self.code}
        data.update(self.details)
        return data


class AuthorizationError(TenderHubError):
    """Caller lacks organization ownership or section permission."""

    code = "forbidden"


class NotFoundError(TenderHubError):
    """Referenced tender, proposal, section or evaluation row is absent."""

    code = "not_found"


class ValidationError(TenderHubError):
    """
    Malformed input. ``incomplete_sections`` lists the ids of mandatory
    sections without content when the failure comes from completeness checks.
    """

    code = "validation_error"

    def __init__(
        self,
        message: str,
        incomplete_sections: Optional[List[str]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = dict(details or {})
        self.incomplete_sections = list(incomplete_sections or [])
        if self.incomplete_sections:
            details["incomplete_sections"] = self.incomplete_sections
        super().__init__(message, details)


class InvalidTransitionError(TenderHubError):
    """Requested state change is not in the adjacency table for the current state."""

    code = "invalid_transition"

    def __init__(self, message: str, current: Optional[str] = None, target: Optional[str] = None):
        details = {}
        if current is not None:
            details["current_status"] = current
        if target is not None:
            details["target_status"] = target
        super().__init__(message, details)
        self.current = current
        self.target = target
