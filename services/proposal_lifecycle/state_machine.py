"""Proposal status state machine."""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet

from core.exceptions import InvalidTransitionError


class ProposalStatus(str, Enum):
    DRAFT = "DRAFT"
    FINAL = "FINAL"
    PUBLISHED = "PUBLISHED"
    SUBMITTED = "SUBMITTED"
    UNDER_REVIEW = "UNDER_REVIEW"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


# PUBLISHED has no outgoing edge: it is only carried forward by versioning.
TRANSITIONS: Dict[ProposalStatus, FrozenSet[ProposalStatus]] = {
    ProposalStatus.DRAFT: frozenset({ProposalStatus.FINAL, ProposalStatus.SUBMITTED}),
    ProposalStatus.FINAL: frozenset({ProposalStatus.DRAFT, ProposalStatus.PUBLISHED}),
    ProposalStatus.PUBLISHED: frozenset(),
    ProposalStatus.SUBMITTED: frozenset({ProposalStatus.UNDER_REVIEW}),
    ProposalStatus.UNDER_REVIEW: frozenset({ProposalStatus.ACCEPTED, ProposalStatus.REJECTED}),
    ProposalStatus.ACCEPTED: frozenset(),
    ProposalStatus.REJECTED: frozenset(),
}

REVIEW_TARGETS = frozenset({
    ProposalStatus.UNDER_REVIEW,
    ProposalStatus.ACCEPTED,
    ProposalStatus.REJECTED,
})


def _coerce(status) -> ProposalStatus:
    if isinstance(status, ProposalStatus):
        return status
    try:
        return ProposalStatus(status)
    except ValueError:
        raise InvalidTransitionError(f"Unknown proposal status '{status}'", current=str(status))


def can_transition(current, target) -> bool:
    try:
        current_status = ProposalStatus(current)
        target_status = ProposalStatus(target)
    except ValueError:
        return False
    return target_status in TRANSITIONS[current_status]


def assert_transition(current, target) -> ProposalStatus:
    """Return the target status, or raise InvalidTransitionError when the edge is absent."""
    current_status = _coerce(current)
    target_status = _coerce(target)
    if target_status not in TRANSITIONS[current_status]:
        raise InvalidTransitionError(
            f"Cannot move proposal from {current_status.value} to {target_status.value}",
            current=current_status.value,
            target=target_status.value,
        )
    return target_status
