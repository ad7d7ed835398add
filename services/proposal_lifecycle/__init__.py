"""Proposal lifecycle services package."""

from .state_machine import ProposalStatus, TRANSITIONS, can_transition, assert_transition
from .manager import ProposalLifecycleManager

__all__ = [
    "ProposalStatus",
    "TRANSITIONS",
    "can_transition",
    "assert_transition",
    "ProposalLifecycleManager",
]
