# Governance module - approval lifecycle and decision side effects
from .models import ApprovalStatus, SubjectKind, ApprovalRequest, ApprovalFilters, ApprovalPage
from .state_machine import TRANSITIONS, get_valid_transitions, is_terminal
from .approvers import ApproverResolver, ResolvedApprovers
from .cascade import EffectCascade, CASCADE_STEPS
from .repository import ApprovalRepository
from .approvals import ApprovalManager

__all__ = [
    "ApprovalStatus",
    "SubjectKind",
    "ApprovalRequest",
    "ApprovalFilters",
    "ApprovalPage",
    "TRANSITIONS",
    "get_valid_transitions",
    "is_terminal",
    "ApproverResolver",
    "ResolvedApprovers",
    "EffectCascade",
    "CASCADE_STEPS",
    "ApprovalRepository",
    "ApprovalManager",
]
