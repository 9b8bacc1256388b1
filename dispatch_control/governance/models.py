# dispatch_control/governance/models.py
"""
Governance models for approval workflows.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from math import ceil
from typing import Any, Dict, List, Mapping, Optional


class ApprovalStatus(str, Enum):
    """
    Approval request states.

    PENDING -> APPROVED | REJECTED | CANCELLED
    """
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class SubjectKind(str, Enum):
    """What an approval request governs."""
    MACHINE = "MACHINE"
    QC = "QC"  # Subject is the machine, dependent is the QC entry


@dataclass
class ApprovalRequest:
    """A request for a human decision on a proposed change."""
    id: str
    subject_id: str
    subject_kind: SubjectKind
    action: str
    status: ApprovalStatus
    requested_by: str
    approvers: List[str]
    proposed_changes: Dict[str, Any]
    approver_roles: List[str] = field(default_factory=list)
    original_data: Optional[Dict[str, Any]] = None
    dependent_id: Optional[str] = None
    payload_version: int = 1
    request_notes: Optional[str] = None
    approver_notes: Optional[str] = None
    decided_by: Optional[str] = None
    decision_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    activated: bool = False
    activated_at: Optional[datetime] = None
    activated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any], approvers: List[str]) -> "ApprovalRequest":
        return cls(
            id=row["id"],
            subject_id=row["subject_id"],
            subject_kind=SubjectKind(row["subject_kind"]),
            action=row["action"],
            status=ApprovalStatus(row["status"]),
            requested_by=row["requested_by"],
            approvers=sorted(approvers),
            proposed_changes=row["proposed_changes"] or {},
            approver_roles=list(row["approver_roles"] or []),
            original_data=row["original_data"],
            dependent_id=row["dependent_id"],
            payload_version=row["payload_version"],
            request_notes=row["request_notes"],
            approver_notes=row["approver_notes"],
            decided_by=row["decided_by"],
            decision_at=row["decision_at"],
            rejection_reason=row["rejection_reason"],
            activated=bool(row["activated"]),
            activated_at=row["activated_at"],
            activated_by=row["activated_by"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def is_approver(self, user_id: str) -> bool:
        return user_id in self.approvers

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "subject_kind": self.subject_kind.value,
            "dependent_id": self.dependent_id,
            "action": self.action,
            "status": self.status.value,
            "requested_by": self.requested_by,
            "approvers": list(self.approvers),
            "approver_roles": list(self.approver_roles),
            "original_data": self.original_data,
            "proposed_changes": self.proposed_changes,
            "payload_version": self.payload_version,
            "request_notes": self.request_notes,
            "approver_notes": self.approver_notes,
            "decided_by": self.decided_by,
            "decision_at": _iso(self.decision_at),
            "rejection_reason": self.rejection_reason,
            "activated": self.activated,
            "activated_at": _iso(self.activated_at),
            "activated_by": self.activated_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class ApprovalFilters:
    """Optional list filters. Unset fields do not constrain."""
    status: Optional[ApprovalStatus] = None
    action: Optional[str] = None
    subject_kind: Optional[SubjectKind] = None
    subject_id: Optional[str] = None
    requested_by: Optional[str] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    newest_first: bool = True


@dataclass
class ApprovalPage:
    """One page of approval requests."""
    items: List[ApprovalRequest]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return ceil(self.total / self.limit) if self.limit else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "total": self.total,
            "page": self.page,
            "limit": self.limit,
            "pages": self.pages,
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
