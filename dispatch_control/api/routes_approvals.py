# dispatch_control/api/routes_approvals.py
"""
Approval API routes.

Endpoints for opening, reading, deciding, editing and closing approval
requests, activation of approved machines, and the caller's notification
inbox. Reads across requesters are gated by the VIEW_* actions.
"""

from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..db.engine import get_session
from ..errors import NotFoundError
from ..governance.approvals import ApprovalManager
from ..governance.models import ApprovalFilters, ApprovalStatus, SubjectKind
from ..logging import get_api_logger
from ..notifications.publisher import list_notifications, mark_read
from ..policy.engine import PolicyEngine
from ..policy.models import ActionType, EvaluationContext, Principal
from ..workflows import MachineSubmissionService
from .deps import (
    get_approval_manager,
    get_policy_engine,
    get_principal,
    get_submission_service,
    require_allowed,
    require_approval_viewer,
)

logger = get_api_logger()

router = APIRouter(prefix="/approvals", tags=["approvals"])
notifications_router = APIRouter(prefix="/notifications", tags=["notifications"])


class DecisionRequest(BaseModel):
    """Approve or reject a pending request."""
    approved: bool
    notes: Optional[str] = None
    rejection_reason: Optional[str] = None


class UpdateApprovalRequest(BaseModel):
    proposed_changes: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None
    approver_override: Optional[List[str]] = None


class ChangeRequest(BaseModel):
    """Request an edit or deletion of an existing machine."""
    machine_id: str
    action: ActionType
    proposed_changes: Dict[str, Any] = Field(default_factory=dict)
    notes: Optional[str] = None


def _base_filters(
    status: Optional[ApprovalStatus] = Query(None),
    action: Optional[str] = Query(None),
    subject_kind: Optional[SubjectKind] = Query(None),
    created_from: Optional[datetime] = Query(None),
    created_to: Optional[datetime] = Query(None),
    sort: str = Query("newest", pattern="^(newest|oldest)$"),
) -> ApprovalFilters:
    return ApprovalFilters(
        status=status,
        action=action,
        subject_kind=subject_kind,
        created_from=created_from,
        created_to=created_to,
        newest_first=sort == "newest",
    )


def _filters(
    base: ApprovalFilters = Depends(_base_filters),
    subject_id: Optional[str] = Query(None),
) -> ApprovalFilters:
    """List filters plus an optional subject_id query parameter."""
    return replace(base, subject_id=subject_id)


def _view_action(kind: Optional[SubjectKind]) -> ActionType:
    return ActionType.VIEW_QC_APPROVAL if kind == SubjectKind.QC else ActionType.VIEW_MACHINE


def _context_of(machine: Dict[str, Any]) -> EvaluationContext:
    return EvaluationContext(
        department_id=machine.get("department_id"),
        category_id=machine.get("category_id"),
        value=machine.get("value"),
    )


# ============================================================
# CREATE
# ============================================================

@router.post("", status_code=201)
async def request_change(
    request: ChangeRequest,
    principal: Principal = Depends(get_principal),
    service: MachineSubmissionService = Depends(get_submission_service),
) -> Dict[str, Any]:
    """
    Open an EDIT_MACHINE or DELETE_MACHINE request against an existing machine.

    Only callers for whom the policy requires approval get a request;
    DENIED is 403 and ALLOWED is 409 APPROVAL_NOT_REQUIRED.
    """
    result = service.request_change(
        principal,
        request.machine_id,
        request.action,
        request.proposed_changes,
        notes=request.notes,
    )
    return result.to_dict()


# ============================================================
# LISTS
# ============================================================

@router.get("/pending")
async def list_pending(
    filters: ApprovalFilters = Depends(_filters),
    page: int = Query(1),
    limit: Optional[int] = Query(None),
    principal: Principal = Depends(get_principal),
    engine: PolicyEngine = Depends(get_policy_engine),
    manager: ApprovalManager = Depends(get_approval_manager),
) -> Dict[str, Any]:
    """All pending requests."""
    require_allowed(engine, principal, _view_action(filters.subject_kind))
    return manager.list_pending(filters, page, limit).to_dict()


@router.get("/mine")
async def list_mine(
    filters: ApprovalFilters = Depends(_filters),
    page: int = Query(1),
    limit: Optional[int] = Query(None),
    principal: Principal = Depends(get_principal),
    manager: ApprovalManager = Depends(get_approval_manager),
) -> Dict[str, Any]:
    """Requests the caller opened."""
    return manager.list_by_requester(principal.user_id, filters, page, limit).to_dict()


@router.get("/assigned")
async def list_assigned(
    filters: ApprovalFilters = Depends(_filters),
    page: int = Query(1),
    limit: Optional[int] = Query(None),
    principal: Principal = Depends(get_principal),
    manager: ApprovalManager = Depends(get_approval_manager),
) -> Dict[str, Any]:
    """Requests the caller can decide. Defaults to pending only."""
    if filters.status is None:
        filters = replace(filters, status=ApprovalStatus.PENDING)
    return manager.list_for_approver(principal.user_id, filters, page, limit).to_dict()


@router.get("/statistics")
async def statistics(
    overdue_after_days: Optional[int] = Query(None),
    principal: Principal = Depends(require_approval_viewer),
    manager: ApprovalManager = Depends(get_approval_manager),
) -> Dict[str, Any]:
    return manager.statistics(overdue_after_days)


@router.get("/subject/{subject_id}")
async def list_by_subject(
    subject_id: str,
    filters: ApprovalFilters = Depends(_base_filters),
    page: int = Query(1),
    limit: Optional[int] = Query(None),
    principal: Principal = Depends(get_principal),
    engine: PolicyEngine = Depends(get_policy_engine),
    manager: ApprovalManager = Depends(get_approval_manager),
) -> Dict[str, Any]:
    """Request history for one machine."""
    machine = manager.subjects.get(subject_id)
    require_allowed(engine, principal, _view_action(filters.subject_kind), _context_of(machine))
    return manager.list_by_subject(subject_id, filters, page, limit).to_dict()


# ============================================================
# SINGLE REQUEST
# ============================================================

@router.get("/{request_id}")
async def get_approval(
    request_id: str,
    principal: Principal = Depends(get_principal),
    engine: PolicyEngine = Depends(get_policy_engine),
    manager: ApprovalManager = Depends(get_approval_manager),
) -> Dict[str, Any]:
    """One request. Its requester and approvers may always read it."""
    request = manager.get(request_id)
    if principal.user_id != request.requested_by and not request.is_approver(principal.user_id):
        machine = manager.subjects.get(request.subject_id)
        require_allowed(engine, principal, _view_action(request.subject_kind), _context_of(machine))
    return request.to_dict()


@router.patch("/{request_id}")
async def update_approval(
    request_id: str,
    request: UpdateApprovalRequest,
    principal: Principal = Depends(get_principal),
    manager: ApprovalManager = Depends(get_approval_manager),
) -> Dict[str, Any]:
    """Edit a pending or rejected request."""
    updated = manager.update(
        request_id,
        principal.user_id,
        proposed_changes=request.proposed_changes,
        notes=request.notes,
        approver_override=request.approver_override,
    )
    return updated.to_dict()


@router.post("/{request_id}/decision")
async def decide(
    request_id: str,
    request: DecisionRequest,
    principal: Principal = Depends(get_principal),
    manager: ApprovalManager = Depends(get_approval_manager),
) -> Dict[str, Any]:
    """
    Approve or reject a request.

    The caller must be one of the request's approvers. Rejection requires
    a reason.
    """
    decided = manager.decide(
        request_id,
        principal.user_id,
        request.approved,
        notes=request.notes,
        rejection_reason=request.rejection_reason,
    )
    logger.info(
        "api_approval_decided",
        request_id=request_id,
        user_id=principal.user_id,
        status=decided.status.value,
    )
    return decided.to_dict()


@router.post("/{request_id}/cancel")
async def cancel(
    request_id: str,
    principal: Principal = Depends(get_principal),
    manager: ApprovalManager = Depends(get_approval_manager),
) -> Dict[str, Any]:
    return manager.cancel(request_id, principal.user_id).to_dict()


@router.post("/{request_id}/resubmit", status_code=201)
async def resubmit(
    request_id: str,
    principal: Principal = Depends(get_principal),
    manager: ApprovalManager = Depends(get_approval_manager),
) -> Dict[str, Any]:
    """Open a new request from a rejected one."""
    return manager.resubmit(request_id, principal).to_dict()


@router.post("/{request_id}/activate")
async def activate(
    request_id: str,
    principal: Principal = Depends(get_principal),
    manager: ApprovalManager = Depends(get_approval_manager),
    engine: PolicyEngine = Depends(get_policy_engine),
) -> Dict[str, Any]:
    """Activate the machine of an approved request."""
    request = manager.get(request_id)
    machine = manager.subjects.get(request.subject_id)
    require_allowed(engine, principal, ActionType.ACTIVATE_MACHINE, _context_of(machine))
    return manager.activate(request_id, principal.user_id).to_dict()


@router.delete("/{request_id}", status_code=204)
async def withdraw(
    request_id: str,
    principal: Principal = Depends(get_principal),
    manager: ApprovalManager = Depends(get_approval_manager),
) -> None:
    """Withdraw (delete) a pending request. Requester only."""
    manager.withdraw(request_id, principal.user_id)


# ============================================================
# NOTIFICATIONS
# ============================================================

@notifications_router.get("")
async def inbox(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    principal: Principal = Depends(get_principal),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    """The caller's notifications, newest first."""
    items = list_notifications(session, principal.user_id, unread_only=unread_only, limit=limit)
    return {"items": items, "count": len(items)}


@notifications_router.post("/{notification_id}/read")
async def read_notification(
    notification_id: str,
    principal: Principal = Depends(get_principal),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    if not mark_read(session, principal.user_id, notification_id):
        raise NotFoundError(
            f"Notification not found: {notification_id}",
            code="NOTIFICATION_NOT_FOUND",
        )
    return {"notification_id": notification_id, "read": True}
