# dispatch_control/governance/approvals.py
"""
Approval management for governed changes.

ApprovalManager owns the approval request lifecycle and its transactions:
every mutating operation commits on success and rolls back on any error.
Notifications go out only after commit.
"""

from collections.abc import Mapping
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Dict, Iterable, Iterator, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ..db.tables import utcnow
from ..errors import (
    ConflictError,
    ForbiddenError,
    NoApproversAvailableError,
    NotFoundError,
    PreconditionFailedError,
    ValidationError,
)
from ..logging import get_governance_logger
from ..policy.engine import PolicyEngine
from ..policy.models import ActionLike, Decision, EvaluationContext, Principal, action_key
from ..settings import settings
from ..stores.entities import SqlEntityStore, machine_store, qc_entry_store
from .approvers import ApproverResolver
from .cascade import EffectCascade
from .models import ApprovalFilters, ApprovalPage, ApprovalRequest, ApprovalStatus, SubjectKind
from .preconditions import check_preconditions
from .repository import ApprovalRepository
from .state_machine import EDITABLE_STATUSES, is_editable, require_transition

logger = get_governance_logger("approvals")


class ApprovalManager:
    """
    Manages approval requests.

    Handles creation, decisions, edits, cancellation, withdrawal,
    resubmission, activation and the read side.
    """

    def __init__(
        self,
        session: Session,
        engine: PolicyEngine,
        directory: Any,
        notifier: Optional[Any] = None,
        subjects: Optional[SqlEntityStore] = None,
        dependents: Optional[SqlEntityStore] = None,
        fallback_role: Optional[str] = None,
    ):
        self.session = session
        self.engine = engine
        self.repository = ApprovalRepository(session)
        self.subjects = subjects or machine_store(session)
        self.dependents = dependents or qc_entry_store(session)
        self.resolver = ApproverResolver(engine, directory, fallback_role)
        self.cascade = EffectCascade(self.subjects, self.dependents, notifier)

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        try:
            yield
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(
        self,
        subject_id: str,
        action: ActionLike,
        requested_by: Principal,
        proposed_changes: Mapping,
        original_data: Optional[Mapping] = None,
        *,
        subject_kind: SubjectKind = SubjectKind.MACHINE,
        dependent_id: Optional[str] = None,
        request_notes: Optional[str] = None,
        decision: Optional[Decision] = None,
        notify_approvers: bool = False,
    ) -> ApprovalRequest:
        """
        Open a PENDING approval request.

        Args:
            subject_id: Machine the request is about
            action: Guarded action being requested
            requested_by: Requesting principal
            proposed_changes: Opaque change payload
            original_data: Snapshot of the subject before the change
            subject_kind: MACHINE or QC
            dependent_id: QC entry id for QC requests
            request_notes: Free text from the requester
            decision: Policy decision already computed for the requester;
                evaluated against the subject when omitted
            notify_approvers: Send APPROVAL_REQUESTED to every approver after commit

        Raises:
            ValidationError, NotFoundError, PreconditionFailedError,
            ForbiddenError (PERMISSION_DENIED), ConflictError
            (APPROVAL_NOT_REQUIRED, PENDING_APPROVAL_EXISTS),
            NoApproversAvailableError
        """
        if not isinstance(proposed_changes, Mapping):
            raise ValidationError(
                "proposed_changes must be a mapping",
                code="INVALID_PROPOSED_CHANGES",
            )
        if original_data is not None and not isinstance(original_data, Mapping):
            raise ValidationError(
                "original_data must be a mapping",
                code="INVALID_ORIGINAL_DATA",
            )
        kind = SubjectKind(subject_kind)
        key = action_key(action)

        with self._transaction():
            subject = self.subjects.get(subject_id)
            dependent = self.dependents.get(dependent_id) if dependent_id else None
            check_preconditions(kind, subject, dependent)

            context = _context_for(subject)
            if decision is None:
                decision = self.engine.evaluate(key, requested_by, context)
            _require_approval_decision(decision, key, requested_by)

            existing = self.repository.find_pending(subject_id, key)
            if existing is not None:
                raise ConflictError(
                    "A pending approval request already exists for this subject and action",
                    code="PENDING_APPROVAL_EXISTS",
                    details={"subject_id": subject_id, "action": key, "existing_request_id": existing.id},
                )

            resolved = self.resolver.resolve_approvers(key, context, decision=decision)
            if not resolved:
                raise NoApproversAvailableError(
                    "No approvers available for this request",
                    details={"subject_id": subject_id, "action": key, "approver_roles": list(resolved.roles)},
                )

            now = utcnow()
            request = ApprovalRequest(
                id=str(uuid4()),
                subject_id=subject_id,
                subject_kind=kind,
                action=key,
                status=ApprovalStatus.PENDING,
                requested_by=requested_by.user_id,
                approvers=list(resolved.users),
                approver_roles=list(resolved.roles),
                proposed_changes=dict(proposed_changes),
                original_data=dict(original_data) if original_data is not None else None,
                dependent_id=dependent_id,
                request_notes=request_notes,
                created_at=now,
                updated_at=now,
            )
            self.repository.insert(request)

        logger.info(
            "approval_created",
            request_id=request.id,
            subject_id=subject_id,
            subject_kind=kind.value,
            action=key,
            requested_by=request.requested_by,
            approver_count=len(request.approvers),
            fallback_used=resolved.fallback_used,
        )

        if notify_approvers:
            self.cascade.notify_requested(request)
        return request

    # ------------------------------------------------------------------
    # Decide
    # ------------------------------------------------------------------

    def decide(
        self,
        request_id: str,
        decided_by: str,
        approved: bool,
        notes: Optional[str] = None,
        rejection_reason: Optional[str] = None,
    ) -> ApprovalRequest:
        """
        Approve or reject a PENDING request and apply its cascade.

        The status transition and the entity mutation commit together.

        Raises:
            NotFoundError, ConflictError, ForbiddenError, ValidationError,
            CascadeError (request left PENDING)
        """
        target = ApprovalStatus.APPROVED if approved else ApprovalStatus.REJECTED

        with self._transaction():
            request = self._get(request_id)
            require_transition(request_id, request.status, target)

            if not request.is_approver(decided_by):
                raise ForbiddenError(
                    "You are not an approver for this request",
                    code="NOT_AN_APPROVER",
                    details={"request_id": request_id, "user_id": decided_by},
                )
            if not approved and not (rejection_reason or "").strip():
                raise ValidationError(
                    "Rejection reason is required when rejecting",
                    code="REJECTION_REASON_REQUIRED",
                    details={"request_id": request_id},
                )

            values: Dict[str, Any] = {
                "status": target.value,
                "decided_by": decided_by,
                "decision_at": utcnow(),
                "approver_notes": notes,
            }
            if not approved:
                values["rejection_reason"] = rejection_reason.strip()

            if not self.repository.transition(request_id, ApprovalStatus.PENDING, values):
                raise ConflictError(
                    "Approval request was decided concurrently",
                    code="INVALID_STATUS_TRANSITION",
                    details={"request_id": request_id},
                )

            decided = self._get(request_id)
            steps = self.cascade.apply(decided, target)

        logger.info(
            "approval_decided",
            request_id=request_id,
            status=target.value,
            decided_by=decided_by,
            cascade_steps=steps,
        )
        self.cascade.notify(decided, target)
        return decided

    # ------------------------------------------------------------------
    # Update / cancel / withdraw / resubmit
    # ------------------------------------------------------------------

    def update(
        self,
        request_id: str,
        actor: str,
        proposed_changes: Optional[Mapping] = None,
        notes: Optional[str] = None,
        approver_override: Optional[Iterable[str]] = None,
    ) -> ApprovalRequest:
        """
        Edit a PENDING or REJECTED request. Status is never changed here.

        Raises:
            NotFoundError, ConflictError, ForbiddenError, ValidationError
        """
        with self._transaction():
            request = self._get(request_id)
            if not is_editable(request.status):
                raise ConflictError(
                    f"Cannot update a request with status {request.status.value}",
                    code="REQUEST_NOT_EDITABLE",
                    details={"request_id": request_id, "status": request.status.value},
                )
            if actor != request.requested_by and not request.is_approver(actor):
                raise ForbiddenError(
                    "Only the requester or an approver may update this request",
                    details={"request_id": request_id, "user_id": actor},
                )
            if proposed_changes is not None and not isinstance(proposed_changes, Mapping):
                raise ValidationError(
                    "proposed_changes must be a mapping",
                    code="INVALID_PROPOSED_CHANGES",
                )

            approvers = None
            if approver_override is not None:
                approvers = sorted({str(u) for u in approver_override if u})
                if not approvers:
                    raise ValidationError(
                        "approver_override must name at least one approver",
                        code="EMPTY_APPROVER_SET",
                        details={"request_id": request_id},
                    )

            values: Dict[str, Any] = {}
            if proposed_changes is not None:
                values["proposed_changes"] = dict(proposed_changes)
            if notes is not None:
                values["request_notes"] = notes

            if not self.repository.update_fields(request_id, EDITABLE_STATUSES, values):
                raise ConflictError(
                    "Approval request changed status concurrently",
                    code="REQUEST_NOT_EDITABLE",
                    details={"request_id": request_id},
                )
            if approvers is not None:
                self.repository.replace_approvers(request_id, approvers)

            updated = self._get(request_id)

        logger.info(
            "approval_updated",
            request_id=request_id,
            actor=actor,
            fields=sorted(values),
            approvers_replaced=approvers is not None,
        )
        return updated

    def cancel(self, request_id: str, by_user_id: str) -> ApprovalRequest:
        """
        Cancel a PENDING request. Requester only.

        Raises:
            NotFoundError, ForbiddenError, ConflictError
        """
        with self._transaction():
            request = self._get(request_id)
            self._require_requester(request, by_user_id, "cancel")
            require_transition(request_id, request.status, ApprovalStatus.CANCELLED)

            if not self.repository.transition(
                request_id, ApprovalStatus.PENDING, {"status": ApprovalStatus.CANCELLED.value}
            ):
                raise ConflictError(
                    "Approval request was decided concurrently",
                    code="INVALID_STATUS_TRANSITION",
                    details={"request_id": request_id},
                )
            cancelled = self._get(request_id)

        logger.info("approval_cancelled", request_id=request_id, by_user_id=by_user_id)
        return cancelled

    def withdraw(self, request_id: str, by_user_id: str) -> None:
        """
        Physically delete a PENDING request. Requester only.

        Raises:
            NotFoundError, ForbiddenError, ConflictError
        """
        with self._transaction():
            request = self._get(request_id)
            self._require_requester(request, by_user_id, "withdraw")
            if request.status != ApprovalStatus.PENDING:
                raise ConflictError(
                    f"Only pending requests can be withdrawn (status: {request.status.value})",
                    code="REQUEST_NOT_PENDING",
                    details={"request_id": request_id, "status": request.status.value},
                )
            if not self.repository.delete(request_id, ApprovalStatus.PENDING):
                raise ConflictError(
                    "Approval request was decided concurrently",
                    code="REQUEST_NOT_PENDING",
                    details={"request_id": request_id},
                )

        logger.info("approval_withdrawn", request_id=request_id, by_user_id=by_user_id)

    def resubmit(self, request_id: str, requester: Principal) -> ApprovalRequest:
        """
        Open a new PENDING request from a REJECTED one.

        Subject, action, payload and notes are copied. The requester's
        permission and the approvers are evaluated again against the
        current policy, so a deny added since the rejection blocks it.
        """
        request = self.get(request_id)
        self._require_requester(request, requester.user_id, "resubmit")
        if request.status != ApprovalStatus.REJECTED:
            raise ConflictError(
                f"Only rejected requests can be resubmitted (status: {request.status.value})",
                code="REQUEST_NOT_REJECTED",
                details={"request_id": request_id, "status": request.status.value},
            )

        try:
            # Flushed only; committed together with the new request
            self.cascade.apply_resubmit(request)
        except Exception:
            self.session.rollback()
            raise

        resubmitted = self.create(
            request.subject_id,
            request.action,
            requester,
            request.proposed_changes,
            request.original_data,
            subject_kind=request.subject_kind,
            dependent_id=request.dependent_id,
            request_notes=request.request_notes,
            notify_approvers=True,
        )
        logger.info("approval_resubmitted", request_id=resubmitted.id, previous_request_id=request_id)
        return resubmitted

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    def activate(self, request_id: str, actor: str) -> ApprovalRequest:
        """
        Put the machine of an APPROVED request into service. Never called by decide().

        Raises:
            NotFoundError, PreconditionFailedError, ConflictError (ALREADY_ACTIVATED)
        """
        with self._transaction():
            request = self._get(request_id)
            if request.status != ApprovalStatus.APPROVED:
                raise PreconditionFailedError(
                    "Machine can only be activated after approval",
                    code="REQUEST_NOT_APPROVED",
                    details={"request_id": request_id, "status": request.status.value},
                )
            if request.activated:
                raise _already_activated(request_id)

            now = utcnow()
            if not self.repository.mark_activated(request_id, actor, now):
                raise _already_activated(request_id)
            self.cascade.activate(request, actor, now)
            activated = self._get(request_id)

        logger.info("machine_activated", request_id=request_id, machine_id=request.subject_id, actor=actor)
        self.cascade.notify_activated(activated)
        return activated

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, request_id: str) -> ApprovalRequest:
        """
        Raises:
            NotFoundError: APPROVAL_REQUEST_NOT_FOUND
        """
        return self._get(request_id)

    def list_pending(
        self,
        filters: Optional[ApprovalFilters] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> ApprovalPage:
        return self._list(replace(filters or ApprovalFilters(), status=ApprovalStatus.PENDING), page, limit)

    def list_by_subject(
        self,
        subject_id: str,
        filters: Optional[ApprovalFilters] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> ApprovalPage:
        return self._list(replace(filters or ApprovalFilters(), subject_id=subject_id), page, limit)

    def list_by_requester(
        self,
        user_id: str,
        filters: Optional[ApprovalFilters] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> ApprovalPage:
        return self._list(replace(filters or ApprovalFilters(), requested_by=user_id), page, limit)

    def list_for_approver(
        self,
        user_id: str,
        filters: Optional[ApprovalFilters] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> ApprovalPage:
        """Requests on which `user_id` is an approver."""
        return self._list(filters or ApprovalFilters(), page, limit, approver_id=user_id)

    def statistics(self, overdue_after_days: Optional[int] = None) -> Dict[str, Any]:
        days = settings.overdue_after_days if overdue_after_days is None else overdue_after_days
        if days < 0:
            raise ValidationError("overdue_after_days must be >= 0", code="INVALID_OVERDUE_DAYS")
        return self.repository.statistics(days)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get(self, request_id: str) -> ApprovalRequest:
        request = self.repository.get(request_id)
        if request is None:
            raise NotFoundError(
                f"Approval request not found: {request_id}",
                code="APPROVAL_REQUEST_NOT_FOUND",
                details={"request_id": request_id},
            )
        return request

    def _list(
        self,
        filters: ApprovalFilters,
        page: int,
        limit: Optional[int],
        approver_id: Optional[str] = None,
    ) -> ApprovalPage:
        limit = settings.default_page_size if limit is None else limit
        if page < 1:
            raise ValidationError("page must be >= 1", code="INVALID_PAGE", details={"page": page})
        if limit < 1:
            raise ValidationError("limit must be >= 1", code="INVALID_LIMIT", details={"limit": limit})
        limit = min(limit, settings.max_page_size)

        items, total = self.repository.list(filters, page, limit, approver_id=approver_id)
        return ApprovalPage(items=items, total=total, page=page, limit=limit)

    @staticmethod
    def _require_requester(request: ApprovalRequest, user_id: str, operation: str) -> None:
        if request.requested_by != user_id:
            raise ForbiddenError(
                f"Only the requester can {operation} this request",
                code="NOT_REQUESTER",
                details={"request_id": request.id, "user_id": user_id},
            )


def _context_for(subject: Mapping) -> EvaluationContext:
    return EvaluationContext.from_dict(
        {
            "department_id": subject.get("department_id"),
            "category_id": subject.get("category_id"),
            "value": subject.get("value"),
        }
    )


def _require_approval_decision(decision: Decision, action: str, principal: Principal) -> None:
    """Only REQUIRES_APPROVAL decisions may open a request."""
    if decision.denied:
        logger.info(
            "approval_request_denied",
            action=action,
            user_id=principal.user_id,
            reason=decision.reason,
            policy_version=decision.policy_version,
        )
        raise ForbiddenError(
            decision.reason or "Access denied",
            code="PERMISSION_DENIED",
            details={"action": action, "policy_version": decision.policy_version},
        )
    if not decision.requires_approval:
        raise ConflictError(
            "Action does not require approval for this user",
            code="APPROVAL_NOT_REQUIRED",
            details={"action": action, "permission": decision.permission.value},
        )


def _already_activated(request_id: str) -> ConflictError:
    return ConflictError(
        "Machine has already been activated for this request",
        code="ALREADY_ACTIVATED",
        details={"request_id": request_id},
    )
