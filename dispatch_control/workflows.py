# dispatch_control/workflows.py
"""
Machine and QC entry submission.

Each submission is gated by the policy engine:
- ALLOWED: the entity is stored already approved
- REQUIRES_APPROVAL: the entity is stored unapproved and an approval
  request is opened in the same transaction
- DENIED: nothing is stored

Edit and delete requests against an existing machine go through the same
gate and open an approval request carrying a snapshot of the machine.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from .errors import ForbiddenError, ValidationError
from .governance.approvals import ApprovalManager
from .governance.models import ApprovalRequest, SubjectKind
from .governance.preconditions import machine_must_be_approved
from .logging import get_logger
from .policy.engine import PolicyEngine
from .policy.models import ActionLike, ActionType, Decision, EvaluationContext, Principal, action_key

logger = get_logger(__name__)

# Actions that target an existing machine
CHANGE_ACTIONS = (ActionType.EDIT_MACHINE, ActionType.DELETE_MACHINE)


@dataclass
class SubmissionResult:
    """Outcome of a policy-gated submission."""
    entity: Dict[str, Any]
    decision: Decision
    approval: Optional[ApprovalRequest] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity": _jsonable(self.entity),
            "decision": self.decision.to_dict(),
            "approval": self.approval.to_dict() if self.approval else None,
        }


class MachineSubmissionService:
    """
    Policy-gated creation of machines and QC entries.

    Args:
        session: Unit-of-work session shared with the manager
        engine: Policy engine
        manager: Approval manager bound to the same session
    """

    def __init__(self, session: Session, engine: PolicyEngine, manager: ApprovalManager):
        self.session = session
        self.engine = engine
        self.manager = manager

    def submit_machine(
        self,
        principal: Principal,
        name: str,
        category_id: Optional[str] = None,
        department_id: Optional[str] = None,
        value: Optional[float] = None,
        attributes: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
    ) -> SubmissionResult:
        """
        Create a machine on behalf of `principal`.

        Raises:
            ValidationError: empty name
            ForbiddenError: policy denied CREATE_MACHINE
            NoApproversAvailableError: approval needed but nobody can approve
        """
        if not (name or "").strip():
            raise ValidationError("Machine name is required", code="MACHINE_NAME_REQUIRED")

        department_id = department_id or principal.department_id
        context = EvaluationContext(department_id=department_id, category_id=category_id, value=value)
        decision = self.engine.evaluate(ActionType.CREATE_MACHINE, principal, context)
        self._require_not_denied(decision, ActionType.CREATE_MACHINE, principal)

        values = {
            "name": name.strip(),
            "category_id": category_id,
            "department_id": department_id,
            "value": value,
            "attributes": dict(attributes or {}),
            "is_approved": decision.allowed,
            "is_active": False,
            "created_by": principal.user_id,
        }

        try:
            machine = self.manager.subjects.insert(values)
        except Exception:
            self.session.rollback()
            raise

        if decision.allowed:
            self.session.commit()
            logger.info("machine_created", machine_id=machine["id"], created_by=principal.user_id, approval_required=False)
            return SubmissionResult(entity=machine, decision=decision)

        # Commits the machine together with its request
        approval = self.manager.create(
            machine["id"],
            ActionType.CREATE_MACHINE,
            principal,
            _jsonable(values),
            subject_kind=SubjectKind.MACHINE,
            request_notes=notes,
            decision=decision,
            notify_approvers=True,
        )
        logger.info(
            "machine_created",
            machine_id=machine["id"],
            created_by=principal.user_id,
            approval_required=True,
            request_id=approval.id,
        )
        return SubmissionResult(entity=self.manager.subjects.get(machine["id"]), decision=decision, approval=approval)

    def submit_qc_entry(
        self,
        principal: Principal,
        machine_id: str,
        qc_notes: Optional[str] = None,
        quality_score: Optional[float] = None,
        findings: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
    ) -> SubmissionResult:
        """
        Record a QC entry against an approved machine.

        Raises:
            NotFoundError: machine does not exist
            PreconditionFailedError: machine is not approved
            ForbiddenError: policy denied CREATE_QC_ENTRY
        """
        machine = self.manager.subjects.get(machine_id)
        machine_must_be_approved(machine, None)

        context = EvaluationContext(
            department_id=machine.get("department_id"),
            category_id=machine.get("category_id"),
            value=machine.get("value"),
        )
        decision = self.engine.evaluate(ActionType.CREATE_QC_ENTRY, principal, context)
        self._require_not_denied(decision, ActionType.CREATE_QC_ENTRY, principal)

        values = {
            "machine_id": machine_id,
            "qc_notes": qc_notes,
            "quality_score": quality_score,
            "findings": dict(findings or {}),
            "is_active": decision.allowed,
            "approval_status": "APPROVED" if decision.allowed else "PENDING",
            "created_by": principal.user_id,
        }

        try:
            entry = self.manager.dependents.insert(values)
        except Exception:
            self.session.rollback()
            raise

        if decision.allowed:
            self.session.commit()
            logger.info("qc_entry_created", qc_entry_id=entry["id"], machine_id=machine_id, approval_required=False)
            return SubmissionResult(entity=entry, decision=decision)

        approval = self.manager.create(
            machine_id,
            ActionType.CREATE_QC_ENTRY,
            principal,
            _jsonable(values),
            subject_kind=SubjectKind.QC,
            dependent_id=entry["id"],
            request_notes=notes,
            decision=decision,
            notify_approvers=True,
        )
        logger.info(
            "qc_entry_created",
            qc_entry_id=entry["id"],
            machine_id=machine_id,
            approval_required=True,
            request_id=approval.id,
        )
        return SubmissionResult(entity=self.manager.dependents.get(entry["id"]), decision=decision, approval=approval)

    def request_change(
        self,
        principal: Principal,
        machine_id: str,
        action: ActionLike,
        proposed_changes: Dict[str, Any],
        notes: Optional[str] = None,
    ) -> SubmissionResult:
        """
        Open an edit or delete request against an existing machine.

        The machine row is snapshotted into the request's original_data.
        Only a REQUIRES_APPROVAL decision opens a request.

        Raises:
            ValidationError: action is not a change action
            NotFoundError: machine does not exist
            ForbiddenError: policy denied the action
            ConflictError: approval not required, or one already pending
        """
        key = action_key(action)
        if key not in [a.value for a in CHANGE_ACTIONS]:
            raise ValidationError(
                f"{key} cannot be requested against an existing machine",
                code="INVALID_CHANGE_ACTION",
                details={"action": key, "allowed": [a.value for a in CHANGE_ACTIONS]},
            )
        action = ActionType(key)

        machine = self.manager.subjects.get(machine_id)
        context = EvaluationContext(
            department_id=machine.get("department_id"),
            category_id=machine.get("category_id"),
            value=machine.get("value"),
        )
        decision = self.engine.evaluate(action, principal, context)
        self._require_not_denied(decision, action, principal)

        approval = self.manager.create(
            machine_id,
            action,
            principal,
            proposed_changes,
            _jsonable(machine),
            request_notes=notes,
            decision=decision,
            notify_approvers=True,
        )
        logger.info(
            "machine_change_requested",
            machine_id=machine_id,
            action=action.value,
            requested_by=principal.user_id,
            request_id=approval.id,
        )
        return SubmissionResult(entity=machine, decision=decision, approval=approval)

    def _require_not_denied(self, decision: Decision, action: ActionType, principal: Principal) -> None:
        if decision.denied:
            logger.info(
                "submission_denied",
                action=action.value,
                user_id=principal.user_id,
                reason=decision.reason,
                policy_version=decision.policy_version,
            )
            raise ForbiddenError(
                decision.reason or "Access denied",
                code="PERMISSION_DENIED",
                details={"action": action.value, "policy_version": decision.policy_version},
            )


def _jsonable(values: Dict[str, Any]) -> Dict[str, Any]:
    """Render datetimes as ISO strings so a row can be stored or returned as JSON."""
    return {
        key: value.isoformat() if hasattr(value, "isoformat") else value
        for key, value in values.items()
    }
