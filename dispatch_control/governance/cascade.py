# dispatch_control/governance/cascade.py
"""
Effect cascade - what a decision does to the world.

`apply` mutates the subject/dependent entities and runs inside the
decision transaction, so a failed mutation rolls the decision back.
`notify*` runs after commit and never raises: a lost notification is
logged, not propagated.

Steps are declared by name per subject kind so each can be exercised on
its own:

    MACHINE approved  -> mark_subject_approved
    QC approved       -> mark_subject_approved, mirror_dependent_approved
    QC rejected       -> mark_dependent_rejected
    QC resubmitted    -> reset_dependent_pending
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ..errors import CascadeError
from ..logging import get_governance_logger
from ..notifications.publisher import NotificationEvent, NotificationType
from ..stores.entities import SqlEntityStore
from .models import ApprovalRequest, ApprovalStatus, SubjectKind

logger = get_governance_logger("cascade")


CASCADE_STEPS: Dict[Tuple[SubjectKind, ApprovalStatus], Tuple[str, ...]] = {
    (SubjectKind.MACHINE, ApprovalStatus.APPROVED): ("mark_subject_approved",),
    (SubjectKind.MACHINE, ApprovalStatus.REJECTED): (),
    (SubjectKind.QC, ApprovalStatus.APPROVED): ("mark_subject_approved", "mirror_dependent_approved"),
    (SubjectKind.QC, ApprovalStatus.REJECTED): ("mark_dependent_rejected",),
}

RESUBMIT_STEPS: Dict[SubjectKind, Tuple[str, ...]] = {
    SubjectKind.MACHINE: (),
    SubjectKind.QC: ("reset_dependent_pending",),
}

ENTITY_TYPES = {SubjectKind.MACHINE: "machine", SubjectKind.QC: "qc_entry"}


@dataclass
class CascadeStep:
    """One planned entity mutation."""
    name: str
    store: SqlEntityStore
    entity_id: str
    patch: Dict[str, Any]


class EffectCascade:
    """
    Applies decision side effects.

    Args:
        subjects: Entity store for subjects (machines)
        dependents: Entity store for dependents (QC entries)
        notifier: Object with publish(user_id, event); None disables notifications
    """

    def __init__(
        self,
        subjects: SqlEntityStore,
        dependents: SqlEntityStore,
        notifier: Optional[Any] = None,
    ):
        self.subjects = subjects
        self.dependents = dependents
        self.notifier = notifier

    # ------------------------------------------------------------------
    # Entity mutation
    # ------------------------------------------------------------------

    def steps_for(self, kind: SubjectKind, status: ApprovalStatus) -> Tuple[str, ...]:
        return CASCADE_STEPS.get((kind, status), ())

    def apply(self, request: ApprovalRequest, status: ApprovalStatus) -> List[str]:
        """
        Run the mutation steps for a decision. Returns the names of the steps applied.

        Raises:
            CascadeError: a step's mutation failed
        """
        return self._run(request, self.steps_for(request.subject_kind, status))

    def apply_resubmit(self, request: ApprovalRequest) -> List[str]:
        return self._run(request, RESUBMIT_STEPS.get(request.subject_kind, ()))

    def _run(self, request: ApprovalRequest, names: Tuple[str, ...]) -> List[str]:
        applied = []
        for name in names:
            step = getattr(self, name)(request)
            if step is None:
                continue
            try:
                step.store.update(step.entity_id, step.patch)
            except Exception as e:
                logger.error(
                    "cascade_step_failed",
                    request_id=request.id,
                    step=name,
                    entity_id=step.entity_id,
                    error=str(e),
                )
                raise CascadeError(request.id, name, step.entity_id, step.patch, cause=e) from e
            applied.append(name)

        if applied:
            logger.info("cascade_applied", request_id=request.id, steps=applied)
        return applied

    def mark_subject_approved(self, request: ApprovalRequest) -> CascadeStep:
        return CascadeStep(
            "mark_subject_approved",
            self.subjects,
            request.subject_id,
            {"is_approved": True},
        )

    def mirror_dependent_approved(self, request: ApprovalRequest) -> Optional[CascadeStep]:
        if request.dependent_id is None:
            return None
        return CascadeStep(
            "mirror_dependent_approved",
            self.dependents,
            request.dependent_id,
            {"approval_status": ApprovalStatus.APPROVED.value, "is_active": True, "rejection_reason": None},
        )

    def mark_dependent_rejected(self, request: ApprovalRequest) -> Optional[CascadeStep]:
        if request.dependent_id is None:
            return None
        return CascadeStep(
            "mark_dependent_rejected",
            self.dependents,
            request.dependent_id,
            {
                "approval_status": ApprovalStatus.REJECTED.value,
                "is_active": False,
                "rejection_reason": request.rejection_reason,
            },
        )

    def reset_dependent_pending(self, request: ApprovalRequest) -> Optional[CascadeStep]:
        if request.dependent_id is None:
            return None
        return CascadeStep(
            "reset_dependent_pending",
            self.dependents,
            request.dependent_id,
            {"approval_status": ApprovalStatus.PENDING.value, "rejection_reason": None},
        )

    def activate(self, request: ApprovalRequest, actor: str, at: datetime) -> Dict[str, Any]:
        """
        Put an approved machine into service.

        Raises:
            CascadeError: the machine update failed
        """
        patch = {"is_active": True, "activated_at": at}
        try:
            return self.subjects.update(request.subject_id, patch)
        except Exception as e:
            raise CascadeError(request.id, "activate_subject", request.subject_id, patch, cause=e) from e

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def notify(self, request: ApprovalRequest, status: ApprovalStatus) -> None:
        """Tell the requester how their request was decided."""
        label = _subject_label(request)
        if status == ApprovalStatus.APPROVED:
            event = NotificationEvent(
                type=NotificationType.APPROVAL_APPROVED,
                title=f"{label} Approved",
                message=f"Your {label.lower()} request for {request.action} has been approved",
                related_entity=_related(request),
                sender_id=request.decided_by,
                metadata={"request_id": request.id, "approver_notes": request.approver_notes},
            )
        elif status == ApprovalStatus.REJECTED:
            event = NotificationEvent(
                type=NotificationType.APPROVAL_REJECTED,
                title=f"{label} Rejected",
                message=(
                    f"Your {label.lower()} request for {request.action} has been rejected. "
                    f"Reason: {request.rejection_reason}"
                ),
                related_entity=_related(request),
                sender_id=request.decided_by,
                metadata={"request_id": request.id, "rejection_reason": request.rejection_reason},
            )
        else:
            return
        self._publish(request.requested_by, event, request.id)

    def notify_requested(self, request: ApprovalRequest) -> None:
        """Tell each approver there is a request waiting for them."""
        label = _subject_label(request)
        event = NotificationEvent(
            type=NotificationType.APPROVAL_REQUESTED,
            title=f"New {label} Approval Request",
            message=f"A {label.lower()} request for {request.action} requires your approval",
            related_entity=_related(request),
            sender_id=request.requested_by,
            metadata={"request_id": request.id},
        )
        for user_id in request.approvers:
            self._publish(user_id, event, request.id)

    def notify_activated(self, request: ApprovalRequest) -> None:
        event = NotificationEvent(
            type=NotificationType.MACHINE_ACTIVATED,
            title="Machine Activated",
            message="Your approved machine has been activated",
            related_entity={"type": "machine", "id": request.subject_id},
            sender_id=request.activated_by,
            metadata={"request_id": request.id},
        )
        self._publish(request.requested_by, event, request.id)

    def _publish(self, user_id: str, event: NotificationEvent, request_id: str) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.publish(user_id, event)
        except Exception as e:
            logger.warning(
                "notification_failed",
                request_id=request_id,
                recipient_id=user_id,
                type=event.type.value,
                error=str(e),
            )


def _subject_label(request: ApprovalRequest) -> str:
    return "QC Approval" if request.subject_kind == SubjectKind.QC else "Machine"


def _related(request: ApprovalRequest) -> Dict[str, Optional[str]]:
    if request.subject_kind == SubjectKind.QC and request.dependent_id:
        return {"type": ENTITY_TYPES[SubjectKind.QC], "id": request.dependent_id}
    return {"type": ENTITY_TYPES[SubjectKind.MACHINE], "id": request.subject_id}
