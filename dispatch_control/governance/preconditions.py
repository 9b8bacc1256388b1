# dispatch_control/governance/preconditions.py
"""
Named preconditions per subject kind.

Cross-workflow coupling lives here: a QC approval can only be opened
against a machine that is already approved. Each check receives the
subject row and the dependent row (or None) and raises on failure.
"""

from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from ..errors import PreconditionFailedError
from .models import SubjectKind

Check = Callable[[Mapping[str, Any], Optional[Mapping[str, Any]]], None]


def machine_must_be_approved(subject: Mapping[str, Any], dependent: Optional[Mapping[str, Any]]) -> None:
    if not subject.get("is_approved"):
        raise PreconditionFailedError(
            "Machine must be approved before QC approval can be created",
            code="MACHINE_NOT_APPROVED",
            details={"machine_id": subject.get("id")},
        )


def dependent_must_belong_to_subject(subject: Mapping[str, Any], dependent: Optional[Mapping[str, Any]]) -> None:
    if dependent is None:
        raise PreconditionFailedError(
            "QC approval requires a QC entry",
            code="QC_ENTRY_REQUIRED",
            details={"machine_id": subject.get("id")},
        )
    if dependent.get("machine_id") != subject.get("id"):
        raise PreconditionFailedError(
            "QC entry does not belong to this machine",
            code="QC_ENTRY_MACHINE_MISMATCH",
            details={"machine_id": subject.get("id"), "qc_entry_id": dependent.get("id")},
        )


PRECONDITIONS: Dict[SubjectKind, Tuple[Tuple[str, Check], ...]] = {
    SubjectKind.MACHINE: (),
    SubjectKind.QC: (
        ("machine_must_be_approved", machine_must_be_approved),
        ("dependent_must_belong_to_subject", dependent_must_belong_to_subject),
    ),
}


def check_preconditions(
    kind: SubjectKind,
    subject: Mapping[str, Any],
    dependent: Optional[Mapping[str, Any]] = None,
) -> None:
    """Run every precondition registered for `kind`, in order."""
    for _name, check in PRECONDITIONS.get(kind, ()):
        check(subject, dependent)
