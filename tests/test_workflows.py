# tests/test_workflows.py
"""
Test policy-gated machine and QC entry submission.
"""

import pytest
from sqlalchemy import func, select

from dispatch_control.db import tables
from dispatch_control.errors import (
    ConflictError,
    ForbiddenError,
    NoApproversAvailableError,
    NotFoundError,
    PreconditionFailedError,
    ValidationError,
)
from dispatch_control.governance.approvals import ApprovalManager
from dispatch_control.governance.models import ApprovalStatus, SubjectKind
from dispatch_control.policy.engine import PolicyEngine
from dispatch_control.policy.models import Permission, Rule
from dispatch_control.policy.store import StaticPolicyStore
from dispatch_control.workflows import MachineSubmissionService


def _count(session, table):
    return session.execute(select(func.count()).select_from(table)).scalar()


@pytest.fixture
def service(seeded, policy_engine, manager):
    return MachineSubmissionService(seeded, policy_engine, manager)


class TestSubmitMachine:
    """CREATE_MACHINE through the policy engine."""

    def test_manager_submission_opens_approval(self, service, notifier, manager_principal):
        result = service.submit_machine(
            manager_principal, "Forklift FX-200", category_id="cat-heavy", value=25000, notes="new site"
        )

        assert result.decision.requires_approval
        assert result.entity["is_approved"] is False
        assert result.entity["department_id"] == "dept-dispatch"
        assert result.approval.status == ApprovalStatus.PENDING
        assert result.approval.subject_id == result.entity["id"]
        assert result.approval.request_notes == "new site"
        assert result.approval.proposed_changes["name"] == "Forklift FX-200"
        assert notifier.types() == ["APPROVAL_REQUESTED", "APPROVAL_REQUESTED"]

    def test_approval_flows_back_to_machine(self, service, manager, machines, manager_principal):
        result = service.submit_machine(manager_principal, "Forklift FX-200")
        manager.decide(result.approval.id, "admin-1", True)
        assert machines.get(result.entity["id"])["is_approved"] is True

    def test_denied_submission_stores_nothing(self, service, seeded, principal_of):
        with pytest.raises(ForbiddenError) as exc:
            service.submit_machine(principal_of("tech-1"), "Forklift FX-200")

        assert exc.value.code == "PERMISSION_DENIED"
        assert _count(seeded, tables.machine) == 0

    def test_allowed_submission_is_approved_immediately(self, seeded, directory, notifier, principal_of):
        store = StaticPolicyStore(rules=[], superuser_roles=["role-admin"])
        engine = PolicyEngine(store)
        service = MachineSubmissionService(seeded, engine, ApprovalManager(seeded, engine, directory, notifier))

        result = service.submit_machine(principal_of("admin-1"), "Crane C-10")

        assert result.decision.allowed
        assert result.approval is None
        assert result.entity["is_approved"] is True
        assert notifier.published == []

    def test_name_required(self, service, manager_principal):
        with pytest.raises(ValidationError) as exc:
            service.submit_machine(manager_principal, "  ")
        assert exc.value.code == "MACHINE_NAME_REQUIRED"

    def test_machine_rolled_back_when_nobody_can_approve(self, seeded, directory, notifier, manager_principal):
        store = StaticPolicyStore(rules=[
            Rule.build(
                "Nobody can approve",
                "CREATE_MACHINE",
                Permission.REQUIRES_APPROVAL,
                roles=["role-manager"],
                approver_roles=["role-nobody"],
                priority=10,
            ),
        ])
        engine = PolicyEngine(store)
        manager = ApprovalManager(seeded, engine, directory, notifier, fallback_role="ghost")
        service = MachineSubmissionService(seeded, engine, manager)

        with pytest.raises(NoApproversAvailableError):
            service.submit_machine(manager_principal, "Forklift FX-200")
        assert _count(seeded, tables.machine) == 0

    def test_result_serializes(self, service, manager_principal):
        body = service.submit_machine(manager_principal, "Forklift FX-200").to_dict()

        assert body["decision"]["permission"] == "REQUIRES_APPROVAL"
        assert isinstance(body["entity"]["created_at"], str)
        assert body["approval"]["status"] == "PENDING"


class TestSubmitQcEntry:
    """CREATE_QC_ENTRY against an existing machine."""

    def test_qc_submission_opens_qc_approval(self, service, make_machine, principal_of):
        machine = make_machine(is_approved=True)

        result = service.submit_qc_entry(
            principal_of("qc-1"), machine["id"], qc_notes="Brakes ok", quality_score=9.0, findings={"brakes": "ok"}
        )

        assert result.entity["approval_status"] == "PENDING"
        assert result.entity["is_active"] is False
        assert result.entity["findings"] == {"brakes": "ok"}
        assert result.approval.subject_kind == SubjectKind.QC
        assert result.approval.dependent_id == result.entity["id"]
        assert result.approval.approvers == ["admin-1", "admin-2", "qc-1"]

    def test_unapproved_machine_rejected(self, service, make_machine, seeded, principal_of):
        machine = make_machine()

        with pytest.raises(PreconditionFailedError) as exc:
            service.submit_qc_entry(principal_of("qc-1"), machine["id"], qc_notes="early")

        assert exc.value.code == "MACHINE_NOT_APPROVED"
        assert _count(seeded, tables.qc_entry) == 0

    def test_denied_for_roles_without_rule(self, service, make_machine, principal_of):
        machine = make_machine(is_approved=True)
        with pytest.raises(ForbiddenError):
            service.submit_qc_entry(principal_of("tech-1"), machine["id"])


class TestRequestChange:
    """EDIT_MACHINE / DELETE_MACHINE against an existing machine."""

    def test_manager_edit_opens_request_with_snapshot(self, service, make_machine, notifier, manager_principal):
        machine = make_machine(is_approved=True, value=25000)

        result = service.request_change(
            manager_principal, machine["id"], "EDIT_MACHINE", {"value": 30000}, notes="price update"
        )

        assert result.decision.requires_approval
        assert result.approval.action == "EDIT_MACHINE"
        assert result.approval.proposed_changes == {"value": 30000}
        assert result.approval.original_data["value"] == 25000
        assert isinstance(result.approval.original_data["created_at"], str)
        assert result.approval.request_notes == "price update"
        assert notifier.types() == ["APPROVAL_REQUESTED", "APPROVAL_REQUESTED"]

    def test_second_edit_conflicts(self, service, make_machine, manager_principal):
        machine = make_machine(is_approved=True)
        service.request_change(manager_principal, machine["id"], "EDIT_MACHINE", {"value": 1})

        with pytest.raises(ConflictError) as exc:
            service.request_change(manager_principal, machine["id"], "EDIT_MACHINE", {"value": 2})
        assert exc.value.code == "PENDING_APPROVAL_EXISTS"

    def test_delete_without_rule_is_denied(self, service, make_machine, seeded, manager_principal):
        machine = make_machine(is_approved=True)

        with pytest.raises(ForbiddenError) as exc:
            service.request_change(manager_principal, machine["id"], "DELETE_MACHINE", {})

        assert exc.value.code == "PERMISSION_DENIED"
        assert _count(seeded, tables.approval_request) == 0

    def test_only_change_actions(self, service, make_machine, manager_principal):
        machine = make_machine()
        with pytest.raises(ValidationError) as exc:
            service.request_change(manager_principal, machine["id"], "CREATE_QC_ENTRY", {})
        assert exc.value.code == "INVALID_CHANGE_ACTION"

    def test_unknown_machine(self, service, manager_principal):
        with pytest.raises(NotFoundError):
            service.request_change(manager_principal, "no-such-machine", "EDIT_MACHINE", {})
