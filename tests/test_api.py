# tests/test_api.py
"""
Test the HTTP layer.

Routes run against the test database through dependency overrides; the
principal comes from gateway headers.
"""

import pytest
from fastapi.testclient import TestClient

from dispatch_control.api.deps import get_notifier, get_policy_store
from dispatch_control.db.engine import get_session
from dispatch_control.main import app
from dispatch_control.policy.store import StaticPolicyStore

pytestmark = pytest.mark.api

MANAGER = {"X-User-Id": "manager-1", "X-Role-Ids": "role-manager", "X-Department-Id": "dept-dispatch"}
ADMIN = {"X-User-Id": "admin-1", "X-Role-Ids": "role-admin", "X-Department-Id": "dept-dispatch"}
TECH = {"X-User-Id": "tech-1", "X-Role-Ids": "role-technician", "X-Department-Id": "dept-dispatch"}


@pytest.fixture
def api_store(policy_store) -> StaticPolicyStore:
    """Example rules with admin as the superuser role."""
    return StaticPolicyStore(
        rules=policy_store.load_rules(),
        default_approver_roles=policy_store.default_approver_roles(),
        superuser_roles=["role-admin"],
    )


@pytest.fixture
def client(session_factory, seeded, api_store, notifier):
    def _session():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_policy_store] = lambda: api_store
    app.dependency_overrides[get_notifier] = lambda: notifier
    yield TestClient(app)
    app.dependency_overrides.clear()


def _submit_machine(client, name="Forklift FX-200"):
    response = client.post("/machines", json={"name": name, "value": 25000}, headers=MANAGER)
    assert response.status_code == 201
    return response.json()


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.headers["X-Content-Type-Options"] == "nosniff"


class TestPrincipal:
    def test_missing_user_header_is_forbidden(self, client):
        response = client.get("/approvals/pending")

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "UNAUTHENTICATED"


class TestPolicyRoutes:
    """Evaluation and administration."""

    def test_evaluate_for_caller(self, client):
        response = client.post("/policy/evaluate", json={"action": "CREATE_MACHINE"}, headers=MANAGER)

        body = response.json()
        assert response.status_code == 200
        assert body["decision"]["permission"] == "REQUIRES_APPROVAL"
        assert body["decision"]["approver_roles"] == ["role-admin"]
        assert body["matching_rules"] == ["Manager create requires approval", "Global deny create"]

    def test_admin_routes_require_superuser(self, client):
        response = client.get("/policy/rules", headers=MANAGER)

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "ADMIN_REQUIRED"

    def test_admin_creates_and_deactivates_rule(self, client):
        created = client.post(
            "/policy/rules",
            json={"name": "Tech edit", "action": "EDIT_MACHINE", "permission": "ALLOWED",
                  "role_ids": ["role-technician"], "priority": 20},
            headers=ADMIN,
        )
        assert created.status_code == 201
        rule_id = created.json()["id"]

        assert client.get(f"/policy/rules/{rule_id}", headers=ADMIN).json()["priority"] == 20
        assert client.delete(f"/policy/rules/{rule_id}", headers=ADMIN).status_code == 204
        assert client.get(f"/policy/rules/{rule_id}", headers=ADMIN).json()["is_active"] is False

    def test_invalid_permission_is_400(self, client):
        response = client.post(
            "/policy/rules",
            json={"name": "Bad", "action": "EDIT_MACHINE", "permission": "MAYBE"},
            headers=ADMIN,
        )
        assert response.status_code == 400
        assert response.json()["error"]["category"] == "VALIDATION"


class TestMachineRoutes:
    def test_manager_submission_opens_approval(self, client, notifier):
        body = _submit_machine(client)

        assert body["decision"]["permission"] == "REQUIRES_APPROVAL"
        assert body["entity"]["is_approved"] is False
        assert body["approval"]["approvers"] == ["admin-1", "admin-2"]
        assert notifier.types() == ["APPROVAL_REQUESTED", "APPROVAL_REQUESTED"]

    def test_denied_submission(self, client):
        response = client.post("/machines", json={"name": "Loader"}, headers=TECH)

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "PERMISSION_DENIED"

    def test_qc_on_unapproved_machine_is_412(self, client):
        machine_id = _submit_machine(client)["entity"]["id"]
        qc_headers = {"X-User-Id": "qc-1", "X-Role-Ids": "role-qc", "X-Department-Id": "dept-qa"}

        response = client.post(f"/machines/{machine_id}/qc", json={"qc_notes": "early"}, headers=qc_headers)

        assert response.status_code == 412
        assert response.json()["error"]["code"] == "MACHINE_NOT_APPROVED"


class TestApprovalRoutes:
    """Decide, list, activate."""

    def test_full_flow(self, client, notifier):
        request_id = _submit_machine(client)["approval"]["id"]

        assigned = client.get("/approvals/assigned", headers=ADMIN).json()
        assert [item["id"] for item in assigned["items"]] == [request_id]

        decided = client.post(f"/approvals/{request_id}/decision", json={"approved": True}, headers=ADMIN)
        assert decided.status_code == 200
        assert decided.json()["status"] == "APPROVED"

        activated = client.post(f"/approvals/{request_id}/activate", headers=MANAGER)
        assert activated.status_code == 200
        assert activated.json()["activated"] is True

        again = client.post(f"/approvals/{request_id}/activate", headers=MANAGER)
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "ALREADY_ACTIVATED"

    def test_activation_is_policy_gated(self, client):
        request_id = _submit_machine(client)["approval"]["id"]
        client.post(f"/approvals/{request_id}/decision", json={"approved": True}, headers=ADMIN)

        response = client.post(f"/approvals/{request_id}/activate", headers=TECH)

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "PERMISSION_DENIED"

    def test_non_approver_decision_is_403(self, client):
        request_id = _submit_machine(client)["approval"]["id"]

        response = client.post(f"/approvals/{request_id}/decision", json={"approved": True}, headers=MANAGER)

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "NOT_AN_APPROVER"

    def test_reject_without_reason_is_400(self, client):
        request_id = _submit_machine(client)["approval"]["id"]

        response = client.post(f"/approvals/{request_id}/decision", json={"approved": False}, headers=ADMIN)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "REJECTION_REASON_REQUIRED"

    def test_reject_then_resubmit(self, client):
        request_id = _submit_machine(client)["approval"]["id"]
        client.post(
            f"/approvals/{request_id}/decision",
            json={"approved": False, "rejection_reason": "Missing serial"},
            headers=ADMIN,
        )

        response = client.post(f"/approvals/{request_id}/resubmit", headers=MANAGER)

        assert response.status_code == 201
        assert response.json()["status"] == "PENDING"
        assert response.json()["id"] != request_id

    def test_mine_and_withdraw(self, client):
        request_id = _submit_machine(client)["approval"]["id"]
        assert client.get("/approvals/mine", headers=MANAGER).json()["total"] == 1

        assert client.delete(f"/approvals/{request_id}", headers=MANAGER).status_code == 204

        missing = client.get(f"/approvals/{request_id}", headers=MANAGER)
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "APPROVAL_REQUEST_NOT_FOUND"

    def test_update_pending(self, client):
        request_id = _submit_machine(client)["approval"]["id"]

        response = client.patch(
            f"/approvals/{request_id}", json={"proposed_changes": {"name": "Renamed"}}, headers=MANAGER
        )

        assert response.status_code == 200
        assert response.json()["proposed_changes"] == {"name": "Renamed"}

    def test_statistics(self, client):
        _submit_machine(client)
        stats = client.get("/approvals/statistics", headers=ADMIN).json()
        assert stats["total_pending"] == 1

    def test_pagination_validation(self, client):
        response = client.get("/approvals/pending", params={"page": 0}, headers=ADMIN)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_PAGE"


class TestApprovalReads:
    """Reads across requesters go through the view rules."""

    def test_subject_history(self, client):
        submitted = _submit_machine(client)
        machine_id = submitted["entity"]["id"]

        response = client.get(f"/approvals/subject/{machine_id}", params={"status": "PENDING"}, headers=MANAGER)

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert body["items"][0]["id"] == submitted["approval"]["id"]
        assert body["items"][0]["subject_id"] == machine_id

    def test_subject_history_of_unknown_machine_is_404(self, client):
        response = client.get("/approvals/subject/no-such-machine", headers=MANAGER)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "MACHINE_NOT_FOUND"

    def test_pending_and_statistics_need_view_permission(self, client):
        _submit_machine(client)

        for path in ("/approvals/pending", "/approvals/statistics"):
            response = client.get(path, headers=TECH)
            assert response.status_code == 403
            assert response.json()["error"]["code"] == "PERMISSION_DENIED"

        assert client.get("/approvals/pending", headers=MANAGER).json()["total"] == 1

    def test_subject_history_needs_view_permission(self, client):
        machine_id = _submit_machine(client)["entity"]["id"]

        response = client.get(f"/approvals/subject/{machine_id}", headers=TECH)

        assert response.status_code == 403

    def test_single_request_visible_to_requester_and_approvers(self, client):
        request_id = _submit_machine(client)["approval"]["id"]

        assert client.get(f"/approvals/{request_id}", headers=MANAGER).status_code == 200
        assert client.get(f"/approvals/{request_id}", headers=ADMIN).status_code == 200

        response = client.get(f"/approvals/{request_id}", headers=TECH)
        assert response.status_code == 403
        assert response.json()["error"]["details"]["action"] == "VIEW_MACHINE"


class TestChangeRequestRoutes:
    """Edit and delete requests against an existing machine."""

    def test_manager_edit_opens_request(self, client, notifier):
        machine_id = _submit_machine(client)["entity"]["id"]

        response = client.post(
            "/approvals",
            json={"machine_id": machine_id, "action": "EDIT_MACHINE",
                  "proposed_changes": {"value": 30000}, "notes": "price update"},
            headers=MANAGER,
        )

        assert response.status_code == 201
        approval = response.json()["approval"]
        assert approval["action"] == "EDIT_MACHINE"
        assert approval["status"] == "PENDING"
        assert approval["proposed_changes"] == {"value": 30000}
        assert approval["original_data"]["name"] == "Forklift FX-200"
        assert approval["approvers"] == ["admin-1", "admin-2"]
        assert response.json()["decision"]["permission"] == "REQUIRES_APPROVAL"
        assert notifier.types().count("APPROVAL_REQUESTED") == 4

    def test_denied_requester_is_403(self, client):
        machine_id = _submit_machine(client)["entity"]["id"]

        response = client.post(
            "/approvals",
            json={"machine_id": machine_id, "action": "EDIT_MACHINE", "proposed_changes": {"value": 1}},
            headers=TECH,
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "PERMISSION_DENIED"
        assert client.get("/approvals/pending", headers=ADMIN).json()["total"] == 1

    def test_allowed_requester_is_409(self, client):
        machine_id = _submit_machine(client)["entity"]["id"]

        response = client.post(
            "/approvals",
            json={"machine_id": machine_id, "action": "DELETE_MACHINE"},
            headers=ADMIN,
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "APPROVAL_NOT_REQUIRED"

    def test_create_action_is_rejected(self, client):
        machine_id = _submit_machine(client)["entity"]["id"]

        response = client.post(
            "/approvals",
            json={"machine_id": machine_id, "action": "CREATE_MACHINE"},
            headers=MANAGER,
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_CHANGE_ACTION"
