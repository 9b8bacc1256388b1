# tests/conftest.py
"""
Pytest configuration and fixtures.

Tests run against an in-memory SQLite database shared through a
StaticPool, so the manager's session and the notification publisher's
own session see the same data. Set TEST_DATABASE_URL to run the DB
tests against PostgreSQL instead.
"""

import os

# Must be set before dispatch_control is imported (engine is built at import)
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_JSON", "true")

from typing import Any, List, Tuple

import pytest
from sqlalchemy import create_engine, insert
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dispatch_control.db import tables
from dispatch_control.db.engine import init_db
from dispatch_control.governance.approvals import ApprovalManager
from dispatch_control.policy.engine import PolicyEngine
from dispatch_control.policy.models import Permission, Principal, Rule
from dispatch_control.policy.store import StaticPolicyStore
from dispatch_control.stores.directory import SqlDirectory
from dispatch_control.stores.entities import machine_store, qc_entry_store

TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL", "sqlite://")


# ============================================================
# DIRECTORY FIXTURE DATA
# ============================================================

ROLES = {
    "role-admin": "admin",
    "role-sub-admin": "sub-admin",
    "role-manager": "manager",
    "role-technician": "technician",
    "role-qc": "qc",
}

DEPARTMENTS = {"dept-dispatch": "dispatch", "dept-qa": "qa"}

# id, username, role, department
USERS = [
    ("admin-1", "alice.admin", "role-admin", "dept-dispatch"),
    ("admin-2", "adrian.admin", "role-admin", None),
    ("manager-1", "maria.manager", "role-manager", "dept-dispatch"),
    ("manager-2", "mark.manager", "role-manager", "dept-dispatch"),
    ("tech-1", "tina.tech", "role-technician", "dept-dispatch"),
    ("qc-1", "quinn.qc", "role-qc", "dept-qa"),
    ("viewer-1", "sam.subadmin", "role-sub-admin", "dept-dispatch"),
]


class RecordingNotifier:
    """Notifier fake that keeps every published event."""

    def __init__(self):
        self.published: List[Tuple[str, Any]] = []

    def publish(self, user_id: str, event: Any) -> None:
        self.published.append((user_id, event))

    def to(self, user_id: str) -> List[Any]:
        return [event for recipient, event in self.published if recipient == user_id]

    def types(self) -> List[str]:
        return [event.type.value for _, event in self.published]


class FailingNotifier:
    """Notifier fake whose delivery channel is down."""

    def __init__(self):
        self.attempts = 0

    def publish(self, user_id: str, event: Any) -> None:
        self.attempts += 1
        raise ConnectionError("notification channel unavailable")


def principal_for(user_id: str) -> Principal:
    """Principal for one of the seeded USERS."""
    for uid, _username, role_id, department_id in USERS:
        if uid == user_id:
            return Principal.of(uid, [role_id], department_id)
    raise KeyError(user_id)


def example_rules() -> List[Rule]:
    """Manager create and edit need admin approval; everyone else is denied."""
    return [
        Rule.build(
            "Manager create requires approval",
            "CREATE_MACHINE",
            Permission.REQUIRES_APPROVAL,
            roles=["role-manager"],
            approver_roles=["role-admin"],
            priority=65,
        ),
        Rule.build("Global deny create", "CREATE_MACHINE", Permission.DENIED, priority=1),
        Rule.build(
            "QC entry requires approval",
            "CREATE_QC_ENTRY",
            Permission.REQUIRES_APPROVAL,
            roles=["role-qc", "role-manager"],
            approver_roles=["role-qc", "role-admin"],
            priority=60,
        ),
        Rule.build(
            "Manager activation",
            "ACTIVATE_MACHINE",
            Permission.ALLOWED,
            roles=["role-manager"],
            priority=50,
        ),
        Rule.build(
            "Manager edit requires approval",
            "EDIT_MACHINE",
            Permission.REQUIRES_APPROVAL,
            roles=["role-manager"],
            approver_roles=["role-admin"],
            priority=65,
        ),
        Rule.build("Manager view", "VIEW_MACHINE", Permission.ALLOWED, roles=["role-manager"], priority=10),
        Rule.build(
            "QC approval view",
            "VIEW_QC_APPROVAL",
            Permission.ALLOWED,
            roles=["role-manager", "role-qc"],
            priority=10,
        ),
    ]


# ============================================================
# DATABASE
# ============================================================

@pytest.fixture
def engine():
    """Fresh database per test."""
    if TEST_DATABASE_URL.startswith("sqlite"):
        eng = create_engine(
            TEST_DATABASE_URL,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        eng = create_engine(TEST_DATABASE_URL, pool_pre_ping=True)
    tables.metadata.drop_all(bind=eng)
    init_db(eng)
    yield eng
    tables.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def session(session_factory) -> Session:
    """Session for the unit under test."""
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def seeded(session) -> Session:
    """Session with roles, departments, users and a category."""
    session.execute(
        insert(tables.role),
        [{"id": rid, "name": name, "description": name} for rid, name in ROLES.items()],
    )
    session.execute(
        insert(tables.department),
        [{"id": did, "name": name} for did, name in DEPARTMENTS.items()],
    )
    session.execute(
        insert(tables.app_user),
        [
            {
                "id": uid,
                "username": username,
                "email": f"{username}@example.com",
                "role_id": role_id,
                "department_id": department_id,
                "is_active": True,
            }
            for uid, username, role_id, department_id in USERS
        ],
    )
    session.execute(insert(tables.category), [{"id": "cat-heavy", "name": "Heavy equipment"}])
    session.commit()
    return session


@pytest.fixture
def directory(seeded) -> SqlDirectory:
    return SqlDirectory(seeded)


@pytest.fixture
def machines(seeded):
    return machine_store(seeded)


@pytest.fixture
def qc_entries(seeded):
    return qc_entry_store(seeded)


@pytest.fixture
def make_machine(machines, seeded):
    """Factory: insert and commit a machine."""

    def _make(name: str = "Forklift FX-200", created_by: str = "manager-1", **values):
        values.setdefault("department_id", "dept-dispatch")
        values.setdefault("is_approved", False)
        values.setdefault("is_active", False)
        values.setdefault("attributes", {})
        row = machines.insert({"name": name, "created_by": created_by, **values})
        seeded.commit()
        return row

    return _make


@pytest.fixture
def make_qc_entry(qc_entries, seeded):
    """Factory: insert and commit a QC entry for a machine."""

    def _make(machine_id: str, created_by: str = "qc-1", **values):
        values.setdefault("findings", {})
        values.setdefault("is_active", False)
        values.setdefault("approval_status", "PENDING")
        row = qc_entries.insert({"machine_id": machine_id, "created_by": created_by, **values})
        seeded.commit()
        return row

    return _make


# ============================================================
# POLICY AND GOVERNANCE
# ============================================================

@pytest.fixture
def policy_store() -> StaticPolicyStore:
    return StaticPolicyStore(rules=example_rules(), default_approver_roles=["role-admin"])


@pytest.fixture
def policy_engine(policy_store) -> PolicyEngine:
    return PolicyEngine(policy_store)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def manager(seeded, policy_engine, directory, notifier) -> ApprovalManager:
    return ApprovalManager(seeded, policy_engine, directory, notifier)


@pytest.fixture
def manager_principal() -> Principal:
    return principal_for("manager-1")


@pytest.fixture
def principal_of():
    """Factory: principal for a seeded user id."""
    return principal_for


@pytest.fixture
def failing_notifier() -> FailingNotifier:
    return FailingNotifier()
