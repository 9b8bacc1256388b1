# dispatch_control/db/tables.py
"""
Table definitions (SQLAlchemy Core).

Ids are UUID strings so the same schema runs on PostgreSQL and SQLite.
JSON columns hold opaque payloads and id lists.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    text,
)

metadata = MetaData()


def utcnow() -> datetime:
    """Timezone-aware UTC now, used for every timestamp column."""
    return datetime.now(timezone.utc)


# ============================================================
# DIRECTORY
# ============================================================

role = Table(
    "role",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("description", Text),
)

department = Table(
    "department",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(100), nullable=False, unique=True),
)

app_user = Table(
    "app_user",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("username", String(100), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("role_id", String(36), ForeignKey("role.id"), nullable=True),
    Column("department_id", String(36), ForeignKey("department.id"), nullable=True),
    Column("is_active", Boolean, nullable=False, default=True),
    Index("ix_app_user_role", "role_id"),
)

category = Table(
    "category",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(100), nullable=False, unique=True),
)


# ============================================================
# SUBJECT ENTITIES
# ============================================================

machine = Table(
    "machine",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("category_id", String(36), ForeignKey("category.id"), nullable=True),
    Column("department_id", String(36), ForeignKey("department.id"), nullable=True),
    Column("value", Float, nullable=True),
    Column("attributes", JSON, nullable=False, default=dict),
    Column("is_approved", Boolean, nullable=False, default=False),
    Column("is_active", Boolean, nullable=False, default=False),
    Column("activated_at", DateTime(timezone=True)),
    Column("created_by", String(36), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, default=utcnow),
    Column("updated_at", DateTime(timezone=True), nullable=False, default=utcnow),
)

qc_entry = Table(
    "qc_entry",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("machine_id", String(36), ForeignKey("machine.id"), nullable=False),
    Column("qc_notes", Text),
    Column("quality_score", Float),
    Column("findings", JSON, nullable=False, default=dict),
    Column("is_active", Boolean, nullable=False, default=False),
    Column("approval_status", String(20), nullable=False, default="PENDING"),
    Column("rejection_reason", Text),
    Column("created_by", String(36), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, default=utcnow),
    Column("updated_at", DateTime(timezone=True), nullable=False, default=utcnow),
    Index("ix_qc_entry_machine", "machine_id"),
)


# ============================================================
# APPROVAL REQUESTS
# ============================================================

approval_request = Table(
    "approval_request",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("subject_id", String(36), nullable=False),
    Column("subject_kind", String(20), nullable=False),
    Column("dependent_id", String(36)),
    Column("action", String(50), nullable=False),
    Column("status", String(20), nullable=False, default="PENDING"),
    Column("requested_by", String(36), nullable=False),
    Column("approver_roles", JSON, nullable=False, default=list),
    Column("original_data", JSON),
    Column("proposed_changes", JSON, nullable=False),
    Column("payload_version", Integer, nullable=False, default=1),
    Column("request_notes", Text),
    Column("approver_notes", Text),
    Column("decided_by", String(36)),
    Column("decision_at", DateTime(timezone=True)),
    Column("rejection_reason", Text),
    Column("activated", Boolean, nullable=False, default=False),
    Column("activated_at", DateTime(timezone=True)),
    Column("activated_by", String(36)),
    Column("created_at", DateTime(timezone=True), nullable=False, default=utcnow),
    Column("updated_at", DateTime(timezone=True), nullable=False, default=utcnow),
    Index("ix_approval_request_status_created", "status", "created_at"),
    Index("ix_approval_request_requester", "requested_by", "status"),
    Index("ix_approval_request_subject", "subject_id", "action"),
    # At most one PENDING request per (subject, action)
    Index(
        "uq_approval_request_one_pending",
        "subject_id",
        "action",
        unique=True,
        postgresql_where=text("status = 'PENDING'"),
        sqlite_where=text("status = 'PENDING'"),
    ),
)

approval_request_approver = Table(
    "approval_request_approver",
    metadata,
    Column(
        "request_id",
        String(36),
        ForeignKey("approval_request.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("user_id", String(36), primary_key=True),
    Index("ix_approval_request_approver_user", "user_id"),
)


# ============================================================
# NOTIFICATIONS
# ============================================================

notification = Table(
    "notification",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("recipient_id", String(36), nullable=False),
    Column("sender_id", String(36)),
    Column("type", String(50), nullable=False),
    Column("title", String(255), nullable=False),
    Column("message", Text, nullable=False),
    Column("related_entity_type", String(50)),
    Column("related_entity_id", String(36)),
    Column("payload", JSON, nullable=False, default=dict),
    Column("read", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), nullable=False, default=utcnow),
    Index("ix_notification_recipient", "recipient_id", "read"),
)


# ============================================================
# POLICY
# ============================================================

permission_rule = Table(
    "permission_rule",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("description", Text),
    Column("action", String(50), nullable=False),
    Column("permission", String(30), nullable=False),
    Column("role_ids", JSON, nullable=False, default=list),
    Column("user_ids", JSON, nullable=False, default=list),
    Column("department_ids", JSON, nullable=False, default=list),
    Column("category_ids", JSON, nullable=False, default=list),
    Column("max_value", Float),
    Column("use_department_approvers", Boolean, nullable=False, default=False),
    Column("approver_roles", JSON, nullable=False, default=list),
    Column("priority", Integer, nullable=False, default=0),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_by", String(36)),
    Column("created_at", DateTime(timezone=True), nullable=False, default=utcnow),
    Column("updated_at", DateTime(timezone=True), nullable=False, default=utcnow),
    UniqueConstraint("name", "action", name="uq_permission_rule_name_action"),
    Index("ix_permission_rule_action", "action", "is_active", "priority"),
)

permission_override = Table(
    "permission_override",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("override_type", String(20), nullable=False),
    Column("action", String(50), nullable=False),
    Column("user_id", String(36), nullable=False),
    Column("department_id", String(36)),
    Column("priority", Integer, nullable=False, default=100),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime(timezone=True), nullable=False, default=utcnow),
)

# scope is DEFAULT (department_id NULL) or DEPARTMENT
approver_role_assignment = Table(
    "approver_role_assignment",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("scope", String(20), nullable=False),
    Column("department_id", String(36)),
    Column("role_id", String(36), nullable=False),
    Column("position", Integer, nullable=False, default=0),
)
