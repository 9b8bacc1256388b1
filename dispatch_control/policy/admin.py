# dispatch_control/policy/admin.py
"""
Permission rule administration.

CRUD over the permission tables that SqlPolicyStore snapshots. Deleting a
rule is a soft delete (is_active = false) so historic decisions can still
be explained.
"""

import math
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db import tables
from ..db.tables import utcnow
from ..errors import ConflictError, NotFoundError, ValidationError
from ..logging import get_logger
from .models import ActionLike, OverrideType, Permission, action_key

logger = get_logger(__name__)

_LIST_FIELDS = ("role_ids", "user_ids", "department_ids", "category_ids", "approver_roles")
_UPDATABLE_FIELDS = set(_LIST_FIELDS) | {
    "name", "description", "action", "permission", "max_value",
    "use_department_approvers", "priority", "is_active",
}


class PermissionRuleService:
    """Manages permission rules, overrides and approver-role assignments."""

    def __init__(self, session: Session):
        self.session = session

    def create_rule(
        self,
        name: str,
        action: ActionLike,
        permission: str,
        created_by: str,
        *,
        description: Optional[str] = None,
        role_ids: Iterable[str] = (),
        user_ids: Iterable[str] = (),
        department_ids: Iterable[str] = (),
        category_ids: Iterable[str] = (),
        max_value: Optional[float] = None,
        use_department_approvers: bool = False,
        approver_roles: Iterable[str] = (),
        priority: int = 0,
    ) -> Dict[str, Any]:
        """
        Create a permission rule.

        Raises:
            ValidationError: unknown permission level
            ConflictError: another active rule for the action has this priority
        """
        permission = _parse_permission(permission)
        key = action_key(action)
        self._check_priority_free(key, priority)

        now = utcnow()
        rule_id = str(uuid4())
        try:
            self._insert_rule(
                id=rule_id,
                name=name,
                description=description or name,
                action=key,
                permission=permission,
                role_ids=list(role_ids),
                user_ids=list(user_ids),
                department_ids=list(department_ids),
                category_ids=list(category_ids),
                max_value=max_value,
                use_department_approvers=use_department_approvers,
                approver_roles=list(approver_roles),
                priority=priority,
                is_active=True,
                created_by=created_by,
                created_at=now,
                updated_at=now,
            )
        except IntegrityError as e:
            self.session.rollback()
            raise ConflictError(
                f"A rule named '{name}' already exists for {key}",
                code="DUPLICATE_RULE",
                details={"name": name, "action": key},
            ) from e
        self.session.commit()

        logger.info("permission_rule_created", rule_id=rule_id, action=key, priority=priority)
        return self.get_rule(rule_id)

    def _insert_rule(self, **values: Any) -> None:
        self.session.execute(insert(tables.permission_rule).values(**values))

    def get_rule(self, rule_id: str) -> Dict[str, Any]:
        row = self.session.execute(
            select(tables.permission_rule).where(tables.permission_rule.c.id == rule_id)
        ).mappings().fetchone()
        if row is None:
            raise NotFoundError(f"Permission rule not found: {rule_id}", code="PERMISSION_RULE_NOT_FOUND")
        return dict(row)

    def list_rules(self, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        """Rules ordered by priority (highest first), newest first within a priority."""
        t = tables.permission_rule
        page = max(page, 1)
        limit = max(limit, 1)
        total = self.session.execute(select(func.count()).select_from(t)).scalar() or 0
        rows = self.session.execute(
            select(t)
            .order_by(t.c.priority.desc(), t.c.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).mappings().all()

        return {
            "rules": [dict(r) for r in rows],
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        }

    def update_rule(self, rule_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        """Apply a partial update to a rule."""
        current = self.get_rule(rule_id)

        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(
                f"Unknown rule fields: {sorted(unknown)}",
                details={"fields": sorted(unknown)},
            )

        values = dict(changes)
        if "permission" in values:
            values["permission"] = _parse_permission(values["permission"])
        if "action" in values:
            values["action"] = action_key(values["action"])
        for list_field in _LIST_FIELDS:
            if list_field in values:
                values[list_field] = list(values[list_field] or [])

        if "priority" in values or "action" in values:
            self._check_priority_free(
                values.get("action", current["action"]),
                values.get("priority", current["priority"]),
                exclude_id=rule_id,
            )

        values["updated_at"] = utcnow()
        self.session.execute(
            update(tables.permission_rule)
            .where(tables.permission_rule.c.id == rule_id)
            .values(**values)
        )
        self.session.commit()

        logger.info("permission_rule_updated", rule_id=rule_id, fields=sorted(changes))
        return self.get_rule(rule_id)

    def deactivate_rule(self, rule_id: str) -> None:
        """Soft delete."""
        self.get_rule(rule_id)
        self.session.execute(
            update(tables.permission_rule)
            .where(tables.permission_rule.c.id == rule_id)
            .values(is_active=False, updated_at=utcnow())
        )
        self.session.commit()
        logger.info("permission_rule_deactivated", rule_id=rule_id)

    def add_override(
        self,
        override_type: str,
        action: ActionLike,
        user_id: str,
        department_id: Optional[str] = None,
        priority: int = 100,
        name: Optional[str] = None,
    ) -> str:
        try:
            kind = OverrideType(override_type)
        except ValueError as e:
            raise ValidationError(
                f"Invalid override type: {override_type}",
                code="INVALID_OVERRIDE_TYPE",
            ) from e

        override_id = str(uuid4())
        key = action_key(action)
        self.session.execute(
            insert(tables.permission_override).values(
                id=override_id,
                name=name or f"Override {kind.value} {user_id} {key}",
                override_type=kind.value,
                action=key,
                user_id=user_id,
                department_id=department_id,
                priority=priority,
                is_active=True,
                created_at=utcnow(),
            )
        )
        self.session.commit()
        logger.info("permission_override_added", override_id=override_id, action=key, user_id=user_id)
        return override_id

    def set_approver_roles(
        self,
        role_ids: List[str],
        department_id: Optional[str] = None,
    ) -> None:
        """Replace the default (department_id None) or per-department approver roles."""
        t = tables.approver_role_assignment
        scope = "DEPARTMENT" if department_id else "DEFAULT"

        stmt = delete(t).where(t.c.scope == scope)
        if department_id:
            stmt = stmt.where(t.c.department_id == department_id)
        self.session.execute(stmt)

        for position, role_id in enumerate(role_ids):
            self.session.execute(
                insert(t).values(
                    scope=scope,
                    department_id=department_id,
                    role_id=role_id,
                    position=position,
                )
            )
        self.session.commit()

    def _check_priority_free(
        self,
        action: str,
        priority: int,
        exclude_id: Optional[str] = None,
    ) -> None:
        if not priority or priority <= 0:
            return

        t = tables.permission_rule
        stmt = select(t.c.id).where(
            t.c.action == action,
            t.c.priority == priority,
            t.c.is_active.is_(True),
        )
        if exclude_id:
            stmt = stmt.where(t.c.id != exclude_id)

        if self.session.execute(stmt).first() is not None:
            raise ConflictError(
                f"An active rule for {action} already uses priority {priority}",
                code="INVALID_PRIORITY",
                details={"action": action, "priority": priority},
            )


def _parse_permission(value: str) -> str:
    try:
        return Permission(value).value
    except ValueError as e:
        raise ValidationError(
            f"Invalid permission level: {value}",
            code="INVALID_PERMISSION",
            details={"allowed": [p.value for p in Permission]},
        ) from e
