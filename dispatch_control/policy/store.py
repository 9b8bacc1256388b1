# dispatch_control/policy/store.py
"""
Policy stores.

A policy store is pure data access: rules, overrides and approver-role
maps. The engine only ever reads a StaticPolicyStore snapshot, so a
single evaluation never sees a half-updated rule set. SqlPolicyStore
loads such a snapshot from the permission tables.
"""

import hashlib
import json
from dataclasses import replace
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db import tables
from .models import Override, Rule


def _fingerprint(
    rules: Sequence[Rule],
    overrides: Sequence[Override],
    default_roles: Sequence[str],
    department_roles: Mapping[str, Sequence[str]],
) -> str:
    """SHA-256 over a canonical rendering of the policy contents."""
    canonical = {
        "rules": [
            [
                r.name, r.action, r.permission.value, sorted(r.roles), sorted(r.users),
                sorted(r.departments), sorted(r.categories), r.max_value,
                r.use_department_approvers, sorted(r.approver_roles), r.priority,
                r.is_active,
            ]
            for r in rules
        ],
        "overrides": [
            [o.type.value, o.action, o.user, o.department, o.priority]
            for o in overrides
        ],
        "default_roles": list(default_roles),
        "department_roles": {k: list(v) for k, v in sorted(department_roles.items())},
    }
    payload = json.dumps(canonical, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


class StaticPolicyStore:
    """
    Immutable in-memory policy snapshot.

    Declaration order is significant: each rule and override is stamped
    with its position, which the engine uses to break priority ties.
    """

    def __init__(
        self,
        rules: Iterable[Rule] = (),
        overrides: Iterable[Override] = (),
        default_approver_roles: Iterable[str] = (),
        department_approver_roles: Optional[Mapping[str, Iterable[str]]] = None,
        superuser_roles: Iterable[str] = (),
        read_only_roles: Iterable[str] = (),
        version: Optional[str] = None,
    ):
        self._rules: Tuple[Rule, ...] = tuple(
            replace(rule, ordinal=i) for i, rule in enumerate(rules)
        )
        self._overrides: Tuple[Override, ...] = tuple(
            replace(override, ordinal=i) for i, override in enumerate(overrides)
        )
        self._default_roles: Tuple[str, ...] = tuple(str(r) for r in default_approver_roles)
        self._department_roles: Dict[str, Tuple[str, ...]] = {
            str(dept): tuple(str(r) for r in roles)
            for dept, roles in (department_approver_roles or {}).items()
        }
        self._superuser_roles = frozenset(str(r) for r in superuser_roles)
        self._read_only_roles = frozenset(str(r) for r in read_only_roles)
        self._version = version or _fingerprint(
            self._rules, self._overrides, self._default_roles, self._department_roles
        )

    @property
    def version(self) -> str:
        return self._version

    def load_rules(self) -> List[Rule]:
        return list(self._rules)

    def load_overrides(self) -> List[Override]:
        return list(self._overrides)

    def default_approver_roles(self) -> List[str]:
        return list(self._default_roles)

    def department_approver_roles(self, department_id: Optional[str]) -> List[str]:
        if department_id is None:
            return []
        return list(self._department_roles.get(str(department_id), ()))

    def superuser_roles(self) -> frozenset:
        return self._superuser_roles

    def read_only_roles(self) -> frozenset:
        return self._read_only_roles


class SqlPolicyStore:
    """
    Loads policy snapshots from the permission tables.

    Rules and overrides are read in creation order, which becomes their
    declaration order in the snapshot.
    """

    def __init__(
        self,
        session: Session,
        superuser_roles: Iterable[str] = (),
        read_only_roles: Iterable[str] = (),
    ):
        self.session = session
        self._superuser_roles = tuple(superuser_roles)
        self._read_only_roles = tuple(read_only_roles)

    def snapshot(self) -> StaticPolicyStore:
        """Read the current policy into an immutable store."""
        rules = self._load_rules()
        overrides = self._load_overrides()
        default_roles, department_roles = self._load_approver_roles()

        return StaticPolicyStore(
            rules=rules,
            overrides=overrides,
            default_approver_roles=default_roles,
            department_approver_roles=department_roles,
            superuser_roles=self._superuser_roles,
            read_only_roles=self._read_only_roles,
        )

    def _load_rules(self) -> List[Rule]:
        t = tables.permission_rule
        rows = self.session.execute(
            select(t).order_by(t.c.created_at, t.c.id)
        ).mappings()

        return [
            Rule.build(
                name=row["name"],
                action=row["action"],
                permission=row["permission"],
                roles=row["role_ids"] or (),
                users=row["user_ids"] or (),
                departments=row["department_ids"] or (),
                categories=row["category_ids"] or (),
                max_value=row["max_value"],
                use_department_approvers=row["use_department_approvers"],
                approver_roles=row["approver_roles"] or (),
                priority=row["priority"],
                is_active=row["is_active"],
                description=row["description"],
                id=row["id"],
            )
            for row in rows
        ]

    def _load_overrides(self) -> List[Override]:
        t = tables.permission_override
        rows = self.session.execute(
            select(t).where(t.c.is_active.is_(True)).order_by(t.c.created_at, t.c.id)
        ).mappings()

        return [
            Override.build(
                row["override_type"],
                row["action"],
                row["user_id"],
                department=row["department_id"],
                priority=row["priority"],
                name=row["name"],
                id=row["id"],
            )
            for row in rows
        ]

    def _load_approver_roles(self) -> Tuple[List[str], Dict[str, List[str]]]:
        t = tables.approver_role_assignment
        rows = self.session.execute(
            select(t).order_by(t.c.position, t.c.id)
        ).mappings()

        default_roles: List[str] = []
        department_roles: Dict[str, List[str]] = {}
        for row in rows:
            if row["scope"] == "DEFAULT":
                default_roles.append(row["role_id"])
            elif row["department_id"]:
                department_roles.setdefault(row["department_id"], []).append(row["role_id"])

        return default_roles, department_roles
