# dispatch_control/policy/builtin_policies.py
"""
Built-in policy document.

The document is written with role, department and user *names* so it can
be reviewed without a database. `resolve_policy_document` turns it into a
StaticPolicyStore keyed by directory ids; names the directory does not
know are kept verbatim, so a rule scoped to a missing role matches nobody
instead of silently matching everybody.
"""

from typing import Any, Dict, Iterable, List, Optional

from ..logging import get_logger
from .models import Override, Rule
from .store import StaticPolicyStore

logger = get_logger(__name__)


# ============================================================
# DEFAULT POLICY
#
# Rules are listed in declaration order; on equal priority the first
# listed rule wins. Overrides on equal priority: the last listed wins.
# ============================================================
DEFAULT_POLICY: Dict[str, Any] = {
    "roles": ["admin", "sub-admin", "manager", "technician", "qc"],
    "departments": ["dispatch", "qa"],
    "approvers": {
        "default_roles": ["admin"],
        "per_department": {"dispatch": ["admin", "manager"], "qa": ["admin", "qc"]},
    },
    "superuser_roles": ["admin"],
    "read_only_roles": ["sub-admin"],
    "rules": [
        {
            "name": "Global view allowed",
            "action": "VIEW_MACHINE",
            "permission": "ALLOWED",
            "priority": 10,
        },
        {
            "name": "QC approval view",
            "action": "VIEW_QC_APPROVAL",
            "roles": ["qc", "manager"],
            "permission": "ALLOWED",
            "priority": 10,
        },
        {
            "name": "Technician create",
            "action": "CREATE_MACHINE",
            "roles": ["technician"],
            "permission": "ALLOWED",
            "priority": 60,
        },
        {
            "name": "Dispatch manager approve <= 50k",
            "action": "APPROVE_MACHINE",
            "roles": ["manager"],
            "departments": ["dispatch"],
            "permission": "ALLOWED",
            "max_value": 50000,
            "priority": 70,
        },
        {
            "name": "Manager create requires approval",
            "action": "CREATE_MACHINE",
            "roles": ["manager"],
            "permission": "REQUIRES_APPROVAL",
            "use_department_approvers": True,
            "priority": 65,
        },
        {
            "name": "Manager edit requires approval",
            "action": "EDIT_MACHINE",
            "roles": ["manager"],
            "permission": "REQUIRES_APPROVAL",
            "approver_roles": ["admin"],
            "priority": 65,
        },
        {
            "name": "QC entry requires approval",
            "action": "CREATE_QC_ENTRY",
            "roles": ["qc"],
            "permission": "REQUIRES_APPROVAL",
            "use_department_approvers": True,
            "priority": 60,
        },
        {
            "name": "QC approval reviewers",
            "action": "APPROVE_QC_APPROVAL",
            "roles": ["qc", "admin"],
            "permission": "ALLOWED",
            "priority": 60,
        },
        {
            "name": "Manager activation",
            "action": "ACTIVATE_MACHINE",
            "roles": ["manager"],
            "permission": "ALLOWED",
            "priority": 50,
        },
        {
            "name": "Dispatch deny delete",
            "action": "DELETE_MACHINE",
            "departments": ["dispatch"],
            "permission": "DENIED",
            "priority": 80,
        },
        # Global deny safety nets
        {"name": "Global deny create", "action": "CREATE_MACHINE", "permission": "DENIED", "priority": 1},
        {"name": "Global deny edit", "action": "EDIT_MACHINE", "permission": "DENIED", "priority": 1},
        {"name": "Global deny delete", "action": "DELETE_MACHINE", "permission": "DENIED", "priority": 1},
    ],
    "overrides": [],
}


def resolve_policy_document(
    document: Dict[str, Any],
    directory: Optional[Any] = None,
    superuser_roles: Optional[Iterable[str]] = None,
    read_only_roles: Optional[Iterable[str]] = None,
) -> StaticPolicyStore:
    """
    Build a policy store from a name-based policy document.

    Args:
        document: Policy document shaped like DEFAULT_POLICY
        directory: Directory used to map names to ids (identity mapping if None)
        superuser_roles: Role names overriding the document's superuser list
        read_only_roles: Role names overriding the document's read-only list

    Returns:
        StaticPolicyStore keyed by ids
    """
    resolver = _NameResolver(directory)

    rules = [
        Rule.build(
            name=entry["name"],
            action=entry["action"],
            permission=entry["permission"],
            roles=resolver.roles(entry.get("roles")),
            users=resolver.users(entry.get("users")),
            departments=resolver.departments(entry.get("departments")),
            categories=entry.get("categories") or (),
            max_value=entry.get("max_value"),
            use_department_approvers=entry.get("use_department_approvers", False),
            approver_roles=resolver.roles(entry.get("approver_roles")),
            priority=entry.get("priority", 0),
            is_active=entry.get("is_active", True),
            description=entry.get("description") or entry["name"],
        )
        for entry in document.get("rules", [])
    ]

    overrides = []
    for entry in document.get("overrides", []):
        user_ids = resolver.users([entry["user"]])
        department = entry.get("department")
        overrides.append(
            Override.build(
                entry["type"],
                entry["action"],
                user_ids[0],
                department=resolver.departments([department])[0] if department else None,
                priority=entry.get("priority", 100),
            )
        )

    approvers = document.get("approvers", {})
    per_department = {
        resolver.departments([dept])[0]: resolver.roles(names)
        for dept, names in (approvers.get("per_department") or {}).items()
    }

    store = StaticPolicyStore(
        rules=rules,
        overrides=overrides,
        default_approver_roles=resolver.roles(approvers.get("default_roles")),
        department_approver_roles=per_department,
        superuser_roles=resolver.roles(
            superuser_roles if superuser_roles is not None else document.get("superuser_roles")
        ),
        read_only_roles=resolver.roles(
            read_only_roles if read_only_roles is not None else document.get("read_only_roles")
        ),
    )

    if resolver.unresolved:
        logger.warning(
            "policy_names_unresolved",
            names=sorted(resolver.unresolved),
            policy_version=store.version,
        )
    return store


def load_builtin_policy(directory: Optional[Any] = None) -> StaticPolicyStore:
    """Resolve DEFAULT_POLICY against a directory."""
    return resolve_policy_document(DEFAULT_POLICY, directory)


class _NameResolver:
    """Maps policy names to directory ids, remembering misses."""

    def __init__(self, directory: Optional[Any]):
        self.directory = directory
        self.unresolved: set = set()

    def _resolve(self, names: Optional[Iterable[str]], lookup: str) -> List[str]:
        resolved = []
        for name in names or ():
            if self.directory is None:
                resolved.append(name)
                continue
            found = getattr(self.directory, lookup)(name)
            if found is None:
                self.unresolved.add(name)
                resolved.append(name)
            else:
                resolved.append(found)
        return resolved

    def roles(self, names: Optional[Iterable[str]]) -> List[str]:
        return self._resolve(names, "find_role_by_name")

    def departments(self, names: Optional[Iterable[str]]) -> List[str]:
        return self._resolve(names, "find_department_by_name")

    def users(self, names: Optional[Iterable[str]]) -> List[str]:
        return self._resolve(names, "find_user_by_login")
