# dispatch_control/policy/models.py
"""
Policy models.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional, Union


class ActionType(str, Enum):
    """Guarded operations. Rules refer to actions by value, so new ones need no engine change."""
    CREATE_MACHINE = "CREATE_MACHINE"
    EDIT_MACHINE = "EDIT_MACHINE"
    DELETE_MACHINE = "DELETE_MACHINE"
    APPROVE_MACHINE = "APPROVE_MACHINE"
    ACTIVATE_MACHINE = "ACTIVATE_MACHINE"
    VIEW_MACHINE = "VIEW_MACHINE"
    CREATE_QC_ENTRY = "CREATE_QC_ENTRY"
    EDIT_QC_ENTRY = "EDIT_QC_ENTRY"
    APPROVE_QC_APPROVAL = "APPROVE_QC_APPROVAL"
    VIEW_QC_APPROVAL = "VIEW_QC_APPROVAL"


class Permission(str, Enum):
    """Outcome of a policy evaluation."""
    ALLOWED = "ALLOWED"
    REQUIRES_APPROVAL = "REQUIRES_APPROVAL"
    DENIED = "DENIED"


class OverrideType(str, Enum):
    """Per-user exceptions."""
    USER_ALLOW = "user-allow"
    USER_DENY = "user-deny"


ActionLike = Union[ActionType, str]


def action_key(action: ActionLike) -> str:
    """Normalize an action (enum member or raw string) to its string value."""
    if isinstance(action, Enum):
        return str(action.value)
    return str(action)


def _frozen(values: Optional[Iterable[Any]]) -> FrozenSet[str]:
    if not values:
        return frozenset()
    return frozenset(str(v) for v in values)


@dataclass(frozen=True)
class Principal:
    """Authenticated actor. Built per request by the authenticator."""
    user_id: str
    roles: FrozenSet[str] = frozenset()
    department_id: Optional[str] = None

    @classmethod
    def of(cls, user_id: str, roles: Iterable[str] = (), department_id: Optional[str] = None) -> "Principal":
        return cls(user_id=str(user_id), roles=_frozen(roles), department_id=department_id)


@dataclass(frozen=True)
class EvaluationContext:
    """Attributes of the thing being acted on."""
    department_id: Optional[str] = None
    category_id: Optional[str] = None
    value: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "EvaluationContext":
        data = data or {}
        value = data.get("value")
        return cls(
            department_id=data.get("department_id"),
            category_id=data.get("category_id"),
            value=float(value) if value is not None else None,
        )


@dataclass(frozen=True)
class Rule:
    """Scoped, prioritized mapping from action + context to a permission."""
    name: str
    action: str
    permission: Permission
    roles: FrozenSet[str] = frozenset()
    users: FrozenSet[str] = frozenset()
    departments: FrozenSet[str] = frozenset()
    categories: FrozenSet[str] = frozenset()
    max_value: Optional[float] = None
    use_department_approvers: bool = False
    approver_roles: FrozenSet[str] = frozenset()
    priority: int = 0
    is_active: bool = True
    description: Optional[str] = None
    ordinal: int = 0  # Declaration position within the store; breaks priority ties
    id: Optional[str] = None

    @classmethod
    def build(
        cls,
        name: str,
        action: ActionLike,
        permission: Union[Permission, str],
        *,
        roles: Iterable[str] = (),
        users: Iterable[str] = (),
        departments: Iterable[str] = (),
        categories: Iterable[str] = (),
        max_value: Optional[float] = None,
        use_department_approvers: bool = False,
        approver_roles: Iterable[str] = (),
        priority: int = 0,
        is_active: bool = True,
        description: Optional[str] = None,
        ordinal: int = 0,
        id: Optional[str] = None,
    ) -> "Rule":
        """Build a rule from loose inputs (lists, raw strings)."""
        return cls(
            name=name,
            action=action_key(action),
            permission=Permission(permission),
            roles=_frozen(roles),
            users=_frozen(users),
            departments=_frozen(departments),
            categories=_frozen(categories),
            max_value=float(max_value) if max_value is not None else None,
            use_department_approvers=bool(use_department_approvers),
            approver_roles=_frozen(approver_roles),
            priority=int(priority),
            is_active=bool(is_active),
            description=description,
            ordinal=ordinal,
            id=id,
        )


@dataclass(frozen=True)
class Override:
    """Per-user allow/deny that outranks every ordinary rule."""
    type: OverrideType
    action: str
    user: str
    department: Optional[str] = None
    priority: int = 100
    name: Optional[str] = None
    ordinal: int = 0
    id: Optional[str] = None

    @property
    def permission(self) -> Permission:
        if self.type == OverrideType.USER_ALLOW:
            return Permission.ALLOWED
        return Permission.DENIED

    @classmethod
    def build(
        cls,
        type: Union[OverrideType, str],
        action: ActionLike,
        user: str,
        *,
        department: Optional[str] = None,
        priority: int = 100,
        name: Optional[str] = None,
        ordinal: int = 0,
        id: Optional[str] = None,
    ) -> "Override":
        override_type = OverrideType(type)
        return cls(
            type=override_type,
            action=action_key(action),
            user=str(user),
            department=department,
            priority=int(priority),
            name=name or f"Override {override_type.value} {user} {action_key(action)}",
            ordinal=ordinal,
            id=id,
        )


@dataclass(frozen=True)
class Decision:
    """Engine output. Derived, never persisted."""
    permission: Permission
    matched_rule: Optional[Rule] = None
    matched_override: Optional[Override] = None
    approver_roles: FrozenSet[str] = frozenset()
    reason: Optional[str] = None
    policy_version: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.permission == Permission.ALLOWED

    @property
    def requires_approval(self) -> bool:
        return self.permission == Permission.REQUIRES_APPROVAL

    @property
    def denied(self) -> bool:
        return self.permission == Permission.DENIED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "permission": self.permission.value,
            "matched_rule": self.matched_rule.name if self.matched_rule else None,
            "matched_override": self.matched_override.name if self.matched_override else None,
            "approver_roles": sorted(self.approver_roles),
            "reason": self.reason,
            "policy_version": self.policy_version,
        }


@dataclass
class Explanation:
    """Decision plus the candidates that were considered, in precedence order."""
    decision: Decision
    matching_overrides: list = field(default_factory=list)
    matching_rules: list = field(default_factory=list)
