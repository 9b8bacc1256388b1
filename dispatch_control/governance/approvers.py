# dispatch_control/governance/approvers.py
"""
Approver resolution.

Maps a policy decision's approver roles to concrete user ids through the
directory. When the roles yield nobody, users holding the fallback role
(by name, default "admin") are used instead. An empty result is returned
as-is; the lifecycle manager turns it into NO_APPROVERS_AVAILABLE.
"""

from dataclasses import dataclass
from typing import Any, Iterable, Optional, Tuple

from ..logging import get_governance_logger
from ..policy.engine import ContextLike, PolicyEngine
from ..policy.models import ActionLike, Decision, Principal, action_key
from ..settings import settings

logger = get_governance_logger("approvers")


@dataclass(frozen=True)
class ResolvedApprovers:
    """Approver user ids and the roles that produced them."""
    users: Tuple[str, ...]
    roles: Tuple[str, ...]
    fallback_used: bool = False

    def __bool__(self) -> bool:
        return bool(self.users)


class ApproverResolver:
    """
    Resolves the set of users eligible to approve an action.

    Args:
        engine: Policy engine used when no decision is supplied
        directory: Provides find_users_by_role / find_role_by_name
        fallback_role: Role name used when the decision's roles yield nobody
    """

    def __init__(
        self,
        engine: PolicyEngine,
        directory: Any,
        fallback_role: Optional[str] = None,
    ):
        self.engine = engine
        self.directory = directory
        self.fallback_role = fallback_role or settings.fallback_approver_role

    def resolve_approvers(
        self,
        action: ActionLike,
        context: ContextLike = None,
        decision: Optional[Decision] = None,
        principal: Optional[Principal] = None,
    ) -> ResolvedApprovers:
        """
        Resolve approvers for an action.

        Args:
            action: Action being requested
            context: Evaluation context of the subject
            decision: Decision already computed for the requester, if any
            principal: Requester; required when `decision` is None

        Returns:
            ResolvedApprovers (possibly empty)
        """
        if decision is None:
            if principal is None:
                raise ValueError("principal is required when no decision is supplied")
            decision = self.engine.evaluate(action, principal, context)

        roles = tuple(sorted(decision.approver_roles))
        users = self._users_for(roles)
        if users:
            return ResolvedApprovers(users=users, roles=roles)

        fallback_role_id = self.directory.find_role_by_name(self.fallback_role)
        if fallback_role_id is None:
            logger.warning(
                "approver_fallback_role_missing",
                action=action_key(action),
                fallback_role=self.fallback_role,
            )
            return ResolvedApprovers(users=(), roles=roles)

        users = self._users_for((fallback_role_id,))
        logger.info(
            "approver_fallback_used",
            action=action_key(action),
            policy_roles=list(roles),
            fallback_role=self.fallback_role,
            approver_count=len(users),
        )
        return ResolvedApprovers(users=users, roles=(fallback_role_id,), fallback_used=True)

    def _users_for(self, role_ids: Iterable[str]) -> Tuple[str, ...]:
        users = set()
        for role_id in role_ids:
            users.update(self.directory.find_users_by_role(role_id))
        return tuple(sorted(users))
