# dispatch_control/policy/engine.py
"""
Policy evaluation engine.

Evaluation order:
1. User overrides (highest priority wins; equal priority -> later-declared wins)
2. Role bypass (superuser roles: everything; read-only roles: VIEW_* actions)
3. Active rules (highest priority wins; equal priority -> first-declared wins)
4. Nothing matched -> DENIED

Fail-closed applies to principals without a bypass role: a superuser is
ALLOWED even for actions no rule mentions. Both bypass role sets are empty
unless the store is configured with them. The engine is a pure function of
its inputs and the store snapshot.
"""

from typing import List, Optional, Union

from .models import (
    ActionLike,
    Decision,
    EvaluationContext,
    Explanation,
    Override,
    Permission,
    Principal,
    Rule,
    action_key,
)
from .store import StaticPolicyStore

ContextLike = Union[EvaluationContext, dict, None]

VIEW_ACTION_PREFIX = "VIEW_"


class PolicyEngine:
    """
    Evaluates an action for a principal against a policy snapshot.
    """

    def __init__(self, store: StaticPolicyStore):
        self.store = store

    def evaluate(
        self,
        action: ActionLike,
        principal: Principal,
        context: ContextLike = None,
    ) -> Decision:
        """
        Decide whether `principal` may perform `action`.

        Args:
            action: Action enum member or raw action string
            principal: Authenticated actor
            context: department_id / category_id / value of the target

        Returns:
            Decision (never raises; an unknown action is DENIED unless the
            principal holds a superuser role)
        """
        return self.explain(action, principal, context).decision

    def explain(
        self,
        action: ActionLike,
        principal: Principal,
        context: ContextLike = None,
    ) -> Explanation:
        """Evaluate and also report every override and rule that matched."""
        ctx = _coerce_context(context)
        key = action_key(action)
        version = self.store.version

        overrides = self._matching_overrides(key, principal, ctx)
        rules = self._matching_rules(key, principal, ctx)

        if overrides:
            winner = overrides[0]
            decision = Decision(
                permission=winner.permission,
                matched_override=winner,
                reason=f"User override '{winner.name}'",
                policy_version=version,
            )
            return Explanation(decision, overrides, rules)

        bypass = self._role_bypass(key, principal, version)
        if bypass is not None:
            return Explanation(bypass, overrides, rules)

        if not rules:
            decision = Decision(
                permission=Permission.DENIED,
                reason="No matching permission rule found",
                policy_version=version,
            )
            return Explanation(decision, overrides, rules)

        winner = rules[0]
        approver_roles = frozenset()
        if winner.permission == Permission.REQUIRES_APPROVAL:
            approver_roles = frozenset(self._approver_roles_for(winner, principal))

        reason = None
        if winner.permission == Permission.DENIED:
            reason = f"Access denied by permission rule '{winner.name}'"

        decision = Decision(
            permission=winner.permission,
            matched_rule=winner,
            approver_roles=approver_roles,
            reason=reason,
            policy_version=version,
        )
        return Explanation(decision, overrides, rules)

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def _matching_overrides(
        self,
        action: str,
        principal: Principal,
        ctx: EvaluationContext,
    ) -> List[Override]:
        """Matching overrides, winner first."""
        department = ctx.department_id or principal.department_id
        matched = [
            o for o in self.store.load_overrides()
            if o.action == action
            and o.user == principal.user_id
            and (o.department is None or o.department == department)
        ]
        # Later declaration wins on equal priority
        return sorted(matched, key=lambda o: (-o.priority, -o.ordinal))

    def _matching_rules(
        self,
        action: str,
        principal: Principal,
        ctx: EvaluationContext,
    ) -> List[Rule]:
        """Matching active rules, winner first."""
        matched = [
            r for r in self.store.load_rules()
            if r.is_active and r.action == action and rule_matches(r, principal, ctx)
        ]
        # First declaration wins on equal priority
        return sorted(matched, key=lambda r: (-r.priority, r.ordinal))

    def _role_bypass(
        self,
        action: str,
        principal: Principal,
        version: str,
    ) -> Optional[Decision]:
        if principal.roles & self.store.superuser_roles():
            return Decision(
                permission=Permission.ALLOWED,
                reason="Superuser role bypass",
                policy_version=version,
            )
        if action.startswith(VIEW_ACTION_PREFIX) and principal.roles & self.store.read_only_roles():
            return Decision(
                permission=Permission.ALLOWED,
                reason="Read-only role bypass",
                policy_version=version,
            )
        return None

    def _approver_roles_for(self, rule: Rule, principal: Principal) -> List[str]:
        if rule.use_department_approvers:
            roles = self.store.department_approver_roles(principal.department_id)
        else:
            roles = sorted(rule.approver_roles)
        if not roles:
            roles = self.store.default_approver_roles()
        return roles


def rule_matches(rule: Rule, principal: Principal, ctx: EvaluationContext) -> bool:
    """
    Check if a rule's scope covers the principal and context.

    Every populated dimension must match (AND across dimensions);
    within a dimension any value matches (OR). Empty = no constraint.
    """
    if rule.users and principal.user_id not in rule.users:
        return False

    if rule.roles and not (rule.roles & principal.roles):
        return False

    if rule.departments:
        department = ctx.department_id or principal.department_id
        if department is None or department not in rule.departments:
            return False

    if rule.categories:
        if ctx.category_id is None or ctx.category_id not in rule.categories:
            return False

    if rule.max_value is not None:
        if ctx.value is None or ctx.value > rule.max_value:
            return False

    return True


def _coerce_context(context: ContextLike) -> EvaluationContext:
    if context is None:
        return EvaluationContext()
    if isinstance(context, EvaluationContext):
        return context
    return EvaluationContext.from_dict(context)


def evaluate_policy(
    action: ActionLike,
    principal: Principal,
    store: StaticPolicyStore,
    context: ContextLike = None,
) -> Decision:
    """Convenience function to evaluate one action."""
    return PolicyEngine(store).evaluate(action, principal, context)
