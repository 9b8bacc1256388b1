# tests/test_policy_engine.py
"""
Test policy evaluation.

Covers precedence (overrides > role bypass > rules), tie-breaking,
scoping, approver-role selection and the fail-closed default.
"""

from dispatch_control.policy.engine import PolicyEngine, evaluate_policy, rule_matches
from dispatch_control.policy.models import (
    ActionType,
    EvaluationContext,
    Override,
    OverrideType,
    Permission,
    Principal,
    Rule,
)
from dispatch_control.policy.store import StaticPolicyStore


MANAGER = Principal.of("manager-1", ["role-manager"], "dept-dispatch")
TECH = Principal.of("tech-1", ["role-technician"], "dept-dispatch")
ADMIN = Principal.of("admin-1", ["role-admin"], "dept-dispatch")
VIEWER = Principal.of("viewer-1", ["role-sub-admin"], "dept-dispatch")


def _engine(rules=(), overrides=(), **store_kwargs) -> PolicyEngine:
    return PolicyEngine(StaticPolicyStore(rules=rules, overrides=overrides, **store_kwargs))


class TestExampleRuleSet:
    """Manager create requires admin approval, everything else denied."""

    def test_manager_create_requires_admin_approval(self, policy_engine):
        decision = policy_engine.evaluate(ActionType.CREATE_MACHINE, MANAGER, {})

        assert decision.permission == Permission.REQUIRES_APPROVAL
        assert decision.approver_roles == frozenset({"role-admin"})
        assert decision.matched_rule.name == "Manager create requires approval"

    def test_other_roles_fall_to_global_deny(self, policy_engine):
        decision = policy_engine.evaluate(ActionType.CREATE_MACHINE, TECH, {})

        assert decision.denied
        assert decision.matched_rule.name == "Global deny create"
        assert decision.approver_roles == frozenset()

    def test_evaluation_is_deterministic(self, policy_engine):
        """Same inputs against the same snapshot always give the same decision."""
        decisions = {
            policy_engine.evaluate("CREATE_MACHINE", MANAGER, {"department_id": "dept-dispatch"})
            for _ in range(25)
        }
        assert len(decisions) == 1

    def test_string_and_enum_actions_are_equivalent(self, policy_engine):
        by_enum = policy_engine.evaluate(ActionType.CREATE_MACHINE, MANAGER)
        by_string = policy_engine.evaluate("CREATE_MACHINE", MANAGER)
        assert by_enum == by_string


class TestFailClosed:
    """Nothing matching means DENIED."""

    def test_action_without_rules_is_denied(self, policy_engine):
        decision = policy_engine.evaluate("DELETE_MACHINE", MANAGER)

        assert decision.denied
        assert decision.matched_rule is None
        assert decision.reason == "No matching permission rule found"

    def test_empty_store_denies_everything(self):
        decision = evaluate_policy(ActionType.VIEW_MACHINE, ADMIN, StaticPolicyStore())
        assert decision.denied

    def test_inactive_rules_are_ignored(self):
        engine = _engine([
            Rule.build("Disabled allow", "EDIT_MACHINE", "ALLOWED", priority=50, is_active=False),
        ])
        assert engine.evaluate("EDIT_MACHINE", MANAGER).denied


class TestOverrides:
    """User overrides outrank every rule."""

    def test_user_allow_beats_high_priority_deny(self):
        engine = _engine(
            rules=[Rule.build("Hard deny", "DELETE_MACHINE", "DENIED", priority=10_000)],
            overrides=[Override.build("user-allow", "DELETE_MACHINE", "tech-1", priority=1)],
        )
        decision = engine.evaluate("DELETE_MACHINE", TECH)

        assert decision.allowed
        assert decision.matched_override.type == OverrideType.USER_ALLOW
        assert decision.matched_rule is None

    def test_user_deny_beats_requires_approval(self, policy_store):
        engine = _engine(
            rules=policy_store.load_rules(),
            overrides=[Override.build(OverrideType.USER_DENY, ActionType.CREATE_MACHINE, "manager-1")],
        )
        assert engine.evaluate(ActionType.CREATE_MACHINE, MANAGER).denied

    def test_override_for_other_user_does_not_apply(self, policy_store):
        engine = _engine(
            rules=policy_store.load_rules(),
            overrides=[Override.build("user-deny", "CREATE_MACHINE", "manager-2")],
        )
        assert engine.evaluate("CREATE_MACHINE", MANAGER).requires_approval

    def test_highest_priority_override_wins(self):
        engine = _engine(overrides=[
            Override.build("user-deny", "EDIT_MACHINE", "tech-1", priority=200),
            Override.build("user-allow", "EDIT_MACHINE", "tech-1", priority=100),
        ])
        assert engine.evaluate("EDIT_MACHINE", TECH).denied

    def test_equal_priority_later_override_wins(self):
        engine = _engine(overrides=[
            Override.build("user-deny", "EDIT_MACHINE", "tech-1", priority=100, name="first"),
            Override.build("user-allow", "EDIT_MACHINE", "tech-1", priority=100, name="second"),
        ])
        decision = engine.evaluate("EDIT_MACHINE", TECH)

        assert decision.allowed
        assert decision.matched_override.name == "second"

    def test_department_scoped_override(self):
        engine = _engine(overrides=[
            Override.build("user-allow", "EDIT_MACHINE", "tech-1", department="dept-qa"),
        ])
        assert engine.evaluate("EDIT_MACHINE", TECH, {"department_id": "dept-qa"}).allowed
        # Falls back to the principal's own department (dispatch)
        assert engine.evaluate("EDIT_MACHINE", TECH).denied


class TestRuleTieBreaking:
    """Highest priority wins; first declared wins on a tie."""

    def test_higher_priority_wins_regardless_of_order(self):
        engine = _engine([
            Rule.build("Low allow", "EDIT_MACHINE", "ALLOWED", priority=5),
            Rule.build("High approval", "EDIT_MACHINE", "REQUIRES_APPROVAL", priority=50),
        ])
        assert engine.evaluate("EDIT_MACHINE", TECH).matched_rule.name == "High approval"

    def test_equal_priority_first_declared_wins(self):
        engine = _engine([
            Rule.build("Declared first", "EDIT_MACHINE", "DENIED", priority=20),
            Rule.build("Declared second", "EDIT_MACHINE", "ALLOWED", priority=20),
        ])
        decision = engine.evaluate("EDIT_MACHINE", TECH)

        assert decision.denied
        assert decision.matched_rule.name == "Declared first"

    def test_explain_lists_candidates_in_precedence_order(self):
        engine = _engine([
            Rule.build("B", "EDIT_MACHINE", "DENIED", priority=20),
            Rule.build("A", "EDIT_MACHINE", "ALLOWED", priority=30),
            Rule.build("C", "EDIT_MACHINE", "ALLOWED", priority=20),
            Rule.build("Other action", "VIEW_MACHINE", "ALLOWED", priority=99),
        ])
        explanation = engine.explain("EDIT_MACHINE", TECH)

        assert [r.name for r in explanation.matching_rules] == ["A", "B", "C"]
        assert explanation.decision.matched_rule.name == "A"


class TestRuleScoping:
    """Every populated scope dimension must match; empty means any."""

    def test_role_scope(self):
        rule = Rule.build("Managers", "EDIT_MACHINE", "ALLOWED", roles=["role-manager"])
        assert rule_matches(rule, MANAGER, EvaluationContext())
        assert not rule_matches(rule, TECH, EvaluationContext())

    def test_user_scope(self):
        rule = Rule.build("Only tech-1", "EDIT_MACHINE", "ALLOWED", users=["tech-1"])
        assert rule_matches(rule, TECH, EvaluationContext())
        assert not rule_matches(rule, MANAGER, EvaluationContext())

    def test_department_scope_prefers_context(self):
        rule = Rule.build("QA only", "EDIT_MACHINE", "ALLOWED", departments=["dept-qa"])

        assert rule_matches(rule, TECH, EvaluationContext(department_id="dept-qa"))
        assert not rule_matches(rule, TECH, EvaluationContext())
        qa_user = Principal.of("qc-1", ["role-qc"], "dept-qa")
        assert rule_matches(rule, qa_user, EvaluationContext())

    def test_category_scope_requires_category(self):
        rule = Rule.build("Heavy", "EDIT_MACHINE", "ALLOWED", categories=["cat-heavy"])

        assert rule_matches(rule, TECH, EvaluationContext(category_id="cat-heavy"))
        assert not rule_matches(rule, TECH, EvaluationContext(category_id="cat-light"))
        assert not rule_matches(rule, TECH, EvaluationContext())

    def test_max_value_requires_value_within_limit(self):
        rule = Rule.build("Up to 50k", "APPROVE_MACHINE", "ALLOWED", max_value=50_000)

        assert rule_matches(rule, MANAGER, EvaluationContext(value=50_000))
        assert rule_matches(rule, MANAGER, EvaluationContext(value=10))
        assert not rule_matches(rule, MANAGER, EvaluationContext(value=50_000.01))
        assert not rule_matches(rule, MANAGER, EvaluationContext())

    def test_dimensions_combine_with_and(self):
        rule = Rule.build(
            "Dispatch managers",
            "EDIT_MACHINE",
            "ALLOWED",
            roles=["role-manager"],
            departments=["dept-dispatch"],
        )
        assert rule_matches(rule, MANAGER, EvaluationContext())
        assert not rule_matches(rule, MANAGER, EvaluationContext(department_id="dept-qa"))
        assert not rule_matches(rule, TECH, EvaluationContext())


class TestApproverRoles:
    """Approver roles come from department map, rule, or default - in that order."""

    def test_department_approvers(self):
        engine = _engine(
            [Rule.build("Dept", "EDIT_MACHINE", "REQUIRES_APPROVAL", use_department_approvers=True,
                        approver_roles=["role-qc"])],
            default_approver_roles=["role-admin"],
            department_approver_roles={"dept-dispatch": ["role-admin", "role-manager"]},
        )
        decision = engine.evaluate("EDIT_MACHINE", TECH)
        assert decision.approver_roles == frozenset({"role-admin", "role-manager"})

    def test_department_without_map_uses_default(self):
        engine = _engine(
            [Rule.build("Dept", "EDIT_MACHINE", "REQUIRES_APPROVAL", use_department_approvers=True)],
            default_approver_roles=["role-admin"],
            department_approver_roles={"dept-qa": ["role-qc"]},
        )
        assert engine.evaluate("EDIT_MACHINE", TECH).approver_roles == frozenset({"role-admin"})

    def test_rule_without_approver_roles_uses_default(self):
        engine = _engine(
            [Rule.build("Plain", "EDIT_MACHINE", "REQUIRES_APPROVAL")],
            default_approver_roles=["role-admin"],
        )
        assert engine.evaluate("EDIT_MACHINE", TECH).approver_roles == frozenset({"role-admin"})

    def test_requires_approval_with_no_roles_anywhere_is_still_returned(self):
        engine = _engine([Rule.build("Plain", "EDIT_MACHINE", "REQUIRES_APPROVAL")])
        decision = engine.evaluate("EDIT_MACHINE", TECH)

        assert decision.requires_approval
        assert decision.approver_roles == frozenset()

    def test_allowed_decisions_carry_no_approver_roles(self):
        engine = _engine(
            [Rule.build("Allow", "EDIT_MACHINE", "ALLOWED", approver_roles=["role-admin"])],
            default_approver_roles=["role-admin"],
        )
        assert engine.evaluate("EDIT_MACHINE", TECH).approver_roles == frozenset()


class TestRoleBypass:
    """Superuser and read-only roles."""

    def test_superuser_allowed_for_any_action(self):
        engine = _engine(superuser_roles=["role-admin"])
        assert engine.evaluate("DELETE_MACHINE", ADMIN).allowed
        assert engine.evaluate("SOMETHING_NEW", ADMIN).allowed

    def test_read_only_role_allowed_only_for_view(self):
        engine = _engine(read_only_roles=["role-sub-admin"])
        assert engine.evaluate(ActionType.VIEW_MACHINE, VIEWER).allowed
        assert engine.evaluate(ActionType.VIEW_QC_APPROVAL, VIEWER).allowed
        assert engine.evaluate(ActionType.EDIT_MACHINE, VIEWER).denied

    def test_user_deny_override_beats_superuser(self):
        engine = _engine(
            overrides=[Override.build("user-deny", "DELETE_MACHINE", "admin-1")],
            superuser_roles=["role-admin"],
        )
        assert engine.evaluate("DELETE_MACHINE", ADMIN).denied

    def test_no_bypass_unless_configured(self):
        assert _engine().evaluate("DELETE_MACHINE", ADMIN).denied

    def test_others_stay_fail_closed_when_superusers_configured(self):
        engine = _engine(superuser_roles=["role-admin"])

        decision = engine.evaluate("SOMETHING_NEW", MANAGER)

        assert decision.denied
        assert decision.reason == "No matching permission rule found"


class TestPolicyVersion:
    """Decisions record the snapshot they were computed against."""

    def test_version_is_stable_for_same_content(self, policy_store):
        again = StaticPolicyStore(rules=policy_store.load_rules(), default_approver_roles=["role-admin"])
        assert again.version == policy_store.version

    def test_version_changes_with_rules(self, policy_store):
        changed = StaticPolicyStore(
            rules=policy_store.load_rules()[:1],
            default_approver_roles=["role-admin"],
        )
        assert changed.version != policy_store.version

    def test_decision_carries_version(self, policy_engine, policy_store):
        decision = policy_engine.evaluate("CREATE_MACHINE", MANAGER)
        assert decision.policy_version == policy_store.version
        assert decision.to_dict()["policy_version"] == policy_store.version
