# Policy module - authorization rules and evaluation
from .models import (
    ActionType,
    Permission,
    OverrideType,
    Principal,
    EvaluationContext,
    Rule,
    Override,
    Decision,
)
from .store import StaticPolicyStore, SqlPolicyStore
from .engine import PolicyEngine, evaluate_policy
from .builtin_policies import DEFAULT_POLICY, load_builtin_policy, resolve_policy_document

__all__ = [
    "ActionType",
    "Permission",
    "OverrideType",
    "Principal",
    "EvaluationContext",
    "Rule",
    "Override",
    "Decision",
    "StaticPolicyStore",
    "SqlPolicyStore",
    "PolicyEngine",
    "evaluate_policy",
    "DEFAULT_POLICY",
    "load_builtin_policy",
    "resolve_policy_document",
]
