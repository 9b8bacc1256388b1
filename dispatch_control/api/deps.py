# dispatch_control/api/deps.py
"""
FastAPI dependencies.

The principal comes from headers set by the upstream authenticating
gateway (X-User-Id, X-Role-Ids, X-Department-Id); this service trusts
them as-is.
"""

from typing import List, Optional

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from ..db.engine import SessionLocal, get_session
from ..errors import ForbiddenError
from ..governance.approvals import ApprovalManager
from ..notifications.publisher import NotificationPublisher
from ..notifications.webhooks import NotificationWebhookRelay
from ..policy.builtin_policies import DEFAULT_POLICY, resolve_policy_document
from ..policy.engine import PolicyEngine
from ..policy.models import ActionType, EvaluationContext, Principal
from ..policy.store import SqlPolicyStore, StaticPolicyStore
from ..settings import settings
from ..stores.directory import SqlDirectory
from ..workflows import MachineSubmissionService

_relay: Optional[NotificationWebhookRelay] = None


def get_principal(
    x_user_id: Optional[str] = Header(None),
    x_role_ids: Optional[str] = Header(None),
    x_department_id: Optional[str] = Header(None),
) -> Principal:
    """Build the calling principal from gateway headers."""
    if not x_user_id:
        raise ForbiddenError("Missing X-User-Id header", code="UNAUTHENTICATED")
    roles = [r.strip() for r in (x_role_ids or "").split(",") if r.strip()]
    return Principal.of(x_user_id, roles, x_department_id or None)


def get_directory(session: Session = Depends(get_session)) -> SqlDirectory:
    return SqlDirectory(session)


def _role_ids(directory: SqlDirectory, names: List[str]) -> List[str]:
    ids = []
    for name in names:
        role_id = directory.find_role_by_name(name)
        ids.append(role_id if role_id is not None else name)
    return ids


def get_policy_store(
    session: Session = Depends(get_session),
    directory: SqlDirectory = Depends(get_directory),
) -> StaticPolicyStore:
    """Policy snapshot for this request."""
    if settings.policy_source == "builtin":
        # Configured role names replace the document's own lists
        return resolve_policy_document(
            DEFAULT_POLICY,
            directory,
            superuser_roles=settings.superuser_roles or None,
            read_only_roles=settings.read_only_roles or None,
        )

    return SqlPolicyStore(
        session,
        superuser_roles=_role_ids(directory, settings.superuser_roles),
        read_only_roles=_role_ids(directory, settings.read_only_roles),
    ).snapshot()


def get_policy_engine(store: StaticPolicyStore = Depends(get_policy_store)) -> PolicyEngine:
    return PolicyEngine(store)


def get_notifier() -> NotificationPublisher:
    """Inbox publisher, relaying to the webhook when one is configured."""
    global _relay
    if settings.notification_webhook_url and _relay is None:
        _relay = NotificationWebhookRelay(
            settings.notification_webhook_url,
            timeout_seconds=settings.webhook_timeout_seconds,
        )
    return NotificationPublisher(SessionLocal, relay=_relay)


def shutdown_relay() -> None:
    global _relay
    if _relay is not None:
        _relay.close()
        _relay = None


def get_approval_manager(
    session: Session = Depends(get_session),
    engine: PolicyEngine = Depends(get_policy_engine),
    directory: SqlDirectory = Depends(get_directory),
    notifier: NotificationPublisher = Depends(get_notifier),
) -> ApprovalManager:
    return ApprovalManager(session, engine, directory, notifier)


def get_submission_service(
    session: Session = Depends(get_session),
    engine: PolicyEngine = Depends(get_policy_engine),
    manager: ApprovalManager = Depends(get_approval_manager),
) -> MachineSubmissionService:
    return MachineSubmissionService(session, engine, manager)


def require_admin(
    principal: Principal = Depends(get_principal),
    store: StaticPolicyStore = Depends(get_policy_store),
) -> Principal:
    """Policy administration is limited to superuser roles."""
    if not (principal.roles & store.superuser_roles()):
        raise ForbiddenError(
            "Policy administration requires a superuser role",
            code="ADMIN_REQUIRED",
            details={"user_id": principal.user_id},
        )
    return principal


def require_allowed(
    engine: PolicyEngine,
    principal: Principal,
    action: ActionType,
    context: Optional[EvaluationContext] = None,
) -> None:
    """Raise PERMISSION_DENIED unless the engine ALLOWS `action` outright."""
    decision = engine.evaluate(action, principal, context)
    if not decision.allowed:
        raise ForbiddenError(
            decision.reason or f"Not allowed to perform {action.value}",
            code="PERMISSION_DENIED",
            details={"action": action.value, "permission": decision.permission.value},
        )


def require_approval_viewer(
    principal: Principal = Depends(get_principal),
    engine: PolicyEngine = Depends(get_policy_engine),
) -> Principal:
    """Reads across requesters need VIEW_MACHINE."""
    require_allowed(engine, principal, ActionType.VIEW_MACHINE)
    return principal
