# dispatch_control/api/routes_policy.py
"""
Policy API routes.

Evaluation for the calling principal, and administration of permission
rules, overrides and approver-role assignments (superuser roles only).
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..db.engine import get_session
from ..logging import get_api_logger
from ..policy.admin import PermissionRuleService
from ..policy.engine import PolicyEngine
from ..policy.models import Principal
from .deps import get_policy_engine, get_principal, require_admin

logger = get_api_logger()

router = APIRouter(prefix="/policy", tags=["policy"])


class EvaluateRequest(BaseModel):
    """Check whether the caller may perform an action."""
    action: str
    context: Dict[str, Any] = Field(default_factory=dict)  # department_id, category_id, value


class EvaluateResponse(BaseModel):
    """Decision plus the rules that were considered."""
    decision: Dict[str, Any]
    matching_overrides: List[str]
    matching_rules: List[str]


class CreateRuleRequest(BaseModel):
    """New permission rule. Empty scope lists match anything."""
    name: str
    action: str
    permission: str
    description: Optional[str] = None
    role_ids: List[str] = Field(default_factory=list)
    user_ids: List[str] = Field(default_factory=list)
    department_ids: List[str] = Field(default_factory=list)
    category_ids: List[str] = Field(default_factory=list)
    max_value: Optional[float] = None
    use_department_approvers: bool = False
    approver_roles: List[str] = Field(default_factory=list)
    priority: int = 0


class UpdateRuleRequest(BaseModel):
    name: Optional[str] = None
    action: Optional[str] = None
    permission: Optional[str] = None
    description: Optional[str] = None
    role_ids: Optional[List[str]] = None
    user_ids: Optional[List[str]] = None
    department_ids: Optional[List[str]] = None
    category_ids: Optional[List[str]] = None
    max_value: Optional[float] = None
    use_department_approvers: Optional[bool] = None
    approver_roles: Optional[List[str]] = None
    priority: Optional[int] = None
    is_active: Optional[bool] = None


class CreateOverrideRequest(BaseModel):
    override_type: str  # user-allow or user-deny
    action: str
    user_id: str
    department_id: Optional[str] = None
    priority: int = 100
    name: Optional[str] = None


class ApproverRolesRequest(BaseModel):
    role_ids: List[str]
    department_id: Optional[str] = None  # None sets the default approver roles


@router.post("/evaluate", response_model=EvaluateResponse)
async def evaluate(
    request: EvaluateRequest,
    principal: Principal = Depends(get_principal),
    engine: PolicyEngine = Depends(get_policy_engine),
) -> EvaluateResponse:
    """Evaluate an action for the calling principal."""
    explanation = engine.explain(request.action, principal, request.context)
    return EvaluateResponse(
        decision=explanation.decision.to_dict(),
        matching_overrides=[o.name for o in explanation.matching_overrides],
        matching_rules=[r.name for r in explanation.matching_rules],
    )


@router.get("/rules")
async def list_rules(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    admin: Principal = Depends(require_admin),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    """List permission rules, highest priority first."""
    return PermissionRuleService(session).list_rules(page=page, limit=limit)


@router.post("/rules", status_code=201)
async def create_rule(
    request: CreateRuleRequest,
    admin: Principal = Depends(require_admin),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    """Create a permission rule."""
    fields = request.model_dump()
    rule = PermissionRuleService(session).create_rule(
        fields.pop("name"),
        fields.pop("action"),
        fields.pop("permission"),
        admin.user_id,
        **fields,
    )
    logger.info("api_rule_created", rule_id=rule["id"], user_id=admin.user_id)
    return rule


@router.get("/rules/{rule_id}")
async def get_rule(
    rule_id: str,
    admin: Principal = Depends(require_admin),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    return PermissionRuleService(session).get_rule(rule_id)


@router.patch("/rules/{rule_id}")
async def update_rule(
    rule_id: str,
    request: UpdateRuleRequest,
    admin: Principal = Depends(require_admin),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    """Partially update a rule. Only fields present in the body change."""
    return PermissionRuleService(session).update_rule(rule_id, request.model_dump(exclude_unset=True))


@router.delete("/rules/{rule_id}", status_code=204)
async def deactivate_rule(
    rule_id: str,
    admin: Principal = Depends(require_admin),
    session: Session = Depends(get_session),
) -> None:
    """Soft delete a rule."""
    PermissionRuleService(session).deactivate_rule(rule_id)


@router.post("/overrides", status_code=201)
async def create_override(
    request: CreateOverrideRequest,
    admin: Principal = Depends(require_admin),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    override_id = PermissionRuleService(session).add_override(
        request.override_type,
        request.action,
        request.user_id,
        department_id=request.department_id,
        priority=request.priority,
        name=request.name,
    )
    return {"override_id": override_id}


@router.put("/approver-roles")
async def set_approver_roles(
    request: ApproverRolesRequest,
    admin: Principal = Depends(require_admin),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    """Replace default or per-department approver roles."""
    PermissionRuleService(session).set_approver_roles(request.role_ids, request.department_id)
    return {"role_ids": request.role_ids, "department_id": request.department_id}
