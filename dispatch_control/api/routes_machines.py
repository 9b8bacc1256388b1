# dispatch_control/api/routes_machines.py
"""
Machine API routes.

Policy-gated submission of machines and QC entries.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..logging import get_api_logger
from ..policy.models import Principal
from ..workflows import MachineSubmissionService
from .deps import get_principal, get_submission_service

logger = get_api_logger()

router = APIRouter(prefix="/machines", tags=["machines"])


class CreateMachineRequest(BaseModel):
    """Request to create a machine."""
    name: str
    category_id: Optional[str] = None
    department_id: Optional[str] = None  # Defaults to the caller's department
    value: Optional[float] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)
    notes: Optional[str] = None


class CreateQCEntryRequest(BaseModel):
    """Request to record a QC entry against a machine."""
    qc_notes: Optional[str] = None
    quality_score: Optional[float] = None
    findings: Dict[str, Any] = Field(default_factory=dict)
    notes: Optional[str] = None


@router.post("", status_code=201)
async def create_machine(
    request: CreateMachineRequest,
    principal: Principal = Depends(get_principal),
    service: MachineSubmissionService = Depends(get_submission_service),
) -> Dict[str, Any]:
    """
    Create a machine.

    Returns the stored machine, the policy decision and, when approval is
    required, the opened approval request.
    """
    result = service.submit_machine(
        principal,
        request.name,
        category_id=request.category_id,
        department_id=request.department_id,
        value=request.value,
        attributes=request.attributes,
        notes=request.notes,
    )
    return result.to_dict()


@router.post("/{machine_id}/qc", status_code=201)
async def create_qc_entry(
    machine_id: str,
    request: CreateQCEntryRequest,
    principal: Principal = Depends(get_principal),
    service: MachineSubmissionService = Depends(get_submission_service),
) -> Dict[str, Any]:
    """Record a QC entry. The machine must already be approved."""
    result = service.submit_qc_entry(
        principal,
        machine_id,
        qc_notes=request.qc_notes,
        quality_score=request.quality_score,
        findings=request.findings,
        notes=request.notes,
    )
    return result.to_dict()
