# dispatch_control/errors.py
"""
Typed errors for the approval control plane.

Every failure raised by the core carries:
- category: one of the ErrorCode taxonomy values (what kind of failure)
- code: a specific machine-readable code (which failure)
- details: structured context for logs and API responses

Controllers catch ControlPlaneError and translate `category` into a
transport status; nothing outside the core should parse messages.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Error taxonomy shared by every core operation."""
    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    FORBIDDEN = "FORBIDDEN"
    PRECONDITION_FAILED = "PRECONDITION_FAILED"
    NO_APPROVERS_AVAILABLE = "NO_APPROVERS_AVAILABLE"
    INTERNAL = "INTERNAL"


class ControlPlaneError(Exception):
    """Base exception for all core errors."""

    category: ErrorCode = ErrorCode.INTERNAL
    code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API responses and structured logs."""
        return {
            "category": self.category.value,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(ControlPlaneError):
    """Raised when input has the wrong shape or is missing required fields."""
    category = ErrorCode.VALIDATION
    code = "INVALID_INPUT"


class NotFoundError(ControlPlaneError):
    """Raised when a subject, request or directory entry does not exist."""
    category = ErrorCode.NOT_FOUND
    code = "NOT_FOUND"


class ConflictError(ControlPlaneError):
    """Raised when the operation collides with current state."""
    category = ErrorCode.CONFLICT
    code = "CONFLICT"


class ForbiddenError(ControlPlaneError):
    """Raised when the actor is not allowed to perform the operation."""
    category = ErrorCode.FORBIDDEN
    code = "NOT_AUTHORIZED"


class PreconditionFailedError(ControlPlaneError):
    """Raised when a subject is not in the upstream state an operation needs."""
    category = ErrorCode.PRECONDITION_FAILED
    code = "PRECONDITION_FAILED"


class NoApproversAvailableError(ControlPlaneError):
    """Raised when approver resolution yields nobody."""
    category = ErrorCode.NO_APPROVERS_AVAILABLE
    code = "NO_APPROVERS_AVAILABLE"


class InternalError(ControlPlaneError):
    """Raised when a collaborator fails."""
    category = ErrorCode.INTERNAL
    code = "INTERNAL_ERROR"


class CascadeError(InternalError):
    """
    Raised when the entity mutation triggered by a decision fails.

    The decision transaction is rolled back, so the request is still
    PENDING. `details` names the request and the mutation that was
    attempted so an operator can reconcile by hand if needed.
    """
    code = "CASCADE_FAILED"

    def __init__(
        self,
        request_id: str,
        step: str,
        entity_id: Optional[str],
        patch: Dict[str, Any],
        cause: Optional[BaseException] = None,
    ):
        self.request_id = request_id
        self.step = step
        super().__init__(
            f"Effect cascade step '{step}' failed for approval request {request_id}",
            details={
                "request_id": request_id,
                "step": step,
                "entity_id": entity_id,
                "intended_patch": patch,
                "cause": str(cause) if cause else None,
            },
        )


# Convenience mapping for transports
HTTP_STATUS_BY_CATEGORY: Dict[ErrorCode, int] = {
    ErrorCode.VALIDATION: 400,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.CONFLICT: 409,
    ErrorCode.PRECONDITION_FAILED: 412,
    ErrorCode.NO_APPROVERS_AVAILABLE: 422,
    ErrorCode.INTERNAL: 500,
}
