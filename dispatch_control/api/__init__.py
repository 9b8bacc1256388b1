"""API routes package."""

from .routes_policy import router as policy_router
from .routes_machines import router as machines_router
from .routes_approvals import router as approvals_router
from .routes_approvals import notifications_router

__all__ = [
    "policy_router",
    "machines_router",
    "approvals_router",
    "notifications_router",
]
