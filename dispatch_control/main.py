# dispatch_control/main.py
"""
Dispatch Approval Control Plane - Main Application

Policy-gated machine and QC submission with multi-stage human approval,
effect cascades and notifications.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from . import __version__
from .api import approvals_router, machines_router, notifications_router, policy_router
from .api.deps import shutdown_relay
from .db.engine import check_connection, init_db
from .errors import ControlPlaneError, ErrorCode, HTTP_STATUS_BY_CATEGORY
from .logging import get_api_logger
from .settings import settings

logger = get_api_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Runs startup checks and cleanup on shutdown.
    """
    logger.info("startup", version=__version__, policy_source=settings.policy_source)

    if not check_connection():
        logger.warning("database_unavailable")
    else:
        init_db()
        logger.info("database_ready")

    yield

    shutdown_relay()
    logger.info("shutdown")


# Create FastAPI app
app = FastAPI(
    title="Dispatch Approval Control Plane",
    description="""
    Machine approval workflows for dispatch and QC.

    Key features:
    - Priority-ordered permission rules with per-user overrides
    - Approver resolution from role and department configuration
    - Approval lifecycle with one pending request per subject and action
    - Atomic decision + entity cascade, best-effort notifications
    """,
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID", "X-User-Id", "X-Role-Ids", "X-Department-Id"],
)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add basic security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        response.headers["Server"] = "Dispatch Approval Control Plane"
        return response


app.add_middleware(SecurityHeadersMiddleware)


@app.exception_handler(ControlPlaneError)
async def control_plane_error_handler(request: Request, exc: ControlPlaneError) -> JSONResponse:
    """Translate typed errors into {"error": {...}} responses."""
    status_code = HTTP_STATUS_BY_CATEGORY.get(exc.category, 500)
    if exc.category == ErrorCode.INTERNAL:
        logger.error("request_failed", path=request.url.path, error=exc.to_dict())
    else:
        logger.info("request_rejected", path=request.url.path, category=exc.category.value, code=exc.code)
    return JSONResponse(status_code=status_code, content=jsonable_encoder({"error": exc.to_dict()}))


# Include API routers
app.include_router(policy_router)
app.include_router(machines_router)
app.include_router(approvals_router)
app.include_router(notifications_router)


# Health check endpoints
@app.get("/health")
async def health_check():
    """Basic health check."""
    return {"status": "ok", "service": "dispatch-approval-control-plane"}


@app.get("/health/db")
async def db_health_check():
    """Database health check."""
    if check_connection():
        return {"status": "ok", "database": "connected"}
    raise HTTPException(status_code=503, detail="Database connection failed")


def run():
    """Run the server (entry point for CLI)."""
    import uvicorn
    uvicorn.run(
        "dispatch_control.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


if __name__ == "__main__":
    run()
