"""
FastAPI application entry point for orgscope.

Every data route resolves an AuthorizationContext first and runs its queries
inside with_authorization, so organization isolation is enforced by the
database and by the ORM guard.
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from orgscope.api.routes import auth, bookings, health, records
from orgscope.auth.errors import (
    AuthorizationDenied,
    GuestUserCreationError,
    OrganizationCreationFailed,
    ProviderUnavailable,
    Unauthenticated,
)
from orgscope.config.settings import get_settings
from orgscope.integrations.workos.client import reset_workos_client
from orgscope.platform.audit import AuditLogImmutableError, AuditWriteFailed

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting orgscope API")

    settings = get_settings()
    missing = [
        name for name, value in (
            ("WORKOS_API_KEY", settings.workos_api_key),
            ("WORKOS_CLIENT_ID", settings.workos_client_id),
            ("DATABASE_URL", settings.database_url),
        )
        if not value
    ]
    app.state.auth_configured = not missing
    if missing:
        logger.warning(
            "Authentication not fully configured; protected endpoints will return 503",
            extra={"missing": missing},
        )
    else:
        logger.info("Authentication configured", extra={"jwks_url": settings.jwks_url})

    yield

    logger.info("Shutting down orgscope API")
    reset_workos_client()


def _error(status_code: int, error_code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error_code, "message": message},
    )


def create_app() -> FastAPI:
    app = FastAPI(
        title="orgscope API",
        description="Organization-scoped authorization with database-enforced isolation",
        version="1.0.0",
        lifespan=lifespan,
    )

    cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include health route (bypasses authentication)
    app.include_router(health.router)

    # Sign-in callback and context lookup
    app.include_router(auth.router)

    # Guest registration at booking time (public)
    app.include_router(bookings.router)

    # Regulated records (requires authentication)
    app.include_router(records.router)

    @app.exception_handler(Unauthenticated)
    async def unauthenticated_handler(request: Request, exc: Unauthenticated):
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"error": exc.error_code, "message": exc.message},
            headers={"WWW-Authenticate": "Bearer"},
        )

    @app.exception_handler(ProviderUnavailable)
    async def provider_unavailable_handler(request: Request, exc: ProviderUnavailable):
        logger.error(
            "Identity provider unavailable",
            extra={"path": request.url.path, "error_code": exc.error_code},
        )
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, exc.error_code, exc.message)

    @app.exception_handler(AuthorizationDenied)
    async def authorization_denied_handler(request: Request, exc: AuthorizationDenied):
        # Same body as a missing resource
        return _error(status.HTTP_404_NOT_FOUND, "not_found", "Not found")

    @app.exception_handler(GuestUserCreationError)
    async def guest_user_creation_handler(request: Request, exc: GuestUserCreationError):
        return _error(status.HTTP_502_BAD_GATEWAY, exc.error_code, exc.message)

    @app.exception_handler(OrganizationCreationFailed)
    async def organization_creation_handler(request: Request, exc: OrganizationCreationFailed):
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, exc.error_code, exc.message)

    @app.exception_handler(AuditWriteFailed)
    async def audit_write_failed_handler(request: Request, exc: AuditWriteFailed):
        logger.error(
            "Request blocked by failed audit write",
            extra={"path": request.url.path, "action": exc.action},
        )
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, exc.error_code, "Audit trail unavailable")

    @app.exception_handler(AuditLogImmutableError)
    async def audit_immutable_handler(request: Request, exc: AuditLogImmutableError):
        logger.error("Attempted audit log mutation", extra={"path": request.url.path})
        return _error(status.HTTP_409_CONFLICT, exc.error_code, exc.message)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle unhandled exceptions with proper logging."""
        context = getattr(request.state, "authorization_context", None)
        logger.error(
            "Unhandled exception",
            extra={
                "organization_id": context.organization_id if context else "unknown",
                "error": str(exc),
                "error_type": type(exc).__name__,
                "path": request.url.path,
            },
            exc_info=True,
        )
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error", "An internal error occurred")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "orgscope.main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development"
    )
