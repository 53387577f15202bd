"""
Authentication routes.

- POST /api/auth/callback exchanges the provider authorization code for a
  session, provisions the organization on first sign-in and sets the
  session cookie. It never fails because provisioning failed.
- GET /api/auth/authorization returns the caller's resolved context.

SECURITY:
- organization_id in responses is resolved server-side, never echoed
  from client input
- returnTo from the OAuth state is only honoured for relative paths
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from starlette.requests import Request

from orgscope.auth.claims import parse_registration_intent
from orgscope.auth.dependencies import (
    get_provider_client,
    get_authorization_context,
    resolve_authorization,
)
from orgscope.auth.errors import ProviderUnavailable, Unauthenticated
from orgscope.auth.verifier import SESSION_COOKIE_NAME
from orgscope.database.session import get_db_session
from orgscope.integrations.workos.client import WorkOSClient
from orgscope.integrations.workos.exceptions import WorkOSError
from orgscope.platform.authorization_context import AuthorizationContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


# --- Request/Response Models ---


class AuthorizationResponse(BaseModel):
    """The caller's resolved authorization."""
    identity_id: str
    organization_id: Optional[str] = None
    role: Optional[str] = None
    organization_type: Optional[str] = None
    is_new_organization: bool = False
    degraded: bool = False
    landing_route: str

    @classmethod
    def from_context(cls, context: AuthorizationContext) -> "AuthorizationResponse":
        return cls(
            identity_id=context.identity_id,
            organization_id=context.organization_id,
            role=context.role.value if context.role else None,
            organization_type=context.organization_type,
            is_new_organization=context.is_new_organization,
            degraded=not context.has_organization,
            landing_route=context.landing_route,
        )


class CallbackRequest(BaseModel):
    code: str = Field(..., min_length=1)
    state: Optional[str] = None


# --- Routes ---


@router.get("/authorization", response_model=AuthorizationResponse)
def get_authorization(
    context: AuthorizationContext = Depends(get_authorization_context),
) -> AuthorizationResponse:
    return AuthorizationResponse.from_context(context)


@router.post("/callback", response_model=AuthorizationResponse)
def auth_callback(
    body: CallbackRequest,
    request: Request,
    response: Response,
    session: Session = Depends(get_db_session),
    workos: WorkOSClient = Depends(get_provider_client),
) -> AuthorizationResponse:
    """
    Complete sign-in.

    The registration intent travels in the OAuth state as JSON, e.g.
    {"expert": true, "returnTo": "/experts/apply"}.
    """
    try:
        authentication = workos.authenticate_with_code(body.code)
    except WorkOSError as e:
        if e.transient:
            raise ProviderUnavailable(f"Sign-in unavailable: {e.message}")
        logger.warning("Authorization code rejected", extra={"error_code": e.code})
        raise Unauthenticated("Invalid authorization code", error_code="invalid_code")

    intent = parse_registration_intent(body.state)
    context = resolve_authorization(
        request,
        session,
        workos_client=workos,
        intent=intent,
        token=authentication.access_token,
        establish_session=True,
    )

    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=authentication.access_token,
        httponly=True,
        secure=request.url.scheme == "https",
        samesite="lax",
        path="/",
    )
    return AuthorizationResponse.from_context(context)
