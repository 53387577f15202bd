"""
Booking guest registration.

POST /api/bookings/guests is called by the booking flow before the meeting
row is written. It is public: the guest has no session yet.

A 502 with code GUEST_USER_CREATION_ERROR means the booking must abort.
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from starlette.requests import Request

from orgscope.auth.dependencies import get_provider_client
from orgscope.database.session import get_db_session
from orgscope.integrations.workos.client import WorkOSClient
from orgscope.services.guest_registration import GuestRegistrationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bookings", tags=["bookings"])


class GuestRegistrationRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    name: Optional[str] = Field(None, max_length=255)
    event_id: Optional[str] = Field(None, description="Booked event, recorded in the audit trail")


class GuestRegistrationResponse(BaseModel):
    identity_id: str
    organization_id: str
    external_id: Optional[str] = None
    is_new: bool


@router.post(
    "/guests",
    response_model=GuestRegistrationResponse,
    status_code=status.HTTP_200_OK,
)
def register_guest(
    body: GuestRegistrationRequest,
    request: Request,
    session: Session = Depends(get_db_session),
    workos: WorkOSClient = Depends(get_provider_client),
) -> GuestRegistrationResponse:
    correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
    service = GuestRegistrationService(session, workos, correlation_id=correlation_id)
    metadata = {"event_id": body.event_id} if body.event_id else None

    guest = service.find_or_create_guest(body.email, body.name, metadata=metadata)

    return GuestRegistrationResponse(
        identity_id=guest.identity.id,
        organization_id=guest.organization.id,
        external_id=guest.identity.external_id,
        is_new=guest.is_new,
    )
