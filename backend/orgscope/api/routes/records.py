"""
Clinical record routes.

Every query runs through get_authorized_session, so rows outside the
caller's organization are invisible: a record id from another organization
is a plain 404.

Reads and writes are audited with a blocking policy. If the audit row
cannot be written the request fails with 503 and no data is returned.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from starlette.requests import Request

from orgscope.auth.dependencies import get_authorization_context, get_authorized_session
from orgscope.auth.errors import AuthorizationDenied
from orgscope.constants.permissions import Permission
from orgscope.models.base import generate_uuid
from orgscope.models.resources import ClinicalRecord
from orgscope.platform.audit import (
    AuditAction,
    AuditEvent,
    AuditOutcome,
    AuditTrailWriter,
    extract_client_info,
)
from orgscope.platform.authorization_context import AuthorizationContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/records", tags=["records"])


class RecordResponse(BaseModel):
    id: str
    organization_id: str
    title: str
    body: Optional[str] = None
    subject_identity_id: Optional[str] = None


class RecordCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    body: Optional[str] = None
    subject_identity_id: Optional[str] = None


def _to_response(record: ClinicalRecord) -> RecordResponse:
    return RecordResponse(
        id=record.id,
        organization_id=record.organization_id,
        title=record.title,
        body=record.body,
        subject_identity_id=record.subject_identity_id,
    )


def _event(request: Request, context: AuthorizationContext, action: AuditAction, **kwargs) -> AuditEvent:
    ip_address, user_agent = extract_client_info(request)
    return AuditEvent(
        organization_id=context.organization_id,
        action=action,
        actor_id=context.identity_id,
        resource_type="clinical_record",
        ip_address=ip_address,
        user_agent=user_agent,
        **kwargs,
    )


def _require(
    request: Request,
    db: Session,
    context: AuthorizationContext,
    permission: Permission,
) -> None:
    if context.has_permission(permission):
        return
    if context.has_organization:
        AuditTrailWriter(db).record(_event(
            request,
            context,
            AuditAction.SECURITY_ACCESS_DENIED,
            outcome=AuditOutcome.DENIED,
            metadata={"resource_type": "clinical_record", "permission": permission.value},
        ))
        # The denial row must survive the rollback of the request's unit of work
        db.commit()
    raise AuthorizationDenied()


@router.get("", response_model=List[RecordResponse])
def list_records(
    request: Request,
    context: AuthorizationContext = Depends(get_authorization_context),
    db: Session = Depends(get_authorized_session),
) -> List[RecordResponse]:
    _require(request, db, context, Permission.RECORDS_VIEW)
    records = db.query(ClinicalRecord).order_by(ClinicalRecord.created_at.desc()).all()
    AuditTrailWriter(db).record(_event(
        request,
        context,
        AuditAction.RECORD_VIEWED,
        metadata={"record_count": len(records)},
    ))
    return [_to_response(r) for r in records]


@router.get("/{record_id}", response_model=RecordResponse)
def get_record(
    record_id: str,
    request: Request,
    context: AuthorizationContext = Depends(get_authorization_context),
    db: Session = Depends(get_authorized_session),
) -> RecordResponse:
    _require(request, db, context, Permission.RECORDS_VIEW)
    writer = AuditTrailWriter(db)

    def load() -> ClinicalRecord:
        record = db.query(ClinicalRecord).filter(ClinicalRecord.id == record_id).first()
        if record is None:
            raise AuthorizationDenied()
        return record

    record = writer.audited_access(
        _event(request, context, AuditAction.RECORD_VIEWED, resource_id=record_id),
        load,
    )
    return _to_response(record)


@router.post("", response_model=RecordResponse, status_code=status.HTTP_201_CREATED)
def create_record(
    body: RecordCreateRequest,
    request: Request,
    context: AuthorizationContext = Depends(get_authorization_context),
    db: Session = Depends(get_authorized_session),
) -> RecordResponse:
    _require(request, db, context, Permission.RECORDS_WRITE)
    record = ClinicalRecord(
        id=generate_uuid(),
        organization_id=context.organization_id,
        title=body.title,
        body=body.body,
        subject_identity_id=body.subject_identity_id,
        created_by=context.identity_id,
    )

    def persist() -> ClinicalRecord:
        db.add(record)
        db.flush()
        return record

    writer = AuditTrailWriter(db)
    writer.audited_access(
        _event(request, context, AuditAction.RECORD_CREATED, resource_id=record.id),
        persist,
    )
    logger.info(
        "Clinical record created",
        extra={"record_id": record.id, "organization_id": context.organization_id},
    )
    return _to_response(record)
