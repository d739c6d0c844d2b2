"""Unauthenticated admissions endpoints for families.

Tenants are addressed by id in the path; every route here is rate limited
by :class:`app.middleware.rate_limit.RateLimitMiddleware`.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import EmailStr
from sqlalchemy.orm import Session

from app.api.deps import get_db
from app.errors import unwrap
from app.schemas.enrollment import (
    ApplicationStatusSummary,
    ApplicationSubmit,
    ApplicationSubmitted,
    PublicEnrollmentPeriod,
)
from app.schemas.invitation import InvitationPreview
from app.services.enrollment_application import EnrollmentApplicationService
from app.services.enrollment_period import EnrollmentPeriodService
from app.services.invitation import InvitationService

router = APIRouter(prefix="/public", tags=["public"])


@router.get(
    "/tenants/{tenant_id}/enrollment-periods",
    response_model=list[PublicEnrollmentPeriod],
)
def list_open_periods(
    tenant_id: UUID, db: Session = Depends(get_db)
) -> list[PublicEnrollmentPeriod]:
    return unwrap(EnrollmentPeriodService(db).list_open_periods(tenant_id))


@router.post(
    "/tenants/{tenant_id}/applications",
    response_model=ApplicationSubmitted,
    status_code=status.HTTP_201_CREATED,
)
def submit_application(
    tenant_id: UUID,
    payload: ApplicationSubmit,
    db: Session = Depends(get_db),
) -> ApplicationSubmitted:
    application = unwrap(EnrollmentApplicationService(db).submit_application(tenant_id, payload))
    return ApplicationSubmitted(
        id=application.id,
        status=application.status,
        confirmation_message=application.period.confirmation_message,
    )


@router.get(
    "/tenants/{tenant_id}/applications/status",
    response_model=list[ApplicationStatusSummary],
)
def application_status(
    tenant_id: UUID,
    email: EmailStr = Query(...),
    db: Session = Depends(get_db),
) -> list[ApplicationStatusSummary]:
    return unwrap(EnrollmentApplicationService(db).get_status_by_email(tenant_id, email))


@router.get("/invitations/{token}", response_model=InvitationPreview)
def validate_invitation(token: str, db: Session = Depends(get_db)) -> InvitationPreview:
    return unwrap(InvitationService(db).validate_invitation_token(token))
