"""Enrollment application review API: thin wrappers around the services."""

from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import get_db, get_tenant_context
from app.errors import unwrap
from app.models.enrollment import ApplicationStatus
from app.schemas.common import ListResponse
from app.schemas.enrollment import (
    ApplicationDetail,
    ApplicationRead,
    ApprovalResult,
    ApprovePayload,
    RejectPayload,
    RequestChangesPayload,
)
from app.services.context import TenantContext
from app.services.enrollment_application import EnrollmentApplicationService
from app.services.invitation import enqueue_invitation_emails

router = APIRouter(prefix="/enrollment-applications", tags=["enrollment-applications"])


@router.get("", response_model=ListResponse[ApplicationRead])
def list_applications(
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=25, ge=1, le=100),
    status_filter: ApplicationStatus | None = Query(default=None, alias="status"),
    period_id: UUID | None = None,
    search: str | None = Query(default=None, max_length=100),
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> dict:
    return unwrap(
        EnrollmentApplicationService(db).list_applications(
            ctx,
            page=page,
            per_page=per_page,
            status=status_filter,
            period_id=period_id,
            search=search,
        )
    )


@router.get("/{application_id}", response_model=ApplicationDetail)
def get_application(
    application_id: UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> ApplicationDetail:
    return unwrap(EnrollmentApplicationService(db).get_application_details(ctx, application_id))


@router.post("/{application_id}/under-review", response_model=ApplicationRead)
def mark_under_review(
    application_id: UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> ApplicationRead:
    return unwrap(EnrollmentApplicationService(db).mark_under_review(ctx, application_id))


@router.post("/{application_id}/request-changes", response_model=ApplicationRead)
def request_changes(
    application_id: UUID,
    payload: RequestChangesPayload,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> ApplicationRead:
    return unwrap(
        EnrollmentApplicationService(db).request_changes(ctx, application_id, payload.notes)
    )


@router.post("/{application_id}/reject", response_model=ApplicationRead)
def reject_application(
    application_id: UUID,
    payload: RejectPayload,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> ApplicationRead:
    return unwrap(
        EnrollmentApplicationService(db).reject_application(ctx, application_id, payload.reason)
    )


@router.post("/{application_id}/withdraw", response_model=ApplicationRead)
def withdraw_application(
    application_id: UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> ApplicationRead:
    return unwrap(EnrollmentApplicationService(db).withdraw_application(ctx, application_id))


@router.post("/{application_id}/approve", response_model=ApprovalResult)
def approve_application(
    application_id: UUID,
    payload: ApprovePayload,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> ApprovalResult:
    outcome = unwrap(
        EnrollmentApplicationService(db).approve_application(ctx, application_id, payload)
    )
    enqueue_invitation_emails(outcome["issued_invitations"], ctx.tenant_id)
    return ApprovalResult(
        application=ApplicationRead.model_validate(outcome["application"]),
        student_id=outcome["student_id"],
        invitation_count=outcome["invitation_count"],
        guardian_count=outcome["guardian_count"],
    )
