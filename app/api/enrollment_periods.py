"""Enrollment period REST API: thin wrappers around EnrollmentPeriodService."""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from app.api.deps import get_db, get_tenant_context
from app.errors import unwrap
from app.models.enrollment import EnrollmentPeriodStatus
from app.schemas.enrollment import (
    EnrollmentPeriodCreate,
    EnrollmentPeriodRead,
    EnrollmentPeriodUpdate,
)
from app.services.context import TenantContext
from app.services.enrollment_period import EnrollmentPeriodService

router = APIRouter(prefix="/enrollment-periods", tags=["enrollment-periods"])


def _read(svc: EnrollmentPeriodService, ctx: TenantContext, period_id: UUID) -> EnrollmentPeriodRead:
    # Mutations return the bare row; re-read to include application counts.
    return unwrap(svc.get_period(ctx, period_id))


@router.get("", response_model=list[EnrollmentPeriodRead])
def list_periods(
    year: int | None = None,
    status_filter: EnrollmentPeriodStatus | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> list[EnrollmentPeriodRead]:
    return unwrap(EnrollmentPeriodService(db).list_periods(ctx, year=year, status=status_filter))


@router.get("/{period_id}", response_model=EnrollmentPeriodRead)
def get_period(
    period_id: UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> EnrollmentPeriodRead:
    return unwrap(EnrollmentPeriodService(db).get_period(ctx, period_id))


@router.post("", response_model=EnrollmentPeriodRead, status_code=status.HTTP_201_CREATED)
def create_period(
    payload: EnrollmentPeriodCreate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> EnrollmentPeriodRead:
    svc = EnrollmentPeriodService(db)
    period = unwrap(svc.create_period(ctx, payload))
    return _read(svc, ctx, period.id)


@router.patch("/{period_id}", response_model=EnrollmentPeriodRead)
def update_period(
    period_id: UUID,
    payload: EnrollmentPeriodUpdate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> EnrollmentPeriodRead:
    svc = EnrollmentPeriodService(db)
    unwrap(svc.update_period(ctx, period_id, payload.model_dump(exclude_unset=True)))
    return _read(svc, ctx, period_id)


@router.post("/{period_id}/open", response_model=EnrollmentPeriodRead)
def open_period(
    period_id: UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> EnrollmentPeriodRead:
    svc = EnrollmentPeriodService(db)
    unwrap(svc.open_period(ctx, period_id))
    return _read(svc, ctx, period_id)


@router.post("/{period_id}/close", response_model=EnrollmentPeriodRead)
def close_period(
    period_id: UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> EnrollmentPeriodRead:
    svc = EnrollmentPeriodService(db)
    unwrap(svc.close_period(ctx, period_id))
    return _read(svc, ctx, period_id)


@router.post("/{period_id}/archive", response_model=EnrollmentPeriodRead)
def archive_period(
    period_id: UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> EnrollmentPeriodRead:
    svc = EnrollmentPeriodService(db)
    unwrap(svc.archive_period(ctx, period_id))
    return _read(svc, ctx, period_id)


@router.delete("/{period_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_period(
    period_id: UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> Response:
    unwrap(EnrollmentPeriodService(db).delete_period(ctx, period_id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)
