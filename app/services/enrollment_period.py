"""Enrollment period registry: admin-configured submission windows."""

import logging
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.enrollment import (
    ApplicationStatus,
    EnrollmentApplication,
    EnrollmentPeriod,
    EnrollmentPeriodStatus,
)
from app.schemas.enrollment import (
    EnrollmentPeriodCreate,
    EnrollmentPeriodRead,
    EnrollmentPeriodUpdate,
)
from app.services.common import is_unique_violation, make_aware
from app.services.context import MANAGE_ENROLLMENT_PERIODS, TenantContext, require_permission
from app.services.results import ActionError, ActionResult, ErrorCode, service_action

logger = logging.getLogger(__name__)

_EMPTY_STATS = {
    "total_applications": 0,
    "submitted_count": 0,
    "approved_count": 0,
    "rejected_count": 0,
}


class EnrollmentPeriodService:
    def __init__(self, db: Session) -> None:
        self.db = db

    # ── Helpers ──────────────────────────────────────────

    def _get(self, tenant_id: UUID, period_id: UUID) -> EnrollmentPeriod:
        stmt = select(EnrollmentPeriod).where(
            EnrollmentPeriod.id == period_id,
            EnrollmentPeriod.tenant_id == tenant_id,
            EnrollmentPeriod.deleted_at.is_(None),
        )
        period = self.db.scalar(stmt)
        if not period:
            raise ActionError(ErrorCode.NOT_FOUND, "Enrollment period not found")
        return period

    def _stats(self, period_ids: list[UUID]) -> dict[UUID, dict[str, int]]:
        if not period_ids:
            return {}
        status = EnrollmentApplication.status
        stmt = (
            select(
                EnrollmentApplication.enrollment_period_id,
                func.count(EnrollmentApplication.id),
                func.sum(case((status == ApplicationStatus.submitted, 1), else_=0)),
                func.sum(case((status == ApplicationStatus.approved, 1), else_=0)),
                func.sum(case((status == ApplicationStatus.rejected, 1), else_=0)),
            )
            .where(
                EnrollmentApplication.enrollment_period_id.in_(period_ids),
                EnrollmentApplication.deleted_at.is_(None),
            )
            .group_by(EnrollmentApplication.enrollment_period_id)
        )
        stats: dict[UUID, dict[str, int]] = {}
        for period_id, total, submitted, approved, rejected in self.db.execute(stmt):
            stats[period_id] = {
                "total_applications": int(total or 0),
                "submitted_count": int(submitted or 0),
                "approved_count": int(approved or 0),
                "rejected_count": int(rejected or 0),
            }
        return stats

    def _with_stats(
        self, period: EnrollmentPeriod, stats: dict[UUID, dict[str, int]]
    ) -> EnrollmentPeriodRead:
        read = EnrollmentPeriodRead.model_validate(period)
        return read.model_copy(update=stats.get(period.id, _EMPTY_STATS))

    def _name_taken(
        self, tenant_id: UUID, year: int, name: str, exclude_id: UUID | None = None
    ) -> bool:
        stmt = select(EnrollmentPeriod.id).where(
            EnrollmentPeriod.tenant_id == tenant_id,
            EnrollmentPeriod.year == year,
            EnrollmentPeriod.name == name,
        )
        if exclude_id is not None:
            stmt = stmt.where(EnrollmentPeriod.id != exclude_id)
        return self.db.scalar(stmt) is not None

    def _transition(
        self,
        ctx: TenantContext,
        period_id: UUID,
        allowed: EnrollmentPeriodStatus,
        target: EnrollmentPeriodStatus,
        verb: str,
    ) -> EnrollmentPeriod:
        require_permission(ctx, MANAGE_ENROLLMENT_PERIODS)
        stmt = (
            update(EnrollmentPeriod)
            .where(
                EnrollmentPeriod.id == period_id,
                EnrollmentPeriod.tenant_id == ctx.tenant_id,
                EnrollmentPeriod.deleted_at.is_(None),
                EnrollmentPeriod.status == allowed,
            )
            .values(status=target)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount == 0:
            current = self._get(ctx.tenant_id, period_id)
            raise ActionError(
                ErrorCode.INVALID_STATUS_TRANSITION,
                f'Cannot {verb} a period with status "{current.status.value}". '
                f"Only {allowed.value} periods can move to {target.value}.",
                {"current_status": current.status.value, "allowed": [allowed.value]},
            )
        self.db.commit()
        period = self._get(ctx.tenant_id, period_id)
        self.db.refresh(period)
        logger.info(
            "Enrollment period %s moved to %s",
            period_id,
            target.value,
            extra={"tenant_id": ctx.tenant_id, "actor_id": ctx.user_id},
        )
        return period

    # ── Queries ──────────────────────────────────────────

    @service_action("Failed to load enrollment periods")
    def list_periods(
        self,
        ctx: TenantContext,
        year: int | None = None,
        status: EnrollmentPeriodStatus | None = None,
    ) -> ActionResult[list[EnrollmentPeriodRead]]:
        require_permission(ctx, MANAGE_ENROLLMENT_PERIODS)
        stmt = select(EnrollmentPeriod).where(
            EnrollmentPeriod.tenant_id == ctx.tenant_id,
            EnrollmentPeriod.deleted_at.is_(None),
        )
        if year is not None:
            stmt = stmt.where(EnrollmentPeriod.year == year)
        if status is not None:
            stmt = stmt.where(EnrollmentPeriod.status == status)
        stmt = stmt.order_by(EnrollmentPeriod.year.desc(), EnrollmentPeriod.opens_at.desc())
        periods = list(self.db.scalars(stmt).all())
        stats = self._stats([p.id for p in periods])
        return ActionResult.success([self._with_stats(p, stats) for p in periods])

    @service_action("Failed to load enrollment period")
    def get_period(
        self, ctx: TenantContext, period_id: UUID
    ) -> ActionResult[EnrollmentPeriodRead]:
        require_permission(ctx, MANAGE_ENROLLMENT_PERIODS)
        period = self._get(ctx.tenant_id, period_id)
        return ActionResult.success(self._with_stats(period, self._stats([period.id])))

    @service_action("Failed to load open enrollment periods")
    def list_open_periods(
        self, tenant_id: UUID, now: datetime | None = None
    ) -> ActionResult[list[EnrollmentPeriod]]:
        """Periods visible to the public: open and inside their date window."""
        now = make_aware(now) or datetime.now(UTC)
        stmt = (
            select(EnrollmentPeriod)
            .where(
                EnrollmentPeriod.tenant_id == tenant_id,
                EnrollmentPeriod.deleted_at.is_(None),
                EnrollmentPeriod.status == EnrollmentPeriodStatus.open,
                EnrollmentPeriod.opens_at <= now,
                or_(EnrollmentPeriod.closes_at.is_(None), EnrollmentPeriod.closes_at >= now),
            )
            .order_by(EnrollmentPeriod.opens_at.asc())
        )
        return ActionResult.success(list(self.db.scalars(stmt).all()))

    # ── Mutations ────────────────────────────────────────

    @service_action("Failed to create enrollment period", ErrorCode.CREATE_FAILED)
    def create_period(
        self, ctx: TenantContext, payload: EnrollmentPeriodCreate | dict[str, Any]
    ) -> ActionResult[EnrollmentPeriod]:
        require_permission(ctx, MANAGE_ENROLLMENT_PERIODS)
        data = EnrollmentPeriodCreate.model_validate(payload)
        duplicate = ActionError(
            ErrorCode.ALREADY_EXISTS,
            f'An enrollment period named "{data.name}" already exists for {data.year}',
        )
        if self._name_taken(ctx.tenant_id, data.year, data.name):
            raise duplicate

        period = EnrollmentPeriod(
            tenant_id=ctx.tenant_id,
            name=data.name,
            period_type=data.period_type,
            year=data.year,
            opens_at=data.opens_at,
            closes_at=data.closes_at,
            status=EnrollmentPeriodStatus.draft,
            available_programs=list(data.available_programs),
            required_documents=list(data.required_documents),
            custom_fields=[field.model_dump() for field in data.custom_fields],
            welcome_message=data.welcome_message,
            confirmation_message=data.confirmation_message,
        )
        try:
            with self.db.begin_nested():
                self.db.add(period)
                self.db.flush()
        except IntegrityError as exc:
            if not is_unique_violation(exc):
                raise
            raise duplicate from None
        self.db.commit()
        self.db.refresh(period)
        logger.info(
            "Created enrollment period %s (%s %s)",
            period.id,
            period.name,
            period.year,
            extra={"tenant_id": ctx.tenant_id, "actor_id": ctx.user_id},
        )
        return ActionResult.success(period)

    @service_action("Failed to update enrollment period", ErrorCode.UPDATE_FAILED)
    def update_period(
        self,
        ctx: TenantContext,
        period_id: UUID,
        payload: EnrollmentPeriodUpdate | dict[str, Any],
    ) -> ActionResult[EnrollmentPeriod]:
        require_permission(ctx, MANAGE_ENROLLMENT_PERIODS)
        data = EnrollmentPeriodUpdate.model_validate(payload)
        changes = data.model_dump(exclude_unset=True)
        if not changes:
            raise ActionError(ErrorCode.VALIDATION_ERROR, "No fields to update")

        period = self._get(ctx.tenant_id, period_id)
        if "name" in changes:
            changes["name"] = changes["name"].strip()

        opens_at = make_aware(changes.get("opens_at", period.opens_at))
        closes_at = make_aware(changes.get("closes_at", period.closes_at))
        if closes_at is not None and opens_at is not None and closes_at <= opens_at:
            raise ActionError(ErrorCode.VALIDATION_ERROR, "closes_at must be after opens_at")

        name = changes.get("name", period.name)
        year = changes.get("year", period.year)
        duplicate = ActionError(
            ErrorCode.ALREADY_EXISTS,
            f'An enrollment period named "{name}" already exists for {year}',
        )
        if ("name" in changes or "year" in changes) and self._name_taken(
            ctx.tenant_id, year, name, exclude_id=period.id
        ):
            raise duplicate

        for key, value in changes.items():
            setattr(period, key, value)
        try:
            with self.db.begin_nested():
                self.db.flush()
        except IntegrityError as exc:
            if not is_unique_violation(exc):
                raise
            raise duplicate from None
        self.db.commit()
        self.db.refresh(period)
        logger.info(
            "Updated enrollment period %s: %s",
            period.id,
            ", ".join(sorted(changes)),
            extra={"tenant_id": ctx.tenant_id, "actor_id": ctx.user_id},
        )
        return ActionResult.success(period)

    @service_action("Failed to open enrollment period", ErrorCode.UPDATE_FAILED)
    def open_period(self, ctx: TenantContext, period_id: UUID) -> ActionResult[EnrollmentPeriod]:
        return ActionResult.success(
            self._transition(
                ctx, period_id, EnrollmentPeriodStatus.draft, EnrollmentPeriodStatus.open, "open"
            )
        )

    @service_action("Failed to close enrollment period", ErrorCode.UPDATE_FAILED)
    def close_period(self, ctx: TenantContext, period_id: UUID) -> ActionResult[EnrollmentPeriod]:
        return ActionResult.success(
            self._transition(
                ctx, period_id, EnrollmentPeriodStatus.open, EnrollmentPeriodStatus.closed, "close"
            )
        )

    @service_action("Failed to archive enrollment period", ErrorCode.UPDATE_FAILED)
    def archive_period(
        self, ctx: TenantContext, period_id: UUID
    ) -> ActionResult[EnrollmentPeriod]:
        return ActionResult.success(
            self._transition(
                ctx,
                period_id,
                EnrollmentPeriodStatus.closed,
                EnrollmentPeriodStatus.archived,
                "archive",
            )
        )

    @service_action("Failed to delete enrollment period", ErrorCode.DELETE_FAILED)
    def delete_period(self, ctx: TenantContext, period_id: UUID) -> ActionResult[None]:
        """Soft delete. Only drafts that never received an application qualify."""
        require_permission(ctx, MANAGE_ENROLLMENT_PERIODS)
        period = self._get(ctx.tenant_id, period_id)

        application_count = self.db.scalar(
            select(func.count(EnrollmentApplication.id)).where(
                EnrollmentApplication.enrollment_period_id == period.id
            )
        ) or 0
        if application_count > 0:
            raise ActionError(
                ErrorCode.VALIDATION_ERROR,
                f"Cannot delete a period with {application_count} application(s). "
                "Archive it instead.",
                {"application_count": application_count},
            )
        if period.status != EnrollmentPeriodStatus.draft:
            raise ActionError(
                ErrorCode.VALIDATION_ERROR,
                "Only draft periods with no applications can be deleted. "
                "Close and archive it instead.",
                {"current_status": period.status.value},
            )

        stmt = (
            update(EnrollmentPeriod)
            .where(
                EnrollmentPeriod.id == period.id,
                EnrollmentPeriod.tenant_id == ctx.tenant_id,
                EnrollmentPeriod.deleted_at.is_(None),
                EnrollmentPeriod.status == EnrollmentPeriodStatus.draft,
            )
            .values(deleted_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        if self.db.execute(stmt).rowcount == 0:
            raise ActionError(
                ErrorCode.INVALID_STATUS_TRANSITION,
                "Enrollment period changed while it was being deleted",
            )
        self.db.commit()
        logger.info(
            "Deleted enrollment period %s",
            period_id,
            extra={"tenant_id": ctx.tenant_id, "actor_id": ctx.user_id},
        )
        return ActionResult.success(None)
