"""Enrollment application service: public submission, review, state machine.

Every status change is a single conditional UPDATE guarded by the set of
statuses the transition may start from. Two concurrent attempts on the same
application cannot both match, and the loser sees zero affected rows.
"""

import logging
from datetime import UTC, date, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from app.config import settings
from app.metrics import APPLICATION_TRANSITIONS
from app.models.enrollment import (
    ApplicationStatus,
    EnrollmentApplication,
    EnrollmentPeriod,
    EnrollmentPeriodStatus,
)
from app.models.student import Student
from app.schemas.enrollment import (
    ApplicationDetail,
    ApplicationStatusSummary,
    ApplicationSubmit,
    ApprovePayload,
    custom_fields_adapter,
    is_blank_answer,
)
from app.services.common import make_aware, normalize_email, paginate
from app.services.context import (
    APPROVE_APPLICATIONS,
    REVIEW_APPLICATIONS,
    TenantContext,
    require_permission,
)
from app.services.results import ActionError, ActionResult, ErrorCode, service_action

logger = logging.getLogger(__name__)

# Source states each transition may start from
UNDER_REVIEW_FROM = frozenset({ApplicationStatus.submitted})
CHANGES_REQUESTED_FROM = frozenset({ApplicationStatus.submitted, ApplicationStatus.under_review})
DECISION_FROM = frozenset(
    {
        ApplicationStatus.submitted,
        ApplicationStatus.under_review,
        ApplicationStatus.changes_requested,
    }
)
WITHDRAWN_FROM = frozenset(
    {
        ApplicationStatus.draft,
        ApplicationStatus.submitted,
        ApplicationStatus.changes_requested,
    }
)

_NUMBER_WORDS = {1: "one", 2: "two", 3: "three", 4: "four", 5: "five", 6: "six"}


def compare_and_set_status(
    db: Session,
    tenant_id: UUID,
    application_id: UUID,
    allowed: frozenset[ApplicationStatus],
    target: ApplicationStatus,
    *extra_criteria: Any,
    **values: Any,
) -> bool:
    """Move an application to ``target`` only if its status is in ``allowed``.

    Returns False when no row matched. Does not commit.
    """
    stmt = (
        update(EnrollmentApplication)
        .where(
            EnrollmentApplication.id == application_id,
            EnrollmentApplication.tenant_id == tenant_id,
            EnrollmentApplication.deleted_at.is_(None),
            EnrollmentApplication.status.in_(allowed),
            *extra_criteria,
        )
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    return db.execute(stmt).rowcount > 0


def get_application(db: Session, tenant_id: UUID, application_id: UUID) -> EnrollmentApplication:
    stmt = select(EnrollmentApplication).where(
        EnrollmentApplication.id == application_id,
        EnrollmentApplication.tenant_id == tenant_id,
        EnrollmentApplication.deleted_at.is_(None),
    )
    application = db.scalar(stmt)
    if not application:
        raise ActionError(ErrorCode.NOT_FOUND, "Application not found")
    return application


def invalid_transition(
    application: EnrollmentApplication,
    target: ApplicationStatus,
    allowed: frozenset[ApplicationStatus],
) -> ActionError:
    return ActionError(
        ErrorCode.INVALID_STATUS_TRANSITION,
        f'Cannot move an application from "{application.status.value}" to "{target.value}"',
        {
            "current_status": application.status.value,
            "allowed": sorted(status.value for status in allowed),
        },
    )


class EnrollmentApplicationService:
    def __init__(self, db: Session) -> None:
        self.db = db

    def _transition(
        self,
        ctx: TenantContext,
        application_id: UUID,
        allowed: frozenset[ApplicationStatus],
        target: ApplicationStatus,
        *extra_criteria: Any,
        **values: Any,
    ) -> EnrollmentApplication:
        changed = compare_and_set_status(
            self.db, ctx.tenant_id, application_id, allowed, target, *extra_criteria, **values
        )
        if not changed:
            current = get_application(self.db, ctx.tenant_id, application_id)
            raise invalid_transition(current, target, allowed)
        self.db.commit()
        APPLICATION_TRANSITIONS.labels(status=target.value).inc()
        logger.info(
            "Application %s moved to %s",
            application_id,
            target.value,
            extra={
                "tenant_id": ctx.tenant_id,
                "actor_id": ctx.user_id,
                "application_id": application_id,
            },
        )
        application = get_application(self.db, ctx.tenant_id, application_id)
        self.db.refresh(application)
        return application

    # ── Public submission ────────────────────────────────

    def _submission_errors(self, data: ApplicationSubmit) -> list[str]:
        errors: list[str] = []
        if not data.child_first_name.strip() or not data.child_last_name.strip():
            errors.append("Child name is required")
        if data.child_date_of_birth is None:
            errors.append("Child date of birth is required")
        elif data.child_date_of_birth > datetime.now(UTC).date():
            errors.append("Child date of birth cannot be in the future")
        if not normalize_email(data.submitted_by_email):
            errors.append("Parent email is required")
        if not data.guardians:
            errors.append("At least one guardian is required")
        minimum = settings.min_emergency_contacts
        if len(data.emergency_contacts) < minimum:
            errors.append(
                f"At least {_NUMBER_WORDS.get(minimum, str(minimum))} emergency contacts are required"
            )
        if not data.terms_accepted or not data.privacy_accepted:
            errors.append("Terms and privacy policy must be accepted")
        return errors

    def _load_open_period(self, tenant_id: UUID, period_id: UUID) -> EnrollmentPeriod:
        period = self.db.scalar(
            select(EnrollmentPeriod).where(
                EnrollmentPeriod.id == period_id,
                EnrollmentPeriod.tenant_id == tenant_id,
                EnrollmentPeriod.deleted_at.is_(None),
            )
        )
        if not period:
            raise ActionError(ErrorCode.NOT_FOUND, "Enrollment period not found")
        if period.status != EnrollmentPeriodStatus.open:
            raise ActionError(
                ErrorCode.VALIDATION_ERROR,
                "This enrollment period is not accepting applications",
            )
        now = datetime.now(UTC)
        if make_aware(period.opens_at) > now:
            raise ActionError(ErrorCode.VALIDATION_ERROR, "This enrollment period has not opened yet")
        if period.closes_at is not None and make_aware(period.closes_at) < now:
            raise ActionError(ErrorCode.VALIDATION_ERROR, "This enrollment period has closed")
        return period

    def _custom_response_errors(
        self, period: EnrollmentPeriod, responses: dict[str, Any]
    ) -> list[str]:
        definitions = custom_fields_adapter.validate_python(period.custom_fields or [])
        known = {definition.key for definition in definitions}
        errors = [f"Unknown custom field: {key}" for key in responses if key not in known]
        for definition in definitions:
            value = responses.get(definition.key)
            if is_blank_answer(value):
                if definition.required:
                    errors.append(f"{definition.label} is required")
                continue
            message = definition.check_answer(value)
            if message:
                errors.append(message)
        return errors

    @service_action("Failed to submit application", ErrorCode.CREATE_FAILED)
    def submit_application(
        self, tenant_id: UUID, payload: ApplicationSubmit | dict[str, Any]
    ) -> ActionResult[EnrollmentApplication]:
        data = ApplicationSubmit.model_validate(payload)
        errors = self._submission_errors(data)
        if errors:
            raise ActionError(ErrorCode.VALIDATION_ERROR, errors[0], {"errors": errors})

        period = self._load_open_period(tenant_id, data.enrollment_period_id)

        if (
            data.requested_program
            and period.available_programs
            and data.requested_program not in period.available_programs
        ):
            raise ActionError(
                ErrorCode.VALIDATION_ERROR,
                "Requested program is not offered in this enrollment period",
                {"available_programs": list(period.available_programs)},
            )

        errors = self._custom_response_errors(period, data.custom_responses)
        if errors:
            raise ActionError(ErrorCode.VALIDATION_ERROR, errors[0], {"errors": errors})

        if data.existing_student_id is not None:
            student = self.db.scalar(
                select(Student.id).where(
                    Student.id == data.existing_student_id,
                    Student.tenant_id == tenant_id,
                    Student.deleted_at.is_(None),
                )
            )
            if student is None:
                raise ActionError(ErrorCode.VALIDATION_ERROR, "Existing student not found")

        now = datetime.now(UTC)
        application = EnrollmentApplication(
            tenant_id=tenant_id,
            enrollment_period_id=period.id,
            status=ApplicationStatus.submitted,
            submitted_by_email=normalize_email(data.submitted_by_email),
            submitted_at=now,
            child_first_name=data.child_first_name.strip(),
            child_last_name=data.child_last_name.strip(),
            child_preferred_name=data.child_preferred_name or None,
            child_date_of_birth=data.child_date_of_birth,
            child_gender=data.child_gender or None,
            child_nationality=data.child_nationality or None,
            child_languages=list(data.child_languages),
            child_previous_school=data.child_previous_school or None,
            requested_program=data.requested_program or None,
            requested_start_date=data.requested_start_date,
            existing_student_id=data.existing_student_id,
            guardians=[g.model_dump(mode="json") for g in data.guardians],
            medical_conditions=[m.model_dump(mode="json") for m in data.medical_conditions],
            emergency_contacts=[c.model_dump(mode="json") for c in data.emergency_contacts],
            custody_restrictions=[r.model_dump(mode="json") for r in data.custody_restrictions],
            media_consent=data.media_consent,
            directory_consent=data.directory_consent,
            terms_accepted=data.terms_accepted,
            terms_accepted_at=now,
            privacy_accepted=data.privacy_accepted,
            custom_responses={
                key: value.isoformat() if isinstance(value, date) else value
                for key, value in data.custom_responses.items()
            },
        )
        self.db.add(application)
        self.db.flush()
        self.db.commit()
        self.db.refresh(application)
        APPLICATION_TRANSITIONS.labels(status=ApplicationStatus.submitted.value).inc()
        logger.info(
            "Application %s submitted for period %s",
            application.id,
            period.id,
            extra={"tenant_id": tenant_id, "application_id": application.id},
        )
        return ActionResult.success(application)

    # ── Review transitions ───────────────────────────────

    @service_action("Failed to update application", ErrorCode.UPDATE_FAILED)
    def mark_under_review(
        self, ctx: TenantContext, application_id: UUID
    ) -> ActionResult[EnrollmentApplication]:
        require_permission(ctx, REVIEW_APPLICATIONS)
        application = self._transition(
            ctx,
            application_id,
            UNDER_REVIEW_FROM,
            ApplicationStatus.under_review,
            reviewed_by=ctx.user_id,
            reviewed_at=datetime.now(UTC),
        )
        return ActionResult.success(application)

    @service_action("Failed to request changes", ErrorCode.UPDATE_FAILED)
    def request_changes(
        self, ctx: TenantContext, application_id: UUID, notes: str | None
    ) -> ActionResult[EnrollmentApplication]:
        require_permission(ctx, REVIEW_APPLICATIONS)
        notes = (notes or "").strip()
        if not notes:
            raise ActionError(ErrorCode.VALIDATION_ERROR, "Change request notes are required")
        application = self._transition(
            ctx,
            application_id,
            CHANGES_REQUESTED_FROM,
            ApplicationStatus.changes_requested,
            change_request_notes=notes,
            reviewed_by=ctx.user_id,
            reviewed_at=datetime.now(UTC),
        )
        return ActionResult.success(application)

    @service_action("Failed to reject application", ErrorCode.UPDATE_FAILED)
    def reject_application(
        self, ctx: TenantContext, application_id: UUID, reason: str | None
    ) -> ActionResult[EnrollmentApplication]:
        require_permission(ctx, APPROVE_APPLICATIONS)
        reason = (reason or "").strip()
        if not reason:
            raise ActionError(ErrorCode.VALIDATION_ERROR, "Rejection reason is required")
        application = self._transition(
            ctx,
            application_id,
            DECISION_FROM,
            ApplicationStatus.rejected,
            rejection_reason=reason,
            reviewed_by=ctx.user_id,
            reviewed_at=datetime.now(UTC),
        )
        return ActionResult.success(application)

    @service_action("Failed to withdraw application", ErrorCode.UPDATE_FAILED)
    def withdraw_application(
        self, ctx: TenantContext, application_id: UUID
    ) -> ActionResult[EnrollmentApplication]:
        """Withdraw on behalf of the original submitter.

        Ownership comes from the caller's verified email, not from a
        permission grant; staff cannot withdraw for a family.
        """
        application = get_application(self.db, ctx.tenant_id, application_id)
        email = normalize_email(ctx.email)
        if not email or email != application.submitted_by_email:
            raise ActionError(
                ErrorCode.FORBIDDEN,
                "Only the person who submitted this application can withdraw it",
            )
        application = self._transition(
            ctx,
            application_id,
            WITHDRAWN_FROM,
            ApplicationStatus.withdrawn,
            EnrollmentApplication.submitted_by_email == email,
        )
        return ActionResult.success(application)

    def approve_application(
        self,
        ctx: TenantContext,
        application_id: UUID,
        payload: ApprovePayload | dict[str, Any] | None = None,
    ) -> ActionResult[dict[str, Any]]:
        from app.services.approval_cascade import ApprovalCascade

        return ApprovalCascade(self.db).run(ctx, application_id, payload)

    # ── Queries ──────────────────────────────────────────

    @service_action("Failed to list applications")
    def list_applications(
        self,
        ctx: TenantContext,
        page: int = 1,
        per_page: int = 25,
        status: ApplicationStatus | None = None,
        period_id: UUID | None = None,
        search: str | None = None,
    ) -> ActionResult[dict[str, Any]]:
        require_permission(ctx, REVIEW_APPLICATIONS)
        stmt = select(EnrollmentApplication).where(
            EnrollmentApplication.tenant_id == ctx.tenant_id,
            EnrollmentApplication.deleted_at.is_(None),
        )
        if status is not None:
            stmt = stmt.where(EnrollmentApplication.status == status)
        if period_id is not None:
            stmt = stmt.where(EnrollmentApplication.enrollment_period_id == period_id)
        if search and search.strip():
            term = f"%{search.strip()}%"
            stmt = stmt.where(
                or_(
                    EnrollmentApplication.child_first_name.ilike(term),
                    EnrollmentApplication.child_last_name.ilike(term),
                    EnrollmentApplication.submitted_by_email.ilike(term),
                )
            )
        stmt = stmt.order_by(
            EnrollmentApplication.submitted_at.desc().nulls_last(),
            EnrollmentApplication.created_at.desc(),
        )
        return ActionResult.success(paginate(self.db, stmt, page=page, page_size=per_page))

    @service_action("Failed to load application")
    def get_application_details(
        self, ctx: TenantContext, application_id: UUID
    ) -> ActionResult[ApplicationDetail]:
        require_permission(ctx, REVIEW_APPLICATIONS)
        application = get_application(self.db, ctx.tenant_id, application_id)
        return ActionResult.success(ApplicationDetail.model_validate(application))

    @service_action("Failed to get application status")
    def get_status_by_email(
        self, tenant_id: UUID, email: str | None
    ) -> ActionResult[list[ApplicationStatusSummary]]:
        email = normalize_email(email)
        if not email:
            raise ActionError(ErrorCode.VALIDATION_ERROR, "Email is required")
        stmt = (
            select(EnrollmentApplication)
            .where(
                EnrollmentApplication.tenant_id == tenant_id,
                EnrollmentApplication.submitted_by_email == email,
                EnrollmentApplication.deleted_at.is_(None),
            )
            .order_by(EnrollmentApplication.submitted_at.desc())
        )
        applications = self.db.scalars(stmt).all()
        return ActionResult.success(
            [ApplicationStatusSummary.model_validate(a) for a in applications]
        )
