"""Approval cascade: turns an approved application into durable records.

Stages run in a fixed order, each committed on its own:

    student → enrollment → guardians → medical_conditions →
    emergency_contacts → custody_restrictions → invitations → commit

Every stage first looks for the rows an earlier, interrupted run of the same
approval would have left behind (keyed on the application id, the student,
or the guardian identity) and only writes what is missing. Re-running an
approval after a partial failure therefore resumes instead of duplicating.
The application only becomes ``approved`` in the final ``commit`` stage, so
until then it stays in a reviewable, retryable state.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.metrics import APPLICATION_TRANSITIONS, CASCADE_FAILURES
from app.models.enrollment import ApplicationStatus, EnrollmentApplication
from app.models.invitation import InvitationStatus
from app.models.student import (
    ClassEnrollment,
    ClassEnrollmentStatus,
    CustodyRestriction,
    EmergencyContact,
    Guardian,
    MedicalCondition,
    SchoolClass,
    Student,
    StudentEnrollmentStatus,
)
from app.schemas.enrollment import (
    ApprovePayload,
    CustodyRestrictionDeclaration,
    EmergencyContactDeclaration,
    MedicalConditionDeclaration,
)
from app.services.context import (
    APPROVE_APPLICATIONS,
    SystemCredential,
    TenantContext,
    issue_system_credential,
    require_permission,
)
from app.services.enrollment_application import (
    DECISION_FROM,
    compare_and_set_status,
    get_application,
    invalid_transition,
)
from app.services.guardian_resolver import GuardianResolver
from app.services.invitation import InvitationService, IssuedInvitation
from app.services.results import ActionError, ActionResult, ErrorCode, service_action

logger = logging.getLogger(__name__)

STAGES = (
    "student",
    "enrollment",
    "guardians",
    "medical_conditions",
    "emergency_contacts",
    "custody_restrictions",
    "invitations",
    "commit",
)


@dataclass
class _Progress:
    application_id: UUID
    tenant_id: UUID
    completed: list[str] = field(default_factory=list)
    student_id: UUID | None = None

    def details(self, stage: str, **extra: Any) -> dict[str, Any]:
        return {
            "stage": stage,
            "completed_stages": list(self.completed),
            "student_id": str(self.student_id) if self.student_id else None,
            **extra,
        }

    def failure_message(self, stage: str) -> str:
        if self.student_id is None:
            return f"Approval failed at the {stage} step. No records were created."
        done = ", ".join(self.completed)
        return (
            f"Approval failed at the {stage} step after completing: {done}. "
            "Student created but application update failed. "
            "Run the approval again to resume."
        )


def _today() -> date:
    return datetime.now(UTC).date()


class ApprovalCascade:
    def __init__(self, db: Session) -> None:
        self.db = db

    # ── Stage plumbing ───────────────────────────────────

    @contextmanager
    def _stage(self, name: str, progress: _Progress) -> Iterator[None]:
        try:
            yield
            self.db.commit()
        except ActionError as exc:
            self.db.rollback()
            CASCADE_FAILURES.labels(stage=name).inc()
            logger.warning(
                "Approval stage %s failed: %s",
                name,
                exc.message,
                extra={
                    "tenant_id": progress.tenant_id,
                    "application_id": progress.application_id,
                    "stage": name,
                },
            )
            raise ActionError(
                exc.code,
                f"{progress.failure_message(name)} ({exc.message})",
                progress.details(name, retryable=True, reason=exc.message),
            ) from exc
        except Exception as exc:
            self.db.rollback()
            CASCADE_FAILURES.labels(stage=name).inc()
            logger.exception(
                "Approval stage %s failed",
                name,
                extra={
                    "tenant_id": progress.tenant_id,
                    "application_id": progress.application_id,
                    "stage": name,
                },
            )
            raise ActionError(
                ErrorCode.CREATE_FAILED,
                progress.failure_message(name),
                progress.details(name, retryable=True),
            ) from exc
        progress.completed.append(name)

    # ── Stages ───────────────────────────────────────────

    def _materialize_student(self, application: EnrollmentApplication) -> Student:
        if application.existing_student_id is not None:
            student = self.db.scalar(
                select(Student).where(
                    Student.id == application.existing_student_id,
                    Student.tenant_id == application.tenant_id,
                    Student.deleted_at.is_(None),
                )
            )
            if student is None:
                raise ActionError(ErrorCode.NOT_FOUND, "Existing student not found")
            if application.child_preferred_name:
                student.preferred_name = application.child_preferred_name
            if application.child_gender:
                student.gender = application.child_gender
            if application.child_nationality:
                student.nationality = application.child_nationality
            if application.child_languages:
                student.languages = list(application.child_languages)
            if application.child_previous_school:
                student.previous_school = application.child_previous_school
            student.enrollment_status = StudentEnrollmentStatus.active
            self.db.flush()
            return student

        lookup = select(Student).where(
            Student.tenant_id == application.tenant_id,
            Student.source_application_id == application.id,
        )
        student = self.db.scalar(lookup)
        if student is not None:
            logger.info(
                "Reusing student %s from an earlier approval attempt",
                student.id,
                extra={"tenant_id": application.tenant_id, "application_id": application.id},
            )
            return student

        student = Student(
            tenant_id=application.tenant_id,
            first_name=application.child_first_name,
            last_name=application.child_last_name,
            preferred_name=application.child_preferred_name,
            dob=application.child_date_of_birth,
            gender=application.child_gender,
            nationality=application.child_nationality,
            languages=list(application.child_languages or []),
            previous_school=application.child_previous_school,
            enrollment_status=StudentEnrollmentStatus.active,
            source_application_id=application.id,
        )
        try:
            with self.db.begin_nested():
                self.db.add(student)
                self.db.flush()
        except IntegrityError:
            student = self.db.scalar(lookup)
            if student is None:
                raise
        return student

    def _lock_student(self, application: EnrollmentApplication, student_id: UUID) -> None:
        """Serialize concurrent approvals touching the same student (no-op on SQLite)."""
        self.db.execute(
            select(Student.id)
            .where(Student.id == student_id, Student.tenant_id == application.tenant_id)
            .with_for_update()
        )

    def _find_enrollment(
        self, tenant_id: UUID, student_id: UUID, class_id: UUID
    ) -> ClassEnrollment | None:
        return self.db.scalar(
            select(ClassEnrollment).where(
                ClassEnrollment.tenant_id == tenant_id,
                ClassEnrollment.student_id == student_id,
                ClassEnrollment.class_id == class_id,
            )
        )

    def _enroll(
        self, application: EnrollmentApplication, student_id: UUID, class_id: UUID, start: date
    ) -> ClassEnrollment:
        tenant_id = application.tenant_id
        enrollment = self._find_enrollment(tenant_id, student_id, class_id)
        if enrollment is not None:
            return enrollment
        enrollment = ClassEnrollment(
            tenant_id=tenant_id,
            student_id=student_id,
            class_id=class_id,
            start_date=start,
            status=ClassEnrollmentStatus.active,
        )
        try:
            with self.db.begin_nested():
                self.db.add(enrollment)
                self.db.flush()
        except IntegrityError:
            enrollment = self._find_enrollment(tenant_id, student_id, class_id)
            if enrollment is None:
                raise
            logger.info(
                "Enrollment of student %s in class %s was written concurrently",
                student_id,
                class_id,
                extra={"tenant_id": tenant_id, "application_id": application.id},
            )
        return enrollment

    def _resolve_guardians(
        self,
        credential: SystemCredential,
        application: EnrollmentApplication,
        student_id: UUID,
    ) -> list[Guardian]:
        resolver = GuardianResolver(self.db)
        guardians: dict[UUID, Guardian] = {}
        for declaration in application.guardians or []:
            resolution = resolver.resolve(
                credential,
                student_id,
                declaration,
                media_consent=application.media_consent,
                directory_consent=application.directory_consent,
            )
            if resolution.guardian is not None:
                guardians[resolution.guardian.id] = resolution.guardian
        return list(guardians.values())

    def _already_copied(
        self, model: type, application: EnrollmentApplication, student_id: UUID
    ) -> bool:
        self._lock_student(application, student_id)
        return (
            self.db.scalar(
                select(model.id)
                .where(
                    model.tenant_id == application.tenant_id,
                    model.source_application_id == application.id,
                )
                .limit(1)
            )
            is not None
        )

    def _copy_medical(self, application: EnrollmentApplication, student_id: UUID) -> int:
        items = application.medical_conditions or []
        if not items or self._already_copied(MedicalCondition, application, student_id):
            return 0
        rows = []
        for item in items:
            declared = MedicalConditionDeclaration.model_validate(item)
            rows.append(
                MedicalCondition(
                    tenant_id=application.tenant_id,
                    student_id=student_id,
                    source_application_id=application.id,
                    **declared.model_dump(),
                )
            )
        self.db.add_all(rows)
        self.db.flush()
        return len(rows)

    def _copy_emergency_contacts(
        self, application: EnrollmentApplication, student_id: UUID
    ) -> int:
        items = application.emergency_contacts or []
        if not items or self._already_copied(EmergencyContact, application, student_id):
            return 0
        rows = []
        for item in items:
            declared = EmergencyContactDeclaration.model_validate(item)
            rows.append(
                EmergencyContact(
                    tenant_id=application.tenant_id,
                    student_id=student_id,
                    source_application_id=application.id,
                    name=declared.name,
                    relationship_type=declared.relationship,
                    phone_primary=declared.phone_primary,
                    phone_secondary=declared.phone_secondary,
                    email=declared.email.lower() if declared.email else None,
                    priority_order=declared.priority_order,
                )
            )
        self.db.add_all(rows)
        self.db.flush()
        return len(rows)

    def _copy_custody(self, application: EnrollmentApplication, student_id: UUID) -> int:
        items = application.custody_restrictions or []
        if not items or self._already_copied(CustodyRestriction, application, student_id):
            return 0
        rows = []
        for item in items:
            declared = CustodyRestrictionDeclaration.model_validate(item)
            rows.append(
                CustodyRestriction(
                    tenant_id=application.tenant_id,
                    student_id=student_id,
                    source_application_id=application.id,
                    effective_date=_today(),
                    **declared.model_dump(),
                )
            )
        self.db.add_all(rows)
        self.db.flush()
        return len(rows)

    def _invite(
        self, credential: SystemCredential, guardians: list[Guardian], student_id: UUID
    ) -> list[IssuedInvitation]:
        """Issue an invitation per guardian with an email.

        An invitation left pending by an earlier attempt gets a fresh token,
        since that attempt's tokens were never handed out.
        """
        service = InvitationService(self.db)
        issued = []
        for guardian in guardians:
            if not guardian.email:
                continue
            item = service.issue_invitation(credential, guardian.email, student_id)
            if not item.created and item.invitation.status == InvitationStatus.pending:
                item = service.reissue_pending(credential, item.invitation)
            issued.append(item)
        return issued

    # ── Entry point ──────────────────────────────────────

    @service_action("Failed to approve application", ErrorCode.UPDATE_FAILED)
    def run(
        self,
        ctx: TenantContext,
        application_id: UUID,
        payload: ApprovePayload | dict[str, Any] | None = None,
    ) -> ActionResult[dict[str, Any]]:
        """Approve an application and build everything it describes.

        Success data: ``application``, ``student_id``, ``invitation_count``
        (invitations newly created by this run), ``guardian_count`` and
        ``issued_invitations``: ``(id, token)`` pairs for every invitation
        that needs delivering, including pending ones reissued on a resumed run.
        """
        require_permission(ctx, APPROVE_APPLICATIONS)
        data = ApprovePayload.model_validate(payload or {})
        if data.class_id is None:
            raise ActionError(
                ErrorCode.VALIDATION_ERROR,
                "A class assignment is required to approve an application",
            )

        application = get_application(self.db, ctx.tenant_id, application_id)
        if application.status not in DECISION_FROM:
            raise invalid_transition(application, ApplicationStatus.approved, DECISION_FROM)

        school_class = self.db.scalar(
            select(SchoolClass.id).where(
                SchoolClass.id == data.class_id,
                SchoolClass.tenant_id == ctx.tenant_id,
            )
        )
        if school_class is None:
            raise ActionError(ErrorCode.VALIDATION_ERROR, "Class not found")

        log_extra = {
            "tenant_id": ctx.tenant_id,
            "actor_id": ctx.user_id,
            "application_id": application_id,
        }
        logger.info("Approving application %s", application_id, extra=log_extra)

        credential = issue_system_credential(ctx, f"approve_application:{application_id}")
        progress = _Progress(application_id=application_id, tenant_id=ctx.tenant_id)
        start = data.start_date or application.requested_start_date or _today()

        with self._stage("student", progress):
            student_id = self._materialize_student(application).id
        progress.student_id = student_id

        with self._stage("enrollment", progress):
            self._enroll(application, student_id, data.class_id, start)

        with self._stage("guardians", progress):
            guardians = self._resolve_guardians(credential, application, student_id)
            guardian_emails = [g.email for g in guardians]
        guardian_count = len(guardians)

        with self._stage("medical_conditions", progress):
            self._copy_medical(application, student_id)
        with self._stage("emergency_contacts", progress):
            self._copy_emergency_contacts(application, student_id)
        with self._stage("custody_restrictions", progress):
            self._copy_custody(application, student_id)

        with self._stage("invitations", progress):
            guardians = list(
                self.db.scalars(
                    select(Guardian).where(
                        Guardian.tenant_id == ctx.tenant_id,
                        Guardian.student_id == student_id,
                        Guardian.email.in_(guardian_emails),
                    )
                ).all()
            )
            issued = self._invite(credential, guardians, student_id)
            issued_ids = [(item.invitation.id, item.token) for item in issued if item.token]
            invitation_count = sum(1 for item in issued if item.created)

        # ── Terminal commit ──
        try:
            changed = compare_and_set_status(
                self.db,
                ctx.tenant_id,
                application_id,
                DECISION_FROM,
                ApplicationStatus.approved,
                reviewed_by=ctx.user_id,
                reviewed_at=datetime.now(UTC),
                admin_notes=data.admin_notes,
                created_student_id=student_id,
                approved_class_id=data.class_id,
            )
            if changed:
                self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            CASCADE_FAILURES.labels(stage="commit").inc()
            logger.exception(
                "Approval records written but application %s was not marked approved",
                application_id,
                extra={**log_extra, "stage": "commit"},
            )
            raise ActionError(
                ErrorCode.UPDATE_FAILED,
                "Student created but application update failed. All records exist; "
                "verify them and mark the application approved manually.",
                progress.details("commit", requires_manual_commit=True, retryable=False),
            ) from exc

        if not changed:
            current = get_application(self.db, ctx.tenant_id, application_id)
            CASCADE_FAILURES.labels(stage="commit").inc()
            logger.warning(
                "Application %s changed to %s during approval",
                application_id,
                current.status.value,
                extra={**log_extra, "stage": "commit"},
            )
            raise ActionError(
                ErrorCode.INVALID_STATUS_TRANSITION,
                f'Application status changed to "{current.status.value}" during approval',
                progress.details("commit", current_status=current.status.value, retryable=False),
            )
        progress.completed.append("commit")

        APPLICATION_TRANSITIONS.labels(status=ApplicationStatus.approved.value).inc()
        application = get_application(self.db, ctx.tenant_id, application_id)
        self.db.refresh(application)
        logger.info(
            "Application %s approved: student %s, %d guardians, %d invitations",
            application_id,
            student_id,
            guardian_count,
            invitation_count,
            extra=log_extra,
        )
        return ActionResult.success(
            {
                "application": application,
                "student_id": student_id,
                "invitation_count": invitation_count,
                "guardian_count": guardian_count,
                "issued_invitations": issued_ids,
            }
        )
