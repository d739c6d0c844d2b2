"""Tests for the approval cascade."""

import uuid
from datetime import date

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError

from app.models.enrollment import ApplicationStatus, EnrollmentApplication
from app.models.invitation import InvitationStatus, ParentInvitation
from app.models.student import (
    ClassEnrollment,
    CustodyRestriction,
    EmergencyContact,
    Guardian,
    MedicalCondition,
    Student,
    StudentEnrollmentStatus,
)
from app.services import approval_cascade
from app.services.approval_cascade import ApprovalCascade
from app.services.enrollment_application import EnrollmentApplicationService
from app.services.invitation import InvitationService
from app.services.results import ErrorCode
from tests.conftest import application_payload, make_person


def _count(db_session, model, **criteria) -> int:
    stmt = select(func.count(model.id))
    for key, value in criteria.items():
        stmt = stmt.where(getattr(model, key) == value)
    return db_session.scalar(stmt) or 0


def _approve(db_session, ctx, application, school_class, **extra):
    payload = {"class_id": str(school_class.id), **extra}
    return ApprovalCascade(db_session).run(ctx, application.id, payload)


class TestApprovalPreconditions:
    def test_class_assignment_required(self, db_session, admin_ctx, submitted_application):
        result = ApprovalCascade(db_session).run(admin_ctx, submitted_application.id, {})
        assert result.code == ErrorCode.VALIDATION_ERROR
        assert _count(db_session, Student, source_application_id=submitted_application.id) == 0

    def test_unknown_class_rejected(self, db_session, admin_ctx, submitted_application):
        result = ApprovalCascade(db_session).run(
            admin_ctx, submitted_application.id, {"class_id": str(uuid.uuid4())}
        )
        assert result.code == ErrorCode.VALIDATION_ERROR
        assert result.error == "Class not found"

    def test_rejected_application_cannot_be_approved(
        self, db_session, admin_ctx, submitted_application, school_class
    ):
        apps = EnrollmentApplicationService(db_session)
        assert apps.reject_application(admin_ctx, submitted_application.id, "Full").ok

        result = _approve(db_session, admin_ctx, submitted_application, school_class)
        assert result.code == ErrorCode.INVALID_STATUS_TRANSITION
        assert _count(db_session, Student, source_application_id=submitted_application.id) == 0

    def test_requires_approve_permission(
        self, db_session, no_perm_ctx, submitted_application, school_class
    ):
        result = _approve(db_session, no_perm_ctx, submitted_application, school_class)
        assert result.code == ErrorCode.PERMISSION_DENIED


class TestApprovalCascade:
    def test_builds_every_record(
        self, db_session, admin_ctx, submitted_application, school_class
    ):
        result = _approve(
            db_session, admin_ctx, submitted_application, school_class, admin_notes="Welcome"
        )
        assert result.ok, result.error

        data = result.data
        student_id = data["student_id"]
        application = data["application"]
        assert application.status == ApplicationStatus.approved
        assert application.created_student_id == student_id
        assert application.approved_class_id == school_class.id
        assert application.admin_notes == "Welcome"
        assert application.reviewed_by == admin_ctx.user_id

        student = db_session.get(Student, student_id)
        assert student.first_name == "Ada"
        assert student.dob == date(2020, 3, 14)
        assert student.enrollment_status == StudentEnrollmentStatus.active

        assert _count(db_session, ClassEnrollment, student_id=student_id) == 1
        assert _count(db_session, MedicalCondition, student_id=student_id) == 1
        assert _count(db_session, EmergencyContact, student_id=student_id) == 2
        assert _count(db_session, CustodyRestriction, student_id=student_id) == 0

        assert data["guardian_count"] == 2
        assert data["invitation_count"] == 2
        assert len(data["issued_invitations"]) == 2
        guardians = db_session.scalars(
            select(Guardian).where(Guardian.student_id == student_id)
        ).all()
        assert all(g.user_id is None for g in guardians)
        assert {g.email for g in guardians} == {
            g["email"] for g in submitted_application.guardians
        }
        assert all(g.media_consent for g in guardians)

    def test_guardian_with_account_is_linked(
        self, db_session, admin_ctx, tenant, open_period, school_class
    ):
        payload = application_payload(open_period.id)
        person = make_person(db_session, payload["guardians"][0]["email"])
        application = EnrollmentApplicationService(db_session).submit_application(
            tenant.id, payload
        ).data

        result = _approve(db_session, admin_ctx, application, school_class)
        assert result.ok, result.error
        linked = db_session.scalar(
            select(Guardian).where(
                Guardian.student_id == result.data["student_id"],
                Guardian.user_id == person.id,
            )
        )
        assert linked is not None

    def test_custody_restrictions_copied(
        self, db_session, admin_ctx, tenant, open_period, school_class
    ):
        payload = application_payload(
            open_period.id,
            custody_restrictions=[
                {
                    "restricted_person_name": "John Doe",
                    "restriction_type": "no_contact",
                    "court_order_reference": "CO-1",
                }
            ],
        )
        application = EnrollmentApplicationService(db_session).submit_application(
            tenant.id, payload
        ).data
        result = _approve(db_session, admin_ctx, application, school_class)
        assert result.ok, result.error

        restriction = db_session.scalar(
            select(CustodyRestriction).where(
                CustodyRestriction.student_id == result.data["student_id"]
            )
        )
        assert restriction.restricted_person_name == "John Doe"
        assert restriction.effective_date is not None

    def test_start_date_falls_back_to_requested(
        self, db_session, admin_ctx, tenant, open_period, school_class
    ):
        payload = application_payload(open_period.id, requested_start_date="2026-09-07")
        application = EnrollmentApplicationService(db_session).submit_application(
            tenant.id, payload
        ).data
        result = _approve(db_session, admin_ctx, application, school_class)
        enrollment = db_session.scalar(
            select(ClassEnrollment).where(
                ClassEnrollment.student_id == result.data["student_id"]
            )
        )
        assert enrollment.start_date == date(2026, 9, 7)

    def test_second_approval_is_invalid_transition(
        self, db_session, admin_ctx, submitted_application, school_class
    ):
        assert _approve(db_session, admin_ctx, submitted_application, school_class).ok
        result = _approve(db_session, admin_ctx, submitted_application, school_class)
        assert result.code == ErrorCode.INVALID_STATUS_TRANSITION
        assert _count(db_session, Student, source_application_id=submitted_application.id) == 1


class TestReEnrollment:
    def test_existing_student_is_updated(
        self, db_session, admin_ctx, tenant, open_period, school_class
    ):
        existing = Student(
            tenant_id=tenant.id,
            first_name="Ada",
            last_name="Okafor",
            enrollment_status=StudentEnrollmentStatus.withdrawn,
            nationality="Ghanaian",
        )
        db_session.add(existing)
        db_session.commit()

        payload = application_payload(
            open_period.id,
            existing_student_id=str(existing.id),
            child_preferred_name="Addie",
        )
        application = EnrollmentApplicationService(db_session).submit_application(
            tenant.id, payload
        ).data
        result = _approve(db_session, admin_ctx, application, school_class)
        assert result.ok, result.error
        assert result.data["student_id"] == existing.id

        db_session.expire_all()
        student = db_session.get(Student, existing.id)
        assert student.preferred_name == "Addie"
        assert student.nationality == "Ghanaian"
        assert student.enrollment_status == StudentEnrollmentStatus.active
        assert _count(db_session, Student, tenant_id=tenant.id) == 1


class TestPartialFailure:
    def test_stage_failure_reports_progress_and_resumes(
        self, db_session, admin_ctx, submitted_application, school_class, monkeypatch
    ):
        def boom(self, application, student_id):
            raise RuntimeError("contact table unavailable")

        with monkeypatch.context() as patch:
            patch.setattr(ApprovalCascade, "_copy_emergency_contacts", boom)
            result = _approve(db_session, admin_ctx, submitted_application, school_class)

        assert not result.ok
        assert result.code == ErrorCode.CREATE_FAILED
        details = result.details
        assert details["stage"] == "emergency_contacts"
        assert details["completed_stages"] == [
            "student",
            "enrollment",
            "guardians",
            "medical_conditions",
        ]
        assert details["retryable"] is True
        assert details["student_id"] is not None
        assert "Student created but application update failed" in result.error

        db_session.expire_all()
        application = db_session.get(EnrollmentApplication, submitted_application.id)
        assert application.status == ApplicationStatus.submitted

        retry = _approve(db_session, admin_ctx, submitted_application, school_class)
        assert retry.ok, retry.error
        student_id = retry.data["student_id"]
        assert str(student_id) == details["student_id"]
        assert _count(db_session, Student, source_application_id=submitted_application.id) == 1
        assert _count(db_session, ClassEnrollment, student_id=student_id) == 1
        assert _count(db_session, Guardian, student_id=student_id) == 2
        assert _count(db_session, MedicalCondition, student_id=student_id) == 1
        assert _count(db_session, EmergencyContact, student_id=student_id) == 2
        assert _count(db_session, ParentInvitation, student_id=student_id) == 2

    def test_failure_before_student_reports_no_records(
        self, db_session, admin_ctx, submitted_application, school_class, monkeypatch
    ):
        def boom(self, application):
            raise RuntimeError("student table unavailable")

        monkeypatch.setattr(ApprovalCascade, "_materialize_student", boom)
        result = _approve(db_session, admin_ctx, submitted_application, school_class)

        assert result.details["stage"] == "student"
        assert result.details["completed_stages"] == []
        assert result.details["student_id"] is None
        assert "No records were created" in result.error

    def test_resumed_run_reissues_pending_invitations(
        self, db_session, admin_ctx, submitted_application, school_class, monkeypatch
    ):
        real_compare_and_set = approval_cascade.compare_and_set_status
        real_issue = InvitationService.issue_invitation
        first_tokens = []

        def fail_commit(*args, **kwargs):
            raise OperationalError("UPDATE enrollment_applications", {}, Exception("gone"))

        def recording_issue(self, credential, email, student_id):
            item = real_issue(self, credential, email, student_id)
            if item.token:
                first_tokens.append(item.token)
            return item

        monkeypatch.setattr(approval_cascade, "compare_and_set_status", fail_commit)
        monkeypatch.setattr(InvitationService, "issue_invitation", recording_issue)
        result = _approve(db_session, admin_ctx, submitted_application, school_class)
        assert result.code == ErrorCode.UPDATE_FAILED
        assert result.details["stage"] == "commit"
        assert result.details["requires_manual_commit"] is True
        assert "invitations" in result.details["completed_stages"]
        assert len(first_tokens) == 2

        monkeypatch.setattr(approval_cascade, "compare_and_set_status", real_compare_and_set)
        monkeypatch.setattr(InvitationService, "issue_invitation", real_issue)
        retry = _approve(db_session, admin_ctx, submitted_application, school_class)
        assert retry.ok, retry.error
        # Same rows as the first run, but with fresh tokens for delivery
        assert retry.data["invitation_count"] == 0
        pending = db_session.scalars(
            select(ParentInvitation).where(
                ParentInvitation.student_id == retry.data["student_id"],
                ParentInvitation.status == InvitationStatus.pending,
            )
        ).all()
        assert len(pending) == 2

        reissued = retry.data["issued_invitations"]
        assert {invitation_id for invitation_id, _ in reissued} == {p.id for p in pending}
        invitations = InvitationService(db_session)
        for _, token in reissued:
            assert invitations.validate_invitation_token(token).ok
        for token in first_tokens:
            assert invitations.validate_invitation_token(token).code == ErrorCode.NOT_FOUND

    def test_resumed_run_leaves_revoked_invitation_alone(
        self, db_session, admin_ctx, submitted_application, school_class, monkeypatch
    ):
        real_compare_and_set = approval_cascade.compare_and_set_status

        def fail_commit(*args, **kwargs):
            raise OperationalError("UPDATE enrollment_applications", {}, Exception("gone"))

        monkeypatch.setattr(approval_cascade, "compare_and_set_status", fail_commit)
        result = _approve(db_session, admin_ctx, submitted_application, school_class)
        assert result.code == ErrorCode.UPDATE_FAILED

        student_id = uuid.UUID(result.details["student_id"])
        revoked = db_session.scalars(
            select(ParentInvitation).where(ParentInvitation.student_id == student_id)
        ).first()
        assert InvitationService(db_session).revoke_invitation(admin_ctx, revoked.id).ok

        monkeypatch.setattr(approval_cascade, "compare_and_set_status", real_compare_and_set)
        retry = _approve(db_session, admin_ctx, submitted_application, school_class)
        assert retry.ok, retry.error
        reissued_ids = [invitation_id for invitation_id, _ in retry.data["issued_invitations"]]
        assert revoked.id not in reissued_ids
        assert len(reissued_ids) == 1
        db_session.refresh(revoked)
        assert revoked.status == InvitationStatus.revoked


class TestConcurrentApproval:
    def test_enrollment_is_unique_per_student_and_class(
        self, db_session, admin_ctx, tenant, submitted_application, school_class
    ):
        result = _approve(db_session, admin_ctx, submitted_application, school_class)
        assert result.ok, result.error

        db_session.add(
            ClassEnrollment(
                tenant_id=tenant.id,
                student_id=result.data["student_id"],
                class_id=school_class.id,
                start_date=date(2026, 9, 1),
            )
        )
        with pytest.raises(IntegrityError):
            db_session.flush()
        db_session.rollback()

    def test_enrollment_written_concurrently_is_reused(
        self, db_session, admin_ctx, submitted_application, school_class, monkeypatch
    ):
        result = _approve(db_session, admin_ctx, submitted_application, school_class)
        student_id = result.data["student_id"]
        existing = db_session.scalar(
            select(ClassEnrollment).where(ClassEnrollment.student_id == student_id)
        )

        cascade = ApprovalCascade(db_session)
        real_find = cascade._find_enrollment
        lookups = []

        def find_after_other_writer(tenant_id, student, class_id):
            # The first lookup runs before the other approval's insert lands
            lookups.append(student)
            if len(lookups) == 1:
                return None
            return real_find(tenant_id, student, class_id)

        monkeypatch.setattr(cascade, "_find_enrollment", find_after_other_writer)
        application = db_session.get(EnrollmentApplication, submitted_application.id)
        enrollment = cascade._enroll(application, student_id, school_class.id, date(2026, 9, 1))
        db_session.commit()

        assert len(lookups) == 2
        assert enrollment.id == existing.id
        assert _count(db_session, ClassEnrollment, student_id=student_id) == 1
