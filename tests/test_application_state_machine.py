"""Tests for public submission and the application status machine."""

import uuid
from datetime import UTC, date, datetime, timedelta

import pytest

from app.models.enrollment import ApplicationStatus, EnrollmentApplication, EnrollmentPeriodStatus
from app.services.context import TenantContext
from app.services.enrollment_application import EnrollmentApplicationService
from app.services.results import ErrorCode
from tests.conftest import application_payload, make_period


@pytest.fixture()
def svc(db_session):
    return EnrollmentApplicationService(db_session)


def _submitter_ctx(application) -> TenantContext:
    return TenantContext(tenant_id=application.tenant_id, email=application.submitted_by_email)


class TestSubmitApplication:
    def test_submission_is_stored_as_submitted(self, svc, tenant, open_period):
        result = svc.submit_application(tenant.id, application_payload(open_period.id))
        assert result.ok, result.error
        application = result.data
        assert application.status == ApplicationStatus.submitted
        assert application.submitted_at is not None
        assert application.terms_accepted_at is not None
        assert application.submitted_by_email == application.submitted_by_email.lower()
        assert len(application.guardians) == 2
        assert application.medical_conditions[0]["severity"] == "severe"

    def test_single_emergency_contact_rejected(self, svc, tenant, open_period):
        payload = application_payload(
            open_period.id,
            emergency_contacts=[{"name": "Grandma", "phone_primary": "+100000001"}],
        )
        result = svc.submit_application(tenant.id, payload)
        assert result.code == ErrorCode.VALIDATION_ERROR
        assert result.error == "At least two emergency contacts are required"

    def test_future_date_of_birth_rejected(self, svc, tenant, open_period):
        tomorrow = datetime.now(UTC).date() + timedelta(days=1)
        payload = application_payload(open_period.id, child_date_of_birth=tomorrow.isoformat())
        result = svc.submit_application(tenant.id, payload)
        assert result.code == ErrorCode.VALIDATION_ERROR
        assert "future" in result.error

    def test_malformed_guardian_email_rejected(self, svc, db_session, tenant, open_period):
        payload = application_payload(open_period.id)
        payload["guardians"][0]["email"] = "not-an-email"
        result = svc.submit_application(tenant.id, payload)
        assert result.code == ErrorCode.VALIDATION_ERROR
        assert result.error.startswith("guardians.0.email")
        stored = db_session.query(EnrollmentApplication).filter_by(tenant_id=tenant.id).count()
        assert stored == 0

    def test_malformed_emergency_contact_email_rejected(self, svc, tenant, open_period):
        payload = application_payload(open_period.id)
        payload["emergency_contacts"][1]["email"] = "grandma@"
        result = svc.submit_application(tenant.id, payload)
        assert result.code == ErrorCode.VALIDATION_ERROR
        assert result.error.startswith("emergency_contacts.1.email")

    def test_blank_guardian_email_is_treated_as_absent(self, svc, tenant, open_period):
        payload = application_payload(open_period.id)
        payload["guardians"][1]["email"] = "   "
        result = svc.submit_application(tenant.id, payload)
        assert result.ok, result.error
        assert result.data.guardians[1]["email"] is None

    @pytest.mark.parametrize(
        ("section", "field", "limit"),
        [
            ("guardians", "first_name", 80),
            ("guardians", "relationship", 40),
            ("medical_conditions", "condition_type", 80),
            ("emergency_contacts", "relationship", 40),
        ],
    )
    def test_declaration_longer_than_column_rejected(
        self, svc, tenant, open_period, section, field, limit
    ):
        payload = application_payload(open_period.id)
        payload[section][0][field] = "x" * (limit + 1)
        result = svc.submit_application(tenant.id, payload)
        assert result.code == ErrorCode.VALIDATION_ERROR
        assert result.error.startswith(f"{section}.0.{field}")

    def test_court_order_reference_longer_than_column_rejected(self, svc, tenant, open_period):
        payload = application_payload(
            open_period.id,
            custody_restrictions=[
                {
                    "restricted_person_name": "John Doe",
                    "restriction_type": "no_contact",
                    "court_order_reference": "C" * 121,
                }
            ],
        )
        result = svc.submit_application(tenant.id, payload)
        assert result.code == ErrorCode.VALIDATION_ERROR
        assert result.error.startswith("custody_restrictions.0.court_order_reference")

    def test_child_name_longer_than_column_rejected(self, svc, tenant, open_period):
        result = svc.submit_application(
            tenant.id, application_payload(open_period.id, child_first_name="A" * 81)
        )
        assert result.code == ErrorCode.VALIDATION_ERROR
        assert result.error.startswith("child_first_name")

    def test_missing_child_name_rejected(self, svc, tenant, open_period):
        result = svc.submit_application(
            tenant.id, application_payload(open_period.id, child_first_name="  ")
        )
        assert result.error == "Child name is required"

    def test_no_guardians_rejected(self, svc, tenant, open_period):
        result = svc.submit_application(
            tenant.id, application_payload(open_period.id, guardians=[])
        )
        assert result.error == "At least one guardian is required"

    def test_terms_must_be_accepted(self, svc, tenant, open_period):
        result = svc.submit_application(
            tenant.id, application_payload(open_period.id, privacy_accepted=False)
        )
        assert result.code == ErrorCode.VALIDATION_ERROR
        assert "Terms" in result.error

    def test_all_errors_reported_in_details(self, svc, tenant, open_period):
        payload = application_payload(
            open_period.id, guardians=[], emergency_contacts=[], terms_accepted=False
        )
        result = svc.submit_application(tenant.id, payload)
        assert len(result.details["errors"]) == 3

    def test_program_not_offered_rejected(self, svc, tenant, open_period):
        result = svc.submit_application(
            tenant.id, application_payload(open_period.id, requested_program="year_6")
        )
        assert result.code == ErrorCode.VALIDATION_ERROR
        assert result.details["available_programs"] == ["reception", "year_1"]

    def test_closed_period_rejected(self, svc, db_session, tenant):
        period = make_period(db_session, tenant.id, status=EnrollmentPeriodStatus.closed)
        result = svc.submit_application(tenant.id, application_payload(period.id))
        assert result.code == ErrorCode.VALIDATION_ERROR
        assert "not accepting" in result.error

    def test_period_past_window_rejected(self, svc, db_session, tenant):
        now = datetime.now(UTC)
        period = make_period(
            db_session,
            tenant.id,
            opens_at=now - timedelta(days=10),
            closes_at=now - timedelta(hours=1),
        )
        result = svc.submit_application(tenant.id, application_payload(period.id))
        assert result.error == "This enrollment period has closed"

    def test_period_of_other_tenant_not_found(self, svc, other_tenant, open_period):
        result = svc.submit_application(other_tenant.id, application_payload(open_period.id))
        assert result.code == ErrorCode.NOT_FOUND

    def test_invalid_email_rejected(self, svc, tenant, open_period):
        result = svc.submit_application(
            tenant.id, application_payload(open_period.id, submitted_by_email="not-an-email")
        )
        assert result.code == ErrorCode.VALIDATION_ERROR


class TestCustomResponses:
    @pytest.fixture()
    def period(self, db_session, tenant):
        return make_period(
            db_session,
            tenant.id,
            custom_fields=[
                {"key": "sibling", "label": "Sibling name", "type": "text", "required": True},
                {
                    "key": "transport",
                    "label": "Transport",
                    "type": "select",
                    "options": ["bus", "car"],
                },
                {"key": "visit_date", "label": "Visit date", "type": "date"},
            ],
        )

    def test_valid_answers_accepted(self, svc, tenant, period):
        payload = application_payload(
            period.id,
            custom_responses={"sibling": "Tom", "transport": "bus", "visit_date": "2026-09-01"},
        )
        result = svc.submit_application(tenant.id, payload)
        assert result.ok, result.error
        assert result.data.custom_responses["transport"] == "bus"

    def test_required_answer_missing(self, svc, tenant, period):
        result = svc.submit_application(
            tenant.id, application_payload(period.id, custom_responses={"transport": "car"})
        )
        assert result.error == "Sibling name is required"

    def test_unknown_key_rejected(self, svc, tenant, period):
        payload = application_payload(
            period.id, custom_responses={"sibling": "Tom", "shoe_size": "30"}
        )
        result = svc.submit_application(tenant.id, payload)
        assert result.error == "Unknown custom field: shoe_size"

    def test_select_value_checked(self, svc, tenant, period):
        payload = application_payload(
            period.id, custom_responses={"sibling": "Tom", "transport": "boat"}
        )
        result = svc.submit_application(tenant.id, payload)
        assert result.code == ErrorCode.VALIDATION_ERROR
        assert "Transport must be one of" in result.error

    def test_date_value_checked(self, svc, tenant, period):
        payload = application_payload(
            period.id, custom_responses={"sibling": "Tom", "visit_date": "soon"}
        )
        result = svc.submit_application(tenant.id, payload)
        assert "Visit date must be a date" in result.error


class TestReviewTransitions:
    def test_under_review_then_changes_requested(self, svc, admin_ctx, submitted_application):
        result = svc.mark_under_review(admin_ctx, submitted_application.id)
        assert result.ok
        assert result.data.status == ApplicationStatus.under_review
        assert result.data.reviewed_by == admin_ctx.user_id

        result = svc.request_changes(admin_ctx, submitted_application.id, "Please add a photo")
        assert result.data.status == ApplicationStatus.changes_requested
        assert result.data.change_request_notes == "Please add a photo"

    def test_request_changes_requires_notes(self, svc, admin_ctx, submitted_application):
        result = svc.request_changes(admin_ctx, submitted_application.id, "   ")
        assert result.code == ErrorCode.VALIDATION_ERROR

    def test_reject_requires_reason(self, svc, admin_ctx, submitted_application):
        result = svc.reject_application(admin_ctx, submitted_application.id, None)
        assert result.error == "Rejection reason is required"

    def test_reject_records_reason(self, svc, admin_ctx, submitted_application):
        result = svc.reject_application(admin_ctx, submitted_application.id, "No places left")
        assert result.data.status == ApplicationStatus.rejected
        assert result.data.rejection_reason == "No places left"

    def test_rejected_is_terminal(self, svc, admin_ctx, submitted_application):
        assert svc.reject_application(admin_ctx, submitted_application.id, "Full").ok
        result = svc.mark_under_review(admin_ctx, submitted_application.id)
        assert result.code == ErrorCode.INVALID_STATUS_TRANSITION
        assert result.details["current_status"] == "rejected"
        assert result.details["allowed"] == ["submitted"]

    def test_failed_transition_leaves_row_untouched(
        self, svc, admin_ctx, db_session, submitted_application
    ):
        assert svc.reject_application(admin_ctx, submitted_application.id, "Full").ok
        db_session.expire_all()
        before = db_session.get(EnrollmentApplication, submitted_application.id).updated_at

        result = svc.request_changes(admin_ctx, submitted_application.id, "More info")
        assert not result.ok

        db_session.expire_all()
        row = db_session.get(EnrollmentApplication, submitted_application.id)
        assert row.updated_at == before
        assert row.change_request_notes is None

    def test_review_requires_permission(self, svc, no_perm_ctx, submitted_application):
        result = svc.mark_under_review(no_perm_ctx, submitted_application.id)
        assert result.code == ErrorCode.PERMISSION_DENIED

    def test_unknown_application_not_found(self, svc, admin_ctx):
        result = svc.mark_under_review(admin_ctx, uuid.uuid4())
        assert result.code == ErrorCode.NOT_FOUND


class TestWithdraw:
    def test_submitter_can_withdraw(self, svc, submitted_application):
        result = svc.withdraw_application(
            _submitter_ctx(submitted_application), submitted_application.id
        )
        assert result.ok, result.error
        assert result.data.status == ApplicationStatus.withdrawn

    def test_email_match_ignores_case(self, svc, submitted_application):
        ctx = TenantContext(
            tenant_id=submitted_application.tenant_id,
            email=submitted_application.submitted_by_email.upper(),
        )
        assert svc.withdraw_application(ctx, submitted_application.id).ok

    def test_second_withdraw_is_invalid_transition(self, svc, submitted_application):
        ctx = _submitter_ctx(submitted_application)
        assert svc.withdraw_application(ctx, submitted_application.id).ok
        result = svc.withdraw_application(ctx, submitted_application.id)
        assert result.code == ErrorCode.INVALID_STATUS_TRANSITION

    def test_other_email_forbidden(self, svc, admin_ctx, submitted_application):
        result = svc.withdraw_application(admin_ctx, submitted_application.id)
        assert result.code == ErrorCode.FORBIDDEN

    def test_cannot_withdraw_under_review(self, svc, admin_ctx, submitted_application):
        assert svc.mark_under_review(admin_ctx, submitted_application.id).ok
        result = svc.withdraw_application(
            _submitter_ctx(submitted_application), submitted_application.id
        )
        assert result.code == ErrorCode.INVALID_STATUS_TRANSITION


class TestApplicationQueries:
    def test_list_paginates_and_filters(self, svc, admin_ctx, tenant, open_period):
        for first_name in ("Ada", "Bola", "Chidi"):
            assert svc.submit_application(
                tenant.id, application_payload(open_period.id, child_first_name=first_name)
            ).ok

        result = svc.list_applications(admin_ctx, page=1, per_page=2)
        assert result.ok
        assert result.data["total"] == 3
        assert result.data["pages"] == 2
        assert len(result.data["items"]) == 2

        result = svc.list_applications(admin_ctx, search="bol")
        assert [a.child_first_name for a in result.data["items"]] == ["Bola"]

        result = svc.list_applications(admin_ctx, status=ApplicationStatus.rejected)
        assert result.data["total"] == 0

    def test_details_include_period(self, svc, admin_ctx, submitted_application, open_period):
        result = svc.get_application_details(admin_ctx, submitted_application.id)
        assert result.ok
        assert result.data.period.id == open_period.id
        assert result.data.child_date_of_birth == date(2020, 3, 14)

    def test_status_by_email(self, svc, tenant, submitted_application):
        result = svc.get_status_by_email(tenant.id, submitted_application.submitted_by_email.title())
        assert result.ok
        assert [s.id for s in result.data] == [submitted_application.id]

    def test_status_by_email_is_tenant_scoped(self, svc, other_tenant, submitted_application):
        result = svc.get_status_by_email(other_tenant.id, submitted_application.submitted_by_email)
        assert result.data == []

    def test_status_by_email_requires_email(self, svc, tenant):
        assert svc.get_status_by_email(tenant.id, " ").code == ErrorCode.VALIDATION_ERROR
