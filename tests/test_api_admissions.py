"""HTTP tests for the admissions API."""

import uuid

from sqlalchemy import select

from app.models.invitation import ParentInvitation
from app.models.student import Student
from app.services.context import issue_system_credential
from app.services.invitation import InvitationService
from tests.conftest import application_payload, make_access_token, make_person


def _auth(person, tenant=None, **claims):
    token = make_access_token(person.id, tenant.id if tenant else None, person.email, **claims)
    return {"Authorization": f"Bearer {token}"}


class TestPublicEndpoints:
    def test_lists_open_periods(self, client, tenant, open_period):
        resp = client.get(f"/public/tenants/{tenant.id}/enrollment-periods")
        assert resp.status_code == 200
        data = resp.json()
        assert [p["id"] for p in data] == [str(open_period.id)]
        assert "status" not in data[0]

    def test_versioned_prefix(self, client, tenant, open_period):
        resp = client.get(f"/api/v1/public/tenants/{tenant.id}/enrollment-periods")
        assert resp.status_code == 200

    def test_submit_application(self, client, tenant, open_period):
        resp = client.post(
            f"/public/tenants/{tenant.id}/applications",
            json=application_payload(open_period.id),
        )
        assert resp.status_code == 201, resp.text
        body = resp.json()
        assert body["status"] == "submitted"
        assert body["confirmation_message"] == "Thank you for applying."
        assert resp.headers["X-RateLimit-Limit"] == "5"

    def test_submit_business_rule_failure(self, client, tenant, open_period):
        payload = application_payload(open_period.id, emergency_contacts=[])
        resp = client.post(f"/public/tenants/{tenant.id}/applications", json=payload)
        assert resp.status_code == 422
        body = resp.json()
        assert body["code"] == "VALIDATION_ERROR"
        assert body["message"] == "At least two emergency contacts are required"
        assert body["request_id"]

    def test_submit_malformed_body(self, client, tenant, open_period):
        payload = application_payload(open_period.id, submitted_by_email="nope")
        resp = client.post(f"/public/tenants/{tenant.id}/applications", json=payload)
        assert resp.status_code == 422
        assert resp.json()["code"] == "VALIDATION_ERROR"

    def test_submission_rate_limited(self, client, tenant, open_period):
        url = f"/public/tenants/{tenant.id}/applications"
        statuses = [client.post(url, json={}).status_code for _ in range(6)]
        assert statuses[:5] == [422] * 5
        assert statuses[5] == 429

    def test_status_lookup(self, client, tenant, submitted_application):
        resp = client.get(
            f"/public/tenants/{tenant.id}/applications/status",
            params={"email": submitted_application.submitted_by_email},
        )
        assert resp.status_code == 200
        assert resp.json()[0]["id"] == str(submitted_application.id)

    def test_unknown_invitation_token(self, client):
        resp = client.get("/public/invitations/not-a-real-token")
        assert resp.status_code == 404


class TestAuthentication:
    def test_missing_token(self, client):
        assert client.get("/enrollment-periods").status_code == 401

    def test_bad_token(self, client):
        resp = client.get("/enrollment-periods", headers={"Authorization": "Bearer junk"})
        assert resp.status_code == 401

    def test_tenant_required(self, client, staff_person):
        resp = client.get("/enrollment-periods", headers=_auth(staff_person))
        assert resp.status_code == 403
        assert resp.json()["message"] == "Tenant context required"

    def test_missing_permission(self, client, tenant, staff_person):
        resp = client.get("/enrollment-periods", headers=_auth(staff_person, tenant))
        assert resp.status_code == 403
        assert resp.json()["code"] == "PERMISSION_DENIED"

    def test_admin_role_grants_admissions(self, client, tenant, staff_person, open_period):
        resp = client.get(
            "/enrollment-periods", headers=_auth(staff_person, tenant, roles=["admin"])
        )
        assert resp.status_code == 200

    def test_rbac_grants(self, client, tenant, registrar, open_period):
        resp = client.get("/enrollment-periods", headers=_auth(registrar, tenant))
        assert resp.status_code == 200
        assert [p["id"] for p in resp.json()] == [str(open_period.id)]


class TestEnrollmentPeriodEndpoints:
    def test_crud_and_lifecycle(self, client, admin_headers):
        resp = client.post(
            "/enrollment-periods",
            json={
                "name": "Spring intake",
                "period_type": "mid_year",
                "year": 2027,
                "opens_at": "2027-01-05T00:00:00Z",
                "closes_at": "2027-02-05T00:00:00Z",
            },
            headers=admin_headers,
        )
        assert resp.status_code == 201, resp.text
        period_id = resp.json()["id"]
        assert resp.json()["status"] == "draft"

        resp = client.patch(
            f"/enrollment-periods/{period_id}",
            json={"welcome_message": "Hello"},
            headers=admin_headers,
        )
        assert resp.json()["welcome_message"] == "Hello"

        resp = client.post(f"/enrollment-periods/{period_id}/archive", headers=admin_headers)
        assert resp.status_code == 409
        assert resp.json()["code"] == "INVALID_STATUS_TRANSITION"

        for action, expected in (("open", "open"), ("close", "closed"), ("archive", "archived")):
            resp = client.post(f"/enrollment-periods/{period_id}/{action}", headers=admin_headers)
            assert resp.status_code == 200
            assert resp.json()["status"] == expected

    def test_delete_draft(self, client, admin_headers):
        resp = client.post(
            "/enrollment-periods",
            json={
                "name": "Throwaway",
                "period_type": "new_enrollment",
                "year": 2026,
                "opens_at": "2026-11-01T00:00:00Z",
            },
            headers=admin_headers,
        )
        period_id = resp.json()["id"]
        assert client.delete(f"/enrollment-periods/{period_id}", headers=admin_headers).status_code == 204
        assert client.get(f"/enrollment-periods/{period_id}", headers=admin_headers).status_code == 404

    def test_get_includes_stats(self, client, admin_headers, submitted_application):
        resp = client.get(
            f"/enrollment-periods/{submitted_application.enrollment_period_id}",
            headers=admin_headers,
        )
        assert resp.json()["total_applications"] == 1

    def test_empty_patch_rejected(self, client, admin_headers, open_period):
        resp = client.patch(f"/enrollment-periods/{open_period.id}", json={}, headers=admin_headers)
        assert resp.status_code == 422


class TestApplicationEndpoints:
    def test_list_and_detail(self, client, admin_headers, submitted_application):
        resp = client.get("/enrollment-applications", headers=admin_headers)
        assert resp.status_code == 200
        body = resp.json()
        assert body["total"] == 1
        assert body["items"][0]["id"] == str(submitted_application.id)

        resp = client.get(
            f"/enrollment-applications/{submitted_application.id}", headers=admin_headers
        )
        assert resp.json()["period"]["id"] == str(submitted_application.enrollment_period_id)

    def test_review_flow(self, client, admin_headers, submitted_application):
        base = f"/enrollment-applications/{submitted_application.id}"
        assert client.post(f"{base}/under-review", headers=admin_headers).status_code == 200
        resp = client.post(
            f"{base}/request-changes", json={"notes": "Need a photo"}, headers=admin_headers
        )
        assert resp.json()["status"] == "changes_requested"
        resp = client.post(f"{base}/reject", json={"reason": "Full"}, headers=admin_headers)
        assert resp.json()["status"] == "rejected"
        resp = client.post(f"{base}/under-review", headers=admin_headers)
        assert resp.status_code == 409

    def test_withdraw_by_submitter(self, client, db_session, tenant, submitted_application):
        family = make_person(db_session, submitted_application.submitted_by_email)
        resp = client.post(
            f"/enrollment-applications/{submitted_application.id}/withdraw",
            headers=_auth(family, tenant),
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["status"] == "withdrawn"

    def test_withdraw_by_staff_forbidden(self, client, admin_headers, submitted_application):
        resp = client.post(
            f"/enrollment-applications/{submitted_application.id}/withdraw",
            headers=admin_headers,
        )
        assert resp.status_code == 403
        assert resp.json()["code"] == "FORBIDDEN"

    def test_approve(self, client, db_session, admin_headers, submitted_application, school_class):
        resp = client.post(
            f"/enrollment-applications/{submitted_application.id}/approve",
            json={"class_id": str(school_class.id)},
            headers=admin_headers,
        )
        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["application"]["status"] == "approved"
        assert body["guardian_count"] == 2
        assert body["invitation_count"] == 2
        assert "issued_invitations" not in body
        assert db_session.get(Student, uuid.UUID(body["student_id"])) is not None

    def test_approve_without_class(self, client, admin_headers, submitted_application):
        resp = client.post(
            f"/enrollment-applications/{submitted_application.id}/approve",
            json={},
            headers=admin_headers,
        )
        assert resp.status_code == 422


class TestInvitationEndpoints:
    def test_issue_validate_accept(
        self, client, db_session, tenant, admin_headers, parent_role
    ):
        student = Student(tenant_id=tenant.id, first_name="Ada", last_name="Okafor")
        db_session.add(student)
        db_session.commit()
        parent = make_person(db_session)

        resp = client.post(
            "/invitations",
            json={"email": parent.email, "student_id": str(student.id)},
            headers=admin_headers,
        )
        assert resp.status_code == 201, resp.text
        token = resp.json()["token"]
        assert resp.json()["accept_url"].endswith(token)

        resp = client.get(f"/public/invitations/{token}")
        assert resp.status_code == 200
        assert resp.json()["student_first_name"] == "Ada"

        resp = client.post("/invitations/accept", json={"token": token}, headers=_auth(parent))
        assert resp.status_code == 200, resp.text
        assert resp.json()["student_id"] == str(student.id)

    def test_accept_with_wrong_account(self, client, db_session, admin_ctx, tenant):
        student = Student(tenant_id=tenant.id, first_name="Ada", last_name="Okafor")
        db_session.add(student)
        db_session.commit()
        credential = issue_system_credential(admin_ctx, "test")
        issued = InvitationService(db_session).issue_invitation(
            credential, "invited@example.com", student.id
        )
        db_session.commit()

        stranger = make_person(db_session)
        resp = client.post(
            "/invitations/accept", json={"token": issued.token}, headers=_auth(stranger)
        )
        assert resp.status_code == 403
        assert resp.json()["code"] == "EMAIL_MISMATCH"

    def test_resend_and_revoke(self, client, db_session, tenant, admin_headers):
        student = Student(tenant_id=tenant.id, first_name="Ada", last_name="Okafor")
        db_session.add(student)
        db_session.commit()
        resp = client.post(
            "/invitations",
            json={"email": "resend@example.com", "student_id": str(student.id)},
            headers=admin_headers,
        )
        invitation_id = resp.json()["invitation"]["id"]

        resp = client.post(f"/invitations/{invitation_id}/resend", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json()["token"]

        resp = client.post(f"/invitations/{invitation_id}/revoke", headers=admin_headers)
        assert resp.json()["status"] == "revoked"

        resp = client.get("/invitations", params={"status": "revoked"}, headers=admin_headers)
        assert [i["id"] for i in resp.json()] == [invitation_id]

        stored = db_session.scalar(
            select(ParentInvitation).where(ParentInvitation.id == uuid.UUID(invitation_id))
        )
        assert stored is not None


class TestHealth:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_metrics(self, client):
        resp = client.get("/metrics")
        assert resp.status_code == 200
