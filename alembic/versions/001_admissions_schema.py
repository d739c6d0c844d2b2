"""Admissions schema – tenants, people, rbac, students, enrollment periods,
applications, parent invitations.

Revision ID: 001_admissions
Revises:
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

revision = "001_admissions"
down_revision = None
branch_labels = None
depends_on = None

PERSON_STATUS = ("active", "inactive", "archived")
PERIOD_TYPE = ("new_enrollment", "re_enrollment", "mid_year")
PERIOD_STATUS = ("draft", "open", "closed", "archived")
APPLICATION_STATUS = (
    "draft",
    "submitted",
    "under_review",
    "changes_requested",
    "approved",
    "rejected",
    "withdrawn",
)
STUDENT_STATUS = ("inquiry", "applicant", "active", "withdrawn", "graduated")
CLASS_ENROLLMENT_STATUS = ("active", "completed", "withdrawn")
MEDICAL_SEVERITY = ("mild", "moderate", "severe", "life_threatening")
RESTRICTION_TYPE = ("no_contact", "no_pickup", "supervised_only", "no_information")
INVITATION_STATUS = ("pending", "accepted", "revoked", "expired")


def _enum(values, name):
    return sa.Enum(*values, name=name, create_type=False)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
    ]


def _tenant_fk():
    return sa.Column(
        "tenant_id", UUID(as_uuid=True), sa.ForeignKey("tenants.id"), nullable=False, index=True
    )


def _student_fk():
    return sa.Column(
        "student_id", UUID(as_uuid=True), sa.ForeignKey("students.id"), nullable=False, index=True
    )


def upgrade() -> None:
    conn = op.get_bind()
    inspector = sa.inspect(conn)

    # ── Enum types ───────────────────────────────────────
    for enum_name, values in [
        ("personstatus", PERSON_STATUS),
        ("enrollmentperiodtype", PERIOD_TYPE),
        ("enrollmentperiodstatus", PERIOD_STATUS),
        ("applicationstatus", APPLICATION_STATUS),
        ("studentenrollmentstatus", STUDENT_STATUS),
        ("classenrollmentstatus", CLASS_ENROLLMENT_STATUS),
        ("medicalseverity", MEDICAL_SEVERITY),
        ("restrictiontype", RESTRICTION_TYPE),
        ("invitationstatus", INVITATION_STATUS),
    ]:
        existing = [e["name"] for e in inspector.get_enums()]
        if enum_name not in existing:
            sa.Enum(*values, name=enum_name).create(conn)

    # ── Tenants & people ─────────────────────────────────
    if not inspector.has_table("tenants"):
        op.create_table(
            "tenants",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("slug", sa.String(255), nullable=False),
            sa.Column("is_active", sa.Boolean, default=True),
            *_timestamps(),
            sa.UniqueConstraint("slug", name="uq_tenants_slug"),
        )

    if not inspector.has_table("people"):
        op.create_table(
            "people",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            sa.Column("first_name", sa.String(80), nullable=False),
            sa.Column("last_name", sa.String(80), nullable=False),
            sa.Column("display_name", sa.String(120)),
            sa.Column("email", sa.String(255), nullable=False, unique=True),
            sa.Column("email_verified", sa.Boolean, default=False),
            sa.Column("phone", sa.String(40)),
            sa.Column("status", _enum(PERSON_STATUS, "personstatus"), default="active"),
            sa.Column("is_active", sa.Boolean, default=True),
            *_timestamps(),
        )

    # ── RBAC ─────────────────────────────────────────────
    if not inspector.has_table("roles"):
        op.create_table(
            "roles",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            _tenant_fk(),
            sa.Column("name", sa.String(80), nullable=False),
            sa.Column("description", sa.Text),
            sa.Column("is_system", sa.Boolean, default=False),
            sa.Column("is_active", sa.Boolean, default=True),
            *_timestamps(),
            sa.UniqueConstraint("tenant_id", "name", name="uq_roles_tenant_name"),
        )

    if not inspector.has_table("permissions"):
        op.create_table(
            "permissions",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            sa.Column("key", sa.String(120), nullable=False),
            sa.Column("description", sa.Text),
            sa.Column("is_active", sa.Boolean, default=True),
            sa.Column("created_at", sa.DateTime(timezone=True)),
            sa.UniqueConstraint("key", name="uq_permissions_key"),
        )

    if not inspector.has_table("role_permissions"):
        op.create_table(
            "role_permissions",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            sa.Column("role_id", UUID(as_uuid=True), sa.ForeignKey("roles.id"), nullable=False),
            sa.Column(
                "permission_id", UUID(as_uuid=True), sa.ForeignKey("permissions.id"), nullable=False
            ),
            sa.UniqueConstraint(
                "role_id", "permission_id", name="uq_role_permissions_role_permission"
            ),
        )

    if not inspector.has_table("person_roles"):
        op.create_table(
            "person_roles",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            _tenant_fk(),
            sa.Column("person_id", UUID(as_uuid=True), sa.ForeignKey("people.id"), nullable=False),
            sa.Column("role_id", UUID(as_uuid=True), sa.ForeignKey("roles.id"), nullable=False),
            sa.Column("assigned_at", sa.DateTime(timezone=True)),
            sa.UniqueConstraint(
                "tenant_id", "person_id", "role_id", name="uq_person_roles_tenant_person_role"
            ),
        )

    # ── Classes & students ───────────────────────────────
    if not inspector.has_table("classes"):
        op.create_table(
            "classes",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            _tenant_fk(),
            sa.Column("name", sa.String(120), nullable=False),
            sa.Column("room", sa.String(80)),
            sa.Column("cycle_level", sa.String(40)),
            sa.Column("is_active", sa.Boolean, default=True),
            *_timestamps(),
        )

    if not inspector.has_table("students"):
        op.create_table(
            "students",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            _tenant_fk(),
            sa.Column("first_name", sa.String(80), nullable=False),
            sa.Column("last_name", sa.String(80), nullable=False),
            sa.Column("preferred_name", sa.String(80)),
            sa.Column("dob", sa.Date),
            sa.Column("gender", sa.String(40)),
            sa.Column("nationality", sa.String(80)),
            sa.Column("languages", sa.JSON),
            sa.Column("previous_school", sa.String(255)),
            sa.Column(
                "enrollment_status",
                _enum(STUDENT_STATUS, "studentenrollmentstatus"),
                default="inquiry",
            ),
            sa.Column("notes", sa.Text),
            sa.Column("source_application_id", UUID(as_uuid=True), index=True),
            sa.Column("deleted_at", sa.DateTime(timezone=True)),
            *_timestamps(),
            sa.UniqueConstraint(
                "tenant_id", "source_application_id", name="uq_students_source_application"
            ),
        )

    if not inspector.has_table("enrollments"):
        op.create_table(
            "enrollments",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            _tenant_fk(),
            _student_fk(),
            sa.Column(
                "class_id", UUID(as_uuid=True), sa.ForeignKey("classes.id"), nullable=False, index=True
            ),
            sa.Column("start_date", sa.Date, nullable=False),
            sa.Column("end_date", sa.Date),
            sa.Column(
                "status", _enum(CLASS_ENROLLMENT_STATUS, "classenrollmentstatus"), default="active"
            ),
            *_timestamps(),
            sa.UniqueConstraint(
                "tenant_id", "student_id", "class_id", name="uq_enrollments_tenant_student_class"
            ),
        )

    if not inspector.has_table("guardians"):
        op.create_table(
            "guardians",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            _tenant_fk(),
            _student_fk(),
            sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("people.id"), index=True),
            sa.Column("email", sa.String(255), index=True),
            sa.Column("first_name", sa.String(80)),
            sa.Column("last_name", sa.String(80)),
            sa.Column("phone", sa.String(40)),
            sa.Column("address", sa.Text),
            sa.Column("relationship", sa.String(40), default="parent"),
            sa.Column("is_primary", sa.Boolean, default=False),
            sa.Column("is_emergency_contact", sa.Boolean, default=False),
            sa.Column("pickup_authorized", sa.Boolean, default=True),
            sa.Column("media_consent", sa.Boolean, default=False),
            sa.Column("directory_consent", sa.Boolean, default=False),
            sa.Column("deleted_at", sa.DateTime(timezone=True)),
            *_timestamps(),
            sa.UniqueConstraint(
                "tenant_id", "student_id", "user_id", name="uq_guardians_tenant_student_user"
            ),
            sa.UniqueConstraint(
                "tenant_id", "student_id", "email", name="uq_guardians_tenant_student_email"
            ),
        )

    # ── Health & safety ──────────────────────────────────
    if not inspector.has_table("medical_conditions"):
        op.create_table(
            "medical_conditions",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            _tenant_fk(),
            _student_fk(),
            sa.Column("condition_type", sa.String(80), nullable=False),
            sa.Column("condition_name", sa.String(255), nullable=False),
            sa.Column("severity", _enum(MEDICAL_SEVERITY, "medicalseverity"), default="mild"),
            sa.Column("description", sa.Text),
            sa.Column("action_plan", sa.Text),
            sa.Column("requires_medication", sa.Boolean, default=False),
            sa.Column("medication_name", sa.String(255)),
            sa.Column("medication_location", sa.String(255)),
            sa.Column("source_application_id", UUID(as_uuid=True), index=True),
            *_timestamps(),
        )

    if not inspector.has_table("emergency_contacts"):
        op.create_table(
            "emergency_contacts",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            _tenant_fk(),
            _student_fk(),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("relationship", sa.String(40)),
            sa.Column("phone_primary", sa.String(40), nullable=False),
            sa.Column("phone_secondary", sa.String(40)),
            sa.Column("email", sa.String(255)),
            sa.Column("priority_order", sa.Integer, default=1),
            sa.Column("notes", sa.Text),
            sa.Column("source_application_id", UUID(as_uuid=True), index=True),
            *_timestamps(),
        )

    if not inspector.has_table("custody_restrictions"):
        op.create_table(
            "custody_restrictions",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            _tenant_fk(),
            _student_fk(),
            sa.Column("restricted_person_name", sa.String(255), nullable=False),
            sa.Column(
                "restriction_type", _enum(RESTRICTION_TYPE, "restrictiontype"), nullable=False
            ),
            sa.Column("court_order_reference", sa.String(120)),
            sa.Column("effective_date", sa.Date, nullable=False),
            sa.Column("expiry_date", sa.Date),
            sa.Column("notes", sa.Text),
            sa.Column("source_application_id", UUID(as_uuid=True), index=True),
            *_timestamps(),
        )

    # ── Enrollment periods & applications ────────────────
    if not inspector.has_table("enrollment_periods"):
        op.create_table(
            "enrollment_periods",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            _tenant_fk(),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("period_type", _enum(PERIOD_TYPE, "enrollmentperiodtype"), nullable=False),
            sa.Column("year", sa.Integer, nullable=False),
            sa.Column("opens_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("closes_at", sa.DateTime(timezone=True)),
            sa.Column("status", _enum(PERIOD_STATUS, "enrollmentperiodstatus"), default="draft"),
            sa.Column("available_programs", sa.JSON),
            sa.Column("required_documents", sa.JSON),
            sa.Column("custom_fields", sa.JSON),
            sa.Column("welcome_message", sa.Text),
            sa.Column("confirmation_message", sa.Text),
            sa.Column("deleted_at", sa.DateTime(timezone=True)),
            *_timestamps(),
            sa.UniqueConstraint(
                "tenant_id", "year", "name", name="uq_enrollment_periods_tenant_year_name"
            ),
        )

    if not inspector.has_table("enrollment_applications"):
        op.create_table(
            "enrollment_applications",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            _tenant_fk(),
            sa.Column(
                "enrollment_period_id",
                UUID(as_uuid=True),
                sa.ForeignKey("enrollment_periods.id"),
                nullable=False,
                index=True,
            ),
            sa.Column(
                "status", _enum(APPLICATION_STATUS, "applicationstatus"), default="draft", index=True
            ),
            sa.Column("submitted_by_email", sa.String(255), nullable=False, index=True),
            sa.Column("submitted_at", sa.DateTime(timezone=True)),
            sa.Column("child_first_name", sa.String(80), nullable=False),
            sa.Column("child_last_name", sa.String(80), nullable=False),
            sa.Column("child_preferred_name", sa.String(80)),
            sa.Column("child_date_of_birth", sa.Date, nullable=False),
            sa.Column("child_gender", sa.String(40)),
            sa.Column("child_nationality", sa.String(80)),
            sa.Column("child_languages", sa.JSON),
            sa.Column("child_previous_school", sa.String(255)),
            sa.Column("requested_program", sa.String(120)),
            sa.Column("requested_start_date", sa.Date),
            sa.Column("existing_student_id", UUID(as_uuid=True), sa.ForeignKey("students.id")),
            sa.Column("guardians", sa.JSON),
            sa.Column("medical_conditions", sa.JSON),
            sa.Column("emergency_contacts", sa.JSON),
            sa.Column("custody_restrictions", sa.JSON),
            sa.Column("media_consent", sa.Boolean, default=False),
            sa.Column("directory_consent", sa.Boolean, default=False),
            sa.Column("terms_accepted", sa.Boolean, default=False),
            sa.Column("terms_accepted_at", sa.DateTime(timezone=True)),
            sa.Column("privacy_accepted", sa.Boolean, default=False),
            sa.Column("custom_responses", sa.JSON),
            sa.Column("reviewed_by", UUID(as_uuid=True), sa.ForeignKey("people.id")),
            sa.Column("reviewed_at", sa.DateTime(timezone=True)),
            sa.Column("admin_notes", sa.Text),
            sa.Column("change_request_notes", sa.Text),
            sa.Column("rejection_reason", sa.Text),
            sa.Column("created_student_id", UUID(as_uuid=True), sa.ForeignKey("students.id")),
            sa.Column("approved_class_id", UUID(as_uuid=True), sa.ForeignKey("classes.id")),
            sa.Column("deleted_at", sa.DateTime(timezone=True)),
            *_timestamps(),
        )

    # ── Parent invitations ───────────────────────────────
    if not inspector.has_table("parent_invitations"):
        op.create_table(
            "parent_invitations",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            _tenant_fk(),
            sa.Column("email", sa.String(255), nullable=False),
            _student_fk(),
            sa.Column("invited_by", UUID(as_uuid=True), sa.ForeignKey("people.id")),
            sa.Column("token_hash", sa.String(64), nullable=False),
            sa.Column(
                "status", _enum(INVITATION_STATUS, "invitationstatus"), default="pending", index=True
            ),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("accepted_at", sa.DateTime(timezone=True)),
            sa.Column("accepted_by", UUID(as_uuid=True), sa.ForeignKey("people.id")),
            sa.Column("deleted_at", sa.DateTime(timezone=True)),
            *_timestamps(),
            sa.UniqueConstraint(
                "tenant_id", "email", "student_id", name="uq_parent_invitations_tenant_email_student"
            ),
            sa.UniqueConstraint("token_hash", name="uq_parent_invitations_token_hash"),
        )


def downgrade() -> None:
    op.drop_table("parent_invitations")
    op.drop_table("enrollment_applications")
    op.drop_table("enrollment_periods")
    op.drop_table("custody_restrictions")
    op.drop_table("emergency_contacts")
    op.drop_table("medical_conditions")
    op.drop_table("guardians")
    op.drop_table("enrollments")
    op.drop_table("students")
    op.drop_table("classes")
    op.drop_table("person_roles")
    op.drop_table("role_permissions")
    op.drop_table("permissions")
    op.drop_table("roles")
    op.drop_table("people")
    op.drop_table("tenants")
    for enum_name in [
        "invitationstatus",
        "restrictiontype",
        "medicalseverity",
        "classenrollmentstatus",
        "studentenrollmentstatus",
        "applicationstatus",
        "enrollmentperiodstatus",
        "enrollmentperiodtype",
        "personstatus",
    ]:
        sa.Enum(name=enum_name).drop(op.get_bind())
