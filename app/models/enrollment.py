import enum
import uuid
from datetime import date, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base, TimestampMixin

# ── Enums ────────────────────────────────────────────────


class EnrollmentPeriodType(str, enum.Enum):
    new_enrollment = "new_enrollment"
    re_enrollment = "re_enrollment"
    mid_year = "mid_year"


class EnrollmentPeriodStatus(str, enum.Enum):
    draft = "draft"
    open = "open"
    closed = "closed"
    archived = "archived"


class ApplicationStatus(str, enum.Enum):
    draft = "draft"
    submitted = "submitted"
    under_review = "under_review"
    changes_requested = "changes_requested"
    approved = "approved"
    rejected = "rejected"
    withdrawn = "withdrawn"


TERMINAL_APPLICATION_STATUSES = frozenset(
    {ApplicationStatus.approved, ApplicationStatus.rejected, ApplicationStatus.withdrawn}
)


# ── Enrollment Period ────────────────────────────────────


class EnrollmentPeriod(TimestampMixin, Base):
    __tablename__ = "enrollment_periods"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "year", "name", name="uq_enrollment_periods_tenant_year_name"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    period_type: Mapped[EnrollmentPeriodType] = mapped_column(
        Enum(EnrollmentPeriodType), nullable=False
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)

    opens_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    closes_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    status: Mapped[EnrollmentPeriodStatus] = mapped_column(
        Enum(EnrollmentPeriodStatus), default=EnrollmentPeriodStatus.draft
    )

    available_programs: Mapped[list] = mapped_column(JSON, default=list)
    required_documents: Mapped[list] = mapped_column(JSON, default=list)
    custom_fields: Mapped[list] = mapped_column(JSON, default=list)

    welcome_message: Mapped[str | None] = mapped_column(Text)
    confirmation_message: Mapped[str | None] = mapped_column(Text)

    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    applications = relationship("EnrollmentApplication", back_populates="period")


# ── Enrollment Application ───────────────────────────────


class EnrollmentApplication(TimestampMixin, Base):
    __tablename__ = "enrollment_applications"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True
    )
    enrollment_period_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("enrollment_periods.id"),
        nullable=False,
        index=True,
    )

    status: Mapped[ApplicationStatus] = mapped_column(
        Enum(ApplicationStatus), default=ApplicationStatus.draft, index=True
    )
    submitted_by_email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Child
    child_first_name: Mapped[str] = mapped_column(String(80), nullable=False)
    child_last_name: Mapped[str] = mapped_column(String(80), nullable=False)
    child_preferred_name: Mapped[str | None] = mapped_column(String(80))
    child_date_of_birth: Mapped[date] = mapped_column(Date, nullable=False)
    child_gender: Mapped[str | None] = mapped_column(String(40))
    child_nationality: Mapped[str | None] = mapped_column(String(80))
    child_languages: Mapped[list | None] = mapped_column(JSON)
    child_previous_school: Mapped[str | None] = mapped_column(String(255))

    # Program preference
    requested_program: Mapped[str | None] = mapped_column(String(120))
    requested_start_date: Mapped[date | None] = mapped_column(Date)

    # Re-enrollment
    existing_student_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("students.id")
    )

    # Embedded declarations, validated at the boundary by app.schemas.enrollment
    guardians: Mapped[list] = mapped_column(JSON, default=list)
    medical_conditions: Mapped[list] = mapped_column(JSON, default=list)
    emergency_contacts: Mapped[list] = mapped_column(JSON, default=list)
    custody_restrictions: Mapped[list] = mapped_column(JSON, default=list)

    # Consents
    media_consent: Mapped[bool] = mapped_column(Boolean, default=False)
    directory_consent: Mapped[bool] = mapped_column(Boolean, default=False)
    terms_accepted: Mapped[bool] = mapped_column(Boolean, default=False)
    terms_accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    privacy_accepted: Mapped[bool] = mapped_column(Boolean, default=False)

    custom_responses: Mapped[dict] = mapped_column(JSON, default=dict)

    # Review
    reviewed_by: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("people.id")
    )
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    admin_notes: Mapped[str | None] = mapped_column(Text)
    change_request_notes: Mapped[str | None] = mapped_column(Text)
    rejection_reason: Mapped[str | None] = mapped_column(Text)

    # Approval outcome
    created_student_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("students.id")
    )
    approved_class_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("classes.id")
    )

    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    period = relationship("EnrollmentPeriod", back_populates="applications")
