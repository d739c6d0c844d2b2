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


class StudentEnrollmentStatus(str, enum.Enum):
    inquiry = "inquiry"
    applicant = "applicant"
    active = "active"
    withdrawn = "withdrawn"
    graduated = "graduated"


class ClassEnrollmentStatus(str, enum.Enum):
    active = "active"
    completed = "completed"
    withdrawn = "withdrawn"


class MedicalSeverity(str, enum.Enum):
    mild = "mild"
    moderate = "moderate"
    severe = "severe"
    life_threatening = "life_threatening"


class RestrictionType(str, enum.Enum):
    no_contact = "no_contact"
    no_pickup = "no_pickup"
    supervised_only = "supervised_only"
    no_information = "no_information"


# ── Class ────────────────────────────────────────────────


class SchoolClass(TimestampMixin, Base):
    __tablename__ = "classes"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    room: Mapped[str | None] = mapped_column(String(80))
    cycle_level: Mapped[str | None] = mapped_column(String(40))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


# ── Student ──────────────────────────────────────────────


class Student(TimestampMixin, Base):
    __tablename__ = "students"
    __table_args__ = (
        # One student per approved application; lets a re-run approval find it.
        UniqueConstraint(
            "tenant_id", "source_application_id", name="uq_students_source_application"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True
    )
    first_name: Mapped[str] = mapped_column(String(80), nullable=False)
    last_name: Mapped[str] = mapped_column(String(80), nullable=False)
    preferred_name: Mapped[str | None] = mapped_column(String(80))
    dob: Mapped[date | None] = mapped_column(Date)
    gender: Mapped[str | None] = mapped_column(String(40))
    nationality: Mapped[str | None] = mapped_column(String(80))
    languages: Mapped[list | None] = mapped_column(JSON)
    previous_school: Mapped[str | None] = mapped_column(String(255))
    enrollment_status: Mapped[StudentEnrollmentStatus] = mapped_column(
        Enum(StudentEnrollmentStatus), default=StudentEnrollmentStatus.inquiry
    )
    notes: Mapped[str | None] = mapped_column(Text)
    source_application_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), index=True
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    guardians = relationship("Guardian", back_populates="student")
    enrollments = relationship("ClassEnrollment", back_populates="student")


class ClassEnrollment(TimestampMixin, Base):
    __tablename__ = "enrollments"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "student_id", "class_id", name="uq_enrollments_tenant_student_class"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True
    )
    student_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("students.id"), nullable=False, index=True
    )
    class_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("classes.id"), nullable=False, index=True
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date)
    status: Mapped[ClassEnrollmentStatus] = mapped_column(
        Enum(ClassEnrollmentStatus), default=ClassEnrollmentStatus.active
    )

    student = relationship("Student", back_populates="enrollments")
    school_class = relationship("SchoolClass")


# ── Guardian ─────────────────────────────────────────────


class Guardian(TimestampMixin, Base):
    """A guardian link to a student.

    ``user_id`` is null for a shadow guardian: someone declared on an
    application who has no account yet. Accepting an invitation fills it in.
    """

    __tablename__ = "guardians"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "student_id", "user_id", name="uq_guardians_tenant_student_user"
        ),
        UniqueConstraint(
            "tenant_id", "student_id", "email", name="uq_guardians_tenant_student_email"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True
    )
    student_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("students.id"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("people.id"), index=True
    )
    email: Mapped[str | None] = mapped_column(String(255), index=True)
    first_name: Mapped[str | None] = mapped_column(String(80))
    last_name: Mapped[str | None] = mapped_column(String(80))
    phone: Mapped[str | None] = mapped_column(String(40))
    address: Mapped[str | None] = mapped_column(Text)
    relationship_type: Mapped[str] = mapped_column(
        "relationship", String(40), default="parent"
    )
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False)
    is_emergency_contact: Mapped[bool] = mapped_column(Boolean, default=False)
    pickup_authorized: Mapped[bool] = mapped_column(Boolean, default=True)
    media_consent: Mapped[bool] = mapped_column(Boolean, default=False)
    directory_consent: Mapped[bool] = mapped_column(Boolean, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    student = relationship("Student", back_populates="guardians")


# ── Health & safety ──────────────────────────────────────


class MedicalCondition(TimestampMixin, Base):
    __tablename__ = "medical_conditions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True
    )
    student_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("students.id"), nullable=False, index=True
    )
    condition_type: Mapped[str] = mapped_column(String(80), nullable=False)
    condition_name: Mapped[str] = mapped_column(String(255), nullable=False)
    severity: Mapped[MedicalSeverity] = mapped_column(
        Enum(MedicalSeverity), default=MedicalSeverity.mild
    )
    description: Mapped[str | None] = mapped_column(Text)
    action_plan: Mapped[str | None] = mapped_column(Text)
    requires_medication: Mapped[bool] = mapped_column(Boolean, default=False)
    medication_name: Mapped[str | None] = mapped_column(String(255))
    medication_location: Mapped[str | None] = mapped_column(String(255))
    source_application_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), index=True
    )


class EmergencyContact(TimestampMixin, Base):
    __tablename__ = "emergency_contacts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True
    )
    student_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("students.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    relationship_type: Mapped[str | None] = mapped_column("relationship", String(40))
    phone_primary: Mapped[str] = mapped_column(String(40), nullable=False)
    phone_secondary: Mapped[str | None] = mapped_column(String(40))
    email: Mapped[str | None] = mapped_column(String(255))
    priority_order: Mapped[int] = mapped_column(Integer, default=1)
    notes: Mapped[str | None] = mapped_column(Text)
    source_application_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), index=True
    )


class CustodyRestriction(TimestampMixin, Base):
    __tablename__ = "custody_restrictions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True
    )
    student_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("students.id"), nullable=False, index=True
    )
    restricted_person_name: Mapped[str] = mapped_column(String(255), nullable=False)
    restriction_type: Mapped[RestrictionType] = mapped_column(
        Enum(RestrictionType), nullable=False
    )
    court_order_reference: Mapped[str | None] = mapped_column(String(120))
    effective_date: Mapped[date] = mapped_column(Date, nullable=False)
    expiry_date: Mapped[date | None] = mapped_column(Date)
    notes: Mapped[str | None] = mapped_column(Text)
    source_application_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), index=True
    )
