from datetime import date, datetime
from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import (
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)

from app.models.enrollment import (
    ApplicationStatus,
    EnrollmentPeriodStatus,
    EnrollmentPeriodType,
)
from app.models.student import MedicalSeverity, RestrictionType

# ── Custom field definitions ─────────────────────────────


class _CustomFieldBase(BaseModel):
    key: str = Field(min_length=1, max_length=64, pattern=r"^[a-z][a-z0-9_]*$")
    label: str = Field(min_length=1, max_length=255)
    required: bool = False

    def check_answer(self, value: Any) -> str | None:
        """Return an error message for an invalid answer, or None."""
        raise NotImplementedError


class TextField(_CustomFieldBase):
    type: Literal["text"] = "text"
    max_length: int | None = Field(default=255, gt=0)

    def check_answer(self, value: Any) -> str | None:
        if not isinstance(value, str):
            return f"{self.label} must be text"
        if self.max_length and len(value) > self.max_length:
            return f"{self.label} must be at most {self.max_length} characters"
        return None


class TextareaField(_CustomFieldBase):
    type: Literal["textarea"] = "textarea"
    max_length: int | None = Field(default=5000, gt=0)

    def check_answer(self, value: Any) -> str | None:
        if not isinstance(value, str):
            return f"{self.label} must be text"
        if self.max_length and len(value) > self.max_length:
            return f"{self.label} must be at most {self.max_length} characters"
        return None


class SelectField(_CustomFieldBase):
    type: Literal["select"] = "select"
    options: list[str] = Field(min_length=1)

    def check_answer(self, value: Any) -> str | None:
        if value not in self.options:
            return f"{self.label} must be one of: {', '.join(self.options)}"
        return None


class CheckboxField(_CustomFieldBase):
    type: Literal["checkbox"] = "checkbox"

    def check_answer(self, value: Any) -> str | None:
        if not isinstance(value, bool):
            return f"{self.label} must be true or false"
        return None


class DateField(_CustomFieldBase):
    type: Literal["date"] = "date"

    def check_answer(self, value: Any) -> str | None:
        if isinstance(value, date):
            return None
        try:
            date.fromisoformat(str(value))
        except ValueError:
            return f"{self.label} must be a date (YYYY-MM-DD)"
        return None


CustomFieldDefinition = Annotated[
    Union[TextField, TextareaField, SelectField, CheckboxField, DateField],
    Field(discriminator="type"),
]

custom_fields_adapter = TypeAdapter(list[CustomFieldDefinition])


def is_blank_answer(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


# ── Embedded declarations ────────────────────────────────


class _Declaration(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    @field_validator("email", mode="before", check_fields=False)
    @classmethod
    def _blank_email_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class GuardianDeclaration(_Declaration):
    first_name: str | None = Field(default=None, max_length=80)
    last_name: str | None = Field(default=None, max_length=80)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=40)
    relationship: str = Field(default="parent", min_length=1, max_length=40)
    is_primary: bool = False
    is_emergency_contact: bool = False
    pickup_authorized: bool = True
    address: str | None = Field(default=None, max_length=500)


class MedicalConditionDeclaration(_Declaration):
    condition_type: str = Field(min_length=1, max_length=80)
    condition_name: str = Field(min_length=1, max_length=255)
    severity: MedicalSeverity = MedicalSeverity.mild
    description: str | None = Field(default=None, max_length=2000)
    action_plan: str | None = Field(default=None, max_length=2000)
    requires_medication: bool = False
    medication_name: str | None = Field(default=None, max_length=255)
    medication_location: str | None = Field(default=None, max_length=255)


class EmergencyContactDeclaration(_Declaration):
    name: str = Field(min_length=1, max_length=255)
    relationship: str | None = Field(default=None, max_length=40)
    phone_primary: str = Field(min_length=1, max_length=40)
    phone_secondary: str | None = Field(default=None, max_length=40)
    email: EmailStr | None = None
    priority_order: int = Field(default=1, ge=1, le=10)


class CustodyRestrictionDeclaration(_Declaration):
    restricted_person_name: str = Field(min_length=1, max_length=255)
    restriction_type: RestrictionType
    court_order_reference: str | None = Field(default=None, max_length=120)
    notes: str | None = Field(default=None, max_length=1000)


# ── Enrollment Period ────────────────────────────────────


class EnrollmentPeriodBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    name: str = Field(min_length=1, max_length=255)
    period_type: EnrollmentPeriodType
    year: int = Field(ge=2020, le=2100)
    opens_at: datetime
    closes_at: datetime | None = None
    available_programs: list[str] = Field(default_factory=list)
    required_documents: list[str] = Field(default_factory=list)
    custom_fields: list[CustomFieldDefinition] = Field(default_factory=list)
    welcome_message: str | None = None
    confirmation_message: str | None = None


def _check_custom_field_keys(fields: list[_CustomFieldBase] | None) -> None:
    if not fields:
        return
    keys = [field.key for field in fields]
    if len(keys) != len(set(keys)):
        raise ValueError("Custom field keys must be unique")


class EnrollmentPeriodCreate(EnrollmentPeriodBase):
    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Name is required")
        return value

    @model_validator(mode="after")
    def _check_window(self) -> "EnrollmentPeriodCreate":
        if self.closes_at is not None and self.closes_at <= self.opens_at:
            raise ValueError("closes_at must be after opens_at")
        _check_custom_field_keys(self.custom_fields)
        return self


class EnrollmentPeriodUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")
    name: str | None = Field(default=None, min_length=1, max_length=255)
    period_type: EnrollmentPeriodType | None = None
    year: int | None = Field(default=None, ge=2020, le=2100)
    opens_at: datetime | None = None
    closes_at: datetime | None = None
    available_programs: list[str] | None = None
    required_documents: list[str] | None = None
    custom_fields: list[CustomFieldDefinition] | None = None
    welcome_message: str | None = None
    confirmation_message: str | None = None

    @model_validator(mode="after")
    def _check_fields(self) -> "EnrollmentPeriodUpdate":
        for field in ("name", "period_type", "year", "opens_at"):
            if field in self.model_fields_set and getattr(self, field) is None:
                raise ValueError(f"{field} cannot be null")
        if self.name is not None and not self.name.strip():
            raise ValueError("Name is required")
        if (
            self.opens_at is not None
            and self.closes_at is not None
            and self.closes_at <= self.opens_at
        ):
            raise ValueError("closes_at must be after opens_at")
        _check_custom_field_keys(self.custom_fields)
        return self


class EnrollmentPeriodRead(EnrollmentPeriodBase):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)
    id: UUID
    tenant_id: UUID
    status: EnrollmentPeriodStatus
    created_at: datetime
    updated_at: datetime
    # Populated in service
    total_applications: int = 0
    submitted_count: int = 0
    approved_count: int = 0
    rejected_count: int = 0


class PublicEnrollmentPeriod(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: UUID
    name: str
    period_type: EnrollmentPeriodType
    year: int
    opens_at: datetime
    closes_at: datetime | None = None
    available_programs: list[str] = Field(default_factory=list)
    required_documents: list[str] = Field(default_factory=list)
    custom_fields: list[CustomFieldDefinition] = Field(default_factory=list)
    welcome_message: str | None = None


# ── Enrollment Application ───────────────────────────────


class ApplicationSubmit(BaseModel):
    """Public submission payload. Business rules are checked again in the service."""

    model_config = ConfigDict(str_strip_whitespace=True)
    enrollment_period_id: UUID
    submitted_by_email: EmailStr

    child_first_name: str = Field(default="", max_length=80)
    child_last_name: str = Field(default="", max_length=80)
    child_preferred_name: str | None = Field(default=None, max_length=80)
    child_date_of_birth: date | None = None
    child_gender: str | None = Field(default=None, max_length=40)
    child_nationality: str | None = Field(default=None, max_length=80)
    child_languages: list[str] = Field(default_factory=list)
    child_previous_school: str | None = Field(default=None, max_length=255)

    requested_program: str | None = Field(default=None, max_length=120)
    requested_start_date: date | None = None

    existing_student_id: UUID | None = None

    guardians: list[GuardianDeclaration] = Field(default_factory=list, max_length=6)
    medical_conditions: list[MedicalConditionDeclaration] = Field(default_factory=list)
    emergency_contacts: list[EmergencyContactDeclaration] = Field(
        default_factory=list, max_length=6
    )
    custody_restrictions: list[CustodyRestrictionDeclaration] = Field(
        default_factory=list
    )

    media_consent: bool = False
    directory_consent: bool = False
    terms_accepted: bool = False
    privacy_accepted: bool = False

    custom_responses: dict[str, Any] = Field(default_factory=dict)


class ApplicationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: UUID
    tenant_id: UUID
    enrollment_period_id: UUID
    status: ApplicationStatus
    submitted_by_email: str
    submitted_at: datetime | None = None
    child_first_name: str
    child_last_name: str
    child_preferred_name: str | None = None
    child_date_of_birth: date
    child_gender: str | None = None
    child_nationality: str | None = None
    child_languages: list[str] | None = None
    child_previous_school: str | None = None
    requested_program: str | None = None
    requested_start_date: date | None = None
    existing_student_id: UUID | None = None
    guardians: list[GuardianDeclaration] = Field(default_factory=list)
    medical_conditions: list[MedicalConditionDeclaration] = Field(default_factory=list)
    emergency_contacts: list[EmergencyContactDeclaration] = Field(default_factory=list)
    custody_restrictions: list[CustodyRestrictionDeclaration] = Field(
        default_factory=list
    )
    media_consent: bool = False
    directory_consent: bool = False
    terms_accepted: bool = False
    terms_accepted_at: datetime | None = None
    privacy_accepted: bool = False
    custom_responses: dict[str, Any] = Field(default_factory=dict)
    reviewed_by: UUID | None = None
    reviewed_at: datetime | None = None
    admin_notes: str | None = None
    change_request_notes: str | None = None
    rejection_reason: str | None = None
    created_student_id: UUID | None = None
    approved_class_id: UUID | None = None
    created_at: datetime
    updated_at: datetime


class PeriodSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: UUID
    name: str
    year: int
    period_type: EnrollmentPeriodType
    status: EnrollmentPeriodStatus


class ApplicationDetail(ApplicationRead):
    period: PeriodSummary | None = None


class ApplicationSubmitted(BaseModel):
    id: UUID
    status: ApplicationStatus
    confirmation_message: str | None = None


class ApplicationStatusSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: UUID
    status: ApplicationStatus
    child_first_name: str
    child_last_name: str
    submitted_at: datetime | None = None
    change_request_notes: str | None = None
    rejection_reason: str | None = None


class RequestChangesPayload(BaseModel):
    notes: str = ""


class RejectPayload(BaseModel):
    reason: str = ""


class ApprovePayload(BaseModel):
    class_id: UUID | None = None
    admin_notes: str | None = None
    start_date: date | None = None


class ApprovalResult(BaseModel):
    application: ApplicationRead
    student_id: UUID
    invitation_count: int
    guardian_count: int
