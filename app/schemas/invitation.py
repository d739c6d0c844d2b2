from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from app.models.invitation import InvitationStatus


class InvitationCreate(BaseModel):
    email: EmailStr
    student_id: UUID


class InvitationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: UUID
    tenant_id: UUID
    email: str
    student_id: UUID
    invited_by: UUID | None = None
    status: InvitationStatus
    expires_at: datetime
    accepted_at: datetime | None = None
    accepted_by: UUID | None = None
    created_at: datetime
    updated_at: datetime


class InvitationIssued(BaseModel):
    """Returned once, when a token has just been minted."""

    invitation: InvitationRead
    token: str
    accept_url: str


class InvitationPreview(BaseModel):
    email: str
    student_first_name: str
    student_last_name: str
    tenant_name: str | None = None
    expires_at: datetime


class InvitationAccept(BaseModel):
    token: str = Field(min_length=1, max_length=500)


class InvitationAccepted(BaseModel):
    invitation_id: UUID
    student_id: UUID
    guardian_id: UUID
    tenant_id: UUID
