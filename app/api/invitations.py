"""Parent invitation API: admin management plus authenticated acceptance."""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.api.deps import get_db, get_tenant_context, require_user_auth
from app.errors import unwrap
from app.models.invitation import InvitationStatus
from app.schemas.invitation import (
    InvitationAccept,
    InvitationAccepted,
    InvitationCreate,
    InvitationIssued,
    InvitationRead,
)
from app.services.context import TenantContext
from app.services.invitation import (
    InvitationService,
    IssuedInvitation,
    enqueue_invitation_emails,
    invitation_accept_url,
)

router = APIRouter(prefix="/invitations", tags=["invitations"])


def _issued(issued: IssuedInvitation) -> InvitationIssued:
    return InvitationIssued(
        invitation=InvitationRead.model_validate(issued.invitation),
        token=issued.token or "",
        accept_url=invitation_accept_url(issued.token) if issued.token else "",
    )


@router.get("", response_model=list[InvitationRead])
def list_invitations(
    status_filter: InvitationStatus | None = Query(default=None, alias="status"),
    student_id: UUID | None = None,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> list[InvitationRead]:
    return unwrap(
        InvitationService(db).list_invitations(ctx, status=status_filter, student_id=student_id)
    )


@router.post("", response_model=InvitationIssued, status_code=status.HTTP_201_CREATED)
def create_invitation(
    payload: InvitationCreate,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> InvitationIssued:
    issued = unwrap(InvitationService(db).create_invitation(ctx, payload.email, payload.student_id))
    enqueue_invitation_emails([(issued.invitation.id, issued.token)], ctx.tenant_id)
    return _issued(issued)


@router.post("/accept", response_model=InvitationAccepted)
def accept_invitation(
    payload: InvitationAccept,
    db: Session = Depends(get_db),
    auth: dict = Depends(require_user_auth),
) -> InvitationAccepted:
    return unwrap(
        InvitationService(db).accept_invitation(auth["person_id"], auth["email"], payload.token)
    )


@router.post("/{invitation_id}/resend", response_model=InvitationIssued)
def resend_invitation(
    invitation_id: UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> InvitationIssued:
    issued = unwrap(InvitationService(db).resend_invitation(ctx, invitation_id))
    enqueue_invitation_emails([(issued.invitation.id, issued.token)], ctx.tenant_id)
    return _issued(issued)


@router.post("/{invitation_id}/revoke", response_model=InvitationRead)
def revoke_invitation(
    invitation_id: UUID,
    db: Session = Depends(get_db),
    ctx: TenantContext = Depends(get_tenant_context),
) -> InvitationRead:
    return unwrap(InvitationService(db).revoke_invitation(ctx, invitation_id))
