import logging

from app.celery_app import celery_app
from app.config import settings
from app.db import session_scope
from app.models.invitation import InvitationStatus, ParentInvitation
from app.models.student import Student
from app.models.tenant import Tenant
from app.services import email as email_service
from app.services.common import coerce_uuid
from app.services.invitation import InvitationService, invitation_accept_url

logger = logging.getLogger(__name__)

SEND_INVITATION_EMAIL = "app.tasks.invitations.send_invitation_email"
EXPIRE_INVITATIONS = "app.tasks.invitations.expire_invitations"


@celery_app.task(name=SEND_INVITATION_EMAIL)
def send_invitation_email(invitation_id: str, token: str) -> bool:
    """Deliver the accept link for a freshly issued invitation.

    The raw token only exists in the task arguments; the database keeps its
    digest. Invitations that stopped being pending before delivery are skipped.
    """
    with session_scope() as session:
        invitation = session.get(ParentInvitation, coerce_uuid(invitation_id))
        if invitation is None or invitation.status != InvitationStatus.pending:
            logger.info("Skipping invitation email for %s", invitation_id)
            return False
        student = session.get(Student, invitation.student_id)
        tenant = session.get(Tenant, invitation.tenant_id)
        student_name = (
            f"{student.preferred_name or student.first_name} {student.last_name}"
            if student
            else None
        )
        return email_service.send_invitation_email(
            session,
            invitation.email,
            invitation_accept_url(token),
            student_name=student_name,
            school_name=tenant.name if tenant else None,
            expiry_days=settings.invitation_expiry_days,
        )


@celery_app.task(name=EXPIRE_INVITATIONS)
def expire_invitations() -> int:
    with session_scope() as session:
        result = InvitationService(session).expire_invitations()
        if not result.ok:
            logger.error("Invitation expiry sweep failed: %s", result.error)
            return 0
        return result.data or 0
