"""Parent invitations: issuance, admin management, redemption.

A bearer token is generated once and handed back to the caller; only its
SHA-256 digest is stored. The (tenant, email, student) uniqueness constraint
turns a repeated issue into "already invited" instead of an error.
"""

import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.metrics import INVITATIONS_ISSUED
from app.models.enrollment import ApplicationStatus, EnrollmentApplication
from app.models.invitation import InvitationStatus, ParentInvitation
from app.models.person import Person
from app.models.rbac import PersonRole, Role
from app.models.student import Guardian, Student
from app.models.tenant import Tenant
from app.schemas.enrollment import GuardianDeclaration
from app.schemas.invitation import InvitationAccepted, InvitationPreview
from app.services.common import make_aware, normalize_email
from app.services.context import (
    MANAGE_PARENT_INVITATIONS,
    SystemCredential,
    TenantContext,
    issue_system_credential,
    require_permission,
    require_system_credential,
)
from app.services.guardian_resolver import GuardianResolver
from app.services.results import ActionError, ActionResult, ErrorCode, service_action

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32  # 256 bits
PARENT_ROLE_NAME = "parent"


def generate_invitation_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


def hash_invitation_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def invitation_accept_url(token: str) -> str:
    return f"{settings.app_url.rstrip('/')}/invitations/accept?token={token}"


def _expiry(now: datetime) -> datetime:
    return now + timedelta(days=settings.invitation_expiry_days)


@dataclass(frozen=True)
class IssuedInvitation:
    invitation: ParentInvitation
    # Raw token; None when an existing invitation was returned instead.
    token: str | None
    created: bool


class InvitationService:
    def __init__(self, db: Session) -> None:
        self.db = db

    # ── Helpers ──────────────────────────────────────────

    def _get(self, tenant_id: UUID, invitation_id: UUID) -> ParentInvitation:
        invitation = self.db.scalar(
            select(ParentInvitation).where(
                ParentInvitation.id == invitation_id,
                ParentInvitation.tenant_id == tenant_id,
                ParentInvitation.deleted_at.is_(None),
            )
        )
        if not invitation:
            raise ActionError(ErrorCode.NOT_FOUND, "Invitation not found")
        return invitation

    def _find(self, tenant_id: UUID, email: str, student_id: UUID) -> ParentInvitation | None:
        return self.db.scalar(
            select(ParentInvitation).where(
                ParentInvitation.tenant_id == tenant_id,
                ParentInvitation.email == email,
                ParentInvitation.student_id == student_id,
            )
        )

    def _by_token(self, token: str | None) -> ParentInvitation:
        token = (token or "").strip()
        if not token:
            raise ActionError(ErrorCode.VALIDATION_ERROR, "Invitation token is required")
        invitation = self.db.scalar(
            select(ParentInvitation).where(
                ParentInvitation.token_hash == hash_invitation_token(token),
                ParentInvitation.deleted_at.is_(None),
            )
        )
        if not invitation or invitation.status == InvitationStatus.revoked:
            raise ActionError(ErrorCode.NOT_FOUND, "Invitation not found or has been revoked")
        return invitation

    def _set_status(
        self,
        invitation_id: UUID,
        allowed: InvitationStatus,
        target: InvitationStatus,
        **values: Any,
    ) -> bool:
        stmt = (
            update(ParentInvitation)
            .where(
                ParentInvitation.id == invitation_id,
                ParentInvitation.deleted_at.is_(None),
                ParentInvitation.status == allowed,
            )
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount > 0

    def _check_redeemable(self, invitation: ParentInvitation) -> None:
        if invitation.status != InvitationStatus.pending:
            raise ActionError(
                ErrorCode.VALIDATION_ERROR,
                f"This invitation has already been {invitation.status.value}",
                {"status": invitation.status.value},
            )
        if make_aware(invitation.expires_at) < datetime.now(UTC):
            self._set_status(invitation.id, InvitationStatus.pending, InvitationStatus.expired)
            self.db.commit()
            logger.info(
                "Invitation %s expired on lookup",
                invitation.id,
                extra={"tenant_id": invitation.tenant_id},
            )
            raise ActionError(
                ErrorCode.INVITATION_EXPIRED,
                "This invitation has expired. Please contact the school to request a new one.",
            )

    # ── Issuance ─────────────────────────────────────────

    def issue_invitation(
        self, credential: SystemCredential, email: str | None, student_id: UUID
    ) -> IssuedInvitation:
        """Insert a pending invitation, or return the one that already exists.

        Does not commit. Raises on anything other than a duplicate.
        """
        require_system_credential(credential)
        tenant_id = credential.tenant_id
        email = normalize_email(email)
        if not email:
            raise ActionError(ErrorCode.VALIDATION_ERROR, "Invitation email is required")

        token = generate_invitation_token()
        now = datetime.now(UTC)
        invitation = ParentInvitation(
            tenant_id=tenant_id,
            email=email,
            student_id=student_id,
            invited_by=credential.acting_user_id,
            token_hash=hash_invitation_token(token),
            status=InvitationStatus.pending,
            expires_at=_expiry(now),
        )
        try:
            with self.db.begin_nested():
                self.db.add(invitation)
                self.db.flush()
        except IntegrityError:
            existing = self._find(tenant_id, email, student_id)
            if existing is None:
                raise
            logger.info(
                "Invitation for %s on student %s already exists",
                email,
                student_id,
                extra={"tenant_id": tenant_id},
            )
            return IssuedInvitation(invitation=existing, token=None, created=False)

        INVITATIONS_ISSUED.inc()
        logger.info(
            "Issued invitation %s for student %s",
            invitation.id,
            student_id,
            extra={"tenant_id": tenant_id, "actor_id": credential.acting_user_id},
        )
        return IssuedInvitation(invitation=invitation, token=token, created=True)

    def _rotate_token(
        self, tenant_id: UUID, invitation_id: UUID, *, reopen: bool
    ) -> str | None:
        """Give an invitation a fresh token and expiry window. Does not commit.

        With ``reopen`` any unaccepted invitation goes back to pending;
        without it only a pending one is touched. Returns the raw token, or
        None when no row matched.
        """
        token = generate_invitation_token()
        stmt = update(ParentInvitation).where(
            ParentInvitation.id == invitation_id,
            ParentInvitation.tenant_id == tenant_id,
            ParentInvitation.deleted_at.is_(None),
        )
        if reopen:
            stmt = stmt.where(ParentInvitation.status != InvitationStatus.accepted)
        else:
            stmt = stmt.where(ParentInvitation.status == InvitationStatus.pending)
        stmt = stmt.values(
            status=InvitationStatus.pending,
            token_hash=hash_invitation_token(token),
            expires_at=_expiry(datetime.now(UTC)),
        ).execution_options(synchronize_session=False)
        if self.db.execute(stmt).rowcount == 0:
            return None
        return token

    def reissue_pending(
        self, credential: SystemCredential, invitation: ParentInvitation
    ) -> IssuedInvitation:
        """Rotate the token of a still-pending invitation so it can be delivered again.

        Does not commit. An invitation that is no longer pending comes back
        unchanged and without a token.
        """
        require_system_credential(credential, invitation.tenant_id)
        token = self._rotate_token(invitation.tenant_id, invitation.id, reopen=False)
        if token is None:
            return IssuedInvitation(invitation=invitation, token=None, created=False)
        self.db.refresh(invitation)
        logger.info(
            "Reissued pending invitation %s",
            invitation.id,
            extra={"tenant_id": invitation.tenant_id, "actor_id": credential.acting_user_id},
        )
        return IssuedInvitation(invitation=invitation, token=token, created=False)

    # ── Admin operations ─────────────────────────────────

    @service_action("Failed to list invitations")
    def list_invitations(
        self,
        ctx: TenantContext,
        status: InvitationStatus | None = None,
        student_id: UUID | None = None,
    ) -> ActionResult[list[ParentInvitation]]:
        require_permission(ctx, MANAGE_PARENT_INVITATIONS)
        stmt = select(ParentInvitation).where(
            ParentInvitation.tenant_id == ctx.tenant_id,
            ParentInvitation.deleted_at.is_(None),
        )
        if status is not None:
            stmt = stmt.where(ParentInvitation.status == status)
        if student_id is not None:
            stmt = stmt.where(ParentInvitation.student_id == student_id)
        stmt = stmt.order_by(ParentInvitation.created_at.desc())
        return ActionResult.success(list(self.db.scalars(stmt).all()))

    @service_action("Failed to create invitation", ErrorCode.CREATE_FAILED)
    def create_invitation(
        self, ctx: TenantContext, email: str, student_id: UUID
    ) -> ActionResult[IssuedInvitation]:
        require_permission(ctx, MANAGE_PARENT_INVITATIONS)
        student = self.db.scalar(
            select(Student.id).where(
                Student.id == student_id,
                Student.tenant_id == ctx.tenant_id,
                Student.deleted_at.is_(None),
            )
        )
        if student is None:
            raise ActionError(ErrorCode.NOT_FOUND, "Student not found")

        credential = issue_system_credential(ctx, "manual_parent_invitation")
        issued = self.issue_invitation(credential, email, student_id)
        if not issued.created:
            raise ActionError(
                ErrorCode.ALREADY_EXISTS,
                "An invitation for this email and student already exists",
                {"invitation_id": str(issued.invitation.id)},
            )
        self.db.commit()
        self.db.refresh(issued.invitation)
        return ActionResult.success(issued)

    @service_action("Failed to resend invitation", ErrorCode.UPDATE_FAILED)
    def resend_invitation(
        self, ctx: TenantContext, invitation_id: UUID
    ) -> ActionResult[IssuedInvitation]:
        """Rotate the token and restart the expiry window."""
        require_permission(ctx, MANAGE_PARENT_INVITATIONS)
        invitation = self._get(ctx.tenant_id, invitation_id)
        if invitation.status == InvitationStatus.accepted:
            raise ActionError(
                ErrorCode.VALIDATION_ERROR, "This invitation has already been accepted"
            )

        token = self._rotate_token(ctx.tenant_id, invitation.id, reopen=True)
        if token is None:
            raise ActionError(
                ErrorCode.INVALID_STATUS_TRANSITION,
                "This invitation has already been accepted",
            )
        self.db.commit()
        invitation = self._get(ctx.tenant_id, invitation_id)
        self.db.refresh(invitation)
        logger.info(
            "Resent invitation %s",
            invitation.id,
            extra={"tenant_id": ctx.tenant_id, "actor_id": ctx.user_id},
        )
        return ActionResult.success(IssuedInvitation(invitation=invitation, token=token, created=False))

    @service_action("Failed to revoke invitation", ErrorCode.UPDATE_FAILED)
    def revoke_invitation(
        self, ctx: TenantContext, invitation_id: UUID
    ) -> ActionResult[ParentInvitation]:
        require_permission(ctx, MANAGE_PARENT_INVITATIONS)
        invitation = self._get(ctx.tenant_id, invitation_id)
        if not self._set_status(invitation.id, InvitationStatus.pending, InvitationStatus.revoked):
            current = self._get(ctx.tenant_id, invitation_id)
            raise ActionError(
                ErrorCode.INVALID_STATUS_TRANSITION,
                f'Cannot revoke an invitation with status "{current.status.value}"',
                {"current_status": current.status.value},
            )
        self.db.commit()
        invitation = self._get(ctx.tenant_id, invitation_id)
        self.db.refresh(invitation)
        logger.info(
            "Revoked invitation %s",
            invitation.id,
            extra={"tenant_id": ctx.tenant_id, "actor_id": ctx.user_id},
        )
        return ActionResult.success(invitation)

    # ── Redemption ───────────────────────────────────────

    @service_action("Failed to validate invitation")
    def validate_invitation_token(self, token: str | None) -> ActionResult[InvitationPreview]:
        invitation = self._by_token(token)
        self._check_redeemable(invitation)
        student = self.db.get(Student, invitation.student_id)
        tenant = self.db.get(Tenant, invitation.tenant_id)
        return ActionResult.success(
            InvitationPreview(
                email=invitation.email,
                student_first_name=student.first_name if student else "",
                student_last_name=student.last_name if student else "",
                tenant_name=tenant.name if tenant else None,
                expires_at=make_aware(invitation.expires_at),
            )
        )

    def _declaration_from_application(
        self, invitation: ParentInvitation
    ) -> tuple[GuardianDeclaration | None, bool, bool]:
        application = self.db.scalar(
            select(EnrollmentApplication)
            .where(
                EnrollmentApplication.tenant_id == invitation.tenant_id,
                EnrollmentApplication.created_student_id == invitation.student_id,
                EnrollmentApplication.status == ApplicationStatus.approved,
                EnrollmentApplication.deleted_at.is_(None),
            )
            .order_by(EnrollmentApplication.reviewed_at.desc())
            .limit(1)
        )
        if application is None:
            return None, False, False
        for entry in application.guardians or []:
            if normalize_email(entry.get("email")) == invitation.email:
                return (
                    GuardianDeclaration.model_validate(entry),
                    application.media_consent,
                    application.directory_consent,
                )
        return None, application.media_consent, application.directory_consent

    def _link_guardian(
        self, credential: SystemCredential, invitation: ParentInvitation, person: Person
    ) -> Guardian:
        resolver = GuardianResolver(self.db)
        declaration, media_consent, directory_consent = self._declaration_from_application(
            invitation
        )
        if declaration is not None:
            guardian = resolver.resolve(
                credential,
                invitation.student_id,
                declaration,
                media_consent=media_consent,
                directory_consent=directory_consent,
            ).guardian
        else:
            guardian, _ = resolver.find_existing(
                invitation.tenant_id, invitation.student_id, invitation.email, person
            )
            if guardian is None:
                guardian = Guardian(
                    tenant_id=invitation.tenant_id,
                    student_id=invitation.student_id,
                    email=invitation.email,
                    first_name=person.first_name,
                    last_name=person.last_name,
                    relationship_type="parent",
                    is_primary=True,
                    media_consent=media_consent,
                    directory_consent=directory_consent,
                )
                self.db.add(guardian)
        if guardian.user_id is None:
            guardian.user_id = person.id
        self.db.flush()
        return guardian

    def _grant_parent_role(self, tenant_id: UUID, person_id: UUID) -> None:
        role = self.db.scalar(
            select(Role).where(
                Role.tenant_id == tenant_id,
                func.lower(Role.name) == PARENT_ROLE_NAME,
                Role.is_active.is_(True),
            )
        )
        if role is None:
            logger.warning(
                "No parent role configured; membership not granted",
                extra={"tenant_id": tenant_id, "actor_id": person_id},
            )
            return
        existing = self.db.scalar(
            select(PersonRole.id).where(
                PersonRole.tenant_id == tenant_id,
                PersonRole.person_id == person_id,
                PersonRole.role_id == role.id,
            )
        )
        if existing is not None:
            return
        try:
            with self.db.begin_nested():
                self.db.add(PersonRole(tenant_id=tenant_id, person_id=person_id, role_id=role.id))
                self.db.flush()
        except IntegrityError:
            logger.info("Parent role already granted", extra={"tenant_id": tenant_id})

    @service_action("Failed to accept invitation", ErrorCode.UPDATE_FAILED)
    def accept_invitation(
        self, user_id: UUID, email: str | None, token: str | None
    ) -> ActionResult[InvitationAccepted]:
        """Redeem an invitation for a signed-in account.

        Links the account onto the shadow guardian the approval created (or
        creates the guardian), grants the tenant's parent role when one is
        configured, then marks the invitation accepted.
        """
        invitation = self._by_token(token)
        self._check_redeemable(invitation)
        if normalize_email(email) != invitation.email:
            raise ActionError(
                ErrorCode.EMAIL_MISMATCH,
                f"This invitation was sent to {invitation.email}. "
                "Please sign in with that email address.",
            )
        person = self.db.get(Person, user_id)
        if person is None:
            raise ActionError(ErrorCode.NOT_FOUND, "Account not found")

        ctx = TenantContext(tenant_id=invitation.tenant_id, user_id=person.id, email=invitation.email)
        credential = issue_system_credential(ctx, "invitation_acceptance")
        guardian = self._link_guardian(credential, invitation, person)
        self._grant_parent_role(invitation.tenant_id, person.id)

        accepted = self._set_status(
            invitation.id,
            InvitationStatus.pending,
            InvitationStatus.accepted,
            accepted_at=datetime.now(UTC),
            accepted_by=person.id,
        )
        if not accepted:
            raise ActionError(
                ErrorCode.INVALID_STATUS_TRANSITION, "This invitation is no longer pending"
            )
        result = InvitationAccepted(
            invitation_id=invitation.id,
            student_id=invitation.student_id,
            guardian_id=guardian.id,
            tenant_id=invitation.tenant_id,
        )
        self.db.commit()
        logger.info(
            "Invitation %s accepted",
            result.invitation_id,
            extra={"tenant_id": result.tenant_id, "actor_id": person.id},
        )
        return ActionResult.success(result)

    # ── Maintenance ──────────────────────────────────────

    @service_action("Failed to expire invitations", ErrorCode.UPDATE_FAILED)
    def expire_invitations(self, now: datetime | None = None) -> ActionResult[int]:
        now = make_aware(now) or datetime.now(UTC)
        stmt = (
            update(ParentInvitation)
            .where(
                ParentInvitation.status == InvitationStatus.pending,
                ParentInvitation.expires_at < now,
                ParentInvitation.deleted_at.is_(None),
            )
            .values(status=InvitationStatus.expired)
            .execution_options(synchronize_session=False)
        )
        count = self.db.execute(stmt).rowcount
        self.db.commit()
        if count:
            logger.info("Expired %d pending invitations", count)
        return ActionResult.success(count)


def enqueue_invitation_emails(
    issued: list[tuple[UUID, str | None]], tenant_id: UUID | None = None
) -> int:
    """Queue one email per freshly minted token. Broker errors are logged only."""
    if not settings.invitation_emails_enabled:
        return 0
    from app.celery_app import celery_app

    queued = 0
    for invitation_id, token in issued:
        if not token:
            continue
        try:
            celery_app.send_task(
                "app.tasks.invitations.send_invitation_email",
                args=[str(invitation_id), token],
            )
            queued += 1
        except Exception:
            logger.exception(
                "Failed to enqueue invitation email for %s",
                invitation_id,
                extra={"tenant_id": tenant_id},
            )
    return queued
