"""Guardian identity resolution.

Maps a guardian declared on an application onto a guardian row for a
student. The declared person may already hold an account, or may not yet
(a "shadow" guardian, ``user_id`` null, linked later when an invitation is
accepted). Resolution is keyed on (tenant, student, account or email), so
running it twice with the same input never produces a second row.
"""

import logging
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.person import Person
from app.models.student import Guardian
from app.schemas.enrollment import GuardianDeclaration
from app.services.common import normalize_email
from app.services.context import SystemCredential, require_system_credential

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GuardianResolution:
    guardian: Guardian | None
    created: bool = False
    skipped: bool = False


def find_account_by_email(db: Session, email: str) -> Person | None:
    """Accounts are global, so this lookup is deliberately not tenant scoped."""
    return db.scalar(select(Person).where(func.lower(Person.email) == email))


class GuardianResolver:
    def __init__(self, db: Session) -> None:
        self.db = db

    def find_existing(
        self, tenant_id: UUID, student_id: UUID, email: str, account: Person | None
    ) -> tuple[Guardian | None, list[Guardian]]:
        criteria = [Guardian.email == email]
        if account is not None:
            criteria.append(Guardian.user_id == account.id)
        candidates = list(
            self.db.scalars(
                select(Guardian).where(
                    Guardian.tenant_id == tenant_id,
                    Guardian.student_id == student_id,
                    or_(*criteria),
                )
            ).all()
        )
        # An account-linked row wins over an email-only shadow row.
        if account is not None:
            for guardian in candidates:
                if guardian.user_id == account.id:
                    return guardian, candidates
        for guardian in candidates:
            if guardian.email == email:
                return guardian, candidates
        return None, candidates

    def _apply(
        self,
        guardian: Guardian,
        declaration: GuardianDeclaration,
        media_consent: bool,
        directory_consent: bool,
    ) -> None:
        guardian.relationship_type = declaration.relationship
        guardian.is_primary = declaration.is_primary
        guardian.is_emergency_contact = declaration.is_emergency_contact
        guardian.pickup_authorized = declaration.pickup_authorized
        guardian.media_consent = media_consent
        guardian.directory_consent = directory_consent
        if declaration.first_name:
            guardian.first_name = declaration.first_name
        if declaration.last_name:
            guardian.last_name = declaration.last_name
        if declaration.phone:
            guardian.phone = declaration.phone
        if declaration.address:
            guardian.address = declaration.address

    def resolve(
        self,
        credential: SystemCredential,
        student_id: UUID,
        declaration: GuardianDeclaration | dict[str, Any],
        *,
        media_consent: bool = False,
        directory_consent: bool = False,
    ) -> GuardianResolution:
        """Update the matching guardian in place, or insert one.

        Consent comes from the application as a whole, not from the
        individual declaration. Does not commit.
        """
        require_system_credential(credential)
        tenant_id = credential.tenant_id
        declaration = GuardianDeclaration.model_validate(declaration)
        email = normalize_email(declaration.email)
        if not email:
            logger.info(
                "Skipping guardian without email for student %s",
                student_id,
                extra={"tenant_id": tenant_id},
            )
            return GuardianResolution(guardian=None, skipped=True)

        account = find_account_by_email(self.db, email)
        existing, candidates = self.find_existing(tenant_id, student_id, email, account)

        if existing is not None:
            self._apply(existing, declaration, media_consent, directory_consent)
            existing.deleted_at = None
            if account is not None and existing.user_id is None:
                existing.user_id = account.id
            email_owner = next((g for g in candidates if g.email == email), None)
            if email_owner is None or email_owner is existing:
                existing.email = email
            self.db.flush()
            logger.info(
                "Updated guardian %s for student %s",
                existing.id,
                student_id,
                extra={"tenant_id": tenant_id, "actor_id": credential.acting_user_id},
            )
            return GuardianResolution(guardian=existing, created=False)

        guardian = Guardian(
            tenant_id=tenant_id,
            student_id=student_id,
            user_id=account.id if account is not None else None,
            email=email,
        )
        self._apply(guardian, declaration, media_consent, directory_consent)
        try:
            with self.db.begin_nested():
                self.db.add(guardian)
                self.db.flush()
        except IntegrityError:
            # Lost a race with a concurrent resolution; use the row that won.
            existing, _ = self.find_existing(tenant_id, student_id, email, account)
            if existing is None:
                raise
            logger.info(
                "Guardian for %s already existed on student %s",
                email,
                student_id,
                extra={"tenant_id": tenant_id},
            )
            return GuardianResolution(guardian=existing, created=False)

        logger.info(
            "Created %s guardian %s for student %s",
            "linked" if account is not None else "shadow",
            guardian.id,
            student_id,
            extra={"tenant_id": tenant_id, "actor_id": credential.acting_user_id},
        )
        return GuardianResolution(guardian=guardian, created=True)
