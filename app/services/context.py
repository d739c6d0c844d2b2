"""Caller context and capabilities passed explicitly into every service call."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from uuid import UUID

logger = logging.getLogger(__name__)

MANAGE_ENROLLMENT_PERIODS = "manage_enrollment_periods"
REVIEW_APPLICATIONS = "review_applications"
APPROVE_APPLICATIONS = "approve_applications"
MANAGE_PARENT_INVITATIONS = "manage_parent_invitations"

ADMISSIONS_PERMISSIONS = (
    MANAGE_ENROLLMENT_PERIODS,
    REVIEW_APPLICATIONS,
    APPROVE_APPLICATIONS,
    MANAGE_PARENT_INVITATIONS,
)

_ISSUER = object()


class PermissionDenied(Exception):
    def __init__(self, permission: str, message: str | None = None) -> None:
        self.permission = permission
        super().__init__(message or f"Missing permission: {permission}")


@dataclass(frozen=True)
class TenantContext:
    """Who is calling, for which tenant, with what grants."""

    tenant_id: UUID
    user_id: UUID | None = None
    email: str | None = None
    permissions: frozenset[str] = field(default_factory=frozenset)

    def has_permission(self, key: str) -> bool:
        return key in self.permissions


def require_permission(ctx: TenantContext | None, key: str) -> None:
    if ctx is None or not ctx.has_permission(key):
        raise PermissionDenied(key)


@dataclass(frozen=True)
class SystemCredential:
    """Elevated capability for cross-entity writes made on a caller's behalf.

    Separate from the caller's own permissions: approving an application is
    gated by ``approve_applications``, but the guardian and invitation writes
    the approval performs are gated by this credential. It records who the
    elevation was granted to and why, so those writes stay attributable.
    Only :func:`issue_system_credential` can build one.
    """

    tenant_id: UUID
    acting_user_id: UUID | None
    purpose: str
    issued_at: datetime
    _issuer: object = field(default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self._issuer is not _ISSUER:
            raise TypeError("SystemCredential must be created with issue_system_credential()")


def issue_system_credential(ctx: TenantContext, purpose: str) -> SystemCredential:
    credential = SystemCredential(
        tenant_id=ctx.tenant_id,
        acting_user_id=ctx.user_id,
        purpose=purpose,
        issued_at=datetime.now(UTC),
        _issuer=_ISSUER,
    )
    logger.info(
        "System credential issued for %s",
        purpose,
        extra={"tenant_id": ctx.tenant_id, "actor_id": ctx.user_id},
    )
    return credential


def require_system_credential(
    credential: SystemCredential | None, tenant_id: UUID | None = None
) -> None:
    if not isinstance(credential, SystemCredential):
        raise PermissionDenied("system", "A system credential is required")
    if tenant_id is not None and credential.tenant_id != tenant_id:
        raise PermissionDenied("system", "A system credential for this tenant is required")
