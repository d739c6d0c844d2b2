from fastapi import Depends, Header, HTTPException, Request
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import settings
from app.db import SessionLocal
from app.models.person import Person
from app.models.rbac import Permission, PersonRole, Role, RolePermission
from app.services.common import coerce_uuid, normalize_email
from app.services.context import ADMISSIONS_PERMISSIONS, TenantContext

ADMIN_ROLE = "admin"


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


def decode_access_token(token: str) -> dict:
    if not settings.jwt_secret:
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        payload = jwt.decode(
            token, settings.jwt_secret, algorithms=[settings.jwt_algorithm]
        )
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token") from None
    if payload.get("typ", "access") != "access":
        raise HTTPException(status_code=401, detail="Invalid token")
    return payload


def _as_list(value: object) -> list[str]:
    if isinstance(value, list):
        return [str(item) for item in value]
    if isinstance(value, str):
        return value.split()
    return []


def require_user_auth(
    authorization: str | None = Header(default=None),
    request: Request = None,
    db: Session = Depends(get_db),
) -> dict:
    """Authenticated caller, tenant not required (invitation acceptance)."""
    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    payload = decode_access_token(token)
    try:
        person_id = coerce_uuid(payload.get("sub"))
    except ValueError:
        person_id = None
    if person_id is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    person = db.get(Person, person_id)
    if person is None or not person.is_active:
        raise HTTPException(status_code=401, detail="Unauthorized")
    if request is not None:
        request.state.actor_id = str(person_id)
    return {
        "person_id": person_id,
        # The directory email is the verified one; the claim is a fallback.
        "email": normalize_email(person.email or payload.get("email")),
        "tenant_id": payload.get("tenant_id"),
        "roles": _as_list(payload.get("roles")),
        "scopes": _as_list(payload.get("scopes")) + _as_list(payload.get("scope")),
    }


def load_permission_keys(db: Session, tenant_id, person_id) -> set[str]:
    stmt = (
        select(Permission.key)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .join(Role, RolePermission.role_id == Role.id)
        .join(PersonRole, PersonRole.role_id == Role.id)
        .where(
            PersonRole.person_id == person_id,
            PersonRole.tenant_id == tenant_id,
            Role.tenant_id == tenant_id,
            Role.is_active.is_(True),
            Permission.is_active.is_(True),
        )
    )
    return set(db.scalars(stmt).all())


def get_tenant_context(
    auth: dict = Depends(require_user_auth),
    db: Session = Depends(get_db),
) -> TenantContext:
    try:
        tenant_id = coerce_uuid(auth.get("tenant_id"))
    except ValueError:
        tenant_id = None
    if tenant_id is None:
        raise HTTPException(status_code=403, detail="Tenant context required")
    permissions = set(auth["scopes"])
    if ADMIN_ROLE in auth["roles"]:
        permissions.update(ADMISSIONS_PERMISSIONS)
    permissions |= load_permission_keys(db, tenant_id, auth["person_id"])
    return TenantContext(
        tenant_id=tenant_id,
        user_id=auth["person_id"],
        email=auth["email"] or None,
        permissions=frozenset(permissions),
    )
