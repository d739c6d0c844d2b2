import argparse

from dotenv import load_dotenv

from app.db import SessionLocal
from app.models.person import Person
from app.models.rbac import Permission, PersonRole, Role, RolePermission
from app.models.tenant import Tenant
from app.services.context import (
    APPROVE_APPLICATIONS,
    MANAGE_ENROLLMENT_PERIODS,
    MANAGE_PARENT_INVITATIONS,
    REVIEW_APPLICATIONS,
)
from app.services.invitation import PARENT_ROLE_NAME


DEFAULT_PERMISSIONS = [
    (MANAGE_ENROLLMENT_PERIODS, "Create, edit and run enrollment periods"),
    (REVIEW_APPLICATIONS, "Review, request changes on and reject applications"),
    (APPROVE_APPLICATIONS, "Approve applications and create student records"),
    (MANAGE_PARENT_INVITATIONS, "Issue, resend and revoke parent invitations"),
]

DEFAULT_ROLES = [
    ("admin", "Full admissions access"),
    ("registrar", "Runs admissions day to day"),
    ("reviewer", "Reviews applications"),
    (PARENT_ROLE_NAME, "Parent or guardian of an enrolled student"),
]

ROLE_PERMISSIONS = {
    "admin": [perm for perm, _ in DEFAULT_PERMISSIONS],
    "registrar": [perm for perm, _ in DEFAULT_PERMISSIONS],
    "reviewer": [REVIEW_APPLICATIONS],
    PARENT_ROLE_NAME: [],
}


def parse_args():
    parser = argparse.ArgumentParser(description="Seed admissions roles and permissions.")
    parser.add_argument("--tenant-slug", required=True, help="Tenant to seed roles for.")
    parser.add_argument("--tenant-name", help="Create the tenant with this name if missing.")
    parser.add_argument("--admin-email", help="Email to map to admin role.")
    parser.add_argument("--admin-person-id", help="Person ID to map to admin role.")
    return parser.parse_args()


def _ensure_tenant(db, slug, name):
    tenant = db.query(Tenant).filter(Tenant.slug == slug).first()
    if not tenant:
        if not name:
            raise SystemExit(f"Tenant '{slug}' not found. Pass --tenant-name to create it.")
        tenant = Tenant(slug=slug, name=name, is_active=True)
        db.add(tenant)
        db.flush()
    return tenant


def _ensure_role(db, tenant_id, name, description):
    role = (
        db.query(Role)
        .filter(Role.tenant_id == tenant_id)
        .filter(Role.name == name)
        .first()
    )
    if not role:
        role = Role(
            tenant_id=tenant_id,
            name=name,
            description=description,
            is_system=True,
            is_active=True,
        )
        db.add(role)
    else:
        if not role.is_active:
            role.is_active = True
        if description and not role.description:
            role.description = description
    return role


def _ensure_permission(db, key, description):
    permission = db.query(Permission).filter(Permission.key == key).first()
    if not permission:
        permission = Permission(key=key, description=description, is_active=True)
        db.add(permission)
    else:
        if not permission.is_active:
            permission.is_active = True
        if description and not permission.description:
            permission.description = description
    return permission


def _ensure_role_permission(db, role_id, permission_id):
    link = (
        db.query(RolePermission)
        .filter(RolePermission.role_id == role_id)
        .filter(RolePermission.permission_id == permission_id)
        .first()
    )
    if not link:
        link = RolePermission(role_id=role_id, permission_id=permission_id)
        db.add(link)
    return link


def _ensure_person_role(db, tenant_id, person_id, role_id):
    link = (
        db.query(PersonRole)
        .filter(PersonRole.tenant_id == tenant_id)
        .filter(PersonRole.person_id == person_id)
        .filter(PersonRole.role_id == role_id)
        .first()
    )
    if not link:
        link = PersonRole(tenant_id=tenant_id, person_id=person_id, role_id=role_id)
        db.add(link)
    return link


def main():
    load_dotenv()
    args = parse_args()
    db = SessionLocal()
    try:
        tenant = _ensure_tenant(db, args.tenant_slug, args.tenant_name)
        for name, description in DEFAULT_ROLES:
            _ensure_role(db, tenant.id, name, description)
        for key, description in DEFAULT_PERMISSIONS:
            _ensure_permission(db, key, description)
        db.commit()

        roles = {
            role.name: role
            for role in db.query(Role).filter(Role.tenant_id == tenant.id).all()
        }
        permissions = {perm.key: perm for perm in db.query(Permission).all()}
        for role_name, permission_keys in ROLE_PERMISSIONS.items():
            role = roles.get(role_name)
            if not role:
                continue
            for key in permission_keys:
                permission = permissions.get(key)
                if not permission:
                    continue
                _ensure_role_permission(db, role.id, permission.id)
        db.commit()

        admin_role = roles.get("admin")
        if admin_role and (args.admin_email or args.admin_person_id):
            person = None
            if args.admin_person_id:
                person = db.get(Person, args.admin_person_id)
            if not person and args.admin_email:
                person = (
                    db.query(Person)
                    .filter(Person.email == args.admin_email.strip().lower())
                    .first()
                )
            if not person:
                raise SystemExit("Admin person not found.")
            _ensure_person_role(db, tenant.id, person.id, admin_role.id)
            db.commit()
            print("Admin role assigned.")
        print(f"Admissions RBAC seed complete for tenant '{tenant.slug}'.")
    finally:
        db.close()


if __name__ == "__main__":
    main()
