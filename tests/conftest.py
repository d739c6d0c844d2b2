import itertools
import os
import sys
import uuid
from contextlib import contextmanager
from datetime import UTC, date, datetime, timedelta
from types import ModuleType

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import DateTime, create_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

# Create a test engine BEFORE any app imports
_test_engine = create_engine(
    "sqlite+pysqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


class TestBase(DeclarativeBase):
    pass


_TestSessionLocal = sessionmaker(bind=_test_engine, autoflush=False, autocommit=False)


class TimestampMixin:
    """Mixin that adds created_at / updated_at columns to any model."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


@contextmanager
def _session_scope():
    session = _TestSessionLocal()
    try:
        yield session
    finally:
        session.close()


# Create a mock db module
mock_db_module = ModuleType("app.db")
mock_db_module.Base = TestBase
mock_db_module.TimestampMixin = TimestampMixin
mock_db_module.SessionLocal = _TestSessionLocal
mock_db_module.session_scope = _session_scope
mock_db_module.get_engine = lambda: _test_engine

# Also mock app.config to prevent .env loading
mock_config_module = ModuleType("app.config")

JWT_SECRET = "test-secret-key-that-is-long-enough-for-hs256"


class MockSettings:
    database_url = "sqlite+pysqlite:///:memory:"
    redis_url = "redis://localhost:6379/0"
    secret_key = "test-secret-key"
    db_pool_size = 5
    db_max_overflow = 10
    db_pool_timeout = 30
    db_pool_recycle = 1800
    jwt_secret = JWT_SECRET
    jwt_algorithm = "HS256"
    app_url = "https://admissions.example.com"
    invitation_expiry_days = 14
    min_emergency_contacts = 2
    invitation_emails_enabled = False
    celery_broker_url = "memory://"
    celery_result_backend = "cache+memory://"
    cors_origins = ""


mock_config_module.settings = MockSettings()
mock_config_module.Settings = MockSettings
mock_config_module.validate_settings = lambda s: []

# Insert mocks before any app imports
sys.modules["app.config"] = mock_config_module
sys.modules["app.db"] = mock_db_module

os.environ["JWT_SECRET"] = JWT_SECRET
os.environ["JWT_ALGORITHM"] = "HS256"

# Now import the models - they'll use our mocked db module
import app.models  # noqa: E402,F401
from app.models.enrollment import (  # noqa: E402
    EnrollmentPeriod,
    EnrollmentPeriodStatus,
    EnrollmentPeriodType,
)
from app.models.person import Person  # noqa: E402
from app.models.rbac import Permission, PersonRole, Role, RolePermission  # noqa: E402
from app.models.student import SchoolClass  # noqa: E402
from app.models.tenant import Tenant  # noqa: E402
from app.services.context import ADMISSIONS_PERMISSIONS, TenantContext  # noqa: E402

TestBase.metadata.create_all(_test_engine)

Base = TestBase

_client_hosts = itertools.count(1)


@pytest.fixture(scope="session")
def engine():
    return _test_engine


@pytest.fixture()
def db_session(engine):
    """Database session on the shared StaticPool connection."""
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = Session()
    try:
        yield session
    finally:
        session.close()


def _unique_email(prefix: str = "test") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}@example.com"


def make_person(db_session, email: str | None = None, first_name: str = "Test") -> Person:
    person = Person(first_name=first_name, last_name="User", email=email or _unique_email())
    db_session.add(person)
    db_session.commit()
    db_session.refresh(person)
    return person


def make_access_token(
    person_id,
    tenant_id=None,
    email: str | None = None,
    roles: list[str] | None = None,
    scopes: list[str] | None = None,
) -> str:
    """Create a JWT access token for testing."""
    now = datetime.now(UTC)
    payload = {
        "sub": str(person_id),
        "email": email,
        "roles": roles or [],
        "scopes": scopes or [],
        "typ": "access",
        "exp": int((now + timedelta(minutes=15)).timestamp()),
        "iat": int(now.timestamp()),
    }
    if tenant_id is not None:
        payload["tenant_id"] = str(tenant_id)
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


# ============ Tenancy Fixtures ============


@pytest.fixture()
def tenant(db_session):
    t = Tenant(name="Greenfield Academy", slug=f"greenfield-{uuid.uuid4().hex[:8]}")
    db_session.add(t)
    db_session.commit()
    db_session.refresh(t)
    return t


@pytest.fixture()
def other_tenant(db_session):
    t = Tenant(name="Riverside School", slug=f"riverside-{uuid.uuid4().hex[:8]}")
    db_session.add(t)
    db_session.commit()
    db_session.refresh(t)
    return t


@pytest.fixture()
def staff_person(db_session):
    return make_person(db_session, _unique_email("staff"), first_name="Staff")


@pytest.fixture()
def admin_ctx(tenant, staff_person):
    """Context holding every admissions permission."""
    return TenantContext(
        tenant_id=tenant.id,
        user_id=staff_person.id,
        email=staff_person.email,
        permissions=frozenset(ADMISSIONS_PERMISSIONS),
    )


@pytest.fixture()
def no_perm_ctx(tenant, staff_person):
    return TenantContext(tenant_id=tenant.id, user_id=staff_person.id, email=staff_person.email)


@pytest.fixture()
def parent_role(db_session, tenant):
    role = Role(tenant_id=tenant.id, name="parent", description="Parent", is_system=True)
    db_session.add(role)
    db_session.commit()
    db_session.refresh(role)
    return role


@pytest.fixture()
def registrar_role(db_session, tenant):
    """Tenant role granted every admissions permission through RBAC."""
    role = Role(tenant_id=tenant.id, name=f"registrar_{uuid.uuid4().hex[:6]}")
    db_session.add(role)
    db_session.flush()
    for key in ADMISSIONS_PERMISSIONS:
        permission = db_session.query(Permission).filter(Permission.key == key).first()
        if permission is None:
            permission = Permission(key=key, description=key)
            db_session.add(permission)
            db_session.flush()
        db_session.add(RolePermission(role_id=role.id, permission_id=permission.id))
    db_session.commit()
    db_session.refresh(role)
    return role


@pytest.fixture()
def registrar(db_session, tenant, registrar_role):
    person = make_person(db_session, _unique_email("registrar"), first_name="Registrar")
    db_session.add(PersonRole(tenant_id=tenant.id, person_id=person.id, role_id=registrar_role.id))
    db_session.commit()
    return person


# ============ Admissions Fixtures ============


@pytest.fixture()
def school_class(db_session, tenant):
    c = SchoolClass(tenant_id=tenant.id, name="Reception A", room="R1", cycle_level="early_years")
    db_session.add(c)
    db_session.commit()
    db_session.refresh(c)
    return c


def make_period(db_session, tenant_id, **overrides) -> EnrollmentPeriod:
    now = datetime.now(UTC)
    values = {
        "tenant_id": tenant_id,
        "name": f"Autumn intake {uuid.uuid4().hex[:6]}",
        "period_type": EnrollmentPeriodType.new_enrollment,
        "year": 2026,
        "opens_at": now - timedelta(days=1),
        "closes_at": now + timedelta(days=30),
        "status": EnrollmentPeriodStatus.open,
        "available_programs": ["reception", "year_1"],
        "required_documents": [],
        "custom_fields": [],
        "confirmation_message": "Thank you for applying.",
    }
    values.update(overrides)
    period = EnrollmentPeriod(**values)
    db_session.add(period)
    db_session.commit()
    db_session.refresh(period)
    return period


@pytest.fixture()
def open_period(db_session, tenant):
    return make_period(db_session, tenant.id)


def application_payload(period_id, **overrides) -> dict:
    """Valid submission. Guardian emails are unique per call since accounts are global."""
    tag = uuid.uuid4().hex[:8]
    payload = {
        "enrollment_period_id": str(period_id),
        "submitted_by_email": f"Parent.One.{tag}@Example.com",
        "child_first_name": "Ada",
        "child_last_name": "Okafor",
        "child_date_of_birth": date(2020, 3, 14).isoformat(),
        "child_languages": ["en"],
        "requested_program": "reception",
        "guardians": [
            {
                "first_name": "Parent",
                "last_name": "One",
                "email": f"parent.one.{tag}@example.com",
                "relationship": "mother",
                "is_primary": True,
            },
            {
                "first_name": "Parent",
                "last_name": "Two",
                "email": f"parent.two.{tag}@example.com",
                "relationship": "father",
            },
        ],
        "medical_conditions": [
            {
                "condition_type": "allergy",
                "condition_name": "Peanuts",
                "severity": "severe",
                "requires_medication": True,
                "medication_name": "EpiPen",
            }
        ],
        "emergency_contacts": [
            {"name": "Grandma", "relationship": "grandmother", "phone_primary": "+100000001"},
            {
                "name": "Uncle Ben",
                "relationship": "uncle",
                "phone_primary": "+100000002",
                "priority_order": 2,
            },
        ],
        "custody_restrictions": [],
        "media_consent": True,
        "directory_consent": False,
        "terms_accepted": True,
        "privacy_accepted": True,
        "custom_responses": {},
    }
    payload.update(overrides)
    return payload


@pytest.fixture()
def submitted_application(db_session, tenant, open_period):
    from app.services.enrollment_application import EnrollmentApplicationService

    result = EnrollmentApplicationService(db_session).submit_application(
        tenant.id, application_payload(open_period.id)
    )
    assert result.ok, result.error
    return result.data


# ============ FastAPI Test Client Fixtures ============


@pytest.fixture()
def client(db_session):
    """Test client with the database dependency overridden.

    Each test gets its own client address so rate limit windows never leak
    between tests.
    """
    from app.api.deps import get_db as api_get_db
    from app.main import app

    def override_get_db():
        yield db_session

    app.dependency_overrides[api_get_db] = override_get_db

    n = next(_client_hosts)
    headers = {"x-forwarded-for": f"10.0.{n // 250}.{n % 250 + 1}"}
    with TestClient(app, raise_server_exceptions=False, headers=headers) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture()
def admin_headers(tenant, staff_person):
    token = make_access_token(
        staff_person.id, tenant.id, staff_person.email, scopes=list(ADMISSIONS_PERMISSIONS)
    )
    return {"Authorization": f"Bearer {token}"}
