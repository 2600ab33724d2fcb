# tests/conftest.py — Shared test fixtures
import os
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["INTERNAL_JOBS_SECRET"] = "test-internal-secret"
os.environ["PLATFORM_ADMIN_TOKEN"] = "test-admin-token"
os.environ["PLATFORM_ADMIN_EMAILS"] = "platform@cumpliros.com.ar"

from auth import AuthService
from clock import Clock, FixedClock, get_clock
from compliance_engine import Role, ObligationType, ObligationStatus
from database import get_db_session, get_session_factory
from mailer import Mailer, MailDeliveryError, get_mailer
from rate_limit import limiter
from models import (
    Base, User, Organization, UserOrg, Obligation, Jurisdiction,
    DEFAULT_JURISDICTION_ID, DEFAULT_JURISDICTION_CODE,
)
from storage import ObjectMetadata, ObjectStore, get_object_store
from main import app

# 12:00 in Rosario (UTC-3); "today" is 2026-03-10
NOW = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)


# ============================================================
# FAKE COLLABORATORS
# ============================================================

class FakeObjectStore(ObjectStore):
    """In-memory object store; `put` simulates a client upload."""

    def __init__(self):
        self.objects: Dict[str, ObjectMetadata] = {}
        self.deleted: List[str] = []
        self.fail_deletes = False

    def put(self, key: str, content_type: str = "application/pdf", size_bytes: int = 1024) -> None:
        self.objects[key] = ObjectMetadata(content_type=content_type, size_bytes=size_bytes)

    async def presigned_upload_url(self, key, content_type, expires_in=3600):
        return f"https://storage.test/{key}?method=PUT&expires={expires_in}"

    async def presigned_download_url(self, key, expires_in=3600):
        return f"https://storage.test/{key}?method=GET&expires={expires_in}"

    async def head(self, key) -> Optional[ObjectMetadata]:
        return self.objects.get(key)

    async def delete(self, key) -> None:
        if self.fail_deletes:
            raise OSError("storage unavailable")
        self.objects.pop(key, None)
        self.deleted.append(key)


class RecordingMailer(Mailer):
    def __init__(self):
        self.sent: List[dict] = []
        self.fail_for: set = set()

    async def send(self, to, subject, html):
        recipients = [to] if isinstance(to, str) else list(to)
        if self.fail_for.intersection(recipients):
            raise MailDeliveryError("mail provider down")
        self.sent.append({"to": recipients, "subject": subject, "html": html})
        return f"msg-{len(self.sent)}"

    def to(self, email: str) -> List[dict]:
        return [m for m in self.sent if email in m["to"]]


# ============================================================
# DATABASE & CLIENT
# ============================================================

@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> Clock:
    return FixedClock(NOW)


@pytest.fixture
def object_store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest_asyncio.fixture(scope="function")
async def client(session_factory, clock, object_store, mailer):
    """HTTP test client with every collaborator overridden"""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_object_store] = lambda: object_store
    app.dependency_overrides[get_mailer] = lambda: mailer
    limiter.reset()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ============================================================
# USERS, ORGANISATIONS, OBLIGATIONS
# ============================================================

async def make_user(db, email: str, full_name: str = "Test User", password: str = "Password123") -> User:
    user = User(
        email=email,
        full_name=full_name,
        password_hash=AuthService.hash_password(password),
        active=True,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


async def add_member(db, organization: Organization, user: User, role: Role) -> UserOrg:
    membership = UserOrg(user_id=user.id, organization_id=organization.id, role=role)
    db.add(membership)
    await db.commit()
    return membership


async def make_obligation(db, organization: Organization, owner: User, **overrides) -> Obligation:
    values = dict(
        organization_id=organization.id,
        title="Tasa de Seguridad e Higiene",
        type=ObligationType.TAX,
        status=ObligationStatus.PENDING,
        due_date=NOW + timedelta(days=30),
        owner_user_id=owner.id,
        created_at=NOW - timedelta(days=1),
    )
    values.update(overrides)
    obligation = Obligation(**values)
    db.add(obligation)
    await db.commit()
    await db.refresh(obligation)
    return obligation


@pytest_asyncio.fixture
async def jurisdiction(db_session):
    record = Jurisdiction(
        id=DEFAULT_JURISDICTION_ID,
        code=DEFAULT_JURISDICTION_CODE,
        name="Rosario",
        country="AR",
        province="Santa Fe",
        is_active=True,
    )
    db_session.add(record)
    await db_session.commit()
    return record


@pytest_asyncio.fixture
async def owner_user(db_session):
    return await make_user(db_session, "owner@cumpliros.com.ar", "Olga Owner")


@pytest_asyncio.fixture
async def admin_user(db_session):
    return await make_user(db_session, "admin@cumpliros.com.ar", "Adrián Admin")


@pytest_asyncio.fixture
async def accountant_user(db_session):
    return await make_user(db_session, "contador@cumpliros.com.ar", "Carla Contadora")


@pytest_asyncio.fixture
async def manager_user(db_session):
    return await make_user(db_session, "manager@cumpliros.com.ar", "Mario Manager")


@pytest_asyncio.fixture
async def outsider_user(db_session):
    return await make_user(db_session, "outsider@cumpliros.com.ar", "Omar Outsider")


@pytest_asyncio.fixture
async def test_org(db_session, jurisdiction, owner_user, admin_user, accountant_user, manager_user):
    """Organisation with one member per role"""
    org = Organization(
        cuit="20-12345678-9",
        name="Bar El Cairo",
        threshold_yellow_days=15,
        threshold_red_days=7,
        jurisdiction_id=jurisdiction.id,
        active=True,
    )
    db_session.add(org)
    await db_session.commit()
    await db_session.refresh(org)
    await add_member(db_session, org, owner_user, Role.OWNER)
    await add_member(db_session, org, admin_user, Role.ADMIN)
    await add_member(db_session, org, accountant_user, Role.ACCOUNTANT)
    await add_member(db_session, org, manager_user, Role.MANAGER)
    return org


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token = AuthService.create_access_token({"sub": user.id, "email": user.email})
    return {"Authorization": f"Bearer {token}"}


def org_url(org: Organization, path: str = "") -> str:
    return f"/api/v1/organizations/{org.id}{path}"
