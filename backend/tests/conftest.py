"""
Shared test fixtures for the Shorty backend test suite.

Each test gets its own SQLite database file so the request session and the
background token toucher can run on separate connections. FastAPI's database
dependencies are overridden to point at it.
"""

import os
import uuid
from typing import Optional

import factory
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

# ---- Environment overrides MUST come before any app imports ----
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["SECRET_KEY"] = "test-secret-key-for-unit-tests"
os.environ["ENVIRONMENT"] = "test"
os.environ["BASE_URL"] = ""

from shorty.auth.models import SystemRole, User  # noqa: E402
from shorty.auth.service import create_access_token  # noqa: E402
from shorty.database import Base, get_db, get_session_factory  # noqa: E402
from shorty.main import app  # noqa: E402
from shorty.organizations.models import Organization, OrganizationMembership  # noqa: E402
from shorty.scim import service as scim_service  # noqa: E402
from shorty.scim.auth import drain_background_tasks  # noqa: E402
from shorty.scim.schemas import SCIM_GROUP_SCHEMA, SCIM_PATCH_OP_SCHEMA, SCIM_USER_SCHEMA  # noqa: E402


# SQLite does not enforce FK constraints by default, enable them.
def _enable_sqlite_fk(dbapi_conn, _connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# ---------------------------------------------------------------------------
# Database lifecycle
# ---------------------------------------------------------------------------
@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """A fresh database file with every table created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'shorty.db'}", poolclass=NullPool)
    event.listen(engine.sync_engine, "connect", _enable_sqlite_fk)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await drain_background_tasks()
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncSession:
    """A session for arranging and inspecting rows directly."""
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# HTTP client fixtures
# ---------------------------------------------------------------------------
@pytest_asyncio.fixture
async def client(session_factory) -> AsyncClient:
    """Unauthenticated httpx async client wired to the FastAPI app."""

    async def _override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers: rows created directly in the database
# ---------------------------------------------------------------------------
async def _create_organization(session_factory, name: str, slug: str) -> Organization:
    organization = Organization(name=name, slug=slug)
    async with session_factory() as session:
        session.add(organization)
        await session.commit()
        await session.refresh(organization)
    return organization


async def _create_test_user(
    session_factory,
    email: str,
    name: str = "Test User",
    system_role: SystemRole = SystemRole.user,
    organization_id: Optional[int] = None,
) -> User:
    """Insert a user (optionally an organization member) and return it."""
    user = User(email=email, name=name, system_role=system_role, active=True)
    async with session_factory() as session:
        session.add(user)
        await session.flush()
        if organization_id is not None:
            session.add(OrganizationMembership(organization_id=organization_id, user_id=user.id))
        await session.commit()
        await session.refresh(user)
    return user


async def _issue_scim_token(session_factory, organization_id: int, expires_in_days: Optional[int] = None) -> str:
    async with session_factory() as session:
        _, token = await scim_service.create_scim_token(session, organization_id, "test token", expires_in_days)
        await session.commit()
    return token


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _auth_header(user: User) -> dict[str, str]:
    return _bearer(create_access_token(user.id, user.system_role.value))


# ---------------------------------------------------------------------------
# Organizations and SCIM tokens
# ---------------------------------------------------------------------------
@pytest_asyncio.fixture
async def organization(session_factory) -> Organization:
    return await _create_organization(session_factory, "Acme", "acme")


@pytest_asyncio.fixture
async def other_organization(session_factory) -> Organization:
    return await _create_organization(session_factory, "Globex", "globex")


@pytest_asyncio.fixture
async def scim_token(session_factory, organization: Organization) -> str:
    return await _issue_scim_token(session_factory, organization.id)


@pytest_asyncio.fixture
async def scim_headers(scim_token: str) -> dict[str, str]:
    return _bearer(scim_token)


@pytest_asyncio.fixture
async def other_scim_headers(session_factory, other_organization: Organization) -> dict[str, str]:
    return _bearer(await _issue_scim_token(session_factory, other_organization.id))


@pytest_asyncio.fixture
async def scim_client(client: AsyncClient, scim_headers: dict[str, str]) -> AsyncClient:
    """AsyncClient authenticated with a SCIM token for ``organization``."""
    client.headers.update(scim_headers)
    return client


# ---------------------------------------------------------------------------
# Admin users (JWT)
# ---------------------------------------------------------------------------
@pytest_asyncio.fixture
async def admin_user(session_factory) -> User:
    return await _create_test_user(session_factory, "admin@shorty-test.com", "Admin", SystemRole.admin)


@pytest_asyncio.fixture
async def regular_user(session_factory) -> User:
    return await _create_test_user(session_factory, "user@shorty-test.com", "Regular", SystemRole.user)


@pytest_asyncio.fixture
async def admin_headers(admin_user: User) -> dict[str, str]:
    return _auth_header(admin_user)


@pytest_asyncio.fixture
async def user_headers(regular_user: User) -> dict[str, str]:
    return _auth_header(regular_user)


# ---------------------------------------------------------------------------
# Factory Boy factories
# ---------------------------------------------------------------------------
class ScimUserFactory(factory.Factory):
    class Meta:
        model = dict

    schemas = factory.LazyFunction(lambda: [SCIM_USER_SCHEMA])
    userName = factory.LazyFunction(lambda: f"user-{uuid.uuid4().hex[:8]}@example.com")
    name = factory.Dict({"givenName": factory.Faker("first_name"), "familyName": factory.Faker("last_name")})
    active = True


class ScimGroupFactory(factory.Factory):
    class Meta:
        model = dict

    schemas = factory.LazyFunction(lambda: [SCIM_GROUP_SCHEMA])
    displayName = factory.Sequence(lambda n: f"Engineering {n}")
    members = factory.LazyFunction(list)


def patch_body(*operations: dict) -> dict:
    return {"schemas": [SCIM_PATCH_OP_SCHEMA], "Operations": list(operations)}


# ---------------------------------------------------------------------------
# Convenience fixtures: SCIM resources already provisioned
# ---------------------------------------------------------------------------
async def _provision_user(client: AsyncClient, **overrides) -> dict:
    resp = await client.post("/scim/v2/Users", json=ScimUserFactory(**overrides))
    assert resp.status_code == 201, resp.text
    return resp.json()


@pytest_asyncio.fixture
async def scim_user(scim_client: AsyncClient) -> dict:
    return await _provision_user(
        scim_client, userName="jane@example.com", name={"givenName": "Jane", "familyName": "Doe"}
    )
