"""Shared test fixtures for the rostersync test suite."""

import asyncio
from datetime import datetime

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from rostersync.core.crypto import CredentialCipher
from rostersync.core.database import Base
# Import all models so their metadata is registered on Base
import rostersync.models.database  # noqa: F401
import rostersync.models.sync_log  # noqa: F401
from rostersync.core.errors import NotFoundError
from rostersync.services.credentials import CredentialStore
from rostersync.services.registry import TokenSession
from rostersync.services.sync import SyncOrchestrator

ORG_ID = 42


class FakeRegistry:
    """
    In-memory stand-in for RegistryClient.

    Tests fill `groups`, `contacts`, `group_contacts` and `seasons` and can
    make any method raise by putting an exception in `failures` under the
    method name (or "get_group_contacts:<group id>" for a single group).
    """

    def __init__(self):
        self.groups: list[dict] = []
        self.contacts: list[dict] = []
        self.group_contacts: dict[str, list[dict]] = {}
        self.seasons: list[dict] = []
        self.failures: dict[str, Exception] = {}
        self.delay = 0.0
        self.calls: list[tuple] = []
        self.close_count = 0

    async def _call(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        if self.delay:
            await asyncio.sleep(self.delay)
        exc = self.failures.get(name)
        if exc is not None:
            raise exc

    async def authenticate(self) -> TokenSession:
        await self._call("authenticate")
        return TokenSession(token="fake-token", expires_at=datetime(2099, 1, 1))

    async def verify_connection(self) -> bool:
        return "authenticate" not in self.failures

    async def get_organizations(self) -> list[dict]:
        await self._call("get_organizations")
        return [{"id": ORG_ID, "name": "Test Club"}]

    async def get_groups(self, filters=None) -> dict:
        await self._call("get_groups", filters)
        return {"groups": list(self.groups), "total": len(self.groups)}

    async def get_group(self, group_id) -> dict:
        await self._call("get_group", group_id)
        for group in self.groups:
            if str(group["id"]) == str(group_id):
                return group
        raise NotFoundError(group_id)

    async def get_group_contacts(self, group_id, season_id=None, organization_ids=None) -> dict:
        await self._call("get_group_contacts", str(group_id), season_id)
        exc = self.failures.get(f"get_group_contacts:{group_id}")
        if exc is not None:
            raise exc
        contacts = list(self.group_contacts.get(str(group_id), []))
        return {"contacts": contacts, "total": len(contacts)}

    async def get_contacts(self, filters=None) -> dict:
        await self._call("get_contacts", filters)
        return {"contacts": list(self.contacts), "total": len(self.contacts)}

    async def get_seasons(self, filters=None) -> dict:
        await self._call("get_seasons", filters)
        return {"seasons": list(self.seasons), "total": len(self.seasons)}

    async def close(self) -> None:
        self.close_count += 1


@pytest.fixture
def cipher():
    return CredentialCipher("test-encryption-secret")


@pytest_asyncio.fixture
async def engine():
    """
    In-memory SQLite engine shared by every session of a test.

    StaticPool keeps a single connection so independent sessions (the
    orchestrator opens several per run) see the same database.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def async_session(session_maker):
    """Provide an async session on the shared in-memory database."""
    async with session_maker() as session:
        yield session


@pytest.fixture
def fake_registry():
    return FakeRegistry()


@pytest.fixture
def orchestrator(session_maker, fake_registry, cipher):
    """Orchestrator wired to the fake registry; records the credentials it was built with."""
    def client_factory(username, password):
        fake_registry.credentials = (username, password)
        return fake_registry

    return SyncOrchestrator(session_maker, client_factory=client_factory, cipher=cipher, run_timeout=5)


@pytest_asyncio.fixture
async def config_id(session_maker, cipher):
    """A stored config for ORG_ID with sync enabled."""
    async with session_maker() as session:
        return await CredentialStore(session, cipher).save_config(
            organization_id=ORG_ID,
            organization_name="Test Club",
            username="club-api",
            password="s3cret",
            sync_enabled=True,
            auto_sync_frequency="daily",
        )
