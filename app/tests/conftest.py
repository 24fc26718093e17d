"""
Pytest configuration and fixtures for testing.
Provides a per-test SQLite database, seeded tenants/users/conversations,
a realtime gateway bound to the test database, fake WebSockets and clients.
"""
import os

# Must be set before the application modules build their engine and settings
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_teamhub.db")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOG_JSON", "false")

import pytest
import pytest_asyncio
from types import SimpleNamespace
from typing import Generator
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session

from api.dependencies import get_db, get_gateway
from core.security import create_access_token, hash_password
from db import models  # noqa: F401
from db.database import Base
from db.models import UserRole
from db.repository import Repository
from main import app
from realtime.gateway import RealtimeGateway
from services.identity import Identity

PASSWORD = "password123"


class FakeWebSocket:
    """In-memory stand-in for a Starlette WebSocket; records every frame sent."""

    def __init__(self, fail_sends: bool = False):
        self.accepted = False
        self.closed = False
        self.close_code = None
        self.fail_sends = fail_sends
        self.sent = []

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        if self.fail_sends:
            raise RuntimeError("socket is gone")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str = None):
        self.closed = True
        self.close_code = code

    def events(self, name: str = None) -> list:
        return [frame for frame in self.sent if name is None or frame["event"] == name]

    def clear(self):
        self.sent.clear()


@pytest.fixture(scope="function")
def session_factory(tmp_path):
    """Session factory over a fresh SQLite file for each test."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'teamhub_test.db'}",
        connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def test_db(session_factory) -> Generator[Session, None, None]:
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="function")
def seed(session_factory) -> SimpleNamespace:
    """
    Two tenants and four conversations.

    acme: alice (admin), bob, carol, eve (deactivated)
    globex: dave
    conv1..conv3: alice + bob; conv_carol: alice + carol
    """
    db = session_factory()
    try:
        repository = Repository(db)
        password_hash = hash_password(PASSWORD)

        acme, alice = repository.create_tenant_with_admin(
            name="Acme", slug="acme", domain="acme.test",
            admin_email="alice@acme.test", admin_password_hash=password_hash,
            admin_display_name="Alice"
        )
        bob = repository.create_user(acme.id, "bob@acme.test", password_hash, "Bob")
        carol = repository.create_user(acme.id, "carol@acme.test", password_hash, "Carol")
        eve = repository.create_user(acme.id, "eve@acme.test", password_hash, "Eve")
        eve.is_active = False
        db.commit()

        globex, dave = repository.create_tenant_with_admin(
            name="Globex", slug="globex", domain=None,
            admin_email="dave@globex.test", admin_password_hash=password_hash,
            admin_display_name="Dave"
        )

        conversation_ids = []
        for name, members in [
            ("General", [alice, bob]),
            ("Random", [alice, bob]),
            ("Project", [alice, bob]),
            ("Alice & Carol", [alice, carol]),
        ]:
            with repository.transaction():
                conversation = repository.add_conversation(
                    tenant_id=acme.id, created_by_id=alice.id, name=name,
                    is_group=False, cross_tenant=False
                )
                for member in members:
                    repository.add_participant(conversation.id, member.id)
            conversation_ids.append(conversation.id)

        return SimpleNamespace(
            tenant_id=acme.id,
            other_tenant_id=globex.id,
            alice=alice.id,
            bob=bob.id,
            carol=carol.id,
            eve=eve.id,
            dave=dave.id,
            conv1=conversation_ids[0],
            conv2=conversation_ids[1],
            conv3=conversation_ids[2],
            conv_carol=conversation_ids[3],
        )
    finally:
        db.close()


@pytest.fixture
def tokens(seed) -> SimpleNamespace:
    def token(user_id, tenant_id):
        return create_access_token(user_id, tenant_id)["token"]

    return SimpleNamespace(
        alice=token(seed.alice, seed.tenant_id),
        bob=token(seed.bob, seed.tenant_id),
        carol=token(seed.carol, seed.tenant_id),
        eve=token(seed.eve, seed.tenant_id),
        dave=token(seed.dave, seed.other_tenant_id),
    )


@pytest.fixture
def identities(seed) -> SimpleNamespace:
    def identity(user_id, tenant_id, name, role=UserRole.MEMBER):
        return Identity(user_id=user_id, tenant_id=tenant_id, display_name=name, role=role)

    return SimpleNamespace(
        alice=identity(seed.alice, seed.tenant_id, "Alice", UserRole.ADMIN),
        bob=identity(seed.bob, seed.tenant_id, "Bob"),
        carol=identity(seed.carol, seed.tenant_id, "Carol"),
        dave=identity(seed.dave, seed.other_tenant_id, "Dave", UserRole.ADMIN),
    )


@pytest.fixture
def gateway(session_factory) -> RealtimeGateway:
    return RealtimeGateway(session_factory=session_factory)


@pytest.fixture
def connect(gateway):
    """Open a gateway connection over a FakeWebSocket for a token."""
    async def _connect(token: str, **kwargs):
        websocket = FakeWebSocket(**kwargs)
        connection = await gateway.connect(websocket, token)
        return connection, websocket

    return _connect


@pytest.fixture(scope="function")
def app_overrides(session_factory, gateway):
    """Point the app's database and gateway dependencies at the test instances."""
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def test_client(app_overrides) -> TestClient:
    """Create a test client with test database and gateway overrides."""
    return TestClient(app)


@pytest_asyncio.fixture
async def async_client(app_overrides):
    """Async client running the app in the test's event loop."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
