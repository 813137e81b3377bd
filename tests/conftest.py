import os

# Must be set before materoom.core.config is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.pop("DB_HOST", None)
os.environ.pop("DB_SECRET_NAME", None)

import uuid
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from materoom import model  # noqa: F401
from materoom.chat.gateway import ChatGateway, chat_gateway
from materoom.core.database import Base, get_db
from materoom.model import User
from materoom.service.message_store import MessageStore
from materoom.session import create_session, session_layer
from tests.fakes import FakeRedis


# In-memory SQLite shared by every session in a test
TEST_DATABASE_URL = "sqlite://"


@pytest.fixture
def test_engine():
    engine = create_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=test_engine)


@pytest.fixture
def test_session(session_factory) -> Generator[Session, None, None]:
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def fake_redis(monkeypatch):
    redis_client = FakeRedis()
    monkeypatch.setattr(session_layer, "_get_redis_client", lambda: redis_client)
    return redis_client


def _make_user(db: Session, email: str, name: str = None) -> User:
    user = User(id=uuid.uuid4(), email=email, name=name, is_active=True)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def test_user_1(test_session) -> User:
    return _make_user(test_session, "alice@example.com", "Alice")


@pytest.fixture
def test_user_2(test_session) -> User:
    return _make_user(test_session, "bob@example.com", "Bob")


@pytest.fixture
def test_user_3(test_session) -> User:
    return _make_user(test_session, "carol@example.com")


def _token_for(user: User) -> str:
    token = f"token-{user.id.hex}"
    create_session(token, {"user_id": str(user.id), "email": user.email, "is_active": True})
    return token


@pytest.fixture
def auth_token_user_1(fake_redis, test_user_1) -> str:
    return _token_for(test_user_1)


@pytest.fixture
def auth_token_user_2(fake_redis, test_user_2) -> str:
    return _token_for(test_user_2)


@pytest.fixture
def auth_token_user_3(fake_redis, test_user_3) -> str:
    return _token_for(test_user_3)


@pytest.fixture
def conversation_1_2(test_session, test_user_1, test_user_2):
    """Conversation between users 1 and 2."""
    return MessageStore(test_session).create_or_get_conversation(test_user_1.id, str(test_user_2.id))


@pytest.fixture
def gateway(session_factory, test_user_1, test_user_2, test_user_3) -> ChatGateway:
    """Gateway on the test DB. Credentials are tok-1, tok-2 and tok-3."""
    tokens = {f"tok-{i}": u.id for i, u in enumerate((test_user_1, test_user_2, test_user_3), start=1)}
    return ChatGateway(session_factory=session_factory, credential_resolver=tokens.get)


@pytest.fixture
def client(session_factory, fake_redis, monkeypatch) -> Generator[TestClient, None, None]:
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    monkeypatch.setattr(chat_gateway, "session_factory", session_factory)
    # Entering the client runs the lifespan and keeps every request and socket on one event loop
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    chat_gateway.clear()
