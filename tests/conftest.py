from __future__ import annotations

import dataclasses
from collections.abc import Callable, Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.ai.service import set_openai_client
from app.core.auth import ActorUser, get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.mailer import InMemoryMailer, set_mailer
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.storage import InMemoryStorage, set_storage
from app.users.models import User
from app.users.service import hash_password


WEBHOOK_TOKEN = "webhook-token"


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("PASSWORD_BCRYPT_ROUNDS", "4")
    monkeypatch.setenv("NEXTCRM_TOKEN", WEBHOOK_TOKEN)
    monkeypatch.setenv("OPENAI_API_KEY", "")
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()
    set_mailer(InMemoryMailer())
    set_storage(InMemoryStorage())
    set_openai_client(None)
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()
    set_mailer(None)
    set_storage(None)
    set_openai_client(None)


@pytest.fixture()
def mailer() -> InMemoryMailer:
    outbox = InMemoryMailer()
    set_mailer(outbox)
    return outbox


@pytest.fixture()
def storage() -> InMemoryStorage:
    objects = InMemoryStorage()
    set_storage(objects)
    return objects


@pytest.fixture()
def make_user(db_session: Session) -> Callable[..., User]:
    def _make_user(
        email: str,
        *,
        name: str | None = None,
        is_admin: bool = False,
        user_status: str = "ACTIVE",
        password: str = "secret-password",
    ) -> User:
        user = User(
            email=email,
            name=name or email.split("@")[0].title(),
            password_hash=hash_password(password),
            is_admin=is_admin,
            user_status=user_status,
        )
        db_session.add(user)
        db_session.commit()
        return user

    return _make_user


@pytest.fixture()
def admin(make_user: Callable[..., User]) -> User:
    return make_user("admin@example.com", name="Ada Admin", is_admin=True)


@pytest.fixture()
def member(make_user: Callable[..., User]) -> User:
    return make_user("member@example.com", name="Mia Member")


def as_actor(user: User, roles: set[str] | None = None) -> ActorUser:
    return ActorUser(
        user_id=user.id,
        email=user.email,
        name=user.name,
        is_admin=user.is_admin,
        user_status=user.user_status,
        roles=roles or {"user"},
    )


class ActorSwitch:
    """The user every request made through the test client is authenticated as."""

    def __init__(self, actor_user: ActorUser) -> None:
        self.current = actor_user

    def use(self, user: User, roles: set[str] | None = None) -> None:
        self.current = as_actor(user, roles)


@pytest.fixture()
def actor(admin: User) -> ActorSwitch:
    return ActorSwitch(as_actor(admin))


@pytest.fixture()
def client(db_session: Session, actor: ActorSwitch) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return dataclasses.replace(
            actor.current,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
