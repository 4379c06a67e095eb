from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.database import get_db
from app.main import app


@pytest.fixture()
def token_client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _bearer(subject: str, roles: list[str] | None = None) -> dict[str, str]:
    settings = get_settings()
    claims: dict[str, object] = {"sub": subject}
    if roles is not None:
        claims["roles"] = roles
    token = jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return {"Authorization": f"Bearer {token}"}


def test_me_requires_token(token_client: TestClient) -> None:
    response = token_client.get("/me")

    assert response.status_code == 401
    assert response.json()["message"] == "Unauthorized"


def test_me_resolves_user_from_token(token_client: TestClient, admin) -> None:
    response = token_client.get("/me", headers=_bearer(str(admin.id), ["user", "system.metrics.read"]))

    assert response.status_code == 200
    assert response.json() == {
        "id": str(admin.id),
        "email": "admin@example.com",
        "name": "Ada Admin",
        "is_admin": True,
        "roles": ["system.metrics.read", "user"],
    }


def test_token_signed_with_other_secret_is_anonymous(token_client: TestClient, admin) -> None:
    token = jwt.encode({"sub": str(admin.id)}, "not-the-secret", algorithm="HS256")

    response = token_client.get("/me", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401


def test_unknown_user_is_rejected(token_client: TestClient) -> None:
    response = token_client.get("/me", headers=_bearer(str(uuid.uuid4())))

    assert response.status_code == 401
    assert response.json()["message"] == "User ID not found in session"


def test_inactive_user_is_forbidden(token_client: TestClient, make_user) -> None:
    inactive = make_user("inactive@example.com", user_status="INACTIVE")

    response = token_client.get("/api/crm/accounts", headers=_bearer(str(inactive.id)))

    assert response.status_code == 403
    assert response.json()["message"] == "User account is inactive"
