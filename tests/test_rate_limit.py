from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from app.core.config import get_settings
from app.middleware.rate_limit import MemoryWindowBackend, WindowRateLimiter, reset_rate_limiter


@pytest.fixture()
def limited(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_CRM_MUTATIONS_PER_MINUTE", "3")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()


def test_mutating_crm_endpoints_are_rate_limited(client: TestClient, limited: None) -> None:
    responses = [client.post("/api/crm/accounts", json={"name": f"Rate Limit Account {index}"}) for index in range(5)]

    limited_responses = [response for response in responses if response.status_code == 429]
    assert [response.status_code for response in responses[:3]] == [201, 201, 201]
    assert limited_responses

    first_limited = limited_responses[0]
    body = first_limited.json()
    assert body["code"] == "RATE_LIMITED"
    assert body["message"] == "Too many requests"
    assert body["correlation_id"] is not None
    assert first_limited.headers.get("Retry-After") is not None


def test_get_endpoints_are_not_rate_limited(client: TestClient, limited: None) -> None:
    create = client.post("/api/crm/accounts", json={"name": "Readable Account"})
    assert create.status_code == 201

    responses = [client.get("/api/crm/accounts") for _ in range(10)]
    assert all(response.status_code != 429 for response in responses)


def test_buckets_are_per_route_group(client: TestClient, limited: None) -> None:
    for index in range(3):
        client.post("/api/crm/accounts", json={"name": f"Account {index}"})

    assert client.post("/api/crm/accounts", json={"name": "Over"}).status_code == 429
    assert client.post("/api/crm/contacts", json={"last_name": "Fresh bucket"}).status_code == 201


def test_project_routes_are_not_crm_limited(client: TestClient, limited: None) -> None:
    statuses = [client.post("/api/projects/boards", json={"title": f"Board {index}"}).status_code for index in range(5)]

    assert statuses == [201] * 5


def test_rate_limit_disabled_switch(client: TestClient) -> None:
    responses = [client.post("/api/crm/accounts", json={"name": f"Free {index}"}) for index in range(70)]

    assert all(response.status_code == 201 for response in responses)


def test_window_limiter_counts_per_key() -> None:
    limiter = WindowRateLimiter(MemoryWindowBackend())

    for _ in range(2):
        limiter.check("signup", "10.0.0.1", 2, 3600)
    limiter.check("signup", "10.0.0.2", 2, 3600)

    with pytest.raises(HTTPException) as exc_info:
        limiter.check("signup", "10.0.0.1", 2, 3600)
    assert exc_info.value.status_code == 429
    assert int(exc_info.value.headers["Retry-After"]) >= 1


def test_signup_is_rate_limited_per_ip(client: TestClient, limited: None) -> None:
    statuses = []
    for index in range(6):
        response = client.post(
            "/api/users/signup",
            json={"name": f"User {index}", "email": f"user{index}@example.com", "password": "long-enough-pw"},
            headers={"x-forwarded-for": "203.0.113.9"},
        )
        statuses.append(response.status_code)

    assert statuses == [201, 201, 201, 201, 201, 429]

