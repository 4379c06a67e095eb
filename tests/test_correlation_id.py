from __future__ import annotations

import uuid

import pytest
from fastapi.testclient import TestClient

from app import audit, events
from app.core.config import get_settings
from app.core.events import InternalEvent, event_bus
from app.middleware.rate_limit import reset_rate_limiter


def test_generates_correlation_id_when_missing(client: TestClient) -> None:
    response = client.get("/health")

    correlation_id = response.headers.get("x-correlation-id")
    assert correlation_id
    uuid.UUID(correlation_id)
    assert response.headers.get("x-request-id") == correlation_id


def test_preserves_incoming_correlation_id(client: TestClient) -> None:
    response = client.get("/health", headers={"x-correlation-id": "cid-incoming-123"})

    assert response.headers.get("x-correlation-id") == "cid-incoming-123"


def test_falls_back_to_request_id_header(client: TestClient) -> None:
    response = client.get("/health", headers={"x-request-id": "req-42"})

    assert response.headers.get("x-correlation-id") == "req-42"


def test_rejects_malformed_incoming_id(client: TestClient) -> None:
    response = client.get("/health", headers={"x-correlation-id": "not valid id with spaces"})

    correlation_id = response.headers.get("x-correlation-id")
    assert correlation_id != "not valid id with spaces"
    uuid.UUID(correlation_id)


def test_error_envelope_carries_correlation_id(client: TestClient) -> None:
    response = client.get(f"/api/crm/accounts/{uuid.uuid4()}", headers={"x-correlation-id": "cid-missing-account"})

    assert response.status_code == 404
    assert response.json()["correlation_id"] == "cid-missing-account"


def test_audit_and_events_share_request_correlation_id(client: TestClient) -> None:
    correlation_id = "cid-audit-event-1"

    response = client.post(
        "/api/crm/accounts",
        json={"name": "Correlated Account"},
        headers={"x-correlation-id": correlation_id},
    )

    assert response.status_code == 201
    entries = audit.entries_for("crm.account", response.json()["id"])
    assert [entry["correlation_id"] for entry in entries] == [correlation_id]
    created = [event for event in events.published_events if event["event_type"] == "crm.account.created"]
    assert [event["correlation_id"] for event in created] == [correlation_id]


def test_rate_limited_response_echoes_correlation_id(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_CRM_MUTATIONS_PER_MINUTE", "1")
    get_settings.cache_clear()
    reset_rate_limiter()

    client.post("/api/crm/accounts", json={"name": "First"})
    response = client.post("/api/crm/accounts", json={"name": "Second"}, headers={"x-correlation-id": "cid-limited"})

    assert response.status_code == 429
    assert response.json()["correlation_id"] == "cid-limited"
    assert response.headers.get("x-correlation-id") == "cid-limited"


def test_event_bus_subscribers_receive_envelope(client: TestClient) -> None:
    received: list[InternalEvent] = []
    handler = received.append
    event_bus.subscribe("crm.account.created", handler)
    try:
        response = client.post("/api/crm/accounts", json={"name": "Bus Account"}, headers={"x-correlation-id": "cid-bus"})
    finally:
        event_bus.unsubscribe("crm.account.created", handler)

    assert response.status_code == 201
    assert [event.payload["payload"]["account_id"] for event in received] == [response.json()["id"]]
    assert received[0].payload["correlation_id"] == "cid-bus"
