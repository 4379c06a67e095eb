from __future__ import annotations

from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.orm import Session

from app import audit, events
from app.core.config import get_settings
from app.crm.models import CRMAccount
from app.users.models import User


WEB_HEADERS = {"Authorization": "webhook-token"}


def test_create_lead_and_filter_by_status(client: TestClient) -> None:
    created = client.post("/api/crm/leads", json={"last_name": "Lead", "company": "Acme", "status": "CONTACTED"})
    client.post("/api/crm/leads", json={"last_name": "Fresh"})

    assert created.status_code == 201
    assert created.json()["type"] == "DEMO"
    listing = client.get("/api/crm/leads", params={"status": "CONTACTED"})
    assert [item["last_name"] for item in listing.json()] == ["Lead"]
    assert any(event["event_type"] == "crm.lead.created" for event in events.published_events)


def test_update_lead_rejects_null_required_field(client: TestClient) -> None:
    lead = client.post("/api/crm/leads", json={"last_name": "Lead"}).json()

    response = client.patch(f"/api/crm/leads/{lead['id']}", json={"status": None, "row_version": lead["row_version"]})

    assert response.status_code == 400
    assert response.json()["message"] == "status cannot be null"


def test_update_lead_replaces_documents(client: TestClient) -> None:
    first = client.post("/api/crm/documents", json={"document_name": "a.pdf"}).json()
    second = client.post("/api/crm/documents", json={"document_name": "b.pdf"}).json()
    lead = client.post("/api/crm/leads", json={"last_name": "Docs", "document_ids": [first["id"]]}).json()

    response = client.patch(
        f"/api/crm/leads/{lead['id']}",
        json={"document_ids": [second["id"]], "row_version": lead["row_version"]},
    )

    assert response.status_code == 200
    assert response.json()["document_ids"] == [second["id"]]
    assert client.get(f"/api/crm/documents/{first['id']}").json()["lead_ids"] == []


def test_delete_lead_unlinks_documents(client: TestClient) -> None:
    document = client.post("/api/crm/documents", json={"document_name": "brief.pdf"}).json()
    lead = client.post("/api/crm/leads", json={"last_name": "Gone", "document_ids": [document["id"]]}).json()

    response = client.delete(f"/api/crm/leads/{lead['id']}")

    assert response.status_code == 200
    assert client.get(f"/api/crm/leads/{lead['id']}").status_code == 404
    assert client.get(f"/api/crm/documents/{document['id']}").json()["lead_ids"] == []


def test_web_lead_requires_matching_token(client: TestClient) -> None:
    response = client.post("/api/crm/leads/create-lead-from-web", json={"lastName": "Web"})

    assert response.status_code == 401
    wrong = client.post(
        "/api/crm/leads/create-lead-from-web",
        json={"lastName": "Web"},
        headers={"Authorization": "other"},
    )
    assert wrong.status_code == 401


def test_web_lead_rejects_non_ascii_token(client: TestClient) -> None:
    headers = {"Authorization": "t\xe9st".encode("latin-1")}

    posted = client.post("/api/crm/leads/create-lead-from-web", json={"lastName": "Web"}, headers=headers)
    status_check = client.get("/api/crm/leads/create-lead-from-web", headers=headers)

    assert posted.status_code == 401
    assert posted.json()["code"] == "crm_lead_web_create_failed"
    assert status_check.status_code == 401


def test_web_lead_rejected_when_token_not_configured(client: TestClient, monkeypatch) -> None:
    monkeypatch.setenv("NEXTCRM_TOKEN", "")
    get_settings.cache_clear()

    response = client.post("/api/crm/leads/create-lead-from-web", json={"lastName": "Web"}, headers={"Authorization": ""})

    assert response.status_code == 401


def test_web_lead_requires_last_name(client: TestClient) -> None:
    response = client.post("/api/crm/leads/create-lead-from-web", json={"firstName": "Ann"}, headers=WEB_HEADERS)

    assert response.status_code == 400
    assert response.json()["message"] == "Missing required fields"


def test_web_lead_auto_creates_then_reuses_account(client: TestClient, db_session: Session, admin: User) -> None:
    payload = {
        "firstName": "Ann",
        "lastName": "Lee",
        "account": "NewCo",
        "email": "ann@newco.example.com",
        "assigned_to": str(admin.id),
    }

    first = client.post("/api/crm/leads/create-lead-from-web", json=payload, headers=WEB_HEADERS)
    second = client.post(
        "/api/crm/leads/create-lead-from-web",
        json={**payload, "lastName": "Kim"},
        headers=WEB_HEADERS,
    )

    assert first.status_code == 201
    body = first.json()
    assert body["message"] == "New lead created successfully"
    assert body["account_linked"] is True
    assert body["documents_linked"] == 0
    assert body["lead"]["status"] == "NEW"
    assert body["lead"]["company"] == "NewCo"
    assert body["lead"]["assigned_to"] == str(admin.id)
    assert second.status_code == 201
    assert second.json()["lead"]["account_id"] == body["lead"]["account_id"]

    accounts = db_session.scalars(select(CRMAccount).where(CRMAccount.name == "NewCo")).all()
    assert len(accounts) == 1
    assert accounts[0].status == "Inactive"
    assert accounts[0].type == "Prospect"
    assert any(entry["action"] == "create_from_web" for entry in audit.audit_entries)


def test_web_lead_links_documents(client: TestClient) -> None:
    document = client.post("/api/crm/documents", json={"document_name": "form.pdf"}).json()

    response = client.post(
        "/api/crm/leads/create-lead-from-web",
        json={"lastName": "Docs", "documentIds": [document["id"]]},
        headers=WEB_HEADERS,
    )

    assert response.status_code == 201
    assert response.json()["account_linked"] is False
    assert response.json()["documents_linked"] == 1
    assert response.json()["lead"]["document_ids"] == [document["id"]]


def test_web_lead_status_endpoint(client: TestClient) -> None:
    response = client.get("/api/crm/leads/create-lead-from-web", headers=WEB_HEADERS)

    assert response.status_code == 200
    assert response.json()["required_fields"] == ["lastName"]
