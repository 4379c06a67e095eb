from __future__ import annotations

import uuid

from fastapi.testclient import TestClient
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app import audit, events
from app.crm.models import CRMAccount, CRMContactOpportunity
from app.users.models import User


def _create_opportunity(client: TestClient, name: str) -> dict:
    response = client.post("/api/crm/opportunities", json={"name": name})
    assert response.status_code == 201, response.text
    return response.json()


def _create_document(client: TestClient, name: str) -> dict:
    response = client.post("/api/crm/documents", json={"document_name": name})
    assert response.status_code == 201, response.text
    return response.json()


def test_create_contact_with_links(client: TestClient) -> None:
    opportunity = _create_opportunity(client, "Renewal")
    document = _create_document(client, "NDA.pdf")

    response = client.post(
        "/api/crm/contacts",
        json={
            "first_name": "Jane",
            "last_name": " Doe ",
            "opportunity_ids": [opportunity["id"], opportunity["id"]],
            "document_ids": [document["id"]],
            "tags": ["vip"],
        },
    )

    assert response.status_code == 201
    body = response.json()
    assert body["last_name"] == "Doe"
    assert body["opportunity_ids"] == [opportunity["id"]]
    assert body["document_ids"] == [document["id"]]
    assert body["tags"] == ["vip"]
    assert client.get(f"/api/crm/opportunities/{opportunity['id']}").json()["contact_ids"] == [body["id"]]


def test_create_contact_with_unknown_account_is_rejected(client: TestClient) -> None:
    response = client.post("/api/crm/contacts", json={"last_name": "Doe", "account_id": str(uuid.uuid4())})

    assert response.status_code == 400
    assert response.json()["message"] == "unknown account_id"


def test_delete_contact_keeps_linked_records(client: TestClient) -> None:
    first = _create_opportunity(client, "Deal A")
    second = _create_opportunity(client, "Deal B")
    document = _create_document(client, "Proposal.pdf")
    contact = client.post(
        "/api/crm/contacts",
        json={
            "last_name": "Smith",
            "opportunity_ids": [first["id"], second["id"]],
            "document_ids": [document["id"]],
        },
    ).json()

    response = client.delete(f"/api/crm/contacts/{contact['id']}")

    assert response.status_code == 200
    assert response.json() == {"status": "deleted"}
    for opportunity in (first, second):
        fetched = client.get(f"/api/crm/opportunities/{opportunity['id']}")
        assert fetched.status_code == 200
        assert contact["id"] not in fetched.json()["contact_ids"]
    fetched_document = client.get(f"/api/crm/documents/{document['id']}")
    assert fetched_document.status_code == 200
    assert fetched_document.json()["contact_ids"] == []

    deleted = [event for event in events.published_events if event["event_type"] == "crm.contact.deleted"]
    assert deleted[-1]["payload"]["opportunities_unlinked"] == 2
    assert deleted[-1]["payload"]["documents_unlinked"] == 1


def test_unlink_opportunity(client: TestClient, db_session: Session) -> None:
    opportunity = _create_opportunity(client, "Upsell")
    contact = client.post(
        "/api/crm/contacts",
        json={"last_name": "Brown", "opportunity_ids": [opportunity["id"]]},
    ).json()

    response = client.delete(f"/api/crm/contacts/{contact['id']}/opportunities/{opportunity['id']}")

    assert response.status_code == 200
    body = response.json()
    assert body["opportunity_ids"] == []
    assert body["row_version"] == contact["row_version"] + 1
    assert db_session.scalar(select(func.count()).select_from(CRMContactOpportunity)) == 0
    assert any(entry["action"] == "unlink_opportunity" for entry in audit.audit_entries)

    again = client.delete(f"/api/crm/contacts/{contact['id']}/opportunities/{opportunity['id']}")
    assert again.status_code == 404
    assert again.json()["message"] == "contact is not linked to this opportunity"


def test_update_contact_without_relation_fields_keeps_links(client: TestClient) -> None:
    opportunity = _create_opportunity(client, "Keep me")
    contact = client.post(
        "/api/crm/contacts",
        json={"last_name": "Green", "opportunity_ids": [opportunity["id"]]},
    ).json()

    response = client.patch(
        f"/api/crm/contacts/{contact['id']}",
        json={"position": "CTO", "row_version": contact["row_version"]},
    )

    assert response.status_code == 200
    assert response.json()["position"] == "CTO"
    assert response.json()["opportunity_ids"] == [opportunity["id"]]


def test_assigning_contact_emails_the_assignee(client: TestClient, mailer, member: User) -> None:
    response = client.post("/api/crm/contacts", json={"last_name": "Assigned", "assigned_to": str(member.id)})

    assert response.status_code == 201
    assert [message.to for message in mailer.outbox] == [member.email]
    assert mailer.outbox[0].template == "contact_assigned"


def test_remote_contact_requires_token(client: TestClient) -> None:
    missing = client.post("/api/crm/contacts/create-from-remote", json={})
    assert missing.status_code == 401
    assert missing.json()["message"] == "API key is missing"

    wrong = client.post("/api/crm/contacts/create-from-remote", json={}, headers={"NEXTCRM_TOKEN": "nope"})
    assert wrong.status_code == 403
    assert wrong.json()["message"] == "Unauthorized"


def test_remote_contact_rejects_non_ascii_token(client: TestClient) -> None:
    headers = {"NEXTCRM_TOKEN": "webhook-t\xf6ken".encode("latin-1")}

    posted = client.post("/api/crm/contacts/create-from-remote", json={}, headers=headers)
    status_check = client.get("/api/crm/contacts/create-from-remote", headers=headers)

    assert posted.status_code == 403
    assert status_check.status_code == 403


def test_remote_contact_rejects_missing_fields(client: TestClient) -> None:
    response = client.post(
        "/api/crm/contacts/create-from-remote",
        json={"name": "Only"},
        headers={"NEXTCRM_TOKEN": "webhook-token"},
    )

    assert response.status_code == 400
    assert response.json()["message"] == "Missing required fields"


def test_remote_contact_creates_and_reuses_account(client: TestClient, db_session: Session) -> None:
    payload = {
        "name": "Eva",
        "surname": "Novak",
        "email": "eva@newco.example.com",
        "phone": "+420 123",
        "company": "NewCo",
        "message": "Please call me",
        "tag": "website",
    }
    headers = {"NEXTCRM_TOKEN": "webhook-token"}

    first = client.post("/api/crm/contacts/create-from-remote", json=payload, headers=headers)
    second = client.post(
        "/api/crm/contacts/create-from-remote",
        json={**payload, "email": "eva2@newco.example.com", "company": "newco"},
        headers=headers,
    )

    assert first.status_code == 201
    body = first.json()
    assert body["message"] == "Contact created successfully"
    assert body["account_linked"] is True
    assert body["contact"]["type"] == "Prospect"
    assert body["contact"]["tags"] == ["website", "remote_api"]
    assert second.status_code == 201
    assert second.json()["contact"]["account_id"] == body["contact"]["account_id"]

    accounts = db_session.scalars(select(CRMAccount)).all()
    assert len(accounts) == 1
    assert accounts[0].name == "NewCo"
    assert accounts[0].status == "Inactive"
    assert accounts[0].type == "Prospect"


def test_remote_contact_status_endpoint(client: TestClient) -> None:
    response = client.get("/api/crm/contacts/create-from-remote", headers={"NEXTCRM_TOKEN": "webhook-token"})

    assert response.status_code == 200
    assert response.json()["status"] == "active"
    assert "company" in response.json()["supported_fields"]
