from __future__ import annotations

import uuid
from decimal import Decimal

from fastapi.testclient import TestClient

from app import events
from app.users.models import User


def _create_account(client: TestClient) -> dict:
    response = client.post("/api/crm/accounts", json={"name": "Pipeline Co"})
    assert response.status_code == 201
    return response.json()


def test_create_opportunity_with_account_and_contacts(client: TestClient) -> None:
    account = _create_account(client)
    contact = client.post("/api/crm/contacts", json={"last_name": "Buyer"}).json()

    response = client.post(
        "/api/crm/opportunities",
        json={
            "name": "Big Deal",
            "account_id": account["id"],
            "budget": "1500.50",
            "sales_stage": "Qualification",
            "contact_ids": [contact["id"]],
        },
    )

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "ACTIVE"
    assert Decimal(str(body["budget"])) == Decimal("1500.50")
    assert body["contact_ids"] == [contact["id"]]
    assert client.get(f"/api/crm/contacts/{contact['id']}").json()["opportunity_ids"] == [body["id"]]


def test_create_opportunity_rejects_negative_budget(client: TestClient) -> None:
    response = client.post("/api/crm/opportunities", json={"name": "Bad", "budget": -1})

    assert response.status_code == 400


def test_unknown_contact_ids_leave_nothing_behind(client: TestClient) -> None:
    missing = str(uuid.uuid4())

    response = client.post("/api/crm/opportunities", json={"name": "Orphan", "contact_ids": [missing]})

    assert response.status_code == 400
    assert response.json()["details"] == {"message": "unknown opportunities ids", "ids": [missing]}
    assert client.get("/api/crm/opportunities").json() == []


def test_update_contact_set_replaces_previous_links(client: TestClient) -> None:
    first = client.post("/api/crm/contacts", json={"last_name": "A"}).json()
    second = client.post("/api/crm/contacts", json={"last_name": "B"}).json()
    third = client.post("/api/crm/contacts", json={"last_name": "C"}).json()
    opportunity = client.post(
        "/api/crm/opportunities",
        json={"name": "Rotation", "contact_ids": [first["id"], second["id"]]},
    ).json()

    response = client.patch(
        f"/api/crm/opportunities/{opportunity['id']}",
        json={"contact_ids": [second["id"], third["id"]], "row_version": opportunity["row_version"]},
    )

    assert response.status_code == 200
    assert set(response.json()["contact_ids"]) == {second["id"], third["id"]}
    assert client.get(f"/api/crm/contacts/{first['id']}").json()["opportunity_ids"] == []


def test_empty_contact_list_clears_links(client: TestClient) -> None:
    contact = client.post("/api/crm/contacts", json={"last_name": "Solo"}).json()
    opportunity = client.post(
        "/api/crm/opportunities",
        json={"name": "Clear", "contact_ids": [contact["id"]]},
    ).json()

    response = client.patch(
        f"/api/crm/opportunities/{opportunity['id']}",
        json={"contact_ids": [], "row_version": opportunity["row_version"]},
    )

    assert response.status_code == 200
    assert response.json()["contact_ids"] == []


def test_list_opportunities_by_account(client: TestClient) -> None:
    account = _create_account(client)
    client.post("/api/crm/opportunities", json={"name": "Linked", "account_id": account["id"]})
    client.post("/api/crm/opportunities", json={"name": "Loose"})

    response = client.get("/api/crm/opportunities", params={"account_id": account["id"]})

    assert [item["name"] for item in response.json()] == ["Linked"]


def test_reassigning_opportunity_notifies_new_assignee(client: TestClient, mailer, member: User) -> None:
    opportunity = client.post("/api/crm/opportunities", json={"name": "Handover"}).json()
    assert mailer.outbox == []

    response = client.patch(
        f"/api/crm/opportunities/{opportunity['id']}",
        json={"assigned_to": str(member.id), "row_version": opportunity["row_version"]},
    )

    assert response.status_code == 200
    assert [message.to for message in mailer.outbox] == [member.email]
    assert "Handover" in mailer.outbox[0].subject


def test_delete_opportunity_unlinks_contacts(client: TestClient) -> None:
    contact = client.post("/api/crm/contacts", json={"last_name": "Stay"}).json()
    opportunity = client.post(
        "/api/crm/opportunities",
        json={"name": "Temporary", "contact_ids": [contact["id"]]},
    ).json()

    response = client.delete(f"/api/crm/opportunities/{opportunity['id']}")

    assert response.status_code == 200
    assert client.get(f"/api/crm/contacts/{contact['id']}").json()["opportunity_ids"] == []
    deleted = [event for event in events.published_events if event["event_type"] == "crm.opportunity.deleted"]
    assert deleted[-1]["payload"]["contacts_unlinked"] == 1
