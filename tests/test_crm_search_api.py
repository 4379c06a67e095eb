from __future__ import annotations

from fastapi.testclient import TestClient

from app.crm.search import score
from app.users.models import User


def _search(client: TestClient, query: str, **extra: object):
    return client.post("/api/crm/search", json={"query": query, **extra})


def test_score_ranks_exact_over_prefix_over_substring() -> None:
    assert score("acme", ["Acme"]) == 10
    assert score("acme", ["Acme Corp"]) == 5
    assert score("acme", ["The Acme Corp"]) == 1
    assert score("acme", ["Acme", "acme corp", None]) == 15
    assert score("acme", ["Other"]) == 0


def test_search_requires_two_characters(client: TestClient) -> None:
    response = _search(client, " a ")

    assert response.status_code == 400
    assert response.json()["code"] == "crm_search_failed"


def test_search_groups_results_by_module(client: TestClient) -> None:
    client.post("/api/crm/accounts", json={"name": "Acme"})
    client.post("/api/crm/accounts", json={"name": "Big Acme Holdings"})
    client.post("/api/crm/contacts", json={"first_name": "Acme", "last_name": "Person"})
    client.post("/api/crm/opportunities", json={"name": "Acme renewal"})

    response = _search(client, "acme", modules=["accounts", "contacts", "opportunities"])

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["query"] == "acme"
    assert set(body["results_by_module"]) == {"accounts", "contacts", "opportunities"}
    assert [hit["title"] for hit in body["results_by_module"]["accounts"]] == ["Acme", "Big Acme Holdings"]
    assert body["results_by_module"]["contacts"][0]["title"] == "Acme Person"
    assert body["total_results"] == 4
    assert body["top_results"][0]["title"] == "Acme"
    assert body["top_results"][0]["relevance"] == 10


def test_search_hides_inactive_records_by_default(client: TestClient) -> None:
    client.post("/api/crm/accounts", json={"name": "Dormant Widgets", "status": "Inactive"})

    default = _search(client, "widgets", modules=["accounts"]).json()
    everything = _search(client, "widgets", modules=["accounts"], include_inactive=True).json()

    assert default["results_by_module"]["accounts"] == []
    assert [hit["title"] for hit in everything["results_by_module"]["accounts"]] == ["Dormant Widgets"]


def test_user_search_is_admin_only(client: TestClient, actor, member: User) -> None:
    admin_view = _search(client, "member", modules=["users"]).json()

    actor.use(member)
    member_view = _search(client, "member", modules=["users"]).json()

    assert [hit["subtitle"] for hit in admin_view["results_by_module"]["users"]] == [member.email]
    assert "users" not in member_view["results_by_module"]
    assert member_view["total_results"] == 0


def test_search_respects_board_visibility(client: TestClient, actor, member: User) -> None:
    client.post("/api/projects/boards", json={"title": "Roadmap private"})
    client.post("/api/projects/boards", json={"title": "Roadmap public", "visibility": "PUBLIC"})

    actor.use(member)
    body = _search(client, "roadmap", modules=["projects"]).json()

    assert [hit["title"] for hit in body["results_by_module"]["projects"]] == ["Roadmap public"]


def test_search_paginates_each_module(client: TestClient) -> None:
    for index in range(3):
        client.post("/api/crm/opportunities", json={"name": f"Deal {index}"})

    body = _search(client, "deal", modules=["opportunities"], limit=2, offset=1).json()

    assert len(body["results_by_module"]["opportunities"]) == 2
    assert body["total_results"] == 2
