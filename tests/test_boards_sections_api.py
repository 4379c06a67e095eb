from __future__ import annotations

import uuid

from fastapi.testclient import TestClient
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app import events
from app.projects.models import BoardWatcher, Section, Task, TaskComment
from app.users.models import User


def _create_board(client: TestClient, **overrides: object) -> dict:
    response = client.post("/api/projects/boards", json={"title": "Sprint1", **overrides})
    assert response.status_code == 201, response.text
    return response.json()


def test_create_board_with_default_sections(client: TestClient, admin: User) -> None:
    board = _create_board(client)

    assert [section["title"] for section in board["sections"]] == ["Backlog", "To Do", "In Progress", "Testing", "Done"]
    assert [section["position"] for section in board["sections"]] == [0, 1, 2, 3, 4]
    assert board["owner_id"] == str(admin.id)
    assert board["watchers"] == [str(admin.id)]
    assert board["shared_with"] == []
    assert board["visibility"] == "PRIVATE"


def test_create_board_with_custom_sections_rejects_duplicates(client: TestClient) -> None:
    response = client.post("/api/projects/boards", json={"title": "Dupes", "sections": ["Todo", "todo"]})

    assert response.status_code == 400
    assert response.json()["message"] == "section titles must be unique"
    assert client.get("/api/projects/boards").json() == []


def test_delete_section_compacts_positions(client: TestClient) -> None:
    board = _create_board(client)
    doomed = board["sections"][2]
    task = client.post(
        "/api/projects/tasks",
        json={"board_id": board["id"], "section_id": doomed["id"], "title": "Inside"},
    ).json()

    response = client.delete(f"/api/projects/sections/{doomed['id']}")

    assert response.status_code == 200
    sections = client.get(f"/api/projects/boards/{board['id']}").json()["sections"]
    assert [section["title"] for section in sections] == ["Backlog", "To Do", "Testing", "Done"]
    assert [section["position"] for section in sections] == [0, 1, 2, 3]
    assert client.get(f"/api/projects/tasks/{task['id']}").status_code == 404
    deleted = [event for event in events.published_events if event["event_type"] == "projects.section.deleted"]
    assert deleted[-1]["payload"]["tasks_removed"] == 1
    assert deleted[-1]["payload"]["sections_shifted"] == 2


def test_create_section_appends_and_rejects_duplicate_title(client: TestClient) -> None:
    board = _create_board(client, sections=["One"])

    created = client.post("/api/projects/sections", json={"board_id": board["id"], "title": "Two"})
    duplicate = client.post("/api/projects/sections", json={"board_id": board["id"], "title": "two"})

    assert created.status_code == 201
    assert created.json()["position"] == 1
    assert duplicate.status_code == 409
    assert duplicate.json()["message"] == "A section with this title already exists in this board"


def test_rename_section_to_existing_title_conflicts(client: TestClient) -> None:
    board = _create_board(client, sections=["Left", "Right"])
    left = board["sections"][0]

    same = client.patch(f"/api/projects/sections/{left['id']}", json={"title": "left"})
    clash = client.patch(f"/api/projects/sections/{left['id']}", json={"title": "Right"})

    assert same.status_code == 200
    assert same.json()["title"] == "left"
    assert clash.status_code == 409


def test_private_board_hidden_from_non_watchers(client: TestClient, actor, admin: User, member: User) -> None:
    board = _create_board(client)

    actor.use(member)
    fetched = client.get(f"/api/projects/boards/{board['id']}")
    listing = client.get("/api/projects/boards")
    section = client.post("/api/projects/sections", json={"board_id": board["id"], "title": "Sneaky"})

    assert fetched.status_code == 403
    assert fetched.json()["message"] == "You do not have access to this board"
    assert listing.json() == []
    assert section.status_code == 403


def test_shared_with_grants_access_and_notifies(client: TestClient, actor, mailer, admin: User, member: User) -> None:
    board = _create_board(client, shared_with=[str(member.id), str(admin.id)])

    assert set(board["watchers"]) == {str(admin.id), str(member.id)}
    assert board["shared_with"] == [str(member.id)]
    assert [message.to for message in mailer.outbox] == [member.email]
    assert mailer.outbox[0].template == "board_shared"

    actor.use(member)
    assert client.get(f"/api/projects/boards/{board['id']}").status_code == 200
    assert [item["id"] for item in client.get("/api/projects/boards").json()] == [board["id"]]


def test_only_owner_changes_visibility(client: TestClient, actor, member: User) -> None:
    board = _create_board(client, visibility="PUBLIC")

    actor.use(member)
    rename = client.patch(f"/api/projects/boards/{board['id']}", json={"title": "Renamed", "row_version": 1})
    visibility = client.patch(
        f"/api/projects/boards/{board['id']}",
        json={"visibility": "PRIVATE", "row_version": 2},
    )

    assert rename.status_code == 200
    assert rename.json()["title"] == "Renamed"
    assert visibility.status_code == 403
    assert visibility.json()["message"] == "Only the board owner can change this board"


def test_update_shared_with_replaces_watchers_but_keeps_owner(
    client: TestClient,
    db_session: Session,
    admin: User,
    member: User,
    make_user,
) -> None:
    other = make_user("other@example.com")
    board = _create_board(client, shared_with=[str(member.id)])

    response = client.patch(
        f"/api/projects/boards/{board['id']}",
        json={"shared_with": [str(other.id)], "row_version": board["row_version"]},
    )

    assert response.status_code == 200
    assert response.json()["shared_with"] == [str(other.id)]
    rows = db_session.scalars(select(BoardWatcher.user_id).where(BoardWatcher.board_id == uuid.UUID(board["id"]))).all()
    assert set(rows) == {admin.id, other.id}


def test_watch_and_unwatch_public_board(client: TestClient, actor, member: User) -> None:
    board = _create_board(client, visibility="PUBLIC")

    actor.use(member)
    watched = client.post(f"/api/projects/boards/{board['id']}/watch")
    again = client.post(f"/api/projects/boards/{board['id']}/watch")
    unwatched = client.post(f"/api/projects/boards/{board['id']}/unwatch")

    assert str(member.id) in watched.json()["watchers"]
    assert again.json()["watchers"] == watched.json()["watchers"]
    assert str(member.id) not in unwatched.json()["watchers"]


def test_delete_board_removes_sections_tasks_and_comments(client: TestClient, db_session: Session) -> None:
    first = _create_board(client, title="First")
    second = _create_board(client, title="Second")
    task = client.post("/api/projects/tasks", json={"board_id": first["id"], "title": "Work"}).json()
    client.post(f"/api/projects/tasks/{task['id']}/comments", json={"comment": "note"})

    response = client.delete(f"/api/projects/boards/{first['id']}")

    assert response.status_code == 200
    assert response.json() == {"status": "deleted"}
    assert db_session.scalar(select(func.count()).select_from(Task)) == 0
    assert db_session.scalar(select(func.count()).select_from(TaskComment)) == 0
    assert db_session.scalar(
        select(func.count()).select_from(Section).where(Section.board_id == uuid.UUID(first["id"]))
    ) == 0
    remaining = client.get(f"/api/projects/boards/{second['id']}").json()
    assert remaining["position"] == 0


def test_non_owner_cannot_delete_board(client: TestClient, actor, member: User) -> None:
    board = _create_board(client, visibility="PUBLIC")

    actor.use(member)
    response = client.delete(f"/api/projects/boards/{board['id']}")

    assert response.status_code == 403
    assert response.json()["code"] == "projects_board_delete_failed"


def test_outsider_cannot_mutate_private_board(client: TestClient, actor, admin: User, member: User) -> None:
    board = _create_board(client)
    section = board["sections"][0]
    task = client.post(
        "/api/projects/tasks",
        json={"board_id": board["id"], "section_id": section["id"], "title": "Guarded"},
    ).json()

    actor.use(member)
    responses = [
        client.patch(
            f"/api/projects/boards/{board['id']}",
            json={"title": "Hijacked", "row_version": board["row_version"]},
        ),
        client.patch(f"/api/projects/sections/{section['id']}", json={"title": "Renamed"}),
        client.patch(f"/api/projects/tasks/{task['id']}", json={"title": "Renamed", "row_version": task["row_version"]}),
        client.delete(f"/api/projects/tasks/{task['id']}"),
        client.delete(f"/api/projects/sections/{section['id']}"),
        client.delete(f"/api/projects/boards/{board['id']}"),
    ]

    assert [response.status_code for response in responses] == [403] * 6
    actor.use(admin)
    after = client.get(f"/api/projects/boards/{board['id']}").json()
    assert after["title"] == board["title"]
    assert after["row_version"] == board["row_version"]
    assert [(item["id"], item["title"], item["position"]) for item in after["sections"]] == [
        (item["id"], item["title"], item["position"]) for item in board["sections"]
    ]
    assert [item["id"] for item in after["sections"][0]["tasks"]] == [task["id"]]
    assert after["watchers"] == board["watchers"]
    remaining = client.get(f"/api/projects/tasks/{task['id']}")
    assert remaining.status_code == 200
    assert remaining.json()["title"] == "Guarded"
    assert remaining.json()["row_version"] == task["row_version"]
