from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.orm import Session

from app import audit
from app.core.config import get_settings
from app.core.database import get_db
from app.mailer import EmailMessage, set_mailer
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.projects.models import Board, BoardWatcher
from app.users.models import SystemModule, User, UserNotionIntegration
from app.users.service import PASSWORD_RESET_MESSAGE, hash_password, password_problems, verify_password


class FailingMailer:
    def send(self, message: EmailMessage) -> None:
        raise RuntimeError("smtp down")


@pytest.fixture()
def public_client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _signup(client: TestClient, email: str, name: str = "New Person") -> dict:
    response = client.post("/api/users/signup", json={"name": name, "email": email, "password": "long-enough-pw"})
    assert response.status_code == 201, response.text
    return response.json()


def test_first_signup_becomes_active_admin(public_client: TestClient, db_session: Session, mailer) -> None:
    first = _signup(public_client, "Founder@Example.com", name="Founder")
    second = _signup(public_client, "joiner@example.com", name="Joiner")

    assert first["email"] == "founder@example.com"
    assert first["is_admin"] is True
    assert first["user_status"] == "ACTIVE"
    assert second["is_admin"] is False
    assert second["user_status"] == "PENDING"
    assert [message.to for message in mailer.outbox] == ["founder@example.com"]
    assert mailer.outbox[0].template == "new_user_pending"

    stored = db_session.scalar(select(User).where(User.email == "founder@example.com"))
    assert stored.password_hash != "long-enough-pw"
    assert verify_password("long-enough-pw", stored.password_hash)


def test_signup_rejects_duplicate_email(client: TestClient, admin: User) -> None:
    response = client.post(
        "/api/users/signup",
        json={"name": "Copy", "email": "ADMIN@example.com", "password": "long-enough-pw"},
    )

    assert response.status_code == 409
    assert response.json()["message"] == "User already exists"


def test_signup_rejects_short_password(public_client: TestClient) -> None:
    response = public_client.post("/api/users/signup", json={"name": "Short", "email": "s@example.com", "password": "x"})

    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"


def test_password_reset_for_unknown_email_does_not_leak(client: TestClient, mailer) -> None:
    response = client.post("/api/users/password-reset", json={"email": "nobody@example.com"})

    assert response.status_code == 200
    assert response.json()["message"] == PASSWORD_RESET_MESSAGE
    assert response.json()["warning"] is None
    assert mailer.outbox == []


def test_password_reset_sends_new_password(client: TestClient, db_session: Session, mailer, member: User) -> None:
    old_hash = member.password_hash

    response = client.post("/api/users/password-reset", json={"email": "Member@example.com"})

    assert response.status_code == 200
    assert response.json()["message"] == PASSWORD_RESET_MESSAGE
    assert [message.to for message in mailer.outbox] == [member.email]
    new_password = mailer.outbox[0].data["password"]
    db_session.expire_all()
    refreshed = db_session.get(User, member.id)
    assert refreshed.password_hash != old_hash
    assert verify_password(new_password, refreshed.password_hash)
    assert any(entry["action"] == "password_reset" for entry in audit.audit_entries)


def test_password_reset_for_inactive_user_is_forbidden(client: TestClient, make_user) -> None:
    make_user("gone@example.com", user_status="INACTIVE")

    response = client.post("/api/users/password-reset", json={"email": "gone@example.com"})

    assert response.status_code == 403
    assert response.json()["message"] == "User account is inactive"


def test_password_reset_reports_email_failure(client: TestClient, member: User) -> None:
    set_mailer(FailingMailer())

    response = client.post("/api/users/password-reset", json={"email": member.email})

    assert response.status_code == 200
    assert response.json() == {"message": PASSWORD_RESET_MESSAGE, "warning": "EMAIL_DELIVERY_FAILED"}


def test_password_reset_is_rate_limited(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    get_settings.cache_clear()
    reset_rate_limiter()

    statuses = [
        client.post("/api/users/password-reset", json={"email": "nobody@example.com"}).status_code for _ in range(6)
    ]

    assert statuses == [200, 200, 200, 200, 200, 429]
    limited = client.post("/api/users/password-reset", json={"email": "nobody@example.com"})
    assert limited.json()["code"] == "users_password_reset_failed"
    assert int(limited.headers["retry-after"]) >= 1
    other = client.post("/api/users/password-reset", json={"email": "someone-else@example.com"})
    assert other.status_code == 200


def test_member_cannot_list_users(client: TestClient, actor, member: User) -> None:
    actor.use(member)

    response = client.get("/api/users")

    assert response.status_code == 403
    assert response.json()["message"] == "Admin privileges required"


def test_admin_activates_pending_user(client: TestClient, make_user) -> None:
    pending = make_user("pending@example.com", user_status="PENDING")

    response = client.post(f"/api/users/{pending.id}/activate")

    assert response.status_code == 200
    assert response.json()["user_status"] == "ACTIVE"


def test_last_admin_cannot_be_removed(client: TestClient, admin: User, make_user) -> None:
    demote = client.post(f"/api/users/{admin.id}/admin", json={"is_admin": False})
    deactivate = client.post(f"/api/users/{admin.id}/deactivate")

    assert demote.status_code == 400
    assert demote.json()["message"] == "At least one admin must remain"
    assert deactivate.status_code == 400

    make_user("second-admin@example.com", is_admin=True)
    assert client.post(f"/api/users/{admin.id}/admin", json={"is_admin": False}).status_code == 200


def test_admin_cannot_delete_self(client: TestClient, admin: User) -> None:
    response = client.delete(f"/api/users/{admin.id}")

    assert response.status_code == 400
    assert response.json()["message"] == "You cannot delete your own account"


def test_delete_user_hands_work_to_admin(
    client: TestClient,
    db_session: Session,
    actor,
    admin: User,
    member: User,
) -> None:
    actor.use(member)
    board = client.post("/api/projects/boards", json={"title": "Member board"}).json()
    task = client.post("/api/projects/tasks", json={"board_id": board["id"], "title": "Member task"}).json()
    account = client.post("/api/crm/accounts", json={"name": "Owned", "assigned_to": str(member.id)}).json()

    actor.use(admin)
    response = client.delete(f"/api/users/{member.id}")

    assert response.status_code == 200
    assert response.json() == {"status": "deleted"}
    assert db_session.get(User, member.id) is None
    transferred = client.get(f"/api/projects/boards/{board['id']}").json()
    assert transferred["owner_id"] == str(admin.id)
    assert transferred["watchers"] == [str(admin.id)]
    assert client.get(f"/api/projects/tasks/{task['id']}").json()["created_by"] == str(admin.id)
    assert client.get(f"/api/crm/accounts/{account['id']}").json()["assigned_to"] is None
    watchers = db_session.scalars(select(BoardWatcher).where(BoardWatcher.user_id == member.id)).all()
    assert watchers == []


def test_invite_emails_generated_password(client: TestClient, mailer) -> None:
    response = client.post("/api/users/invite", json={"name": "Invitee", "email": "invitee@example.com"})

    assert response.status_code == 201
    assert response.json()["user"]["user_status"] == "ACTIVE"
    assert "warnings" not in response.json()
    assert mailer.outbox[0].template == "user_invited"
    assert mailer.outbox[0].data["password"]


def test_invite_reports_email_failure(client: TestClient) -> None:
    set_mailer(FailingMailer())

    response = client.post("/api/users/invite", json={"name": "Invitee", "email": "invitee@example.com"})

    assert response.status_code == 201
    assert response.json()["warnings"] == ["email.user_invited"]


def test_update_own_profile(client: TestClient, admin: User) -> None:
    me = client.get("/api/users/me").json()

    response = client.patch("/api/users/me", json={"name": "Ada L.", "row_version": me["row_version"]})
    language = client.put("/api/users/me/language", json={"language": "de"})

    assert response.status_code == 200
    assert response.json()["name"] == "Ada L."
    assert language.json()["user_language"] == "de"


def test_get_other_user_requires_admin(client: TestClient, actor, admin: User, member: User) -> None:
    actor.use(member)

    own = client.get(f"/api/users/{member.id}")
    other = client.get(f"/api/users/{admin.id}")
    missing_admin_view = uuid.uuid4()

    assert own.status_code == 200
    assert other.status_code == 403
    actor.use(admin)
    assert client.get(f"/api/users/{missing_admin_view}").status_code == 404


def test_notion_settings_replace_previous_row(client: TestClient, db_session: Session, admin: User) -> None:
    first = client.put("/api/users/me/notion", json={"notion_api_key": "secret_a", "notion_db_id": "db-a"})
    second = client.put("/api/users/me/notion", json={"notion_api_key": "secret_b", "notion_db_id": "db-b"})

    assert first.json() == {"configured": True}
    assert second.status_code == 200
    rows = db_session.scalars(select(UserNotionIntegration).where(UserNotionIntegration.user_id == admin.id)).all()
    assert [row.notion_db_id for row in rows] == ["db-b"]


def _owned_positions(db_session: Session, owner_id: uuid.UUID) -> list[tuple[str, int]]:
    db_session.expire_all()
    boards = db_session.scalars(select(Board).where(Board.owner_id == owner_id).order_by(Board.position)).all()
    return [(board.title, board.position) for board in boards]


def test_delete_user_appends_boards_after_admins_own(
    client: TestClient,
    db_session: Session,
    actor,
    admin: User,
    member: User,
) -> None:
    first = client.post("/api/projects/boards", json={"title": "A0"}).json()
    client.post("/api/projects/boards", json={"title": "A1"})
    actor.use(member)
    client.post("/api/projects/boards", json={"title": "M0"})
    client.post("/api/projects/boards", json={"title": "M1"})

    actor.use(admin)
    assert client.delete(f"/api/users/{member.id}").status_code == 200
    assert _owned_positions(db_session, admin.id) == [("A0", 0), ("A1", 1), ("M0", 2), ("M1", 3)]

    assert client.delete(f"/api/projects/boards/{first['id']}").status_code == 200
    assert _owned_positions(db_session, admin.id) == [("A1", 0), ("M0", 1), ("M1", 2)]


def test_passwords_are_stored_as_bcrypt_hashes() -> None:
    stored = hash_password("Sup3r$ecret")

    assert stored.startswith("$2")
    assert verify_password("Sup3r$ecret", stored)
    assert not verify_password("sup3r$ecret", stored)
    assert not verify_password("Sup3r$ecret", "a1b2c3$0123456789abcdef")
    assert not verify_password("Sup3r$ecret", None)


def test_password_strength_rules() -> None:
    assert password_problems("Abcdef1!") == []
    assert password_problems("short") == [
        "Password must be at least 8 characters long",
        "Password must contain at least one uppercase letter",
        "Password must contain at least one number",
        "Password must contain at least one special character",
    ]
    assert "Password must be less than 128 characters long" in password_problems("Aa1!" * 40)
    assert "Password is too common and easily guessable" in password_problems("password123")


def test_change_own_password(client: TestClient, db_session: Session, admin: User) -> None:
    response = client.put(
        f"/api/users/{admin.id}/password",
        json={"password": "N3w-Passw0rd", "cpassword": "N3w-Passw0rd", "current_password": "secret-password"},
    )

    assert response.status_code == 200
    assert response.json() == {
        "message": "Password updated successfully",
        "user": {"id": str(admin.id), "name": "Ada Admin", "email": "admin@example.com"},
    }
    db_session.refresh(admin)
    assert verify_password("N3w-Passw0rd", admin.password_hash)
    assert not verify_password("secret-password", admin.password_hash)
    assert audit.audit_entries[-1]["action"] == "password_change"


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        ({"password": "N3w-Passw0rd", "cpassword": "N3w-Passw0rd!"}, "Passwords do not match"),
        ({"password": "N3w-Passw0rd", "cpassword": "N3w-Passw0rd"}, "Current password is required to set a new password"),
        (
            {"password": "N3w-Passw0rd", "cpassword": "N3w-Passw0rd", "current_password": "wrong-password"},
            "Current password is incorrect",
        ),
    ],
)
def test_change_own_password_rejections(
    client: TestClient,
    db_session: Session,
    admin: User,
    payload: dict,
    message: str,
) -> None:
    before = admin.password_hash

    response = client.put(f"/api/users/{admin.id}/password", json=payload)

    assert response.status_code == 400
    assert response.json()["code"] == "users_password_change_failed"
    assert response.json()["message"] == message
    db_session.refresh(admin)
    assert admin.password_hash == before


def test_change_password_enforces_strength(client: TestClient, admin: User) -> None:
    response = client.put(
        f"/api/users/{admin.id}/password",
        json={"password": "weakpass", "cpassword": "weakpass", "current_password": "secret-password"},
    )

    assert response.status_code == 400
    body = response.json()
    assert body["message"] == "Password does not meet security requirements"
    assert "Password must contain at least one uppercase letter" in body["details"]["requirements"]


def test_change_password_must_differ_from_current(client: TestClient, make_user, actor) -> None:
    user = make_user("strong@example.com", password="Str0ng!Pass")
    actor.use(user)

    response = client.put(
        f"/api/users/{user.id}/password",
        json={"password": "Str0ng!Pass", "cpassword": "Str0ng!Pass", "current_password": "Str0ng!Pass"},
    )

    assert response.status_code == 400
    assert response.json()["message"] == "New password must be different from current password"


def test_only_admins_change_other_passwords(
    client: TestClient,
    db_session: Session,
    actor,
    admin: User,
    member: User,
) -> None:
    actor.use(member)
    denied = client.put(
        f"/api/users/{admin.id}/password",
        json={"password": "N3w-Passw0rd", "cpassword": "N3w-Passw0rd", "current_password": "secret-password"},
    )
    actor.use(admin)
    allowed = client.put(f"/api/users/{member.id}/password", json={"password": "N3w-Passw0rd", "cpassword": "N3w-Passw0rd"})

    assert denied.status_code == 403
    assert denied.json()["message"] == "You can only update your own password"
    assert allowed.status_code == 200
    db_session.refresh(member)
    assert verify_password("N3w-Passw0rd", member.password_hash)


@pytest.fixture()
def modules(db_session: Session) -> list[SystemModule]:
    rows = [
        SystemModule(name="projects", enabled=True, position=1),
        SystemModule(name="crm", enabled=True, position=0),
        SystemModule(name="invoice", enabled=False, position=2),
    ]
    db_session.add_all(rows)
    db_session.commit()
    return rows


def test_admin_lists_modules_in_order(client: TestClient, actor, member: User, modules: list[SystemModule]) -> None:
    listing = client.get("/api/admin/modules")

    assert [(item["name"], item["enabled"]) for item in listing.json()] == [
        ("crm", True),
        ("projects", True),
        ("invoice", False),
    ]
    actor.use(member)
    denied = client.get("/api/admin/modules")
    assert denied.status_code == 403
    assert denied.json()["code"] == "admin_modules_list_failed"


def test_module_toggle_reports_changes(client: TestClient, modules: list[SystemModule]) -> None:
    projects = modules[0]

    first = client.post(f"/api/admin/modules/{projects.id}/deactivate")
    again = client.post(f"/api/admin/modules/{projects.id}/deactivate")
    restored = client.post(f"/api/admin/modules/{projects.id}/activate")

    assert first.status_code == 200
    assert first.json()["changed"] is True
    assert first.json()["module"]["enabled"] is False
    assert first.json()["message"] == 'Module "projects" has been deactivated successfully'
    assert again.json()["changed"] is False
    assert again.json()["message"] == 'Module "projects" is already disabled'
    assert restored.json()["module"]["enabled"] is True
    assert audit.audit_entries[-1]["action"] == "activate"


def test_module_toggle_unknown_and_forbidden(client: TestClient, actor, member: User, modules: list[SystemModule]) -> None:
    missing = client.post(f"/api/admin/modules/{uuid.uuid4()}/activate")
    actor.use(member)
    denied = client.post(f"/api/admin/modules/{modules[2].id}/activate")

    assert missing.status_code == 404
    assert missing.json()["message"] == "Module not found"
    assert denied.status_code == 403
    assert denied.json()["code"] == "admin_module_activate_failed"
