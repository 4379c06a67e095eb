from __future__ import annotations

import uuid

from sqlalchemy.orm import Session

from app.mailer import InMemoryMailer
from app.notifications import PostCommitEffects, delete_objects, emails_for_users, notify
from app.storage import InMemoryStorage


def test_failures_are_isolated_and_reported() -> None:
    calls: list[str] = []

    def fail() -> None:
        calls.append("fail")
        raise RuntimeError("provider down")

    effects = PostCommitEffects()
    effects.add("first", lambda: calls.append("first"))
    effects.add("broken", fail, entity_type="crm.document")
    effects.add("last", lambda: calls.append("last"))

    failures = effects.run()

    assert calls == ["first", "fail", "last"]
    assert [(failure.name, failure.error) for failure in failures] == [("broken", "provider down")]
    assert failures[0].context == {"entity_type": "crm.document"}


def test_effects_run_once() -> None:
    calls: list[int] = []
    effects = PostCommitEffects()
    effects.add("count", lambda: calls.append(1))

    effects.run()
    effects.run()

    assert calls == [1]


def test_notify_sends_one_email_per_distinct_recipient(mailer: InMemoryMailer) -> None:
    effects = PostCommitEffects()

    notify(effects, ["a@example.com", "", "b@example.com", "a@example.com"], "board_shared", {"title": "Roadmap"})
    effects.run()

    assert effects.names == ["email.board_shared", "email.board_shared"]
    assert [message.to for message in mailer.outbox] == ["a@example.com", "b@example.com"]


def test_delete_objects_skips_blank_keys(storage: InMemoryStorage) -> None:
    effects = PostCommitEffects()

    delete_objects(
        effects,
        ["invoices/1.pdf", None, "", "invoices/1.pdf", "rossum/1.json"],
        entity_type="crm.invoice",
        entity_id=uuid.uuid4(),
    )
    assert effects.run() == []

    assert storage.deleted_keys == ["invoices/1.pdf", "rossum/1.json"]


def test_emails_for_users_skips_inactive_and_excluded(db_session: Session, make_user) -> None:
    active = make_user("active@example.com")
    gone = make_user("gone@example.com", user_status="INACTIVE")
    actor = make_user("actor@example.com")

    emails = emails_for_users(db_session, [active.id, gone.id, actor.id, None, active.id], exclude=[actor.id])

    assert emails == ["active@example.com"]
