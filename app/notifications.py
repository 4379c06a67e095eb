"""Side effects that run only after the primary transaction has committed.

A mutation collects its effects in a :class:`PostCommitEffects` list while it
works, commits, and then calls :meth:`PostCommitEffects.run`. Every effect is
isolated: a failure is logged and reported back, never raised.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.mailer import get_mailer, render
from app.metrics import observe_side_effect
from app.storage import get_storage
from app.users.models import User


logger = logging.getLogger("app.notifications")
tracer = trace.get_tracer("app.notifications")


@dataclass
class SideEffect:
    name: str
    action: Callable[[], None]
    context: dict[str, Any] = field(default_factory=dict)


@dataclass
class EffectFailure:
    name: str
    error: str
    context: dict[str, Any]


class PostCommitEffects:
    def __init__(self) -> None:
        self._effects: list[SideEffect] = []
        self._ran = False

    def __len__(self) -> int:
        return len(self._effects)

    @property
    def names(self) -> list[str]:
        return [effect.name for effect in self._effects]

    def add(self, name: str, action: Callable[[], None], **context: Any) -> None:
        self._effects.append(SideEffect(name=name, action=action, context=context))

    def clear(self) -> None:
        self._effects.clear()

    def run(self) -> list[EffectFailure]:
        if self._ran:
            return []
        self._ran = True

        failures: list[EffectFailure] = []
        for effect in self._effects:
            with tracer.start_as_current_span("side_effect.run") as span:
                span.set_attribute("effect", effect.name)
                try:
                    effect.action()
                except Exception as exc:
                    span.set_attribute("error", True)
                    observe_side_effect(effect.name, "failed")
                    logger.exception(
                        "side_effect.failed",
                        extra={"effect": effect.name, "error": str(exc)[:500], **_loggable(effect.context)},
                    )
                    failures.append(EffectFailure(name=effect.name, error=str(exc), context=effect.context))
                    continue
                observe_side_effect(effect.name, "succeeded")
        return failures


def _loggable(context: dict[str, Any]) -> dict[str, Any]:
    return {key: str(value) for key, value in context.items() if key in {"entity_type", "entity_id", "key"}}


def notify(
    effects: PostCommitEffects,
    recipients: Iterable[str],
    template: str,
    data: dict[str, Any],
    *,
    entity_type: str | None = None,
    entity_id: uuid.UUID | None = None,
) -> None:
    """Queue one independent email per distinct recipient."""
    for recipient in dict.fromkeys(item for item in recipients if item):
        message = render(template, recipient, data)
        effects.add(
            f"email.{template}",
            lambda message=message: get_mailer().send(message),
            entity_type=entity_type,
            entity_id=entity_id,
        )


def delete_objects(
    effects: PostCommitEffects,
    keys: Iterable[str | None],
    *,
    entity_type: str,
    entity_id: uuid.UUID,
) -> None:
    for key in dict.fromkeys(item for item in keys if item):
        effects.add(
            "storage.delete",
            lambda key=key: get_storage().delete(key),
            entity_type=entity_type,
            entity_id=entity_id,
            key=key,
        )


def emails_for_users(
    session: Session,
    user_ids: Iterable[uuid.UUID | None],
    *,
    exclude: Iterable[uuid.UUID | None] = (),
) -> list[str]:
    excluded = {item for item in exclude if item is not None}
    wanted = [item for item in dict.fromkeys(user_ids) if item is not None and item not in excluded]
    if not wanted:
        return []
    rows = session.scalars(
        select(User.email).where(User.id.in_(wanted), User.user_status != "INACTIVE")
    ).all()
    return [email for email in rows if email]
