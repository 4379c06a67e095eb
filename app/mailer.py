from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from opentelemetry import trace

from app.core.config import get_settings
from app.core.errors import UpstreamError


logger = logging.getLogger("app.mailer")
tracer = trace.get_tracer("app.mailer")

RESEND_API_URL = "https://api.resend.com/emails"

_TEMPLATES: dict[str, tuple[str, str]] = {
    "task_assigned": (
        "New task assigned: {title}",
        "{actor_name} assigned you the task \"{title}\".\n\n{url}",
    ),
    "task_comment": (
        "New comment on task: {title}",
        "{actor_name} commented on \"{title}\":\n\n{comment}\n\n{url}",
    ),
    "contact_assigned": (
        "New contact assigned: {name}",
        "{actor_name} assigned you the contact {name}.\n\n{url}",
    ),
    "lead_assigned": (
        "New lead assigned: {name}",
        "{actor_name} assigned you the lead {name}.\n\n{url}",
    ),
    "opportunity_assigned": (
        "New opportunity assigned: {name}",
        "{actor_name} assigned you the opportunity {name}.\n\n{url}",
    ),
    "account_updated": (
        "Account updated: {name}",
        "{actor_name} updated the account {name} you are watching.\n\n{url}",
    ),
    "board_shared": (
        "Project shared with you: {title}",
        "{actor_name} shared the project \"{title}\" with you.\n\n{url}",
    ),
    "password_reset": (
        "NextCRM password reset",
        "Your password has been reset. Your new password is: {password}\n\nPlease change it after signing in.",
    ),
    "user_invited": (
        "You have been invited to NextCRM",
        "{actor_name} invited you to NextCRM.\n\nSign in with {email} and the password: {password}\n\n{url}",
    ),
    "new_user_pending": (
        "New user waiting for activation: {email}",
        "A new user {name} <{email}> signed up and is waiting for activation.\n\n{url}",
    ),
}


@dataclass
class EmailMessage:
    to: str
    subject: str
    text: str
    template: str
    data: dict[str, Any] = field(default_factory=dict)


def render(template: str, to: str, data: dict[str, Any]) -> EmailMessage:
    if template not in _TEMPLATES:
        raise ValueError(f"unknown email template: {template}")
    subject_format, body_format = _TEMPLATES[template]
    values = _TemplateValues(data)
    return EmailMessage(
        to=to,
        subject=subject_format.format_map(values),
        text=body_format.format_map(values),
        template=template,
        data=dict(data),
    )


class _TemplateValues(dict):
    def __missing__(self, key: str) -> str:
        return ""


class Mailer(Protocol):
    def send(self, message: EmailMessage) -> None: ...


class InMemoryMailer:
    def __init__(self) -> None:
        self.outbox: list[EmailMessage] = []

    def send(self, message: EmailMessage) -> None:
        self.outbox.append(message)
        logger.info("email.captured", extra={"template": message.template})


class ResendMailer:
    def __init__(self, api_key: str, sender: str, timeout: float) -> None:
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout

    def send(self, message: EmailMessage) -> None:
        with tracer.start_as_current_span("mailer.send") as span:
            span.set_attribute("email.template", message.template)
            try:
                with httpx.Client(timeout=httpx.Timeout(self.timeout)) as client:
                    response = client.post(
                        RESEND_API_URL,
                        headers={"Authorization": f"Bearer {self.api_key}"},
                        json={
                            "from": self.sender,
                            "to": [message.to],
                            "subject": message.subject,
                            "text": message.text,
                        },
                    )
                    response.raise_for_status()
            except httpx.TimeoutException as exc:
                raise UpstreamError("resend", "email provider timed out", status_code=504) from exc
            except httpx.HTTPStatusError as exc:
                raise UpstreamError(
                    "resend",
                    f"email provider rejected the message: {exc.response.status_code}",
                    status_code=502,
                ) from exc
            except httpx.HTTPError as exc:
                raise UpstreamError("resend", "email provider unreachable", status_code=503) from exc


_mailer: Mailer | None = None


def get_mailer() -> Mailer:
    global _mailer
    if _mailer is None:
        settings = get_settings()
        if settings.resend_api_key:
            _mailer = ResendMailer(settings.resend_api_key, settings.email_from, settings.email_timeout_seconds)
        else:
            _mailer = InMemoryMailer()
    return _mailer


def set_mailer(mailer: Mailer | None) -> None:
    global _mailer
    _mailer = mailer
