from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any

import httpx
from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app import audit, events
from app.ai.models import GptModel
from app.ai.schemas import (
    DEFAULT_SYSTEM_PROMPT,
    ChatCompletionRequest,
    ChatCompletionResponse,
    ChatUsage,
    GptModelCreate,
    GptModelRead,
)
from app.core.auth import ActorUser
from app.core.authz import require_admin
from app.core.config import get_settings
from app.core.database import rollback_on_error
from app.core.errors import UpstreamError
from app.users.models import SystemService, UserOpenAiKey


logger = logging.getLogger("app.ai")
tracer = trace.get_tracer("app.ai")

SYSTEM_KEY_NAME = "openAiKey"


def resolve_api_key(session: Session, user_id: Any) -> str | None:
    """User key first, then the system-wide key, then the environment."""
    user_key = session.scalar(select(UserOpenAiKey.api_key).where(UserOpenAiKey.user_id == user_id))
    if user_key:
        return user_key
    system_key = session.scalar(select(SystemService.service_key).where(SystemService.name == SYSTEM_KEY_NAME))
    if system_key:
        return system_key
    return get_settings().openai_api_key or None


def resolve_model(session: Session) -> str:
    active = session.scalar(select(GptModel.model).where(GptModel.status == "ACTIVE").limit(1))
    return active or get_settings().openai_model


def _error_code(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return ""
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return str(error.get("code") or error.get("type") or "")
    return ""


def map_provider_error(response: httpx.Response) -> UpstreamError:
    code = _error_code(response)
    if response.status_code in {401, 402} or code == "insufficient_quota":
        return UpstreamError("openai", "AI provider rejected the credentials or quota", status_code=402, reason=code or None)
    if response.status_code == 429:
        return UpstreamError("openai", "AI provider rate limit exceeded", status_code=429, reason=code or None)
    if response.status_code == 404 or code == "model_not_found":
        return UpstreamError("openai", "AI model not available", status_code=503, reason=code or None)
    return UpstreamError("openai", f"AI provider error: {response.status_code}", status_code=502, reason=code or None)


class OpenAiClient:
    def __init__(self, base_url: str, timeout: float, transport: httpx.BaseTransport | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def create_chat_completion(self, api_key: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            with httpx.Client(timeout=httpx.Timeout(self.timeout), transport=self.transport) as client:
                response = client.post(
                    f"{self.base_url}/chat/completions",
                    headers={"Authorization": f"Bearer {api_key}"},
                    json=payload,
                )
        except httpx.TimeoutException as exc:
            raise UpstreamError("openai", "AI provider timed out", status_code=504) from exc
        except httpx.HTTPError as exc:
            raise UpstreamError("openai", "AI provider unreachable", status_code=503) from exc
        if response.status_code >= 400:
            raise map_provider_error(response)
        return response.json()


_client: OpenAiClient | None = None


def get_openai_client() -> OpenAiClient:
    global _client
    if _client is None:
        settings = get_settings()
        _client = OpenAiClient(settings.openai_base_url, settings.openai_timeout_seconds)
    return _client


def set_openai_client(client: OpenAiClient | None) -> None:
    global _client
    _client = client


class AiService:
    def chat_completion(
        self,
        session: Session,
        actor_user: ActorUser,
        dto: ChatCompletionRequest,
    ) -> ChatCompletionResponse:
        api_key = resolve_api_key(session, actor_user.user_id)
        if not api_key:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="OpenAI configuration not found. Please configure your OpenAI API key in settings",
            )

        model = resolve_model(session)
        payload = {
            "model": model,
            "messages": [
                {"role": "system", "content": dto.system_prompt or DEFAULT_SYSTEM_PROMPT},
                {"role": "user", "content": dto.prompt},
            ],
            "temperature": dto.temperature,
            "max_tokens": dto.max_tokens,
        }
        started = time.perf_counter()
        with tracer.start_as_current_span("ai.chat_completion") as span:
            span.set_attribute("ai.model", model)
            body = get_openai_client().create_chat_completion(api_key, payload)
        elapsed_ms = int((time.perf_counter() - started) * 1000)

        choices = body.get("choices") or [{}]
        first = choices[0] if isinstance(choices[0], dict) else {}
        usage = body.get("usage") or {}
        logger.info(
            "ai.chat_completion.succeeded",
            extra={"actor_user_id": str(actor_user.user_id), "duration_ms": elapsed_ms},
        )
        return ChatCompletionResponse(
            id=body.get("id"),
            model=body.get("model") or model,
            content=(first.get("message") or {}).get("content") or "",
            finish_reason=first.get("finish_reason"),
            usage=ChatUsage(
                prompt_tokens=usage.get("prompt_tokens", 0),
                completion_tokens=usage.get("completion_tokens", 0),
                total_tokens=usage.get("total_tokens", 0),
            ),
            response_time_ms=elapsed_ms,
            conversation_id=dto.conversation_id,
            timestamp=datetime.now(timezone.utc),
        )


ai_service = AiService()


class GptModelService:
    entity_type = "ai.gpt_model"

    def list_models(self, session: Session, actor_user: ActorUser) -> list[GptModelRead]:
        rows = session.scalars(select(GptModel).order_by(GptModel.model)).all()
        return [GptModelRead.model_validate(row) for row in rows]

    def create_model(self, session: Session, actor_user: ActorUser, dto: GptModelCreate) -> GptModelRead:
        require_admin(actor_user)
        existing = session.scalar(select(GptModel.id).where(GptModel.model == dto.model))
        if existing is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="GPT model already exists")
        with rollback_on_error(session):
            row = GptModel(model=dto.model, description=dto.description, status="INACTIVE")
            session.add(row)
            session.flush()
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=row.id,
                action="create",
                before=None,
                after={"model": row.model},
                correlation_id=actor_user.correlation_id,
            )
        session.commit()
        return GptModelRead.model_validate(row)

    def activate(self, session: Session, actor_user: ActorUser, model_id: uuid.UUID) -> GptModelRead:
        """Make one model ACTIVE and every other model INACTIVE in a single transaction."""
        require_admin(actor_user)
        row = session.get(GptModel, model_id)
        if row is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="GPT model not found")
        previous = session.scalar(select(GptModel.model).where(GptModel.status == "ACTIVE").limit(1))
        with rollback_on_error(session):
            session.execute(
                update(GptModel)
                .where(GptModel.id != row.id)
                .values(status="INACTIVE")
                .execution_options(synchronize_session=False)
            )
            row.status = "ACTIVE"
            session.flush()
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=row.id,
                action="activate",
                before={"active_model": previous},
                after={"active_model": row.model},
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "ai.gpt_model.activated",
                    actor_user.user_id,
                    {"model_id": str(row.id), "model": row.model},
                )
            )
        session.commit()
        logger.info("ai.gpt_model.activated", extra={"entity_id": str(row.id)})
        return GptModelRead.model_validate(row)


gpt_model_service = GptModelService()
