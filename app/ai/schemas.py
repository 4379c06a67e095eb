from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant for NextCRM. Provide accurate, professional, and helpful "
    "responses to assist users with their CRM-related tasks and questions."
)


class ChatCompletionRequest(BaseModel):
    prompt: str = Field(min_length=1, max_length=4000)
    temperature: float = Field(default=0.7, ge=0, le=2)
    max_tokens: int = Field(default=1000, ge=1, le=4000)
    system_prompt: str | None = None
    conversation_id: str | None = None

    @field_validator("prompt")
    @classmethod
    def strip_prompt(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("prompt must not be blank")
        return stripped


class ChatUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatCompletionResponse(BaseModel):
    id: str | None
    model: str
    content: str
    finish_reason: str | None
    usage: ChatUsage
    response_time_ms: int
    conversation_id: str | None
    timestamp: datetime


class GptModelCreate(BaseModel):
    model: str = Field(min_length=1, max_length=128)
    description: str | None = None

    @field_validator("model")
    @classmethod
    def strip_model(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("model must not be blank")
        return stripped


class GptModelRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    model: str
    description: str | None
    status: str
    created_at: datetime
