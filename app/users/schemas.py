from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


UserLanguage = Literal["en", "cz", "de", "uk"]


def _strip_optional(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


class SignupRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    username: str | None = Field(default=None, max_length=128)
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    language: UserLanguage = "en"

    strip_username = field_validator("username")(_strip_optional)


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str | None
    username: str | None
    email: str
    user_status: str
    is_admin: bool
    is_account_admin: bool
    user_language: str
    account_name: str | None
    avatar: str | None
    last_login: datetime | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class ProfileUpdate(BaseModel):
    name: str | None = Field(default=None, max_length=255)
    username: str | None = Field(default=None, max_length=128)
    account_name: str | None = None
    avatar: str | None = None
    row_version: int

    strip_username = field_validator("username")(_strip_optional)


class LanguageUpdate(BaseModel):
    language: UserLanguage


class OpenAiKeyUpdate(BaseModel):
    api_key: str | None = None
    organization_id: str | None = None

    strip_api_key = field_validator("api_key")(_strip_optional)


class NotionUpdate(BaseModel):
    notion_api_key: str = Field(min_length=1)
    notion_db_id: str = Field(min_length=1)


class AdminUpdate(BaseModel):
    is_admin: bool


class InviteRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    email: EmailStr
    language: UserLanguage = "en"


class PasswordResetRequest(BaseModel):
    email: EmailStr


class PasswordResetResponse(BaseModel):
    message: str
    warning: str | None = None


class PasswordChange(BaseModel):
    password: str = Field(min_length=1)
    cpassword: str = Field(min_length=1)
    current_password: str | None = None


class UserSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str | None
    email: str


class PasswordChangeResponse(BaseModel):
    message: str
    user: UserSummary


class ModuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    enabled: bool
    position: int


class ModuleToggleResponse(BaseModel):
    message: str
    changed: bool
    module: ModuleRead
