from __future__ import annotations

from datetime import date, datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.projects.models import TASK_PRIORITIES


BoardVisibility = Literal["PUBLIC", "PRIVATE", "SHARED"]
TaskStatus = Literal["ACTIVE", "PENDING", "COMPLETE"]

DEFAULT_SECTIONS = ["Backlog", "To Do", "In Progress", "Testing", "Done"]


def normalize_priority(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip().upper()
    if normalized == "NORMAL":
        return "MEDIUM"
    if normalized not in TASK_PRIORITIES:
        raise ValueError(f"priority must be one of {sorted(TASK_PRIORITIES)}")
    return normalized


def _strip_title(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    if not stripped:
        raise ValueError("title must not be blank")
    return stripped


class BoardCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    icon: str | None = Field(default=None, max_length=64)
    favourite: bool = False
    visibility: BoardVisibility = "PRIVATE"
    sections: list[str] | None = None
    shared_with: list[UUID] | None = None

    strip_title = field_validator("title")(_strip_title)


class BoardUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    icon: str | None = Field(default=None, max_length=64)
    favourite: bool | None = None
    visibility: BoardVisibility | None = None
    shared_with: list[UUID] | None = None
    row_version: int

    strip_title = field_validator("title")(_strip_title)


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    task_kind: str
    section_id: UUID | None
    account_id: UUID | None
    title: str
    content: str | None
    priority: str
    task_status: str
    due_date: date | None
    tags: list[str]
    position: int
    assigned_user_id: UUID | None
    created_by: UUID | None
    updated_by: UUID | None
    completed_at: datetime | None
    document_ids: list[UUID] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    row_version: int


class SectionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    board_id: UUID
    title: str
    position: int
    tasks: list[TaskRead] = Field(default_factory=list)


class BoardRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    description: str | None
    icon: str | None
    favourite: bool
    visibility: str
    owner_id: UUID
    position: int
    created_by: UUID | None
    updated_by: UUID | None
    watchers: list[UUID] = Field(default_factory=list)
    shared_with: list[UUID] = Field(default_factory=list)
    sections: list[SectionRead] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    row_version: int


class SectionCreate(BaseModel):
    board_id: UUID
    title: str = Field(min_length=1, max_length=255)

    strip_title = field_validator("title")(_strip_title)


class SectionUpdate(BaseModel):
    title: str = Field(min_length=1, max_length=255)

    strip_title = field_validator("title")(_strip_title)


class TaskCreate(BaseModel):
    board_id: UUID
    section_id: UUID | None = None
    title: str = Field(min_length=1, max_length=255)
    content: str | None = None
    priority: str = "MEDIUM"
    due_date: date | None = None
    tags: list[str] = Field(default_factory=list)
    assigned_user_id: UUID | None = None
    document_ids: list[UUID] | None = None

    strip_title = field_validator("title")(_strip_title)
    check_priority = field_validator("priority")(normalize_priority)


class TaskUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    content: str | None = None
    priority: str | None = None
    task_status: TaskStatus | None = None
    due_date: date | None = None
    tags: list[str] | None = None
    assigned_user_id: UUID | None = None
    document_ids: list[UUID] | None = None
    row_version: int

    strip_title = field_validator("title")(_strip_title)
    check_priority = field_validator("priority")(normalize_priority)


class TaskMove(BaseModel):
    section_id: UUID
    position: int | None = Field(default=None, ge=0)


class KanbanPositionUpdate(BaseModel):
    source_section_id: UUID
    source_items: list[UUID]
    destination_section_id: UUID
    destination_items: list[UUID]


class CommentCreate(BaseModel):
    comment: str = Field(min_length=1, max_length=2000)

    @field_validator("comment")
    @classmethod
    def strip_comment(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("comment must not be blank")
        return stripped


class CommentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    task_id: UUID
    user_id: UUID | None
    comment: str
    created_at: datetime
