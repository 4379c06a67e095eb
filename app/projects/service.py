from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import delete, func, inspect, or_, select, update
from sqlalchemy.orm import Session

from app import audit, events
from app.core.auth import ActorUser
from app.core.authz import (
    board_for_task,
    board_watcher_ids,
    require_board_access,
    require_board_owner,
    require_task_access,
    require_task_participant,
)
from app.core.config import get_settings
from app.core.database import rollback_on_error, versioned_update
from app.crm.models import CRMDocument
from app.crm.relations import (
    BOARD_WATCHERS,
    TASK_DOCUMENTS,
    add_link,
    delete_links,
    delete_task_rows,
    linked_ids,
    reconcile_links,
    remove_link,
)
from app.notifications import PostCommitEffects, emails_for_users, notify
from app.projects.models import Board, BoardWatcher, Section, Task, TaskComment
from app.projects.positions import compact_after_removal, next_position, rewrite_positions
from app.projects.schemas import (
    DEFAULT_SECTIONS,
    BoardCreate,
    BoardRead,
    BoardUpdate,
    CommentCreate,
    CommentRead,
    KanbanPositionUpdate,
    SectionCreate,
    SectionRead,
    SectionUpdate,
    TaskCreate,
    TaskMove,
    TaskRead,
    TaskUpdate,
)
from app.users.models import User


logger = logging.getLogger("app.projects")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _columns(entity: Any) -> dict[str, Any]:
    return {attr.key: getattr(entity, attr.key) for attr in inspect(entity).mapper.column_attrs}


def _project_url(board_id: uuid.UUID) -> str:
    return f"{get_settings().app_public_url.rstrip('/')}/projects/boards/{board_id}"


def _ordered_task_ids(session: Session, section_id: uuid.UUID) -> list[uuid.UUID]:
    return list(
        session.scalars(
            select(Task.id).where(Task.section_id == section_id).order_by(Task.position.asc(), Task.created_at.asc())
        ).all()
    )


def _section_tasks(session: Session, section_id: uuid.UUID) -> list[uuid.UUID]:
    return list(session.scalars(select(Task.id).where(Task.section_id == section_id)).all())


class BoardService:
    entity_type = "projects.board"

    def create_board(self, session: Session, actor_user: ActorUser, dto: BoardCreate) -> BoardRead:
        effects = PostCommitEffects()
        with rollback_on_error(session):
            board = Board(
                title=dto.title,
                description=dto.description,
                icon=dto.icon,
                favourite=dto.favourite,
                visibility=dto.visibility,
                owner_id=actor_user.user_id,
                position=next_position(session, Board, "owner_id", actor_user.user_id),
                created_by=actor_user.user_id,
                updated_by=actor_user.user_id,
            )
            session.add(board)
            session.flush()

            titles = [title.strip() for title in (dto.sections or DEFAULT_SECTIONS) if title.strip()]
            if len({title.lower() for title in titles}) != len(titles):
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="section titles must be unique")
            session.add_all(
                Section(board_id=board.id, title=title, position=index) for index, title in enumerate(titles)
            )

            shared_with = [user_id for user_id in (dto.shared_with or []) if user_id != actor_user.user_id]
            reconcile_links(session, BOARD_WATCHERS, board.id, [actor_user.user_id, *shared_with])

            read_model = self._to_read_model(session, board.id)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=board.id,
                action="create",
                before=None,
                after=read_model.model_dump(mode="json", exclude={"sections"}),
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "projects.board.created",
                    actor_user.user_id,
                    {"board_id": str(board.id), "sections": len(titles), "visibility": board.visibility},
                )
            )
            self._notify_shared(session, effects, actor_user, read_model, shared_with)
        session.commit()
        effects.run()
        return read_model

    def list_boards(self, session: Session, actor_user: ActorUser) -> list[BoardRead]:
        stmt = select(Board)
        if not actor_user.is_admin:
            watched = select(BoardWatcher.board_id).where(BoardWatcher.user_id == actor_user.user_id)
            stmt = stmt.where(
                or_(
                    Board.owner_id == actor_user.user_id,
                    Board.visibility == "PUBLIC",
                    Board.id.in_(watched),
                )
            )
        stmt = stmt.order_by(Board.position.asc(), Board.created_at.asc())
        return [self._to_read(session, board, include_tasks=False) for board in session.scalars(stmt).all()]

    def get_board(self, session: Session, actor_user: ActorUser, board_id: uuid.UUID) -> BoardRead:
        board = self._get(session, board_id)
        require_board_access(session, actor_user, board)
        return self._to_read(session, board)

    def update_board(
        self,
        session: Session,
        actor_user: ActorUser,
        board_id: uuid.UUID,
        dto: BoardUpdate,
    ) -> BoardRead:
        board = self._get(session, board_id)
        require_board_access(session, actor_user, board)
        if dto.visibility is not None or dto.shared_with is not None:
            require_board_owner(actor_user, board)

        before = self._to_read(session, board, include_tasks=False)
        effects = PostCommitEffects()
        with rollback_on_error(session):
            changes: dict[str, Any] = {}
            for name in ("title", "description", "icon", "favourite", "visibility"):
                if name not in dto.model_fields_set:
                    continue
                value = getattr(dto, name)
                if value is None and name in {"title", "favourite", "visibility"}:
                    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{name} cannot be null")
                changes[name] = value
            changes["updated_by"] = actor_user.user_id
            versioned_update(session, Board, board_id, dto.row_version, changes)

            added: list[uuid.UUID] = []
            if dto.shared_with is not None:
                shared_with = [user_id for user_id in dto.shared_with if user_id != board.owner_id]
                reconcile_links(session, BOARD_WATCHERS, board_id, [board.owner_id, *shared_with])
                added = [user_id for user_id in shared_with if user_id not in before.watchers]

            read_model = self._to_read_model(session, board_id)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=board_id,
                action="update",
                before=before.model_dump(mode="json", exclude={"sections"}),
                after=read_model.model_dump(mode="json", exclude={"sections"}),
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "projects.board.updated",
                    actor_user.user_id,
                    {"board_id": str(board_id), "row_version": read_model.row_version},
                )
            )
            self._notify_shared(session, effects, actor_user, read_model, added)
        session.commit()
        effects.run()
        return read_model

    def delete_board(self, session: Session, actor_user: ActorUser, board_id: uuid.UUID) -> None:
        board = self._get(session, board_id)
        require_board_owner(actor_user, board)
        before = self._to_read(session, board, include_tasks=False).model_dump(mode="json", exclude={"sections"})
        owner_id = board.owner_id
        removed_position = board.position

        with rollback_on_error(session):
            section_ids = list(session.scalars(select(Section.id).where(Section.board_id == board_id)).all())
            task_ids = list(session.scalars(select(Task.id).where(Task.section_id.in_(section_ids))).all()) if section_ids else []
            tasks_removed = delete_task_rows(session, task_ids)
            session.execute(delete(Section).where(Section.board_id == board_id))
            delete_links(session, BOARD_WATCHERS, board_id)
            session.delete(board)
            session.flush()
            compact_after_removal(session, Board, "owner_id", owner_id, removed_position)

            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=board_id,
                action="delete",
                before=before,
                after=None,
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "projects.board.deleted",
                    actor_user.user_id,
                    {"board_id": str(board_id), "sections_removed": len(section_ids), "tasks_removed": tasks_removed},
                )
            )
        session.commit()
        logger.info(
            "projects.board.deleted",
            extra={"entity_type": self.entity_type, "entity_id": str(board_id), "removed": tasks_removed},
        )

    def watch(self, session: Session, actor_user: ActorUser, board_id: uuid.UUID) -> BoardRead:
        board = self._get(session, board_id)
        require_board_access(session, actor_user, board)
        with rollback_on_error(session):
            if add_link(session, BOARD_WATCHERS, board_id, actor_user.user_id):
                events.publish(
                    events.build_envelope(
                        "projects.board.watched",
                        actor_user.user_id,
                        {"board_id": str(board_id), "user_id": str(actor_user.user_id)},
                    )
                )
        session.commit()
        return self._to_read_model(session, board_id)

    def unwatch(self, session: Session, actor_user: ActorUser, board_id: uuid.UUID) -> BoardRead:
        self._get(session, board_id)
        with rollback_on_error(session):
            if remove_link(session, BOARD_WATCHERS, board_id, actor_user.user_id):
                events.publish(
                    events.build_envelope(
                        "projects.board.unwatched",
                        actor_user.user_id,
                        {"board_id": str(board_id), "user_id": str(actor_user.user_id)},
                    )
                )
        session.commit()
        return self._to_read_model(session, board_id)

    def _notify_shared(
        self,
        session: Session,
        effects: PostCommitEffects,
        actor_user: ActorUser,
        board: BoardRead,
        user_ids: list[uuid.UUID],
    ) -> None:
        notify(
            effects,
            emails_for_users(session, user_ids, exclude=[actor_user.user_id]),
            "board_shared",
            {"actor_name": actor_user.name or actor_user.email, "title": board.title, "url": _project_url(board.id)},
            entity_type=self.entity_type,
            entity_id=board.id,
        )

    def _get(self, session: Session, board_id: uuid.UUID) -> Board:
        board = session.get(Board, board_id)
        if board is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="board not found")
        return board

    def _to_read_model(self, session: Session, board_id: uuid.UUID) -> BoardRead:
        board = session.scalar(select(Board).where(Board.id == board_id).execution_options(populate_existing=True))
        if board is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="board not found")
        return self._to_read(session, board)

    def _to_read(self, session: Session, board: Board, *, include_tasks: bool = True) -> BoardRead:
        watchers = linked_ids(session, BOARD_WATCHERS, board.id)
        sections = session.scalars(
            select(Section).where(Section.board_id == board.id).order_by(Section.position.asc())
        ).all()
        return BoardRead.model_validate(
            {
                **_columns(board),
                "watchers": watchers,
                "shared_with": [user_id for user_id in watchers if user_id != board.owner_id],
                "sections": [section_service.to_read(session, section, include_tasks=include_tasks) for section in sections],
            }
        )


class SectionService:
    entity_type = "projects.section"

    def create_section(self, session: Session, actor_user: ActorUser, dto: SectionCreate) -> SectionRead:
        board = session.get(Board, dto.board_id)
        if board is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="board not found")
        require_board_access(session, actor_user, board)

        with rollback_on_error(session):
            self._ensure_unique_title(session, board.id, dto.title)
            section = Section(
                board_id=board.id,
                title=dto.title,
                position=next_position(session, Section, "board_id", board.id),
            )
            session.add(section)
            session.flush()
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=section.id,
                action="create",
                before=None,
                after={"board_id": str(board.id), "title": section.title, "position": section.position},
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "projects.section.created",
                    actor_user.user_id,
                    {"section_id": str(section.id), "board_id": str(board.id), "position": section.position},
                )
            )
        session.commit()
        return self.to_read(session, section)

    def update_section(
        self,
        session: Session,
        actor_user: ActorUser,
        section_id: uuid.UUID,
        dto: SectionUpdate,
    ) -> SectionRead:
        section, _ = self._get_with_access(session, actor_user, section_id)
        before_title = section.title
        with rollback_on_error(session):
            self._ensure_unique_title(session, section.board_id, dto.title, exclude_id=section.id)
            section.title = dto.title
            session.flush()
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=section.id,
                action="update",
                before={"title": before_title},
                after={"title": section.title},
                correlation_id=actor_user.correlation_id,
            )
        session.commit()
        return self.to_read(session, section)

    def delete_section(self, session: Session, actor_user: ActorUser, section_id: uuid.UUID) -> None:
        section, board = self._get_with_access(session, actor_user, section_id)
        removed_position = section.position

        with rollback_on_error(session):
            tasks_removed = delete_task_rows(session, _section_tasks(session, section_id))
            session.delete(section)
            session.flush()
            shifted = compact_after_removal(session, Section, "board_id", board.id, removed_position)

            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=section_id,
                action="delete",
                before={"board_id": str(board.id), "title": section.title, "position": removed_position},
                after=None,
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "projects.section.deleted",
                    actor_user.user_id,
                    {
                        "section_id": str(section_id),
                        "board_id": str(board.id),
                        "tasks_removed": tasks_removed,
                        "sections_shifted": shifted,
                    },
                )
            )
        session.commit()

    def _ensure_unique_title(
        self,
        session: Session,
        board_id: uuid.UUID,
        title: str,
        exclude_id: uuid.UUID | None = None,
    ) -> None:
        stmt = select(Section.id).where(Section.board_id == board_id, func.lower(Section.title) == title.lower())
        if exclude_id is not None:
            stmt = stmt.where(Section.id != exclude_id)
        if session.scalar(stmt) is not None:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="A section with this title already exists in this board",
            )

    def _get_with_access(self, session: Session, actor_user: ActorUser, section_id: uuid.UUID) -> tuple[Section, Board]:
        section = session.get(Section, section_id)
        if section is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="section not found")
        board = session.get(Board, section.board_id)
        if board is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="board not found")
        require_board_access(session, actor_user, board)
        return section, board

    def to_read(self, session: Session, section: Section, *, include_tasks: bool = True) -> SectionRead:
        tasks: list[TaskRead] = []
        if include_tasks:
            rows = session.scalars(
                select(Task).where(Task.section_id == section.id).order_by(Task.position.asc(), Task.created_at.asc())
            ).all()
            tasks = [task_service.to_read(session, task) for task in rows]
        return SectionRead.model_validate(
            {
                "id": section.id,
                "board_id": section.board_id,
                "title": section.title,
                "position": section.position,
                "tasks": tasks,
            }
        )


class TaskService:
    entity_type = "projects.task"

    def create_task(self, session: Session, actor_user: ActorUser, dto: TaskCreate) -> TaskRead:
        board = session.get(Board, dto.board_id)
        if board is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="board not found")
        require_board_access(session, actor_user, board)

        effects = PostCommitEffects()
        with rollback_on_error(session):
            section = self._resolve_section(session, board.id, dto.section_id)
            self.ensure_active_assignee(session, dto.assigned_user_id)
            task = Task(
                task_kind="project",
                section_id=section.id,
                title=dto.title,
                content=dto.content,
                priority=dto.priority,
                due_date=dto.due_date,
                tags=list(dto.tags),
                position=next_position(session, Task, "section_id", section.id),
                assigned_user_id=dto.assigned_user_id,
                created_by=actor_user.user_id,
                updated_by=actor_user.user_id,
            )
            session.add(task)
            session.flush()
            reconcile_links(session, TASK_DOCUMENTS, task.id, dto.document_ids)

            read_model = self.read_task(session, task.id)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=task.id,
                action="create",
                before=None,
                after=read_model.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "projects.task.created",
                    actor_user.user_id,
                    {"task_id": str(task.id), "section_id": str(section.id), "position": task.position},
                )
            )
            self.notify_assignee(session, effects, actor_user, read_model, board_id=board.id)
        session.commit()
        effects.run()
        return read_model

    def get_task(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID) -> TaskRead:
        task = self._get(session, task_id)
        require_task_access(session, actor_user, task, "view")
        return self.to_read(session, task)

    def update_task(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID, dto: TaskUpdate) -> TaskRead:
        task = self._get(session, task_id)
        require_task_access(session, actor_user, task, "update")
        before = self.to_read(session, task)
        effects = PostCommitEffects()

        with rollback_on_error(session):
            changes: dict[str, Any] = {}
            for name in ("title", "content", "priority", "task_status", "due_date", "tags", "assigned_user_id"):
                if name not in dto.model_fields_set:
                    continue
                value = getattr(dto, name)
                if value is None and name in {"title", "priority", "task_status", "tags"}:
                    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{name} cannot be null")
                changes[name] = value
            if changes.get("assigned_user_id") is not None:
                self.ensure_active_assignee(session, changes["assigned_user_id"])
            if "task_status" in changes:
                changes["completed_at"] = utcnow() if changes["task_status"] == "COMPLETE" else None
            changes["updated_by"] = actor_user.user_id
            versioned_update(session, Task, task_id, dto.row_version, changes)
            reconcile_links(session, TASK_DOCUMENTS, task_id, dto.document_ids)

            read_model = self.read_task(session, task_id)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=task_id,
                action="update",
                before=before.model_dump(mode="json"),
                after=read_model.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "projects.task.updated",
                    actor_user.user_id,
                    {"task_id": str(task_id), "row_version": read_model.row_version},
                )
            )
            if read_model.assigned_user_id != before.assigned_user_id:
                self.notify_assignee(session, effects, actor_user, read_model)
        session.commit()
        effects.run()
        return read_model

    def delete_task(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID) -> None:
        task = self._get(session, task_id)
        require_task_participant(actor_user, task, "delete")
        before = self.to_read(session, task).model_dump(mode="json")
        section_id = task.section_id
        removed_position = task.position
        task_kind = task.task_kind

        with rollback_on_error(session):
            delete_task_rows(session, [task_id])
            session.flush()
            if task_kind == "project" and section_id is not None:
                compact_after_removal(session, Task, "section_id", section_id, removed_position)

            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type="crm.task" if task_kind == "crm" else self.entity_type,
                entity_id=task_id,
                action="delete",
                before=before,
                after=None,
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.task.deleted" if task_kind == "crm" else "projects.task.deleted",
                    actor_user.user_id,
                    {"task_id": str(task_id), "section_id": str(section_id) if section_id else None},
                )
            )
        session.commit()

    def move_task(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID, dto: TaskMove) -> TaskRead:
        task = self._get(session, task_id)
        if task.task_kind != "project" or task.section_id is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="only project tasks can be moved")
        require_task_access(session, actor_user, task, "move")
        source = session.get(Section, task.section_id)
        destination = session.get(Section, dto.section_id)
        if source is None or destination is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="section not found")
        if source.board_id != destination.board_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="source and destination sections must belong to the same board",
            )

        with rollback_on_error(session):
            source_ids = [item for item in _ordered_task_ids(session, source.id) if item != task_id]
            destination_ids = source_ids if source.id == destination.id else _ordered_task_ids(session, destination.id)
            index = len(destination_ids) if dto.position is None else min(dto.position, len(destination_ids))
            destination_ids.insert(index, task_id)

            rewrite_positions(session, Task, "section_id", destination.id, destination_ids)
            if source.id != destination.id:
                rewrite_positions(session, Task, "section_id", source.id, source_ids)
            self._touch(session, actor_user, task_id)

            events.publish(
                events.build_envelope(
                    "projects.task.moved",
                    actor_user.user_id,
                    {
                        "task_id": str(task_id),
                        "from_section_id": str(source.id),
                        "to_section_id": str(destination.id),
                        "position": index,
                    },
                )
            )
        session.commit()
        return self.read_task(session, task_id)

    def update_kanban_positions(
        self,
        session: Session,
        actor_user: ActorUser,
        dto: KanbanPositionUpdate,
    ) -> list[SectionRead]:
        source = session.get(Section, dto.source_section_id)
        destination = session.get(Section, dto.destination_section_id)
        if source is None or destination is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="section not found")
        if source.board_id != destination.board_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="source and destination sections must belong to the same board",
            )
        board = session.get(Board, source.board_id)
        if board is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="board not found")
        require_board_access(session, actor_user, board)

        same_section = source.id == destination.id
        destination_items = list(dto.destination_items)
        source_items = [] if same_section else list(dto.source_items)
        submitted = destination_items + source_items
        current = set(_section_tasks(session, source.id)) | set(_section_tasks(session, destination.id))
        if len(set(submitted)) != len(submitted) or set(submitted) != current:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="items must list every task of both sections exactly once",
            )

        with rollback_on_error(session):
            rewrite_positions(session, Task, "section_id", destination.id, destination_items)
            if not same_section:
                rewrite_positions(session, Task, "section_id", source.id, source_items)
            events.publish(
                events.build_envelope(
                    "projects.kanban.reordered",
                    actor_user.user_id,
                    {"source_section_id": str(source.id), "destination_section_id": str(destination.id)},
                )
            )
        session.commit()

        sections = [destination] if same_section else [source, destination]
        return [section_service.to_read(session, section) for section in sections]

    def mark_done(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID) -> TaskRead:
        return self._set_status(session, actor_user, task_id, "COMPLETE")

    def reopen(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID) -> TaskRead:
        return self._set_status(session, actor_user, task_id, "ACTIVE")

    def add_comment(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID, dto: CommentCreate) -> CommentRead:
        task = self._get(session, task_id)
        require_task_access(session, actor_user, task, "comment on")
        effects = PostCommitEffects()

        with rollback_on_error(session):
            comment = TaskComment(task_id=task.id, user_id=actor_user.user_id, comment=dto.comment)
            session.add(comment)
            session.flush()

            recipients: list[uuid.UUID | None] = [task.assigned_user_id]
            board = board_for_task(session, task)
            if board is not None:
                recipients.extend(board_watcher_ids(session, board.id))
            notify(
                effects,
                emails_for_users(session, recipients, exclude=[actor_user.user_id]),
                "task_comment",
                {
                    "actor_name": actor_user.name or actor_user.email,
                    "title": task.title,
                    "comment": comment.comment,
                    "url": _project_url(board.id) if board is not None else "",
                },
                entity_type=self.entity_type,
                entity_id=task.id,
            )
            events.publish(
                events.build_envelope(
                    "projects.task.commented",
                    actor_user.user_id,
                    {"task_id": str(task.id), "comment_id": str(comment.id), "task_kind": task.task_kind},
                )
            )
        session.commit()
        effects.run()
        return CommentRead.model_validate(comment)

    def list_comments(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID) -> list[CommentRead]:
        task = self._get(session, task_id)
        require_task_access(session, actor_user, task, "view")
        comments = session.scalars(
            select(TaskComment).where(TaskComment.task_id == task_id).order_by(TaskComment.created_at.asc())
        ).all()
        return [CommentRead.model_validate(comment) for comment in comments]

    def assign_document(
        self,
        session: Session,
        actor_user: ActorUser,
        task_id: uuid.UUID,
        document_id: uuid.UUID,
    ) -> TaskRead:
        task = self._get(session, task_id)
        require_task_access(session, actor_user, task, "update")
        if session.get(CRMDocument, document_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="document not found")
        with rollback_on_error(session):
            if not add_link(session, TASK_DOCUMENTS, task_id, document_id):
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="document already linked to this task")
            self._touch(session, actor_user, task_id)
        session.commit()
        return self.read_task(session, task_id)

    def disconnect_document(
        self,
        session: Session,
        actor_user: ActorUser,
        task_id: uuid.UUID,
        document_id: uuid.UUID,
    ) -> TaskRead:
        task = self._get(session, task_id)
        require_task_access(session, actor_user, task, "update")
        with rollback_on_error(session):
            if not remove_link(session, TASK_DOCUMENTS, task_id, document_id):
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="document is not linked to this task")
            self._touch(session, actor_user, task_id)
        session.commit()
        return self.read_task(session, task_id)

    def ensure_active_assignee(self, session: Session, user_id: uuid.UUID | None) -> None:
        if user_id is None:
            return
        user_status = session.scalar(select(User.user_status).where(User.id == user_id))
        if user_status is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="assigned user not found")
        if user_status != "ACTIVE":
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="assigned user is not active")

    def notify_assignee(
        self,
        session: Session,
        effects: PostCommitEffects,
        actor_user: ActorUser,
        task: TaskRead,
        *,
        board_id: uuid.UUID | None = None,
    ) -> None:
        url = _project_url(board_id) if board_id is not None else ""
        notify(
            effects,
            emails_for_users(session, [task.assigned_user_id], exclude=[actor_user.user_id]),
            "task_assigned",
            {"actor_name": actor_user.name or actor_user.email, "title": task.title, "url": url},
            entity_type="crm.task" if task.task_kind == "crm" else self.entity_type,
            entity_id=task.id,
        )

    def read_task(self, session: Session, task_id: uuid.UUID) -> TaskRead:
        task = session.scalar(select(Task).where(Task.id == task_id).execution_options(populate_existing=True))
        if task is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="task not found")
        return self.to_read(session, task)

    def to_read(self, session: Session, task: Task) -> TaskRead:
        return TaskRead.model_validate(
            {
                **_columns(task),
                "tags": list(task.tags or []),
                "document_ids": linked_ids(session, TASK_DOCUMENTS, task.id),
            }
        )

    def _set_status(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID, task_status: str) -> TaskRead:
        task = self._get(session, task_id)
        require_task_access(session, actor_user, task, "update")
        with rollback_on_error(session):
            session.execute(
                update(Task)
                .where(Task.id == task_id)
                .values(
                    task_status=task_status,
                    completed_at=utcnow() if task_status == "COMPLETE" else None,
                    updated_by=actor_user.user_id,
                    updated_at=utcnow(),
                    row_version=Task.row_version + 1,
                )
                .execution_options(synchronize_session="fetch")
            )
            events.publish(
                events.build_envelope(
                    "projects.task.status_changed",
                    actor_user.user_id,
                    {"task_id": str(task_id), "task_status": task_status},
                )
            )
        session.commit()
        return self.read_task(session, task_id)

    def _touch(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID) -> None:
        session.execute(
            update(Task)
            .where(Task.id == task_id)
            .values(updated_by=actor_user.user_id, updated_at=utcnow(), row_version=Task.row_version + 1)
            .execution_options(synchronize_session="fetch")
        )

    def _resolve_section(self, session: Session, board_id: uuid.UUID, section_id: uuid.UUID | None) -> Section:
        if section_id is not None:
            section = session.get(Section, section_id)
            if section is None or section.board_id != board_id:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="section does not belong to this board")
            return section
        section = session.scalar(
            select(Section).where(Section.board_id == board_id).order_by(Section.position.asc()).limit(1)
        )
        if section is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="board has no sections")
        return section

    def _get(self, session: Session, task_id: uuid.UUID) -> Task:
        task = session.get(Task, task_id)
        if task is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="task not found")
        return task


board_service = BoardService()
section_service = SectionService()
task_service = TaskService()
