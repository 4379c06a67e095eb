from __future__ import annotations

import uuid
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.auth import ActorUser
from app.projects.models import Board, BoardWatcher, Section, Task


def require_admin(actor_user: ActorUser) -> None:
    if not actor_user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin privileges required")


def is_task_participant(actor_user: ActorUser, task: Task) -> bool:
    return actor_user.is_admin or actor_user.user_id in {task.assigned_user_id, task.created_by}


def board_watcher_ids(session: Session, board_id: uuid.UUID) -> set[uuid.UUID]:
    return set(session.scalars(select(BoardWatcher.user_id).where(BoardWatcher.board_id == board_id)).all())


def can_access_board(actor_user: ActorUser, board: Board, watcher_ids: set[uuid.UUID]) -> bool:
    if actor_user.is_admin or board.owner_id == actor_user.user_id:
        return True
    if board.visibility == "PUBLIC":
        return True
    return actor_user.user_id in watcher_ids


def can_manage_board(actor_user: ActorUser, board: Board) -> bool:
    return actor_user.is_admin or board.owner_id == actor_user.user_id


def require_board_access(session: Session, actor_user: ActorUser, board: Board) -> None:
    if not can_access_board(actor_user, board, board_watcher_ids(session, board.id)):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="You do not have access to this board")


def require_board_owner(actor_user: ActorUser, board: Board) -> None:
    if not can_manage_board(actor_user, board):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the board owner can change this board",
        )


def board_for_task(session: Session, task: Task) -> Board | None:
    if task.section_id is None:
        return None
    return session.scalar(select(Board).join(Section, Section.board_id == Board.id).where(Section.id == task.section_id))


def can_work_on_task(session: Session, actor_user: ActorUser, task: Task) -> bool:
    if is_task_participant(actor_user, task):
        return True
    if task.task_kind != "project":
        return False
    board = board_for_task(session, task)
    return board is not None and can_access_board(actor_user, board, board_watcher_ids(session, board.id))


def require_task_access(session: Session, actor_user: ActorUser, task: Task, action: str) -> None:
    if not can_work_on_task(session, actor_user, task):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Insufficient permissions to {action} this task",
        )


def require_task_participant(actor_user: ActorUser, task: Task, action: str) -> None:
    if not is_task_participant(actor_user, task):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Insufficient permissions to {action} this task",
        )


def can_delete_document(actor_user: ActorUser, document: Any) -> bool:
    return actor_user.is_admin or actor_user.user_id in {document.created_by, document.assigned_user}
