from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.core.auth import ActorUser, get_current_user
from app.core.database import get_db
from app.core.errors import http_error_response
from app.projects.schemas import (
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
from app.projects.service import board_service, section_service, task_service

boards_router = APIRouter(prefix="/api/projects/boards", tags=["projects.boards"])
sections_router = APIRouter(prefix="/api/projects/sections", tags=["projects.sections"])
tasks_router = APIRouter(prefix="/api/projects/tasks", tags=["projects.tasks"])


@boards_router.post("", response_model=BoardRead, status_code=status.HTTP_201_CREATED)
def create_board(
    request: Request,
    dto: BoardCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BoardRead | JSONResponse:
    try:
        return board_service.create_board(db, user, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "projects_board_create_failed")


@boards_router.get("", response_model=list[BoardRead])
def list_boards(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[BoardRead] | JSONResponse:
    try:
        return board_service.list_boards(db, user)
    except HTTPException as exc:
        return http_error_response(request, exc, "projects_board_list_failed")


@boards_router.get("/{board_id}", response_model=BoardRead)
def get_board(
    request: Request,
    board_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BoardRead | JSONResponse:
    try:
        return board_service.get_board(db, user, board_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "projects_board_get_failed")


@boards_router.patch("/{board_id}", response_model=BoardRead)
def patch_board(
    request: Request,
    board_id: uuid.UUID,
    dto: BoardUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BoardRead | JSONResponse:
    try:
        return board_service.update_board(db, user, board_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "projects_board_update_failed")


@boards_router.delete("/{board_id}", response_model=None)
def delete_board(
    request: Request,
    board_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        board_service.delete_board(db, user, board_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return http_error_response(request, exc, "projects_board_delete_failed")


@boards_router.post("/{board_id}/watch", response_model=BoardRead)
def watch_board(
    request: Request,
    board_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BoardRead | JSONResponse:
    try:
        return board_service.watch(db, user, board_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "projects_board_watch_failed")


@boards_router.post("/{board_id}/unwatch", response_model=BoardRead)
def unwatch_board(
    request: Request,
    board_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> BoardRead | JSONResponse:
    try:
        return board_service.unwatch(db, user, board_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "projects_board_unwatch_failed")


@sections_router.post("", response_model=SectionRead, status_code=status.HTTP_201_CREATED)
def create_section(
    request: Request,
    dto: SectionCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SectionRead | JSONResponse:
    try:
        return section_service.create_section(db, user, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "projects_section_create_failed")


@sections_router.patch("/{section_id}", response_model=SectionRead)
def patch_section(
    request: Request,
    section_id: uuid.UUID,
    dto: SectionUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SectionRead | JSONResponse:
    try:
        return section_service.update_section(db, user, section_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "projects_section_update_failed")


@sections_router.delete("/{section_id}", response_model=None)
def delete_section(
    request: Request,
    section_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        section_service.delete_section(db, user, section_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return http_error_response(request, exc, "projects_section_delete_failed")


@tasks_router.post("", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_task(
    request: Request,
    dto: TaskCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        return task_service.create_task(db, user, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "projects_task_create_failed")


@tasks_router.post("/update-kanban-position", response_model=list[SectionRead])
def update_kanban_positions(
    request: Request,
    dto: KanbanPositionUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[SectionRead] | JSONResponse:
    try:
        return task_service.update_kanban_positions(db, user, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "projects_kanban_update_failed")


@tasks_router.get("/{task_id}", response_model=TaskRead)
def get_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        return task_service.get_task(db, user, task_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "projects_task_get_failed")


@tasks_router.patch("/{task_id}", response_model=TaskRead)
def patch_task(
    request: Request,
    task_id: uuid.UUID,
    dto: TaskUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        return task_service.update_task(db, user, task_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "projects_task_update_failed")


@tasks_router.delete("/{task_id}", response_model=None)
def delete_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        task_service.delete_task(db, user, task_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return http_error_response(request, exc, "projects_task_delete_failed")


@tasks_router.post("/{task_id}/move", response_model=TaskRead)
def move_task(
    request: Request,
    task_id: uuid.UUID,
    dto: TaskMove,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        return task_service.move_task(db, user, task_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "projects_task_move_failed")


@tasks_router.post("/{task_id}/mark-done", response_model=TaskRead)
def mark_task_done(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        return task_service.mark_done(db, user, task_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "projects_task_status_failed")


@tasks_router.post("/{task_id}/reopen", response_model=TaskRead)
def reopen_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        return task_service.reopen(db, user, task_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "projects_task_status_failed")


@tasks_router.post("/{task_id}/comments", response_model=CommentRead, status_code=status.HTTP_201_CREATED)
def add_task_comment(
    request: Request,
    task_id: uuid.UUID,
    dto: CommentCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CommentRead | JSONResponse:
    try:
        return task_service.add_comment(db, user, task_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "projects_task_comment_failed")


@tasks_router.get("/{task_id}/comments", response_model=list[CommentRead])
def list_task_comments(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[CommentRead] | JSONResponse:
    try:
        return task_service.list_comments(db, user, task_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "projects_task_comment_list_failed")


@tasks_router.post("/{task_id}/documents/{document_id}", response_model=TaskRead)
def assign_task_document(
    request: Request,
    task_id: uuid.UUID,
    document_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        return task_service.assign_document(db, user, task_id, document_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "projects_task_document_failed")


@tasks_router.delete("/{task_id}/documents/{document_id}", response_model=TaskRead)
def disconnect_task_document(
    request: Request,
    task_id: uuid.UUID,
    document_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        return task_service.disconnect_document(db, user, task_id, document_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "projects_task_document_failed")
