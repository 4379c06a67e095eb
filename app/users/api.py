from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.core.auth import ActorUser, get_current_user
from app.core.config import get_settings
from app.core.database import get_db
from app.core.errors import http_error_response
from app.middleware.rate_limit import check_rate_limit, client_ip
from app.users.schemas import (
    AdminUpdate,
    InviteRequest,
    LanguageUpdate,
    ModuleRead,
    ModuleToggleResponse,
    NotionUpdate,
    OpenAiKeyUpdate,
    PasswordChange,
    PasswordChangeResponse,
    PasswordResetRequest,
    PasswordResetResponse,
    ProfileUpdate,
    SignupRequest,
    UserRead,
)
from app.users.service import module_service, user_service

router = APIRouter(prefix="/api/users", tags=["users"])
admin_router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.post("/signup", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def signup(request: Request, dto: SignupRequest, db: Session = Depends(get_db)) -> UserRead | JSONResponse:
    settings = get_settings()
    try:
        check_rate_limit("signup", client_ip(request), settings.signup_limit, settings.signup_window_seconds)
        return user_service.signup(db, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "users_signup_failed")


@router.post("/password-reset", response_model=PasswordResetResponse)
def password_reset(
    request: Request,
    dto: PasswordResetRequest,
    db: Session = Depends(get_db),
) -> PasswordResetResponse | JSONResponse:
    settings = get_settings()
    try:
        check_rate_limit(
            "password_reset",
            f"{client_ip(request)}:{dto.email.lower()}",
            settings.password_reset_limit,
            settings.password_reset_window_seconds,
        )
        return user_service.reset_password(db, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "users_password_reset_failed")


@router.get("", response_model=list[UserRead])
def list_users(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[UserRead] | JSONResponse:
    try:
        return user_service.list_users(db, user)
    except HTTPException as exc:
        return http_error_response(request, exc, "users_list_failed")


@router.get("/me", response_model=UserRead)
def get_me(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserRead | JSONResponse:
    try:
        return user_service.get_user(db, user, user.user_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "users_get_failed")


@router.patch("/me", response_model=UserRead)
def patch_me(
    request: Request,
    dto: ProfileUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserRead | JSONResponse:
    try:
        return user_service.update_profile(db, user, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "users_update_failed")


@router.put("/me/language", response_model=UserRead)
def put_language(
    request: Request,
    dto: LanguageUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserRead | JSONResponse:
    try:
        return user_service.set_language(db, user, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "users_language_failed")


@router.put("/me/openai-key", response_model=None)
def put_openai_key(
    request: Request,
    dto: OpenAiKeyUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        return user_service.set_openai_key(db, user, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "users_openai_key_failed")


@router.put("/me/notion", response_model=None)
def put_notion(
    request: Request,
    dto: NotionUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        return user_service.set_notion(db, user, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "users_notion_failed")


@router.post("/invite", response_model=None, status_code=status.HTTP_201_CREATED)
def invite_user(
    request: Request,
    dto: InviteRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        invited, warnings = user_service.invite(db, user, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "users_invite_failed")
    payload: dict[str, Any] = {"user": invited.model_dump(mode="json")}
    if warnings:
        payload["warnings"] = warnings
    return payload


@router.get("/{user_id}", response_model=UserRead)
def get_user(
    request: Request,
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserRead | JSONResponse:
    try:
        return user_service.get_user(db, user, user_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "users_get_failed")


@router.post("/{user_id}/activate", response_model=UserRead)
def activate_user(
    request: Request,
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserRead | JSONResponse:
    try:
        return user_service.set_status(db, user, user_id, "ACTIVE")
    except HTTPException as exc:
        return http_error_response(request, exc, "users_activate_failed")


@router.post("/{user_id}/deactivate", response_model=UserRead)
def deactivate_user(
    request: Request,
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserRead | JSONResponse:
    try:
        return user_service.set_status(db, user, user_id, "INACTIVE")
    except HTTPException as exc:
        return http_error_response(request, exc, "users_deactivate_failed")


@router.post("/{user_id}/admin", response_model=UserRead)
def set_admin(
    request: Request,
    user_id: uuid.UUID,
    dto: AdminUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserRead | JSONResponse:
    try:
        return user_service.set_admin(db, user, user_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "users_admin_failed")


@router.delete("/{user_id}", response_model=None)
def delete_user(
    request: Request,
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        user_service.delete_user(db, user, user_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return http_error_response(request, exc, "users_delete_failed")


@router.put("/{user_id}/password", response_model=PasswordChangeResponse)
def change_password(
    request: Request,
    user_id: uuid.UUID,
    dto: PasswordChange,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PasswordChangeResponse | JSONResponse:
    try:
        return user_service.change_password(db, user, user_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "users_password_change_failed")


@admin_router.get("/modules", response_model=list[ModuleRead])
def list_modules(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ModuleRead] | JSONResponse:
    try:
        return module_service.list_modules(db, user)
    except HTTPException as exc:
        return http_error_response(request, exc, "admin_modules_list_failed")


@admin_router.post("/modules/{module_id}/activate", response_model=ModuleToggleResponse)
def activate_module(
    request: Request,
    module_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ModuleToggleResponse | JSONResponse:
    try:
        return module_service.set_enabled(db, user, module_id, True)
    except HTTPException as exc:
        return http_error_response(request, exc, "admin_module_activate_failed")


@admin_router.post("/modules/{module_id}/deactivate", response_model=ModuleToggleResponse)
def deactivate_module(
    request: Request,
    module_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ModuleToggleResponse | JSONResponse:
    try:
        return module_service.set_enabled(db, user, module_id, False)
    except HTTPException as exc:
        return http_error_response(request, exc, "admin_module_deactivate_failed")
