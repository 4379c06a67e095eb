from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.ai.schemas import ChatCompletionRequest, ChatCompletionResponse, GptModelCreate, GptModelRead
from app.ai.service import ai_service, gpt_model_service
from app.core.auth import ActorUser, get_current_user
from app.core.config import get_settings
from app.core.database import get_db
from app.core.errors import UpstreamError, error_response, http_error_response
from app.middleware.rate_limit import check_rate_limit

router = APIRouter(prefix="/api/ai", tags=["ai"])


@router.post("/chat-completion", response_model=ChatCompletionResponse)
def chat_completion(
    request: Request,
    dto: ChatCompletionRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ChatCompletionResponse | JSONResponse:
    settings = get_settings()
    try:
        check_rate_limit(
            "ai_completion",
            str(user.user_id),
            settings.ai_completion_limit,
            settings.ai_completion_window_seconds,
        )
        return ai_service.chat_completion(db, user, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "ai_completion_failed")
    except UpstreamError as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="ai_upstream_failed",
            message=exc.message,
            details={"provider": exc.provider, "reason": exc.reason},
        )


@router.get("/models", response_model=list[GptModelRead])
def list_models(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[GptModelRead] | JSONResponse:
    try:
        return gpt_model_service.list_models(db, user)
    except HTTPException as exc:
        return http_error_response(request, exc, "ai_models_list_failed")


@router.post("/models", response_model=GptModelRead, status_code=status.HTTP_201_CREATED)
def create_model(
    request: Request,
    dto: GptModelCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> GptModelRead | JSONResponse:
    try:
        return gpt_model_service.create_model(db, user, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "ai_model_create_failed")


@router.put("/models/{model_id}/activate", response_model=GptModelRead)
def activate_model(
    request: Request,
    model_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> GptModelRead | JSONResponse:
    try:
        return gpt_model_service.activate(db, user, model_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "ai_model_activate_failed")
