from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from app.ai.api import router as ai_router
from app.core.auth import ActorUser, get_current_user
from app.core.config import get_settings
from app.crm.api import (
    contacts_router,
    documents_router,
    invoices_router,
    leads_router,
    opportunities_router,
    router as crm_accounts_router,
    search_router,
    tasks_router as crm_tasks_router,
)
from app.metrics import generate_metrics_payload, metrics_content_type
from app.projects.api import boards_router, sections_router, tasks_router as project_tasks_router
from app.users.api import admin_router, router as users_router

router = APIRouter()
router.include_router(crm_accounts_router)
router.include_router(contacts_router)
router.include_router(leads_router)
router.include_router(opportunities_router)
router.include_router(documents_router)
router.include_router(invoices_router)
router.include_router(crm_tasks_router)
router.include_router(search_router)
router.include_router(boards_router)
router.include_router(sections_router)
router.include_router(project_tasks_router)
router.include_router(users_router)
router.include_router(admin_router)
router.include_router(ai_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
def me(user: ActorUser = Depends(get_current_user)) -> dict[str, object]:
    return {
        "id": str(user.user_id),
        "email": user.email,
        "name": user.name,
        "is_admin": user.is_admin,
        "roles": sorted(user.roles or []),
    }


@router.get("/metrics", tags=["system"])
def metrics(user: ActorUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in (user.roles or set()):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
