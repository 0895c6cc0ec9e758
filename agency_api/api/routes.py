from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from agency_api.core.auth import AuthUser, get_current_user
from agency_api.core.config import get_settings
from agency_api.metrics import generate_metrics_payload, metrics_content_type
from agency_api.pipelines.api import (
    contacts_router,
    lanes_router,
    notifications_router,
    pipelines_router,
    sub_accounts_router,
    tags_router,
    team_router,
    tickets_router,
)

router = APIRouter()
router.include_router(sub_accounts_router)
router.include_router(team_router)
router.include_router(pipelines_router)
router.include_router(lanes_router)
router.include_router(tickets_router)
router.include_router(tags_router)
router.include_router(contacts_router)
router.include_router(notifications_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str] | None]:
    return {
        "sub": user.sub,
        "roles": user.roles,
        "agency_id": user.agency_id,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
