from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from gestionale.core.auth import AuthUser, get_current_user
from gestionale.core.config import get_settings
from gestionale.metrics import generate_metrics_payload, metrics_content_type
from gestionale.crm.api import (
    inbound_router,
    leads_router,
    opportunities_router,
    quotes_router,
    registry_router,
    selector_router,
)

router = APIRouter()
router.include_router(registry_router)
router.include_router(selector_router)
router.include_router(inbound_router)
router.include_router(leads_router)
router.include_router(opportunities_router)
router.include_router(quotes_router)


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
        "email": user.email,
        "roles": user.roles,
        "permissions": user.permissions,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
