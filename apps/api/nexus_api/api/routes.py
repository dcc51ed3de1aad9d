from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from nexus_api.ai.api import (
    autonomy_router,
    discovery_router,
    enrichment_router,
    insights_router,
    proposals_router,
)
from nexus_api.core.auth import AuthUser, get_current_user
from nexus_api.core.config import get_settings
from nexus_api.metrics import generate_metrics_payload, metrics_content_type

METRICS_PERMISSION = "system.metrics.read"

router = APIRouter()
for ai_router in (proposals_router, autonomy_router, insights_router, enrichment_router, discovery_router):
    router.include_router(ai_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {"status": "ok", "service": settings.app_name, "version": settings.app_version, "environment": settings.app_env}


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str]]:
    return {"sub": user.sub, "roles": user.roles, "tenants": user.tenant_ids}


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    # Hidden entirely when disabled so scrapers see a plain 404.
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if METRICS_PERMISSION not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {METRICS_PERMISSION}")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
