from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from leadboard.core.config import get_settings
from leadboard.crm.api import (
    analytics_router,
    leads_router,
    pipeline_router,
    public_webhooks_router,
    sales_router,
    settings_router,
    webhooks_router,
)
from leadboard.identity.api import get_principal, users_router
from leadboard.metrics import generate_metrics_payload, metrics_content_type
from leadboard.platform.security.context import Principal

router = APIRouter()
router.include_router(users_router)
router.include_router(leads_router)
router.include_router(pipeline_router)
router.include_router(sales_router)
router.include_router(analytics_router)
router.include_router(webhooks_router)
router.include_router(settings_router)
router.include_router(public_webhooks_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
def me(principal: Principal | None = Depends(get_principal)) -> dict[str, str | bool | None]:
    if principal is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return {
        "user_id": principal.user_id,
        "role": principal.role,
        "master_account_id": principal.master_account_id,
        "team_owner_id": principal.team_owner_id,
        "name": principal.name,
        "email": principal.email,
        "is_master": principal.is_master,
    }


@router.get("/metrics", tags=["system"])
def metrics() -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
