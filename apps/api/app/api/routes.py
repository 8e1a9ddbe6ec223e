from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from app.authz.api import admin_router
from app.core.config import get_settings
from app.crm.api import applications_router, get_current_user, leads_router, tasks_router
from app.metrics import generate_metrics_payload, metrics_content_type
from app.platform.security.context import Principal

router = APIRouter()
router.include_router(leads_router)
router.include_router(applications_router)
router.include_router(tasks_router)
router.include_router(admin_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
def me(principal: Principal = Depends(get_current_user)) -> dict[str, str | bool | None]:
    return {
        "sub": principal.user_id,
        "tenant_id": principal.tenant_id,
        "role": principal.role.value if principal.role is not None else None,
        "authenticated": principal.is_authenticated,
    }


@router.get("/metrics", tags=["system"])
def metrics(principal: Principal = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if not principal.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing role: admin")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
