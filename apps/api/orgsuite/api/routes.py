from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from orgsuite.authz.api import memberships_router, roles_router, users_router
from orgsuite.core.auth import AuthUser, get_current_user
from orgsuite.core.config import get_settings
from orgsuite.credits.api import router as credits_router
from orgsuite.hierarchy.api import router as entities_router
from orgsuite.invitations.api import router as invitations_router
from orgsuite.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(entities_router)
router.include_router(roles_router)
router.include_router(memberships_router)
router.include_router(users_router)
router.include_router(credits_router)
router.include_router(invitations_router)


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
        "permissions": sorted(user.permissions),
        "tenant_id": user.tenant_id,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if not user.is_admin and "system.metrics.read" not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
