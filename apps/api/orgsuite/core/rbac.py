import uuid
from collections.abc import Callable

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from orgsuite.authz.models import Role
from orgsuite.authz.service import PermissionScope, membership_resolver
from orgsuite.core.auth import AuthUser, get_current_user
from orgsuite.core.database import get_db
from orgsuite.invitations.models import Invitation

ScopeResolver = Callable[[Request, Session], PermissionScope]

PLATFORM_SCOPE = PermissionScope()


def _param(request: Request, name: str) -> str | None:
    return request.path_params.get(name) or request.query_params.get(name)


def _uuid_param(request: Request, name: str) -> uuid.UUID | None:
    raw = _param(request, name)
    if not raw:
        return None
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        return None


def entity_scope(param: str = "entity_id") -> ScopeResolver:
    def resolve(request: Request, db: Session) -> PermissionScope:
        entity_id = _uuid_param(request, param)
        return PermissionScope.for_entity(entity_id) if entity_id is not None else PLATFORM_SCOPE

    return resolve


def tenant_scope(param: str = "tenant_id") -> ScopeResolver:
    def resolve(request: Request, db: Session) -> PermissionScope:
        return PermissionScope.for_tenant(_param(request, param))

    return resolve


def role_scope(request: Request, db: Session) -> PermissionScope:
    role_id = _uuid_param(request, "role_id")
    role = db.get(Role, role_id) if role_id is not None else None
    return PermissionScope.for_tenant(role.tenant_id) if role is not None else PLATFORM_SCOPE


def invitation_scope(request: Request, db: Session) -> PermissionScope:
    invitation_id = _uuid_param(request, "invitation_id")
    invitation = db.get(Invitation, invitation_id) if invitation_id is not None else None
    return PermissionScope.for_tenant(invitation.tenant_id) if invitation is not None else PLATFORM_SCOPE


def user_scope(request: Request, db: Session) -> PermissionScope:
    """Tenants the target user belongs to, taken from the ``user_id`` path or query parameter."""
    user_id = _param(request, "user_id")
    if not user_id:
        return PLATFORM_SCOPE
    return PermissionScope(tenant_ids=membership_resolver.tenant_ids_for_user(db, user_id))


def require_admin(user: AuthUser = Depends(get_current_user)) -> AuthUser:
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing role: admin")
    return user


def ensure_permission(
    db: Session,
    user: AuthUser,
    application: str,
    module: str,
    action: str,
    scope: PermissionScope,
) -> None:
    if user.is_admin:
        return
    allowed = membership_resolver.has_permission(
        db,
        user.sub,
        application,
        module,
        action,
        provider_permissions=user.permissions,
        provider_tenant_id=user.tenant_id,
        scope=scope,
    )
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Missing permission: {application}.{module}.{action}",
        )


def require_permission(
    application: str,
    module: str,
    action: str,
    *,
    scope: ScopeResolver | None = None,
) -> Callable[..., AuthUser]:
    """Dependency allowing the call when the caller's memberships or token grant the action.

    ``scope`` names the entity or tenants the request acts on; memberships
    outside it do not count. Without one the check is platform-wide and only
    admins or tenant-less token permissions pass it.
    """

    def checker(
        request: Request,
        user: AuthUser = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> AuthUser:
        if user.is_admin:
            return user
        resolved = scope(request, db) if scope is not None else PLATFORM_SCOPE
        ensure_permission(db, user, application, module, action, resolved)
        return user

    return checker
