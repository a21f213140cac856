from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from orgsuite.authz.schemas import (
    EffectivePermissionsRead,
    MembershipCreate,
    MembershipRead,
    PermissionCheckRead,
    RoleCreate,
    RoleRead,
    RoleUpdate,
    SetPrimaryRequest,
)
from orgsuite.authz.service import PermissionScope, membership_resolver, membership_service, role_catalog_service
from orgsuite.core.auth import AuthUser, get_current_user
from orgsuite.core.database import get_db
from orgsuite.core.rbac import (
    ensure_permission,
    entity_scope,
    require_admin,
    require_permission,
    role_scope,
    tenant_scope,
    user_scope,
)
from orgsuite.hierarchy.schemas import EntityRead


roles_router = APIRouter(prefix="/roles", tags=["authz.roles"])
memberships_router = APIRouter(prefix="/memberships", tags=["authz.memberships"])
users_router = APIRouter(prefix="/users", tags=["authz.users"])


def _membership_listing_scope(request: Request, db: Session) -> PermissionScope:
    if request.query_params.get("entity_id"):
        return entity_scope()(request, db)
    return user_scope(request, db)


@roles_router.post("", response_model=RoleRead, status_code=status.HTTP_201_CREATED)
def create_role(
    dto: RoleCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> RoleRead:
    ensure_permission(db, user, "system", "roles", "create", PermissionScope.for_tenant(dto.tenant_id))
    return role_catalog_service.create_role(db, dto, actor_user_id=user.sub)


@roles_router.get("", response_model=list[RoleRead])
def list_roles(
    tenant_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
    _user: AuthUser = Depends(require_permission("system", "roles", "read", scope=tenant_scope())),
) -> list[RoleRead]:
    return role_catalog_service.list_roles(db, tenant_id=tenant_id)


@roles_router.get("/{role_id}", response_model=RoleRead)
def get_role(
    role_id: uuid.UUID,
    db: Session = Depends(get_db),
    _user: AuthUser = Depends(require_permission("system", "roles", "read", scope=role_scope)),
) -> RoleRead:
    return role_catalog_service.get_role(db, role_id)


@roles_router.patch("/{role_id}", response_model=RoleRead)
def update_role(
    role_id: uuid.UUID,
    dto: RoleUpdate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permission("system", "roles", "update", scope=role_scope)),
) -> RoleRead:
    return role_catalog_service.update_role(db, role_id, dto, actor_user_id=user.sub)


@roles_router.delete("/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_role(
    role_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permission("system", "roles", "delete", scope=role_scope)),
) -> None:
    role_catalog_service.delete_role(db, role_id, actor_user_id=user.sub)


@memberships_router.post("", response_model=MembershipRead, status_code=status.HTTP_201_CREATED)
def add_membership(
    dto: MembershipCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> MembershipRead:
    ensure_permission(db, user, "system", "memberships", "assign", PermissionScope.for_entity(dto.entity_id))
    return membership_service.add_membership(db, dto, actor_user_id=user.sub)


@memberships_router.get("", response_model=list[MembershipRead])
def list_memberships(
    user_id: str | None = Query(default=None),
    entity_id: uuid.UUID | None = Query(default=None),
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    _user: AuthUser = Depends(require_permission("system", "memberships", "read", scope=_membership_listing_scope)),
) -> list[MembershipRead]:
    return membership_service.list_memberships(
        db,
        user_id=user_id,
        entity_id=entity_id,
        include_inactive=include_inactive,
    )


@users_router.get("/{user_id}/memberships", response_model=list[MembershipRead])
def list_user_memberships(
    user_id: str,
    db: Session = Depends(get_db),
    _user: AuthUser = Depends(require_permission("system", "memberships", "read", scope=user_scope)),
) -> list[MembershipRead]:
    return membership_service.list_memberships(db, user_id=user_id)


@users_router.put("/{user_id}/primary-entity", response_model=MembershipRead)
def set_primary_entity(
    user_id: str,
    dto: SetPrimaryRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> MembershipRead:
    ensure_permission(db, user, "system", "memberships", "assign", PermissionScope.for_entity(dto.entity_id))
    return membership_service.set_primary(db, user_id, dto.entity_id, actor_user_id=user.sub)


@users_router.get("/{user_id}/primary-entity", response_model=EntityRead)
def get_primary_entity(
    user_id: str,
    db: Session = Depends(get_db),
    _user: AuthUser = Depends(require_permission("system", "memberships", "read", scope=user_scope)),
) -> EntityRead:
    return EntityRead.model_validate(membership_resolver.primary_entity(db, user_id))


@users_router.delete("/{user_id}/memberships/{entity_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_membership(
    user_id: str,
    entity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permission("system", "memberships", "delete", scope=entity_scope())),
) -> None:
    membership_service.remove_membership(db, user_id, entity_id, actor_user_id=user.sub)


@users_router.post("/{user_id}/deactivate", status_code=status.HTTP_200_OK)
def deactivate_user(
    user_id: str,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_admin),
) -> dict[str, int]:
    return {"removed_memberships": membership_service.deactivate_user(db, user_id, actor_user_id=user.sub)}


@users_router.get("/{user_id}/effective-permissions", response_model=EffectivePermissionsRead)
def effective_permissions(
    user_id: str,
    request: Request,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> EffectivePermissionsRead:
    if user.sub != user_id:
        ensure_permission(db, user, "system", "memberships", "read", user_scope(request, db))
    return membership_resolver.effective_permissions(db, user_id)


@users_router.get("/{user_id}/permission-check", response_model=PermissionCheckRead)
def check_permission(
    user_id: str,
    application: str = Query(min_length=1),
    module: str = Query(min_length=1),
    action: str = Query(min_length=1),
    entity_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    _user: AuthUser = Depends(require_permission("system", "memberships", "read", scope=user_scope)),
) -> PermissionCheckRead:
    scope = PermissionScope.for_entity(entity_id) if entity_id is not None else None
    allowed = membership_resolver.has_permission(db, user_id, application, module, action, scope=scope)
    return PermissionCheckRead(user_id=user_id, permission=f"{application}.{module}.{action}", allowed=allowed)
