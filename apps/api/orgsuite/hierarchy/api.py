from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from orgsuite.authz.service import PermissionScope
from orgsuite.core.auth import AuthUser, get_current_user
from orgsuite.core.database import get_db
from orgsuite.core.rbac import ensure_permission, entity_scope, require_permission, tenant_scope
from orgsuite.hierarchy.schemas import (
    EntityCreate,
    EntityMoveRequest,
    EntityRead,
    EntityTreeRead,
    EntityTypeCounts,
    EntityUpdate,
)
from orgsuite.hierarchy.service import entity_tree_service


router = APIRouter(prefix="/entities", tags=["entities"])


@router.post("", response_model=EntityRead, status_code=status.HTTP_201_CREATED)
def create_entity(
    dto: EntityCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> EntityRead:
    if dto.parent_entity_id is not None:
        scope = PermissionScope.for_entity(dto.parent_entity_id)
    else:
        scope = PermissionScope.for_tenant(dto.tenant_id)
    ensure_permission(db, user, "system", "entities", "create", scope)
    return entity_tree_service.create_entity(db, dto, actor_user_id=user.sub)


@router.get("", response_model=list[EntityRead])
def flatten_tenant(
    tenant_id: str = Query(min_length=1),
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    _user: AuthUser = Depends(require_permission("system", "entities", "read", scope=tenant_scope())),
) -> list[EntityRead]:
    return entity_tree_service.flatten(db, tenant_id, include_inactive=include_inactive)


@router.get("/{entity_id}", response_model=EntityRead)
def get_entity(
    entity_id: uuid.UUID,
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    _user: AuthUser = Depends(require_permission("system", "entities", "read", scope=entity_scope())),
) -> EntityRead:
    return entity_tree_service.get_entity(db, entity_id, include_inactive=include_inactive)


@router.patch("/{entity_id}", response_model=EntityRead)
def update_entity(
    entity_id: uuid.UUID,
    dto: EntityUpdate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permission("system", "entities", "update", scope=entity_scope())),
) -> EntityRead:
    return entity_tree_service.update_entity(db, entity_id, dto, actor_user_id=user.sub)


@router.get("/{entity_id}/subtree", response_model=EntityTreeRead)
def get_subtree(
    entity_id: uuid.UUID,
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    _user: AuthUser = Depends(require_permission("system", "entities", "read", scope=entity_scope())),
) -> EntityTreeRead:
    return entity_tree_service.get_subtree(db, entity_id, include_inactive=include_inactive)


@router.get("/{entity_id}/ancestors", response_model=list[EntityRead])
def get_ancestors(
    entity_id: uuid.UUID,
    db: Session = Depends(get_db),
    _user: AuthUser = Depends(require_permission("system", "entities", "read", scope=entity_scope())),
) -> list[EntityRead]:
    return entity_tree_service.get_ancestors(db, entity_id)


@router.get("/{entity_id}/type-counts", response_model=EntityTypeCounts)
def count_by_type(
    entity_id: uuid.UUID,
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    _user: AuthUser = Depends(require_permission("system", "entities", "read", scope=entity_scope())),
) -> EntityTypeCounts:
    return entity_tree_service.count_by_type(db, entity_id, include_inactive=include_inactive)


@router.post("/{entity_id}/move", response_model=EntityRead)
def move_entity(
    entity_id: uuid.UUID,
    dto: EntityMoveRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permission("system", "entities", "manage", scope=entity_scope())),
) -> EntityRead:
    ensure_permission(db, user, "system", "entities", "manage", PermissionScope.for_entity(dto.new_parent_id))
    return entity_tree_service.move_entity(
        db,
        entity_id,
        dto.new_parent_id,
        expected_row_version=dto.row_version,
        actor_user_id=user.sub,
    )


@router.post("/{entity_id}/deactivate", response_model=EntityRead)
def deactivate_entity(
    entity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permission("system", "entities", "delete", scope=entity_scope())),
) -> EntityRead:
    return entity_tree_service.deactivate_entity(db, entity_id, actor_user_id=user.sub)
