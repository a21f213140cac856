from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from orgsuite.authz.service import PermissionScope
from orgsuite.core.auth import AuthUser, get_current_user
from orgsuite.core.database import get_db
from orgsuite.core.rbac import ensure_permission, invitation_scope, require_permission, tenant_scope
from orgsuite.invitations.schemas import (
    ExpireStaleRead,
    InvitationAcceptedRead,
    InvitationAcceptRequest,
    InvitationCreate,
    InvitationCreatedRead,
    InvitationRead,
    InvitationStatus,
)
from orgsuite.invitations.service import invitation_service


router = APIRouter(prefix="/invitations", tags=["invitations"])


@router.post("", response_model=InvitationCreatedRead, status_code=status.HTTP_201_CREATED)
def create_invitation(
    dto: InvitationCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> InvitationCreatedRead:
    for entry in dto.entities:
        ensure_permission(db, user, "system", "invitations", "create", PermissionScope.for_entity(entry.entity_id))
    return invitation_service.create_invitation(db, dto, invited_by=user.sub)


@router.get("", response_model=list[InvitationRead])
def list_invitations(
    tenant_id: str | None = Query(default=None),
    invitation_status: InvitationStatus | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    _user: AuthUser = Depends(require_permission("system", "invitations", "read", scope=tenant_scope())),
) -> list[InvitationRead]:
    return invitation_service.list_invitations(db, tenant_id=tenant_id, status=invitation_status)


@router.post("/expire-stale", response_model=ExpireStaleRead)
def expire_stale(
    db: Session = Depends(get_db),
    _user: AuthUser = Depends(require_permission("system", "invitations", "manage")),
) -> ExpireStaleRead:
    return ExpireStaleRead(expired=invitation_service.expire_stale(db))


@router.get("/{invitation_id}", response_model=InvitationRead)
def get_invitation(
    invitation_id: uuid.UUID,
    db: Session = Depends(get_db),
    _user: AuthUser = Depends(require_permission("system", "invitations", "read", scope=invitation_scope)),
) -> InvitationRead:
    return invitation_service.get_invitation(db, invitation_id)


@router.post("/{invitation_id}/accept", response_model=InvitationAcceptedRead)
def accept_invitation(
    invitation_id: uuid.UUID,
    dto: InvitationAcceptRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> InvitationAcceptedRead:
    if user.sub == "anonymous":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication required")
    return invitation_service.accept(db, invitation_id, user.sub, token=dto.token)


@router.post("/{invitation_id}/revoke", response_model=InvitationRead)
def revoke_invitation(
    invitation_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permission("system", "invitations", "cancel", scope=invitation_scope)),
) -> InvitationRead:
    return invitation_service.revoke(db, invitation_id, actor_user_id=user.sub)
