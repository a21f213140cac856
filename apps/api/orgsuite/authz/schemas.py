from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


PermissionPayload = dict[str, dict[str, list[str]]] | list[str]
RestrictionPayload = dict[str, bool | int | float]


class RoleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    tenant_id: str | None = Field(default=None, min_length=1, max_length=128)
    description: str | None = None
    color: str | None = Field(default=None, max_length=32)
    icon: str | None = Field(default=None, max_length=64)
    is_system: bool = False
    priority: int = 0
    permissions: PermissionPayload = Field(default_factory=dict)
    restrictions: RestrictionPayload = Field(default_factory=dict)


class RoleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=128)
    description: str | None = None
    color: str | None = Field(default=None, max_length=32)
    icon: str | None = Field(default=None, max_length=64)
    priority: int | None = None
    permissions: PermissionPayload | None = None
    restrictions: RestrictionPayload | None = None


class RoleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str | None
    name: str
    description: str | None
    color: str | None
    icon: str | None
    is_system: bool
    priority: int
    permissions: dict[str, dict[str, list[str]]]
    restrictions: dict[str, Any]
    created_at: datetime


class MembershipCreate(BaseModel):
    user_id: str = Field(min_length=1, max_length=255)
    entity_id: UUID
    role_id: UUID | None = None
    membership_type: Literal["direct", "inherited"] = "direct"
    is_primary: bool = False


class MembershipRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    entity_id: UUID
    role_id: UUID | None
    membership_type: str
    is_primary: bool
    is_active: bool
    created_at: datetime


class SetPrimaryRequest(BaseModel):
    entity_id: UUID


class PermissionDetailRead(BaseModel):
    application: str
    module: str
    action: str
    category: str
    risk: str
    granted_by: list[str]


class ApplicationSummaryRead(BaseModel):
    total: int
    admin: int
    write: int
    read: int
    modules: list[str]


class PermissionSummaryRead(BaseModel):
    total: int
    by_category: dict[str, int]
    by_risk: dict[str, int]
    applications: dict[str, ApplicationSummaryRead]


class EffectivePermissionsRead(BaseModel):
    user_id: str
    entity_ids: list[UUID]
    primary_entity_id: UUID | None
    permissions: dict[str, dict[str, list[str]]]
    details: list[PermissionDetailRead]
    summary: PermissionSummaryRead
    restrictions: dict[str, bool | int | float]


class PermissionCheckRead(BaseModel):
    user_id: str
    permission: str
    allowed: bool
