from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from orgsuite.authz.schemas import MembershipRead


InvitationStatus = Literal["pending", "accepted", "expired", "revoked"]


class InvitationEntityInput(BaseModel):
    entity_id: UUID
    role_id: UUID | None = None
    membership_type: Literal["direct", "inherited"] = "direct"


class InvitationCreate(BaseModel):
    email: str = Field(min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    name: str | None = Field(default=None, max_length=255)
    message: str | None = None
    entities: list[InvitationEntityInput] = Field(default_factory=list)
    primary_entity_id: UUID | None = None
    expires_in_days: int | None = Field(default=None, ge=1, le=90)


class InvitationAcceptRequest(BaseModel):
    token: str = Field(min_length=1, max_length=128)


class InvitationEntityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    position: int
    entity_id: UUID
    role_id: UUID | None
    entity_type: str
    membership_type: str


class InvitationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    email: str
    name: str | None
    message: str | None
    primary_entity_id: UUID
    status: str
    invited_by: str
    expires_at: datetime
    accepted_by_user_id: str | None
    accepted_at: datetime | None
    revoked_at: datetime | None
    created_at: datetime
    entities: list[InvitationEntityRead]


class InvitationCreatedRead(InvitationRead):
    token: str


class InvitationAcceptedRead(BaseModel):
    invitation: InvitationRead
    memberships: list[MembershipRead]


class ExpireStaleRead(BaseModel):
    expired: int
