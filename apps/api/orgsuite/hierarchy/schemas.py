from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


EntityType = Literal["tenant", "organization", "location", "department", "team"]


class EntityCreate(BaseModel):
    entity_name: str = Field(min_length=1, max_length=255)
    entity_type: EntityType
    parent_entity_id: UUID | None = None
    tenant_id: str | None = Field(default=None, min_length=1, max_length=128)
    description: str | None = None
    responsible_person_id: str | None = None
    total_credits: Decimal = Field(default=Decimal("0"), ge=Decimal("0"), max_digits=18, decimal_places=6)

    @model_validator(mode="after")
    def _root_needs_tenant(self) -> EntityCreate:
        if self.parent_entity_id is None and self.tenant_id is None:
            raise ValueError("tenant_id is required for a root entity")
        return self


class EntityUpdate(BaseModel):
    entity_name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    responsible_person_id: str | None = None


class EntityMoveRequest(BaseModel):
    new_parent_id: UUID
    row_version: int | None = Field(default=None, ge=1)


class EntityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    entity_name: str
    entity_type: str
    description: str | None
    parent_entity_id: UUID | None
    entity_level: int
    hierarchy_path: list[UUID]
    is_active: bool
    responsible_person_id: str | None
    total_credits: Decimal
    reserved_credits: Decimal
    available_credits: Decimal
    row_version: int
    created_at: datetime


class EntityTreeRead(EntityRead):
    children: list[EntityTreeRead] = Field(default_factory=list)


class EntityTypeCounts(BaseModel):
    root_entity_id: UUID
    total: int
    counts: dict[str, int]
