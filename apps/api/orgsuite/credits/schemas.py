from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


PositiveAmount = Annotated[Decimal, Field(gt=Decimal("0"), max_digits=18, decimal_places=6)]


class CreditTopUpRequest(BaseModel):
    amount: PositiveAmount
    description: str | None = None
    entity_row_version: int | None = Field(default=None, ge=1)


class AllocateRequest(BaseModel):
    application_code: str = Field(min_length=1, max_length=64)
    amount: PositiveAmount
    allocation_purpose: str | None = None
    auto_replenish: bool | None = None
    entity_row_version: int | None = Field(default=None, ge=1)
    allocation_row_version: int | None = Field(default=None, ge=1)


class ConsumeRequest(BaseModel):
    application_code: str = Field(min_length=1, max_length=64)
    amount: PositiveAmount
    operation_code: str | None = Field(default=None, max_length=128)
    description: str | None = None
    allocation_row_version: int | None = Field(default=None, ge=1)


class DeallocateRequest(BaseModel):
    application_code: str = Field(min_length=1, max_length=64)
    amount: PositiveAmount
    entity_row_version: int | None = Field(default=None, ge=1)
    allocation_row_version: int | None = Field(default=None, ge=1)


class TransferRequest(BaseModel):
    from_application: str = Field(min_length=1, max_length=64)
    to_application: str = Field(min_length=1, max_length=64)
    amount: PositiveAmount


class EntityTransferRequest(BaseModel):
    target_entity_id: UUID
    amount: PositiveAmount
    description: str | None = None
    entity_row_version: int | None = Field(default=None, ge=1)


class CascadeCheckRequest(BaseModel):
    amount: PositiveAmount


class CreditBalanceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    total_credits: Decimal
    reserved_credits: Decimal
    available_credits: Decimal
    row_version: int


class AllocationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_id: UUID
    application_code: str
    allocated_credits: Decimal
    used_credits: Decimal
    available_credits: Decimal
    auto_replenish: bool
    allocation_purpose: str | None
    row_version: int
    updated_at: datetime


class AllocationListRead(BaseModel):
    entity_id: UUID
    allocations: list[AllocationRead]
    total_allocated: Decimal
    total_used: Decimal
    total_available: Decimal


class TransferRead(BaseModel):
    source: AllocationRead
    target: AllocationRead


class EntityTransferRead(BaseModel):
    source: CreditBalanceRead
    target: CreditBalanceRead


class CascadeCheckRead(BaseModel):
    entity_id: UUID
    amount: Decimal
    checked_ancestors: int
    minimum_available: Decimal | None
    limiting_entity_id: UUID | None


class CreditTransactionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_id: UUID
    application_code: str | None
    transaction_type: str
    amount: Decimal
    total_after: Decimal
    reserved_after: Decimal
    allocated_after: Decimal | None
    used_after: Decimal | None
    operation_code: str | None
    description: str | None
    initiated_by: str
    created_at: datetime
