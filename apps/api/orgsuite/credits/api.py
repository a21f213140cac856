from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from orgsuite.core.auth import AuthUser
from orgsuite.core.database import get_db
from orgsuite.authz.service import PermissionScope
from orgsuite.core.rbac import ensure_permission, entity_scope, require_permission
from orgsuite.credits.schemas import (
    AllocateRequest,
    AllocationListRead,
    AllocationRead,
    CascadeCheckRead,
    CascadeCheckRequest,
    ConsumeRequest,
    CreditBalanceRead,
    CreditTopUpRequest,
    CreditTransactionRead,
    DeallocateRequest,
    EntityTransferRead,
    EntityTransferRequest,
    TransferRead,
    TransferRequest,
)
from orgsuite.credits.service import credit_ledger_service


router = APIRouter(prefix="/credits", tags=["credits"])


@router.get("/entities/{entity_id}", response_model=CreditBalanceRead)
def get_balance(
    entity_id: uuid.UUID,
    db: Session = Depends(get_db),
    _user: AuthUser = Depends(require_permission("system", "credits", "read", scope=entity_scope())),
) -> CreditBalanceRead:
    return credit_ledger_service.get_balance(db, entity_id)


@router.post("/entities/{entity_id}/top-up", response_model=CreditBalanceRead)
def add_credits(
    entity_id: uuid.UUID,
    dto: CreditTopUpRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permission("system", "credits", "manage", scope=entity_scope())),
) -> CreditBalanceRead:
    return credit_ledger_service.add_credits(
        db,
        entity_id,
        dto.amount,
        description=dto.description,
        expected_row_version=dto.entity_row_version,
        actor_user_id=user.sub,
    )


@router.get("/entities/{entity_id}/allocations", response_model=AllocationListRead)
def list_allocations(
    entity_id: uuid.UUID,
    db: Session = Depends(get_db),
    _user: AuthUser = Depends(require_permission("system", "credits", "read", scope=entity_scope())),
) -> AllocationListRead:
    return credit_ledger_service.list_allocations(db, entity_id)


@router.post("/entities/{entity_id}/allocations", response_model=AllocationRead)
def allocate(
    entity_id: uuid.UUID,
    dto: AllocateRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permission("system", "credits", "allocate", scope=entity_scope())),
) -> AllocationRead:
    return credit_ledger_service.allocate_to_application(
        db,
        entity_id,
        dto.application_code,
        dto.amount,
        allocation_purpose=dto.allocation_purpose,
        auto_replenish=dto.auto_replenish,
        expected_entity_version=dto.entity_row_version,
        expected_allocation_version=dto.allocation_row_version,
        actor_user_id=user.sub,
    )


@router.post("/entities/{entity_id}/consume", response_model=AllocationRead)
def consume(
    entity_id: uuid.UUID,
    dto: ConsumeRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permission("system", "credits", "consume", scope=entity_scope())),
) -> AllocationRead:
    return credit_ledger_service.consume_allocation(
        db,
        entity_id,
        dto.application_code,
        dto.amount,
        operation_code=dto.operation_code,
        description=dto.description,
        expected_allocation_version=dto.allocation_row_version,
        actor_user_id=user.sub,
    )


@router.post("/entities/{entity_id}/deallocate", response_model=AllocationRead)
def deallocate(
    entity_id: uuid.UUID,
    dto: DeallocateRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permission("system", "credits", "allocate", scope=entity_scope())),
) -> AllocationRead:
    return credit_ledger_service.deallocate(
        db,
        entity_id,
        dto.application_code,
        dto.amount,
        expected_entity_version=dto.entity_row_version,
        expected_allocation_version=dto.allocation_row_version,
        actor_user_id=user.sub,
    )


@router.post("/entities/{entity_id}/transfer", response_model=TransferRead)
def transfer(
    entity_id: uuid.UUID,
    dto: TransferRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permission("system", "credits", "allocate", scope=entity_scope())),
) -> TransferRead:
    return credit_ledger_service.transfer_between_applications(
        db,
        entity_id,
        dto.from_application,
        dto.to_application,
        dto.amount,
        actor_user_id=user.sub,
    )


@router.post("/entities/{entity_id}/transfer-to-entity", response_model=EntityTransferRead)
def transfer_to_entity(
    entity_id: uuid.UUID,
    dto: EntityTransferRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permission("system", "credits", "manage", scope=entity_scope())),
) -> EntityTransferRead:
    ensure_permission(db, user, "system", "credits", "manage", PermissionScope.for_entity(dto.target_entity_id))
    return credit_ledger_service.transfer_to_entity(
        db,
        entity_id,
        dto.target_entity_id,
        dto.amount,
        description=dto.description,
        expected_source_version=dto.entity_row_version,
        actor_user_id=user.sub,
    )


@router.post("/entities/{entity_id}/cascade-check", response_model=CascadeCheckRead)
def cascade_check(
    entity_id: uuid.UUID,
    dto: CascadeCheckRequest,
    db: Session = Depends(get_db),
    _user: AuthUser = Depends(require_permission("system", "credits", "read", scope=entity_scope())),
) -> CascadeCheckRead:
    return credit_ledger_service.cascade_check(db, entity_id, dto.amount)


@router.get("/entities/{entity_id}/transactions", response_model=list[CreditTransactionRead])
def list_transactions(
    entity_id: uuid.UUID,
    application_code: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    _user: AuthUser = Depends(require_permission("system", "credits", "read", scope=entity_scope())),
) -> list[CreditTransactionRead]:
    return credit_ledger_service.list_transactions(db, entity_id, application_code=application_code, limit=limit)
