from __future__ import annotations

import logging
import uuid
from decimal import Decimal

from opentelemetry import trace
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from orgsuite import audit, events
from orgsuite.context import get_actor_user_id
from orgsuite.core.config import get_settings
from orgsuite.credits.models import ApplicationAllocation, CreditTransaction, utcnow
from orgsuite.credits.schemas import (
    AllocationListRead,
    AllocationRead,
    CascadeCheckRead,
    CreditBalanceRead,
    CreditTransactionRead,
    EntityTransferRead,
    TransferRead,
)
from orgsuite.errors import (
    AllocationExceededError,
    ConcurrentModificationError,
    CreditLimitExceededError,
    CrossTenantTransferError,
    DeallocationExceedsAllocatedError,
    InsufficientAvailableCreditsError,
    InvalidCreditRequestError,
    NotFoundError,
    OrgSuiteError,
    UnsupportedApplicationError,
)
from orgsuite.hierarchy.models import Entity
from orgsuite.hierarchy.service import entity_tree_service
from orgsuite.metrics import observe_credit_failure, observe_credit_mutation


logger = logging.getLogger("orgsuite.credits")
tracer = trace.get_tracer("orgsuite.credits")

QUANTUM = Decimal("0.000001")
ZERO = Decimal("0")
# largest value a Numeric(18, 6) column holds
MAX_CREDITS = Decimal("999999999999.999999")


def quantize(amount: Decimal | int | str) -> Decimal:
    return Decimal(amount).quantize(QUANTUM)


class CreditLedgerService:
    """Entity credit pools and their per-application allocations.

    Every mutation keeps ``entity.reserved_credits`` equal to the sum of the
    entity's allocated credits, writes one ``CreditTransaction`` row per
    touched pool and swaps row versions so that a concurrent writer loses
    with ``ConcurrentModificationError`` instead of overwriting.
    """

    entity_type = "credits.allocation"

    def add_credits(
        self,
        session: Session,
        entity_id: uuid.UUID,
        amount: Decimal,
        *,
        description: str | None = None,
        expected_row_version: int | None = None,
        actor_user_id: str | None = None,
    ) -> CreditBalanceRead:
        operation = "topup"
        amount = self._positive(amount, operation)
        entity = entity_tree_service.get_entity_model(session, entity_id)
        self._check_version(entity.row_version, expected_row_version, operation, "entity")

        total_after = self._within_capacity(entity, entity.total_credits + amount, operation)
        with self._mutation(session, operation):
            self._swap_entity(session, entity, total_credits=total_after)
            self._log(
                session,
                entity,
                operation,
                amount,
                total_after=total_after,
                reserved_after=quantize(entity.reserved_credits),
                description=description,
                actor_user_id=actor_user_id,
            )

        session.refresh(entity)
        self._after_mutation(operation, entity, None, amount, actor_user_id)
        return CreditBalanceRead.model_validate(entity)

    def allocate_to_application(
        self,
        session: Session,
        entity_id: uuid.UUID,
        application_code: str,
        amount: Decimal,
        *,
        allocation_purpose: str | None = None,
        auto_replenish: bool | None = None,
        expected_entity_version: int | None = None,
        expected_allocation_version: int | None = None,
        actor_user_id: str | None = None,
    ) -> AllocationRead:
        operation = "allocation"
        with tracer.start_as_current_span("credits.allocate") as span:
            span.set_attribute("entity_id", str(entity_id))
            span.set_attribute("application", application_code)

            amount = self._positive(amount, operation)
            self._check_application(application_code, operation)
            entity = entity_tree_service.get_entity_model(session, entity_id)
            self._check_version(entity.row_version, expected_entity_version, operation, "entity")
            allocation = self._find_allocation(session, entity.id, application_code)
            if allocation is not None:
                self._check_version(allocation.row_version, expected_allocation_version, operation, "allocation")

            if amount > entity.available_credits:
                observe_credit_failure(operation, "insufficient_available")
                raise InsufficientAvailableCreditsError(
                    "allocation exceeds the entity's available credits",
                    entity_id=str(entity.id),
                    requested=str(amount),
                    available=str(entity.available_credits),
                )
            if get_settings().credit_cascade_policy == "bounded":
                self.cascade_check(session, entity.id, amount)

            reserved_after = quantize(entity.reserved_credits + amount)
            with self._mutation(session, operation):
                self._swap_entity(session, entity, reserved_credits=reserved_after)
                if allocation is None:
                    allocation = ApplicationAllocation(
                        entity_id=entity.id,
                        application_code=application_code,
                        allocated_credits=amount,
                        used_credits=ZERO,
                        auto_replenish=bool(auto_replenish),
                        allocation_purpose=allocation_purpose,
                    )
                    session.add(allocation)
                    session.flush()
                else:
                    values: dict[str, object] = {"allocated_credits": quantize(allocation.allocated_credits + amount)}
                    if allocation_purpose is not None:
                        values["allocation_purpose"] = allocation_purpose
                    if auto_replenish is not None:
                        values["auto_replenish"] = auto_replenish
                    self._swap_allocation(session, allocation, **values)
                self._log(
                    session,
                    entity,
                    operation,
                    amount,
                    application_code=application_code,
                    total_after=quantize(entity.total_credits),
                    reserved_after=reserved_after,
                    allocated_after=quantize(allocation.allocated_credits),
                    used_after=quantize(allocation.used_credits),
                    description=allocation_purpose,
                    actor_user_id=actor_user_id,
                )

            session.refresh(allocation)
            self._after_mutation(operation, entity, application_code, amount, actor_user_id)
            return AllocationRead.model_validate(allocation)

    def consume_allocation(
        self,
        session: Session,
        entity_id: uuid.UUID,
        application_code: str,
        amount: Decimal,
        *,
        operation_code: str | None = None,
        description: str | None = None,
        expected_allocation_version: int | None = None,
        actor_user_id: str | None = None,
    ) -> AllocationRead:
        operation = "consumption"
        amount = self._positive(amount, operation)
        self._check_application(application_code, operation)
        entity = entity_tree_service.get_entity_model(session, entity_id)
        allocation = self._require_allocation(session, entity.id, application_code)
        self._check_version(allocation.row_version, expected_allocation_version, operation, "allocation")

        if amount > allocation.available_credits:
            observe_credit_failure(operation, "allocation_exceeded")
            raise AllocationExceededError(
                "consumption exceeds the allocation's remaining credits",
                entity_id=str(entity.id),
                application=application_code,
                requested=str(amount),
                available=str(allocation.available_credits),
            )

        used_after = quantize(allocation.used_credits + amount)
        with self._mutation(session, operation):
            self._swap_allocation(session, allocation, used_credits=used_after)
            self._log(
                session,
                entity,
                operation,
                amount,
                application_code=application_code,
                total_after=quantize(entity.total_credits),
                reserved_after=quantize(entity.reserved_credits),
                allocated_after=quantize(allocation.allocated_credits),
                used_after=used_after,
                operation_code=operation_code,
                description=description,
                actor_user_id=actor_user_id,
            )

        session.refresh(allocation)
        self._after_mutation(operation, entity, application_code, amount, actor_user_id)
        return AllocationRead.model_validate(allocation)

    def deallocate(
        self,
        session: Session,
        entity_id: uuid.UUID,
        application_code: str,
        amount: Decimal,
        *,
        expected_entity_version: int | None = None,
        expected_allocation_version: int | None = None,
        actor_user_id: str | None = None,
    ) -> AllocationRead:
        operation = "deallocation"
        amount = self._positive(amount, operation)
        self._check_application(application_code, operation)
        entity = entity_tree_service.get_entity_model(session, entity_id)
        self._check_version(entity.row_version, expected_entity_version, operation, "entity")
        allocation = self._require_allocation(session, entity.id, application_code)
        self._check_version(allocation.row_version, expected_allocation_version, operation, "allocation")

        if amount > allocation.available_credits:
            observe_credit_failure(operation, "exceeds_unused")
            raise DeallocationExceedsAllocatedError(
                "only unused allocated credits can be returned",
                entity_id=str(entity.id),
                application=application_code,
                requested=str(amount),
                unused=str(allocation.available_credits),
            )

        allocated_after = quantize(allocation.allocated_credits - amount)
        reserved_after = quantize(entity.reserved_credits - amount)
        with self._mutation(session, operation):
            self._swap_entity(session, entity, reserved_credits=reserved_after)
            self._swap_allocation(session, allocation, allocated_credits=allocated_after)
            self._log(
                session,
                entity,
                operation,
                amount,
                application_code=application_code,
                total_after=quantize(entity.total_credits),
                reserved_after=reserved_after,
                allocated_after=allocated_after,
                used_after=quantize(allocation.used_credits),
                actor_user_id=actor_user_id,
            )

        session.refresh(allocation)
        self._after_mutation(operation, entity, application_code, amount, actor_user_id)
        return AllocationRead.model_validate(allocation)

    def transfer_between_applications(
        self,
        session: Session,
        entity_id: uuid.UUID,
        from_application: str,
        to_application: str,
        amount: Decimal,
        *,
        actor_user_id: str | None = None,
    ) -> TransferRead:
        """Move unused allocation from one application to another; reserved is unchanged."""

        operation = "transfer"
        amount = self._positive(amount, operation)
        if from_application == to_application:
            observe_credit_failure(operation, "same_application")
            raise InvalidCreditRequestError("source and target application must differ", application=from_application)
        self._check_application(from_application, operation)
        self._check_application(to_application, operation)
        entity = entity_tree_service.get_entity_model(session, entity_id)
        source = self._require_allocation(session, entity.id, from_application)
        target = self._find_allocation(session, entity.id, to_application)

        if amount > source.available_credits:
            observe_credit_failure(operation, "allocation_exceeded")
            raise AllocationExceededError(
                "transfer exceeds the source allocation's remaining credits",
                entity_id=str(entity.id),
                application=from_application,
                requested=str(amount),
                available=str(source.available_credits),
            )

        with self._mutation(session, operation):
            self._swap_allocation(
                session,
                source,
                allocated_credits=quantize(source.allocated_credits - amount),
            )
            if target is None:
                target = ApplicationAllocation(
                    entity_id=entity.id,
                    application_code=to_application,
                    allocated_credits=amount,
                    used_credits=ZERO,
                    allocation_purpose=f"transfer from {from_application}",
                )
                session.add(target)
                session.flush()
            else:
                self._swap_allocation(
                    session,
                    target,
                    allocated_credits=quantize(target.allocated_credits + amount),
                )
            for transaction_type, allocation in (("transfer_out", source), ("transfer_in", target)):
                self._log(
                    session,
                    entity,
                    transaction_type,
                    amount,
                    application_code=allocation.application_code,
                    total_after=quantize(entity.total_credits),
                    reserved_after=quantize(entity.reserved_credits),
                    allocated_after=quantize(allocation.allocated_credits),
                    used_after=quantize(allocation.used_credits),
                    description=f"{from_application} -> {to_application}",
                    actor_user_id=actor_user_id,
                )

        session.refresh(source)
        session.refresh(target)
        self._after_mutation(operation, entity, f"{from_application}->{to_application}", amount, actor_user_id)
        return TransferRead(source=AllocationRead.model_validate(source), target=AllocationRead.model_validate(target))

    def transfer_to_entity(
        self,
        session: Session,
        source_id: uuid.UUID,
        target_id: uuid.UUID,
        amount: Decimal,
        *,
        description: str | None = None,
        expected_source_version: int | None = None,
        actor_user_id: str | None = None,
    ) -> EntityTransferRead:
        """Move unreserved pool credits to another active entity of the same tenant.

        Both pools change in one commit and each gets its own transaction row,
        ``transfer_out`` on the source and ``transfer_in`` on the target.
        """

        operation = "entity_transfer"
        with tracer.start_as_current_span("credits.transfer_to_entity") as span:
            span.set_attribute("entity_id", str(source_id))
            span.set_attribute("target_entity_id", str(target_id))

            amount = self._positive(amount, operation)
            if source_id == target_id:
                observe_credit_failure(operation, "same_entity")
                raise InvalidCreditRequestError("source and target entity must differ", entity_id=str(source_id))
            source = entity_tree_service.get_entity_model(session, source_id)
            self._check_version(source.row_version, expected_source_version, operation, "entity")
            target = entity_tree_service.get_entity_model(session, target_id)
            if target.tenant_id != source.tenant_id:
                observe_credit_failure(operation, "cross_tenant")
                raise CrossTenantTransferError(
                    "credits can only move between entities of one tenant",
                    entity_id=str(source.id),
                    target_entity_id=str(target.id),
                )
            if amount > source.available_credits:
                observe_credit_failure(operation, "insufficient_available")
                raise InsufficientAvailableCreditsError(
                    "transfer exceeds the entity's available credits",
                    entity_id=str(source.id),
                    requested=str(amount),
                    available=str(source.available_credits),
                )

            source_total = quantize(source.total_credits - amount)
            target_total = self._within_capacity(target, target.total_credits + amount, operation)
            note = description or f"{source.id} -> {target.id}"
            with self._mutation(session, operation):
                self._swap_entity(session, source, total_credits=source_total)
                self._swap_entity(session, target, total_credits=target_total)
                for transaction_type, entity, total_after in (
                    ("transfer_out", source, source_total),
                    ("transfer_in", target, target_total),
                ):
                    self._log(
                        session,
                        entity,
                        transaction_type,
                        amount,
                        total_after=total_after,
                        reserved_after=quantize(entity.reserved_credits),
                        description=note,
                        actor_user_id=actor_user_id,
                    )

            session.refresh(source)
            session.refresh(target)
            self._after_mutation(operation, source, None, amount, actor_user_id, target_entity_id=target.id)
            return EntityTransferRead(
                source=CreditBalanceRead.model_validate(source),
                target=CreditBalanceRead.model_validate(target),
            )

    def cascade_check(self, session: Session, entity_id: uuid.UUID, amount: Decimal) -> CascadeCheckRead:
        """Fail unless every ancestor could cover ``amount`` from its own available credits."""

        amount = self._positive(amount, "cascade_check")
        ancestors = entity_tree_service.ancestor_entities(session, entity_id)
        limiting: Entity | None = None
        for ancestor in ancestors:
            if limiting is None or ancestor.available_credits < limiting.available_credits:
                limiting = ancestor

        if limiting is not None and amount > limiting.available_credits:
            observe_credit_failure("cascade_check", "insufficient_ancestor")
            raise InsufficientAvailableCreditsError(
                "amount exceeds the available credits of an ancestor entity",
                entity_id=str(entity_id),
                ancestor_entity_id=str(limiting.id),
                requested=str(amount),
                available=str(limiting.available_credits),
            )

        return CascadeCheckRead(
            entity_id=entity_id,
            amount=amount,
            checked_ancestors=len(ancestors),
            minimum_available=quantize(limiting.available_credits) if limiting is not None else None,
            limiting_entity_id=limiting.id if limiting is not None else None,
        )

    def get_balance(self, session: Session, entity_id: uuid.UUID) -> CreditBalanceRead:
        return CreditBalanceRead.model_validate(entity_tree_service.get_entity_model(session, entity_id, include_inactive=True))

    def list_allocations(self, session: Session, entity_id: uuid.UUID) -> AllocationListRead:
        entity = entity_tree_service.get_entity_model(session, entity_id, include_inactive=True)
        rows = session.scalars(
            select(ApplicationAllocation)
            .where(ApplicationAllocation.entity_id == entity.id)
            .order_by(ApplicationAllocation.application_code.asc())
        ).all()
        allocations = [AllocationRead.model_validate(row) for row in rows]
        return AllocationListRead(
            entity_id=entity.id,
            allocations=allocations,
            total_allocated=quantize(sum((item.allocated_credits for item in allocations), ZERO)),
            total_used=quantize(sum((item.used_credits for item in allocations), ZERO)),
            total_available=quantize(sum((item.available_credits for item in allocations), ZERO)),
        )

    def list_transactions(
        self,
        session: Session,
        entity_id: uuid.UUID,
        *,
        application_code: str | None = None,
        limit: int = 100,
    ) -> list[CreditTransactionRead]:
        entity = entity_tree_service.get_entity_model(session, entity_id, include_inactive=True)
        stmt = select(CreditTransaction).where(CreditTransaction.entity_id == entity.id)
        if application_code is not None:
            stmt = stmt.where(CreditTransaction.application_code == application_code)
        rows = session.scalars(
            stmt.order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc()).limit(limit)
        ).all()
        return [CreditTransactionRead.model_validate(row) for row in rows]

    def _mutation(self, session: Session, operation: str) -> _LedgerMutation:
        return _LedgerMutation(session, operation)

    @staticmethod
    def _positive(amount: Decimal, operation: str) -> Decimal:
        value = quantize(amount)
        if value <= ZERO:
            observe_credit_failure(operation, "non_positive_amount")
            raise InvalidCreditRequestError("amount must be positive", amount=str(amount))
        return value

    @staticmethod
    def _within_capacity(entity: Entity, total: Decimal, operation: str) -> Decimal:
        value = quantize(total)
        if value > MAX_CREDITS:
            observe_credit_failure(operation, "credit_limit")
            raise CreditLimitExceededError(
                "entity credit pool would exceed its maximum",
                entity_id=str(entity.id),
                requested_total=str(value),
                maximum=str(MAX_CREDITS),
            )
        return value

    @staticmethod
    def _check_application(application_code: str, operation: str) -> None:
        if application_code not in get_settings().credit_applications:
            observe_credit_failure(operation, "unsupported_application")
            raise UnsupportedApplicationError("unsupported application", application=application_code)

    @staticmethod
    def _check_version(current: int, expected: int | None, operation: str, kind: str) -> None:
        if expected is not None and expected != current:
            observe_credit_failure(operation, "stale_row_version")
            raise ConcurrentModificationError(f"{kind} was modified concurrently", expected=expected, current=current)

    @staticmethod
    def _find_allocation(session: Session, entity_id: uuid.UUID, application_code: str) -> ApplicationAllocation | None:
        return session.scalar(
            select(ApplicationAllocation).where(
                ApplicationAllocation.entity_id == entity_id,
                ApplicationAllocation.application_code == application_code,
            )
        )

    def _require_allocation(self, session: Session, entity_id: uuid.UUID, application_code: str) -> ApplicationAllocation:
        allocation = self._find_allocation(session, entity_id, application_code)
        if allocation is None:
            raise NotFoundError("allocation", f"{entity_id}/{application_code}")
        return allocation

    @staticmethod
    def _swap_entity(session: Session, entity: Entity, **values: object) -> None:
        seen = entity.row_version
        result = session.execute(
            update(Entity)
            .where(Entity.id == entity.id, Entity.row_version == seen)
            .values(row_version=seen + 1, updated_at=utcnow(), **values)
        )
        if result.rowcount == 0:
            raise ConcurrentModificationError("entity was modified concurrently", entity_id=str(entity.id))

    @staticmethod
    def _swap_allocation(session: Session, allocation: ApplicationAllocation, **values: object) -> None:
        seen = allocation.row_version
        result = session.execute(
            update(ApplicationAllocation)
            .where(ApplicationAllocation.id == allocation.id, ApplicationAllocation.row_version == seen)
            .values(row_version=seen + 1, updated_at=utcnow(), **values)
        )
        if result.rowcount == 0:
            raise ConcurrentModificationError(
                "allocation was modified concurrently",
                entity_id=str(allocation.entity_id),
                application=allocation.application_code,
            )

    @staticmethod
    def _log(
        session: Session,
        entity: Entity,
        transaction_type: str,
        amount: Decimal,
        *,
        total_after: Decimal,
        reserved_after: Decimal,
        application_code: str | None = None,
        allocated_after: Decimal | None = None,
        used_after: Decimal | None = None,
        operation_code: str | None = None,
        description: str | None = None,
        actor_user_id: str | None = None,
    ) -> None:
        session.add(
            CreditTransaction(
                entity_id=entity.id,
                application_code=application_code,
                transaction_type=transaction_type,
                amount=amount,
                total_after=total_after,
                reserved_after=reserved_after,
                allocated_after=allocated_after,
                used_after=used_after,
                operation_code=operation_code,
                description=description,
                initiated_by=actor_user_id or get_actor_user_id() or "system",
            )
        )

    def _after_mutation(
        self,
        operation: str,
        entity: Entity,
        application_code: str | None,
        amount: Decimal,
        actor_user_id: str | None,
        *,
        target_entity_id: uuid.UUID | None = None,
    ) -> None:
        observe_credit_mutation(operation)
        payload = {
            "entity_id": str(entity.id),
            "tenant_id": entity.tenant_id,
            "application": application_code,
            "amount": str(amount),
            "total_credits": str(entity.total_credits),
            "reserved_credits": str(entity.reserved_credits),
        }
        if target_entity_id is not None:
            payload["target_entity_id"] = str(target_entity_id)
        audit.record(
            actor_user_id=actor_user_id,
            entity_type=self.entity_type,
            entity_id=str(entity.id),
            action=f"credits.{operation}",
            before=None,
            after=payload,
        )
        events.publish(events.build_envelope(f"credits.{operation}", actor_user_id, payload))
        logger.info(
            f"credits.{operation}",
            extra={"entity_id": str(entity.id), "application": application_code, "amount": str(amount)},
        )


class _LedgerMutation:
    """Commit on clean exit; roll back, count and re-raise otherwise."""

    def __init__(self, session: Session, operation: str) -> None:
        self.session = session
        self.operation = operation

    def __enter__(self) -> _LedgerMutation:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:  # type: ignore[no-untyped-def]
        if exc is None:
            try:
                self.session.commit()
            except IntegrityError as commit_exc:
                self.session.rollback()
                observe_credit_failure(self.operation, "integrity")
                raise ConcurrentModificationError("credit state changed concurrently") from commit_exc
            return False

        self.session.rollback()
        if isinstance(exc, IntegrityError):
            observe_credit_failure(self.operation, "integrity")
            raise ConcurrentModificationError("credit state changed concurrently") from exc
        reason = exc.code if isinstance(exc, OrgSuiteError) else "error"
        observe_credit_failure(self.operation, reason)
        logger.warning(f"credits.{self.operation}_failed", extra={"error": str(exc)[:500]})
        return False


credit_ledger_service = CreditLedgerService()
