from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from orgsuite.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ApplicationAllocation(Base):
    __tablename__ = "credit_application_allocation"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    entity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("org_entity.id", ondelete="CASCADE"),
        nullable=False,
    )
    application_code: Mapped[str] = mapped_column(String(64), nullable=False)
    allocated_credits: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("0"), server_default="0")
    used_credits: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("0"), server_default="0")
    auto_replenish: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    allocation_purpose: Mapped[str | None] = mapped_column(Text, nullable=True)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("entity_id", "application_code", name="uq_credit_allocation_entity_application"),
        CheckConstraint("allocated_credits >= 0", name="ck_credit_allocation_allocated_nonnegative"),
        CheckConstraint("used_credits >= 0", name="ck_credit_allocation_used_nonnegative"),
        CheckConstraint("used_credits <= allocated_credits", name="ck_credit_allocation_used_within_allocated"),
    )

    @property
    def available_credits(self) -> Decimal:
        return Decimal(self.allocated_credits) - Decimal(self.used_credits)


class CreditTransaction(Base):
    __tablename__ = "credit_transaction"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    entity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("org_entity.id", ondelete="CASCADE"),
        nullable=False,
    )
    application_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    transaction_type: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    total_after: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    reserved_after: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    allocated_after: Mapped[Decimal | None] = mapped_column(Numeric(18, 6), nullable=True)
    used_after: Mapped[Decimal | None] = mapped_column(Numeric(18, 6), nullable=True)
    operation_code: Mapped[str | None] = mapped_column(String(128), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    initiated_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_credit_transaction_entity_created", "entity_id", "created_at"),
    )
