from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, JSON, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from orgsuite.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Entity(Base):
    __tablename__ = "org_entity"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    entity_name: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    parent_entity_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("org_entity.id", ondelete="RESTRICT"),
        nullable=True,
    )
    entity_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    hierarchy_path: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(nullable=False, default=True, server_default="true")
    responsible_person_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    total_credits: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("0"), server_default="0")
    reserved_credits: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("0"), server_default="0")
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("total_credits >= 0", name="ck_org_entity_total_nonnegative"),
        CheckConstraint("reserved_credits >= 0", name="ck_org_entity_reserved_nonnegative"),
        CheckConstraint("reserved_credits <= total_credits", name="ck_org_entity_reserved_within_total"),
        Index("ix_org_entity_tenant", "tenant_id"),
        Index("ix_org_entity_parent", "parent_entity_id"),
    )

    @property
    def available_credits(self) -> Decimal:
        return Decimal(self.total_credits) - Decimal(self.reserved_credits)

    @property
    def ancestor_ids(self) -> list[uuid.UUID]:
        return [uuid.UUID(item) for item in self.hierarchy_path]
