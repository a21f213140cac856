from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, JSON, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from orgsuite.core.database import Base
from orgsuite.hierarchy.models import Entity


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(Base):
    __tablename__ = "authz_role"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    color: Mapped[str | None] = mapped_column(String(32), nullable=True)
    icon: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_system: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    permissions: Mapped[dict[str, dict[str, list[str]]]] = mapped_column(JSON, nullable=False, default=dict)
    restrictions: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    memberships: Mapped[list[Membership]] = relationship("Membership", back_populates="role")

    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_authz_role_tenant_name"),
    )


class Membership(Base):
    __tablename__ = "authz_membership"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("org_entity.id", ondelete="CASCADE"),
        nullable=False,
    )
    role_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("authz_role.id", ondelete="RESTRICT"),
        nullable=True,
    )
    membership_type: Mapped[str] = mapped_column(String(16), nullable=False, default="direct", server_default="direct")
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    role: Mapped[Role | None] = relationship("Role", back_populates="memberships")
    entity: Mapped[Entity] = relationship(Entity)

    __table_args__ = (
        UniqueConstraint("user_id", "entity_id", name="uq_authz_membership_user_entity"),
        Index("ix_authz_membership_user", "user_id"),
        Index("ix_authz_membership_role", "role_id"),
    )
