"""create entity, role, membership, credit and invitation tables

Revision ID: 202610010001
Revises:
Create Date: 2026-10-01 09:00:00
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import datetime, timezone

from alembic import op
import sqlalchemy as sa


revision: str = "202610010001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "org_entity",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("entity_name", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("parent_entity_id", sa.Uuid(), nullable=True),
        sa.Column("entity_level", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("hierarchy_path", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("responsible_person_id", sa.String(length=255), nullable=True),
        sa.Column("total_credits", sa.Numeric(18, 6), nullable=False, server_default="0"),
        sa.Column("reserved_credits", sa.Numeric(18, 6), nullable=False, server_default="0"),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("total_credits >= 0", name="ck_org_entity_total_nonnegative"),
        sa.CheckConstraint("reserved_credits >= 0", name="ck_org_entity_reserved_nonnegative"),
        sa.CheckConstraint("reserved_credits <= total_credits", name="ck_org_entity_reserved_within_total"),
        sa.ForeignKeyConstraint(["parent_entity_id"], ["org_entity.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_org_entity_tenant", "org_entity", ["tenant_id"])
    op.create_index("ix_org_entity_parent", "org_entity", ["parent_entity_id"])

    op.create_table(
        "authz_role",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("color", sa.String(length=32), nullable=True),
        sa.Column("icon", sa.String(length=64), nullable=True),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("permissions", sa.JSON(), nullable=False),
        sa.Column("restrictions", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "name", name="uq_authz_role_tenant_name"),
    )

    op.create_table(
        "authz_membership",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("role_id", sa.Uuid(), nullable=True),
        sa.Column("membership_type", sa.String(length=16), nullable=False, server_default="direct"),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["entity_id"], ["org_entity.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["role_id"], ["authz_role.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "entity_id", name="uq_authz_membership_user_entity"),
    )
    op.create_index("ix_authz_membership_user", "authz_membership", ["user_id"])
    op.create_index("ix_authz_membership_role", "authz_membership", ["role_id"])

    op.create_table(
        "credit_application_allocation",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("application_code", sa.String(length=64), nullable=False),
        sa.Column("allocated_credits", sa.Numeric(18, 6), nullable=False, server_default="0"),
        sa.Column("used_credits", sa.Numeric(18, 6), nullable=False, server_default="0"),
        sa.Column("auto_replenish", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("allocation_purpose", sa.Text(), nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("allocated_credits >= 0", name="ck_credit_allocation_allocated_nonnegative"),
        sa.CheckConstraint("used_credits >= 0", name="ck_credit_allocation_used_nonnegative"),
        sa.CheckConstraint("used_credits <= allocated_credits", name="ck_credit_allocation_used_within_allocated"),
        sa.ForeignKeyConstraint(["entity_id"], ["org_entity.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("entity_id", "application_code", name="uq_credit_allocation_entity_application"),
    )

    op.create_table(
        "credit_transaction",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("application_code", sa.String(length=64), nullable=True),
        sa.Column("transaction_type", sa.String(length=32), nullable=False),
        sa.Column("amount", sa.Numeric(18, 6), nullable=False),
        sa.Column("total_after", sa.Numeric(18, 6), nullable=False),
        sa.Column("reserved_after", sa.Numeric(18, 6), nullable=False),
        sa.Column("allocated_after", sa.Numeric(18, 6), nullable=True),
        sa.Column("used_after", sa.Numeric(18, 6), nullable=True),
        sa.Column("operation_code", sa.String(length=128), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("initiated_by", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["entity_id"], ["org_entity.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_credit_transaction_entity_created", "credit_transaction", ["entity_id", "created_at"])

    op.create_table(
        "invitation",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("primary_entity_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("token", sa.String(length=128), nullable=False),
        sa.Column("invited_by", sa.String(length=255), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("accepted_by_user_id", sa.String(length=255), nullable=True),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("token"),
    )
    op.create_index("ix_invitation_tenant_status", "invitation", ["tenant_id", "status"])
    op.create_index("ix_invitation_email", "invitation", ["email"])

    op.create_table(
        "invitation_entity",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("invitation_id", sa.Uuid(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("role_id", sa.Uuid(), nullable=True),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("membership_type", sa.String(length=16), nullable=False, server_default="direct"),
        sa.ForeignKeyConstraint(["invitation_id"], ["invitation.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["entity_id"], ["org_entity.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["role_id"], ["authz_role.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("invitation_id", "entity_id", name="uq_invitation_entity"),
    )

    _seed_system_roles()


def downgrade() -> None:
    op.drop_table("invitation_entity")
    op.drop_index("ix_invitation_email", table_name="invitation")
    op.drop_index("ix_invitation_tenant_status", table_name="invitation")
    op.drop_table("invitation")
    op.drop_index("ix_credit_transaction_entity_created", table_name="credit_transaction")
    op.drop_table("credit_transaction")
    op.drop_table("credit_application_allocation")
    op.drop_index("ix_authz_membership_role", table_name="authz_membership")
    op.drop_index("ix_authz_membership_user", table_name="authz_membership")
    op.drop_table("authz_membership")
    op.drop_table("authz_role")
    op.drop_index("ix_org_entity_parent", table_name="org_entity")
    op.drop_index("ix_org_entity_tenant", table_name="org_entity")
    op.drop_table("org_entity")


def _seed_system_roles() -> None:
    now = datetime.now(timezone.utc)

    role_table = sa.table(
        "authz_role",
        sa.column("id", sa.Uuid()),
        sa.column("tenant_id", sa.String()),
        sa.column("name", sa.String()),
        sa.column("description", sa.Text()),
        sa.column("color", sa.String()),
        sa.column("icon", sa.String()),
        sa.column("is_system", sa.Boolean()),
        sa.column("priority", sa.Integer()),
        sa.column("permissions", sa.JSON()),
        sa.column("restrictions", sa.JSON()),
        sa.column("created_at", sa.DateTime(timezone=True)),
        sa.column("updated_at", sa.DateTime(timezone=True)),
    )
    rows = [
        {
            "id": uuid.UUID("0b6f2c1e-4f0a-4c35-9d55-5a1f3e8b7c01"),
            "name": "Super Admin",
            "description": "Full access to every application",
            "color": "#b91c1c",
            "icon": "shield",
            "priority": 100,
            "permissions": {app: {"*": ["*"]} for app in ("affiliate", "crm", "hr", "system")},
            "restrictions": {},
        },
        {
            "id": uuid.UUID("6a3d9e42-1b7c-4e8f-a0d2-3c5b7e9f1a02"),
            "name": "Tenant Admin",
            "description": "Manages entities, members, roles and credits of one tenant",
            "color": "#1d4ed8",
            "icon": "building",
            "priority": 50,
            "permissions": {
                "system": {
                    "credits": ["allocate", "consume", "manage", "read"],
                    "entities": ["create", "delete", "manage", "read", "update"],
                    "invitations": ["cancel", "create", "manage", "read"],
                    "memberships": ["assign", "delete", "read"],
                    "roles": ["create", "delete", "read", "update"],
                }
            },
            "restrictions": {},
        },
        {
            "id": uuid.UUID("c4e81f07-92a5-4d3b-b6e1-8f2a4c6d0b03"),
            "name": "Member",
            "description": "Standard member with read access to the organisation",
            "color": "#047857",
            "icon": "user",
            "priority": 10,
            "permissions": {
                "system": {
                    "credits": ["read"],
                    "entities": ["read"],
                    "memberships": ["read"],
                    "roles": ["read"],
                }
            },
            "restrictions": {},
        },
        {
            "id": uuid.UUID("e9a27b53-6c1d-4f80-93e4-2b7d5f8a1c04"),
            "name": "Viewer",
            "description": "Visibility of the organisation tree only",
            "color": "#6b7280",
            "icon": "eye",
            "priority": 0,
            "permissions": {"system": {"entities": ["read"]}},
            "restrictions": {},
        },
    ]
    op.bulk_insert(
        role_table,
        [
            {**row, "tenant_id": None, "is_system": True, "created_at": now, "updated_at": now}
            for row in rows
        ],
    )
