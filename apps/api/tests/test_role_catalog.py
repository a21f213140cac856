from __future__ import annotations

from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from orgsuite import audit, models  # noqa: F401
from orgsuite.authz.models import Membership
from orgsuite.authz.schemas import MembershipCreate, RoleCreate, RoleUpdate
from orgsuite.authz.service import membership_service, role_catalog_service
from orgsuite.core.database import Base
from orgsuite.errors import ConflictError, NotFoundError, RoleInUseError, SystemRoleImmutableError
from orgsuite.hierarchy.schemas import EntityCreate
from orgsuite.hierarchy.service import entity_tree_service


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_audit() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    yield
    audit.audit_entries.clear()


def test_create_role_stores_canonical_permissions(db_session: Session) -> None:
    role = role_catalog_service.create_role(
        db_session,
        RoleCreate(
            name=" Sales Rep ",
            tenant_id="tenant-a",
            priority=20,
            permissions=["crm.leads.read", "crm.leads.create", "crm.leads.read", "broken"],
            restrictions={"max_leads": 50},
        ),
    )

    assert role.name == "Sales Rep"
    assert role.permissions == {"crm": {"leads": ["create", "read"]}}
    assert role.restrictions == {"max_leads": 50}
    assert audit.audit_entries[-1]["action"] == "role.created"


def test_role_names_are_unique_per_tenant(db_session: Session) -> None:
    role_catalog_service.create_role(db_session, RoleCreate(name="Manager", tenant_id="tenant-a"))
    role_catalog_service.create_role(db_session, RoleCreate(name="Manager", tenant_id="tenant-b"))
    role_catalog_service.create_role(db_session, RoleCreate(name="Manager"))

    with pytest.raises(ConflictError):
        role_catalog_service.create_role(db_session, RoleCreate(name="Manager", tenant_id="tenant-a"))
    with pytest.raises(ConflictError):
        role_catalog_service.create_role(db_session, RoleCreate(name="Manager"))


def test_list_roles_merges_platform_roles_ordered_by_priority(db_session: Session) -> None:
    role_catalog_service.create_role(db_session, RoleCreate(name="Viewer", priority=0))
    role_catalog_service.create_role(db_session, RoleCreate(name="Owner", tenant_id="tenant-a", priority=90))
    role_catalog_service.create_role(db_session, RoleCreate(name="Agent", tenant_id="tenant-a", priority=10))
    role_catalog_service.create_role(db_session, RoleCreate(name="Hidden", tenant_id="tenant-b", priority=5))

    names = [role.name for role in role_catalog_service.list_roles(db_session, tenant_id="tenant-a")]
    assert names == ["Viewer", "Agent", "Owner"]


def test_system_roles_cannot_be_changed_or_deleted(db_session: Session) -> None:
    role = role_catalog_service.create_role(db_session, RoleCreate(name="Super Admin", is_system=True, priority=100))

    with pytest.raises(SystemRoleImmutableError):
        role_catalog_service.update_role(db_session, role.id, RoleUpdate(priority=1))
    with pytest.raises(SystemRoleImmutableError):
        role_catalog_service.delete_role(db_session, role.id)


def test_update_role_renormalizes_permissions(db_session: Session) -> None:
    role = role_catalog_service.create_role(db_session, RoleCreate(name="Agent", tenant_id="tenant-a"))
    updated = role_catalog_service.update_role(
        db_session,
        role.id,
        RoleUpdate(permissions={"hr": {"leave": ["approve", "read"]}}, color="#ff0000"),
    )

    assert updated.permissions == {"hr": {"leave": ["approve", "read"]}}
    assert updated.color == "#ff0000"


def test_role_in_use_cannot_be_deleted(db_session: Session) -> None:
    entity = entity_tree_service.create_entity(
        db_session, EntityCreate(entity_name="Acme", entity_type="tenant", tenant_id="tenant-a")
    )
    role = role_catalog_service.create_role(db_session, RoleCreate(name="Agent", tenant_id="tenant-a"))
    membership_service.add_membership(db_session, MembershipCreate(user_id="u1", entity_id=entity.id, role_id=role.id))

    with pytest.raises(RoleInUseError):
        role_catalog_service.delete_role(db_session, role.id)

    membership_service.remove_membership(db_session, "u1", entity.id)
    role_catalog_service.delete_role(db_session, role.id)

    with pytest.raises(NotFoundError):
        role_catalog_service.get_role(db_session, role.id)
    assert db_session.scalar(select(Membership.id)) is None
