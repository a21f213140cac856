from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from orgsuite import audit, events
from orgsuite.core.auth import AuthUser, get_current_user
from orgsuite.core.config import get_settings
from orgsuite.core.database import Base, get_db
from orgsuite.main import app


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
def reset_state() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return AuthUser(sub="admin-user", roles=["admin"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture()
def setup(client: TestClient) -> dict[str, dict]:
    root = client.post("/entities", json={"entity_name": "Acme", "entity_type": "tenant", "tenant_id": "tenant-a"}).json()
    sales = client.post(
        "/entities", json={"entity_name": "Sales", "entity_type": "organization", "parent_entity_id": root["id"]}
    ).json()
    role = client.post(
        "/roles",
        json={
            "name": "Entity Manager",
            "tenant_id": "tenant-a",
            "priority": 20,
            "permissions": ["system.entities.read", "system.entities.create", "crm.leads.read"],
            "restrictions": {"max_leads": 25},
        },
    )
    assert role.status_code == 201, role.text
    return {"root": root, "sales": sales, "role": role.json()}


def _as(user: AuthUser) -> None:
    app.dependency_overrides[get_current_user] = lambda: user


def test_role_crud_and_conflicts(client: TestClient, setup: dict[str, dict]) -> None:
    role = setup["role"]
    assert role["permissions"] == {"crm": {"leads": ["read"]}, "system": {"entities": ["create", "read"]}}

    duplicate = client.post("/roles", json={"name": "Entity Manager", "tenant_id": "tenant-a"})
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "conflict"

    updated = client.patch(f"/roles/{role['id']}", json={"priority": 30})
    assert updated.status_code == 200
    assert updated.json()["priority"] == 30

    listed = client.get("/roles", params={"tenant_id": "tenant-a"})
    assert [item["name"] for item in listed.json()] == ["Entity Manager"]

    client.post("/memberships", json={"user_id": "u1", "entity_id": setup["sales"]["id"], "role_id": role["id"]})
    in_use = client.delete(f"/roles/{role['id']}")
    assert in_use.status_code == 409
    assert in_use.json()["code"] == "role_in_use"


def test_membership_grants_route_access(client: TestClient, setup: dict[str, dict]) -> None:
    created = client.post(
        "/memberships", json={"user_id": "u1", "entity_id": setup["sales"]["id"], "role_id": setup["role"]["id"]}
    )
    assert created.status_code == 201
    assert created.json()["is_primary"] is True

    _as(AuthUser(sub="u1", roles=["user"]))
    assert client.get(f"/entities/{setup['root']['id']}").status_code == 200
    assert client.post(f"/entities/{setup['root']['id']}/deactivate").status_code == 403

    own = client.get("/users/u1/effective-permissions")
    assert own.status_code == 200
    body = own.json()
    assert body["primary_entity_id"] == setup["sales"]["id"]
    assert body["restrictions"] == {"max_leads": 25}
    assert body["summary"]["total"] == 3

    other = client.get("/users/u2/effective-permissions")
    assert other.status_code == 403


def test_permission_check_and_primary_entity(client: TestClient, setup: dict[str, dict]) -> None:
    client.post("/memberships", json={"user_id": "u1", "entity_id": setup["sales"]["id"], "role_id": setup["role"]["id"]})
    client.post("/memberships", json={"user_id": "u1", "entity_id": setup["root"]["id"]})

    check = client.get(
        "/users/u1/permission-check", params={"application": "crm", "module": "leads", "action": "read"}
    )
    assert check.json() == {"user_id": "u1", "permission": "crm.leads.read", "allowed": True}

    primary = client.get("/users/u1/primary-entity")
    assert primary.json()["id"] == setup["sales"]["id"]

    switched = client.put("/users/u1/primary-entity", json={"entity_id": setup["root"]["id"]})
    assert switched.status_code == 200
    assert client.get("/users/u1/primary-entity").json()["id"] == setup["root"]["id"]

    assert client.delete(f"/users/u1/memberships/{setup['root']['id']}").status_code == 204
    assert client.get("/users/u1/primary-entity").json()["id"] == setup["sales"]["id"]


def test_missing_primary_is_404(client: TestClient) -> None:
    response = client.get("/users/ghost/primary-entity")
    assert response.status_code == 404
    assert response.json()["code"] == "no_primary_entity"


def test_deactivate_user_requires_admin(client: TestClient, setup: dict[str, dict]) -> None:
    client.post("/memberships", json={"user_id": "u1", "entity_id": setup["sales"]["id"]})

    removed = client.post("/users/u1/deactivate")
    assert removed.json() == {"removed_memberships": 1}

    _as(AuthUser(sub="u2", roles=["user"], permissions={"system.memberships.read"}))
    denied = client.post("/users/u1/deactivate")
    assert denied.status_code == 403


def test_bearer_token_permissions_are_honoured(client: TestClient, setup: dict[str, dict]) -> None:
    app.dependency_overrides.pop(get_current_user)
    settings = get_settings()
    token = jwt.encode(
        {
            "sub": "token-user",
            "roles": ["user"],
            "tenant_id": "tenant-a",
            "permissions": [{"key": "system.entities.read", "isGranted": True}],
        },
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )

    me = client.get("/me", headers={"Authorization": f"Bearer {token}"})
    assert me.json() == {
        "sub": "token-user",
        "roles": ["user"],
        "permissions": ["system.entities.read"],
        "tenant_id": "tenant-a",
    }

    allowed = client.get(f"/entities/{setup['root']['id']}", headers={"Authorization": f"Bearer {token}"})
    assert allowed.status_code == 200

    invalid = client.get(f"/entities/{setup['root']['id']}", headers={"Authorization": "Bearer not-a-jwt"})
    assert invalid.status_code == 401

    anonymous = client.get(f"/entities/{setup['root']['id']}")
    assert anonymous.status_code == 403
