from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=["admin"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_domain_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    root = client.post(
        "/entities",
        json={"entity_name": "Metrics Tenant", "entity_type": "tenant", "tenant_id": "tenant-m", "total_credits": "10"},
    ).json()
    child = client.post(
        "/entities", json={"entity_name": "Child", "entity_type": "team", "parent_entity_id": root["id"]}
    ).json()

    allocated = client.post(f"/credits/entities/{root['id']}/allocations", json={"application_code": "crm", "amount": "5"})
    assert allocated.status_code == 200
    rejected = client.post(f"/credits/entities/{root['id']}/allocations", json={"application_code": "crm", "amount": "50"})
    assert rejected.status_code == 422

    membership = client.post("/memberships", json={"user_id": "metrics-user", "entity_id": child["id"]})
    assert membership.status_code == 201
    check = client.get(
        "/users/metrics-user/permission-check", params={"application": "crm", "module": "leads", "action": "read"}
    )
    assert check.json()["allowed"] is False

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "credit_mutations_total" in body
    assert "credit_mutation_failures_total" in body
    assert "authz_permission_checks_total" in body

    assert 'path="/health"' in body
    assert 'path="/credits/entities/{id}/allocations"' in body
    assert 'operation="allocation"' in body
    assert 'reason="insufficient_available"' in body
    assert 'result="deny"' in body


def test_metrics_disabled_returns_404(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()
    assert client.get("/metrics").status_code == 404


def test_metrics_require_permission(client: TestClient) -> None:
    app.dependency_overrides[get_current_user] = lambda: AuthUser(sub="viewer", roles=["user"])
    assert client.get("/metrics").status_code == 403

    app.dependency_overrides[get_current_user] = lambda: AuthUser(
        sub="scraper", roles=["user"], permissions={"system.metrics.read"}
    )
    assert client.get("/metrics").status_code == 200
