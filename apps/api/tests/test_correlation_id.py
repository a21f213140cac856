from __future__ import annotations

import uuid
from collections.abc import Generator
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
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
def clear_stubs() -> Generator[None, None, None]:
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
        return AuthUser(sub="user-1", roles=["admin"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_root(client: TestClient, correlation_id: str) -> dict:
    response = client.post(
        "/entities",
        json={"entity_name": "Corr Tenant", "entity_type": "tenant", "tenant_id": "tenant-a", "total_credits": "10"},
        headers={"X-Correlation-Id": correlation_id},
    )
    assert response.status_code == 201
    return response.json()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/entities/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    assert response.json()["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/entities/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.headers.get("x-request-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_malformed_correlation_id_is_replaced(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Correlation-Id": "has spaces and ;"})
    assert response.headers.get("x-correlation-id") != "has spaces and ;"
    assert uuid.UUID(response.headers["x-correlation-id"])


def test_audit_uses_request_correlation_id(client: TestClient) -> None:
    _create_root(client, "corr-audit-1")

    entity_audits = [entry for entry in audit.audit_entries if entry.get("entity_type") == "org.entity"]
    assert entity_audits
    assert entity_audits[-1]["correlation_id"] == "corr-audit-1"


def test_event_envelope_includes_correlation_id(client: TestClient) -> None:
    root = _create_root(client, "corr-event-0")

    response = client.post(
        f"/credits/entities/{root['id']}/allocations",
        json={"application_code": "crm", "amount": str(Decimal("4"))},
        headers={"X-Correlation-Id": "corr-event-1"},
    )
    assert response.status_code == 200

    allocation_events = [item for item in events.published_events if item.get("event_type") == "credits.allocation"]
    assert allocation_events
    assert allocation_events[-1].get("correlation_id") == "corr-event-1"
