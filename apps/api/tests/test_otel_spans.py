from __future__ import annotations

import os
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from orgsuite.core.auth import AuthUser, get_current_user
from orgsuite.core.config import get_settings
from orgsuite.core.database import Base, get_db
from orgsuite.main import app
from orgsuite.otel import setup_inmemory_otel


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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


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


def _create(client: TestClient, body: dict) -> dict:
    response = client.post("/entities", json=body)
    assert response.status_code == 201
    return response.json()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post(
        "/entities",
        json={"entity_name": "OTel Tenant", "entity_type": "tenant", "tenant_id": "tenant-o"},
        headers={"X-Correlation-Id": "otel-corr-1", "X-Tenant-Id": "tenant-o"},
    )
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)
    assert any(span.attributes.get("tenant_id") == "tenant-o" for span in spans)


def test_domain_spans_carry_identifiers(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    root = _create(client, {"entity_name": "OTel Tenant", "entity_type": "tenant", "tenant_id": "tenant-o", "total_credits": "20"})
    team = _create(client, {"entity_name": "Team", "entity_type": "team", "parent_entity_id": root["id"]})

    assert client.get(f"/entities/{root['id']}/subtree").status_code == 200
    assert client.post(f"/credits/entities/{root['id']}/allocations", json={"application_code": "hr", "amount": "2"}).status_code == 200
    client.post("/memberships", json={"user_id": "span-user", "entity_id": team["id"]})
    assert client.get("/users/span-user/effective-permissions").status_code == 200

    spans = span_exporter.get_finished_spans()

    subtree_spans = [span for span in spans if span.name == "hierarchy.get_subtree"]
    assert subtree_spans
    assert subtree_spans[-1].attributes.get("entity_id") == root["id"]
    assert subtree_spans[-1].attributes.get("node_count") == 2

    allocate_spans = [span for span in spans if span.name == "credits.allocate"]
    assert allocate_spans
    assert allocate_spans[-1].attributes.get("application") == "hr"

    resolution_spans = [span for span in spans if span.name == "authz.effective_permissions"]
    assert resolution_spans
    assert resolution_spans[-1].attributes.get("membership_count") == 1
