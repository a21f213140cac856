from __future__ import annotations

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
        return AuthUser(sub="finance-admin", roles=["admin"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture()
def entity(client: TestClient) -> dict:
    response = client.post(
        "/entities",
        json={"entity_name": "Acme", "entity_type": "tenant", "tenant_id": "tenant-a", "total_credits": "100"},
    )
    assert response.status_code == 201
    return response.json()


def test_allocation_lifecycle(client: TestClient, entity: dict) -> None:
    base = f"/credits/entities/{entity['id']}"

    topped = client.post(f"{base}/top-up", json={"amount": "50", "entity_row_version": 1})
    assert topped.status_code == 200
    assert Decimal(topped.json()["total_credits"]) == Decimal("150")

    allocated = client.post(f"{base}/allocations", json={"application_code": "crm", "amount": "120"})
    assert allocated.status_code == 200
    assert Decimal(allocated.json()["allocated_credits"]) == Decimal("120")

    consumed = client.post(f"{base}/consume", json={"application_code": "crm", "amount": "20", "operation_code": "sms"})
    assert Decimal(consumed.json()["used_credits"]) == Decimal("20")

    transferred = client.post(f"{base}/transfer", json={"from_application": "crm", "to_application": "hr", "amount": "30"})
    assert transferred.status_code == 200
    assert Decimal(transferred.json()["target"]["allocated_credits"]) == Decimal("30")

    returned = client.post(f"{base}/deallocate", json={"application_code": "hr", "amount": "30"})
    assert Decimal(returned.json()["allocated_credits"]) == 0

    listing = client.get(f"{base}/allocations").json()
    assert [item["application_code"] for item in listing["allocations"]] == ["crm", "hr"]
    assert Decimal(listing["total_allocated"]) == Decimal("90")

    balance = client.get(base).json()
    assert Decimal(balance["reserved_credits"]) == Decimal("90")
    assert Decimal(balance["available_credits"]) == Decimal("60")

    transactions = client.get(f"{base}/transactions", params={"application_code": "crm"}).json()
    assert {item["transaction_type"] for item in transactions} == {"allocation", "consumption", "transfer_out"}


def test_over_allocation_returns_error_code(client: TestClient, entity: dict) -> None:
    response = client.post(
        f"/credits/entities/{entity['id']}/allocations", json={"application_code": "crm", "amount": "100.5"}
    )
    assert response.status_code == 422
    assert response.json()["code"] == "insufficient_available_credits"

    unsupported = client.post(
        f"/credits/entities/{entity['id']}/allocations", json={"application_code": "payroll", "amount": "1"}
    )
    assert unsupported.json()["code"] == "unsupported_application"


def test_non_positive_amount_fails_validation(client: TestClient, entity: dict) -> None:
    response = client.post(f"/credits/entities/{entity['id']}/top-up", json={"amount": "0"})
    assert response.status_code == 422


def test_stale_entity_version_is_retryable_conflict(client: TestClient, entity: dict) -> None:
    client.post(f"/credits/entities/{entity['id']}/top-up", json={"amount": "1"})

    response = client.post(
        f"/credits/entities/{entity['id']}/allocations",
        json={"application_code": "crm", "amount": "1", "entity_row_version": 1},
    )
    assert response.status_code == 409
    assert response.json()["code"] == "concurrent_modification"
    assert response.json()["retryable"] is True


def test_cascade_check_endpoint(client: TestClient, entity: dict) -> None:
    child = client.post(
        "/entities",
        json={"entity_name": "Sales", "entity_type": "organization", "parent_entity_id": entity["id"]},
    ).json()

    ok = client.post(f"/credits/entities/{child['id']}/cascade-check", json={"amount": "100"})
    assert ok.status_code == 200
    assert ok.json()["limiting_entity_id"] == entity["id"]

    too_much = client.post(f"/credits/entities/{child['id']}/cascade-check", json={"amount": "100.000001"})
    assert too_much.status_code == 422


def test_transfer_to_entity_endpoint(client: TestClient, entity: dict) -> None:
    child = client.post(
        "/entities",
        json={"entity_name": "Sales", "entity_type": "organization", "parent_entity_id": entity["id"]},
    ).json()
    other = client.post("/entities", json={"entity_name": "Globex", "entity_type": "tenant", "tenant_id": "tenant-b"}).json()
    base = f"/credits/entities/{entity['id']}"

    moved = client.post(f"{base}/transfer-to-entity", json={"target_entity_id": child["id"], "amount": "40"})
    assert moved.status_code == 200
    assert Decimal(moved.json()["source"]["total_credits"]) == Decimal("60")
    assert Decimal(moved.json()["target"]["available_credits"]) == Decimal("40")
    assert client.get(f"/credits/entities/{child['id']}/transactions").json()[0]["transaction_type"] == "transfer_in"

    foreign = client.post(f"{base}/transfer-to-entity", json={"target_entity_id": other["id"], "amount": "1"})
    assert foreign.status_code == 422
    assert foreign.json()["code"] == "cross_tenant_transfer"

    short = client.post(f"{base}/transfer-to-entity", json={"target_entity_id": child["id"], "amount": "60.5"})
    assert short.json()["code"] == "insufficient_available_credits"
    assert Decimal(client.get(f"/credits/entities/{child['id']}").json()["total_credits"]) == Decimal("40")


def test_pool_overflow_is_a_validation_error(client: TestClient, entity: dict) -> None:
    overflow = client.post(f"/credits/entities/{entity['id']}/top-up", json={"amount": "999999999999"})
    assert overflow.status_code == 422
    assert overflow.json()["code"] == "credit_limit_exceeded"

    oversized = client.post(
        "/entities",
        json={"entity_name": "Huge", "entity_type": "tenant", "tenant_id": "tenant-h", "total_credits": "10000000000000"},
    )
    assert oversized.status_code == 422
    too_precise = client.post(
        "/entities",
        json={"entity_name": "Tiny", "entity_type": "tenant", "tenant_id": "tenant-t", "total_credits": "0.0000001"},
    )
    assert too_precise.status_code == 422
