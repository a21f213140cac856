from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from orgsuite.context import reset_correlation_id, set_correlation_id
from orgsuite.core.auth import AuthUser, get_current_user
from orgsuite.core.config import get_settings
from orgsuite.core.database import Base, get_db
from orgsuite.logging import CorrelationIdFilter, JsonLogFormatter, apply_logger_levels
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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
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


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    path = f"/entities/{uuid.uuid4()}"
    response = client.get(path, headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "orgsuite.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/entities/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_domain_logs_carry_entity_context(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    root = client.post(
        "/entities",
        json={"entity_name": "Acme", "entity_type": "tenant", "tenant_id": "tenant-a"},
        headers={"X-Correlation-Id": "log-move-1"},
    ).json()
    sales = client.post("/entities", json={"entity_name": "Sales", "entity_type": "organization", "parent_entity_id": root["id"]}).json()
    support = client.post("/entities", json={"entity_name": "Support", "entity_type": "organization", "parent_entity_id": root["id"]}).json()
    team = client.post("/entities", json={"entity_name": "Closers", "entity_type": "team", "parent_entity_id": sales["id"]}).json()

    moved = client.post(
        f"/entities/{team['id']}/move",
        json={"new_parent_id": support["id"]},
        headers={"X-Correlation-Id": "log-move-2"},
    )
    assert moved.status_code == 200

    move_records = [record for record in caplog.records if record.name == "orgsuite.hierarchy" and record.getMessage() == "entity.moved"]
    assert move_records
    assert getattr(move_records[-1], "entity_id", None) == team["id"]
    assert getattr(move_records[-1], "parent_entity_id", None) == support["id"]
    assert getattr(move_records[-1], "correlation_id", None) == "log-move-2"

    bus_records = [record for record in caplog.records if record.name == "orgsuite.lifecycle" and record.getMessage() == "domain_event"]
    assert any(getattr(record, "event_name", None) == "entity.moved" for record in bus_records)


def test_json_formatter_keeps_known_fields_only() -> None:
    token = set_correlation_id("fmt-1")
    try:
        record = logging.getLogger("orgsuite.test").makeRecord(
            "orgsuite.test",
            logging.INFO,
            __file__,
            1,
            "credits.allocation",
            (),
            None,
            extra={"entity_id": "e-1", "amount": "5", "secret": "hidden", "error": "x" * 600},
        )
        CorrelationIdFilter().filter(record)
        payload = json.loads(JsonLogFormatter().format(record))
    finally:
        reset_correlation_id(token)

    assert payload["msg"] == "credits.allocation"
    assert payload["correlation_id"] == "fmt-1"
    assert payload["fields"]["entity_id"] == "e-1"
    assert payload["fields"]["amount"] == "5"
    assert "secret" not in payload["fields"]
    assert len(payload["fields"]["error"]) == 500


def test_request_log_carries_scope_headers(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    entity_id = str(uuid.uuid4())

    response = client.get(
        f"/entities/{entity_id}",
        headers={"X-Tenant-Id": "tenant-a", "X-Entity-Id": entity_id, "X-Correlation-Id": "scope-1"},
    )
    assert response.headers["x-request-id"] == "scope-1"

    records = [record for record in caplog.records if record.name == "orgsuite.request" and record.getMessage() == "http.request"]
    assert getattr(records[-1], "tenant_id", None) == "tenant-a"
    assert getattr(records[-1], "entity_id", None) == entity_id

    caplog.clear()
    client.get(f"/entities/{entity_id}", headers={"X-Tenant-Id": "bad tenant;", "X-Entity-Id": "not-a-uuid"})
    rejected = [record for record in caplog.records if record.name == "orgsuite.request"]
    assert rejected
    assert getattr(rejected[-1], "tenant_id", None) is None
    assert getattr(rejected[-1], "entity_id", None) is None


def test_logger_level_overrides_skip_malformed_entries() -> None:
    names = ("orgsuite.test.quiet", "orgsuite.test.verbose")
    try:
        applied = apply_logger_levels("orgsuite.test.quiet=warning, orgsuite.test.verbose=DEBUG,broken,=INFO,x=LOUD")
        assert applied == {"orgsuite.test.quiet": logging.WARNING, "orgsuite.test.verbose": logging.DEBUG}
        assert logging.getLogger("orgsuite.test.quiet").level == logging.WARNING
        assert logging.getLevelName(logging.getLogger("x").level) == "NOTSET"
    finally:
        for name in names:
            logging.getLogger(name).setLevel(logging.NOTSET)
