from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from gestionale import audit, events
from gestionale.core.config import get_settings
from gestionale.core.database import Base, get_db
from gestionale.crm.api import get_current_user
from gestionale.crm.service import ActorUser
from gestionale.main import app
from gestionale.middleware.rate_limit import reset_rate_limiter


ALL_PERMISSIONS = {"crm.leads.create", "crm.leads.read", "crm.leads.convert"}


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
def clear_stubs(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            permissions=ALL_PERMISSIONS,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_correlation_id_is_echoed_on_responses(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Correlation-Id": "corr-health"})
    assert response.status_code == 200
    assert response.headers["x-correlation-id"] == "corr-health"

    generated = client.get("/health")
    assert generated.headers["x-correlation-id"]


def test_error_envelope_carries_correlation_id(client: TestClient) -> None:
    response = client.get(f"/api/crm/leads/{uuid.uuid4()}", headers={"X-Correlation-Id": "corr-404"})
    assert response.status_code == 404
    body = response.json()
    assert body["correlation_id"] == "corr-404"
    assert body["kind"] == "backend_error"


def test_request_validation_envelope_carries_correlation_id(client: TestClient) -> None:
    response = client.post("/api/crm/leads", json={}, headers={"X-Correlation-Id": "corr-422"})
    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "request_validation_failed"
    assert body["kind"] == "validation_error"
    assert body["correlation_id"] == "corr-422"
    assert body["message"].startswith("full_name")


def test_audit_and_events_share_the_request_correlation_id(client: TestClient) -> None:
    lead = client.post("/api/crm/leads", json={"full_name": "Mario Rossi"}).json()

    response = client.post(
        f"/api/crm/leads/{lead['id']}/convert",
        json={"confirm": True},
        headers={"X-Correlation-Id": "corr-convert"},
    )
    assert response.status_code == 200

    assert audit.audit_entries[-1]["action"] == "convert"
    assert audit.audit_entries[-1]["correlation_id"] == "corr-convert"
    converted = [item for item in events.published_events if item["event_type"] == "crm.lead.converted"]
    assert converted[-1]["correlation_id"] == "corr-convert"

    trail = audit.entries_for("crm.lead", lead["id"])
    assert [entry["action"] for entry in trail] == ["create", "convert"]
    assert trail[-1]["changed_fields"] == ["opportunity_id", "status"]


@pytest.mark.parametrize("raw", ["bad id with spaces", "x" * 200, "semi;colon"])
def test_unsafe_correlation_ids_are_replaced(client: TestClient, raw: str) -> None:
    response = client.get("/health", headers={"X-Correlation-Id": raw})
    assert response.status_code == 200
    echoed = response.headers["x-correlation-id"]
    assert echoed != raw
    assert uuid.UUID(echoed)
