from __future__ import annotations

import os
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from gestionale import audit, events
from gestionale.core.config import get_settings
from gestionale.core.database import Base, get_db
from gestionale.crm.api import get_current_user
from gestionale.crm.repositories import CrmRepository
from gestionale.crm.service import ActorUser
from gestionale.main import app
from gestionale.middleware.rate_limit import reset_rate_limiter
from gestionale.otel import setup_inmemory_otel


ALL_PERMISSIONS = {
    "crm.organizations.create",
    "crm.affiliations.create",
    "crm.leads.create",
    "crm.leads.convert",
}


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("gestionale-api")
    exporter.clear()
    return exporter


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


def _pipeline_spans(exporter: InMemorySpanExporter, name: str) -> list:
    return [span for span in exporter.get_finished_spans() if span.name == name]


def test_lead_conversion_emits_pipeline_span(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    lead = client.post("/api/crm/leads", json={"full_name": "Mario Rossi"}).json()

    response = client.post(
        f"/api/crm/leads/{lead['id']}/convert",
        json={"confirm": True},
        headers={"X-Correlation-Id": "corr-span"},
    )
    assert response.status_code == 200

    spans = _pipeline_spans(span_exporter, "crm.convert_lead")
    assert len(spans) == 1
    attributes = dict(spans[0].attributes or {})
    assert attributes["correlation_id"] == "corr-span"
    assert attributes["entity_id"] == lead["id"]
    assert attributes["actor_user_id"] == "user-1"
    assert spans[0].status.status_code != StatusCode.ERROR


def test_failed_pipeline_marks_span_as_error(
    client: TestClient,
    span_exporter: InMemorySpanExporter,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    organization = client.post("/api/crm/organizations", json={"legal_name": "Acme Srl"}).json()

    def failing_add_affiliation(self: CrmRepository, affiliation: object) -> object:
        raise SQLAlchemyError("simulated")

    monkeypatch.setattr(CrmRepository, "add_affiliation", failing_add_affiliation)

    response = client.post(
        f"/api/crm/organizations/{organization['id']}/referents",
        json={"first_name": "Laura", "last_name": "Bianchi", "email": "laura@example.com", "role": "CFO"},
    )
    assert response.status_code == 500

    spans = _pipeline_spans(span_exporter, "crm.quick_create_referent")
    assert len(spans) == 1
    assert spans[0].status.status_code == StatusCode.ERROR
