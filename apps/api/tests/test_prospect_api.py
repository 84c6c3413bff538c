from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from gestionale import audit, events
from gestionale.core.config import get_settings
from gestionale.core.database import Base, get_db
from gestionale.crm.api import get_current_user
from gestionale.crm.models import CRMLead, CRMOpportunity
from gestionale.crm.service import ActorUser
from gestionale.main import app
from gestionale.middleware.rate_limit import reset_rate_limiter


ALL_PERMISSIONS = {
    "crm.persons.create",
    "crm.organizations.create",
    "crm.affiliations.create",
    "crm.opportunities.create",
    "crm.opportunities.read",
    "crm.opportunities.update",
    "crm.opportunities.delete",
}


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


def _seed_beta(client: TestClient) -> tuple[dict, dict]:
    organization = client.post("/api/crm/organizations", json={"legal_name": "Beta SpA"}).json()
    person = client.post("/api/crm/persons", json={"full_name": "Giulia Verdi"}).json()
    affiliation = client.post(
        "/api/crm/affiliations",
        json={"person_id": person["id"], "organization_id": organization["id"], "role": "Sales Manager"},
    )
    assert affiliation.status_code == 201
    return organization, person


def test_create_organization_prospect_with_referent(client: TestClient, db_session: Session) -> None:
    organization, person = _seed_beta(client)

    response = client.post(
        "/api/crm/opportunities",
        json={
            "entity_type": "organization",
            "organization_id": organization["id"],
            "referent_id": person["id"],
            "name": "",
            "expected_revenue": 12000,
        },
    )
    assert response.status_code == 201
    body = response.json()
    assert body["notice"]["message"] == "Prospect created"
    opportunity = body["opportunity"]
    assert opportunity["name"] == "Beta SpA"
    assert opportunity["stage"] == "discovery"
    assert opportunity["probability"] == 50
    assert opportunity["source"] == "manual"
    assert opportunity["lead_id"] is None
    assert opportunity["organization_id"] == organization["id"]
    assert opportunity["person_id"] is None
    assert opportunity["referent_id"] == person["id"]
    assert opportunity["referent_role"] == "Sales Manager"
    assert opportunity["expected_revenue"] == 12000.0

    assert db_session.scalar(select(func.count()).select_from(CRMLead)) == 0

    detail = client.get(f"/api/crm/opportunities/{opportunity['id']}")
    assert detail.status_code == 200
    assert detail.json()["opportunity"]["referent_role"] == "Sales Manager"
    assert detail.json()["quote_summary"] == {"quote_count": 0, "accepted_count": 0, "total_value": 0.0}


def test_create_person_prospect_uses_person_name(client: TestClient) -> None:
    person = client.post("/api/crm/persons", json={"full_name": "Mario Rossi"}).json()

    response = client.post("/api/crm/opportunities", json={"entity_type": "person", "person_id": person["id"]})
    assert response.status_code == 201
    opportunity = response.json()["opportunity"]
    assert opportunity["name"] == "Mario Rossi"
    assert opportunity["person_id"] == person["id"]
    assert opportunity["referent_id"] is None
    assert opportunity["referent_role"] is None


def test_default_probability_comes_from_settings(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    person = client.post("/api/crm/persons", json={"full_name": "Mario Rossi"}).json()
    monkeypatch.setenv("DEFAULT_OPPORTUNITY_PROBABILITY", "30")
    get_settings.cache_clear()

    response = client.post("/api/crm/opportunities", json={"entity_type": "person", "person_id": person["id"]})
    assert response.json()["opportunity"]["probability"] == 30


def test_organization_prospect_requires_referent(client: TestClient, db_session: Session) -> None:
    organization, _ = _seed_beta(client)

    response = client.post(
        "/api/crm/opportunities",
        json={"entity_type": "organization", "organization_id": organization["id"]},
    )
    assert response.status_code == 422
    assert response.json()["kind"] == "validation_error"
    assert db_session.scalar(select(func.count()).select_from(CRMOpportunity)) == 0


def test_referent_must_be_affiliated(client: TestClient, db_session: Session) -> None:
    organization, _ = _seed_beta(client)
    stranger = client.post("/api/crm/persons", json={"full_name": "Piero Neri"}).json()

    response = client.post(
        "/api/crm/opportunities",
        json={"entity_type": "organization", "organization_id": organization["id"], "referent_id": stranger["id"]},
    )
    assert response.status_code == 422
    assert response.json()["message"] == "referent is not affiliated with the organization"
    assert db_session.scalar(select(func.count()).select_from(CRMOpportunity)) == 0


def test_person_prospect_requires_selection(client: TestClient) -> None:
    response = client.post("/api/crm/opportunities", json={"entity_type": "person"})
    assert response.status_code == 422

    missing = client.post("/api/crm/opportunities", json={"entity_type": "person", "person_id": str(uuid.uuid4())})
    assert missing.status_code == 404


def test_update_and_delete_opportunity(client: TestClient) -> None:
    person = client.post("/api/crm/persons", json={"full_name": "Mario Rossi"}).json()
    opportunity = client.post(
        "/api/crm/opportunities", json={"entity_type": "person", "person_id": person["id"]}
    ).json()["opportunity"]

    updated = client.patch(
        f"/api/crm/opportunities/{opportunity['id']}",
        json={"row_version": opportunity["row_version"], "probability": 70, "name": None},
    )
    assert updated.status_code == 200
    assert updated.json()["opportunity"]["probability"] == 70
    assert updated.json()["opportunity"]["name"] == "Mario Rossi"

    stale = client.patch(
        f"/api/crm/opportunities/{opportunity['id']}",
        json={"row_version": opportunity["row_version"], "probability": 10},
    )
    assert stale.status_code == 409

    deleted = client.delete(f"/api/crm/opportunities/{opportunity['id']}")
    assert deleted.status_code == 204
    assert client.get(f"/api/crm/opportunities/{opportunity['id']}").status_code == 404
    assert client.get("/api/crm/opportunities").json() == []
