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


ALL_PERMISSIONS = {
    "crm.persons.create",
    "crm.persons.read",
    "crm.organizations.create",
    "crm.organizations.read",
    "crm.affiliations.create",
    "crm.selector.read",
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


def test_create_person_from_first_and_last_name(client: TestClient) -> None:
    response = client.post(
        "/api/crm/persons",
        json={
            "first_name": "Mario",
            "last_name": "Rossi",
            "tax_code": "RSSMRA80A01H501U",
            "contacts": [
                {"kind": "mobile", "value": "+39 333 1234567"},
                {"kind": "email", "value": "mario.rossi@example.com"},
            ],
        },
    )
    assert response.status_code == 201
    body = response.json()
    assert body["full_name"] == "Mario Rossi"
    assert body["primary_email"] == "mario.rossi@example.com"
    assert body["primary_phone"] == "+39 333 1234567"
    assert body["row_version"] == 1

    fetched = client.get(f"/api/crm/persons/{body['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["tax_code"] == "RSSMRA80A01H501U"

    created = [item for item in events.published_events if item["event_type"] == "crm.person.created"]
    assert created and created[-1]["payload"]["person_id"] == body["id"]


def test_create_person_requires_a_name(client: TestClient) -> None:
    response = client.post("/api/crm/persons", json={"first_name": "  ", "contacts": []})
    assert response.status_code == 422
    assert response.json()["kind"] == "validation_error"


def test_invalid_contact_method_is_rejected(client: TestClient) -> None:
    response = client.post(
        "/api/crm/persons",
        json={"full_name": "Anna Blu", "contacts": [{"kind": "email", "value": "not-an-email"}]},
    )
    assert response.status_code == 422

    unknown_kind = client.post(
        "/api/crm/persons",
        json={"full_name": "Anna Blu", "contacts": [{"kind": "telex", "value": "12345"}]},
    )
    assert unknown_kind.status_code == 422


def test_create_and_list_organizations(client: TestClient) -> None:
    first = client.post(
        "/api/crm/organizations",
        json={
            "legal_name": "Beta SpA",
            "vat_number": "IT01234567890",
            "province": "MI",
            "org_type": "spa",
            "contacts": [
                {"kind": "pec", "value": "beta@pec.example.com"},
                {"kind": "phone", "value": "02 1234567"},
            ],
        },
    )
    assert first.status_code == 201
    body = first.json()
    assert body["emails"] == ["beta@pec.example.com"]
    assert body["phones"] == ["02 1234567"]
    assert body["is_client"] is False

    second = client.post("/api/crm/organizations", json={"legal_name": "Acme Srl"})
    assert second.status_code == 201

    listed = client.get("/api/crm/organizations")
    assert listed.status_code == 200
    assert [item["legal_name"] for item in listed.json()] == ["Acme Srl", "Beta SpA"]


def test_get_unknown_organization_returns_not_found_envelope(client: TestClient) -> None:
    response = client.get(f"/api/crm/organizations/{uuid.uuid4()}")
    assert response.status_code == 404
    body = response.json()
    assert body["code"] == "crm_organization_get_failed"
    assert body["kind"] == "backend_error"
    assert body["message"] == "organization not found"


def test_create_affiliation_links_person_and_organization(client: TestClient) -> None:
    person = client.post("/api/crm/persons", json={"full_name": "Giulia Verdi"}).json()
    organization = client.post("/api/crm/organizations", json={"legal_name": "Beta SpA"}).json()

    response = client.post(
        "/api/crm/affiliations",
        json={"person_id": person["id"], "organization_id": organization["id"], "role": " Sales Manager "},
    )
    assert response.status_code == 201
    assert response.json()["role"] == "Sales Manager"

    missing = client.post(
        "/api/crm/affiliations",
        json={"person_id": str(uuid.uuid4()), "organization_id": organization["id"], "role": "CEO"},
    )
    assert missing.status_code == 404


def test_missing_permission_is_forbidden(client: TestClient) -> None:
    app.dependency_overrides[get_current_user] = lambda: ActorUser(user_id="viewer", permissions={"crm.persons.read"})
    response = client.post("/api/crm/persons", json={"full_name": "Nope"})
    assert response.status_code == 403
    assert response.json()["message"] == "Missing permission: crm.persons.create"
