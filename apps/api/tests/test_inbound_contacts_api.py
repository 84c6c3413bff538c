from __future__ import annotations

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
from gestionale.crm.models import CRMInboundContact, CRMOrganization, CRMPerson
from gestionale.crm.service import ActorUser
from gestionale.main import app
from gestionale.middleware.rate_limit import reset_rate_limiter


ALL_PERMISSIONS = {
    "crm.inbound_contacts.create",
    "crm.inbound_contacts.read",
    "crm.inbound_contacts.convert",
    "crm.organizations.read",
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


def _create_contact(client: TestClient, **overrides: object) -> dict:
    payload = {
        "full_name": "Paolo Neri",
        "company": "Gamma Srl",
        "role": "CTO",
        "email": "paolo@gamma.example.com",
        "phone": "+39 02 9876543",
        "services": ["website", "hosting"],
        "budget": 8000,
        "timeline": "Q3",
        "message": "We need a new site",
        "form_type": "quote_request",
    }
    payload.update(overrides)
    response = client.post("/api/crm/inbound-contacts", json=payload)
    assert response.status_code == 201
    return response.json()


def test_list_inbound_contacts_by_status(client: TestClient) -> None:
    contact = _create_contact(client)
    assert contact["status"] == "new"

    listed = client.get("/api/crm/inbound-contacts", params={"status": "new"})
    assert [item["id"] for item in listed.json()] == [contact["id"]]
    assert client.get("/api/crm/inbound-contacts", params={"status": "converted"}).json() == []


def test_convert_to_organization_creates_referent(client: TestClient) -> None:
    contact = _create_contact(client)

    response = client.post(f"/api/crm/inbound-contacts/{contact['id']}/convert-organization", json={})
    assert response.status_code == 201
    body = response.json()
    assert body["contact"]["status"] == "converted"
    assert body["organization"]["legal_name"] == "Gamma Srl"
    assert body["organization"]["emails"] == ["paolo@gamma.example.com"]
    assert "Services of interest: website, hosting" in body["organization"]["notes"]
    assert body["person"]["full_name"] == "Paolo Neri"
    assert body["affiliation"]["role"] == "CTO"
    assert body["notice"]["message"] == "Organization Gamma Srl created with referent Paolo Neri"

    affiliations = client.get(f"/api/crm/organizations/{body['organization']['id']}/affiliations").json()
    assert [(item["full_name"], item["role"]) for item in affiliations["items"]] == [("Paolo Neri", "CTO")]


def test_convert_to_organization_without_role_skips_person(client: TestClient, db_session: Session) -> None:
    contact = _create_contact(client, role=None)

    response = client.post(
        f"/api/crm/inbound-contacts/{contact['id']}/convert-organization",
        json={"legal_name": "Gamma Holding Srl", "vat_number": "IT22222222222"},
    )
    assert response.status_code == 201
    body = response.json()
    assert body["organization"]["legal_name"] == "Gamma Holding Srl"
    assert body["person"] is None
    assert body["affiliation"] is None
    assert db_session.scalar(select(func.count()).select_from(CRMPerson)) == 0


def test_converted_contact_cannot_be_converted_again(client: TestClient, db_session: Session) -> None:
    contact = _create_contact(client)
    assert client.post(f"/api/crm/inbound-contacts/{contact['id']}/convert-organization", json={}).status_code == 201

    again = client.post(f"/api/crm/inbound-contacts/{contact['id']}/convert-person", json={})
    assert again.status_code == 409
    assert again.json()["message"] == "contact request already converted"
    assert db_session.scalar(select(func.count()).select_from(CRMOrganization)) == 1


def test_convert_to_person_with_organization(client: TestClient) -> None:
    contact = _create_contact(client, company=None, role=None)

    response = client.post(
        f"/api/crm/inbound-contacts/{contact['id']}/convert-person",
        json={"first_name": "Paolo", "last_name": "Neri", "organization_name": "Neri Consulting", "role": "Owner"},
    )
    assert response.status_code == 201
    body = response.json()
    assert body["person"]["full_name"] == "Paolo Neri"
    assert body["person"]["primary_phone"] == "+39 02 9876543"
    assert body["organization"]["legal_name"] == "Neri Consulting"
    assert body["affiliation"]["role"] == "Owner"
    assert body["notice"]["message"] == "Person Paolo Neri created"
    assert events.published_events[-1]["event_type"] == "crm.inbound_contact.converted"


def test_convert_to_person_needs_role_for_new_organization(client: TestClient, db_session: Session) -> None:
    contact = _create_contact(client)

    response = client.post(
        f"/api/crm/inbound-contacts/{contact['id']}/convert-person",
        json={"organization_name": "Neri Consulting"},
    )
    assert response.status_code == 422
    assert response.json()["message"] == "role is required when creating the organization"
    assert db_session.scalar(select(func.count()).select_from(CRMPerson)) == 0


def test_contact_request_with_short_phone_is_rejected(client: TestClient, db_session: Session) -> None:
    response = client.post("/api/crm/inbound-contacts", json={"full_name": "Anna Bianchi", "phone": "12"})
    assert response.status_code == 422
    assert response.json()["kind"] == "validation_error"
    assert db_session.scalar(select(func.count()).select_from(CRMInboundContact)) == 0


def test_stored_contact_with_unusable_phone_converts_to_validation_error(
    client: TestClient, db_session: Session
) -> None:
    contact = CRMInboundContact(full_name="Anna Bianchi", company="Delta Srl", role="Admin", phone="12", services=[])
    db_session.add(contact)
    db_session.commit()

    response = client.post(f"/api/crm/inbound-contacts/{contact.id}/convert-organization", json={})
    assert response.status_code == 422
    body = response.json()
    assert body["kind"] == "validation_error"
    assert body["message"].startswith("invalid contact details")
    assert db_session.scalar(select(func.count()).select_from(CRMOrganization)) == 0
    assert db_session.scalar(select(func.count()).select_from(CRMPerson)) == 0

    db_session.refresh(contact)
    assert contact.status == "new"
