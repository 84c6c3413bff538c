from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta

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
from gestionale.crm.models import CRMLead
from gestionale.crm.service import ActorUser
from gestionale.main import app
from gestionale.middleware.rate_limit import reset_rate_limiter


ALL_PERMISSIONS = {
    "crm.leads.create",
    "crm.leads.read",
    "crm.leads.update",
    "crm.leads.intake",
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


def _create_lead(client: TestClient, **overrides: object) -> dict:
    payload = {
        "full_name": "Mario Rossi",
        "email": "mario.rossi@example.com",
        "company": "Acme Srl",
        "budget": 5000,
        "services_of_interest": ["website", "seo"],
        "source": "website",
    }
    payload.update(overrides)
    response = client.post("/api/crm/leads", json=payload)
    assert response.status_code == 201
    return response.json()


def _parse(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00")).replace(tzinfo=None)


def test_create_get_and_list_leads(client: TestClient) -> None:
    created = _create_lead(client)
    assert created["status"] == "new"
    assert created["budget"] == 5000.0
    assert created["created_by"] == "user-1"
    assert created["row_version"] == 1

    _create_lead(client, full_name="Anna Blu", email="anna@example.com", company=None, source="referral")

    fetched = client.get(f"/api/crm/leads/{created['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["services_of_interest"] == ["website", "seo"]

    by_source = client.get("/api/crm/leads", params={"source": "referral"})
    assert [item["full_name"] for item in by_source.json()] == ["Anna Blu"]

    by_text = client.get("/api/crm/leads", params={"q": "acme"})
    assert [item["id"] for item in by_text.json()] == [created["id"]]

    assert events.published_events[0]["event_type"] == "crm.lead.created"


def test_create_lead_cannot_start_converted(client: TestClient, db_session: Session) -> None:
    response = client.post("/api/crm/leads", json={"full_name": "Mario Rossi", "status": "converted"})
    assert response.status_code == 422
    assert response.json()["message"] == "a lead can only become converted through conversion"
    assert db_session.scalar(select(func.count()).select_from(CRMLead)) == 0


def test_create_lead_with_unknown_reference_is_not_found(client: TestClient) -> None:
    response = client.post("/api/crm/leads", json={"full_name": "Mario Rossi", "organization_id": str(uuid.uuid4())})
    assert response.status_code == 404
    assert response.json()["message"] == "organization not found"


def test_update_lead_checks_row_version(client: TestClient) -> None:
    created = _create_lead(client)

    updated = client.patch(
        f"/api/crm/leads/{created['id']}",
        json={"row_version": 1, "status": "qualified", "notes": "Call back next week"},
    )
    assert updated.status_code == 200
    assert updated.json()["status"] == "qualified"
    assert updated.json()["row_version"] == 2

    stale = client.patch(f"/api/crm/leads/{created['id']}", json={"row_version": 1, "notes": "stale"})
    assert stale.status_code == 409
    assert stale.json()["message"] == "row_version conflict"

    converted = client.patch(f"/api/crm/leads/{created['id']}", json={"row_version": 2, "status": "converted"})
    assert converted.status_code == 422


def test_unknown_lead_is_not_found(client: TestClient) -> None:
    response = client.get(f"/api/crm/leads/{uuid.uuid4()}")
    assert response.status_code == 404
    assert response.json()["code"] == "crm_lead_get_failed"


def test_contact_activity_updates_follow_up_fields(client: TestClient) -> None:
    created = _create_lead(client)

    response = client.post(
        f"/api/crm/leads/{created['id']}/activities",
        json={"activity_type": "call", "description": "Intro call", "update_status": "contacted", "next_contact_days": 3},
    )
    assert response.status_code == 201
    assert response.json()["activity_type"] == "call"

    lead = client.get(f"/api/crm/leads/{created['id']}").json()
    assert lead["status"] == "contacted"
    assert lead["last_contact_method"] == "call"
    gap = _parse(lead["next_contact_at"]) - _parse(lead["last_contact_at"])
    assert abs(gap - timedelta(days=3)) < timedelta(seconds=1)


def test_note_activity_does_not_count_as_contact(client: TestClient) -> None:
    created = _create_lead(client)

    response = client.post(
        f"/api/crm/leads/{created['id']}/activities",
        json={"activity_type": "note", "description": "Prefers email"},
    )
    assert response.status_code == 201

    lead = client.get(f"/api/crm/leads/{created['id']}").json()
    assert lead["last_contact_at"] is None
    assert lead["next_contact_at"] is None
    assert lead["row_version"] == 1

    activities = client.get(f"/api/crm/leads/{created['id']}/activities").json()
    assert [item["activity_type"] for item in activities] == ["note"]


def test_activity_cannot_convert_lead(client: TestClient) -> None:
    created = _create_lead(client)

    response = client.post(
        f"/api/crm/leads/{created['id']}/activities",
        json={"activity_type": "meeting", "description": "Signed", "update_status": "converted"},
    )
    assert response.status_code == 422
    assert client.get(f"/api/crm/leads/{created['id']}").json()["status"] == "new"


def test_intake_creates_lead_with_attribution(client: TestClient) -> None:
    response = client.post(
        "/api/crm/leads/intake",
        json={
            "full_name": "Sara Gialli",
            "email": "sara@example.com",
            "company": "Delta Srl",
            "utm_source": "Google Ads",
            "utm_campaign": "spring-2026",
            "landing_page": "/servizi",
        },
    )
    assert response.status_code == 200
    body = response.json()
    assert body["created"] is True
    assert body["notice"]["message"] == "Lead registered"
    lead = body["lead"]
    assert lead["source"] == "google-ads"
    assert lead["campaign"] == "spring-2026"
    assert lead["attribution_metadata"]["landing_page"] == "/servizi"

    activities = client.get(f"/api/crm/leads/{lead['id']}/activities").json()
    assert [item["activity_type"] for item in activities] == ["intake"]


def test_intake_prefers_marketing_source_and_defaults_to_other(client: TestClient) -> None:
    explicit = client.post(
        "/api/crm/leads/intake",
        json={"full_name": "A", "email": "a@example.com", "marketing_source": "Fiera Milano", "utm_source": "google"},
    )
    assert explicit.json()["lead"]["source"] == "fiera-milano"

    fallback = client.post("/api/crm/leads/intake", json={"full_name": "B", "email": "b@example.com"})
    assert fallback.json()["lead"]["source"] == "other"


def test_intake_resubmission_updates_existing_lead(client: TestClient, db_session: Session) -> None:
    first = client.post(
        "/api/crm/leads/intake",
        json={"full_name": "Sara Gialli", "email": "sara@example.com", "utm_source": "newsletter"},
    ).json()

    second = client.post(
        "/api/crm/leads/intake",
        json={"full_name": "Sara Gialli", "email": "sara@example.com", "phone": "+39 320 1111111"},
    )
    assert second.status_code == 200
    body = second.json()
    assert body["created"] is False
    assert body["notice"]["message"] == "Existing lead updated"
    assert body["lead"]["id"] == first["lead"]["id"]
    assert body["lead"]["phone"] == "+39 320 1111111"
    assert db_session.scalar(select(func.count()).select_from(CRMLead)) == 1

    activities = client.get(f"/api/crm/leads/{first['lead']['id']}/activities").json()
    assert sorted(item["activity_type"] for item in activities) == ["intake", "resubmitted"]
    assert events.published_events[-1]["event_type"] == "crm.lead.resubmitted"


@pytest.mark.parametrize(
    ("path", "payload"),
    [
        ("/api/crm/leads", {"full_name": "   "}),
        ("/api/crm/leads", {"full_name": "Mario Rossi", "phone": "12"}),
        ("/api/crm/leads/intake", {"full_name": "   ", "email": "blank@example.com"}),
        ("/api/crm/leads/intake", {"full_name": "Mario Rossi", "email": "mario@example.com", "phone": "1"}),
    ],
)
def test_blank_names_and_short_phones_are_rejected(
    client: TestClient, db_session: Session, path: str, payload: dict[str, str]
) -> None:
    response = client.post(path, json=payload)
    assert response.status_code == 422
    assert response.json()["kind"] == "validation_error"
    assert db_session.scalar(select(func.count()).select_from(CRMLead)) == 0


def test_lead_name_is_stored_trimmed(client: TestClient) -> None:
    lead = _create_lead(client, full_name="  Giulia Verdi  ")
    assert lead["full_name"] == "Giulia Verdi"
