from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timezone

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
from gestionale.crm.stages import OpportunityStage, can_transition, resolve_closed_at
from gestionale.main import app
from gestionale.middleware.rate_limit import reset_rate_limiter


ALL_PERMISSIONS = {
    "crm.persons.create",
    "crm.opportunities.create",
    "crm.opportunities.read",
    "crm.opportunities.change_stage",
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


def _create_opportunity(client: TestClient) -> dict:
    person = client.post("/api/crm/persons", json={"full_name": "Mario Rossi"}).json()
    response = client.post("/api/crm/opportunities", json={"entity_type": "person", "person_id": person["id"]})
    assert response.status_code == 201
    return response.json()["opportunity"]


def _move(client: TestClient, opportunity: dict, stage: str, **kwargs: object):
    return client.post(
        f"/api/crm/opportunities/{opportunity['id']}/stage",
        json={"stage": stage, "row_version": opportunity["row_version"]},
        **kwargs,
    )


def test_open_stages_move_freely(client: TestClient) -> None:
    opportunity = _create_opportunity(client)

    proposal = _move(client, opportunity, "proposal")
    assert proposal.status_code == 200
    assert proposal.json()["notice"]["message"] == "Opportunity status updated"
    assert proposal.json()["opportunity"]["stage"] == "proposal"
    assert proposal.json()["opportunity"]["closed_at"] is None

    back = _move(client, proposal.json()["opportunity"], "discovery")
    assert back.status_code == 200
    assert back.json()["opportunity"]["stage"] == "discovery"

    changed = [item for item in events.published_events if item["event_type"] == "crm.opportunity.stage_changed"]
    assert [item["payload"]["to_stage"] for item in changed] == ["proposal", "discovery"]


def test_closing_sets_closed_at_and_reopening_clears_it(client: TestClient) -> None:
    opportunity = _create_opportunity(client)

    won = _move(client, opportunity, "closed_won")
    assert won.status_code == 200
    assert won.json()["notice"]["message"] == "Opportunity won: client acquired"
    assert won.json()["opportunity"]["closed_at"] is not None
    assert "crm.opportunity.closed_won" in [item["event_type"] for item in events.published_events]

    reopened = _move(client, won.json()["opportunity"], "negotiation")
    assert reopened.status_code == 200
    assert reopened.json()["opportunity"]["stage"] == "negotiation"
    assert reopened.json()["opportunity"]["closed_at"] is None

    lost = _move(client, reopened.json()["opportunity"], "closed_lost")
    assert lost.json()["notice"]["message"] == "Opportunity archived"
    assert lost.json()["opportunity"]["closed_at"] is not None


def test_closed_to_closed_is_rejected(client: TestClient) -> None:
    opportunity = _create_opportunity(client)
    won = _move(client, opportunity, "closed_won").json()["opportunity"]

    response = _move(client, won, "closed_lost")
    assert response.status_code == 422
    assert response.json()["kind"] == "validation_error"
    assert response.json()["message"] == "cannot move opportunity from closed_won to closed_lost"

    detail = client.get(f"/api/crm/opportunities/{opportunity['id']}").json()["opportunity"]
    assert detail["stage"] == "closed_won"


def test_same_stage_is_a_no_op(client: TestClient) -> None:
    opportunity = _create_opportunity(client)

    response = _move(client, opportunity, "discovery")
    assert response.status_code == 200
    assert response.json()["notice"]["message"] == "Opportunity status unchanged"
    assert response.json()["opportunity"]["row_version"] == opportunity["row_version"]
    assert not [item for item in events.published_events if item["event_type"] == "crm.opportunity.stage_changed"]


def test_stale_row_version_conflicts(client: TestClient) -> None:
    opportunity = _create_opportunity(client)
    assert _move(client, opportunity, "proposal").status_code == 200

    stale = _move(client, opportunity, "negotiation")
    assert stale.status_code == 409
    assert stale.json()["message"] == "row_version conflict"

    detail = client.get(f"/api/crm/opportunities/{opportunity['id']}").json()["opportunity"]
    assert detail["stage"] == "proposal"


def test_unknown_stage_is_rejected(client: TestClient) -> None:
    opportunity = _create_opportunity(client)

    response = _move(client, opportunity, "won")
    assert response.status_code == 422
    assert response.json()["code"] == "request_validation_failed"


def test_stage_change_replays_with_idempotency_key(client: TestClient) -> None:
    opportunity = _create_opportunity(client)
    headers = {"Idempotency-Key": "stage-1"}

    first = _move(client, opportunity, "proposal", headers=headers)
    second = _move(client, opportunity, "proposal", headers=headers)
    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json() == first.json()

    mismatch = _move(client, opportunity, "negotiation", headers=headers)
    assert mismatch.status_code == 409
    assert mismatch.json()["message"] == "idempotency key payload mismatch"


def test_transition_rules() -> None:
    assert can_transition(OpportunityStage.DISCOVERY, OpportunityStage.CLOSED_WON)
    assert can_transition(OpportunityStage.CLOSED_LOST, OpportunityStage.PROPOSAL)
    assert not can_transition(OpportunityStage.CLOSED_LOST, OpportunityStage.CLOSED_WON)
    assert not can_transition(OpportunityStage.PROPOSAL, OpportunityStage.PROPOSAL)
    now = datetime.now(timezone.utc)
    assert resolve_closed_at(OpportunityStage.CLOSED_WON, now) == now
    assert resolve_closed_at(OpportunityStage.NEGOTIATION, now) is None
