from __future__ import annotations

import json
import uuid
from collections.abc import Generator, Iterator, Sequence
from contextlib import contextmanager
from typing import Any

from fastapi import Depends
from sqlalchemy import Select, and_, or_, select
from sqlalchemy.orm import Session

from gestionale.core.database import get_db
from gestionale.crm.models import (
    CRMAffiliation,
    CRMIdempotencyKey,
    CRMInboundContact,
    CRMLead,
    CRMLeadActivity,
    CRMOpportunity,
    CRMOpportunityQuote,
    CRMOrganization,
    CRMPerson,
    CRMQuote,
)
from gestionale.crm.stages import QuoteStatus


class CrmRepository:
    """Data access for the CRM tables over one SQLAlchemy session.

    Writes made inside ``transaction()`` are committed together or rolled back together.
    Helpers only add and flush; they never commit on their own.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        try:
            yield self.session
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def _add(self, row: Any) -> Any:
        self.session.add(row)
        self.session.flush()
        return row

    # Registry

    def add_person(self, person: CRMPerson) -> CRMPerson:
        return self._add(person)

    def get_person(self, person_id: uuid.UUID) -> CRMPerson | None:
        return self.session.get(CRMPerson, person_id)

    def list_persons(self, offset: int, limit: int) -> Sequence[CRMPerson]:
        stmt = select(CRMPerson).order_by(CRMPerson.full_name.asc(), CRMPerson.id.asc())
        return self.session.scalars(stmt.offset(offset).limit(limit)).all()

    def add_organization(self, organization: CRMOrganization) -> CRMOrganization:
        return self._add(organization)

    def get_organization(self, organization_id: uuid.UUID) -> CRMOrganization | None:
        return self.session.get(CRMOrganization, organization_id)

    def list_organizations(self, is_client: bool | None, offset: int, limit: int) -> Sequence[CRMOrganization]:
        stmt: Select[tuple[CRMOrganization]] = select(CRMOrganization)
        if is_client is not None:
            stmt = stmt.where(CRMOrganization.is_client.is_(is_client))
        stmt = stmt.order_by(CRMOrganization.legal_name.asc(), CRMOrganization.id.asc())
        return self.session.scalars(stmt.offset(offset).limit(limit)).all()

    def add_affiliation(self, affiliation: CRMAffiliation) -> CRMAffiliation:
        return self._add(affiliation)

    def get_affiliation(self, affiliation_id: uuid.UUID) -> CRMAffiliation | None:
        return self.session.get(CRMAffiliation, affiliation_id)

    def list_affiliations_for_organization(self, organization_id: uuid.UUID) -> Sequence[tuple[CRMAffiliation, CRMPerson]]:
        stmt = (
            select(CRMAffiliation, CRMPerson)
            .join(CRMPerson, CRMPerson.id == CRMAffiliation.person_id)
            .where(CRMAffiliation.organization_id == organization_id)
            .order_by(CRMAffiliation.created_at.asc(), CRMAffiliation.id.asc())
        )
        return [(row[0], row[1]) for row in self.session.execute(stmt).all()]

    def find_affiliation_roles(self, person_id: uuid.UUID, organization_id: uuid.UUID) -> list[str]:
        stmt = (
            select(CRMAffiliation.role)
            .where(and_(CRMAffiliation.person_id == person_id, CRMAffiliation.organization_id == organization_id))
            .order_by(CRMAffiliation.created_at.asc(), CRMAffiliation.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def has_rows(self, model: type[Any]) -> bool:
        return self.session.scalar(select(model.id).limit(1)) is not None

    # Inbound contacts

    def add_inbound_contact(self, contact: CRMInboundContact) -> CRMInboundContact:
        return self._add(contact)

    def get_inbound_contact(self, contact_id: uuid.UUID) -> CRMInboundContact | None:
        return self.session.get(CRMInboundContact, contact_id)

    def list_inbound_contacts(self, status: str | None, offset: int, limit: int) -> Sequence[CRMInboundContact]:
        stmt: Select[tuple[CRMInboundContact]] = select(CRMInboundContact)
        if status:
            stmt = stmt.where(CRMInboundContact.status == status)
        return self.session.scalars(stmt.order_by(CRMInboundContact.created_at.desc()).offset(offset).limit(limit)).all()

    def set_inbound_contact_status(self, contact: CRMInboundContact, status: str) -> CRMInboundContact:
        contact.status = status
        return self._add(contact)

    # Leads

    def add_lead(self, lead: CRMLead) -> CRMLead:
        return self._add(lead)

    def get_lead(self, lead_id: uuid.UUID) -> CRMLead | None:
        return self.session.get(CRMLead, lead_id)

    def find_lead_by_email(self, email: str) -> CRMLead | None:
        stmt = select(CRMLead).where(CRMLead.email == email).order_by(CRMLead.created_at.asc()).limit(1)
        return self.session.scalar(stmt)

    def list_leads(self, stmt: Select[tuple[CRMLead]], offset: int, limit: int) -> Sequence[CRMLead]:
        return self.session.scalars(stmt.order_by(CRMLead.created_at.desc()).offset(offset).limit(limit)).all()

    def save_lead(self, lead: CRMLead) -> CRMLead:
        return self._add(lead)

    def set_lead_status(self, lead: CRMLead, status: str) -> CRMLead:
        lead.status = status
        lead.row_version = lead.row_version + 1
        return self._add(lead)

    def add_lead_activity(self, activity: CRMLeadActivity) -> CRMLeadActivity:
        return self._add(activity)

    def list_lead_activities(self, lead_id: uuid.UUID) -> Sequence[CRMLeadActivity]:
        stmt = (
            select(CRMLeadActivity)
            .where(CRMLeadActivity.lead_id == lead_id)
            .order_by(CRMLeadActivity.created_at.desc())
        )
        return self.session.scalars(stmt).all()

    # Opportunities

    def add_opportunity(self, opportunity: CRMOpportunity) -> CRMOpportunity:
        return self._add(opportunity)

    def get_opportunity(self, opportunity_id: uuid.UUID) -> CRMOpportunity | None:
        stmt = select(CRMOpportunity).where(
            and_(CRMOpportunity.id == opportunity_id, CRMOpportunity.deleted_at.is_(None))
        )
        return self.session.scalar(stmt)

    def list_opportunities(self, stmt: Select[tuple[CRMOpportunity]], offset: int, limit: int) -> Sequence[CRMOpportunity]:
        return self.session.scalars(stmt.order_by(CRMOpportunity.created_at.desc()).offset(offset).limit(limit)).all()

    def save_opportunity(self, opportunity: CRMOpportunity, expected_row_version: int) -> bool:
        """Flush changes only if nobody bumped the row since it was read."""
        current = self.session.scalar(
            select(CRMOpportunity.row_version).where(CRMOpportunity.id == opportunity.id)
        )
        if current != expected_row_version:
            return False
        opportunity.row_version = expected_row_version + 1
        self._add(opportunity)
        return True

    # Quotes

    def add_quote(self, quote: CRMQuote) -> CRMQuote:
        return self._add(quote)

    def get_quote(self, quote_id: uuid.UUID) -> CRMQuote | None:
        return self.session.get(CRMQuote, quote_id)

    def save_quote(self, quote: CRMQuote) -> CRMQuote:
        return self._add(quote)

    def add_opportunity_quote(self, link: CRMOpportunityQuote) -> CRMOpportunityQuote:
        return self._add(link)

    def list_opportunity_quote_links(self, opportunity_id: uuid.UUID) -> Sequence[CRMOpportunityQuote]:
        stmt = select(CRMOpportunityQuote).where(CRMOpportunityQuote.opportunity_id == opportunity_id)
        return self.session.scalars(stmt).all()

    def list_quotes_by_ids(self, quote_ids: Sequence[uuid.UUID]) -> Sequence[CRMQuote]:
        if not quote_ids:
            return []
        stmt = select(CRMQuote).where(CRMQuote.id.in_(list(quote_ids))).order_by(CRMQuote.created_at.desc())
        return self.session.scalars(stmt).all()

    def list_client_organizations(self) -> Sequence[CRMOrganization]:
        stmt = select(CRMOrganization).where(CRMOrganization.is_client.is_(True))
        return self.session.scalars(stmt).all()

    def list_persons_with_accepted_quotes(self) -> Sequence[CRMPerson]:
        accepted = select(CRMQuote.person_id).where(
            CRMQuote.status == QuoteStatus.ACCEPTED.value,
            CRMQuote.person_id.is_not(None),
        )
        stmt = select(CRMPerson).where(CRMPerson.id.in_(accepted))
        return self.session.scalars(stmt).all()

    def list_quotes_for_clients(
        self,
        *,
        person_ids: Sequence[uuid.UUID] = (),
        organization_ids: Sequence[uuid.UUID] = (),
    ) -> Sequence[CRMQuote]:
        conditions = []
        if person_ids:
            conditions.append(CRMQuote.person_id.in_(list(person_ids)))
        if organization_ids:
            conditions.append(CRMQuote.organization_id.in_(list(organization_ids)))
        if not conditions:
            return []
        return self.session.scalars(select(CRMQuote).where(or_(*conditions))).all()

    # Idempotency

    def load_idempotent_response(self, endpoint: str, key: str) -> tuple[str, dict[str, Any]] | None:
        record = self.session.scalar(
            select(CRMIdempotencyKey).where(and_(CRMIdempotencyKey.endpoint == endpoint, CRMIdempotencyKey.key == key))
        )
        if record is None:
            return None
        return record.request_hash, json.loads(record.response_json)

    def store_idempotent_response(self, endpoint: str, key: str, request_hash: str, response: dict[str, Any]) -> None:
        self._add(
            CRMIdempotencyKey(
                endpoint=endpoint,
                key=key,
                request_hash=request_hash,
                response_json=json.dumps(response),
            )
        )


def get_repository(db: Session = Depends(get_db)) -> Generator[CrmRepository, None, None]:
    yield CrmRepository(db)
