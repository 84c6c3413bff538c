from __future__ import annotations

import hashlib
import json
import logging
import re
import time
import unicodedata
import uuid
from collections import defaultdict
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any
from urllib.parse import urlencode

from fastapi import HTTPException, status
from pydantic import BaseModel, ValidationError
from sqlalchemy import Select, or_, select
from sqlalchemy.exc import SQLAlchemyError

from gestionale import audit, events
from gestionale.core.config import get_settings
from gestionale.crm.contacts import (
    build_contact_methods,
    dump_contact_methods,
    emails_of,
    parse_contact_methods,
    phones_of,
    primary_email,
    primary_phone,
)
from gestionale.crm.models import (
    CRMAffiliation,
    CRMInboundContact,
    CRMLead,
    CRMLeadActivity,
    CRMOpportunity,
    CRMOpportunityQuote,
    CRMOrganization,
    CRMPerson,
    CRMQuote,
)
from gestionale.crm.repositories import CrmRepository
from gestionale.crm.schemas import (
    AffiliationCreate,
    AffiliationRead,
    ClientListResponse,
    ClientSort,
    ClientValue,
    EntityType,
    InboundContactConversionResult,
    InboundContactCreate,
    InboundContactRead,
    InboundContactToOrganizationRequest,
    InboundContactToPersonRequest,
    LeadActivityCreate,
    LeadActivityRead,
    LeadConversionResult,
    LeadConvertRequest,
    LeadCreate,
    LeadIntakeRequest,
    LeadIntakeResult,
    LeadRead,
    LeadUpdate,
    LinkedQuoteRead,
    Notice,
    OpportunityDetail,
    OpportunityMutationResult,
    OpportunityRead,
    OpportunityStageChangeRequest,
    OpportunityUpdate,
    OrganizationCreate,
    OrganizationRead,
    PersonCreate,
    PersonRead,
    ProspectCreate,
    QuoteCreate,
    QuoteHandoff,
    QuoteLinkRequest,
    QuoteRead,
    QuoteStatusUpdate,
    QuoteSummary,
    ReferentCreateResult,
    ReferentQuickCreate,
    SortOrder,
)
from gestionale.crm.stages import (
    InboundContactStatus,
    LeadStatus,
    OpportunityStage,
    QuoteStatus,
    can_transition,
    is_closed,
    resolve_closed_at,
    stage_notice,
)
from gestionale.metrics import observe_partial_failure, observe_pipeline_operation, observe_stage_transition
from gestionale.otel import pipeline_span


logger = logging.getLogger("gestionale.crm.pipeline")

CONTACT_ACTIVITY_EXCLUDED = {"note", "task"}
REQUIRED_LEAD_FIELDS = {"full_name", "status", "source", "services_of_interest"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str]
    is_super_admin: bool = False
    correlation_id: str | None = None
    email: str | None = None


@dataclass
class StepTracker:
    completed: list[str] = field(default_factory=list)
    current: str | None = None

    @contextmanager
    def step(self, name: str) -> Iterator[None]:
        self.current = name
        yield
        self.completed.append(name)
        self.current = None


@contextmanager
def pipeline_write(
    repo: CrmRepository,
    actor_user: ActorUser,
    *,
    action: str,
    label: str,
    entity_id: Any = None,
) -> Iterator[StepTracker]:
    """Run the block as one unit of work.

    Database errors roll every step back and surface as a 500 naming ``label``. When an
    earlier step had already succeeded the failure is logged as a partial failure.
    """
    tracker = StepTracker()
    started = time.perf_counter()
    with pipeline_span(f"crm.{action}", actor_user_id=actor_user.user_id, entity_id=entity_id):
        try:
            with repo.transaction():
                yield tracker
        except SQLAlchemyError as exc:
            duration = time.perf_counter() - started
            failed_step = tracker.current or "commit"
            log_extra = {
                "action": action,
                "step": failed_step,
                "entity_id": str(entity_id) if entity_id is not None else None,
                "actor_user_id": actor_user.user_id,
                "error": str(exc),
            }
            if tracker.completed:
                logger.error(
                    "pipeline.partial_failure",
                    extra={**log_extra, "status": "rolled_back after " + ",".join(tracker.completed)},
                )
                observe_partial_failure(action, failed_step)
                observe_pipeline_operation(action, "partial_failure", duration)
            else:
                logger.error("pipeline.failed", extra={**log_extra, "status": "rolled_back"})
                observe_pipeline_operation(action, "failed", duration)
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"could not {label}") from exc
        except HTTPException:
            observe_pipeline_operation(action, "rejected", time.perf_counter() - started)
            raise
    observe_pipeline_operation(action, "succeeded", time.perf_counter() - started)


def _record_change(
    actor_user: ActorUser,
    *,
    entity_type: str,
    entity_id: uuid.UUID,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    event_type: str,
    payload: dict[str, Any],
) -> None:
    audit.record(
        actor_user_id=actor_user.user_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        before=before,
        after=after,
        correlation_id=actor_user.correlation_id,
    )
    events.publish(events.build_envelope(event_type, actor_user.user_id, payload))


def _request_hash(payload: dict[str, Any]) -> str:
    return hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode("utf-8")).hexdigest()


def _load_idempotent(
    repo: CrmRepository,
    endpoint: str,
    key: str | None,
    request_hash: str,
    model: type[BaseModel],
) -> Any:
    if not key:
        return None
    stored = repo.load_idempotent_response(endpoint, key)
    if stored is None:
        return None
    stored_hash, response = stored
    if stored_hash != request_hash:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="idempotency key payload mismatch")
    return model.model_validate(response)


def _store_idempotent(repo: CrmRepository, endpoint: str, key: str | None, request_hash: str, response: BaseModel) -> None:
    if not key:
        return
    repo.store_idempotent_response(endpoint, key, request_hash, response.model_dump(mode="json"))


def _to_decimal(value: float | None) -> Decimal | None:
    return Decimal(str(value)) if value is not None else None


def _to_float(value: Decimal | None) -> float | None:
    return float(value) if value is not None else None


def _contact_methods(email: str | None, phone: str | None) -> list[Any]:
    """Build stored contact methods, turning a rejected e-mail or phone into a 422."""
    try:
        return build_contact_methods(email, phone)
    except ValidationError as exc:
        first = exc.errors()[0]
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"invalid contact details: {first.get('msg', 'invalid value')}",
        ) from exc


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def slugify(text: str) -> str:
    normalized = unicodedata.normalize("NFD", text.lower())
    without_marks = "".join(char for char in normalized if unicodedata.category(char) != "Mn")
    return re.sub(r"[^a-z0-9]+", "-", without_marks).strip("-")


def person_to_read(person: CRMPerson) -> PersonRead:
    methods = parse_contact_methods(person.contacts)
    return PersonRead.model_validate(
        {
            "id": person.id,
            "full_name": person.full_name,
            "first_name": person.first_name,
            "last_name": person.last_name,
            "tax_code": person.tax_code,
            "address": person.address,
            "contacts": methods,
            "primary_email": primary_email(methods),
            "primary_phone": primary_phone(methods),
            "notes": person.notes,
            "created_at": person.created_at,
            "updated_at": person.updated_at,
            "row_version": person.row_version,
        }
    )


def organization_to_read(organization: CRMOrganization) -> OrganizationRead:
    methods = parse_contact_methods(organization.contacts)
    return OrganizationRead.model_validate(
        {
            "id": organization.id,
            "legal_name": organization.legal_name,
            "vat_number": organization.vat_number,
            "tax_code": organization.tax_code,
            "registered_address": organization.registered_address,
            "province": organization.province,
            "municipality": organization.municipality,
            "org_type": organization.org_type,
            "sector": organization.sector,
            "description": organization.description,
            "rea_code": organization.rea_code,
            "contacts": methods,
            "emails": emails_of(methods),
            "phones": phones_of(methods),
            "notes": organization.notes,
            "is_client": organization.is_client,
            "created_at": organization.created_at,
            "updated_at": organization.updated_at,
            "row_version": organization.row_version,
        }
    )


def lead_to_read(lead: CRMLead) -> LeadRead:
    return LeadRead.model_validate(
        {
            "id": lead.id,
            "full_name": lead.full_name,
            "email": lead.email,
            "phone": lead.phone,
            "company": lead.company,
            "role": lead.role,
            "budget": _to_float(lead.budget),
            "services_of_interest": list(lead.services_of_interest or []),
            "description": lead.description,
            "source": lead.source,
            "campaign": lead.campaign,
            "status": lead.status,
            "notes": lead.notes,
            "attribution_metadata": dict(lead.attribution_metadata or {}),
            "person_id": lead.person_id,
            "organization_id": lead.organization_id,
            "referent_id": lead.referent_id,
            "assigned_to": lead.assigned_to,
            "created_by": lead.created_by,
            "last_contact_at": lead.last_contact_at,
            "last_contact_method": lead.last_contact_method,
            "next_contact_at": lead.next_contact_at,
            "created_at": lead.created_at,
            "updated_at": lead.updated_at,
            "row_version": lead.row_version,
        }
    )


def opportunity_to_read(opportunity: CRMOpportunity, referent_role: str | None = None) -> OpportunityRead:
    return OpportunityRead.model_validate(
        {
            "id": opportunity.id,
            "lead_id": opportunity.lead_id,
            "person_id": opportunity.person_id,
            "organization_id": opportunity.organization_id,
            "referent_id": opportunity.referent_id,
            "referent_role": referent_role,
            "name": opportunity.name,
            "source": opportunity.source,
            "stage": opportunity.stage,
            "probability": opportunity.probability,
            "expected_revenue": _to_float(opportunity.expected_revenue),
            "expected_close_date": opportunity.expected_close_date,
            "description": opportunity.description,
            "notes": opportunity.notes,
            "closed_at": opportunity.closed_at,
            "created_by": opportunity.created_by,
            "assigned_to": opportunity.assigned_to,
            "created_at": opportunity.created_at,
            "updated_at": opportunity.updated_at,
            "deleted_at": opportunity.deleted_at,
            "row_version": opportunity.row_version,
        }
    )


def quote_to_read(quote: CRMQuote) -> QuoteRead:
    return QuoteRead.model_validate(
        {
            "id": quote.id,
            "quote_number": quote.quote_number,
            "title": quote.title,
            "person_id": quote.person_id,
            "organization_id": quote.organization_id,
            "status": quote.status,
            "total_amount": float(quote.total_amount or 0),
            "created_by": quote.created_by,
            "created_at": quote.created_at,
            "updated_at": quote.updated_at,
        }
    )


class PersonService:
    entity_type = "crm.person"

    def create_person(self, repo: CrmRepository, actor_user: ActorUser, dto: PersonCreate) -> PersonRead:
        first_name = _clean(dto.first_name)
        last_name = _clean(dto.last_name)
        full_name = _clean(dto.full_name) or " ".join(part for part in [first_name, last_name] if part)

        with pipeline_write(repo, actor_user, action="create_person", label="create person") as unit:
            with unit.step("create_person"):
                person = repo.add_person(
                    CRMPerson(
                        full_name=full_name,
                        first_name=first_name,
                        last_name=last_name,
                        tax_code=_clean(dto.tax_code),
                        address=_clean(dto.address),
                        contacts=dump_contact_methods(list(dto.contacts)),
                        notes=dto.notes,
                    )
                )

        result = person_to_read(person)
        _record_change(
            actor_user,
            entity_type=self.entity_type,
            entity_id=person.id,
            action="create",
            before=None,
            after=result.model_dump(mode="json"),
            event_type="crm.person.created",
            payload={"person_id": str(person.id)},
        )
        return result

    def get_person(self, repo: CrmRepository, person_id: uuid.UUID) -> PersonRead:
        person = repo.get_person(person_id)
        if person is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="person not found")
        return person_to_read(person)

    def list_persons(self, repo: CrmRepository, cursor: str | None, limit: int) -> list[PersonRead]:
        offset = int(cursor) if cursor and cursor.isdigit() else 0
        return [person_to_read(item) for item in repo.list_persons(offset, limit)]


class OrganizationService:
    entity_type = "crm.organization"

    def create_organization(self, repo: CrmRepository, actor_user: ActorUser, dto: OrganizationCreate) -> OrganizationRead:
        legal_name = _clean(dto.legal_name)
        if legal_name is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="legal_name is required")

        with pipeline_write(repo, actor_user, action="create_organization", label="create organization") as unit:
            with unit.step("create_organization"):
                organization = repo.add_organization(
                    CRMOrganization(
                        legal_name=legal_name,
                        vat_number=_clean(dto.vat_number),
                        tax_code=_clean(dto.tax_code),
                        registered_address=_clean(dto.registered_address),
                        province=_clean(dto.province),
                        municipality=_clean(dto.municipality),
                        org_type=_clean(dto.org_type),
                        sector=_clean(dto.sector),
                        description=dto.description,
                        rea_code=_clean(dto.rea_code),
                        contacts=dump_contact_methods(list(dto.contacts)),
                        notes=dto.notes,
                    )
                )

        result = organization_to_read(organization)
        _record_change(
            actor_user,
            entity_type=self.entity_type,
            entity_id=organization.id,
            action="create",
            before=None,
            after=result.model_dump(mode="json"),
            event_type="crm.organization.created",
            payload={"organization_id": str(organization.id)},
        )
        return result

    def get_organization(self, repo: CrmRepository, organization_id: uuid.UUID) -> OrganizationRead:
        organization = repo.get_organization(organization_id)
        if organization is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="organization not found")
        return organization_to_read(organization)

    def list_organizations(
        self,
        repo: CrmRepository,
        is_client: bool | None,
        cursor: str | None,
        limit: int,
    ) -> list[OrganizationRead]:
        offset = int(cursor) if cursor and cursor.isdigit() else 0
        return [organization_to_read(item) for item in repo.list_organizations(is_client, offset, limit)]


class AffiliationService:
    entity_type = "crm.affiliation"

    def create_affiliation(self, repo: CrmRepository, actor_user: ActorUser, dto: AffiliationCreate) -> AffiliationRead:
        if repo.get_person(dto.person_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="person not found")
        if repo.get_organization(dto.organization_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="organization not found")

        with pipeline_write(repo, actor_user, action="create_affiliation", label="link person to organization") as unit:
            with unit.step("create_affiliation"):
                affiliation = repo.add_affiliation(
                    CRMAffiliation(person_id=dto.person_id, organization_id=dto.organization_id, role=dto.role)
                )

        result = AffiliationRead.model_validate(affiliation)
        _record_change(
            actor_user,
            entity_type=self.entity_type,
            entity_id=affiliation.id,
            action="create",
            before=None,
            after=result.model_dump(mode="json"),
            event_type="crm.affiliation.created",
            payload={
                "affiliation_id": str(affiliation.id),
                "person_id": str(dto.person_id),
                "organization_id": str(dto.organization_id),
                "role": dto.role,
            },
        )
        return result

    def quick_create_referent(
        self,
        repo: CrmRepository,
        actor_user: ActorUser,
        organization_id: uuid.UUID,
        dto: ReferentQuickCreate,
    ) -> ReferentCreateResult:
        organization = repo.get_organization(organization_id)
        if organization is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="organization not found")

        first_name = dto.first_name.strip()
        last_name = dto.last_name.strip()
        role = dto.role.strip()
        contacts = _contact_methods(str(dto.email) if dto.email else None, dto.phone)

        with pipeline_write(
            repo,
            actor_user,
            action="quick_create_referent",
            label="add referent",
            entity_id=organization_id,
        ) as unit:
            with unit.step("create_person"):
                person = repo.add_person(
                    CRMPerson(
                        id=uuid.uuid4(),
                        full_name=f"{first_name} {last_name}",
                        first_name=first_name,
                        last_name=last_name,
                        contacts=dump_contact_methods(contacts),
                        notes=dto.notes,
                    )
                )
            with unit.step("create_affiliation"):
                affiliation = repo.add_affiliation(
                    CRMAffiliation(person_id=person.id, organization_id=organization.id, role=role)
                )
            with unit.step("refetch_person"):
                canonical = repo.get_person(person.id)
                if canonical is None:
                    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="person not found")

        person_read = person_to_read(canonical)
        affiliation_read = AffiliationRead.model_validate(affiliation)
        _record_change(
            actor_user,
            entity_type=self.entity_type,
            entity_id=affiliation.id,
            action="quick_create_referent",
            before=None,
            after={"person": person_read.model_dump(mode="json"), "role": role},
            event_type="crm.affiliation.created",
            payload={
                "affiliation_id": str(affiliation.id),
                "person_id": str(person.id),
                "organization_id": str(organization.id),
                "role": role,
            },
        )
        return ReferentCreateResult(
            person=person_read,
            affiliation=affiliation_read,
            notice=Notice(message=f"Referent {person_read.full_name} added to {organization.legal_name}"),
        )


class InboundContactService:
    entity_type = "crm.inbound_contact"

    def create_contact(self, repo: CrmRepository, actor_user: ActorUser, dto: InboundContactCreate) -> InboundContactRead:
        with pipeline_write(repo, actor_user, action="create_inbound_contact", label="save contact request") as unit:
            with unit.step("create_inbound_contact"):
                contact = repo.add_inbound_contact(
                    CRMInboundContact(
                        full_name=_clean(dto.full_name),
                        company=_clean(dto.company),
                        role=_clean(dto.role),
                        email=str(dto.email) if dto.email else None,
                        phone=_clean(dto.phone),
                        services=list(dto.services),
                        budget=_to_decimal(dto.budget),
                        timeline=dto.timeline,
                        message=dto.message,
                        form_type=dto.form_type,
                        status=InboundContactStatus.NEW.value,
                    )
                )
        return self._to_read(contact)

    def list_contacts(
        self,
        repo: CrmRepository,
        status_filter: str | None,
        cursor: str | None,
        limit: int,
    ) -> list[InboundContactRead]:
        offset = int(cursor) if cursor and cursor.isdigit() else 0
        return [self._to_read(item) for item in repo.list_inbound_contacts(status_filter, offset, limit)]

    def convert_to_organization(
        self,
        repo: CrmRepository,
        actor_user: ActorUser,
        contact_id: uuid.UUID,
        dto: InboundContactToOrganizationRequest,
    ) -> InboundContactConversionResult:
        contact = self._get_open_contact(repo, contact_id)
        legal_name = _clean(dto.legal_name) or _clean(contact.company) or _clean(contact.full_name)
        if legal_name is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="organization name is required")

        referent_name = _clean(contact.full_name)
        referent_role = _clean(contact.role)
        contact_methods = dump_contact_methods(_contact_methods(contact.email, contact.phone))
        person: CRMPerson | None = None
        affiliation: CRMAffiliation | None = None

        with pipeline_write(
            repo,
            actor_user,
            action="convert_inbound_contact",
            label="create organization from contact request",
            entity_id=contact_id,
        ) as unit:
            with unit.step("create_organization"):
                organization = repo.add_organization(
                    CRMOrganization(
                        legal_name=legal_name,
                        vat_number=_clean(dto.vat_number),
                        sector=_clean(dto.sector),
                        description=dto.description,
                        contacts=contact_methods,
                        notes=dto.notes or self._summary_notes(contact),
                    )
                )
            if referent_name and referent_role:
                with unit.step("create_person"):
                    person = repo.add_person(
                        CRMPerson(
                            full_name=referent_name,
                            contacts=contact_methods,
                            notes=f"Referent from contact request for {legal_name} ({referent_role})",
                        )
                    )
                with unit.step("create_affiliation"):
                    affiliation = repo.add_affiliation(
                        CRMAffiliation(person_id=person.id, organization_id=organization.id, role=referent_role)
                    )
            with unit.step("mark_contact_converted"):
                repo.set_inbound_contact_status(contact, InboundContactStatus.CONVERTED.value)

        result = InboundContactConversionResult(
            contact=self._to_read(contact),
            organization=organization_to_read(organization),
            person=person_to_read(person) if person is not None else None,
            affiliation=AffiliationRead.model_validate(affiliation) if affiliation is not None else None,
            notice=Notice(
                message=(
                    f"Organization {legal_name} created with referent {referent_name}"
                    if person is not None
                    else f"Organization {legal_name} created"
                )
            ),
        )
        self._record_conversion(actor_user, contact, result)
        return result

    def convert_to_person(
        self,
        repo: CrmRepository,
        actor_user: ActorUser,
        contact_id: uuid.UUID,
        dto: InboundContactToPersonRequest,
    ) -> InboundContactConversionResult:
        contact = self._get_open_contact(repo, contact_id)
        first_name = _clean(dto.first_name)
        last_name = _clean(dto.last_name)
        full_name = " ".join(part for part in [first_name, last_name] if part) or _clean(contact.full_name)
        if not full_name:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="person name is required")

        organization_name = _clean(dto.organization_name)
        role = _clean(dto.role)
        if organization_name and not role:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="role is required when creating the organization",
            )
        contact_methods = dump_contact_methods(_contact_methods(contact.email, contact.phone))
        organization: CRMOrganization | None = None
        affiliation: CRMAffiliation | None = None

        with pipeline_write(
            repo,
            actor_user,
            action="convert_inbound_contact",
            label="create person from contact request",
            entity_id=contact_id,
        ) as unit:
            with unit.step("create_person"):
                person = repo.add_person(
                    CRMPerson(
                        full_name=full_name,
                        first_name=first_name,
                        last_name=last_name,
                        contacts=contact_methods,
                        notes=dto.notes or self._summary_notes(contact),
                    )
                )
            if organization_name and role:
                with unit.step("create_organization"):
                    organization = repo.add_organization(
                        CRMOrganization(
                            legal_name=organization_name,
                            contacts=[],
                            notes=f"Organization created from contact request. Referent: {full_name}",
                        )
                    )
                with unit.step("create_affiliation"):
                    affiliation = repo.add_affiliation(
                        CRMAffiliation(person_id=person.id, organization_id=organization.id, role=role)
                    )
            with unit.step("mark_contact_converted"):
                repo.set_inbound_contact_status(contact, InboundContactStatus.CONVERTED.value)

        result = InboundContactConversionResult(
            contact=self._to_read(contact),
            person=person_to_read(person),
            organization=organization_to_read(organization) if organization is not None else None,
            affiliation=AffiliationRead.model_validate(affiliation) if affiliation is not None else None,
            notice=Notice(message=f"Person {full_name} created"),
        )
        self._record_conversion(actor_user, contact, result)
        return result

    def _get_open_contact(self, repo: CrmRepository, contact_id: uuid.UUID) -> CRMInboundContact:
        contact = repo.get_inbound_contact(contact_id)
        if contact is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="contact request not found")
        if contact.status == InboundContactStatus.CONVERTED.value:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="contact request already converted")
        return contact

    def _summary_notes(self, contact: CRMInboundContact) -> str:
        lines = [f"Source: web form ({contact.form_type or 'standard'})"]
        if contact.full_name:
            lines.append(f"Named contact: {contact.full_name}" + (f" ({contact.role})" if contact.role else ""))
        if contact.services:
            lines.append("Services of interest: " + ", ".join(contact.services))
        if contact.budget is not None:
            lines.append(f"Declared budget: {contact.budget}")
        if contact.timeline:
            lines.append(f"Timeline: {contact.timeline}")
        if contact.message:
            lines.append("")
            lines.append(contact.message)
        return "\n".join(lines)

    def _record_conversion(
        self,
        actor_user: ActorUser,
        contact: CRMInboundContact,
        result: InboundContactConversionResult,
    ) -> None:
        _record_change(
            actor_user,
            entity_type=self.entity_type,
            entity_id=contact.id,
            action="convert",
            before={"status": InboundContactStatus.NEW.value},
            after={"status": contact.status},
            event_type="crm.inbound_contact.converted",
            payload={
                "contact_id": str(contact.id),
                "organization_id": str(result.organization.id) if result.organization else None,
                "person_id": str(result.person.id) if result.person else None,
                "affiliation_id": str(result.affiliation.id) if result.affiliation else None,
            },
        )

    def _to_read(self, contact: CRMInboundContact) -> InboundContactRead:
        return InboundContactRead.model_validate(
            {
                "id": contact.id,
                "full_name": contact.full_name,
                "company": contact.company,
                "role": contact.role,
                "email": contact.email,
                "phone": contact.phone,
                "services": list(contact.services or []),
                "budget": _to_float(contact.budget),
                "timeline": contact.timeline,
                "message": contact.message,
                "form_type": contact.form_type,
                "status": contact.status,
                "created_at": contact.created_at,
                "updated_at": contact.updated_at,
            }
        )


class LeadService:
    entity_type = "crm.lead"

    def create_lead(self, repo: CrmRepository, actor_user: ActorUser, dto: LeadCreate) -> LeadRead:
        if dto.status == LeadStatus.CONVERTED:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="a lead can only become converted through conversion",
            )
        self._ensure_references(repo, dto.person_id, dto.organization_id, dto.referent_id)

        with pipeline_write(repo, actor_user, action="create_lead", label="create lead") as unit:
            with unit.step("create_lead"):
                lead = repo.add_lead(
                    CRMLead(
                        full_name=dto.full_name.strip(),
                        email=str(dto.email) if dto.email else None,
                        phone=_clean(dto.phone),
                        company=_clean(dto.company),
                        role=_clean(dto.role),
                        budget=_to_decimal(dto.budget),
                        services_of_interest=list(dto.services_of_interest),
                        description=dto.description,
                        source=dto.source,
                        campaign=dto.campaign,
                        status=dto.status.value,
                        notes=dto.notes,
                        attribution_metadata={},
                        person_id=dto.person_id,
                        organization_id=dto.organization_id,
                        referent_id=dto.referent_id,
                        assigned_to=dto.assigned_to or actor_user.user_id,
                        created_by=actor_user.user_id,
                    )
                )

        result = lead_to_read(lead)
        _record_change(
            actor_user,
            entity_type=self.entity_type,
            entity_id=lead.id,
            action="create",
            before=None,
            after=result.model_dump(mode="json"),
            event_type="crm.lead.created",
            payload={"lead_id": str(lead.id), "status": lead.status, "source": lead.source},
        )
        return result

    def list_leads(
        self,
        repo: CrmRepository,
        filters: dict[str, Any],
        cursor: str | None,
        limit: int,
    ) -> list[LeadRead]:
        stmt: Select[tuple[CRMLead]] = select(CRMLead)
        if filters.get("status"):
            stmt = stmt.where(CRMLead.status == filters["status"])
        if filters.get("source"):
            stmt = stmt.where(CRMLead.source == filters["source"])
        if filters.get("assigned_to"):
            stmt = stmt.where(CRMLead.assigned_to == filters["assigned_to"])
        if filters.get("q"):
            q = str(filters["q"])
            stmt = stmt.where(
                or_(
                    CRMLead.full_name.ilike(f"%{q}%"),
                    CRMLead.email.ilike(f"%{q}%"),
                    CRMLead.company.ilike(f"%{q}%"),
                )
            )

        offset = int(cursor) if cursor and cursor.isdigit() else 0
        return [lead_to_read(item) for item in repo.list_leads(stmt, offset, limit)]

    def get_lead(self, repo: CrmRepository, lead_id: uuid.UUID) -> LeadRead:
        return lead_to_read(self._get_lead(repo, lead_id))

    def update_lead(self, repo: CrmRepository, actor_user: ActorUser, lead_id: uuid.UUID, dto: LeadUpdate) -> LeadRead:
        lead = self._get_lead(repo, lead_id)
        if lead.row_version != dto.row_version:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")
        if dto.status == LeadStatus.CONVERTED and lead.status != LeadStatus.CONVERTED.value:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="a lead can only become converted through conversion",
            )

        changes = dto.model_dump(exclude_unset=True, exclude={"row_version"})
        self._ensure_references(repo, changes.get("person_id"), changes.get("organization_id"), changes.get("referent_id"))
        before = lead_to_read(lead).model_dump(mode="json")

        with pipeline_write(repo, actor_user, action="update_lead", label="update lead", entity_id=lead_id) as unit:
            with unit.step("update_lead"):
                for field_name, value in changes.items():
                    if value is None and field_name in REQUIRED_LEAD_FIELDS:
                        continue
                    if field_name == "email":
                        value = str(value) if value else None
                    elif field_name == "budget":
                        value = _to_decimal(value)
                    elif field_name == "status" and value is not None:
                        value = LeadStatus(value).value
                    setattr(lead, field_name, value)
                lead.row_version = lead.row_version + 1
                repo.save_lead(lead)

        result = lead_to_read(lead)
        _record_change(
            actor_user,
            entity_type=self.entity_type,
            entity_id=lead.id,
            action="update",
            before=before,
            after=result.model_dump(mode="json"),
            event_type="crm.lead.updated",
            payload={"lead_id": str(lead.id), "changed_fields": sorted(changes.keys())},
        )
        return result

    def intake(self, repo: CrmRepository, actor_user: ActorUser, dto: LeadIntakeRequest) -> LeadIntakeResult:
        email = str(dto.email)
        source = self._resolve_source(dto)
        campaign = _clean(dto.marketing_campaign) or _clean(dto.utm_campaign)
        attribution = {
            key: value
            for key, value in {
                "utm_source": dto.utm_source,
                "utm_medium": dto.utm_medium,
                "utm_campaign": dto.utm_campaign,
                "utm_content": dto.utm_content,
                "utm_term": dto.utm_term,
                "landing_page": dto.landing_page,
                "referrer": dto.referrer,
            }.items()
            if value
        }
        existing = repo.find_lead_by_email(email)

        with pipeline_write(repo, actor_user, action="lead_intake", label="register lead") as unit:
            if existing is not None:
                lead = existing
                with unit.step("update_lead"):
                    updates = {
                        "phone": _clean(dto.phone),
                        "company": _clean(dto.company),
                        "role": _clean(dto.role),
                        "description": dto.description,
                        "notes": dto.notes,
                    }
                    for field_name, value in updates.items():
                        if value:
                            setattr(lead, field_name, value)
                    if dto.services_of_interest:
                        lead.services_of_interest = list(dto.services_of_interest)
                    if dto.budget is not None:
                        lead.budget = _to_decimal(dto.budget)
                    if attribution:
                        lead.attribution_metadata = {**(lead.attribution_metadata or {}), **attribution}
                    if campaign and not lead.campaign:
                        lead.campaign = campaign
                    lead.row_version = lead.row_version + 1
                    repo.save_lead(lead)
                with unit.step("log_activity"):
                    repo.add_lead_activity(
                        CRMLeadActivity(
                            lead_id=lead.id,
                            activity_type="resubmitted",
                            description=f"Lead submitted again via {source}",
                            created_by=actor_user.user_id,
                        )
                    )
            else:
                with unit.step("create_lead"):
                    lead = repo.add_lead(
                        CRMLead(
                            full_name=dto.full_name.strip(),
                            email=email,
                            phone=_clean(dto.phone),
                            company=_clean(dto.company),
                            role=_clean(dto.role),
                            budget=_to_decimal(dto.budget),
                            services_of_interest=list(dto.services_of_interest),
                            description=dto.description,
                            source=source,
                            campaign=campaign,
                            status=LeadStatus.NEW.value,
                            notes=dto.notes,
                            attribution_metadata=attribution,
                            created_by=actor_user.user_id,
                        )
                    )
                with unit.step("log_activity"):
                    repo.add_lead_activity(
                        CRMLeadActivity(
                            lead_id=lead.id,
                            activity_type="intake",
                            description=f"Lead received via {source}",
                            created_by=actor_user.user_id,
                        )
                    )

        created = existing is None
        result = lead_to_read(lead)
        _record_change(
            actor_user,
            entity_type=self.entity_type,
            entity_id=lead.id,
            action="intake_create" if created else "intake_update",
            before=None,
            after=result.model_dump(mode="json"),
            event_type="crm.lead.created" if created else "crm.lead.resubmitted",
            payload={"lead_id": str(lead.id), "source": source, "campaign": campaign},
        )
        return LeadIntakeResult(
            lead=result,
            created=created,
            notice=Notice(message="Lead registered" if created else "Existing lead updated"),
        )

    def add_activity(
        self,
        repo: CrmRepository,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: LeadActivityCreate,
    ) -> LeadActivityRead:
        lead = self._get_lead(repo, lead_id)
        if dto.update_status == LeadStatus.CONVERTED:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="a lead can only become converted through conversion",
            )
        before_status = lead.status
        now = utcnow()
        is_contact = dto.activity_type not in CONTACT_ACTIVITY_EXCLUDED

        with pipeline_write(repo, actor_user, action="log_lead_activity", label="log activity", entity_id=lead_id) as unit:
            with unit.step("create_activity"):
                activity = repo.add_lead_activity(
                    CRMLeadActivity(
                        lead_id=lead.id,
                        activity_type=dto.activity_type,
                        description=dto.description.strip(),
                        outcome=dto.outcome,
                        created_by=actor_user.user_id,
                    )
                )
            if is_contact or dto.update_status is not None:
                with unit.step("update_lead"):
                    if is_contact:
                        lead.last_contact_at = now
                        lead.last_contact_method = dto.activity_type
                        next_days = dto.next_contact_days
                        if next_days is None:
                            next_days = get_settings().default_next_contact_days
                        lead.next_contact_at = now + timedelta(days=next_days)
                    if dto.update_status is not None:
                        lead.status = dto.update_status.value
                    lead.row_version = lead.row_version + 1
                    repo.save_lead(lead)

        result = LeadActivityRead.model_validate(activity)
        _record_change(
            actor_user,
            entity_type=self.entity_type,
            entity_id=lead.id,
            action="log_activity",
            before={"status": before_status},
            after={"status": lead.status, "activity_type": dto.activity_type},
            event_type="crm.lead.activity_logged",
            payload={"lead_id": str(lead.id), "activity_id": str(activity.id), "activity_type": dto.activity_type},
        )
        return result

    def list_activities(self, repo: CrmRepository, lead_id: uuid.UUID) -> list[LeadActivityRead]:
        self._get_lead(repo, lead_id)
        return [LeadActivityRead.model_validate(item) for item in repo.list_lead_activities(lead_id)]

    def convert_lead(
        self,
        repo: CrmRepository,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: LeadConvertRequest,
        idempotency_key: str | None,
    ) -> LeadConversionResult:
        if not dto.confirm:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="conversion must be confirmed")

        endpoint = f"crm.lead.convert:{lead_id}"
        request_hash = _request_hash(dto.model_dump(mode="json"))
        stored = _load_idempotent(repo, endpoint, idempotency_key, request_hash, LeadConversionResult)
        if stored is not None:
            return stored

        lead = self._get_lead(repo, lead_id)
        if lead.status == LeadStatus.CONVERTED.value:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="lead already converted")
        if lead.status == LeadStatus.LOST.value and "crm.leads.convert_lost" not in actor_user.permissions:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="lost lead cannot be converted")

        before_status = lead.status
        with pipeline_write(repo, actor_user, action="convert_lead", label="convert lead", entity_id=lead_id) as unit:
            with unit.step("create_opportunity"):
                opportunity = repo.add_opportunity(
                    CRMOpportunity(
                        lead_id=lead.id,
                        person_id=lead.person_id,
                        organization_id=lead.organization_id,
                        referent_id=lead.referent_id,
                        name=lead.company or lead.full_name,
                        source=lead.source,
                        stage=OpportunityStage.DISCOVERY.value,
                        expected_revenue=lead.budget,
                        description=lead.description,
                        notes=lead.notes,
                        created_by=actor_user.user_id,
                        assigned_to=lead.assigned_to,
                    )
                )
            with unit.step("mark_lead_converted"):
                repo.set_lead_status(lead, LeadStatus.CONVERTED.value)
            result = LeadConversionResult(
                lead=lead_to_read(lead),
                opportunity=opportunity_to_read(opportunity),
                notice=Notice(message="Lead converted to opportunity"),
            )
            with unit.step("store_idempotency_key"):
                _store_idempotent(repo, endpoint, idempotency_key, request_hash, result)

        _record_change(
            actor_user,
            entity_type=self.entity_type,
            entity_id=lead.id,
            action="convert",
            before={"status": before_status},
            after={"status": LeadStatus.CONVERTED.value, "opportunity_id": str(opportunity.id)},
            event_type="crm.lead.converted",
            payload={"lead_id": str(lead.id), "opportunity_id": str(opportunity.id)},
        )
        return result

    def _get_lead(self, repo: CrmRepository, lead_id: uuid.UUID) -> CRMLead:
        lead = repo.get_lead(lead_id)
        if lead is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lead not found")
        return lead

    def _ensure_references(
        self,
        repo: CrmRepository,
        person_id: uuid.UUID | None,
        organization_id: uuid.UUID | None,
        referent_id: uuid.UUID | None,
    ) -> None:
        if person_id is not None and repo.get_person(person_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="person not found")
        if organization_id is not None and repo.get_organization(organization_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="organization not found")
        if referent_id is not None and repo.get_person(referent_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="referent not found")

    def _resolve_source(self, dto: LeadIntakeRequest) -> str:
        for candidate in (dto.marketing_source, dto.utm_source):
            if candidate and slugify(candidate):
                return slugify(candidate)
        return "other"


class OpportunityService:
    entity_type = "crm.opportunity"

    def create_prospect(self, repo: CrmRepository, actor_user: ActorUser, dto: ProspectCreate) -> OpportunityMutationResult:
        referent_role: str | None = None
        if dto.entity_type == "person":
            person = repo.get_person(dto.person_id) if dto.person_id else None
            if person is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="person not found")
            default_name = person.full_name
            person_id, organization_id, referent_id = person.id, None, None
        else:
            organization = repo.get_organization(dto.organization_id) if dto.organization_id else None
            if organization is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="organization not found")
            referent = repo.get_person(dto.referent_id) if dto.referent_id else None
            if referent is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="referent not found")
            roles = repo.find_affiliation_roles(referent.id, organization.id)
            if not roles:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail="referent is not affiliated with the organization",
                )
            referent_role = roles[0]
            default_name = organization.legal_name
            person_id, organization_id, referent_id = None, organization.id, referent.id

        with pipeline_write(repo, actor_user, action="create_prospect", label="create prospect") as unit:
            with unit.step("create_opportunity"):
                opportunity = repo.add_opportunity(
                    CRMOpportunity(
                        person_id=person_id,
                        organization_id=organization_id,
                        referent_id=referent_id,
                        name=_clean(dto.name) or default_name,
                        source="manual",
                        stage=OpportunityStage.DISCOVERY.value,
                        probability=get_settings().default_opportunity_probability,
                        expected_revenue=_to_decimal(dto.expected_revenue),
                        expected_close_date=dto.expected_close_date,
                        description=dto.description,
                        notes=dto.notes,
                        created_by=actor_user.user_id,
                        assigned_to=actor_user.user_id,
                    )
                )

        result = opportunity_to_read(opportunity, referent_role)
        _record_change(
            actor_user,
            entity_type=self.entity_type,
            entity_id=opportunity.id,
            action="create",
            before=None,
            after=result.model_dump(mode="json"),
            event_type="crm.opportunity.created",
            payload={"opportunity_id": str(opportunity.id), "stage": opportunity.stage, "source": "manual"},
        )
        return OpportunityMutationResult(opportunity=result, notice=Notice(message="Prospect created"))

    def list_opportunities(
        self,
        repo: CrmRepository,
        filters: dict[str, Any],
        cursor: str | None,
        limit: int,
    ) -> list[OpportunityRead]:
        stmt: Select[tuple[CRMOpportunity]] = select(CRMOpportunity).where(CRMOpportunity.deleted_at.is_(None))
        if filters.get("stage"):
            stmt = stmt.where(CRMOpportunity.stage == filters["stage"])
        if filters.get("assigned_to"):
            stmt = stmt.where(CRMOpportunity.assigned_to == filters["assigned_to"])
        if filters.get("lead_id"):
            stmt = stmt.where(CRMOpportunity.lead_id == filters["lead_id"])
        if filters.get("q"):
            stmt = stmt.where(CRMOpportunity.name.ilike(f"%{filters['q']}%"))

        offset = int(cursor) if cursor and cursor.isdigit() else 0
        return [opportunity_to_read(item) for item in repo.list_opportunities(stmt, offset, limit)]

    def get_opportunity(self, repo: CrmRepository, opportunity_id: uuid.UUID) -> OpportunityDetail:
        opportunity = self._get_opportunity(repo, opportunity_id)
        quotes = quote_service.list_linked_quotes(repo, opportunity_id)
        return OpportunityDetail(
            opportunity=opportunity_to_read(opportunity, self._referent_role(repo, opportunity)),
            quotes=quotes,
            quote_summary=quote_service.summarize(quotes),
        )

    def update_opportunity(
        self,
        repo: CrmRepository,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        dto: OpportunityUpdate,
    ) -> OpportunityMutationResult:
        opportunity = self._get_opportunity(repo, opportunity_id)
        before = opportunity_to_read(opportunity).model_dump(mode="json")
        changes = dto.model_dump(exclude_unset=True, exclude={"row_version"})

        with pipeline_write(
            repo,
            actor_user,
            action="update_opportunity",
            label="update opportunity",
            entity_id=opportunity_id,
        ) as unit:
            with unit.step("update_opportunity"):
                for field_name, value in changes.items():
                    if value is None and field_name == "name":
                        continue
                    if field_name == "expected_revenue":
                        value = _to_decimal(value)
                    setattr(opportunity, field_name, value)
                if not repo.save_opportunity(opportunity, dto.row_version):
                    raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")

        result = opportunity_to_read(opportunity)
        _record_change(
            actor_user,
            entity_type=self.entity_type,
            entity_id=opportunity.id,
            action="update",
            before=before,
            after=result.model_dump(mode="json"),
            event_type="crm.opportunity.updated",
            payload={"opportunity_id": str(opportunity.id), "changed_fields": sorted(changes.keys())},
        )
        return OpportunityMutationResult(opportunity=result, notice=Notice(message="Opportunity updated"))

    def change_stage(
        self,
        repo: CrmRepository,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        dto: OpportunityStageChangeRequest,
        idempotency_key: str | None,
    ) -> OpportunityMutationResult:
        endpoint = f"crm.opportunity.change_stage:{opportunity_id}"
        request_hash = _request_hash(dto.model_dump(mode="json"))
        stored = _load_idempotent(repo, endpoint, idempotency_key, request_hash, OpportunityMutationResult)
        if stored is not None:
            return stored

        opportunity = self._get_opportunity(repo, opportunity_id)
        current = OpportunityStage(opportunity.stage)
        target = dto.stage
        if current == target:
            return OpportunityMutationResult(
                opportunity=opportunity_to_read(opportunity),
                notice=Notice(message="Opportunity status unchanged"),
            )
        if not can_transition(current, target):
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"cannot move opportunity from {current.value} to {target.value}",
            )

        before = opportunity_to_read(opportunity).model_dump(mode="json")
        with pipeline_write(
            repo,
            actor_user,
            action="change_stage",
            label="update opportunity status",
            entity_id=opportunity_id,
        ) as unit:
            with unit.step("update_stage"):
                opportunity.stage = target.value
                opportunity.closed_at = resolve_closed_at(target, utcnow())
                if not repo.save_opportunity(opportunity, dto.row_version):
                    raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")
            result = OpportunityMutationResult(
                opportunity=opportunity_to_read(opportunity),
                notice=Notice(message=stage_notice(target)),
            )
            with unit.step("store_idempotency_key"):
                _store_idempotent(repo, endpoint, idempotency_key, request_hash, result)

        observe_stage_transition(current.value, target.value)
        self._publish_stage_change(actor_user, opportunity, before, current, target)
        return result

    def delete_opportunity(self, repo: CrmRepository, actor_user: ActorUser, opportunity_id: uuid.UUID) -> None:
        opportunity = self._get_opportunity(repo, opportunity_id)
        before = opportunity_to_read(opportunity).model_dump(mode="json")
        expected_row_version = opportunity.row_version
        with pipeline_write(
            repo,
            actor_user,
            action="delete_opportunity",
            label="delete opportunity",
            entity_id=opportunity_id,
        ) as unit:
            with unit.step("soft_delete"):
                opportunity.deleted_at = utcnow()
                if not repo.save_opportunity(opportunity, expected_row_version):
                    raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")

        _record_change(
            actor_user,
            entity_type=self.entity_type,
            entity_id=opportunity.id,
            action="delete",
            before=before,
            after=None,
            event_type="crm.opportunity.deleted",
            payload={"opportunity_id": str(opportunity.id)},
        )

    def convert_to_client(
        self,
        repo: CrmRepository,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
    ) -> OpportunityMutationResult:
        opportunity = self._get_opportunity(repo, opportunity_id)
        quotes = quote_service.list_linked_quotes(repo, opportunity_id)
        if not any(item.status == QuoteStatus.ACCEPTED for item in quotes):
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="an accepted quote is required to acquire the client",
            )
        current = OpportunityStage(opportunity.stage)
        target = OpportunityStage.CLOSED_WON
        if current != target and not can_transition(current, target):
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"cannot move opportunity from {current.value} to {target.value}",
            )

        before = opportunity_to_read(opportunity).model_dump(mode="json")
        expected_row_version = opportunity.row_version
        lead = repo.get_lead(opportunity.lead_id) if opportunity.lead_id else None
        organization = repo.get_organization(opportunity.organization_id) if opportunity.organization_id else None

        with pipeline_write(
            repo,
            actor_user,
            action="convert_to_client",
            label="acquire client",
            entity_id=opportunity_id,
        ) as unit:
            with unit.step("close_won"):
                if current != target:
                    opportunity.stage = target.value
                    opportunity.closed_at = resolve_closed_at(target, utcnow())
                if not repo.save_opportunity(opportunity, expected_row_version):
                    raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")
            if lead is not None and lead.status != LeadStatus.CONVERTED.value:
                with unit.step("mark_lead_converted"):
                    repo.set_lead_status(lead, LeadStatus.CONVERTED.value)
            if organization is not None and not organization.is_client:
                with unit.step("mark_organization_client"):
                    organization.is_client = True
                    repo.add_organization(organization)

        if current != target:
            observe_stage_transition(current.value, target.value)
            self._publish_stage_change(actor_user, opportunity, before, current, target)
        events.publish(
            events.build_envelope(
                "crm.opportunity.client_acquired",
                actor_user.user_id,
                {
                    "opportunity_id": str(opportunity.id),
                    "organization_id": str(organization.id) if organization else None,
                    "lead_id": str(lead.id) if lead else None,
                },
            )
        )
        return OpportunityMutationResult(
            opportunity=opportunity_to_read(opportunity),
            notice=Notice(message=stage_notice(target)),
        )

    def _publish_stage_change(
        self,
        actor_user: ActorUser,
        opportunity: CRMOpportunity,
        before: dict[str, Any],
        current: OpportunityStage,
        target: OpportunityStage,
    ) -> None:
        _record_change(
            actor_user,
            entity_type=self.entity_type,
            entity_id=opportunity.id,
            action="change_stage",
            before=before,
            after=opportunity_to_read(opportunity).model_dump(mode="json"),
            event_type="crm.opportunity.stage_changed",
            payload={"opportunity_id": str(opportunity.id), "from_stage": current.value, "to_stage": target.value},
        )
        if is_closed(target):
            events.publish(
                events.build_envelope(
                    f"crm.opportunity.{target.value}",
                    actor_user.user_id,
                    {"opportunity_id": str(opportunity.id)},
                )
            )

    def _get_opportunity(self, repo: CrmRepository, opportunity_id: uuid.UUID) -> CRMOpportunity:
        opportunity = repo.get_opportunity(opportunity_id)
        if opportunity is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="opportunity not found")
        return opportunity

    def _referent_role(self, repo: CrmRepository, opportunity: CRMOpportunity) -> str | None:
        if opportunity.referent_id is None or opportunity.organization_id is None:
            return None
        roles = repo.find_affiliation_roles(opportunity.referent_id, opportunity.organization_id)
        return roles[0] if roles else None


class QuoteService:
    entity_type = "crm.quote"

    def create_quote(self, repo: CrmRepository, actor_user: ActorUser, dto: QuoteCreate) -> QuoteRead:
        if dto.person_id is not None and repo.get_person(dto.person_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="person not found")
        if dto.organization_id is not None and repo.get_organization(dto.organization_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="organization not found")
        if dto.opportunity_id is not None and repo.get_opportunity(dto.opportunity_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="opportunity not found")
        if repo.session.scalar(select(CRMQuote.id).where(CRMQuote.quote_number == dto.quote_number)) is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="quote number already in use")

        with pipeline_write(repo, actor_user, action="create_quote", label="create quote") as unit:
            with unit.step("create_quote"):
                quote = repo.add_quote(
                    CRMQuote(
                        quote_number=dto.quote_number,
                        title=dto.title,
                        person_id=dto.person_id,
                        organization_id=dto.organization_id,
                        status=dto.status.value,
                        total_amount=_to_decimal(dto.total_amount) or Decimal("0"),
                        created_by=actor_user.user_id,
                    )
                )
            if dto.opportunity_id is not None:
                with unit.step("link_opportunity"):
                    repo.add_opportunity_quote(
                        CRMOpportunityQuote(
                            opportunity_id=dto.opportunity_id,
                            quote_id=quote.id,
                            is_primary=dto.is_primary,
                        )
                    )

        result = quote_to_read(quote)
        _record_change(
            actor_user,
            entity_type=self.entity_type,
            entity_id=quote.id,
            action="create",
            before=None,
            after=result.model_dump(mode="json"),
            event_type="crm.quote.created",
            payload={
                "quote_id": str(quote.id),
                "opportunity_id": str(dto.opportunity_id) if dto.opportunity_id else None,
            },
        )
        return result

    def get_quote(self, repo: CrmRepository, quote_id: uuid.UUID) -> QuoteRead:
        return quote_to_read(self._get_quote(repo, quote_id))

    def update_status(
        self,
        repo: CrmRepository,
        actor_user: ActorUser,
        quote_id: uuid.UUID,
        dto: QuoteStatusUpdate,
    ) -> QuoteRead:
        quote = self._get_quote(repo, quote_id)
        before_status = quote.status
        with pipeline_write(repo, actor_user, action="update_quote_status", label="update quote status") as unit:
            with unit.step("update_status"):
                quote.status = dto.status.value
                repo.save_quote(quote)

        _record_change(
            actor_user,
            entity_type=self.entity_type,
            entity_id=quote.id,
            action="update_status",
            before={"status": before_status},
            after={"status": quote.status},
            event_type="crm.quote.status_changed",
            payload={"quote_id": str(quote.id), "status": quote.status},
        )
        return quote_to_read(quote)

    def link_quote(
        self,
        repo: CrmRepository,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        dto: QuoteLinkRequest,
    ) -> LinkedQuoteRead:
        if repo.get_opportunity(opportunity_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="opportunity not found")
        quote = self._get_quote(repo, dto.quote_id)
        if any(link.quote_id == quote.id for link in repo.list_opportunity_quote_links(opportunity_id)):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="quote already linked to opportunity")

        with pipeline_write(repo, actor_user, action="link_quote", label="link quote", entity_id=opportunity_id) as unit:
            with unit.step("link_opportunity"):
                repo.add_opportunity_quote(
                    CRMOpportunityQuote(opportunity_id=opportunity_id, quote_id=quote.id, is_primary=dto.is_primary)
                )

        _record_change(
            actor_user,
            entity_type=self.entity_type,
            entity_id=quote.id,
            action="link",
            before=None,
            after={"opportunity_id": str(opportunity_id), "is_primary": dto.is_primary},
            event_type="crm.quote.linked",
            payload={"quote_id": str(quote.id), "opportunity_id": str(opportunity_id)},
        )
        return LinkedQuoteRead(**quote_to_read(quote).model_dump(), is_primary=dto.is_primary)

    def list_linked_quotes(self, repo: CrmRepository, opportunity_id: uuid.UUID) -> list[LinkedQuoteRead]:
        if repo.get_opportunity(opportunity_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="opportunity not found")
        links = repo.list_opportunity_quote_links(opportunity_id)
        primary_by_quote = {link.quote_id: link.is_primary for link in links}
        quotes = repo.list_quotes_by_ids(list(primary_by_quote.keys()))
        return [
            LinkedQuoteRead(**quote_to_read(quote).model_dump(), is_primary=primary_by_quote.get(quote.id, False))
            for quote in quotes
        ]

    def summarize(self, quotes: list[LinkedQuoteRead]) -> QuoteSummary:
        total = sum((Decimal(str(item.total_amount)) for item in quotes), Decimal("0"))
        return QuoteSummary(
            quote_count=len(quotes),
            accepted_count=sum(1 for item in quotes if item.status == QuoteStatus.ACCEPTED),
            total_value=float(total),
        )

    def quote_summary(self, repo: CrmRepository, opportunity_id: uuid.UUID) -> QuoteSummary:
        return self.summarize(self.list_linked_quotes(repo, opportunity_id))

    def build_handoff(self, repo: CrmRepository, opportunity_id: uuid.UUID) -> QuoteHandoff:
        opportunity = repo.get_opportunity(opportunity_id)
        if opportunity is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="opportunity not found")
        if opportunity.organization_id is not None:
            client_type, client_id = "organization", opportunity.organization_id
        elif opportunity.person_id is not None:
            client_type, client_id = "person", opportunity.person_id
        else:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="opportunity has no client to quote",
            )

        query = urlencode(
            {"client_type": client_type, "client_id": str(client_id), "opportunity_id": str(opportunity.id)}
        )
        return QuoteHandoff(
            client_type=client_type,
            client_id=client_id,
            opportunity_id=opportunity.id,
            url=f"{get_settings().quote_builder_path}?{query}",
        )

    def list_clients(
        self,
        repo: CrmRepository,
        client_type: EntityType | None = None,
        sort_by: ClientSort = "clv",
        sort_order: SortOrder = "desc",
    ) -> ClientListResponse:
        """Organizations flagged as clients plus people with an accepted quote, with their lifetime value.

        Lifetime value is the sum of accepted quote totals; conversion rate is the rounded
        percentage of accepted quotes. A quote naming both a person and an organization counts
        for each of them.
        """
        organizations = repo.list_client_organizations() if client_type in (None, "organization") else []
        persons = repo.list_persons_with_accepted_quotes() if client_type in (None, "person") else []
        quotes = repo.list_quotes_for_clients(
            person_ids=[person.id for person in persons],
            organization_ids=[organization.id for organization in organizations],
        )

        quotes_by_client: dict[tuple[str, uuid.UUID], list[CRMQuote]] = defaultdict(list)
        for quote in quotes:
            if quote.organization_id is not None:
                quotes_by_client[("organization", quote.organization_id)].append(quote)
            if quote.person_id is not None:
                quotes_by_client[("person", quote.person_id)].append(quote)

        items = [
            self._client_value("organization", organization.id, organization.legal_name, quotes_by_client)
            for organization in organizations
        ]
        items.extend(
            self._client_value("person", person.id, person.full_name, quotes_by_client) for person in persons
        )

        descending = sort_order == "desc"
        if sort_by == "name":
            items.sort(key=lambda item: item.name.casefold(), reverse=descending)
        else:
            items.sort(key=lambda item: item.lifetime_value, reverse=descending)
        return ClientListResponse(items=items, count=len(items))

    def _client_value(
        self,
        client_type: EntityType,
        client_id: uuid.UUID,
        name: str,
        quotes_by_client: dict[tuple[str, uuid.UUID], list[CRMQuote]],
    ) -> ClientValue:
        quotes = quotes_by_client.get((client_type, client_id), [])
        accepted = [quote for quote in quotes if quote.status == QuoteStatus.ACCEPTED.value]
        total = len(quotes)
        purchased_at = [quote.created_at for quote in accepted]
        return ClientValue(
            client_id=client_id,
            client_type=client_type,
            name=name,
            total_quotes=total,
            accepted_quotes=len(accepted),
            # half-up rounding
            conversion_rate=(len(accepted) * 200 + total) // (2 * total) if total else 0,
            lifetime_value=float(sum((quote.total_amount for quote in accepted), Decimal("0"))),
            first_purchase_at=min(purchased_at) if purchased_at else None,
            last_purchase_at=max(purchased_at) if purchased_at else None,
        )

    def _get_quote(self, repo: CrmRepository, quote_id: uuid.UUID) -> CRMQuote:
        quote = repo.get_quote(quote_id)
        if quote is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="quote not found")
        return quote


quote_service = QuoteService()
