from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, File, Header, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response

from gestionale.context import get_correlation_id
from gestionale.core.auth import AuthUser, get_current_user as get_auth_user
from gestionale.crm.import_export import build_import_template, export_leads_csv, import_leads_csv
from gestionale.crm.repositories import CrmRepository, get_repository
from gestionale.crm.schemas import (
    AffiliationCreate,
    AffiliationRead,
    AffiliationSelectorResponse,
    ClientListResponse,
    ClientSort,
    EntitySelectorResponse,
    EntityType,
    FacetOptions,
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
    LeadImportResult,
    LeadIntakeRequest,
    LeadIntakeResult,
    LeadRead,
    LeadUpdate,
    LinkedQuoteRead,
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
from gestionale.crm.search import discover_facets, list_affiliated_persons, search_entities
from gestionale.crm.service import (
    ActorUser,
    AffiliationService,
    InboundContactService,
    LeadService,
    OpportunityService,
    OrganizationService,
    PersonService,
    quote_service,
)

registry_router = APIRouter(prefix="/api/crm", tags=["crm.registry"])
selector_router = APIRouter(prefix="/api/crm", tags=["crm.selector"])
inbound_router = APIRouter(prefix="/api/crm", tags=["crm.inbound_contacts"])
leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
opportunities_router = APIRouter(prefix="/api/crm", tags=["crm.opportunities"])
quotes_router = APIRouter(prefix="/api/crm", tags=["crm.quotes"])
person_service = PersonService()
organization_service = OrganizationService()
affiliation_service = AffiliationService()
inbound_contact_service = InboundContactService()
lead_service = LeadService()
opportunity_service = OpportunityService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None
    kind: str


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
        kind="validation_error" if status_code == status.HTTP_422_UNPROCESSABLE_ENTITY else "backend_error",
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _failure(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    normalized_roles = {str(role).lower() for role in auth_user.roles}
    is_super_admin = "admin" in normalized_roles or "system.admin" in normalized_roles

    return ActorUser(
        user_id=auth_user.sub,
        permissions=set(auth_user.roles) | set(auth_user.permissions),
        is_super_admin=is_super_admin,
        correlation_id=correlation_id,
        email=auth_user.email,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if user.is_super_admin:
        return
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


# Registry


@registry_router.post("/persons", response_model=PersonRead, status_code=status.HTTP_201_CREATED)
def create_person(
    request: Request,
    dto: PersonCreate,
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> PersonRead | JSONResponse:
    try:
        require_permission(user, "crm.persons.create")
        return person_service.create_person(repo, user, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_person_create_failed")


@registry_router.get("/persons", response_model=list[PersonRead])
def list_persons(
    request: Request,
    cursor: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> list[PersonRead] | JSONResponse:
    try:
        require_permission(user, "crm.persons.read")
        return person_service.list_persons(repo, cursor, limit)
    except HTTPException as exc:
        return _failure(request, exc, "crm_person_list_failed")


@registry_router.get("/persons/{person_id}", response_model=PersonRead)
def get_person(
    request: Request,
    person_id: uuid.UUID,
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> PersonRead | JSONResponse:
    try:
        require_permission(user, "crm.persons.read")
        return person_service.get_person(repo, person_id)
    except HTTPException as exc:
        return _failure(request, exc, "crm_person_get_failed")


@registry_router.post("/organizations", response_model=OrganizationRead, status_code=status.HTTP_201_CREATED)
def create_organization(
    request: Request,
    dto: OrganizationCreate,
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> OrganizationRead | JSONResponse:
    try:
        require_permission(user, "crm.organizations.create")
        return organization_service.create_organization(repo, user, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_organization_create_failed")


@registry_router.get("/organizations", response_model=list[OrganizationRead])
def list_organizations(
    request: Request,
    is_client: bool | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> list[OrganizationRead] | JSONResponse:
    try:
        require_permission(user, "crm.organizations.read")
        return organization_service.list_organizations(repo, is_client, cursor, limit)
    except HTTPException as exc:
        return _failure(request, exc, "crm_organization_list_failed")


@registry_router.get("/organizations/{organization_id}", response_model=OrganizationRead)
def get_organization(
    request: Request,
    organization_id: uuid.UUID,
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> OrganizationRead | JSONResponse:
    try:
        require_permission(user, "crm.organizations.read")
        return organization_service.get_organization(repo, organization_id)
    except HTTPException as exc:
        return _failure(request, exc, "crm_organization_get_failed")


@registry_router.post("/affiliations", response_model=AffiliationRead, status_code=status.HTTP_201_CREATED)
def create_affiliation(
    request: Request,
    dto: AffiliationCreate,
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> AffiliationRead | JSONResponse:
    try:
        require_permission(user, "crm.affiliations.create")
        return affiliation_service.create_affiliation(repo, user, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_affiliation_create_failed")


@registry_router.get("/organizations/{organization_id}/affiliations", response_model=AffiliationSelectorResponse)
def list_organization_affiliations(
    request: Request,
    organization_id: uuid.UUID,
    q: str | None = Query(default=None),
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> AffiliationSelectorResponse | JSONResponse:
    try:
        require_permission(user, "crm.selector.read")
        return list_affiliated_persons(repo, organization_id, q)
    except HTTPException as exc:
        return _failure(request, exc, "crm_affiliation_list_failed")


@registry_router.post(
    "/organizations/{organization_id}/referents",
    response_model=ReferentCreateResult,
    status_code=status.HTTP_201_CREATED,
)
def quick_create_referent(
    request: Request,
    organization_id: uuid.UUID,
    dto: ReferentQuickCreate,
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> ReferentCreateResult | JSONResponse:
    try:
        require_permission(user, "crm.affiliations.create")
        return affiliation_service.quick_create_referent(repo, user, organization_id, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_referent_create_failed")


# Selector


@selector_router.get("/selector/entities", response_model=EntitySelectorResponse)
def select_entities(
    request: Request,
    entity_type: EntityType = Query(...),
    q: str = Query(default=""),
    province: str | None = Query(default=None),
    org_type: str | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1),
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> EntitySelectorResponse | JSONResponse:
    try:
        require_permission(user, "crm.selector.read")
        return search_entities(repo, entity_type, q, province=province, org_type=org_type, limit=limit)
    except HTTPException as exc:
        return _failure(request, exc, "crm_selector_search_failed")


@selector_router.get("/selector/facets", response_model=FacetOptions)
def selector_facets(
    request: Request,
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> FacetOptions | JSONResponse:
    try:
        require_permission(user, "crm.selector.read")
        return discover_facets(repo)
    except HTTPException as exc:
        return _failure(request, exc, "crm_selector_facets_failed")


# Inbound contacts


@inbound_router.post("/inbound-contacts", response_model=InboundContactRead, status_code=status.HTTP_201_CREATED)
def create_inbound_contact(
    request: Request,
    dto: InboundContactCreate,
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> InboundContactRead | JSONResponse:
    try:
        require_permission(user, "crm.inbound_contacts.create")
        return inbound_contact_service.create_contact(repo, user, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_inbound_contact_create_failed")


@inbound_router.get("/inbound-contacts", response_model=list[InboundContactRead])
def list_inbound_contacts(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> list[InboundContactRead] | JSONResponse:
    try:
        require_permission(user, "crm.inbound_contacts.read")
        return inbound_contact_service.list_contacts(repo, status_filter, cursor, limit)
    except HTTPException as exc:
        return _failure(request, exc, "crm_inbound_contact_list_failed")


@inbound_router.post(
    "/inbound-contacts/{contact_id}/convert-organization",
    response_model=InboundContactConversionResult,
    status_code=status.HTTP_201_CREATED,
)
def convert_inbound_contact_to_organization(
    request: Request,
    contact_id: uuid.UUID,
    dto: InboundContactToOrganizationRequest,
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> InboundContactConversionResult | JSONResponse:
    try:
        require_permission(user, "crm.inbound_contacts.convert")
        return inbound_contact_service.convert_to_organization(repo, user, contact_id, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_inbound_contact_convert_failed")


@inbound_router.post(
    "/inbound-contacts/{contact_id}/convert-person",
    response_model=InboundContactConversionResult,
    status_code=status.HTTP_201_CREATED,
)
def convert_inbound_contact_to_person(
    request: Request,
    contact_id: uuid.UUID,
    dto: InboundContactToPersonRequest,
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> InboundContactConversionResult | JSONResponse:
    try:
        require_permission(user, "crm.inbound_contacts.convert")
        return inbound_contact_service.convert_to_person(repo, user, contact_id, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_inbound_contact_convert_failed")


# Leads


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.create")
        return lead_service.create_lead(repo, user, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_lead_create_failed")


@leads_router.get("/leads", response_model=list[LeadRead])
def list_leads(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    source: str | None = Query(default=None),
    assigned_to: str | None = Query(default=None),
    q: str | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadRead] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        filters = {"status": status_filter, "source": source, "assigned_to": assigned_to, "q": q}
        return lead_service.list_leads(repo, filters, cursor, limit)
    except HTTPException as exc:
        return _failure(request, exc, "crm_lead_list_failed")


@leads_router.post("/leads/intake", response_model=LeadIntakeResult)
def intake_lead(
    request: Request,
    dto: LeadIntakeRequest,
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> LeadIntakeResult | JSONResponse:
    try:
        require_permission(user, "crm.leads.intake")
        return lead_service.intake(repo, user, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_lead_intake_failed")


@leads_router.get("/leads/export", response_model=None)
def export_leads(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    source: str | None = Query(default=None),
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> Response | JSONResponse:
    try:
        require_permission(user, "crm.leads.export")
        leads = lead_service.list_leads(repo, {"status": status_filter, "source": source}, None, 10000)
        return Response(
            content=export_leads_csv(leads),
            media_type="text/csv",
            headers={"Content-Disposition": 'attachment; filename="leads.csv"'},
        )
    except HTTPException as exc:
        return _failure(request, exc, "crm_lead_export_failed")


@leads_router.get("/leads/import-template", response_model=None)
def lead_import_template(
    request: Request,
    user: ActorUser = Depends(get_current_user),
) -> Response | JSONResponse:
    try:
        require_permission(user, "crm.leads.import")
        return Response(
            content=build_import_template(),
            media_type="text/csv",
            headers={"Content-Disposition": 'attachment; filename="lead_import_template.csv"'},
        )
    except HTTPException as exc:
        return _failure(request, exc, "crm_lead_template_failed")


@leads_router.post("/leads/import", response_model=LeadImportResult)
def import_leads(
    request: Request,
    file: UploadFile = File(...),
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> LeadImportResult | JSONResponse:
    try:
        require_permission(user, "crm.leads.import")
        return import_leads_csv(repo, user, file.file.read(), lead_service=lead_service)
    except HTTPException as exc:
        return _failure(request, exc, "crm_lead_import_failed")


@leads_router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_service.get_lead(repo, lead_id)
    except HTTPException as exc:
        return _failure(request, exc, "crm_lead_get_failed")


@leads_router.patch("/leads/{lead_id}", response_model=LeadRead)
def update_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.update")
        return lead_service.update_lead(repo, user, lead_id, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_lead_update_failed")


@leads_router.post("/leads/{lead_id}/activities", response_model=LeadActivityRead, status_code=status.HTTP_201_CREATED)
def add_lead_activity(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadActivityCreate,
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> LeadActivityRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.update")
        return lead_service.add_activity(repo, user, lead_id, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_lead_activity_create_failed")


@leads_router.get("/leads/{lead_id}/activities", response_model=list[LeadActivityRead])
def list_lead_activities(
    request: Request,
    lead_id: uuid.UUID,
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadActivityRead] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_service.list_activities(repo, lead_id)
    except HTTPException as exc:
        return _failure(request, exc, "crm_lead_activity_list_failed")


@leads_router.post("/leads/{lead_id}/convert", response_model=LeadConversionResult)
def convert_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadConvertRequest,
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> LeadConversionResult | JSONResponse:
    try:
        require_permission(user, "crm.leads.convert")
        return lead_service.convert_lead(repo, user, lead_id, dto, idempotency_key)
    except HTTPException as exc:
        return _failure(request, exc, "crm_lead_convert_failed")


# Opportunities


@opportunities_router.post("/opportunities", response_model=OpportunityMutationResult, status_code=status.HTTP_201_CREATED)
def create_prospect(
    request: Request,
    dto: ProspectCreate,
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityMutationResult | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.create")
        return opportunity_service.create_prospect(repo, user, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_prospect_create_failed")


@opportunities_router.get("/opportunities", response_model=list[OpportunityRead])
def list_opportunities(
    request: Request,
    stage: str | None = Query(default=None),
    assigned_to: str | None = Query(default=None),
    lead_id: uuid.UUID | None = Query(default=None),
    q: str | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> list[OpportunityRead] | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        filters = {"stage": stage, "assigned_to": assigned_to, "lead_id": lead_id, "q": q}
        return opportunity_service.list_opportunities(repo, filters, cursor, limit)
    except HTTPException as exc:
        return _failure(request, exc, "crm_opportunity_list_failed")


@opportunities_router.get("/opportunities/{opportunity_id}", response_model=OpportunityDetail)
def get_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityDetail | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return opportunity_service.get_opportunity(repo, opportunity_id)
    except HTTPException as exc:
        return _failure(request, exc, "crm_opportunity_get_failed")


@opportunities_router.patch("/opportunities/{opportunity_id}", response_model=OpportunityMutationResult)
def update_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: OpportunityUpdate,
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityMutationResult | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.update")
        return opportunity_service.update_opportunity(repo, user, opportunity_id, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_opportunity_update_failed")


@opportunities_router.delete("/opportunities/{opportunity_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "crm.opportunities.delete")
        opportunity_service.delete_opportunity(repo, user, opportunity_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return _failure(request, exc, "crm_opportunity_delete_failed")


@opportunities_router.post("/opportunities/{opportunity_id}/stage", response_model=OpportunityMutationResult)
def change_opportunity_stage(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: OpportunityStageChangeRequest,
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> OpportunityMutationResult | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.change_stage")
        return opportunity_service.change_stage(repo, user, opportunity_id, dto, idempotency_key)
    except HTTPException as exc:
        return _failure(request, exc, "crm_opportunity_change_stage_failed")


@opportunities_router.post("/opportunities/{opportunity_id}/convert-client", response_model=OpportunityMutationResult)
def convert_opportunity_to_client(
    request: Request,
    opportunity_id: uuid.UUID,
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityMutationResult | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.convert_client")
        return opportunity_service.convert_to_client(repo, user, opportunity_id)
    except HTTPException as exc:
        return _failure(request, exc, "crm_opportunity_convert_client_failed")


@opportunities_router.get("/opportunities/{opportunity_id}/quotes", response_model=list[LinkedQuoteRead])
def list_opportunity_quotes(
    request: Request,
    opportunity_id: uuid.UUID,
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> list[LinkedQuoteRead] | JSONResponse:
    try:
        require_permission(user, "crm.quotes.read")
        return quote_service.list_linked_quotes(repo, opportunity_id)
    except HTTPException as exc:
        return _failure(request, exc, "crm_opportunity_quotes_failed")


@opportunities_router.post(
    "/opportunities/{opportunity_id}/quotes",
    response_model=LinkedQuoteRead,
    status_code=status.HTTP_201_CREATED,
)
def link_opportunity_quote(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: QuoteLinkRequest,
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> LinkedQuoteRead | JSONResponse:
    try:
        require_permission(user, "crm.quotes.link")
        return quote_service.link_quote(repo, user, opportunity_id, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_opportunity_quote_link_failed")


@opportunities_router.get("/opportunities/{opportunity_id}/quote-summary", response_model=QuoteSummary)
def opportunity_quote_summary(
    request: Request,
    opportunity_id: uuid.UUID,
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> QuoteSummary | JSONResponse:
    try:
        require_permission(user, "crm.quotes.read")
        return quote_service.quote_summary(repo, opportunity_id)
    except HTTPException as exc:
        return _failure(request, exc, "crm_opportunity_quote_summary_failed")


@opportunities_router.get("/opportunities/{opportunity_id}/quote-handoff", response_model=QuoteHandoff)
def opportunity_quote_handoff(
    request: Request,
    opportunity_id: uuid.UUID,
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> QuoteHandoff | JSONResponse:
    try:
        require_permission(user, "crm.quotes.create")
        return quote_service.build_handoff(repo, opportunity_id)
    except HTTPException as exc:
        return _failure(request, exc, "crm_opportunity_quote_handoff_failed")


# Quotes


@quotes_router.post("/quotes", response_model=QuoteRead, status_code=status.HTTP_201_CREATED)
def create_quote(
    request: Request,
    dto: QuoteCreate,
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> QuoteRead | JSONResponse:
    try:
        require_permission(user, "crm.quotes.create")
        return quote_service.create_quote(repo, user, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_quote_create_failed")


@quotes_router.get("/quotes/{quote_id}", response_model=QuoteRead)
def get_quote(
    request: Request,
    quote_id: uuid.UUID,
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> QuoteRead | JSONResponse:
    try:
        require_permission(user, "crm.quotes.read")
        return quote_service.get_quote(repo, quote_id)
    except HTTPException as exc:
        return _failure(request, exc, "crm_quote_get_failed")


@quotes_router.patch("/quotes/{quote_id}/status", response_model=QuoteRead)
def update_quote_status(
    request: Request,
    quote_id: uuid.UUID,
    dto: QuoteStatusUpdate,
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> QuoteRead | JSONResponse:
    try:
        require_permission(user, "crm.quotes.update")
        return quote_service.update_status(repo, user, quote_id, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_quote_status_update_failed")


@quotes_router.get("/clients", response_model=ClientListResponse)
def list_clients(
    request: Request,
    client_type: EntityType | None = Query(default=None),
    sort_by: ClientSort = Query(default="clv"),
    sort_order: SortOrder = Query(default="desc"),
    repo: CrmRepository = Depends(get_repository),
    user: ActorUser = Depends(get_current_user),
) -> ClientListResponse | JSONResponse:
    try:
        require_permission(user, "crm.clients.read")
        return quote_service.list_clients(repo, client_type, sort_by, sort_order)
    except HTTPException as exc:
        return _failure(request, exc, "crm_client_list_failed")
