from __future__ import annotations

from datetime import date, datetime
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, StringConstraints, field_validator, model_validator

from gestionale.crm.contacts import ContactMethod, PhoneNumber
from gestionale.crm.stages import LeadStatus, OpportunityStage, QuoteStatus


EntityType = Literal["person", "organization"]
EmptyState = Literal["no_data", "no_matches", "no_affiliations"]
PersonName = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
ClientSort = Literal["clv", "name"]
SortOrder = Literal["asc", "desc"]


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


class Notice(BaseModel):
    kind: Literal["success"] = "success"
    message: str


# Registry


class PersonCreate(BaseModel):
    full_name: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    tax_code: str | None = None
    address: str | None = None
    contacts: list[ContactMethod] = Field(default_factory=list)
    notes: str | None = None

    @model_validator(mode="after")
    def _require_name(self) -> "PersonCreate":
        composed = " ".join(part.strip() for part in [self.first_name or "", self.last_name or ""] if part.strip())
        if not (self.full_name or "").strip() and not composed:
            raise ValueError("full_name or first_name/last_name is required")
        return self


class PersonRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    full_name: str
    first_name: str | None
    last_name: str | None
    tax_code: str | None
    address: str | None
    contacts: list[ContactMethod]
    primary_email: str | None
    primary_phone: str | None
    notes: str | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class OrganizationCreate(BaseModel):
    legal_name: str = Field(min_length=1)
    vat_number: str | None = None
    tax_code: str | None = None
    registered_address: str | None = None
    province: str | None = None
    municipality: str | None = None
    org_type: str | None = None
    sector: str | None = None
    description: str | None = None
    rea_code: str | None = None
    contacts: list[ContactMethod] = Field(default_factory=list)
    notes: str | None = None


class OrganizationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    legal_name: str
    vat_number: str | None
    tax_code: str | None
    registered_address: str | None
    province: str | None
    municipality: str | None
    org_type: str | None
    sector: str | None
    description: str | None
    rea_code: str | None
    contacts: list[ContactMethod]
    emails: list[str]
    phones: list[str]
    notes: str | None
    is_client: bool
    created_at: datetime
    updated_at: datetime
    row_version: int


class AffiliationCreate(BaseModel):
    person_id: UUID
    organization_id: UUID
    role: str = Field(min_length=1)

    @field_validator("role")
    @classmethod
    def _strip_role(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("role is required")
        return value.strip()


class AffiliationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    person_id: UUID
    organization_id: UUID
    role: str
    created_at: datetime


class ReferentQuickCreate(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: PhoneNumber | None = None
    role: str = Field(min_length=1)
    notes: str | None = None

    @field_validator("email", "phone", mode="before")
    @classmethod
    def _blank_contact(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @model_validator(mode="after")
    def _validate_required(self) -> "ReferentQuickCreate":
        if not self.first_name.strip() or not self.last_name.strip():
            raise ValueError("first_name and last_name are required")
        if not self.email and not self.phone:
            raise ValueError("at least one of email or phone is required")
        if not self.role.strip():
            raise ValueError("role is required")
        return self


class ReferentCreateResult(BaseModel):
    person: PersonRead
    affiliation: AffiliationRead
    notice: Notice


# Selectors


class PersonSelectorItem(BaseModel):
    id: UUID
    display_name: str
    tax_code: str | None
    address: str | None
    email: str | None
    phone: str | None


class OrganizationSelectorItem(BaseModel):
    id: UUID
    display_name: str
    vat_number: str | None
    province: str | None
    municipality: str | None
    org_type: str | None
    email: str | None
    phone: str | None


class EntitySelectorResponse(BaseModel):
    entity_type: EntityType
    query: str
    items: list[PersonSelectorItem | OrganizationSelectorItem]
    empty_state: EmptyState | None


class FacetOptions(BaseModel):
    provinces: list[str]
    org_types: list[str]
    degraded: bool = False


class AffiliatedPersonItem(BaseModel):
    affiliation_id: UUID
    person_id: UUID
    full_name: str
    role: str
    roles: list[str]
    email: str | None
    phone: str | None


class AffiliationSelectorResponse(BaseModel):
    organization_id: UUID
    items: list[AffiliatedPersonItem]
    empty_state: EmptyState | None


# Inbound contacts


class InboundContactCreate(BaseModel):
    full_name: str | None = None
    company: str | None = None
    role: str | None = None
    email: EmailStr | None = None
    phone: PhoneNumber | None = None
    services: list[str] = Field(default_factory=list)
    budget: float | None = Field(default=None, ge=0)
    timeline: str | None = None
    message: str | None = None
    form_type: str | None = None

    @field_validator("email", "phone", mode="before")
    @classmethod
    def _blank_contact(cls, value: Any) -> Any:
        return _blank_to_none(value)


class InboundContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    full_name: str | None
    company: str | None
    role: str | None
    email: str | None
    phone: str | None
    services: list[str]
    budget: float | None
    timeline: str | None
    message: str | None
    form_type: str | None
    status: str
    created_at: datetime
    updated_at: datetime


class InboundContactToOrganizationRequest(BaseModel):
    legal_name: str | None = None
    vat_number: str | None = None
    sector: str | None = None
    description: str | None = None
    notes: str | None = None


class InboundContactToPersonRequest(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    notes: str | None = None
    organization_name: str | None = None
    role: str | None = None


class InboundContactConversionResult(BaseModel):
    contact: InboundContactRead
    organization: OrganizationRead | None = None
    person: PersonRead | None = None
    affiliation: AffiliationRead | None = None
    notice: Notice


# Leads


class LeadCreate(BaseModel):
    full_name: PersonName
    email: EmailStr | None = None
    phone: PhoneNumber | None = None
    company: str | None = None
    role: str | None = None
    budget: float | None = Field(default=None, ge=0)
    services_of_interest: list[str] = Field(default_factory=list)
    description: str | None = None
    source: str = "manual"
    campaign: str | None = None
    status: LeadStatus = LeadStatus.NEW
    notes: str | None = None
    person_id: UUID | None = None
    organization_id: UUID | None = None
    referent_id: UUID | None = None
    assigned_to: str | None = None

    @field_validator("email", "phone", mode="before")
    @classmethod
    def _blank_contact(cls, value: Any) -> Any:
        return _blank_to_none(value)


class LeadUpdate(BaseModel):
    row_version: int = Field(ge=1)
    full_name: PersonName | None = None
    email: EmailStr | None = None
    phone: PhoneNumber | None = None
    company: str | None = None
    role: str | None = None
    budget: float | None = Field(default=None, ge=0)
    services_of_interest: list[str] | None = None
    description: str | None = None
    source: str | None = None
    status: LeadStatus | None = None
    notes: str | None = None
    person_id: UUID | None = None
    organization_id: UUID | None = None
    referent_id: UUID | None = None
    assigned_to: str | None = None

    @field_validator("phone", mode="before")
    @classmethod
    def _blank_phone(cls, value: Any) -> Any:
        return _blank_to_none(value)


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    full_name: str
    email: str | None
    phone: str | None
    company: str | None
    role: str | None
    budget: float | None
    services_of_interest: list[str]
    description: str | None
    source: str
    campaign: str | None
    status: LeadStatus
    notes: str | None
    attribution_metadata: dict[str, Any]
    person_id: UUID | None
    organization_id: UUID | None
    referent_id: UUID | None
    assigned_to: str | None
    created_by: str | None
    last_contact_at: datetime | None
    last_contact_method: str | None
    next_contact_at: datetime | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class LeadIntakeRequest(BaseModel):
    full_name: PersonName
    email: EmailStr
    phone: PhoneNumber | None = None
    company: str | None = None
    role: str | None = None
    budget: float | None = Field(default=None, ge=0)
    services_of_interest: list[str] = Field(default_factory=list)
    description: str | None = None
    notes: str | None = None
    marketing_source: str | None = None
    marketing_campaign: str | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    utm_content: str | None = None
    utm_term: str | None = None
    landing_page: str | None = None
    referrer: str | None = None

    @field_validator("phone", mode="before")
    @classmethod
    def _blank_phone(cls, value: Any) -> Any:
        return _blank_to_none(value)


class LeadIntakeResult(BaseModel):
    lead: LeadRead
    created: bool
    notice: Notice


class LeadConvertRequest(BaseModel):
    confirm: bool = False


class LeadConversionResult(BaseModel):
    lead: LeadRead
    opportunity: "OpportunityRead"
    notice: Notice


ContactActivityType = Literal["call", "email", "meeting", "whatsapp", "note", "task"]


class LeadActivityCreate(BaseModel):
    activity_type: ContactActivityType
    description: str = Field(min_length=1)
    outcome: str | None = None
    update_status: LeadStatus | None = None
    next_contact_days: int | None = Field(default=None, ge=0, le=365)

    @field_validator("description")
    @classmethod
    def _require_description(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("description is required")
        return value


class LeadActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID
    activity_type: str
    description: str
    outcome: str | None
    created_by: str | None
    created_at: datetime


class LeadImportResult(BaseModel):
    created_count: int
    skipped_count: int
    errors: list[dict[str, Any]]


# Opportunities


class ProspectCreate(BaseModel):
    entity_type: EntityType
    person_id: UUID | None = None
    organization_id: UUID | None = None
    referent_id: UUID | None = None
    name: str | None = None
    expected_revenue: float | None = Field(default=None, ge=0)
    expected_close_date: date | None = None
    description: str | None = None
    notes: str | None = None

    @model_validator(mode="after")
    def _validate_selection(self) -> "ProspectCreate":
        if self.entity_type == "person":
            if self.person_id is None:
                raise ValueError("a person must be selected")
        else:
            if self.organization_id is None:
                raise ValueError("an organization must be selected")
            if self.referent_id is None:
                raise ValueError("a referent must be selected for an organization")
        return self


class OpportunityUpdate(BaseModel):
    row_version: int = Field(ge=1)
    name: str | None = Field(default=None, min_length=1)
    probability: int | None = Field(default=None, ge=0, le=100)
    expected_revenue: float | None = Field(default=None, ge=0)
    expected_close_date: date | None = None
    description: str | None = None
    notes: str | None = None
    assigned_to: str | None = None


class OpportunityStageChangeRequest(BaseModel):
    stage: OpportunityStage
    row_version: int = Field(ge=1)


class OpportunityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID | None
    person_id: UUID | None
    organization_id: UUID | None
    referent_id: UUID | None
    referent_role: str | None = None
    name: str
    source: str | None
    stage: OpportunityStage
    probability: int | None
    expected_revenue: float | None
    expected_close_date: date | None
    description: str | None
    notes: str | None
    closed_at: datetime | None
    created_by: str | None
    assigned_to: str | None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None
    row_version: int


class OpportunityMutationResult(BaseModel):
    opportunity: OpportunityRead
    notice: Notice


# Quotes


class QuoteCreate(BaseModel):
    quote_number: str = Field(min_length=1)
    title: str | None = None
    person_id: UUID | None = None
    organization_id: UUID | None = None
    status: QuoteStatus = QuoteStatus.DRAFT
    total_amount: float = Field(default=0, ge=0)
    opportunity_id: UUID | None = None
    is_primary: bool = False

    @model_validator(mode="after")
    def _require_client(self) -> "QuoteCreate":
        if self.person_id is None and self.organization_id is None:
            raise ValueError("quote requires a person or organization client")
        return self


class QuoteRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    quote_number: str
    title: str | None
    person_id: UUID | None
    organization_id: UUID | None
    status: QuoteStatus
    total_amount: float
    created_by: str | None
    created_at: datetime
    updated_at: datetime


class QuoteStatusUpdate(BaseModel):
    status: QuoteStatus


class QuoteLinkRequest(BaseModel):
    quote_id: UUID
    is_primary: bool = False


class LinkedQuoteRead(QuoteRead):
    is_primary: bool


class QuoteSummary(BaseModel):
    quote_count: int
    accepted_count: int
    total_value: float


class QuoteHandoff(BaseModel):
    client_type: EntityType
    client_id: UUID
    opportunity_id: UUID
    url: str


class ClientValue(BaseModel):
    client_id: UUID
    client_type: EntityType
    name: str
    total_quotes: int
    accepted_quotes: int
    conversion_rate: int
    lifetime_value: float
    first_purchase_at: datetime | None
    last_purchase_at: datetime | None


class ClientListResponse(BaseModel):
    items: list[ClientValue]
    count: int


class OpportunityDetail(BaseModel):
    opportunity: OpportunityRead
    quotes: list[LinkedQuoteRead]
    quote_summary: QuoteSummary


LeadConversionResult.model_rebuild()
