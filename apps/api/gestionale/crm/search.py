from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import Select, and_, distinct, func, or_, select
from sqlalchemy.exc import SQLAlchemyError

from gestionale.core.config import get_settings
from gestionale.crm.contacts import parse_contact_methods, primary_email, primary_phone
from gestionale.crm.models import CRMOrganization, CRMPerson
from gestionale.crm.repositories import CrmRepository
from gestionale.crm.schemas import (
    AffiliatedPersonItem,
    AffiliationSelectorResponse,
    EntitySelectorResponse,
    FacetOptions,
    OrganizationSelectorItem,
    PersonSelectorItem,
)
from gestionale.metrics import observe_facet_degraded, observe_selector_lookup


logger = logging.getLogger("gestionale.crm.search")

PERSON_SEARCH_COLUMNS = (CRMPerson.full_name, CRMPerson.tax_code, CRMPerson.address)
ORGANIZATION_SEARCH_COLUMNS = (
    CRMOrganization.legal_name,
    CRMOrganization.vat_number,
    CRMOrganization.tax_code,
    CRMOrganization.registered_address,
    CRMOrganization.sector,
    CRMOrganization.description,
    CRMOrganization.province,
    CRMOrganization.municipality,
    CRMOrganization.rea_code,
)


def _like_any(columns: tuple[Any, ...], pattern: str) -> Any:
    return or_(*[func.lower(func.coalesce(column, "")).like(pattern) for column in columns])


def _resolve_limit(limit: int | None) -> int:
    cap = get_settings().selector_result_cap
    if limit is None or limit <= 0:
        return cap
    return min(limit, cap)


def search_entities(
    repo: CrmRepository,
    entity_type: str,
    query: str,
    *,
    province: str | None = None,
    org_type: str | None = None,
    limit: int | None = None,
) -> EntitySelectorResponse:
    normalized = query.strip().lower()
    pattern = f"%{normalized}%"
    max_rows = _resolve_limit(limit)

    items: list[PersonSelectorItem | OrganizationSelectorItem] = []
    if entity_type == "person":
        stmt: Select[Any] = select(
            CRMPerson.id,
            CRMPerson.full_name,
            CRMPerson.tax_code,
            CRMPerson.address,
            CRMPerson.contacts,
        )
        if normalized:
            stmt = stmt.where(_like_any(PERSON_SEARCH_COLUMNS, pattern))
        rows = repo.session.execute(stmt.order_by(CRMPerson.full_name.asc()).limit(max_rows)).all()
        for row in rows:
            methods = parse_contact_methods(row.contacts)
            items.append(
                PersonSelectorItem(
                    id=row.id,
                    display_name=row.full_name,
                    tax_code=row.tax_code,
                    address=row.address,
                    email=primary_email(methods),
                    phone=primary_phone(methods),
                )
            )
        model: type[Any] = CRMPerson
    elif entity_type == "organization":
        stmt = select(
            CRMOrganization.id,
            CRMOrganization.legal_name,
            CRMOrganization.vat_number,
            CRMOrganization.province,
            CRMOrganization.municipality,
            CRMOrganization.org_type,
            CRMOrganization.contacts,
        )
        filters = []
        if normalized:
            filters.append(_like_any(ORGANIZATION_SEARCH_COLUMNS, pattern))
        if province:
            filters.append(CRMOrganization.province == province)
        if org_type:
            filters.append(CRMOrganization.org_type == org_type)
        if filters:
            stmt = stmt.where(and_(*filters))
        rows = repo.session.execute(stmt.order_by(CRMOrganization.legal_name.asc()).limit(max_rows)).all()
        for row in rows:
            methods = parse_contact_methods(row.contacts)
            items.append(
                OrganizationSelectorItem(
                    id=row.id,
                    display_name=row.legal_name,
                    vat_number=row.vat_number,
                    province=row.province,
                    municipality=row.municipality,
                    org_type=row.org_type,
                    email=primary_email(methods),
                    phone=primary_phone(methods),
                )
            )
        model = CRMOrganization
    else:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="unsupported entity type")

    empty_state: str | None = None
    if not items:
        empty_state = "no_matches" if repo.has_rows(model) else "no_data"
    observe_selector_lookup(entity_type, empty_state)
    return EntitySelectorResponse(entity_type=entity_type, query=query, items=items, empty_state=empty_state)


def _distinct_server_side(repo: CrmRepository, column: Any) -> list[str]:
    stmt = select(distinct(column)).where(and_(column.is_not(None), column != ""))
    return sorted(str(value) for value in repo.session.scalars(stmt).all())


def _distinct_from_sample(repo: CrmRepository, column: Any, sample_cap: int) -> list[str]:
    values = repo.session.scalars(select(column).where(column.is_not(None)).limit(sample_cap)).all()
    return sorted({str(value) for value in values if str(value).strip()})


def discover_facets(repo: CrmRepository) -> FacetOptions:
    """Distinct provinces and organization types for the selector filters.

    When the DISTINCT query is disabled or fails, options come from a capped sample and the
    response is flagged ``degraded`` since the sample can miss values.
    """
    settings = get_settings()
    facets = {"provinces": CRMOrganization.province, "org_types": CRMOrganization.org_type}
    resolved: dict[str, list[str]] = {}
    degraded = False

    for facet_name, column in facets.items():
        if settings.facets_use_server_distinct:
            try:
                resolved[facet_name] = _distinct_server_side(repo, column)
                continue
            except SQLAlchemyError as exc:
                repo.session.rollback()
                logger.warning(
                    "facet.distinct_failed",
                    extra={"action": "facet_discovery", "entity_type": facet_name, "error": str(exc)},
                )

        resolved[facet_name] = _distinct_from_sample(repo, column, settings.facet_sample_cap)
        degraded = True
        observe_facet_degraded(facet_name)

    return FacetOptions(provinces=resolved["provinces"], org_types=resolved["org_types"], degraded=degraded)


def list_affiliated_persons(repo: CrmRepository, organization_id: uuid.UUID, query: str | None) -> AffiliationSelectorResponse:
    if repo.get_organization(organization_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="organization not found")

    rows = repo.list_affiliations_for_organization(organization_id)
    if not rows:
        return AffiliationSelectorResponse(organization_id=organization_id, items=[], empty_state="no_affiliations")

    grouped: dict[uuid.UUID, AffiliatedPersonItem] = {}
    for affiliation, person in rows:
        existing = grouped.get(person.id)
        if existing is not None:
            existing.roles.append(affiliation.role)
            continue
        methods = parse_contact_methods(person.contacts)
        grouped[person.id] = AffiliatedPersonItem(
            affiliation_id=affiliation.id,
            person_id=person.id,
            full_name=person.full_name,
            role=affiliation.role,
            roles=[affiliation.role],
            email=primary_email(methods),
            phone=primary_phone(methods),
        )

    items = sorted(grouped.values(), key=lambda item: item.full_name.lower())
    needle = (query or "").strip().lower()
    if needle:
        items = [item for item in items if _matches_affiliation(item, needle)]

    return AffiliationSelectorResponse(
        organization_id=organization_id,
        items=items,
        empty_state=None if items else "no_matches",
    )


def _matches_affiliation(item: AffiliatedPersonItem, needle: str) -> bool:
    haystack = [item.full_name, item.email or "", item.phone or "", *item.roles]
    return any(needle in value.lower() for value in haystack)
