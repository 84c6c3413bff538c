from __future__ import annotations

import csv
import io
import json
from decimal import Decimal, InvalidOperation
from typing import Any

from fastapi import HTTPException, status
from pydantic import ValidationError

from gestionale.crm.repositories import CrmRepository
from gestionale.crm.schemas import LeadCreate, LeadImportResult, LeadRead


LEAD_CSV_FIELDS = [
    "full_name",
    "email",
    "phone",
    "company",
    "role",
    "budget",
    "services_of_interest",
    "description",
    "source",
    "notes",
]
LEAD_EXPORT_FIELDS = ["id", *LEAD_CSV_FIELDS, "status", "campaign", "assigned_to", "created_at"]
TEMPLATE_SAMPLE_ROW = {
    "full_name": "Mario Rossi",
    "email": "mario.rossi@example.com",
    "phone": "+39 333 1234567",
    "company": "Acme Srl",
    "role": "CEO",
    "budget": "5000",
    "services_of_interest": "website;seo",
    "description": "New company website",
    "source": "manual",
    "notes": "",
}
MAX_IMPORT_ROWS = 1000


def _write_csv(rows: list[dict[str, Any]], fieldnames: list[str]) -> str:
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=fieldnames)
    writer.writeheader()
    for row in rows:
        writer.writerow(row)
    return output.getvalue()


def _row_error(row_number: int, code: str, message: str, raw_row: dict[str, Any]) -> dict[str, Any]:
    return {
        "row_number": row_number,
        "error_code": code,
        "message": message,
        "raw_row_json": json.dumps(raw_row),
    }


def _parse_budget(raw: str | None) -> float | None:
    if raw is None or raw.strip() == "":
        return None
    try:
        return float(Decimal(raw.strip().replace(",", ".")))
    except InvalidOperation as exc:
        raise ValueError(f"invalid budget: {raw}") from exc


def _parse_services(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(";") if item.strip()]


def build_import_template() -> str:
    return _write_csv([TEMPLATE_SAMPLE_ROW], LEAD_CSV_FIELDS)


def export_leads_csv(leads: list[LeadRead]) -> str:
    rows = [
        {
            "id": str(lead.id),
            "full_name": lead.full_name,
            "email": lead.email or "",
            "phone": lead.phone or "",
            "company": lead.company or "",
            "role": lead.role or "",
            "budget": "" if lead.budget is None else f"{lead.budget:.2f}",
            "services_of_interest": ";".join(lead.services_of_interest),
            "description": lead.description or "",
            "source": lead.source,
            "notes": lead.notes or "",
            "status": lead.status.value,
            "campaign": lead.campaign or "",
            "assigned_to": lead.assigned_to or "",
            "created_at": lead.created_at.isoformat(),
        }
        for lead in leads
    ]
    return _write_csv(rows, LEAD_EXPORT_FIELDS)


def import_leads_csv(repo: CrmRepository, actor_user: Any, payload: bytes, *, lead_service: Any) -> LeadImportResult:
    """Create one lead per CSV row. Rows missing both name and email are skipped, invalid rows reported."""
    try:
        csv_text = payload.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="file must be UTF-8 encoded CSV") from exc

    reader = csv.DictReader(io.StringIO(csv_text))
    if not reader.fieldnames or "full_name" not in reader.fieldnames:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="CSV header must include full_name")

    created_count = 0
    skipped_count = 0
    errors: list[dict[str, Any]] = []

    for index, raw_row in enumerate(reader, start=2):
        if index - 1 > MAX_IMPORT_ROWS:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"at most {MAX_IMPORT_ROWS} rows can be imported at once",
            )
        row = {key: (value.strip() if isinstance(value, str) else value) for key, value in raw_row.items() if key}
        if not row.get("full_name") and not row.get("email"):
            skipped_count += 1
            continue

        try:
            dto = LeadCreate(
                full_name=row.get("full_name") or str(row.get("email")),
                email=row.get("email") or None,
                phone=row.get("phone") or None,
                company=row.get("company") or None,
                role=row.get("role") or None,
                budget=_parse_budget(row.get("budget")),
                services_of_interest=_parse_services(row.get("services_of_interest")),
                description=row.get("description") or None,
                source=row.get("source") or "import",
                notes=row.get("notes") or None,
            )
            lead_service.create_lead(repo, actor_user, dto)
            created_count += 1
        except ValidationError as exc:
            errors.append(_row_error(index, "VALIDATION", str(exc.errors()[0].get("msg", "invalid row")), row))
        except HTTPException as exc:
            errors.append(_row_error(index, "HTTP_ERROR", str(exc.detail), row))
        except ValueError as exc:
            errors.append(_row_error(index, "ROW_ERROR", str(exc), row))

    return LeadImportResult(created_count=created_count, skipped_count=skipped_count, errors=errors)
