from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, StringConstraints, TypeAdapter

EMAIL_KINDS = ("email", "pec")
PHONE_KINDS = ("phone", "mobile", "fax")
PRIMARY_PHONE_KINDS = {"phone", "mobile"}

PhoneNumber = Annotated[str, StringConstraints(strip_whitespace=True, min_length=3, max_length=64)]


class EmailContact(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["email", "pec"]
    value: EmailStr


class PhoneContact(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["phone", "mobile", "fax"]
    value: PhoneNumber


ContactMethod = Annotated[EmailContact | PhoneContact, Field(discriminator="kind")]

_contact_list_adapter = TypeAdapter(list[ContactMethod])


def parse_contact_methods(raw: Any) -> list[EmailContact | PhoneContact]:
    """Validate a stored or submitted contact list. Raises pydantic.ValidationError."""
    if raw is None:
        return []
    return _contact_list_adapter.validate_python(raw)


def dump_contact_methods(methods: list[EmailContact | PhoneContact]) -> list[dict[str, str]]:
    return [{"kind": item.kind, "value": str(item.value)} for item in methods]


def build_contact_methods(email: str | None, phone: str | None, *, phone_kind: str = "phone") -> list[EmailContact | PhoneContact]:
    raw: list[dict[str, str]] = []
    if email:
        raw.append({"kind": "email", "value": email.strip()})
    if phone:
        raw.append({"kind": phone_kind, "value": phone.strip()})
    return parse_contact_methods(raw)


def primary_email(methods: list[EmailContact | PhoneContact]) -> str | None:
    for item in methods:
        if item.kind == "email":
            return str(item.value)
    return None


def primary_phone(methods: list[EmailContact | PhoneContact]) -> str | None:
    for item in methods:
        if item.kind in PRIMARY_PHONE_KINDS:
            return str(item.value)
    return None


def emails_of(methods: list[EmailContact | PhoneContact]) -> list[str]:
    return [str(item.value) for item in methods if item.kind in EMAIL_KINDS]


def phones_of(methods: list[EmailContact | PhoneContact]) -> list[str]:
    return [str(item.value) for item in methods if item.kind in PHONE_KINDS]
