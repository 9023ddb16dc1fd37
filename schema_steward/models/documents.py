"""Shapes of the nested documents produced by the built-in groups.

Each model allows extra keys: legacy tables are irregular, and a document
that carries keys we do not know about is still valid. Unknown keys end up in
the model's extras rather than failing validation. Raw values that could not
be normalized live under ``_unparsed``.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class _Document(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    unparsed: dict[str, Any] | None = Field(default=None, alias="_unparsed")


class _Part(BaseModel):
    model_config = ConfigDict(extra="allow")


class Phone(_Part):
    mobile: str | None = None


class Emails(_Part):
    personal: str | None = None
    company: str | None = None


class Address(_Part):
    line1: str | None = None
    line2: str | None = None
    city: str | None = None
    state: str | None = None
    postcode: str | None = None
    country: str | None = None


class ContactInfo(_Document):
    phone: Phone | None = None
    emails: Emails | None = None
    address: Address | None = None


class BankInfo(_Document):
    bank_name: str | None = None
    bank_code: str | None = None
    account_no: str | None = None
    branch: Any = None


class EmploymentTimeline(_Document):
    hire_date: str | None = None
    confirmation_date: str | None = None
    resign_date: str | None = None
    probation_months: float | None = None
    employment_status: str | None = None


class IncomeTax(_Part):
    tax_no: str | None = None
    branch: str | None = None
    pcb_code: str | None = None
    ea_form: str | None = None


class StatutoryAccount(_Part):
    account_no: str | None = None
    group: str | None = None


class TaxInfo(_Document):
    income_tax: IncomeTax | None = None
    epf: StatutoryAccount | None = None
    socso: StatutoryAccount | None = None
    eis: StatutoryAccount | None = None
    ptptn: StatutoryAccount | None = None


class SpouseDetails(_Document):
    name: str | None = None
    ic_number: str | None = None
    occupation: str | None = None
    employer: str | None = None
    employment_date: str | None = None
    dob: str | None = None


DOCUMENT_MODELS: dict[str, type[_Document]] = {
    "contact_info": ContactInfo,
    "bank_info": BankInfo,
    "employment_timeline": EmploymentTimeline,
    "tax_info": TaxInfo,
    "spouse_details": SpouseDetails,
}


def validate_document(group_name: str, document: Any) -> list[str]:
    """Check a nested value against its group's shape. Empty list = valid.

    Groups without a registered model only need to be a mapping.
    """
    if not isinstance(document, dict):
        return [f"expected a document, got {type(document).__name__}"]
    model = DOCUMENT_MODELS.get(group_name)
    if model is None:
        return []
    try:
        model.model_validate(document)
    except ValidationError as exc:
        return [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        ]
    return []
