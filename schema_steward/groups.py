"""Consolidation group definitions.

The built-in groups cover the employee master table cleanup: contact details,
bank details, employment dates, statutory numbers and spouse details, each
folded from flat legacy columns into one nested document field. Extra groups
can be defined in YAML::

    groups:
      - name: emergency_contact
        target: emergency_contact
        mappings:
          - {source: emergency_name, dest: name}
          - {source: emergency_phone, dest: phone, transform: normalize_phone}

A YAML group with the same name as a built-in replaces it.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import date
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from . import is_identifier
from .models.types import ConsolidationGroup, FieldMapping
from .transforms import TRANSFORMS

logger = logging.getLogger(__name__)

Deriver = Callable[[dict[str, Any], dict[str, Any]], None]

_BANK_CODE = re.compile(r"^([A-Z]+)/")


# --- Derived keys ---
#
# Derivers add keys computed from values already in the document (and, for
# status, the record). They run only when the document is non-empty and
# never look at the clock, so repeated runs produce identical documents.


def _derive_bank(document: dict[str, Any], record: dict[str, Any]) -> None:
    name = document.get("bank_name")
    if isinstance(name, str):
        match = _BANK_CODE.match(name)
        if match:
            document["bank_code"] = match.group(1)


def _derive_timeline(document: dict[str, Any], record: dict[str, Any]) -> None:
    hire = document.get("hire_date")
    confirmed = document.get("confirmation_date")
    if hire and confirmed:
        try:
            days = (date.fromisoformat(confirmed) - date.fromisoformat(hire)).days
        except (TypeError, ValueError):
            days = None
        if days is not None:
            document["probation_months"] = round(days / 30.44, 1)
    if document.get("resign_date"):
        document["employment_status"] = "resigned"
    elif isinstance(record.get("active_status"), bool):
        document["employment_status"] = "active" if record["active_status"] else "inactive"


DERIVERS: dict[str, Deriver] = {
    "bank": _derive_bank,
    "timeline": _derive_timeline,
}


def _group(name: str, description: str, mappings: list[tuple], derive: str | None = None):
    return ConsolidationGroup(
        name=name,
        target=name,
        description=description,
        derive=derive,
        mappings=[
            FieldMapping(
                source=m[0],
                dest=m[1],
                transform=m[2] if len(m) > 2 else None,
                fallback_for=m[3] if len(m) > 3 else None,
            )
            for m in mappings
        ],
    )


BUILTIN_GROUPS: dict[str, ConsolidationGroup] = {
    g.name: g
    for g in (
        _group(
            "contact_info",
            "Phone, emails and postal address",
            [
                ("mobile", "phone.mobile", "normalize_phone"),
                ("personal_email", "emails.personal", "strip_text"),
                ("company_email", "emails.company", "strip_text"),
                ("address", "address.line1", "strip_text"),
                ("address2", "address.line2", "strip_text"),
                ("city", "address.city", "strip_text"),
                ("state", "address.state", "strip_text"),
                ("postcode", "address.postcode", "to_string"),
                ("country", "address.country", "strip_text"),
            ],
        ),
        _group(
            "bank_info",
            "Salary bank account",
            [
                ("bank_name", "bank_name", "strip_text"),
                ("bank_acc_no", "account_no", "to_string"),
                ("bank_branch", "branch"),
            ],
            derive="bank",
        ),
        _group(
            "employment_timeline",
            "Hire, confirmation and resignation dates",
            [
                ("employment_date", "hire_date", "parse_date"),
                ("confirmation_date", "confirmation_date", "parse_date"),
                ("resign_date", "resign_date", "parse_date"),
            ],
            derive="timeline",
        ),
        _group(
            "tax_info",
            "Income tax and statutory contribution numbers",
            [
                ("lhdn_no", "income_tax.tax_no", "to_string"),
                ("income_tax_branch", "income_tax.branch", "strip_text"),
                ("pcb", "income_tax.pcb_code", "to_string"),
                ("ea_form", "income_tax.ea_form", "to_string"),
                ("kwsp_no", "epf.account_no", "to_string"),
                ("epf_no", "epf.account_no", "to_string", "kwsp_no"),
                ("epf_group", "epf.group", "to_string"),
                ("perkeso_code", "socso.account_no", "to_string"),
                ("socso_no", "socso.account_no", "to_string", "perkeso_code"),
                ("socso_group", "socso.group", "to_string"),
                ("eis_group", "eis.group", "to_string"),
                ("ptptn_no", "ptptn.account_no", "to_string"),
            ],
        ),
        _group(
            "spouse_details",
            "Spouse identity and employment",
            [
                ("spouse_name", "name", "strip_text"),
                ("spouse_ic", "ic_number", "to_string"),
                ("spouse_occupation", "occupation", "strip_text"),
                ("spouse_employer", "employer", "strip_text"),
                ("spouse_employment_date", "employment_date", "parse_date"),
                ("spouse_dob", "dob", "parse_date"),
            ],
        ),
    )
}


def check_group(group: ConsolidationGroup) -> ConsolidationGroup:
    """Validate names, transforms and derivers. Raises ValueError."""
    if not is_identifier(group.target):
        raise ValueError(f"Group {group.name}: invalid target field {group.target!r}")
    if not group.mappings:
        raise ValueError(f"Group {group.name}: no mappings")
    for mapping in group.mappings:
        if not is_identifier(mapping.source):
            raise ValueError(f"Group {group.name}: invalid source column {mapping.source!r}")
        if mapping.source == group.target:
            raise ValueError(f"Group {group.name}: source and target are both {group.target!r}")
        parts = mapping.dest.split(".")
        if not all(parts) or any(p.startswith("_") for p in parts):
            raise ValueError(f"Group {group.name}: invalid destination key {mapping.dest!r}")
        if mapping.transform is not None and mapping.transform not in TRANSFORMS:
            raise ValueError(f"Group {group.name}: unknown transform {mapping.transform!r}")
        if mapping.fallback_for is not None:
            primaries = [
                m for m in group.mappings
                if m.source == mapping.fallback_for and m.fallback_for is None
            ]
            if not any(m.dest == mapping.dest for m in primaries):
                raise ValueError(
                    f"Group {group.name}: {mapping.source} is a fallback for "
                    f"{mapping.fallback_for!r}, which does not map to {mapping.dest!r}"
                )
    dests = sorted({m.dest for m in group.mappings})
    for shorter in dests:
        for longer in dests:
            if longer.startswith(shorter + "."):
                raise ValueError(
                    f"Group {group.name}: destination {shorter!r} would overwrite {longer!r}"
                )
    if group.derive is not None and group.derive not in DERIVERS:
        raise ValueError(f"Group {group.name}: unknown deriver {group.derive!r}")
    return group


def load_groups_file(path: Path) -> dict[str, ConsolidationGroup]:
    """Parse a YAML groups file."""
    with open(path, encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    entries = raw.get("groups", []) if isinstance(raw, dict) else raw
    if not isinstance(entries, list):
        raise ValueError(f"{path}: expected a 'groups' list")

    groups: dict[str, ConsolidationGroup] = {}
    for entry in entries:
        if isinstance(entry, dict):
            entry = {**entry, "target": entry.get("target") or entry.get("name")}
        try:
            group = ConsolidationGroup.model_validate(entry)
        except ValidationError as exc:
            raise ValueError(f"{path}: invalid group definition: {exc}") from exc
        groups[group.name] = check_group(group)
    logger.debug("Loaded %d group(s) from %s", len(groups), path)
    return groups


def available_groups(groups_file: Path | str | None = None) -> dict[str, ConsolidationGroup]:
    """Built-in groups overlaid with any groups from ``groups_file``."""
    groups = dict(BUILTIN_GROUPS)
    if groups_file:
        groups.update(load_groups_file(Path(groups_file).expanduser()))
    return groups


def resolve_groups(
    names: list[str] | None,
    groups_file: Path | str | None = None,
) -> list[ConsolidationGroup]:
    """Select groups by name, in the order given; all groups when ``names`` is empty."""
    groups = available_groups(groups_file)
    if not names:
        return list(groups.values())
    missing = [n for n in names if n not in groups]
    if missing:
        raise ValueError(f"Unknown group(s): {', '.join(missing)}")
    return [groups[n] for n in names]
