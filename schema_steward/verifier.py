"""Migration verifier — proves every record with legacy data has its nested field.

PASS/FAIL is count-based: ``legacy_count`` is the number of records with any
populated source column, ``nested_count`` the number with a populated target
field. A group passes when nested >= legacy. The optional sample check
rebuilds expected documents and reports key-level mismatches; those are
informational and do not change the verdict.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from .consolidator import UNPARSED_KEY, build_document, canonical
from .context import StewardContext
from .db.queries import iter_pages
from .models.documents import validate_document
from .models.types import ConsolidationGroup, GroupVerification, MigrationReport
from .transforms import is_populated

logger = logging.getLogger(__name__)

MAX_MISMATCHES = 20


def has_legacy_data(group: ConsolidationGroup, record: dict[str, Any]) -> bool:
    return any(is_populated(record.get(column)) for column in group.source_columns)


def _flatten(document: Any, prefix: str = "") -> dict[str, str]:
    if not isinstance(document, dict):
        return {prefix: canonical(document)}
    flat: dict[str, str] = {}
    for key, value in document.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict) and key != UNPARSED_KEY:
            flat.update(_flatten(value, path))
        else:
            flat[path] = canonical(value)
    return flat


def compare_documents(group: ConsolidationGroup, record: dict[str, Any]) -> list[str]:
    """Key-by-key differences between the stored and the expected document."""
    expected, _ = build_document(group, record)
    stored = record.get(group.target)
    problems = validate_document(group.name, stored)
    if expected is None or not isinstance(stored, dict):
        return problems

    want = _flatten(expected)
    have = _flatten(stored)
    for key in sorted(set(want) | set(have)):
        if key not in have:
            problems.append(f"{key}: missing")
        elif key not in want:
            problems.append(f"{key}: unexpected")
        elif want[key] != have[key]:
            problems.append(f"{key}: expected {want[key]}, found {have[key]}")
    return problems


async def verify_group(
    ctx: StewardContext,
    table: str,
    group: ConsolidationGroup,
    sample_size: int = 0,
) -> GroupVerification:
    """Count legacy vs nested records for one group over the whole table."""
    legacy = 0
    nested = 0
    sampled = 0
    mismatches: list[str] = []

    async for page in iter_pages(ctx.reader, table, ctx.page_size):
        for record in page:
            try:
                is_legacy = has_legacy_data(group, record)
                is_nested = is_populated(record.get(group.target))
            except Exception as exc:  # noqa: BLE001
                logger.warning("%s: could not evaluate %s: %s", group.name, record.get("id"), exc)
                legacy += 1
                continue

            legacy += is_legacy
            nested += is_nested

            if is_legacy and sampled < sample_size:
                sampled += 1
                try:
                    problems = compare_documents(group, record)
                except Exception as exc:  # noqa: BLE001
                    problems = [f"could not rebuild document: {exc}"]
                for problem in problems:
                    if len(mismatches) < MAX_MISMATCHES:
                        mismatches.append(f"{record.get('id')} {problem}")

    verification = GroupVerification(
        group=group.name,
        target=group.target,
        legacy_count=legacy,
        nested_count=nested,
        sampled=sampled,
        mismatches=mismatches,
    )
    if verification.passed:
        logger.info("%s: PASS (%d legacy, %d nested)", group.name, legacy, nested)
    else:
        logger.warning(
            "%s: FAIL (%d legacy, %d nested, %d missing)",
            group.name,
            legacy,
            nested,
            verification.deficit,
        )
    return verification


async def verify_groups(
    ctx: StewardContext,
    table: str,
    groups: list[ConsolidationGroup],
    sample_size: int = 0,
) -> MigrationReport:
    """Verify every group. Call only after consolidation writes have returned."""
    report = MigrationReport(table=table, created_at=datetime.now(UTC))
    for group in groups:
        report.groups.append(await verify_group(ctx, table, group, sample_size))
    return report
