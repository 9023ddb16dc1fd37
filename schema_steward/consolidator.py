"""Field consolidator — folds legacy columns into one nested document field.

``build_document`` is pure: same record in, same document out, keys in
mapping order. ``consolidate_group`` sweeps the table page by page and writes
the document for every record with legacy data. A failed write is logged and
counted; the sweep carries on, and re-running it is always safe because
unchanged documents are not rewritten.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from .context import StewardContext
from .db.queries import define_object_field, iter_pages, update_field
from .errors import StewardError
from .groups import DERIVERS
from .lock import migration_lock
from .models.types import (
    ConsolidationGroup,
    ConsolidationPreview,
    ConsolidationResult,
    RecordError,
)
from .transforms import get_transform, is_populated

logger = logging.getLogger(__name__)

UNPARSED_KEY = "_unparsed"


def _set_path(document: dict[str, Any], path: str, value: Any) -> bool:
    """Place ``value`` at a dotted path. False when the path is already taken."""
    node = document
    parts = path.split(".")
    for part in parts[:-1]:
        node = node.setdefault(part, {})
        if not isinstance(node, dict):
            return False
    if parts[-1] in node:
        return False
    node[parts[-1]] = value
    return True


def _json_safe(value: Any) -> Any:
    """Raw legacy values kept under _unparsed must survive a JSON round trip."""
    if value is None or isinstance(value, str | int | float | bool):
        return value
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_json_safe(v) for v in value]
    return str(value)


def build_document(
    group: ConsolidationGroup,
    record: dict[str, Any],
) -> tuple[dict[str, Any] | None, list[str]]:
    """Build the nested document for one record.

    Returns ``(document, unparsed_keys)``. The document is ``None`` when no
    source column is populated. Mappings with ``fallback_for`` run after all
    others; the first mapping that yields a value for a destination key wins.
    A value whose path collides with one already placed is kept raw under
    ``_unparsed``.
    """
    document: dict[str, Any] = {}
    unparsed: dict[str, Any] = {}
    filled: set[str] = set()

    ordered = [m for m in group.mappings if m.fallback_for is None]
    ordered += [m for m in group.mappings if m.fallback_for is not None]
    for mapping in ordered:
        raw = record.get(mapping.source)
        if not is_populated(raw):
            continue
        if mapping.dest in filled:
            continue
        try:
            value = get_transform(mapping.transform)(raw)
        except Exception:  # noqa: BLE001
            logger.debug("Transform %s raised on %r", mapping.transform, raw, exc_info=True)
            value = None
        if is_populated(value) and _set_path(document, mapping.dest, value):
            filled.add(mapping.dest)
            unparsed.pop(mapping.dest, None)
        elif mapping.dest not in unparsed:
            unparsed[mapping.dest] = _json_safe(raw)

    if not document and not unparsed:
        return None, []

    if document and group.derive:
        DERIVERS[group.derive](document, record)
    if unparsed:
        document[UNPARSED_KEY] = dict(sorted(unparsed.items()))
    return document, sorted(unparsed)


def canonical(document: Any) -> str:
    return json.dumps(document, sort_keys=True, separators=(",", ":"), default=str)


def documents_equal(old: Any, new: Any) -> bool:
    """True when storing ``new`` over ``old`` would change nothing."""
    return canonical(old) == canonical(new)


async def consolidate_group(
    ctx: StewardContext,
    table: str,
    group: ConsolidationGroup,
    *,
    dry_run: bool = False,
    preview_limit: int = 5,
) -> ConsolidationResult:
    """Sweep the table and write ``group.target`` for every record with legacy data.

    Never raises for a single record; see ``ConsolidationResult.errors``.
    """
    result = ConsolidationResult(group=group.name, target=group.target, dry_run=dry_run)

    if not dry_run:
        created = await define_object_field(ctx.db, table, group.target)
        if created:
            logger.info("Added field %s.%s", table, group.target)

    async for page in iter_pages(ctx.db, table, ctx.page_size):
        for record in page:
            record_id = record.get("id")
            try:
                document, unparsed_keys = build_document(group, record)
            except Exception as exc:  # noqa: BLE001
                result.attempted += 1
                result.failed += 1
                result.errors.append(RecordError(record_id=str(record_id), error=str(exc)))
                logger.error("%s: could not build document for %s: %s", group.name, record_id, exc)
                continue
            if document is None:
                result.skipped += 1
                continue

            result.attempted += 1
            result.unparsed += len(unparsed_keys)
            if unparsed_keys:
                logger.info(
                    "%s %s: kept raw value(s) for %s",
                    group.name,
                    record_id,
                    ", ".join(unparsed_keys),
                )

            if dry_run:
                if len(result.previews) < preview_limit:
                    result.previews.append(
                        ConsolidationPreview(
                            record_id=str(record_id),
                            source={c: record.get(c) for c in group.source_columns
                                    if c in record},
                            destination=document,
                        )
                    )
                continue

            if documents_equal(record.get(group.target), document):
                result.unchanged += 1
                continue

            try:
                await update_field(ctx.db, record_id, group.target, document)
            except StewardError as exc:
                result.failed += 1
                result.errors.append(RecordError(record_id=str(record_id), error=str(exc)))
                logger.error("Failed to update %s.%s: %s", record_id, group.target, exc)
                continue
            result.updated += 1

    logger.info(
        "%s: attempted=%d updated=%d unchanged=%d skipped=%d failed=%d",
        group.name,
        result.attempted,
        result.updated,
        result.unchanged,
        result.skipped,
        result.failed,
    )
    return result


async def consolidate_groups(
    ctx: StewardContext,
    table: str,
    groups: list[ConsolidationGroup],
    *,
    dry_run: bool = False,
    preview_limit: int = 5,
) -> list[ConsolidationResult]:
    """Run the consolidator for several groups under the table's migration lock."""
    results = []
    with migration_lock(ctx, table, enabled=not dry_run):
        for group in groups:
            results.append(
                await consolidate_group(
                    ctx, table, group, dry_run=dry_run, preview_limit=preview_limit
                )
            )
    return results
