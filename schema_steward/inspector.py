"""Schema inspector — discovers a table's columns by sampling rows.

The store's own catalog is not trusted to describe schemaless tables, so the
column set and semantic types come from the data itself: a small sample for
types (widened for columns that are null in every sampled row) and a full
paged pass for population counts. Read-only.
"""

from __future__ import annotations

import logging
import re
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from .context import StewardContext
from .db.queries import count_rows, fetch_page, iter_pages, list_tables
from .errors import SemanticDBError, StewardError
from .models.types import ColumnInfo, TableInspection
from .transforms import is_populated

logger = logging.getLogger(__name__)

_ISO_DATE_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}")
_UUID = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)

NULLABLE = "nullable"
DOCUMENT = "document"


def infer_type(value: Any) -> str:
    """Semantic type of a single value."""
    if value is None:
        return NULLABLE
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float | Decimal):
        return "decimal"
    if isinstance(value, datetime | date):
        return "timestamp/date"
    if isinstance(value, uuid.UUID):
        return "uuid"
    if isinstance(value, str):
        if _ISO_DATE_PREFIX.match(value):
            return "timestamp/date"
        if _UUID.match(value):
            return "uuid"
        return "text"
    if isinstance(value, dict):
        return DOCUMENT
    if isinstance(value, list | tuple):
        return "array"
    if "RecordID" in type(value).__name__:
        return "record"
    return type(value).__name__.lower()


def _merge_types(observed: list[str]) -> str:
    kinds = [t for t in observed if t != NULLABLE]
    if not kinds:
        return NULLABLE
    unique = sorted(set(kinds))
    if len(unique) == 1:
        return unique[0]
    if set(unique) == {"integer", "decimal"}:
        return "decimal"
    return "mixed"


def _observe(columns: dict[str, ColumnInfo], rows: list[dict[str, Any]]) -> None:
    for row in rows:
        for name, value in row.items():
            info = columns.setdefault(name, ColumnInfo(name=name))
            kind = infer_type(value)
            if kind not in info.observed_types:
                info.observed_types.append(kind)
            if kind == DOCUMENT:
                keys = set(info.document_keys) | {str(k) for k in value}
                info.document_keys = sorted(keys)
    for info in columns.values():
        info.inferred_type = _merge_types(info.observed_types)


async def inspect_table(
    ctx: StewardContext,
    table: str,
    sample_size: int | None = None,
) -> TableInspection:
    """Inspect one table. An unreadable table is reported, not raised."""
    db = ctx.reader
    sample_size = sample_size or ctx.config.sample_size
    try:
        try:
            known = await list_tables(db)
        except SemanticDBError:
            # Restricted principals may not see the catalog; fall through to a direct read
            known = None
        if known is not None and table not in known:
            return TableInspection(table=table, accessible=False, error="table does not exist")

        row_count = await count_rows(db, table)
        sample = await fetch_page(db, table, start=0, limit=sample_size)
        columns: dict[str, ColumnInfo] = {}
        _observe(columns, sample)
        sampled = len(sample)

        unresolved = [c for c in columns.values() if c.inferred_type == NULLABLE]
        widened = max(sample_size, ctx.config.max_sample_size)
        if unresolved and row_count > sampled and widened > sampled:
            logger.debug(
                "%s: %d all-null column(s) in sample, widening to %d rows",
                table,
                len(unresolved),
                widened,
            )
            sample = await fetch_page(db, table, start=0, limit=widened)
            _observe(columns, sample)
            sampled = len(sample)

        # Population pass over every row; also picks up columns the sample missed
        populated: dict[str, int] = {}
        async for page in iter_pages(db, table, ctx.page_size):
            for row in page:
                for name, value in row.items():
                    if name not in columns:
                        _observe(columns, [{name: value}])
                    elif columns[name].inferred_type == NULLABLE and value is not None:
                        _observe(columns, [{name: value}])
                    if is_populated(value):
                        populated[name] = populated.get(name, 0) + 1
        for name, info in columns.items():
            info.populated = populated.get(name, 0)

    except StewardError as exc:
        logger.warning("Table %s is inaccessible: %s", table, exc)
        return TableInspection(table=table, accessible=False, error=str(exc))

    return TableInspection(
        table=table,
        row_count=row_count,
        sampled=sampled,
        columns=dict(sorted(columns.items())),
    )


async def inspect_tables(
    ctx: StewardContext,
    tables: list[str],
    sample_size: int | None = None,
) -> list[TableInspection]:
    """Inspect several tables; one inaccessible table does not stop the batch."""
    results = []
    for table in tables:
        results.append(await inspect_table(ctx, table, sample_size))
    return results


def empty_columns(inspection: TableInspection, keep: tuple[str, ...] = ("id",)) -> list[str]:
    """Columns with no populated value in any row."""
    return [
        name
        for name, info in inspection.columns.items()
        if info.populated == 0 and name not in keep
    ]
