"""Generic row-level operations against the hosted store.

Everything the components need from the database goes through here:
select-with-paging, count, insert, update-by-key, and the DDL escape hatch
for adding and removing fields. Table and field names are interpolated into
SurrealQL, so they are validated as plain identifiers first; values always
travel as query parameters.

Note: record IDs are passed back to the database as parameters (``$rid``)
rather than formatted into the statement, so UUID-style keys need no quoting.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

from .. import is_identifier
from ..errors import InvalidIdentifier
from .client import StewardDatabase

logger = logging.getLogger(__name__)


def check_identifier(name: str) -> str:
    """Return ``name`` unchanged, or raise if it is not a plain identifier."""
    if not is_identifier(name):
        raise InvalidIdentifier(f"Not a valid table/field name: {name!r}")
    return name


def _info_section(info: Any, *keys: str) -> dict[str, Any]:
    """Pull one section out of an INFO FOR ... result (v1 and v2 key names)."""
    if isinstance(info, list):
        info = info[0] if info else {}
    if not isinstance(info, dict):
        return {}
    for key in keys:
        section = info.get(key)
        if isinstance(section, dict):
            return section
    return {}


# ============================================================
# CATALOG
# ============================================================


async def list_tables(db: StewardDatabase) -> list[str]:
    """Names of all tables defined in the selected database."""
    info = await db.query("INFO FOR DB")
    return sorted(_info_section(info, "tables", "tb").keys())


async def list_defined_fields(db: StewardDatabase, table: str) -> list[str]:
    """Fields with an explicit DEFINE FIELD on ``table``."""
    check_identifier(table)
    info = await db.query(f"INFO FOR TABLE {table}")
    return sorted(_info_section(info, "fields", "fd").keys())


async def field_defined(db: StewardDatabase, table: str, field: str) -> bool:
    check_identifier(field)
    return field in await list_defined_fields(db, table)


# ============================================================
# READS
# ============================================================


async def count_rows(db: StewardDatabase, table: str) -> int:
    """Exact row count for ``table``."""
    check_identifier(table)
    result = await db.query(f"SELECT count() FROM {table} GROUP ALL")
    if not result or not isinstance(result[0], dict):
        return 0
    return int(result[0].get("count", 0) or 0)


async def fetch_page(
    db: StewardDatabase,
    table: str,
    start: int = 0,
    limit: int = 500,
) -> list[dict[str, Any]]:
    """One page of full records, ordered by primary key."""
    check_identifier(table)
    rows = await db.query(
        f"SELECT * FROM {table} ORDER BY id START $start LIMIT $limit",
        {"start": start, "limit": limit},
    )
    return [row for row in rows if isinstance(row, dict)]


async def iter_pages(
    db: StewardDatabase,
    table: str,
    page_size: int = 500,
) -> AsyncIterator[list[dict[str, Any]]]:
    """Yield successive pages until the table is exhausted."""
    page_size = max(1, page_size)
    start = 0
    while True:
        page = await fetch_page(db, table, start=start, limit=page_size)
        if not page:
            return
        yield page
        if len(page) < page_size:
            return
        start += page_size


async def fetch_all(
    db: StewardDatabase,
    table: str,
    page_size: int = 500,
) -> list[dict[str, Any]]:
    """Every record in ``table``, fetched page by page."""
    records: list[dict[str, Any]] = []
    async for page in iter_pages(db, table, page_size):
        records.extend(page)
    return records


async def get_record(db: StewardDatabase, record_id: Any) -> dict[str, Any] | None:
    result = await db.query("SELECT * FROM $rid", {"rid": record_id})
    return result[0] if result and isinstance(result[0], dict) else None


async def field_present(
    db: StewardDatabase,
    table: str,
    field: str,
    page_size: int = 500,
) -> bool:
    """True when any record still carries ``field`` (even as null)."""
    check_identifier(field)
    async for page in iter_pages(db, table, page_size):
        if any(field in record for record in page):
            return True
    return False


# ============================================================
# WRITES
# ============================================================


async def insert_record(
    db: StewardDatabase,
    table: str,
    data: dict[str, Any],
    record_key: str | None = None,
) -> dict[str, Any]:
    """Create a record, optionally with an explicit key."""
    check_identifier(table)
    content = {k: v for k, v in data.items() if k != "id"}
    if record_key is not None:
        check_identifier(record_key)
        result = await db.query(f"CREATE {table}:{record_key} CONTENT $data", {"data": content})
    else:
        result = await db.query(f"CREATE {table} CONTENT $data", {"data": content})
    return result[0] if result else {}


async def set_fields(
    db: StewardDatabase,
    record_id: Any,
    values: dict[str, Any],
) -> None:
    """Update-by-key: overwrite the given top-level fields on one record."""
    if not values:
        return
    sets: list[str] = []
    params: dict[str, Any] = {"rid": record_id}
    for i, (field, value) in enumerate(values.items()):
        check_identifier(field)
        sets.append(f"{field} = $v{i}")
        params[f"v{i}"] = value
    await db.query(f"UPDATE $rid SET {', '.join(sets)} RETURN NONE", params)


async def update_field(db: StewardDatabase, record_id: Any, field: str, value: Any) -> None:
    await set_fields(db, record_id, {field: value})


# ============================================================
# DDL (escape hatch)
# ============================================================


async def define_object_field(db: StewardDatabase, table: str, field: str) -> bool:
    """Add a nested-document field. Returns False when it already existed."""
    check_identifier(table)
    check_identifier(field)
    if await field_defined(db, table, field):
        return False
    await db.execute(f"DEFINE FIELD IF NOT EXISTS {field} ON TABLE {table} TYPE option<object>")
    return True


async def drop_field(
    db: StewardDatabase,
    table: str,
    field: str,
    page_size: int = 500,
) -> bool:
    """Remove a legacy field from every record and from the table definition.

    Returns False when the field was already absent (nothing to drop).
    """
    check_identifier(table)
    check_identifier(field)
    defined = await field_defined(db, table, field)
    present = await field_present(db, table, field, page_size)
    if not defined and not present:
        return False
    if present:
        await db.execute(f"UPDATE {table} UNSET {field} RETURN NONE")
    if defined:
        await db.execute(f"REMOVE FIELD IF EXISTS {field} ON TABLE {table}")
    return True
