"""Shared fixtures: an embedded in-memory database and a context around it."""

from __future__ import annotations

from typing import Any

import pytest

from schema_steward.config import StewardConfig
from schema_steward.context import StewardContext
from schema_steward.db.client import StewardDatabase
from schema_steward.db.queries import insert_record


@pytest.fixture
async def db():
    """Create an in-memory database."""
    database = StewardDatabase.in_memory(retries=1, backoff=0)
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def config(tmp_path) -> StewardConfig:
    # Small pages so every sweep crosses page boundaries
    return StewardConfig(
        backup_dir=str(tmp_path / "backups"),
        state_dir=str(tmp_path / "state"),
        page_size=3,
        max_retries=1,
        retry_backoff=0,
    )


@pytest.fixture
def ctx(db: StewardDatabase, config: StewardConfig) -> StewardContext:
    return StewardContext(config=config, db=db)


async def _seed(db: StewardDatabase, table: str, rows: list[dict[str, Any]]) -> None:
    """Insert rows keyed e001, e002, ... so primary-key order is insertion order."""
    for i, row in enumerate(rows, start=1):
        await insert_record(db, table, row, record_key=f"e{i:03d}")


EMPLOYEES: list[dict[str, Any]] = [
    {
        "name": "Aina",
        "mobile": "012-3456789",
        "company_email": "a@b.com",
        "bank_name": "MBB/Maybank",
        "bank_acc_no": 1122334455,
        "employment_date": "01/03/2020",
        "confirmation_date": "2020-06-01",
        "active_status": True,
    },
    {
        "name": "Bala",
        "mobile": "+60 19-876 5432",
        "personal_email": " bala@mail.com ",
        "city": "Ipoh",
        "postcode": 30000,
        "employment_date": "2019-01-15",
        "resign_date": "2023-12-31",
    },
    {
        "name": "Chong",
        "mobile": "12345",
        "kwsp_no": "KW-1",
        "epf_no": "EPF-9",
        "socso_no": "S-7",
    },
    {"name": "Devi", "mobile": "", "city": "   "},
    {"name": "Ehsan", "spouse_name": "Farah", "spouse_dob": "1990-02-03"},
]


@pytest.fixture
def seed():
    return _seed


@pytest.fixture
async def employees(ctx: StewardContext) -> StewardContext:
    await _seed(ctx.db, "employee", EMPLOYEES)
    return ctx


@pytest.fixture
def employee_rows() -> list[dict[str, Any]]:
    return EMPLOYEES
