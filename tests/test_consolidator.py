"""Tests for the field consolidator against an in-memory database."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

from schema_steward.consolidator import (
    UNPARSED_KEY,
    canonical,
    consolidate_group,
    consolidate_groups,
)
from schema_steward.context import StewardContext
from schema_steward.db.queries import fetch_all, field_defined, update_field
from schema_steward.errors import SemanticDBError
from schema_steward.groups import BUILTIN_GROUPS, DERIVERS
from schema_steward.transforms import is_populated

CONTACT = BUILTIN_GROUPS["contact_info"]


async def _by_name(ctx: StewardContext) -> dict[str, dict]:
    return {r["name"]: r for r in await fetch_all(ctx.db, "employee")}


class TestConsolidateGroup:
    async def test_contact_scenario(self, ctx: StewardContext, seed):
        await seed(
            ctx.db,
            "employee",
            [{"name": "Aina", "mobile": "012-3456789", "company_email": "a@b.com"}],
        )
        result = await consolidate_group(ctx, "employee", CONTACT)

        assert result.ok
        assert (result.attempted, result.updated) == (1, 1)
        rows = await _by_name(ctx)
        assert rows["Aina"]["contact_info"] == {
            "phone": {"mobile": "60123456789"},
            "emails": {"company": "a@b.com"},
        }
        # Legacy columns are untouched
        assert rows["Aina"]["mobile"] == "012-3456789"
        assert await field_defined(ctx.db, "employee", "contact_info")

    async def test_tallies(self, employees: StewardContext):
        result = await consolidate_group(employees, "employee", CONTACT)

        # Aina, Bala, Chong have contact data; Devi only has blanks; Ehsan none
        assert result.attempted == 3
        assert result.updated == 3
        assert result.skipped == 2
        assert result.unparsed == 1  # Chong's short mobile number

        rows = await _by_name(employees)
        assert "contact_info" not in rows["Devi"]
        assert rows["Chong"]["contact_info"] == {UNPARSED_KEY: {"phone.mobile": "12345"}}
        assert rows["Bala"]["contact_info"] == {
            "phone": {"mobile": "60198765432"},
            "emails": {"personal": "bala@mail.com"},
            "address": {"city": "Ipoh", "postcode": "30000"},
        }

    async def test_idempotent(self, employees: StewardContext):
        first = await consolidate_groups(employees, "employee", list(BUILTIN_GROUPS.values()))
        before = await fetch_all(employees.db, "employee")

        second = await consolidate_groups(employees, "employee", list(BUILTIN_GROUPS.values()))
        after = await fetch_all(employees.db, "employee")

        assert sum(r.updated for r in first) > 0
        assert sum(r.updated for r in second) == 0
        assert sum(r.unchanged for r in second) == sum(r.attempted for r in first)
        assert [canonical(r) for r in before] == [canonical(r) for r in after]

    async def test_no_data_loss(self, employees: StewardContext):
        groups = list(BUILTIN_GROUPS.values())
        await consolidate_groups(employees, "employee", groups)

        for record in await fetch_all(employees.db, "employee"):
            for group in groups:
                if any(is_populated(record.get(c)) for c in group.source_columns):
                    assert record.get(group.target), (record["name"], group.name)

    async def test_dry_run_writes_nothing(self, employees: StewardContext):
        result = await consolidate_group(
            employees, "employee", CONTACT, dry_run=True, preview_limit=2
        )

        assert result.dry_run is True
        assert result.attempted == 3
        assert result.updated == 0
        assert len(result.previews) == 2
        assert result.previews[0].destination == {
            "phone": {"mobile": "60123456789"},
            "emails": {"company": "a@b.com"},
        }
        assert result.previews[0].source == {"mobile": "012-3456789", "company_email": "a@b.com"}
        assert all("contact_info" not in r for r in await fetch_all(employees.db, "employee"))
        assert not await field_defined(employees.db, "employee", "contact_info")

    async def test_failed_write_is_counted_and_sweep_continues(self, employees: StewardContext):
        calls = []

        async def flaky(db, record_id, field, value):
            calls.append(str(record_id))
            if len(calls) == 1:
                raise SemanticDBError("Found 'x' for field `contact_info`")
            await update_field(db, record_id, field, value)

        with patch("schema_steward.consolidator.update_field", new=AsyncMock(side_effect=flaky)):
            result = await consolidate_group(employees, "employee", CONTACT)

        assert result.failed == 1
        assert result.updated == 2
        assert result.errors[0].record_id == calls[0]
        assert not result.ok

        # Re-running repairs the failed record
        again = await consolidate_group(employees, "employee", CONTACT)
        assert (again.updated, again.unchanged, again.failed) == (1, 2, 0)

    async def test_unbuildable_record_is_counted_and_sweep_continues(
        self, ctx: StewardContext, seed, monkeypatch
    ):
        await seed(
            ctx.db, "employee", [{"bank_name": "BAD/Broken"}, {"bank_name": "MBB/Maybank"}]
        )
        real = DERIVERS["bank"]

        def picky(document, record):
            if record["bank_name"].startswith("BAD"):
                raise KeyError("bank_code")
            real(document, record)

        monkeypatch.setitem(DERIVERS, "bank", picky)
        result = await consolidate_group(ctx, "employee", BUILTIN_GROUPS["bank_info"])

        assert (result.attempted, result.updated, result.failed) == (2, 1, 1)
        assert result.errors[0].record_id.endswith("e001")
        rows = await fetch_all(ctx.db, "employee")
        assert "bank_info" not in rows[0]
        assert rows[1]["bank_info"]["bank_code"] == "MBB"

    async def test_lock_released_after_run(self, employees: StewardContext):
        await consolidate_groups(employees, "employee", [CONTACT])
        assert not (employees.state_dir / "employee.lock").exists()
