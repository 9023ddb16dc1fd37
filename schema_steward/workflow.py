"""End-to-end migration: inspect, consolidate, verify, back up, drop.

``run_workflow`` is what ``steward invoke`` runs. Each stage only starts when
the previous one succeeded; a failed safety gate ends the run with a
precondition violation instead of raising, so the CLI can print it first and
still show the ledgers gathered so far.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from .backup import capture_backup
from .consolidator import consolidate_groups
from .context import StewardContext
from .dropper import SafeColumnDropper
from .errors import PreconditionViolation
from .inspector import empty_columns, inspect_table
from .lock import migration_lock
from .models.types import (
    BackupArtifact,
    ConsolidationGroup,
    ConsolidationResult,
    DropperState,
    DropRun,
    DropStatus,
    MigrationReport,
    TableInspection,
)
from .verifier import verify_groups

logger = logging.getLogger(__name__)


class WorkflowResult(BaseModel):
    table: str
    dry_run: bool = False
    confirm_drop: bool = False
    inspection: TableInspection | None = None
    consolidation: list[ConsolidationResult] = Field(default_factory=list)
    report: MigrationReport | None = None
    backup: BackupArtifact | None = None
    drop: DropRun | None = None
    empty_columns: list[str] = Field(default_factory=list)
    precondition: str | None = None
    precondition_details: list[str] = Field(default_factory=list)

    @property
    def attempted(self) -> int:
        records = sum(r.attempted for r in self.consolidation)
        return records + (len(self.drop.ledger) if self.drop else 0)

    @property
    def succeeded(self) -> int:
        records = sum(r.updated for r in self.consolidation)
        columns = self._drop_count(DropStatus.DROPPED)
        return records + columns

    @property
    def failed(self) -> int:
        records = sum(r.failed for r in self.consolidation)
        return records + self._drop_count(DropStatus.FAILED)

    @property
    def noop(self) -> int:
        records = sum(r.unchanged for r in self.consolidation)
        return records + self._drop_count(DropStatus.ABSENT)

    @property
    def final_state(self) -> DropperState | None:
        return self.drop.state if self.drop else None

    @property
    def exit_code(self) -> int:
        if self.precondition or self.failed:
            return 1
        if self.report is not None and not self.report.passed:
            return 1
        if self.drop is not None and self.drop.interrupted:
            return 1
        return 0

    def _drop_count(self, status: DropStatus) -> int:
        if self.drop is None:
            return 0
        return sum(1 for o in self.drop.ledger if o.status == status)


async def run_workflow(
    ctx: StewardContext,
    table: str,
    groups: list[ConsolidationGroup],
    *,
    dry_run: bool = False,
    confirm_drop: bool = False,
    drop_empty: bool = False,
    sample_size: int | None = None,
) -> WorkflowResult:
    """Run every stage for ``table``. Dry runs stop after the consolidator preview."""
    result = WorkflowResult(table=table, dry_run=dry_run, confirm_drop=confirm_drop)
    sample_size = ctx.config.verify_sample_size if sample_size is None else sample_size

    inspection = await inspect_table(ctx, table)
    result.inspection = inspection
    if not inspection.accessible:
        result.precondition = f"table {table} is not accessible: {inspection.error}"
        return result

    if drop_empty:
        planned = {"id"} | {c for g in groups for c in g.source_columns}
        planned |= {g.target for g in groups}
        result.empty_columns = [c for c in empty_columns(inspection) if c not in planned]

    with migration_lock(ctx, table, enabled=not dry_run):
        result.consolidation = await consolidate_groups(ctx, table, groups, dry_run=dry_run)
        if dry_run:
            return result

        report = await verify_groups(ctx, table, groups, sample_size)
        result.report = report
        if not report.passed:
            result.precondition = (
                f"verification failed for: {', '.join(report.failing_groups)}"
            )
            result.precondition_details = [
                f"{g.group}: {g.deficit} record(s) with legacy data have no {g.target}"
                for g in report.groups
                if not g.passed
            ]
            return result

        result.backup = await capture_backup(ctx, table, groups, result.empty_columns)

        dropper = SafeColumnDropper(
            ctx, table, groups, result.empty_columns, sample_size=sample_size
        )
        dropper.save()
        try:
            result.drop = await dropper.run_all(result.backup, confirm=confirm_drop)
        except PreconditionViolation as exc:
            result.drop = dropper.run
            result.precondition = str(exc)
            result.precondition_details = exc.details
    return result
