"""Safe column dropper — removes legacy columns only behind verified gates.

State machine::

    AWAITING_BACKUP --backup verified--> BACKUP_CONFIRMED --> VERIFYING
        VERIFYING --all groups PASS--> VERIFIED_SAFE --confirm--> DROPPING --> COMPLETE
    any failed gate --> BLOCKED

DROPPING is only reachable through VERIFIED_SAFE, which is only reachable
after a backup with a matching row count and checksum was confirmed and every
group passed verification. Progress is written to
``<state_dir>/<table>.drop.json`` after every transition and every column, so
an interrupted sweep resumes with the remaining columns without re-verifying.
"""

from __future__ import annotations

import logging
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import NoReturn

from .backup import integrity_problems
from .context import StewardContext
from .db.queries import check_identifier, count_rows, drop_field, iter_pages
from .errors import PreconditionViolation, StewardError, TransientDBError
from .lock import migration_lock
from .models.types import (
    BackupArtifact,
    ColumnDropOutcome,
    ConsolidationGroup,
    DropperState,
    DropRun,
    DropStatus,
)
from .transforms import is_populated
from .verifier import verify_groups

logger = logging.getLogger(__name__)

EMPTY_GROUP = "empty"


def state_path(ctx: StewardContext, table: str) -> Path:
    return ctx.state_dir / f"{check_identifier(table)}.drop.json"


def plan_columns(
    groups: list[ConsolidationGroup],
    extra_columns: list[str] | None = None,
) -> list[tuple[str, str]]:
    """(group, column) pairs in drop order. Targets and ``id`` are never planned."""
    protected = {"id"} | {g.target for g in groups}
    seen: set[str] = set()
    plan: list[tuple[str, str]] = []
    pairs = [(g.name, c) for g in groups for c in g.source_columns]
    pairs += [(EMPTY_GROUP, c) for c in extra_columns or []]
    for group, column in pairs:
        if column in protected or column in seen:
            continue
        seen.add(column)
        plan.append((group, column))
    return plan


class SafeColumnDropper:
    """Drives one table through backup confirmation, verification and dropping."""

    def __init__(
        self,
        ctx: StewardContext,
        table: str,
        groups: list[ConsolidationGroup] | None = None,
        extra_columns: list[str] | None = None,
        *,
        sample_size: int = 0,
        run: DropRun | None = None,
    ) -> None:
        self.ctx = ctx
        self.table = table
        self.groups = list(groups or [])
        self.extra_columns = list(extra_columns or [])
        self.sample_size = sample_size
        if run is None:
            now = datetime.now(UTC)
            run = DropRun(
                table=table,
                columns=plan_columns(self.groups, self.extra_columns),
                created_at=now,
                updated_at=now,
            )
        self.run = run

    @property
    def state(self) -> DropperState:
        return self.run.state

    @property
    def path(self) -> Path:
        return state_path(self.ctx, self.table)

    @classmethod
    def load(cls, ctx: StewardContext, table: str) -> SafeColumnDropper:
        """Rebuild a dropper from its persisted progress file."""
        path = state_path(ctx, table)
        if not path.exists():
            raise PreconditionViolation(f"No drop in progress for {table} ({path} not found)")
        run = DropRun.model_validate_json(path.read_text(encoding="utf-8"))
        return cls(ctx, table, run=run)

    # --- Persistence ---

    def save(self) -> None:
        self.run.updated_at = datetime.now(UTC)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(self.run.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    def _transition(self, state: DropperState) -> None:
        logger.info("%s: %s -> %s", self.table, self.run.state, state)
        self.run.state = state
        self.save()

    def _require(self, *states: DropperState) -> None:
        if self.run.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise PreconditionViolation(
                f"{self.table}: dropper is {self.run.state.value}, expected {allowed}"
            )

    def _block(self, reason: str, details: list[str] | None = None) -> NoReturn:
        self.run.blocked_reason = reason
        self.run.details = details or []
        self._transition(DropperState.BLOCKED)
        logger.error("%s: blocked: %s", self.table, reason)
        raise PreconditionViolation(reason, details=self.run.details)

    # --- Gates ---

    async def confirm_backup(self, artifact: BackupArtifact | None) -> DropRun:
        """AWAITING_BACKUP -> BACKUP_CONFIRMED, or BLOCKED."""
        self._require(DropperState.AWAITING_BACKUP)
        if artifact is None:
            self._block(f"no backup of {self.table}")
        if artifact.table != self.table:
            self._block(f"backup is of table {artifact.table}, not {self.table}")

        problems = integrity_problems(artifact)
        if problems:
            reason = (
                "backup checksum mismatch"
                if "backup checksum mismatch" in problems
                else "backup failed its integrity check"
            )
            self._block(reason, problems)

        live = await count_rows(self.ctx.reader, self.table)
        if artifact.row_count != live:
            self._block(
                f"backup row count {artifact.row_count} does not match live row count {live}"
            )

        self.run.backup = artifact
        self._transition(DropperState.BACKUP_CONFIRMED)
        return self.run

    async def verify(self) -> DropRun:
        """BACKUP_CONFIRMED -> VERIFYING -> VERIFIED_SAFE, or BLOCKED."""
        self._require(DropperState.BACKUP_CONFIRMED)
        self._transition(DropperState.VERIFYING)

        report = await verify_groups(self.ctx, self.table, self.groups, self.sample_size)
        self.run.report = report
        if not report.passed:
            self._block(
                f"verification failed for: {', '.join(report.failing_groups)}",
                [
                    f"{g.group}: {g.legacy_count} legacy, {g.nested_count} nested, "
                    f"{g.deficit} missing"
                    for g in report.groups
                    if not g.passed
                ],
            )

        empties = [c for g, c in self.run.columns if g == EMPTY_GROUP]
        if empties:
            populated = await self._populated(empties)
            if populated:
                self._block(
                    "columns planned as empty now hold data",
                    [f"{c}: {n} populated row(s)" for c, n in sorted(populated.items())],
                )

        self._transition(DropperState.VERIFIED_SAFE)
        return self.run

    async def _populated(self, columns: list[str]) -> dict[str, int]:
        counts: dict[str, int] = {}
        async for page in iter_pages(self.ctx.reader, self.table, self.ctx.page_size):
            for record in page:
                for column in columns:
                    if is_populated(record.get(column)):
                        counts[column] = counts.get(column, 0) + 1
        return counts

    # --- Dropping ---

    async def drop(self, confirm: bool = False) -> DropRun:
        """VERIFIED_SAFE -> DROPPING -> COMPLETE.

        Without ``confirm`` the run stays at VERIFIED_SAFE (report only).
        A transient failure stops the sweep and leaves the run resumable.
        """
        self._require(DropperState.VERIFIED_SAFE)
        if not confirm:
            logger.info("%s: verified safe; drop not confirmed, stopping", self.table)
            return self.run

        with migration_lock(self.ctx, self.table):
            self.run.interrupted = None
            self._transition(DropperState.DROPPING)
            for group, column in self.run.remaining_columns:
                try:
                    dropped = await drop_field(
                        self.ctx.db, self.table, column, self.ctx.page_size
                    )
                except TransientDBError as exc:
                    self.run.interrupted = f"{column}: {exc}"
                    logger.error(
                        "%s: stopped at column %s: %s; resume to continue",
                        self.table,
                        column,
                        exc,
                    )
                    self._transition(DropperState.VERIFIED_SAFE)
                    return self.run
                except StewardError as exc:
                    outcome = ColumnDropOutcome(
                        column=column, group=group, status=DropStatus.FAILED, error=str(exc)
                    )
                    logger.error("%s: failed to drop %s: %s", self.table, column, exc)
                else:
                    status = DropStatus.DROPPED if dropped else DropStatus.ABSENT
                    outcome = ColumnDropOutcome(column=column, group=group, status=status)
                    logger.info("%s: %s %s", self.table, column, status.value)
                self.run.ledger.append(outcome)
                self.save()

            self._transition(DropperState.COMPLETE)
        return self.run

    async def run_all(self, artifact: BackupArtifact | None, confirm: bool = False) -> DropRun:
        """Confirm the backup, verify, then drop (if confirmed)."""
        await self.confirm_backup(artifact)
        await self.verify()
        return await self.drop(confirm)

    async def resume(self, confirm: bool = False) -> DropRun:
        """Continue a persisted run from VERIFIED_SAFE with the remaining columns."""
        if self.run.state == DropperState.COMPLETE:
            logger.info("%s: drop already complete", self.table)
            return self.run
        if self.run.state == DropperState.DROPPING:
            # Process died mid-sweep; the ledger records what finished
            self.run.state = DropperState.VERIFIED_SAFE
        if self.run.state != DropperState.VERIFIED_SAFE:
            raise PreconditionViolation(
                f"{self.table}: cannot resume from {self.run.state.value}",
                details=[self.run.blocked_reason] if self.run.blocked_reason else None,
            )
        logger.info(
            "%s: resuming with %d remaining column(s)",
            self.table,
            len(self.run.remaining_columns),
        )
        return await self.drop(confirm)
