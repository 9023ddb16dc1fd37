"""Core domain models for Schema Steward.

These describe the migration workflow, not database schemas. Records
themselves stay plain dicts as returned by the client.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# --- Enums ---


class DropperState(StrEnum):
    AWAITING_BACKUP = "awaiting_backup"
    BACKUP_CONFIRMED = "backup_confirmed"
    VERIFYING = "verifying"
    VERIFIED_SAFE = "verified_safe"
    DROPPING = "dropping"
    COMPLETE = "complete"
    BLOCKED = "blocked"


class DropStatus(StrEnum):
    DROPPED = "dropped"
    ABSENT = "absent"  # already gone, treated as success
    FAILED = "failed"


# --- Groups ---


class FieldMapping(BaseModel):
    """One legacy column copied to a key inside the nested document."""

    source: str
    dest: str  # dotted path inside the document, e.g. "phone.mobile"
    transform: str | None = None
    fallback_for: str | None = None  # source column this one stands in for when empty


class ConsolidationGroup(BaseModel):
    """Mapping from a set of legacy columns to one nested document field."""

    name: str
    target: str
    mappings: list[FieldMapping]
    derive: str | None = None
    description: str = ""

    @property
    def source_columns(self) -> list[str]:
        seen: list[str] = []
        for mapping in self.mappings:
            if mapping.source not in seen:
                seen.append(mapping.source)
        return seen


# --- Inspection ---


class ColumnInfo(BaseModel):
    name: str
    inferred_type: str = "nullable"
    observed_types: list[str] = Field(default_factory=list)
    document_keys: list[str] = Field(default_factory=list)
    populated: int = 0


class TableInspection(BaseModel):
    table: str
    accessible: bool = True
    error: str | None = None
    row_count: int = 0
    sampled: int = 0
    columns: dict[str, ColumnInfo] = Field(default_factory=dict)


# --- Consolidation ---


class RecordError(BaseModel):
    record_id: str
    error: str


class ConsolidationPreview(BaseModel):
    record_id: str
    source: dict[str, Any]
    destination: dict[str, Any] | None


class ConsolidationResult(BaseModel):
    """Tally for one group's sweep over the table."""

    group: str
    target: str
    dry_run: bool = False
    attempted: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0  # no legacy data
    failed: int = 0
    unparsed: int = 0  # fields kept raw under _unparsed
    errors: list[RecordError] = Field(default_factory=list)
    previews: list[ConsolidationPreview] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0


# --- Verification ---


class GroupVerification(BaseModel):
    group: str
    target: str
    legacy_count: int
    nested_count: int
    sampled: int = 0
    mismatches: list[str] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.nested_count >= self.legacy_count

    @property
    def deficit(self) -> int:
        return max(0, self.legacy_count - self.nested_count)


class MigrationReport(BaseModel):
    table: str
    groups: list[GroupVerification] = Field(default_factory=list)
    created_at: datetime | None = None

    @property
    def passed(self) -> bool:
        return all(g.passed for g in self.groups)

    @property
    def failing_groups(self) -> list[str]:
        return [g.group for g in self.groups if not g.passed]


# --- Backups ---


class BackupArtifact(BaseModel):
    """Immutable snapshot of a table plus the integrity data recorded at capture."""

    model_config = ConfigDict(frozen=True)

    table: str
    captured_at: datetime
    row_count: int
    checksum: str
    data_path: str
    verification_path: str
    columns: list[str] = Field(default_factory=list)


# --- Dropper ---


class ColumnDropOutcome(BaseModel):
    column: str
    group: str
    status: DropStatus
    error: str | None = None


class DropRun(BaseModel):
    """Persisted progress of one dropper run, resumable from VERIFIED_SAFE."""

    table: str
    state: DropperState = DropperState.AWAITING_BACKUP
    backup: BackupArtifact | None = None
    report: MigrationReport | None = None
    columns: list[tuple[str, str]] = Field(default_factory=list)  # (group, column)
    ledger: list[ColumnDropOutcome] = Field(default_factory=list)
    blocked_reason: str | None = None
    interrupted: str | None = None  # transient failure that stopped the last sweep
    details: list[str] = Field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def attempted_columns(self) -> set[str]:
        return {o.column for o in self.ledger}

    @property
    def remaining_columns(self) -> list[tuple[str, str]]:
        done = self.attempted_columns
        return [(g, c) for g, c in self.columns if c not in done]

    @property
    def failed_columns(self) -> list[str]:
        return [o.column for o in self.ledger if o.status == DropStatus.FAILED]


class RestoreResult(BaseModel):
    """Tally for writing legacy columns back from a backup."""

    table: str
    backup: str
    columns: list[str]
    restored: int = 0
    missing: int = 0  # backup rows with no live record
    failed: int = 0
    errors: list[RecordError] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0
