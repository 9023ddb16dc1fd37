"""Table backups: write-once JSON snapshots with a checksum sidecar.

Layout under the backup root::

    <table>/<table>-20260101T120000123456Z.json          rows, canonical JSON
    <table>/<table>-20260101T120000123456Z.verify.json   row count, sha256, columns
    <table>/<table>-20260101T120000123456Z.mapping.json  groups in scope at capture

The checksum is the sha256 of the canonical encoding: records ordered by
primary key, keys sorted, compact separators, and SDK types (record IDs,
datetimes, decimals, UUIDs) rendered as strings. Reloading the data file and
re-encoding it reproduces the same bytes, so any edit shows up as a mismatch.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

from .context import StewardContext
from .db.queries import check_identifier, fetch_all, iter_pages, set_fields
from .errors import PreconditionViolation, StewardError
from .lock import migration_lock
from .models.types import BackupArtifact, ConsolidationGroup, RecordError, RestoreResult

logger = logging.getLogger(__name__)

DATA_SUFFIX = ".json"
VERIFY_SUFFIX = ".verify.json"
MAPPING_SUFFIX = ".mapping.json"


def _serialize_value(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _serialize_value(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_serialize_value(v) for v in value]
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, Decimal | uuid.UUID):
        return str(value)
    if hasattr(value, "table_name"):
        return str(value)
    return value


def serialize_rows(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """JSON-ready copies of ``rows``, ordered by primary key."""
    serialized = [_serialize_value(row) for row in rows]
    return sorted(serialized, key=lambda row: str(row.get("id", "")))


def canonical_json(rows: list[dict[str, Any]]) -> str:
    return json.dumps(
        serialize_rows(rows),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def compute_checksum(rows: list[dict[str, Any]]) -> str:
    return hashlib.sha256(canonical_json(rows).encode("utf-8")).hexdigest()


def _timestamp(moment: datetime) -> str:
    return moment.strftime("%Y%m%dT%H%M%S%fZ")


def _write_once(path: Path, content: str) -> None:
    try:
        with open(path, "x", encoding="utf-8") as f:
            f.write(content)
    except FileExistsError:
        raise PreconditionViolation(f"Backup file already exists: {path}") from None


def _base_path(data_path: Path) -> Path:
    return data_path.with_name(data_path.name.removesuffix(DATA_SUFFIX))


async def capture_backup(
    ctx: StewardContext,
    table: str,
    groups: list[ConsolidationGroup] | None = None,
    extra_columns: list[str] | None = None,
) -> BackupArtifact:
    """Snapshot the whole table and record its row count and checksum."""
    check_identifier(table)
    rows = await fetch_all(ctx.reader, table, ctx.page_size)
    captured_at = datetime.now(UTC)

    content = canonical_json(rows)
    checksum = hashlib.sha256(content.encode("utf-8")).hexdigest()
    columns = sorted({key for row in rows for key in row})

    folder = ctx.backup_dir / table
    folder.mkdir(parents=True, exist_ok=True)
    base = folder / f"{table}-{_timestamp(captured_at)}"
    data_path = base.with_name(base.name + DATA_SUFFIX)
    verification_path = base.with_name(base.name + VERIFY_SUFFIX)
    mapping_path = base.with_name(base.name + MAPPING_SUFFIX)

    _write_once(data_path, content)
    artifact = BackupArtifact(
        table=table,
        captured_at=captured_at,
        row_count=len(rows),
        checksum=checksum,
        data_path=str(data_path),
        verification_path=str(verification_path),
        columns=columns,
    )
    sidecar = {
        **artifact.model_dump(mode="json"),
        "algorithm": "sha256",
        "bytes": len(content.encode("utf-8")),
    }
    _write_once(verification_path, json.dumps(sidecar, indent=2))

    mapping = {
        "table": table,
        "captured_at": captured_at.isoformat(),
        "groups": [g.model_dump(mode="json") for g in groups or []],
        "extra_columns": sorted(extra_columns or []),
    }
    _write_once(mapping_path, json.dumps(mapping, indent=2))

    logger.info("Backed up %d row(s) of %s to %s", len(rows), table, data_path)
    return artifact


def load_backup(path: Path | str) -> BackupArtifact:
    """Load an artifact from its data file or its verification sidecar."""
    path = Path(path).expanduser()
    if path.name.endswith(MAPPING_SUFFIX):
        path = path.with_name(path.name.removesuffix(MAPPING_SUFFIX) + VERIFY_SUFFIX)
    elif not path.name.endswith(VERIFY_SUFFIX):
        path = _base_path(path).with_name(_base_path(path).name + VERIFY_SUFFIX)
    if not path.exists():
        raise PreconditionViolation(f"Backup verification file not found: {path}")
    try:
        sidecar = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise PreconditionViolation(f"Unreadable verification file {path}: {exc}") from exc
    return BackupArtifact.model_validate(sidecar)


def list_backups(ctx: StewardContext, table: str) -> list[BackupArtifact]:
    """All readable backups of ``table``, oldest first."""
    folder = ctx.backup_dir / check_identifier(table)
    if not folder.is_dir():
        return []
    artifacts = []
    for sidecar in sorted(folder.glob(f"{table}-*{VERIFY_SUFFIX}")):
        try:
            artifacts.append(load_backup(sidecar))
        except (PreconditionViolation, ValueError) as exc:
            logger.warning("Skipping unreadable backup %s: %s", sidecar, exc)
    return sorted(artifacts, key=lambda a: a.captured_at)


def latest_backup(ctx: StewardContext, table: str) -> BackupArtifact | None:
    backups = list_backups(ctx, table)
    return backups[-1] if backups else None


def read_backup_rows(artifact: BackupArtifact) -> list[dict[str, Any]]:
    with open(artifact.data_path, encoding="utf-8") as f:
        rows = json.load(f)
    if not isinstance(rows, list):
        raise ValueError(f"{artifact.data_path}: expected a list of records")
    return rows


def integrity_problems(artifact: BackupArtifact) -> list[str]:
    """Everything wrong with a backup on disk. Empty list = intact."""
    data_path = Path(artifact.data_path)
    if not data_path.exists():
        return [f"data file missing: {data_path}"]
    try:
        rows = read_backup_rows(artifact)
    except (OSError, ValueError) as exc:
        return [f"data file unreadable: {exc}"]

    problems = []
    checksum = compute_checksum(rows)
    if checksum != artifact.checksum:
        problems.append("backup checksum mismatch")
    if len(rows) != artifact.row_count:
        problems.append(f"backup holds {len(rows)} row(s), sidecar says {artifact.row_count}")

    sidecar_path = Path(artifact.verification_path)
    if sidecar_path.exists():
        try:
            recorded = json.loads(sidecar_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            problems.append("verification file unreadable")
        else:
            if recorded.get("checksum") != artifact.checksum:
                problems.append("verification file checksum differs from artifact")
    else:
        problems.append(f"verification file missing: {sidecar_path}")
    return problems


def verify_backup_integrity(artifact: BackupArtifact) -> bool:
    """Recompute the checksum from the data file and compare with the sidecar."""
    problems = integrity_problems(artifact)
    for problem in problems:
        logger.warning("%s: %s", artifact.data_path, problem)
    return not problems


async def restore_columns(
    ctx: StewardContext,
    artifact: BackupArtifact,
    columns: list[str],
) -> RestoreResult:
    """Write legacy ``columns`` back onto live records from a backup.

    Only updates records that still exist; never creates or deletes anything.
    """
    for column in columns:
        check_identifier(column)
        if column == "id":
            raise ValueError("Cannot restore the primary key")
    problems = integrity_problems(artifact)
    if problems:
        raise PreconditionViolation(
            f"Backup {artifact.data_path} failed its integrity check", details=problems
        )

    result = RestoreResult(table=artifact.table, backup=artifact.data_path, columns=columns)
    backup_rows = {str(row.get("id")): row for row in read_backup_rows(artifact)}

    with migration_lock(ctx, artifact.table):
        async for page in iter_pages(ctx.db, artifact.table, ctx.page_size):
            for record in page:
                key = str(record.get("id"))
                saved = backup_rows.pop(key, None)
                if saved is None:
                    continue
                values = {c: saved[c] for c in columns if c in saved}
                if not values:
                    continue
                try:
                    await set_fields(ctx.db, record["id"], values)
                except StewardError as exc:
                    result.failed += 1
                    result.errors.append(RecordError(record_id=key, error=str(exc)))
                    logger.error("Failed to restore %s: %s", key, exc)
                    continue
                result.restored += 1

    result.missing = sum(1 for row in backup_rows.values() if any(c in row for c in columns))
    logger.info(
        "Restored %s on %d record(s) of %s (%d missing, %d failed)",
        ", ".join(columns),
        result.restored,
        artifact.table,
        result.missing,
        result.failed,
    )
    return result
