"""Error taxonomy for Schema Steward.

Transient errors are retried at the database boundary. Everything else is
reported immediately: semantic errors become per-item failures, precondition
violations stop the current workflow stage.
"""

from __future__ import annotations


class StewardError(Exception):
    """Base class for all Steward errors."""


class TransientDBError(StewardError):
    """Network failure, timeout, or transaction conflict. Safe to retry."""


class SemanticDBError(StewardError):
    """The database rejected the statement (missing table, bad field, parse error)."""


class PreconditionViolation(StewardError):
    """A safety gate failed: verification FAIL, stale or corrupt backup."""

    def __init__(self, message: str, *, details: list[str] | None = None) -> None:
        super().__init__(message)
        self.details = details or []


class MigrationLocked(StewardError):
    """Another live process holds the advisory migration lock for a table."""


class InvalidIdentifier(StewardError, ValueError):
    """A table or field name is not a plain identifier."""
