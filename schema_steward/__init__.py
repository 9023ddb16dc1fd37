"""Schema Steward — verified JSON-field consolidation and safe column removal."""

import re
from pathlib import Path

__version__ = "0.1.0"

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def get_steward_home() -> Path:
    """Get the global Steward home directory (~/.steward/)."""
    return Path.home() / ".steward"


def get_backup_root() -> Path:
    """Default root for backup artifacts."""
    return get_steward_home() / "backups"


def get_state_root() -> Path:
    """Default root for drop progress files and advisory locks."""
    return get_steward_home() / "state"


def is_identifier(name: str) -> bool:
    """True when ``name`` is safe to interpolate as a table or field name."""
    return bool(_IDENTIFIER.match(name or ""))
