"""Configuration management for Schema Steward."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import yaml

from . import get_backup_root, get_state_root, get_steward_home


@dataclass
class StewardConfig:
    """Schema Steward configuration."""

    # Database
    endpoint: str = "mem://"  # ws://, wss://, http(s):// server, or mem:// / file:// embedded
    namespace: str = "steward"
    database: str = "main"
    service_user: str = ""  # Elevated principal: DDL and writes
    service_pass: str = ""
    read_user: str = ""  # Optional restricted principal for inspect/verify/backup
    read_pass: str = ""

    # Storage
    backup_dir: str = ""  # empty = ~/.steward/backups
    state_dir: str = ""  # empty = ~/.steward/state
    groups_file: str = ""  # optional YAML with custom consolidation groups

    # Sampling and paging
    sample_size: int = 5
    max_sample_size: int = 50
    page_size: int = 500
    verify_sample_size: int = 10

    # I/O boundary
    max_retries: int = 3
    retry_backoff: float = 0.5  # seconds, multiplied by the attempt number
    query_timeout: float = 30.0  # seconds per call, 0 disables

    # Logging
    log_level: str = "WARNING"

    @classmethod
    def load(cls, config_path: Path | None = None) -> StewardConfig:
        """Load configuration from YAML file with environment variable overrides."""
        if config_path is None:
            config_path = get_steward_home() / "config.yaml"

        config_dict: dict[str, Any] = {}
        if config_path.exists():
            with open(config_path, encoding="utf-8") as f:
                config_dict = yaml.safe_load(f) or {}

        # Environment variable overrides (STEWARD_ prefix)
        env_map = {
            "endpoint": ("STEWARD_ENDPOINT", str),
            "namespace": ("STEWARD_NAMESPACE", str),
            "database": ("STEWARD_DATABASE", str),
            "service_user": ("STEWARD_SERVICE_USER", str),
            "service_pass": ("STEWARD_SERVICE_PASS", str),
            "read_user": ("STEWARD_READ_USER", str),
            "read_pass": ("STEWARD_READ_PASS", str),
            "backup_dir": ("STEWARD_BACKUP_DIR", str),
            "state_dir": ("STEWARD_STATE_DIR", str),
            "groups_file": ("STEWARD_GROUPS_FILE", str),
            "sample_size": ("STEWARD_SAMPLE_SIZE", int),
            "max_sample_size": ("STEWARD_MAX_SAMPLE_SIZE", int),
            "page_size": ("STEWARD_PAGE_SIZE", int),
            "verify_sample_size": ("STEWARD_VERIFY_SAMPLE_SIZE", int),
            "max_retries": ("STEWARD_MAX_RETRIES", int),
            "retry_backoff": ("STEWARD_RETRY_BACKOFF", float),
            "query_timeout": ("STEWARD_QUERY_TIMEOUT", float),
            "log_level": ("STEWARD_LOG_LEVEL", str),
        }

        for field_name, (env_var, converter) in env_map.items():
            value = os.getenv(env_var)
            if value is not None:
                config_dict[field_name] = converter(value)

        # Only pass known fields
        known = {f.name for f in cls.__dataclass_fields__.values()}
        return cls(**{k: v for k, v in config_dict.items() if k in known})

    def save(self, config_path: Path | None = None) -> None:
        """Save configuration to YAML file."""
        if config_path is None:
            config_path = get_steward_home() / "config.yaml"

        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump(asdict(self), f, default_flow_style=False, allow_unicode=True)

    @property
    def has_read_principal(self) -> bool:
        return bool(self.read_user)

    @property
    def resolved_backup_dir(self) -> Path:
        """Resolve the backup directory (expand ~ and make absolute)."""
        if not self.backup_dir:
            return get_backup_root()
        return Path(self.backup_dir).expanduser().resolve()

    @property
    def resolved_state_dir(self) -> Path:
        if not self.state_dir:
            return get_state_root()
        return Path(self.state_dir).expanduser().resolve()

    def redacted(self) -> dict[str, Any]:
        """Config as a dict with credentials masked, for display."""
        data = asdict(self)
        for key in ("service_pass", "read_pass"):
            if data.get(key):
                data[key] = "********"
        return data


def get_default_config_content() -> str:
    """Get default config file content for `steward config init`."""
    return """\
# Schema Steward Configuration
endpoint: "mem://"                # SurrealDB server (ws:// or wss://) or embedded mem:// / file://
namespace: "steward"
database: "main"

# Credentials (env vars override: STEWARD_SERVICE_USER, STEWARD_SERVICE_PASS, ...)
service_user: ""                  # Elevated principal used for DDL and writes
service_pass: ""
read_user: ""                     # Optional restricted principal for inspect/verify/backup
read_pass: ""

# Storage
backup_dir: ""                    # Empty = ~/.steward/backups
state_dir: ""                     # Empty = ~/.steward/state
groups_file: ""                   # Optional YAML file with custom consolidation groups

# Sampling and paging
sample_size: 5                    # Rows sampled by the inspector
max_sample_size: 50               # Widened sample for all-null columns
page_size: 500                    # Rows per page for sweeps and backups
verify_sample_size: 10            # Records re-checked field-by-field by the verifier

# Network calls
max_retries: 3                    # Attempts per call on transient failures
retry_backoff: 0.5                # Linear backoff step in seconds
query_timeout: 30.0               # Seconds per call (0 = no timeout)

log_level: "WARNING"
"""
