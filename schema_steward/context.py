"""Per-invocation context passed explicitly to every component."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .config import StewardConfig
from .db.client import StewardDatabase


@dataclass
class StewardContext:
    """Configuration plus open database handles for one CLI invocation.

    ``db`` runs with the service principal (DDL and writes). ``reader`` is a
    second connection under the restricted read principal when one is
    configured, otherwise the same handle as ``db``.
    """

    config: StewardConfig
    db: StewardDatabase
    reader: StewardDatabase | None = None
    _owned: list[StewardDatabase] = field(default_factory=list, repr=False)

    def __post_init__(self) -> None:
        if self.reader is None:
            self.reader = self.db

    @property
    def backup_dir(self) -> Path:
        return self.config.resolved_backup_dir

    @property
    def state_dir(self) -> Path:
        return self.config.resolved_state_dir

    @property
    def page_size(self) -> int:
        return max(1, self.config.page_size)

    @classmethod
    def from_config(cls, config: StewardConfig) -> StewardContext:
        """Build unconnected handles. Embedded engines share one handle."""
        db = StewardDatabase.from_config(config)
        reader = None
        if config.has_read_principal and db.is_server:
            reader = StewardDatabase.from_config(config, read_only=True)
        return cls(config=config, db=db, reader=reader)

    @classmethod
    async def open(cls, config: StewardConfig) -> StewardContext:
        """Build and connect the service (and, if configured, read) principals."""
        ctx = cls.from_config(config)
        await ctx.connect()
        return ctx

    async def connect(self) -> None:
        await self.db.connect()
        self._owned = [self.db]
        if self.reader is not self.db:
            try:
                await self.reader.connect()
            except BaseException:
                await self.db.close()
                self._owned.clear()
                raise
            self._owned.append(self.reader)

    async def close(self) -> None:
        for handle in self._owned:
            await handle.close()
        self._owned.clear()

    async def __aenter__(self) -> StewardContext:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()
