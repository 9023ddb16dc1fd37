"""Advisory per-table migration lock.

A PID file under the state directory, the same scheme the daemon PID file
uses: a lock whose process is gone is stale and gets reclaimed. The lock is
re-entrant within one process, so a workflow that holds it can call the
consolidator and the dropper, which take it again.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from .context import StewardContext
from .db.queries import check_identifier
from .errors import MigrationLocked

logger = logging.getLogger(__name__)

# lock path -> nesting depth for locks held by this process
_held: dict[Path, int] = {}


def _pid_alive(pid: int) -> bool:
    """Check if a process is running (Unix only).

    Signal 0 checks liveness without delivering anything. EPERM means the process
    exists but belongs to someone else.
    """
    try:
        os.kill(pid, 0)
        return True
    except PermissionError:
        return True
    except ProcessLookupError:
        return False


def lock_path(ctx: StewardContext, table: str) -> Path:
    return ctx.state_dir / f"{check_identifier(table)}.lock"


def read_holder(path: Path) -> int | None:
    """PID recorded in a lock file, or None if missing or unreadable."""
    try:
        return int(path.read_text().strip())
    except (OSError, ValueError):
        return None


def _acquire(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    me = os.getpid()
    for _ in range(2):
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            holder = read_holder(path)
            if holder == me:
                return
            if holder is not None and _pid_alive(holder):
                raise MigrationLocked(
                    f"{path.stem} is locked by process {holder} ({path})"
                ) from None
            logger.warning("Reclaiming stale lock %s (PID: %s)", path, holder)
            path.unlink(missing_ok=True)
            continue
        with os.fdopen(fd, "w") as f:
            f.write(str(me))
        return
    raise MigrationLocked(f"Could not acquire {path}")


@contextmanager
def migration_lock(ctx: StewardContext, table: str, enabled: bool = True) -> Iterator[None]:
    """Hold ``<state_dir>/<table>.lock`` for the duration of the block.

    Raises MigrationLocked when another live process holds it.
    """
    if not enabled:
        yield
        return

    path = lock_path(ctx, table)
    depth = _held.get(path, 0)
    if depth == 0:
        _acquire(path)
        logger.debug("Acquired migration lock %s", path)
    _held[path] = depth + 1
    try:
        yield
    finally:
        _held[path] -= 1
        if _held[path] == 0:
            del _held[path]
            if read_holder(path) == os.getpid():
                path.unlink(missing_ok=True)
            logger.debug("Released migration lock %s", path)
