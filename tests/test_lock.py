"""Tests for the advisory migration lock."""

from __future__ import annotations

import os

import pytest

from schema_steward import lock
from schema_steward.config import StewardConfig
from schema_steward.context import StewardContext
from schema_steward.db.client import StewardDatabase
from schema_steward.errors import MigrationLocked


@pytest.fixture
def lctx(tmp_path) -> StewardContext:
    config = StewardConfig(state_dir=str(tmp_path / "state"))
    return StewardContext(config=config, db=StewardDatabase.in_memory())


def test_lock_written_and_released(lctx):
    path = lock.lock_path(lctx, "employee")
    with lock.migration_lock(lctx, "employee"):
        assert path.read_text() == str(os.getpid())
    assert not path.exists()


def test_reentrant_within_process(lctx):
    path = lock.lock_path(lctx, "employee")
    with lock.migration_lock(lctx, "employee"):
        with lock.migration_lock(lctx, "employee"):
            assert path.exists()
        assert path.exists()
    assert not path.exists()


def test_live_holder_blocks(lctx):
    path = lock.lock_path(lctx, "employee")
    path.parent.mkdir(parents=True)
    path.write_text(str(os.getppid()))

    with pytest.raises(MigrationLocked):
        with lock.migration_lock(lctx, "employee"):
            pass
    assert path.read_text() == str(os.getppid())


def test_stale_lock_reclaimed(lctx, monkeypatch):
    path = lock.lock_path(lctx, "employee")
    path.parent.mkdir(parents=True)
    path.write_text("999999")
    monkeypatch.setattr(lock, "_pid_alive", lambda pid: False)

    with lock.migration_lock(lctx, "employee"):
        assert path.read_text() == str(os.getpid())
    assert not path.exists()


def test_unreadable_lock_reclaimed(lctx):
    path = lock.lock_path(lctx, "employee")
    path.parent.mkdir(parents=True)
    path.write_text("garbage")

    with lock.migration_lock(lctx, "employee"):
        assert path.read_text() == str(os.getpid())


def test_disabled_lock_touches_nothing(lctx):
    with lock.migration_lock(lctx, "employee", enabled=False):
        assert not lock.lock_path(lctx, "employee").exists()


def test_released_on_error(lctx):
    with pytest.raises(RuntimeError):
        with lock.migration_lock(lctx, "employee"):
            raise RuntimeError("boom")
    assert not lock.lock_path(lctx, "employee").exists()
