from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from prlander.lock_manager import OperationLockManager
from prlander.state import StateStore


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 1, 15, 10, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def _manager(tmp_path: Path, clock: FakeClock, ttl_seconds: int = 600) -> OperationLockManager:
    return OperationLockManager(
        StateStore(tmp_path / "state.db", clock=clock), ttl_seconds=ttl_seconds
    )


def test_second_acquire_fails_until_ttl_elapses(tmp_path: Path) -> None:
    clock = FakeClock()
    locks = _manager(tmp_path, clock)

    assert locks.acquire_lock("acme/widgets", "op_1") is True
    assert locks.acquire_lock("acme/widgets", "op_2") is False
    assert locks.is_locked("acme/widgets") is True

    clock.advance(600)
    assert locks.is_locked("acme/widgets") is False
    assert locks.acquire_lock("acme/widgets", "op_2") is True
    info = locks.get_lock_info("acme/widgets")
    assert info is not None
    assert info.operation_id == "op_2"


def test_release_frees_lock_and_is_idempotent(tmp_path: Path) -> None:
    locks = _manager(tmp_path, FakeClock())
    assert locks.acquire_lock("acme/widgets") is True
    locks.release_lock("acme/widgets")
    locks.release_lock("acme/widgets")
    assert locks.get_lock_info("acme/widgets") is None
    assert locks.acquire_lock("acme/widgets") is True


def test_active_lock_listing_and_clear(tmp_path: Path) -> None:
    clock = FakeClock()
    locks = _manager(tmp_path, clock, ttl_seconds=60)
    locks.acquire_lock("acme/widgets", "op_1")
    clock.advance(30)
    locks.acquire_lock("acme/gadgets", "op_2")

    assert locks.active_lock_count() == 2
    assert [lock.operation_id for lock in locks.active_locks()] == ["op_2", "op_1"]

    clock.advance(31)
    assert locks.active_lock_count() == 1

    assert locks.clear_all_locks() == 1
    assert locks.active_locks() == ()


def test_lock_events_are_logged(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    locks = _manager(tmp_path, FakeClock())
    with caplog.at_level("INFO", logger="prlander.lock_manager"):
        locks.acquire_lock("acme/widgets", "op_1")
        locks.acquire_lock("acme/widgets", "op_2")
        locks.release_lock("acme/widgets")

    messages = [record.getMessage() for record in caplog.records]
    assert "event=lock_acquired operation_id=op_1 repository_key=acme/widgets" in messages
    assert "event=lock_busy operation_id=op_2 repository_key=acme/widgets" in messages
    assert "event=lock_released repository_key=acme/widgets" in messages


def test_ttl_must_be_positive(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="ttl_seconds"):
        _manager(tmp_path, FakeClock(), ttl_seconds=0)


def test_release_by_stale_holder_keeps_successor_lock(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    clock = FakeClock()
    locks = _manager(tmp_path, clock)
    assert locks.acquire_lock("acme/widgets", "op_A") is True
    clock.advance(601)
    assert locks.acquire_lock("acme/widgets", "op_B") is True

    with caplog.at_level("INFO", logger="prlander.lock_manager"):
        assert locks.release_lock("acme/widgets", "op_A") is False

    assert locks.acquire_lock("acme/widgets", "op_C") is False
    info = locks.get_lock_info("acme/widgets")
    assert info is not None
    assert info.operation_id == "op_B"
    messages = [record.getMessage() for record in caplog.records]
    assert "event=lock_release_skipped operation_id=op_A repository_key=acme/widgets" in messages

    assert locks.release_lock("acme/widgets", "op_B") is True
    assert locks.acquire_lock("acme/widgets", "op_C") is True


def test_operator_release_ignores_holder(tmp_path: Path) -> None:
    locks = _manager(tmp_path, FakeClock())
    locks.acquire_lock("acme/widgets", "op_A")
    assert locks.release_lock("acme/widgets") is True
    assert locks.is_locked("acme/widgets") is False
