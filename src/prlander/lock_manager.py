from __future__ import annotations

import logging
from typing import Final

from prlander.models import RepositoryLock
from prlander.observability import log_event
from prlander.state import StateStore


LOGGER = logging.getLogger("prlander.lock_manager")
DEFAULT_LOCK_TTL_SECONDS: Final[int] = 600


class OperationLockManager:
    """Non-blocking per-repository mutual exclusion with a fixed TTL.

    Expiry only reclaims leaked locks; an operation that outlives its lock is
    never interrupted. Acquisition never waits or queues.
    """

    def __init__(self, store: StateStore, *, ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS) -> None:
        if ttl_seconds < 1:
            raise ValueError("ttl_seconds must be >= 1")
        self._store = store
        self._ttl_seconds = ttl_seconds

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def acquire_lock(self, repository_key: str, operation_id: str = "") -> bool:
        acquired = self._store.try_acquire_lock(repository_key, operation_id, self._ttl_seconds)
        log_event(
            LOGGER,
            "lock_acquired" if acquired else "lock_busy",
            repository_key=repository_key,
            operation_id=operation_id or None,
        )
        return acquired

    def release_lock(self, repository_key: str, operation_id: str | None = None) -> bool:
        """Release the lock; with operation_id, only when that operation still holds it."""
        released = self._store.release_lock(repository_key, operation_id)
        if released:
            fields: dict[str, object] = {"repository_key": repository_key}
            if operation_id is not None:
                fields["operation_id"] = operation_id
            log_event(LOGGER, "lock_released", **fields)
        elif operation_id is not None:
            log_event(
                LOGGER,
                "lock_release_skipped",
                repository_key=repository_key,
                operation_id=operation_id,
            )
        return released

    def is_locked(self, repository_key: str) -> bool:
        return self._store.get_lock(repository_key) is not None

    def get_lock_info(self, repository_key: str) -> RepositoryLock | None:
        return self._store.get_lock(repository_key)

    def active_locks(self) -> tuple[RepositoryLock, ...]:
        return self._store.list_locks()

    def active_lock_count(self) -> int:
        return len(self._store.list_locks())

    def clear_all_locks(self) -> int:
        cleared = self._store.clear_locks()
        log_event(LOGGER, "locks_cleared", count=cleared)
        return cleared
