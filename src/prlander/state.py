from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone
import json
from pathlib import Path
import sqlite3
import threading
from typing import cast

from prlander.models import (
    APPLY_STEPS,
    ApplyOperation,
    ApplyStep,
    ProgressEvent,
    RepositoryLock,
    RepositoryRef,
)


Clock = Callable[[], datetime]
_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, _TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


class StateStore:
    """SQLite-backed state shared by every process pointed at the same database.

    Holds repository locks, operation records, and the progress events emitted
    for each operation. All timestamps are UTC strings in a fixed-width format
    so that string comparison matches chronological order.
    """

    def __init__(self, db_path: Path, *, clock: Clock = utc_now) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._clock = clock
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def now(self) -> datetime:
        return self._clock()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path, timeout=30.0)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS repository_locks (
                    repository_key TEXT PRIMARY KEY,
                    operation_id TEXT NOT NULL,
                    acquired_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS apply_operations (
                    operation_id TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    branch_name TEXT NULL,
                    base_branch TEXT NULL,
                    pull_request_number INTEGER NULL,
                    pull_request_url TEXT NULL,
                    commit_shas_json TEXT NOT NULL DEFAULT '[]',
                    errors_json TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    completed_at TEXT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS progress_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    operation_id TEXT NOT NULL,
                    step TEXT NOT NULL,
                    message TEXT NOT NULL,
                    percentage INTEGER NOT NULL,
                    batch_index INTEGER NULL,
                    batch_total INTEGER NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_progress_events_operation
                ON progress_events(operation_id, id)
                """
            )

    def try_acquire_lock(self, repository_key: str, operation_id: str, ttl_seconds: int) -> bool:
        now = self._clock()
        now_text = format_timestamp(now)
        expires_text = format_timestamp(now + timedelta(seconds=ttl_seconds))
        with self._lock, self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                "DELETE FROM repository_locks WHERE repository_key = ? AND expires_at <= ?",
                (repository_key, now_text),
            )
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO repository_locks(
                    repository_key, operation_id, acquired_at, expires_at
                )
                VALUES (?, ?, ?, ?)
                """,
                (repository_key, operation_id, now_text, expires_text),
            )
            return cursor.rowcount == 1

    def release_lock(self, repository_key: str, operation_id: str | None = None) -> bool:
        """Delete the lock row. With an operation_id, only that holder's row is removed."""
        with self._lock, self._connect() as conn:
            if operation_id is None:
                cursor = conn.execute(
                    "DELETE FROM repository_locks WHERE repository_key = ?", (repository_key,)
                )
            else:
                cursor = conn.execute(
                    "DELETE FROM repository_locks WHERE repository_key = ? AND operation_id = ?",
                    (repository_key, operation_id),
                )
            return cursor.rowcount > 0

    def get_lock(self, repository_key: str) -> RepositoryLock | None:
        now_text = format_timestamp(self._clock())
        with self._lock, self._connect() as conn:
            conn.execute(
                "DELETE FROM repository_locks WHERE repository_key = ? AND expires_at <= ?",
                (repository_key, now_text),
            )
            row = conn.execute(
                """
                SELECT repository_key, operation_id, acquired_at, expires_at
                FROM repository_locks
                WHERE repository_key = ?
                """,
                (repository_key,),
            ).fetchone()
        if row is None:
            return None
        return _parse_lock_row(row)

    def list_locks(self) -> tuple[RepositoryLock, ...]:
        now_text = format_timestamp(self._clock())
        with self._lock, self._connect() as conn:
            conn.execute("DELETE FROM repository_locks WHERE expires_at <= ?", (now_text,))
            rows = conn.execute(
                """
                SELECT repository_key, operation_id, acquired_at, expires_at
                FROM repository_locks
                ORDER BY repository_key ASC
                """
            ).fetchall()
        return tuple(_parse_lock_row(row) for row in rows)

    def clear_locks(self) -> int:
        with self._lock, self._connect() as conn:
            return conn.execute("DELETE FROM repository_locks").rowcount

    def save_operation(self, operation: ApplyOperation) -> ApplyOperation:
        now_text = format_timestamp(self._clock())
        saved = replace(
            operation,
            created_at=operation.created_at or now_text,
            updated_at=now_text,
        )
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO apply_operations(
                    operation_id, owner, name, status, branch_name, base_branch,
                    pull_request_number, pull_request_url, commit_shas_json, errors_json,
                    created_at, updated_at, completed_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(operation_id) DO UPDATE SET
                    status=excluded.status,
                    branch_name=excluded.branch_name,
                    base_branch=excluded.base_branch,
                    pull_request_number=excluded.pull_request_number,
                    pull_request_url=excluded.pull_request_url,
                    commit_shas_json=excluded.commit_shas_json,
                    errors_json=excluded.errors_json,
                    updated_at=excluded.updated_at,
                    completed_at=excluded.completed_at
                """,
                (
                    saved.operation_id,
                    saved.repository.owner,
                    saved.repository.name,
                    saved.status,
                    saved.branch_name,
                    saved.base_branch,
                    saved.pull_request_number,
                    saved.pull_request_url,
                    json.dumps(list(saved.commit_shas)),
                    json.dumps(list(saved.errors)),
                    saved.created_at,
                    saved.updated_at,
                    saved.completed_at,
                ),
            )
        return saved

    def get_operation(self, operation_id: str) -> ApplyOperation | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"SELECT {_OPERATION_COLUMNS} FROM apply_operations WHERE operation_id = ?",
                (operation_id,),
            ).fetchone()
        if row is None:
            return None
        return _parse_operation_row(row)

    def list_operations(self, *, limit: int | None = None) -> tuple[ApplyOperation, ...]:
        query = (
            f"SELECT {_OPERATION_COLUMNS} FROM apply_operations "
            "ORDER BY created_at DESC, operation_id DESC"
        )
        params: tuple[object, ...] = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        with self._lock, self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return tuple(_parse_operation_row(row) for row in rows)

    def delete_operation(self, operation_id: str) -> bool:
        with self._lock, self._connect() as conn:
            conn.execute("DELETE FROM progress_events WHERE operation_id = ?", (operation_id,))
            cursor = conn.execute(
                "DELETE FROM apply_operations WHERE operation_id = ?", (operation_id,)
            )
            return cursor.rowcount > 0

    def purge_completed_before(self, cutoff: datetime) -> tuple[str, ...]:
        cutoff_text = format_timestamp(cutoff)
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT operation_id
                FROM apply_operations
                WHERE completed_at IS NOT NULL AND completed_at <= ?
                """,
                (cutoff_text,),
            ).fetchall()
            purged = tuple(_as_str(row[0], "operation_id", "apply_operations") for row in rows)
            for operation_id in purged:
                conn.execute("DELETE FROM progress_events WHERE operation_id = ?", (operation_id,))
                conn.execute(
                    "DELETE FROM apply_operations WHERE operation_id = ?", (operation_id,)
                )
        return purged

    def append_progress_event(self, event: ProgressEvent) -> int:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO progress_events(
                    operation_id, step, message, percentage, batch_index, batch_total, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.operation_id,
                    event.step,
                    event.message,
                    event.percentage,
                    event.batch_index,
                    event.batch_total,
                    format_timestamp(event.timestamp),
                ),
            )
            event_id = cursor.lastrowid
        if event_id is None:
            raise RuntimeError("progress_events insert did not return a row id")
        return event_id

    def list_progress_events(self, operation_id: str) -> tuple[ProgressEvent, ...]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT operation_id, step, message, percentage, batch_index, batch_total,
                       created_at
                FROM progress_events
                WHERE operation_id = ?
                ORDER BY id ASC
                """,
                (operation_id,),
            ).fetchall()
        return tuple(_parse_progress_event_row(row) for row in rows)


_OPERATION_COLUMNS = (
    "operation_id, owner, name, status, branch_name, base_branch, pull_request_number, "
    "pull_request_url, commit_shas_json, errors_json, created_at, updated_at, completed_at"
)


def _parse_lock_row(row: tuple[object, ...]) -> RepositoryLock:
    repository_key, operation_id, acquired_at, expires_at = row
    return RepositoryLock(
        repository_key=_as_str(repository_key, "repository_key", "repository_locks"),
        operation_id=_as_str(operation_id, "operation_id", "repository_locks"),
        acquired_at=parse_timestamp(_as_str(acquired_at, "acquired_at", "repository_locks")),
        expires_at=parse_timestamp(_as_str(expires_at, "expires_at", "repository_locks")),
    )


def _parse_operation_row(row: tuple[object, ...]) -> ApplyOperation:
    if len(row) != 13:
        raise RuntimeError("Invalid apply_operations row width")
    (
        operation_id,
        owner,
        name,
        status,
        branch_name,
        base_branch,
        pull_request_number,
        pull_request_url,
        commit_shas_json,
        errors_json,
        created_at,
        updated_at,
        completed_at,
    ) = row
    table = "apply_operations"
    if pull_request_number is not None and not isinstance(pull_request_number, int):
        raise RuntimeError("Invalid pull_request_number value stored in apply_operations")
    return ApplyOperation(
        operation_id=_as_str(operation_id, "operation_id", table),
        repository=RepositoryRef(
            owner=_as_str(owner, "owner", table), name=_as_str(name, "name", table)
        ),
        status=_parse_step(status, table),
        branch_name=_as_optional_str(branch_name, "branch_name", table),
        base_branch=_as_optional_str(base_branch, "base_branch", table),
        pull_request_number=pull_request_number,
        pull_request_url=_as_optional_str(pull_request_url, "pull_request_url", table),
        commit_shas=_parse_str_list(commit_shas_json, "commit_shas_json"),
        errors=_parse_str_list(errors_json, "errors_json"),
        created_at=_as_str(created_at, "created_at", table),
        updated_at=_as_str(updated_at, "updated_at", table),
        completed_at=_as_optional_str(completed_at, "completed_at", table),
    )


def _parse_progress_event_row(row: tuple[object, ...]) -> ProgressEvent:
    operation_id, step, message, percentage, batch_index, batch_total, created_at = row
    table = "progress_events"
    if isinstance(percentage, bool) or not isinstance(percentage, int):
        raise RuntimeError("Invalid percentage value stored in progress_events")
    if batch_index is not None and not isinstance(batch_index, int):
        raise RuntimeError("Invalid batch_index value stored in progress_events")
    if batch_total is not None and not isinstance(batch_total, int):
        raise RuntimeError("Invalid batch_total value stored in progress_events")
    return ProgressEvent(
        operation_id=_as_str(operation_id, "operation_id", table),
        step=_parse_step(step, table),
        message=_as_str(message, "message", table),
        percentage=percentage,
        timestamp=parse_timestamp(_as_str(created_at, "created_at", table)),
        batch_index=batch_index,
        batch_total=batch_total,
    )


def _parse_step(value: object, table: str) -> ApplyStep:
    if not isinstance(value, str) or value not in APPLY_STEPS:
        raise RuntimeError(f"Invalid status value stored in {table}")
    return cast(ApplyStep, value)


def _parse_str_list(value: object, column: str) -> tuple[str, ...]:
    if not isinstance(value, str):
        raise RuntimeError(f"Invalid {column} value stored in apply_operations")
    try:
        decoded = json.loads(value)
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"Invalid {column} value stored in apply_operations") from exc
    if not isinstance(decoded, list) or not all(isinstance(item, str) for item in decoded):
        raise RuntimeError(f"Invalid {column} value stored in apply_operations")
    return tuple(cast(list[str], decoded))


def _as_str(value: object, column: str, table: str) -> str:
    if not isinstance(value, str):
        raise RuntimeError(f"Invalid {column} value stored in {table}")
    return value


def _as_optional_str(value: object, column: str, table: str) -> str | None:
    if value is None:
        return None
    return _as_str(value, column, table)
