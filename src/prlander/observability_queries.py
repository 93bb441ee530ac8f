from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
import json
from pathlib import Path
import sqlite3


@dataclass(frozen=True)
class OverviewStats:
    in_flight: int
    completed: int
    failed: int
    active_locks: int


@dataclass(frozen=True)
class OperationRow:
    operation_id: str
    repository_key: str
    status: str
    branch_name: str | None
    pull_request_number: int | None
    pull_request_url: str | None
    commit_count: int
    last_percentage: int
    last_message: str | None
    created_at: str
    completed_at: str | None


@dataclass(frozen=True)
class ProgressRow:
    id: int
    operation_id: str
    step: str
    message: str
    percentage: int
    batch_index: int | None
    batch_total: int | None
    created_at: str


def load_overview(db_path: Path, now: str) -> OverviewStats:
    with _connect(db_path) as conn:
        in_flight = _fetch_int(
            conn,
            "SELECT COUNT(*) FROM apply_operations WHERE status NOT IN ('complete', 'error')",
            (),
        )
        completed = _fetch_int(
            conn, "SELECT COUNT(*) FROM apply_operations WHERE status = 'complete'", ()
        )
        failed = _fetch_int(conn, "SELECT COUNT(*) FROM apply_operations WHERE status = 'error'", ())
        active_locks = _fetch_int(
            conn, "SELECT COUNT(*) FROM repository_locks WHERE expires_at > ?", (now,)
        )
    return OverviewStats(
        in_flight=in_flight, completed=completed, failed=failed, active_locks=active_locks
    )


def load_operations(db_path: Path, *, limit: int | None = 200) -> tuple[OperationRow, ...]:
    limit_clause = "LIMIT ?" if limit is not None else ""
    params: tuple[object, ...] = (limit,) if limit is not None else ()
    with _connect(db_path) as conn:
        rows = conn.execute(
            f"""
            SELECT
                o.operation_id,
                o.owner || '/' || o.name,
                o.status,
                o.branch_name,
                o.pull_request_number,
                o.pull_request_url,
                o.commit_shas_json,
                (
                    SELECT e.percentage FROM progress_events AS e
                    WHERE e.operation_id = o.operation_id
                    ORDER BY e.id DESC LIMIT 1
                ),
                (
                    SELECT e.message FROM progress_events AS e
                    WHERE e.operation_id = o.operation_id
                    ORDER BY e.id DESC LIMIT 1
                ),
                o.created_at,
                o.completed_at
            FROM apply_operations AS o
            ORDER BY o.created_at DESC, o.operation_id DESC
            {limit_clause}
            """,
            params,
        ).fetchall()
    return tuple(
        OperationRow(
            operation_id=_as_str(row[0], "operation_id"),
            repository_key=_as_str(row[1], "repository_key"),
            status=_as_str(row[2], "status"),
            branch_name=_as_optional_str(row[3], "branch_name"),
            pull_request_number=_as_optional_int(row[4], "pull_request_number"),
            pull_request_url=_as_optional_str(row[5], "pull_request_url"),
            commit_count=_commit_count(row[6]),
            last_percentage=_as_int(row[7], "percentage"),
            last_message=_as_optional_str(row[8], "message"),
            created_at=_as_str(row[9], "created_at"),
            completed_at=_as_optional_str(row[10], "completed_at"),
        )
        for row in rows
    )


def load_progress_events(db_path: Path, operation_id: str) -> tuple[ProgressRow, ...]:
    with _connect(db_path) as conn:
        rows = conn.execute(
            """
            SELECT id, operation_id, step, message, percentage, batch_index, batch_total,
                   created_at
            FROM progress_events
            WHERE operation_id = ?
            ORDER BY id ASC
            """,
            (operation_id,),
        ).fetchall()
    return tuple(
        ProgressRow(
            id=_as_int(row[0], "id"),
            operation_id=_as_str(row[1], "operation_id"),
            step=_as_str(row[2], "step"),
            message=_as_str(row[3], "message"),
            percentage=_as_int(row[4], "percentage"),
            batch_index=_as_optional_int(row[5], "batch_index"),
            batch_total=_as_optional_int(row[6], "batch_total"),
            created_at=_as_str(row[7], "created_at"),
        )
        for row in rows
    )


@contextmanager
def _connect(db_path: Path) -> Iterator[sqlite3.Connection]:
    conn = sqlite3.connect(db_path)
    conn.execute("PRAGMA journal_mode=WAL;")
    try:
        yield conn
    finally:
        conn.close()


def _fetch_int(conn: sqlite3.Connection, sql: str, params: tuple[object, ...]) -> int:
    row = conn.execute(sql, params).fetchone()
    if row is None:
        raise RuntimeError("Expected count query to return a row")
    return _as_int(row[0], "count")


def _commit_count(value: object) -> int:
    if not isinstance(value, str):
        raise RuntimeError("Invalid commit_shas_json value in observability query result")
    decoded = json.loads(value)
    return len(decoded) if isinstance(decoded, list) else 0


def _as_int(value: object, field: str) -> int:
    if isinstance(value, int):
        return value
    if value is None:
        return 0
    raise RuntimeError(f"Invalid {field} value in observability query result")


def _as_optional_int(value: object, field: str) -> int | None:
    if value is None:
        return None
    return _as_int(value, field)


def _as_str(value: object, field: str) -> str:
    if isinstance(value, str):
        return value
    raise RuntimeError(f"Invalid {field} value in observability query result")


def _as_optional_str(value: object, field: str) -> str | None:
    if value is None:
        return None
    return _as_str(value, field)
