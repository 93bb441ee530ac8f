from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest
from textual.css.query import NoMatches
from textual.widgets import DataTable

from prlander import observability_tui as tui
from prlander.models import ApplyOperation, ProgressEvent, RepositoryRef
from prlander.observability_queries import OperationRow, OverviewStats, ProgressRow
from prlander.state import StateStore


def _operation_row(**changes: object) -> OperationRow:
    values: dict[str, object] = {
        "operation_id": "op_1",
        "repository_key": "acme/widgets",
        "status": "complete",
        "branch_name": "prlander/migration-vue-x",
        "pull_request_number": 7,
        "pull_request_url": "https://github.com/acme/widgets/pull/7",
        "commit_count": 3,
        "last_percentage": 100,
        "last_message": "done",
        "created_at": "2024-01-15T10:00:00.000000Z",
        "completed_at": "2024-01-15T10:01:00.000000Z",
    }
    values.update(changes)
    return OperationRow(**values)  # type: ignore[arg-type]


def _progress_row(**changes: object) -> ProgressRow:
    values: dict[str, object] = {
        "id": 1,
        "operation_id": "op_1",
        "step": "committing",
        "message": "Committed batch 1/3",
        "percentage": 46,
        "batch_index": 1,
        "batch_total": 3,
        "created_at": "2024-01-15T10:00:10.000000Z",
    }
    values.update(changes)
    return ProgressRow(**values)  # type: ignore[arg-type]


def test_observability_tui_helper_functions() -> None:
    summary = tui._summary_text(OverviewStats(in_flight=1, completed=2, failed=3, active_locks=4))
    assert summary.splitlines()[0] == "in_flight=1 | completed=2 | failed=3 | locks=4"
    assert "q quit" in summary

    assert tui._render_progress(0) == "[....................]   0%"
    assert tui._render_progress(50) == "[##########..........]  50%"
    assert tui._render_progress(150) == "[####################] 100%"
    assert tui._render_batch(_progress_row()) == "1/3"
    assert tui._render_batch(_progress_row(batch_index=None, batch_total=None)) == "-"
    assert tui._truncate("short", 10) == "short"
    assert tui._truncate("a  b\nc", 10) == "a b c"
    assert tui._truncate("x" * 20, 10) == "xxxxxxx..."


def test_operation_detail_text() -> None:
    text = tui._operation_detail_text(_operation_row(), (_progress_row(),))
    assert "repository: acme/widgets" in text
    assert "pull request: https://github.com/acme/widgets/pull/7" in text
    assert "  2024-01-15T10:00:10.000000Z committing 46% Committed batch 1/3" in text

    empty = tui._operation_detail_text(
        _operation_row(branch_name=None, pull_request_url=None, completed_at=None), ()
    )
    assert "branch: -" in empty
    assert "completed: -" in empty
    assert "(no events recorded)" in empty


def test_run_observability_tui_runs_app(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    called: dict[str, object] = {}

    class FakeApp:
        def __init__(self, **kwargs) -> None:  # type: ignore[no-untyped-def]
            called["kwargs"] = kwargs

        def run(self) -> None:
            called["ran"] = True

    monkeypatch.setattr(tui, "ObservabilityApp", FakeApp)
    tui.run_observability_tui(db_path=tmp_path / "state.db", refresh_seconds=3, row_limit=10)

    assert called["ran"] is True
    assert called["kwargs"] == {
        "db_path": tmp_path / "state.db",
        "refresh_seconds": 3,
        "row_limit": 10,
    }


def test_observability_app_shows_operations_and_progress(tmp_path: Path) -> None:
    db_path = tmp_path / "state.db"
    ticks = iter(range(1000))
    start = datetime(2024, 1, 15, 10, 0, 0, tzinfo=timezone.utc)
    store = StateStore(db_path, clock=lambda: start + timedelta(seconds=next(ticks)))
    for operation_id in ("op_old", "op_new"):
        store.save_operation(
            ApplyOperation(
                operation_id=operation_id,
                repository=RepositoryRef(owner="acme", name="widgets"),
                status="committing",
            )
        )
    for percentage in (10, 20, 30):
        store.append_progress_event(
            ProgressEvent(
                operation_id="op_new",
                step="validating",
                message="working",
                percentage=percentage,
                timestamp=start,
            )
        )

    app = tui.ObservabilityApp(db_path=db_path, refresh_seconds=60, row_limit=20)

    async def run_app() -> None:
        async with app.run_test() as pilot:
            await pilot.pause()
            operations = app.query_one("#operations-table", DataTable)
            events = app.query_one("#events-table", DataTable)
            assert operations.row_count == 2
            assert app._selected_operation_id == "op_new"
            assert events.row_count == 3

            operations.focus()
            operations.move_cursor(row=1, animate=False)
            await pilot.pause()
            assert app._selected_operation_id == "op_old"
            assert events.row_count == 0

            app.action_show_detail()
            await pilot.pause()
            assert isinstance(app.screen, tui._DetailModal)
            app._selected_operation_id = "op_new"
            app._refresh_events_table()
            assert events.row_count == 3
            app.refresh_data()
            assert operations.row_count == 2
            assert isinstance(app.screen, tui._DetailModal)
            await pilot.press("escape")
            await pilot.pause()
            assert not isinstance(app.screen, tui._DetailModal)

            app.action_cycle_focus()
            app.action_refresh()
            assert operations.row_count == 2

            app._selected_operation_id = "op_gone"
            assert app._selected_operation() is None
            app.action_show_detail()
            assert not isinstance(app.screen, tui._DetailModal)

    asyncio.run(run_app())


def test_row_highlight_after_tables_unmount_is_ignored(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    app = tui.ObservabilityApp(db_path=tmp_path / "state.db")
    app._operations = (_operation_row(operation_id="op_1"), _operation_row(operation_id="op_2"))
    app._selected_operation_id = "op_1"

    def unmounted() -> None:
        raise NoMatches("No nodes match '#events-table'")

    monkeypatch.setattr(app, "_refresh_events_table", unmounted)
    event = SimpleNamespace(data_table=SimpleNamespace(id="operations-table"), cursor_row=1)

    app.on_data_table_row_highlighted(event)  # type: ignore[arg-type]
    assert app._selected_operation_id == "op_2"
