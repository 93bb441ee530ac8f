from __future__ import annotations

from pathlib import Path
from typing import Any

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical, VerticalScroll
from textual.css.query import NoMatches
from textual.screen import ModalScreen, Screen
from textual.widgets import DataTable, Footer, Header, Static

from prlander.observability_queries import (
    OperationRow,
    OverviewStats,
    ProgressRow,
    load_operations,
    load_overview,
    load_progress_events,
)
from prlander.state import format_timestamp, utc_now


_PROGRESS_BAR_WIDTH = 20
_MESSAGE_MAX_CHARS = 60


class _DetailModal(ModalScreen[None]):
    BINDINGS = [
        Binding("escape", "close", "Close"),
        Binding("enter", "close", "Close"),
        Binding("q", "close", "Close"),
    ]
    CSS = """
    #detail-dialog {
        width: 90%;
        height: 80%;
        border: round $accent;
        background: $surface;
        padding: 1 2;
    }
    #detail-title {
        text-style: bold;
        margin-bottom: 1;
    }
    #detail-body-scroll {
        height: 1fr;
        border: round $boost;
        padding: 0 1;
    }
    """

    def __init__(self, *, title: str, body: str) -> None:
        super().__init__()
        self._title = title
        self._body = body

    def compose(self) -> ComposeResult:
        with Vertical(id="detail-dialog"):
            yield Static(self._title, id="detail-title")
            with VerticalScroll(id="detail-body-scroll"):
                yield Static(self._body, id="detail-body")
            yield Static("Press Esc, Enter, or q to close.", id="detail-hint")

    def action_close(self) -> None:
        self.dismiss(None)


class ObservabilityApp(App[None]):
    """Live view of recent apply operations and the selected operation's progress."""

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
        Binding("tab", "cycle_focus", "Focus"),
        Binding("enter", "show_detail", "Details"),
    ]
    CSS = """
    Screen {
        layout: vertical;
    }
    .panel-title {
        text-style: bold;
        padding-left: 1;
    }
    #summary {
        height: 3;
        padding: 0 1;
    }
    DataTable {
        height: 1fr;
    }
    """

    def __init__(self, *, db_path: Path, refresh_seconds: int = 2, row_limit: int | None = 200) -> None:
        super().__init__()
        self._db_path = db_path
        self._refresh_seconds = refresh_seconds
        self._row_limit = row_limit
        self._operations: tuple[OperationRow, ...] = ()
        self._events: tuple[ProgressRow, ...] = ()
        self._selected_operation_id: str | None = None

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield Static("", id="summary")
            yield Static("Operations", classes="panel-title")
            yield DataTable(id="operations-table", cursor_type="row")
            yield Static("Progress", classes="panel-title")
            yield DataTable(id="events-table", cursor_type="row")
        yield Footer()

    def on_mount(self) -> None:
        self._base_table("#operations-table").add_columns(
            "Operation", "Repository", "Status", "Progress", "Branch", "PR", "Commits", "Created"
        )
        self._base_table("#events-table").add_columns(
            "Time", "Step", "Percent", "Batch", "Message"
        )
        self.refresh_data()
        self.set_interval(self._refresh_seconds, self.refresh_data)

    def action_refresh(self) -> None:
        self.refresh_data()

    def action_cycle_focus(self) -> None:
        self.screen.focus_next()

    def action_show_detail(self) -> None:
        row = self._selected_operation()
        if row is None or not self.is_running:
            return
        self.push_screen(
            _DetailModal(
                title=f"Operation {row.operation_id}",
                body=_operation_detail_text(row, self._events),
            )
        )

    def on_data_table_row_selected(self, event: DataTable.RowSelected) -> None:
        if event.data_table.id == "operations-table":
            self.action_show_detail()

    def on_data_table_row_highlighted(self, event: DataTable.RowHighlighted) -> None:
        if event.data_table.id != "operations-table":
            return
        if event.cursor_row < 0 or event.cursor_row >= len(self._operations):
            return
        operation_id = self._operations[event.cursor_row].operation_id
        if operation_id == self._selected_operation_id:
            return
        self._selected_operation_id = operation_id
        try:
            self._refresh_events_table()
        except NoMatches:
            # Highlight messages can arrive after the tables were unmounted.
            return

    def refresh_data(self) -> None:
        overview = load_overview(self._db_path, format_timestamp(utc_now()))
        self._operations = load_operations(self._db_path, limit=self._row_limit)
        known_ids = {row.operation_id for row in self._operations}
        if self._selected_operation_id not in known_ids:
            self._selected_operation_id = (
                self._operations[0].operation_id if self._operations else None
            )
        self._base_static("#summary").update(_summary_text(overview))
        self._refresh_operations_table()
        self._refresh_events_table()

    def _refresh_operations_table(self) -> None:
        table = self._base_table("#operations-table")
        table.clear(columns=False)
        selected_index = 0
        for index, row in enumerate(self._operations):
            if row.operation_id == self._selected_operation_id:
                selected_index = index
            table.add_row(
                row.operation_id,
                row.repository_key,
                row.status,
                _render_progress(row.last_percentage),
                row.branch_name or "-",
                str(row.pull_request_number) if row.pull_request_number is not None else "-",
                str(row.commit_count),
                row.created_at,
            )
        if table.row_count > 0:
            table.move_cursor(row=selected_index, animate=False)

    def _refresh_events_table(self) -> None:
        table = self._base_table("#events-table")
        table.clear(columns=False)
        if self._selected_operation_id is None:
            self._events = ()
            return
        self._events = load_progress_events(self._db_path, self._selected_operation_id)
        for event in self._events:
            table.add_row(
                event.created_at,
                event.step,
                f"{event.percentage}%",
                _render_batch(event),
                _truncate(event.message, _MESSAGE_MAX_CHARS),
            )

    def _base_screen(self) -> Screen[Any]:
        if self.screen_stack:
            return self.screen_stack[0]
        return self.screen

    def _base_table(self, selector: str) -> DataTable:
        return self._base_screen().query_one(selector, DataTable)

    def _base_static(self, selector: str) -> Static:
        return self._base_screen().query_one(selector, Static)

    def _selected_operation(self) -> OperationRow | None:
        for row in self._operations:
            if row.operation_id == self._selected_operation_id:
                return row
        return None


def run_observability_tui(*, db_path: Path, refresh_seconds: int, row_limit: int | None) -> None:
    app = ObservabilityApp(db_path=db_path, refresh_seconds=refresh_seconds, row_limit=row_limit)
    app.run()


def _summary_text(overview: OverviewStats) -> str:
    return (
        " | ".join(
            [
                f"in_flight={overview.in_flight}",
                f"completed={overview.completed}",
                f"failed={overview.failed}",
                f"locks={overview.active_locks}",
            ]
        )
        + "\nKeys: r refresh | tab focus | enter details | q quit"
    )


def _render_progress(percentage: int) -> str:
    clamped = max(0, min(100, percentage))
    filled = clamped * _PROGRESS_BAR_WIDTH // 100
    return f"[{'#' * filled}{'.' * (_PROGRESS_BAR_WIDTH - filled)}] {clamped:3d}%"


def _render_batch(event: ProgressRow) -> str:
    if event.batch_index is None or event.batch_total is None:
        return "-"
    return f"{event.batch_index}/{event.batch_total}"


def _truncate(value: str, max_chars: int) -> str:
    compact = " ".join(value.split())
    if len(compact) <= max_chars:
        return compact
    return f"{compact[: max_chars - 3]}..."


def _operation_detail_text(row: OperationRow, events: tuple[ProgressRow, ...]) -> str:
    lines = [
        f"repository: {row.repository_key}",
        f"status: {row.status}",
        f"branch: {row.branch_name or '-'}",
        f"pull request: {row.pull_request_url or '-'}",
        f"commits: {row.commit_count}",
        f"created: {row.created_at}",
        f"completed: {row.completed_at or '-'}",
        "",
        "progress:",
    ]
    if not events:
        lines.append("  (no events recorded)")
    for event in events:
        lines.append(f"  {event.created_at} {event.step} {event.percentage}% {event.message}")
    return "\n".join(lines)
