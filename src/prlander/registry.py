from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
import logging
from queue import Empty, SimpleQueue
import threading
from typing import Final

from prlander.models import ApplyOperation, ProgressEvent
from prlander.observability import log_event
from prlander.state import StateStore, format_timestamp, parse_timestamp


LOGGER = logging.getLogger("prlander.registry")
DEFAULT_COMPLETED_RETENTION_SECONDS: Final[int] = 300
DEFAULT_LIVE_RETENTION_SECONDS: Final[int] = 900

ProgressObserver = Callable[[ProgressEvent], None]


class OperationStateError(RuntimeError):
    pass


@dataclass(frozen=True)
class _LiveEntry:
    operation: ApplyOperation
    registered_at: datetime


class ProgressStream:
    """One subscriber's ordered view of an operation's progress events.

    Events are queued as they are published; iterating blocks until the next
    event arrives and stops after the terminal one.
    """

    def __init__(self, registry: OperationRegistry, operation_id: str) -> None:
        self._registry = registry
        self._operation_id = operation_id
        self._queue: SimpleQueue[ProgressEvent] = SimpleQueue()
        self._closed = False

    @property
    def operation_id(self) -> str:
        return self._operation_id

    def deliver(self, event: ProgressEvent) -> None:
        self._queue.put(event)

    def get(self, timeout: float | None = None) -> ProgressEvent | None:
        try:
            return self._queue.get(timeout=timeout)
        except Empty:
            return None

    def events(self, *, timeout: float | None = None) -> Iterator[ProgressEvent]:
        try:
            while True:
                event = self.get(timeout=timeout)
                if event is None:
                    return
                yield event
                if event.is_terminal:
                    return
        finally:
            self.close()

    def __iter__(self) -> Iterator[ProgressEvent]:
        return self.events()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._registry.unregister_observer(self._operation_id, self.deliver)


class OperationRegistry:
    """Directory of in-flight and recently finished operations.

    Operation records and their progress events live in the shared
    :class:`StateStore`, so a process other than the one running an operation
    can inspect it. Observer callbacks are local to this instance.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        completed_retention_seconds: int = DEFAULT_COMPLETED_RETENTION_SECONDS,
        live_retention_seconds: int = DEFAULT_LIVE_RETENTION_SECONDS,
    ) -> None:
        self._store = store
        self._completed_retention = timedelta(seconds=completed_retention_seconds)
        self._live_retention = timedelta(seconds=live_retention_seconds)
        self._lock = threading.Lock()
        self._live: dict[str, _LiveEntry] = {}
        self._observers: dict[str, list[ProgressObserver]] = {}

    def register(self, operation: ApplyOperation) -> ApplyOperation:
        self.purge_expired()
        if self._store.get_operation(operation.operation_id) is not None:
            raise OperationStateError(f"Operation {operation.operation_id} is already registered")
        saved = self._store.save_operation(operation)
        with self._lock:
            self._live[saved.operation_id] = _LiveEntry(
                operation=saved, registered_at=self._store.now()
            )
        log_event(
            LOGGER,
            "operation_registered",
            operation_id=saved.operation_id,
            repository_key=saved.repository_key,
        )
        return saved

    def get(self, operation_id: str) -> ApplyOperation | None:
        with self._lock:
            entry = self._live.get(operation_id)
        if entry is not None:
            return entry.operation
        operation = self._store.get_operation(operation_id)
        if operation is None:
            return None
        if self._is_expired(operation):
            self.forget(operation_id)
            return None
        return operation

    def update(self, operation_id: str, **changes: object) -> ApplyOperation:
        current = self.get(operation_id)
        if current is None:
            raise OperationStateError(f"Unknown operation {operation_id}")
        if current.is_terminal:
            raise OperationStateError(
                f"Operation {operation_id} is already {current.status} and cannot change"
            )
        updated = replace(current, **changes)  # type: ignore[arg-type]
        if updated.is_terminal and updated.completed_at is None:
            updated = replace(updated, completed_at=format_timestamp(self._store.now()))
        saved = self._store.save_operation(updated)
        with self._lock:
            entry = self._live.get(operation_id)
            if entry is not None:
                self._live[operation_id] = replace(entry, operation=saved)
        return saved

    def unregister(self, operation_id: str) -> None:
        """Drop the live handle; the stored record stays readable for the retention window."""
        with self._lock:
            entry = self._live.pop(operation_id, None)
        operation = entry.operation if entry is not None else self._store.get_operation(operation_id)
        if operation is not None and operation.completed_at is None:
            self._store.save_operation(
                replace(operation, completed_at=format_timestamp(self._store.now()))
            )
        log_event(LOGGER, "operation_unregistered", operation_id=operation_id)

    def forget(self, operation_id: str) -> None:
        with self._lock:
            self._live.pop(operation_id, None)
            self._observers.pop(operation_id, None)
        self._store.delete_operation(operation_id)

    def publish(self, event: ProgressEvent) -> None:
        self._store.append_progress_event(event)
        with self._lock:
            observers = tuple(self._observers.get(event.operation_id, ()))
            if event.is_terminal:
                self._observers.pop(event.operation_id, None)
        for observer in observers:
            _notify(observer, event)

    def register_observer(self, operation_id: str, observer: ProgressObserver) -> None:
        """Attach ``observer`` to an operation's progress.

        An observer attached after the operation finished, but within the
        retention window, receives only the cached terminal event. Expired
        operations deliver nothing.
        """
        with self._lock:
            terminal = self._cached_terminal_event(operation_id)
            if terminal is None:
                self._observers.setdefault(operation_id, []).append(observer)
        if terminal is not None:
            _notify(observer, terminal)

    def unregister_observer(self, operation_id: str, observer: ProgressObserver) -> None:
        with self._lock:
            observers = self._observers.get(operation_id)
            if observers is None:
                return
            if observer in observers:
                observers.remove(observer)
            if not observers:
                del self._observers[operation_id]

    def open_stream(self, operation_id: str) -> ProgressStream:
        stream = ProgressStream(self, operation_id)
        self.register_observer(operation_id, stream.deliver)
        return stream

    def list_progress_events(self, operation_id: str) -> tuple[ProgressEvent, ...] | None:
        if self.get(operation_id) is None:
            return None
        return self._store.list_progress_events(operation_id)

    def list_operations(self, *, limit: int | None = None) -> tuple[ApplyOperation, ...]:
        return tuple(
            operation
            for operation in self._store.list_operations(limit=limit)
            if not self._is_expired(operation)
        )

    def purge_expired(self) -> tuple[str, ...]:
        now = self._store.now()
        purged = self._store.purge_completed_before(now - self._completed_retention)
        with self._lock:
            stale = [
                operation_id
                for operation_id, entry in self._live.items()
                if now - entry.registered_at >= self._live_retention
            ]
            for operation_id in stale:
                self._live.pop(operation_id, None)
            # Observers of a running operation stay attached until its terminal event.
            for operation_id in purged:
                self._live.pop(operation_id, None)
                self._observers.pop(operation_id, None)
        if purged or stale:
            log_event(
                LOGGER,
                "operations_purged",
                completed_count=len(purged),
                stale_live_count=len(stale),
            )
        return purged

    def _cached_terminal_event(self, operation_id: str) -> ProgressEvent | None:
        operation = self._store.get_operation(operation_id)
        if operation is None or self._is_expired(operation):
            return None
        events = self._store.list_progress_events(operation_id)
        if events and events[-1].is_terminal:
            return events[-1]
        return None

    def _is_expired(self, operation: ApplyOperation) -> bool:
        if not operation.is_terminal or operation.completed_at is None:
            return False
        completed_at = parse_timestamp(operation.completed_at)
        return self._store.now() - completed_at >= self._completed_retention


def _notify(observer: ProgressObserver, event: ProgressEvent) -> None:
    try:
        observer(event)
    except Exception as exc:  # noqa: BLE001
        log_event(
            LOGGER,
            "progress_observer_failed",
            operation_id=event.operation_id,
            step=event.step,
            error_type=type(exc).__name__,
        )
