from __future__ import annotations

import argparse
from dataclasses import dataclass
import json
import logging
from pathlib import Path
import time

from prlander.branch_names import BranchNameGenerator
from prlander.config import AppConfig, load_config
from prlander.github_gateway import GitHubGateway
from prlander.lock_manager import OperationLockManager
from prlander.models import ApplyChangesResult, ProgressEvent, RepositoryRef, RollbackResult
from prlander.observability import configure_logging, log_event
from prlander.observability_tui import run_observability_tui
from prlander.orchestrator import ApplyOrchestrator
from prlander.payloads import (
    event_to_dict,
    lock_to_dict,
    parse_apply_request,
    result_to_dict,
    rollback_result_to_dict,
)
from prlander.registry import OperationRegistry
from prlander.rollback import RollbackCoordinator
from prlander.state import StateStore, format_timestamp


LOGGER = logging.getLogger("prlander.cli")


@dataclass(frozen=True)
class _Services:
    store: StateStore
    locks: OperationLockManager
    registry: OperationRegistry
    orchestrator: ApplyOrchestrator
    rollback: RollbackCoordinator


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="prlander")
    subparsers = parser.add_subparsers(dest="command", required=True)

    apply_parser = subparsers.add_parser(
        "apply", help="Publish a change set as a branch, commits, and a draft pull request"
    )
    _add_common_arguments(apply_parser)
    apply_parser.add_argument(
        "--request", type=Path, required=True, help="Path to an apply request JSON file"
    )
    apply_parser.add_argument("--operation-id", type=str, help="Use this operation id")
    apply_parser.add_argument("--json", action="store_true", help="Print the result as JSON")

    progress_parser = subparsers.add_parser(
        "progress", help="Show progress events recorded for an operation"
    )
    _add_common_arguments(progress_parser)
    progress_parser.add_argument("operation_id")
    progress_parser.add_argument(
        "--follow", action="store_true", help="Keep polling until the operation finishes"
    )
    progress_parser.add_argument("--poll-seconds", type=float, default=1.0)
    progress_parser.add_argument("--json", action="store_true", help="Print events as JSON lines")

    rollback_parser = subparsers.add_parser(
        "rollback", help="Close an operation's pull request and delete its branch"
    )
    _add_common_arguments(rollback_parser)
    rollback_parser.add_argument("operation_id")
    rollback_parser.add_argument("--yes", action="store_true", help="Confirm the rollback")
    rollback_parser.add_argument("--json", action="store_true", help="Print the result as JSON")

    locks_parser = subparsers.add_parser("locks", help="Inspect and release repository locks")
    _add_common_arguments(locks_parser)
    locks_subparsers = locks_parser.add_subparsers(dest="locks_command", required=True)
    locks_list_parser = locks_subparsers.add_parser("list", help="List live repository locks")
    locks_list_parser.add_argument("--json", action="store_true", help="Print locks as JSON")
    locks_release_parser = locks_subparsers.add_parser(
        "release", help="Release a repository lock held by a crashed operation"
    )
    locks_release_parser.add_argument("repository", help="Repository key as owner/name")
    locks_release_parser.add_argument("--yes", action="store_true", help="Confirm the release")

    watch_parser = subparsers.add_parser("watch", help="Open the terminal operations monitor")
    _add_common_arguments(watch_parser)
    watch_parser.add_argument("--refresh-seconds", type=int, default=2)
    watch_parser.add_argument("--row-limit", type=int, default=200)

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("prlander.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        choices=("low", "high"),
        help="Enable runtime logging to stderr and <base_dir>/logs (default mode: high)",
    )


def main() -> None:
    args = build_parser().parse_args()
    config = load_config(args.config)
    configure_logging(args.verbose, state_dir=config.runtime.base_dir)

    if args.command == "apply":
        _cmd_apply(
            config,
            request_path=args.request,
            operation_id=args.operation_id,
            as_json=bool(args.json),
        )
        return
    if args.command == "progress":
        _cmd_progress(
            config,
            operation_id=args.operation_id,
            follow=bool(args.follow),
            poll_seconds=float(args.poll_seconds),
            as_json=bool(args.json),
        )
        return
    if args.command == "rollback":
        _cmd_rollback(
            config, operation_id=args.operation_id, yes=bool(args.yes), as_json=bool(args.json)
        )
        return
    if args.command == "locks":
        _cmd_locks(config, args)
        return
    if args.command == "watch":
        _cmd_watch(config, refresh_seconds=args.refresh_seconds, row_limit=args.row_limit)
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_apply(
    config: AppConfig, *, request_path: Path, operation_id: str | None, as_json: bool
) -> None:
    request = parse_apply_request(json.loads(request_path.read_text(encoding="utf-8")))
    services = _build_services(config)
    result = services.orchestrator.apply_change_set(request, operation_id)
    _print_apply_result(result, as_json=as_json)
    if result.status != "success":
        raise SystemExit(1)


def _cmd_progress(
    config: AppConfig,
    *,
    operation_id: str,
    follow: bool,
    poll_seconds: float,
    as_json: bool,
) -> None:
    registry = _build_services(config).registry
    printed = 0
    while True:
        events = registry.list_progress_events(operation_id)
        if events is None:
            raise RuntimeError(f"Unknown or expired operation: {operation_id}")
        for event in events[printed:]:
            _print_event(event, as_json=as_json)
        printed = len(events)
        if not follow or (events and events[-1].is_terminal):
            return
        time.sleep(poll_seconds)


def _cmd_rollback(config: AppConfig, *, operation_id: str, yes: bool, as_json: bool) -> None:
    if not yes:
        raise RuntimeError("rollback closes the pull request and deletes the branch; pass --yes")
    result = _build_services(config).rollback.rollback(operation_id)
    _print_rollback_result(result, as_json=as_json)
    if not result.success:
        raise SystemExit(1)


def _cmd_locks(config: AppConfig, args: argparse.Namespace) -> None:
    locks = _build_services(config).locks
    if args.locks_command == "list":
        active = locks.active_locks()
        if args.json:
            print(json.dumps([lock_to_dict(lock) for lock in active], indent=2))
            return
        if not active:
            print("No active repository locks.")
            return
        for lock in active:
            print(
                f"repository={lock.repository_key} operation_id={lock.operation_id or '-'} "
                f"acquired_at={format_timestamp(lock.acquired_at)} "
                f"expires_at={format_timestamp(lock.expires_at)}"
            )
        return
    if args.locks_command == "release":
        if not args.yes:
            raise RuntimeError("Releasing a lock can let two operations overlap; pass --yes")
        if not locks.is_locked(args.repository):
            print(f"No active lock for {args.repository}.")
            return
        holder = locks.get_lock_info(args.repository)
        locks.release_lock(args.repository)
        log_event(
            LOGGER,
            "lock_released_by_operator",
            repository_key=args.repository,
            operation_id=holder.operation_id if holder is not None else None,
        )
        print(f"Released lock for {args.repository}.")
        return
    raise RuntimeError(f"Unknown locks command: {args.locks_command}")


def _cmd_watch(config: AppConfig, *, refresh_seconds: int, row_limit: int) -> None:
    services = _build_services(config)
    run_observability_tui(
        db_path=services.store.db_path,
        refresh_seconds=refresh_seconds,
        row_limit=row_limit,
    )


def _build_services(config: AppConfig) -> _Services:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    store = StateStore(config.runtime.state_db_path)
    locks = OperationLockManager(store, ttl_seconds=config.runtime.lock_ttl_seconds)
    registry = OperationRegistry(
        store,
        completed_retention_seconds=config.runtime.completed_retention_seconds,
        live_retention_seconds=config.runtime.live_retention_seconds,
    )
    orchestrator = ApplyOrchestrator(
        _github_for,
        lock_manager=locks,
        registry=registry,
        branch_names=BranchNameGenerator(prefix=config.branch.prefix),
        pull_request=config.pull_request,
    )
    return _Services(
        store=store,
        locks=locks,
        registry=registry,
        orchestrator=orchestrator,
        rollback=RollbackCoordinator(_github_for, registry=registry),
    )


def _github_for(repository: RepositoryRef) -> GitHubGateway:
    return GitHubGateway(repository.owner, repository.name)


def _print_apply_result(result: ApplyChangesResult, *, as_json: bool) -> None:
    if as_json:
        print(json.dumps(result_to_dict(result), indent=2))
        return
    print(f"operation_id={result.operation_id} status={result.status}")
    if result.branch_name:
        print(f"branch={result.branch_name}")
    for commit in result.commits:
        print(f"commit={commit.sha[:7]} files={commit.files_count} message={commit.message}")
    if result.pull_request is not None:
        print(f"pull_request={result.pull_request.html_url}")
    for error in result.errors:
        print(f"error step={error.step} message={error.message}")


def _print_event(event: ProgressEvent, *, as_json: bool) -> None:
    if as_json:
        print(json.dumps(event_to_dict(event)), flush=True)
        return
    batch = ""
    if event.batch_index is not None and event.batch_total is not None:
        batch = f" batch={event.batch_index}/{event.batch_total}"
    print(
        f"{format_timestamp(event.timestamp)} step={event.step} "
        f"percentage={event.percentage}{batch} message={event.message}",
        flush=True,
    )


def _print_rollback_result(result: RollbackResult, *, as_json: bool) -> None:
    if as_json:
        print(json.dumps(rollback_result_to_dict(result), indent=2))
        return
    print(result.message)
    print(f"pr_closed={str(result.pr_closed).lower()} branch_deleted={str(result.branch_deleted).lower()}")
    for error in result.errors:
        print(f"error={error}")
