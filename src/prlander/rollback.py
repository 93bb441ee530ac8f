from __future__ import annotations

import logging

from prlander.models import RollbackResult
from prlander.observability import log_event
from prlander.orchestrator import HostingClientFactory
from prlander.registry import OperationRegistry


LOGGER = logging.getLogger("prlander.rollback")


class RollbackCoordinator:
    """Best-effort undo of a finished operation: close its PR, delete its branch.

    The two compensating calls are attempted independently and reported
    separately. A merged pull request blocks rollback entirely.
    """

    def __init__(self, hosting_factory: HostingClientFactory, *, registry: OperationRegistry) -> None:
        self._hosting_factory = hosting_factory
        self._registry = registry

    def rollback(self, operation_id: str) -> RollbackResult:
        operation = self._registry.get(operation_id)
        if operation is None or operation.branch_name is None:
            log_event(LOGGER, "rollback_operation_missing", operation_id=operation_id)
            return RollbackResult(
                success=False,
                message="Operation not found",
                branch_deleted=False,
                pr_closed=False,
                errors=("Operation data not found",),
            )
        if not operation.is_terminal:
            return RollbackResult(
                success=False,
                message="Operation is still in progress",
                branch_deleted=False,
                pr_closed=False,
                errors=(f"Operation is currently {operation.status}",),
            )

        client = self._hosting_factory(operation.repository)
        branch_name = operation.branch_name
        pr_number = operation.pull_request_number
        errors: list[str] = []
        pr_closed = False
        branch_deleted = False

        if pr_number is not None:
            try:
                snapshot = client.get_pull_request(pr_number)
                if snapshot.merged:
                    log_event(
                        LOGGER,
                        "rollback_refused_merged",
                        operation_id=operation_id,
                        pr_number=pr_number,
                    )
                    return RollbackResult(
                        success=False,
                        message="Cannot rollback: Pull request has already been merged",
                        branch_deleted=False,
                        pr_closed=False,
                        errors=("Pull request is already merged",),
                    )
                client.close_pull_request(pr_number)
                pr_closed = True
            except Exception as exc:  # noqa: BLE001
                errors.append(f"Failed to close PR: {exc}")
                log_event(
                    LOGGER,
                    "rollback_close_pr_failed",
                    operation_id=operation_id,
                    pr_number=pr_number,
                    error_type=type(exc).__name__,
                )

        try:
            client.delete_branch(branch_name)
            branch_deleted = True
        except Exception as exc:  # noqa: BLE001
            errors.append(f"Failed to delete branch: {exc}")
            log_event(
                LOGGER,
                "rollback_delete_branch_failed",
                operation_id=operation_id,
                branch=branch_name,
                error_type=type(exc).__name__,
            )

        self._registry.forget(operation_id)
        success = branch_deleted and (pr_closed or pr_number is None)
        log_event(
            LOGGER,
            "rollback_completed",
            operation_id=operation_id,
            success=success,
            pr_closed=pr_closed,
            branch_deleted=branch_deleted,
        )
        return RollbackResult(
            success=success,
            message=(
                f"Successfully rolled back changes. Branch {branch_name} has been deleted."
                if success
                else "Rollback completed with errors"
            ),
            branch_deleted=branch_deleted,
            pr_closed=pr_closed,
            errors=tuple(errors),
        )
