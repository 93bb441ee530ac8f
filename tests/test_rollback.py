from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from prlander.github_gateway import HostingApiError
from prlander.models import ApplyOperation, PullRequestSnapshot, RepositoryRef
from prlander.registry import OperationRegistry
from prlander.rollback import RollbackCoordinator
from prlander.state import StateStore


BRANCH = "prlander/migration-vue-2024-01-15T10-30-45-123Z"


class FakeGitHub:
    def __init__(
        self,
        *,
        merged: bool = False,
        close_error: Exception | None = None,
        delete_error: Exception | None = None,
        lookup_error: Exception | None = None,
    ) -> None:
        self.merged = merged
        self.close_error = close_error
        self.delete_error = delete_error
        self.lookup_error = lookup_error
        self.closed: list[int] = []
        self.deleted: list[str] = []

    def get_pull_request(self, number: int) -> PullRequestSnapshot:
        if self.lookup_error is not None:
            raise self.lookup_error
        return PullRequestSnapshot(
            number=number,
            url=f"https://api.github.com/repos/acme/widgets/pulls/{number}",
            html_url=f"https://github.com/acme/widgets/pull/{number}",
            state="merged" if self.merged else "open",
            merged=self.merged,
            draft=True,
        )

    def close_pull_request(self, number: int) -> None:
        if self.close_error is not None:
            raise self.close_error
        self.closed.append(number)

    def delete_branch(self, name: str) -> None:
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append(name)


def _setup(
    tmp_path: Path,
    github: FakeGitHub,
    *,
    status: str = "complete",
    pull_request_number: int | None = 7,
) -> tuple[RollbackCoordinator, OperationRegistry]:
    store = StateStore(
        tmp_path / "state.db",
        clock=lambda: datetime(2024, 1, 15, 10, 31, 0, tzinfo=timezone.utc),
    )
    registry = OperationRegistry(store)
    registry.register(
        ApplyOperation(
            operation_id="op_1",
            repository=RepositoryRef(owner="acme", name="widgets"),
            status="committing",
        )
    )
    registry.update(
        "op_1",
        status=status,
        branch_name=BRANCH,
        pull_request_number=pull_request_number,
    )
    registry.unregister("op_1")
    coordinator = RollbackCoordinator(lambda repository: github, registry=registry)  # type: ignore[arg-type,return-value]
    return coordinator, registry


def test_rollback_closes_pr_and_deletes_branch(tmp_path: Path) -> None:
    github = FakeGitHub()
    coordinator, registry = _setup(tmp_path, github)

    result = coordinator.rollback("op_1")

    assert result.success is True
    assert result.pr_closed is True
    assert result.branch_deleted is True
    assert result.errors == ()
    assert result.message == f"Successfully rolled back changes. Branch {BRANCH} has been deleted."
    assert github.closed == [7]
    assert github.deleted == [BRANCH]
    assert registry.get("op_1") is None


def test_rollback_refuses_merged_pull_request(tmp_path: Path) -> None:
    github = FakeGitHub(merged=True)
    coordinator, registry = _setup(tmp_path, github)

    result = coordinator.rollback("op_1")

    assert result.success is False
    assert result.message == "Cannot rollback: Pull request has already been merged"
    assert result.pr_closed is False
    assert result.branch_deleted is False
    assert github.closed == []
    assert github.deleted == []
    assert registry.get("op_1") is not None


def test_rollback_reports_branch_failure_separately(tmp_path: Path) -> None:
    github = FakeGitHub(delete_error=HostingApiError("Reference does not exist", status_code=422))
    coordinator, _registry = _setup(tmp_path, github)

    result = coordinator.rollback("op_1")

    assert result.success is False
    assert result.pr_closed is True
    assert result.branch_deleted is False
    assert result.message == "Rollback completed with errors"
    assert result.errors == ("Failed to delete branch: Reference does not exist",)


@pytest.mark.parametrize(
    "github",
    [
        FakeGitHub(close_error=HostingApiError("Validation Failed", status_code=422)),
        FakeGitHub(lookup_error=HostingApiError("Not Found", status_code=404)),
    ],
)
def test_rollback_still_deletes_branch_when_pr_close_fails(
    tmp_path: Path, github: FakeGitHub
) -> None:
    coordinator, _registry = _setup(tmp_path, github)

    result = coordinator.rollback("op_1")

    assert result.success is False
    assert result.pr_closed is False
    assert result.branch_deleted is True
    assert len(result.errors) == 1
    assert result.errors[0].startswith("Failed to close PR: ")
    assert github.deleted == [BRANCH]


def test_rollback_without_pull_request_only_needs_branch_delete(tmp_path: Path) -> None:
    github = FakeGitHub()
    coordinator, _registry = _setup(tmp_path, github, status="error", pull_request_number=None)

    result = coordinator.rollback("op_1")

    assert result.success is True
    assert result.pr_closed is False
    assert result.branch_deleted is True
    assert github.closed == []


def test_rollback_of_unknown_operation(tmp_path: Path) -> None:
    github = FakeGitHub()
    coordinator, _registry = _setup(tmp_path, github)

    result = coordinator.rollback("op_missing")

    assert result.success is False
    assert result.message == "Operation not found"
    assert result.errors == ("Operation data not found",)
    assert github.deleted == []


def test_rollback_refuses_operation_in_progress(tmp_path: Path) -> None:
    github = FakeGitHub()
    coordinator, _registry = _setup(tmp_path, github, status="creating_pr")

    result = coordinator.rollback("op_1")

    assert result.success is False
    assert result.message == "Operation is still in progress"
    assert result.errors == ("Operation is currently creating_pr",)
    assert github.deleted == []
