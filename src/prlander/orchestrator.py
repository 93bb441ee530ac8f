from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
import logging
import secrets
import string
from typing import Protocol

from prlander.batching import (
    MAX_FILES_PER_COMMIT,
    base_commit_message,
    batch_percentage,
    format_commit_message,
    link_batch,
    plan_batches,
)
from prlander.branch_names import BranchNameGenerator
from prlander.config import PullRequestConfig
from prlander.lock_manager import OperationLockManager
from prlander.models import (
    ApplyChangesRequest,
    ApplyChangesResult,
    ApplyOperation,
    ApplyStep,
    ApplyStepError,
    CommitBatch,
    CommitInfo,
    FileChange,
    ProgressEvent,
    PullRequest,
    PullRequestSnapshot,
    RepositoryRef,
    RepositoryValidation,
)
from prlander.observability import log_event
from prlander.pr_description import build_pull_request_body, build_pull_request_title
from prlander.registry import OperationRegistry
from prlander.state import Clock, utc_now


LOGGER = logging.getLogger("prlander.orchestrator")
_OPERATION_ID_ALPHABET = string.digits + string.ascii_lowercase


class HostingClient(Protocol):
    def validate_repository(self) -> RepositoryValidation: ...

    def get_branch_sha(self, branch: str) -> str: ...

    def list_branches(self) -> tuple[str, ...]: ...

    def create_branch(self, name: str, at_sha: str) -> None: ...

    def delete_branch(self, name: str) -> None: ...

    def create_commit(
        self,
        *,
        branch: str,
        message: str,
        files: Sequence[FileChange],
        parent_sha: str,
    ) -> str: ...

    def create_pull_request(
        self, *, title: str, body: str, head: str, base: str, draft: bool = True
    ) -> PullRequest: ...

    def close_pull_request(self, number: int) -> None: ...

    def get_pull_request(self, number: int) -> PullRequestSnapshot: ...


HostingClientFactory = Callable[[RepositoryRef], HostingClient]


class ApplyError(RuntimeError):
    pass


class ValidationError(ApplyError):
    pass


class LockContentionError(ApplyError):
    pass


class IncompleteChangeSetError(ApplyError):
    pass


@dataclass
class _RunState:
    operation_id: str
    request: ApplyChangesRequest
    step: ApplyStep = "validating"
    branch_name: str | None = None
    batches: list[CommitBatch] = field(default_factory=list)
    commits: list[CommitInfo] = field(default_factory=list)

    def head_sha(self, base_sha: str) -> str:
        if self.batches and self.batches[-1].resulting_sha is not None:
            return self.batches[-1].resulting_sha
        return base_sha


def new_operation_id(now: datetime) -> str:
    suffix = "".join(secrets.choice(_OPERATION_ID_ALPHABET) for _ in range(7))
    return f"op_{int(now.timestamp() * 1000)}_{suffix}"


class ApplyOrchestrator:
    """Publishes a prepared change set as a branch, a commit chain, and a draft PR.

    One call runs one operation end to end on the calling thread. The
    repository lock is taken before any remote call and released exactly once.
    Every outcome, including lock contention, ends with a single terminal
    progress event.
    """

    def __init__(
        self,
        hosting_factory: HostingClientFactory,
        *,
        lock_manager: OperationLockManager,
        registry: OperationRegistry,
        branch_names: BranchNameGenerator | None = None,
        pull_request: PullRequestConfig | None = None,
        batch_size: int = MAX_FILES_PER_COMMIT,
        clock: Clock = utc_now,
    ) -> None:
        if not 1 <= batch_size <= MAX_FILES_PER_COMMIT:
            raise ValueError(f"batch_size must be between 1 and {MAX_FILES_PER_COMMIT}")
        self._hosting_factory = hosting_factory
        self._locks = lock_manager
        self._registry = registry
        self._branch_names = branch_names or BranchNameGenerator()
        self._pull_request = pull_request or PullRequestConfig()
        self._batch_size = batch_size
        self._clock = clock

    def apply_change_set(
        self, request: ApplyChangesRequest, operation_id: str | None = None
    ) -> ApplyChangesResult:
        run = _RunState(
            operation_id=operation_id or new_operation_id(self._clock()),
            request=request,
        )
        repository_key = request.repository.key
        self._registry.register(
            ApplyOperation(
                operation_id=run.operation_id,
                repository=request.repository,
                status="validating",
            )
        )
        log_event(
            LOGGER,
            "apply_started",
            operation_id=run.operation_id,
            repository_key=repository_key,
            file_count=len(request.accepted_files),
        )

        if not self._locks.acquire_lock(repository_key, run.operation_id):
            log_event(
                LOGGER,
                "apply_lock_contended",
                operation_id=run.operation_id,
                repository_key=repository_key,
            )
            return self._fail(
                run,
                LockContentionError(
                    f"Operation already in progress for repository {repository_key}"
                ),
            )

        try:
            pull_request = self._run_steps(run)
        except Exception as exc:  # noqa: BLE001
            self._locks.release_lock(repository_key, run.operation_id)
            return self._fail(run, exc)
        self._locks.release_lock(repository_key, run.operation_id)
        return self._complete(run, pull_request)

    def _run_steps(self, run: _RunState) -> PullRequest:
        request = run.request
        client = self._hosting_factory(request.repository)

        self._enter_step(run, "validating", "Validating repository and permissions...", 10)
        validation = client.validate_repository()
        _check_validation(validation)
        files = _collect_file_changes(request)
        base_branch = request.base_branch or validation.default_branch
        base_sha = client.get_branch_sha(base_branch)
        self._registry.update(run.operation_id, base_branch=base_branch)
        log_event(
            LOGGER,
            "apply_validated",
            operation_id=run.operation_id,
            base_branch=base_branch,
            base_sha=base_sha[:7],
        )

        self._enter_step(run, "creating_branch", "Creating feature branch...", 20)
        target = request.migration_spec.target_framework
        candidate = self._branch_names.generate(target.name, self._clock())
        branch_name = self._branch_names.ensure_unique(candidate, client.list_branches())
        client.create_branch(branch_name, base_sha)
        run.branch_name = branch_name
        self._registry.update(run.operation_id, branch_name=branch_name)

        self._enter_step(run, "committing", "Creating commits...", 30)
        source = request.migration_spec.source_framework
        base_message = base_commit_message(self._pull_request.tool_name, source.name, target.name)
        for batch in plan_batches(files, self._batch_size):
            parent_sha = run.head_sha(base_sha)
            message = format_commit_message(base_message, batch)
            sha = client.create_commit(
                branch=branch_name,
                message=message,
                files=batch.files,
                parent_sha=parent_sha,
            )
            run.batches.append(link_batch(batch, parent_sha=parent_sha, resulting_sha=sha))
            run.commits.append(CommitInfo(sha=sha, message=message, files_count=len(batch.files)))
            self._registry.update(
                run.operation_id, commit_shas=tuple(commit.sha for commit in run.commits)
            )
            log_event(
                LOGGER,
                "apply_batch_committed",
                operation_id=run.operation_id,
                batch=batch.sequence_number,
                batch_total=batch.total,
                files_count=len(batch.files),
                parent_sha=parent_sha[:7],
                sha=sha[:7],
            )
            self._emit(
                run,
                "committing",
                f"Committed batch {batch.sequence_number}/{batch.total}",
                batch_percentage(batch),
                batch_index=batch.sequence_number,
                batch_total=batch.total,
            )

        self._enter_step(run, "creating_pr", "Creating pull request...", 80)
        pull_request = client.create_pull_request(
            title=build_pull_request_title(self._pull_request.tool_name, request.migration_spec),
            body=build_pull_request_body(
                tool_name=self._pull_request.tool_name,
                app_url=self._pull_request.app_url,
                spec=request.migration_spec,
                job_id=request.job_id,
                accepted_files=request.accepted_files,
                transformations=request.transformations,
                commits=run.commits,
                low_confidence_threshold=self._pull_request.low_confidence_threshold,
            ),
            head=branch_name,
            base=base_branch,
            draft=self._pull_request.draft,
        )
        self._registry.update(
            run.operation_id,
            pull_request_number=pull_request.number,
            pull_request_url=pull_request.html_url,
        )
        return pull_request

    def _complete(self, run: _RunState, pull_request: PullRequest) -> ApplyChangesResult:
        self._registry.update(run.operation_id, status="complete")
        self._emit(
            run,
            "complete",
            f"Pull request created successfully: {pull_request.html_url}",
            100,
        )
        self._registry.unregister(run.operation_id)
        log_event(
            LOGGER,
            "apply_completed",
            operation_id=run.operation_id,
            repository_key=run.request.repository.key,
            branch=run.branch_name,
            commit_count=len(run.commits),
            pr_number=pull_request.number,
        )
        return ApplyChangesResult(
            operation_id=run.operation_id,
            status="success",
            branch_name=run.branch_name or "",
            pull_request=pull_request,
            commits=tuple(run.commits),
        )

    def _fail(self, run: _RunState, exc: Exception) -> ApplyChangesResult:
        message = str(exc) or type(exc).__name__
        failed_step = run.step
        log_event(
            LOGGER,
            "apply_failed",
            operation_id=run.operation_id,
            repository_key=run.request.repository.key,
            step=failed_step,
            error_type=type(exc).__name__,
            error=message,
        )
        self._registry.update(run.operation_id, status="error", errors=(message,))
        self._emit(run, "error", message, 0)
        self._registry.unregister(run.operation_id)
        return ApplyChangesResult(
            operation_id=run.operation_id,
            status="failed",
            branch_name=run.branch_name or "",
            pull_request=None,
            commits=tuple(run.commits),
            errors=(ApplyStepError(step=failed_step, message=message),),
        )

    def _enter_step(self, run: _RunState, step: ApplyStep, message: str, percentage: int) -> None:
        run.step = step
        self._registry.update(run.operation_id, status=step)
        log_event(LOGGER, "apply_step_started", operation_id=run.operation_id, step=step)
        self._emit(run, step, message, percentage)

    def _emit(
        self,
        run: _RunState,
        step: ApplyStep,
        message: str,
        percentage: int,
        *,
        batch_index: int | None = None,
        batch_total: int | None = None,
    ) -> None:
        self._registry.publish(
            ProgressEvent(
                operation_id=run.operation_id,
                step=step,
                message=message,
                percentage=percentage,
                timestamp=self._clock(),
                batch_index=batch_index,
                batch_total=batch_total,
            )
        )


def _check_validation(validation: RepositoryValidation) -> None:
    if not validation.exists:
        raise ValidationError("Repository does not exist or is not accessible")
    if not validation.accessible:
        raise ValidationError("Repository is not accessible")
    if not validation.has_write_access:
        raise ValidationError("Insufficient permissions: write access required")
    if validation.is_archived:
        raise ValidationError("Repository is archived and cannot be modified")
    if validation.errors:
        raise ValidationError(f"Validation failed: {', '.join(validation.errors)}")


def _collect_file_changes(request: ApplyChangesRequest) -> list[FileChange]:
    if not request.accepted_files:
        raise IncompleteChangeSetError("No accepted files to apply")
    missing = [
        path
        for path in request.accepted_files
        if path not in request.transformations
        or not request.transformations[path].transformed_code
    ]
    if missing:
        raise IncompleteChangeSetError(
            f"Missing or invalid transformations for files: {', '.join(missing)}"
        )
    return [
        FileChange(path=path, content=request.transformations[path].transformed_code)
        for path in request.accepted_files
    ]
