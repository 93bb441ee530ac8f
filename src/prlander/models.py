from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Final, Literal


ApplyStep = Literal[
    "validating",
    "creating_branch",
    "committing",
    "creating_pr",
    "complete",
    "error",
]
ApplyResultStatus = Literal["success", "failed"]
FileMode = Literal["100644", "100755", "040000", "160000", "120000"]

TERMINAL_STEPS: Final[frozenset[str]] = frozenset({"complete", "error"})
APPLY_STEPS: Final[tuple[str, ...]] = (
    "validating",
    "creating_branch",
    "committing",
    "creating_pr",
    "complete",
    "error",
)


@dataclass(frozen=True)
class RepositoryRef:
    owner: str
    name: str

    @property
    def key(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class FrameworkRef:
    name: str
    version: str


@dataclass(frozen=True)
class MigrationSpec:
    source_framework: FrameworkRef
    target_framework: FrameworkRef


@dataclass(frozen=True)
class FileTransform:
    original_code: str
    transformed_code: str
    confidence: float


@dataclass(frozen=True)
class FileChange:
    path: str
    content: str
    mode: FileMode = "100644"


@dataclass(frozen=True)
class ApplyChangesRequest:
    repository: RepositoryRef
    job_id: str
    accepted_files: tuple[str, ...]
    transformations: Mapping[str, FileTransform]
    migration_spec: MigrationSpec
    base_branch: str | None = None


@dataclass(frozen=True)
class CommitBatch:
    sequence_number: int
    total: int
    files: tuple[FileChange, ...]
    parent_sha: str | None = None
    resulting_sha: str | None = None


@dataclass(frozen=True)
class CommitInfo:
    sha: str
    message: str
    files_count: int


@dataclass(frozen=True)
class PullRequest:
    number: int
    url: str
    html_url: str


@dataclass(frozen=True)
class PullRequestSnapshot:
    number: int
    url: str
    html_url: str
    state: str
    merged: bool
    draft: bool


@dataclass(frozen=True)
class RepositoryValidation:
    exists: bool
    accessible: bool
    has_write_access: bool
    is_archived: bool
    default_branch: str
    errors: tuple[str, ...] = ()


@dataclass(frozen=True)
class ApplyStepError:
    step: str
    message: str


@dataclass(frozen=True)
class ApplyChangesResult:
    operation_id: str
    status: ApplyResultStatus
    branch_name: str
    pull_request: PullRequest | None
    commits: tuple[CommitInfo, ...]
    errors: tuple[ApplyStepError, ...] = ()


@dataclass(frozen=True)
class ProgressEvent:
    operation_id: str
    step: ApplyStep
    message: str
    percentage: int
    timestamp: datetime
    batch_index: int | None = None
    batch_total: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.step in TERMINAL_STEPS


@dataclass(frozen=True)
class ApplyOperation:
    operation_id: str
    repository: RepositoryRef
    status: ApplyStep
    branch_name: str | None = None
    base_branch: str | None = None
    pull_request_number: int | None = None
    pull_request_url: str | None = None
    commit_shas: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()
    created_at: str = ""
    updated_at: str = ""
    completed_at: str | None = None

    @property
    def repository_key(self) -> str:
        return self.repository.key

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STEPS


@dataclass(frozen=True)
class RepositoryLock:
    repository_key: str
    operation_id: str
    acquired_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class RollbackResult:
    success: bool
    message: str
    branch_deleted: bool
    pr_closed: bool
    errors: tuple[str, ...] = field(default_factory=tuple)
