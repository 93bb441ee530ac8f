from __future__ import annotations

from typing import cast

from prlander.models import (
    ApplyChangesRequest,
    ApplyChangesResult,
    ApplyOperation,
    FileTransform,
    FrameworkRef,
    MigrationSpec,
    ProgressEvent,
    RepositoryLock,
    RepositoryRef,
    RollbackResult,
)
from prlander.state import format_timestamp


class RequestValidationError(ValueError):
    pass


def parse_apply_request(payload: object) -> ApplyChangesRequest:
    """Build an :class:`ApplyChangesRequest` from its camelCase JSON form."""
    data = _require_object(payload, "request")

    repository_data = _require_object(data.get("repository"), "repository")
    repository = RepositoryRef(
        owner=_require_str(repository_data, "owner", prefix="repository."),
        name=_require_str(repository_data, "name", prefix="repository."),
    )

    job_id = data.get("jobId", data.get("migrationJobId"))
    if not isinstance(job_id, str) or not job_id.strip():
        raise RequestValidationError("jobId is required")

    raw_files = data.get("acceptedFiles")
    if not isinstance(raw_files, list) or not raw_files:
        raise RequestValidationError("acceptedFiles must be a non-empty list")
    accepted_files: list[str] = []
    for item in raw_files:
        if not isinstance(item, str) or not item:
            raise RequestValidationError("acceptedFiles must contain non-empty strings")
        if item in accepted_files:
            raise RequestValidationError(f"acceptedFiles contains duplicate path: {item}")
        accepted_files.append(item)

    raw_transformations = data.get("transformations")
    if not isinstance(raw_transformations, dict):
        raise RequestValidationError("transformations must be an object")
    transformations: dict[str, FileTransform] = {}
    for path, raw_transform in cast(dict[object, object], raw_transformations).items():
        if not isinstance(path, str):
            raise RequestValidationError("transformations must be keyed by file path")
        transformations[path] = _parse_transform(path, raw_transform)

    spec_data = _require_object(data.get("migrationSpec"), "migrationSpec")
    migration_spec = MigrationSpec(
        source_framework=_parse_framework(spec_data.get("sourceFramework"), "sourceFramework"),
        target_framework=_parse_framework(spec_data.get("targetFramework"), "targetFramework"),
    )

    base_branch = data.get("baseBranch")
    if base_branch is not None and (not isinstance(base_branch, str) or not base_branch):
        raise RequestValidationError("baseBranch must be a non-empty string when provided")

    return ApplyChangesRequest(
        repository=repository,
        job_id=job_id,
        accepted_files=tuple(accepted_files),
        transformations=transformations,
        migration_spec=migration_spec,
        base_branch=base_branch,
    )


def result_to_dict(result: ApplyChangesResult) -> dict[str, object]:
    payload: dict[str, object] = {
        "operationId": result.operation_id,
        "status": result.status,
        "branchName": result.branch_name,
        "pullRequest": (
            {
                "number": result.pull_request.number,
                "url": result.pull_request.url,
                "htmlUrl": result.pull_request.html_url,
            }
            if result.pull_request is not None
            else None
        ),
        "commits": [
            {"sha": commit.sha, "message": commit.message, "filesCount": commit.files_count}
            for commit in result.commits
        ],
    }
    if result.errors:
        payload["errors"] = [{"step": error.step, "message": error.message} for error in result.errors]
    return payload


def event_to_dict(event: ProgressEvent) -> dict[str, object]:
    payload: dict[str, object] = {
        "operationId": event.operation_id,
        "step": event.step,
        "message": event.message,
        "percentage": event.percentage,
        "timestamp": format_timestamp(event.timestamp),
    }
    if event.batch_index is not None:
        payload["batchIndex"] = event.batch_index
    if event.batch_total is not None:
        payload["batchTotal"] = event.batch_total
    return payload


def rollback_result_to_dict(result: RollbackResult) -> dict[str, object]:
    return {
        "success": result.success,
        "message": result.message,
        "branchDeleted": result.branch_deleted,
        "prClosed": result.pr_closed,
        "errors": list(result.errors),
    }


def operation_to_dict(operation: ApplyOperation) -> dict[str, object]:
    return {
        "operationId": operation.operation_id,
        "repository": operation.repository_key,
        "status": operation.status,
        "branchName": operation.branch_name,
        "baseBranch": operation.base_branch,
        "pullRequestNumber": operation.pull_request_number,
        "pullRequestUrl": operation.pull_request_url,
        "commits": list(operation.commit_shas),
        "errors": list(operation.errors),
        "createdAt": operation.created_at,
        "completedAt": operation.completed_at,
    }


def lock_to_dict(lock: RepositoryLock) -> dict[str, object]:
    return {
        "repository": lock.repository_key,
        "operationId": lock.operation_id or None,
        "acquiredAt": format_timestamp(lock.acquired_at),
        "expiresAt": format_timestamp(lock.expires_at),
    }


def _parse_transform(path: str, value: object) -> FileTransform:
    data = _require_object(value, f"transformations[{path!r}]")
    original = data.get("originalCode", "")
    transformed = data.get("transformedCode", "")
    if not isinstance(original, str):
        raise RequestValidationError(f"transformations[{path!r}].originalCode must be a string")
    if not isinstance(transformed, str):
        raise RequestValidationError(
            f"transformations[{path!r}].transformedCode must be a string"
        )
    confidence = data.get("confidence", 100)
    if isinstance(confidence, bool) or not isinstance(confidence, int | float):
        raise RequestValidationError(f"transformations[{path!r}].confidence must be a number")
    if not 0 <= confidence <= 100:
        raise RequestValidationError(
            f"transformations[{path!r}].confidence must be between 0 and 100"
        )
    return FileTransform(
        original_code=original, transformed_code=transformed, confidence=confidence
    )


def _parse_framework(value: object, label: str) -> FrameworkRef:
    data = _require_object(value, f"migrationSpec.{label}")
    name = _require_str(data, "name", prefix=f"migrationSpec.{label}.")
    version = data.get("version", "")
    if not isinstance(version, str):
        raise RequestValidationError(f"migrationSpec.{label}.version must be a string")
    return FrameworkRef(name=name, version=version)


def _require_object(value: object, label: str) -> dict[str, object]:
    if not isinstance(value, dict) or not all(isinstance(key, str) for key in value):
        raise RequestValidationError(f"{label} must be an object")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str, *, prefix: str = "") -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise RequestValidationError(f"{prefix}{key} is required")
    return value
