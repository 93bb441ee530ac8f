from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
import json
import logging
from typing import Final, cast
from urllib.parse import quote, urlencode

from prlander.batching import MAX_FILES_PER_COMMIT
from prlander.models import (
    FileChange,
    PullRequest,
    PullRequestSnapshot,
    RepositoryValidation,
)
from prlander.observability import log_event
from prlander.shell import preview, run


LOGGER = logging.getLogger("prlander.github_gateway")
_BRANCH_PAGE_SIZE: Final[int] = 100


class HostingApiError(RuntimeError):
    """A GitHub API call failed or returned an unexpected payload."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class GitHubGateway:
    """Git-hosting client for one repository, backed by the ``gh api`` CLI."""

    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def _repo_path(self) -> str:
        return f"/repos/{self.owner}/{self.name}"

    def validate_repository(self) -> RepositoryValidation:
        try:
            payload = _as_object_dict(self._api_json("GET", self._repo_path))
        except HostingApiError as exc:
            if exc.status_code == 404:
                return RepositoryValidation(
                    exists=False,
                    accessible=False,
                    has_write_access=False,
                    is_archived=False,
                    default_branch="",
                    errors=("Repository not found",),
                )
            if exc.status_code == 403:
                return RepositoryValidation(
                    exists=True,
                    accessible=False,
                    has_write_access=False,
                    is_archived=False,
                    default_branch="",
                    errors=("Access to repository is forbidden",),
                )
            raise
        if payload is None:
            raise HostingApiError("Unexpected GitHub response: expected object for repository")

        errors: list[str] = []
        permissions = _as_object_dict(payload.get("permissions"))
        if permissions is None:
            errors.append("Unable to determine repository permissions")
            has_write_access = False
        else:
            has_write_access = permissions.get("push") is True or permissions.get("admin") is True
        is_archived = payload.get("archived") is True
        if payload.get("disabled") is True:
            errors.append("Repository is disabled")

        validation = RepositoryValidation(
            exists=True,
            accessible=True,
            has_write_access=has_write_access,
            is_archived=is_archived,
            default_branch=_as_string(payload.get("default_branch")) or "main",
            errors=tuple(errors),
        )
        log_event(
            LOGGER,
            "github_read",
            endpoint="repository",
            repo_full_name=self.full_name,
            has_write_access=validation.has_write_access,
            archived=validation.is_archived,
        )
        return validation

    def get_branch_sha(self, branch: str) -> str:
        payload = _as_object_dict(
            self._api_json("GET", f"{self._repo_path}/git/ref/heads/{_ref_path(branch)}")
        )
        target = _as_object_dict(payload.get("object")) if payload is not None else None
        if target is None:
            raise HostingApiError(f"Unexpected GitHub response for branch {branch!r}")
        return _require_sha(target.get("sha"), field="object.sha")

    def list_branches(self) -> tuple[str, ...]:
        names: list[str] = []
        page = 1
        while True:
            query = urlencode({"per_page": str(_BRANCH_PAGE_SIZE), "page": str(page)})
            payload = self._api_json("GET", f"{self._repo_path}/branches?{query}")
            if not isinstance(payload, list):
                raise HostingApiError("Unexpected GitHub response: expected list for branches")
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is not None and isinstance(item_obj.get("name"), str):
                    names.append(cast(str, item_obj["name"]))
            if len(payload) < _BRANCH_PAGE_SIZE:
                break
            page += 1
        log_event(LOGGER, "github_read", endpoint="branches", count=len(names))
        return tuple(names)

    def create_branch(self, name: str, at_sha: str) -> None:
        self._api_json(
            "POST",
            f"{self._repo_path}/git/refs",
            payload={"ref": f"refs/heads/{name}", "sha": at_sha},
        )
        log_event(
            LOGGER,
            "github_branch_created",
            repo_full_name=self.full_name,
            branch=name,
            sha=at_sha[:7],
        )

    def delete_branch(self, name: str) -> None:
        self._api_json("DELETE", f"{self._repo_path}/git/refs/heads/{_ref_path(name)}")
        log_event(LOGGER, "github_branch_deleted", repo_full_name=self.full_name, branch=name)

    def create_commit(
        self,
        *,
        branch: str,
        message: str,
        files: Sequence[FileChange],
        parent_sha: str,
    ) -> str:
        if len(files) > MAX_FILES_PER_COMMIT:
            raise ValueError(
                f"Cannot commit {len(files)} files at once; limit is {MAX_FILES_PER_COMMIT}"
            )
        parent = _as_object_dict(
            self._api_json("GET", f"{self._repo_path}/git/commits/{parent_sha}")
        )
        parent_tree = _as_object_dict(parent.get("tree")) if parent is not None else None
        if parent_tree is None:
            raise HostingApiError(f"Unexpected GitHub response for commit {parent_sha}")
        base_tree_sha = _require_sha(parent_tree.get("sha"), field="tree.sha")

        tree = _as_object_dict(
            self._api_json(
                "POST",
                f"{self._repo_path}/git/trees",
                payload={
                    "base_tree": base_tree_sha,
                    "tree": [
                        {
                            "path": change.path,
                            "mode": change.mode,
                            "type": "blob",
                            "content": change.content,
                        }
                        for change in files
                    ],
                },
            )
        )
        if tree is None:
            raise HostingApiError("Unexpected GitHub response: expected object for tree")
        tree_sha = _require_sha(tree.get("sha"), field="sha")

        commit = _as_object_dict(
            self._api_json(
                "POST",
                f"{self._repo_path}/git/commits",
                payload={"message": message, "tree": tree_sha, "parents": [parent_sha]},
            )
        )
        if commit is None:
            raise HostingApiError("Unexpected GitHub response: expected object for commit")
        commit_sha = _require_sha(commit.get("sha"), field="sha")

        self._api_json(
            "PATCH",
            f"{self._repo_path}/git/refs/heads/{_ref_path(branch)}",
            payload={"sha": commit_sha, "force": False},
        )
        log_event(
            LOGGER,
            "github_commit_created",
            repo_full_name=self.full_name,
            branch=branch,
            files_count=len(files),
            parent_sha=parent_sha[:7],
            sha=commit_sha[:7],
        )
        return commit_sha

    def create_pull_request(
        self, *, title: str, body: str, head: str, base: str, draft: bool = True
    ) -> PullRequest:
        try:
            payload = _as_object_dict(
                self._api_json(
                    "POST",
                    f"{self._repo_path}/pulls",
                    payload={
                        "title": title,
                        "body": body,
                        "head": head,
                        "base": base,
                        "draft": draft,
                    },
                )
            )
            if payload is None:
                raise HostingApiError("Unexpected GitHub response: expected object for PR")
            pull_request = PullRequest(
                number=_as_int(payload.get("number"), field="number"),
                url=_as_string(payload.get("url")),
                html_url=_as_string(payload.get("html_url")),
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_pr_create_failed",
                repo_full_name=self.full_name,
                base=base,
                head=head,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "github_pr_created",
            repo_full_name=self.full_name,
            pr_number=pull_request.number,
            pr_url=pull_request.html_url,
            base=base,
            head=head,
            draft=draft,
        )
        return pull_request

    def close_pull_request(self, number: int) -> None:
        self._api_json("PATCH", f"{self._repo_path}/pulls/{number}", payload={"state": "closed"})
        log_event(LOGGER, "github_pr_closed", repo_full_name=self.full_name, pr_number=number)

    def get_pull_request(self, number: int) -> PullRequestSnapshot:
        payload = _as_object_dict(self._api_json("GET", f"{self._repo_path}/pulls/{number}"))
        if payload is None:
            raise HostingApiError("Unexpected GitHub response: expected object for PR")
        merged = _as_bool(payload.get("merged", False))
        return PullRequestSnapshot(
            number=_as_int(payload.get("number"), field="number"),
            url=_as_string(payload.get("url")),
            html_url=_as_string(payload.get("html_url")),
            state="merged" if merged else _as_string(payload.get("state")),
            merged=merged,
            draft=_as_bool(payload.get("draft", False)),
        )

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        method_upper = method.upper()
        cmd = ["gh", "api", "--method", method_upper, "--include", path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)

        raw = run(cmd, input_text=stdin_payload, check=False)
        try:
            status_code, body = _parse_http_response(raw)
        except HostingApiError as exc:
            log_event(
                LOGGER,
                "github_request_failed",
                method=method_upper,
                path=path,
                error_type=type(exc).__name__,
                raw_preview=preview(raw),
            )
            raise
        if status_code < 200 or status_code >= 300:
            message = _error_message(body)
            log_event(
                LOGGER,
                "github_request_failed",
                method=method_upper,
                path=path,
                status_code=status_code,
                error=message,
            )
            raise HostingApiError(
                f"GitHub API {method_upper} {path} failed with status {status_code}: {message}",
                status_code=status_code,
            )
        if not body.strip():
            return None
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise HostingApiError(f"GitHub API {method_upper} {path} returned invalid JSON") from exc


def _parse_http_response(raw: str) -> tuple[int, str]:
    lines = raw.replace("\r\n", "\n").split("\n")

    status_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_index = index
    if status_index < 0:
        raise HostingApiError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_index]
    parts = status_line.split(" ", 2)
    try:
        status_code = int(parts[1])
    except (IndexError, ValueError) as exc:
        raise HostingApiError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    body_start = len(lines)
    for index in range(status_index + 1, len(lines)):
        if lines[index] == "":
            body_start = index + 1
            break
    return status_code, "\n".join(lines[body_start:])


def _error_message(body: str) -> str:
    try:
        decoded = json.loads(body)
    except json.JSONDecodeError:
        return body.strip() or "<empty>"
    decoded_obj = _as_object_dict(decoded)
    if decoded_obj is not None and isinstance(decoded_obj.get("message"), str):
        return cast(str, decoded_obj["message"])
    return body.strip() or "<empty>"


def _ref_path(branch: str) -> str:
    return quote(branch, safe="/")


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise HostingApiError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise HostingApiError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise HostingApiError(f"Unexpected GitHub response type for {field}")


def _as_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    raise HostingApiError("Unexpected GitHub response type for bool field")


def _require_sha(value: object, *, field: str) -> str:
    if not isinstance(value, str) or not value:
        raise HostingApiError(f"Unexpected GitHub response: missing {field}")
    return value
