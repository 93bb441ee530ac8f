from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import tomllib
from typing import cast

from prlander.branch_names import DEFAULT_BRANCH_PREFIX, BranchNameGenerator


DEFAULT_TOOL_NAME = "PRLander"
DEFAULT_APP_URL = "https://prlander.dev"


@dataclass(frozen=True)
class RuntimeConfig:
    base_dir: Path
    lock_ttl_seconds: int = 600
    completed_retention_seconds: int = 300
    live_retention_seconds: int = 900

    @property
    def state_db_path(self) -> Path:
        return self.base_dir / "state.db"


@dataclass(frozen=True)
class BranchConfig:
    prefix: str = DEFAULT_BRANCH_PREFIX


@dataclass(frozen=True)
class PullRequestConfig:
    tool_name: str = DEFAULT_TOOL_NAME
    app_url: str = DEFAULT_APP_URL
    low_confidence_threshold: int = 80
    draft: bool = True


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    branch: BranchConfig = field(default_factory=BranchConfig)
    pull_request: PullRequestConfig = field(default_factory=PullRequestConfig)


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    runtime_data = _require_table(data, "runtime")
    branch_data = _optional_table(data, "branch") or {}
    pr_data = _optional_table(data, "pull_request") or {}

    runtime = RuntimeConfig(
        base_dir=Path(_require_str(runtime_data, "base_dir")).expanduser(),
        lock_ttl_seconds=_int_with_default(runtime_data, "lock_ttl_seconds", 600),
        completed_retention_seconds=_int_with_default(
            runtime_data, "completed_retention_seconds", 300
        ),
        live_retention_seconds=_int_with_default(runtime_data, "live_retention_seconds", 900),
    )
    if runtime.lock_ttl_seconds < 1:
        raise ConfigError("runtime.lock_ttl_seconds must be >= 1")
    if runtime.completed_retention_seconds < 0:
        raise ConfigError("runtime.completed_retention_seconds must be >= 0")
    if runtime.live_retention_seconds < runtime.lock_ttl_seconds:
        raise ConfigError("runtime.live_retention_seconds must be >= runtime.lock_ttl_seconds")

    branch = BranchConfig(prefix=_str_with_default(branch_data, "prefix", DEFAULT_BRANCH_PREFIX))
    if not BranchNameGenerator().validate(branch.prefix):
        raise ConfigError(f"branch.prefix is not a valid branch name: {branch.prefix!r}")

    pull_request = PullRequestConfig(
        tool_name=_str_with_default(pr_data, "tool_name", DEFAULT_TOOL_NAME),
        app_url=_str_with_default(pr_data, "app_url", DEFAULT_APP_URL).rstrip("/"),
        low_confidence_threshold=_int_with_default(pr_data, "low_confidence_threshold", 80),
        draft=_bool_with_default(pr_data, "draft", True),
    )
    if not 0 <= pull_request.low_confidence_threshold <= 100:
        raise ConfigError("pull_request.low_confidence_threshold must be between 0 and 100")

    return AppConfig(runtime=runtime, branch=branch, pull_request=pull_request)


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] table is required")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    if key not in data:
        return None
    value = data[key]
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value
