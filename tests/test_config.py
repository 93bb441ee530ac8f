from __future__ import annotations

from pathlib import Path

import pytest

from prlander.config import AppConfig, ConfigError, load_config


def _write(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    return path


def test_load_config_full(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path / "prlander.toml",
        """
[runtime]
base_dir = "~/tmp/prlander"
lock_ttl_seconds = 120
completed_retention_seconds = 60
live_retention_seconds = 600

[branch]
prefix = "bots/upgrade"

[pull_request]
tool_name = "Migrator"
app_url = "https://migrator.example.com/"
low_confidence_threshold = 70
draft = false
""",
    )

    cfg = load_config(cfg_path)

    assert isinstance(cfg, AppConfig)
    assert cfg.runtime.base_dir == Path("~/tmp/prlander").expanduser()
    assert cfg.runtime.state_db_path == cfg.runtime.base_dir / "state.db"
    assert cfg.runtime.lock_ttl_seconds == 120
    assert cfg.runtime.completed_retention_seconds == 60
    assert cfg.runtime.live_retention_seconds == 600
    assert cfg.branch.prefix == "bots/upgrade"
    assert cfg.pull_request.tool_name == "Migrator"
    assert cfg.pull_request.app_url == "https://migrator.example.com"
    assert cfg.pull_request.low_confidence_threshold == 70
    assert cfg.pull_request.draft is False


def test_load_config_defaults(tmp_path: Path) -> None:
    cfg = load_config(_write(tmp_path / "prlander.toml", '[runtime]\nbase_dir = "/tmp/p"\n'))

    assert cfg.runtime.lock_ttl_seconds == 600
    assert cfg.runtime.completed_retention_seconds == 300
    assert cfg.runtime.live_retention_seconds == 900
    assert cfg.branch.prefix == "prlander/migration"
    assert cfg.pull_request.tool_name == "PRLander"
    assert cfg.pull_request.app_url == "https://prlander.dev"
    assert cfg.pull_request.low_confidence_threshold == 80
    assert cfg.pull_request.draft is True


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("", r"\[runtime\] table is required"),
        ('runtime = "x"', r"\[runtime\] table is required"),
        ("[runtime]\n", "base_dir is required and must be a non-empty string"),
        (
            '[runtime]\nbase_dir = "/tmp/p"\nlock_ttl_seconds = 0\n',
            "runtime.lock_ttl_seconds must be >= 1",
        ),
        (
            '[runtime]\nbase_dir = "/tmp/p"\nlock_ttl_seconds = "10"\n',
            "lock_ttl_seconds must be an integer",
        ),
        (
            '[runtime]\nbase_dir = "/tmp/p"\nlock_ttl_seconds = true\n',
            "lock_ttl_seconds must be an integer",
        ),
        (
            '[runtime]\nbase_dir = "/tmp/p"\ncompleted_retention_seconds = -1\n',
            "runtime.completed_retention_seconds must be >= 0",
        ),
        (
            '[runtime]\nbase_dir = "/tmp/p"\nlive_retention_seconds = 10\n',
            "runtime.live_retention_seconds must be >= runtime.lock_ttl_seconds",
        ),
        (
            '[runtime]\nbase_dir = "/tmp/p"\n[branch]\nprefix = "has space"\n',
            "branch.prefix is not a valid branch name",
        ),
        (
            '[runtime]\nbase_dir = "/tmp/p"\n[branch]\nprefix = ""\n',
            "prefix must be a non-empty string",
        ),
        (
            'branch = "x"\n[runtime]\nbase_dir = "/tmp/p"\n',
            r"\[branch\] must be a TOML table",
        ),
        (
            '[runtime]\nbase_dir = "/tmp/p"\n[pull_request]\nlow_confidence_threshold = 101\n',
            "low_confidence_threshold must be between 0 and 100",
        ),
        (
            '[runtime]\nbase_dir = "/tmp/p"\n[pull_request]\ndraft = "yes"\n',
            "draft must be a boolean",
        ),
    ],
)
def test_load_config_rejects_invalid_values(
    tmp_path: Path, content: str, message: str
) -> None:
    cfg_path = _write(tmp_path / "prlander.toml", content)
    with pytest.raises(ConfigError, match=message):
        load_config(cfg_path)
