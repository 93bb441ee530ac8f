from __future__ import annotations

from prlander.models import CommitInfo, FileTransform, FrameworkRef, MigrationSpec
from prlander.pr_description import (
    build_pull_request_body,
    build_pull_request_title,
    compute_statistics,
    low_confidence_files,
)


SPEC = MigrationSpec(
    source_framework=FrameworkRef(name="React", version="16.8"),
    target_framework=FrameworkRef(name="Vue", version="3.4"),
)
TRANSFORMATIONS = {
    "src/App.jsx": FileTransform(
        original_code="import React from 'react'\nexport default App\n",
        transformed_code="import { ref } from 'vue'\nimport App from './App.vue'\nexport default App\n",
        confidence=95,
    ),
    "src/util.js": FileTransform(
        original_code="const a = require('a')\nconst b = require('b')\nmodule.exports = a\n",
        transformed_code="module.exports = a\n",
        confidence=62.5,
    ),
    "src/legacy.js": FileTransform(
        original_code="x\n",
        transformed_code="y\n",
        confidence=40,
    ),
}
COMMITS = [
    CommitInfo(sha="0123456789abcdef" * 2 + "01234567", message="PRLander Migration: React to Vue (batch 1/1: 3 files)", files_count=3),
]


def test_title() -> None:
    assert build_pull_request_title("PRLander", SPEC) == "PRLander Migration: React to Vue"


def test_statistics_count_line_and_dependency_deltas() -> None:
    stats = compute_statistics(list(TRANSFORMATIONS), TRANSFORMATIONS)
    assert stats.files_changed == 3
    assert stats.lines_added == 1
    assert stats.lines_removed == 2
    assert stats.dependencies_added == 1
    assert stats.dependencies_removed == 2


def test_statistics_skip_files_without_transformation() -> None:
    stats = compute_statistics(["src/App.jsx", "src/ghost.js"], TRANSFORMATIONS)
    assert stats.files_changed == 2
    assert stats.lines_added == 1


def test_low_confidence_files_sorted_ascending() -> None:
    assert low_confidence_files(list(TRANSFORMATIONS), TRANSFORMATIONS, threshold=80) == [
        ("src/legacy.js", 40),
        ("src/util.js", 62.5),
    ]
    assert low_confidence_files(list(TRANSFORMATIONS), TRANSFORMATIONS, threshold=40) == []


def test_body_layout() -> None:
    body = build_pull_request_body(
        tool_name="PRLander",
        app_url="https://prlander.dev",
        spec=SPEC,
        job_id="job-42",
        accepted_files=list(TRANSFORMATIONS),
        transformations=TRANSFORMATIONS,
        commits=COMMITS,
    )

    assert body.startswith("# 🚀 PRLander Migration\n")
    assert body.endswith(
        "---\n*This pull request was automatically generated by [PRLander](https://prlander.dev)*\n"
    )
    assert "**Source Framework:** React 16.8" in body
    assert "**Target Framework:** Vue 3.4" in body
    assert "| Files Changed | 3 |" in body
    assert "| Lines Added | 1 |" in body
    assert "| Lines Removed | 2 |" in body
    assert "| Dependencies Added | 1 |" in body
    assert "| Dependencies Removed | 2 |" in body
    assert "| Commits Created | 1 |" in body
    assert "| `src/legacy.js` | 40% |\n| `src/util.js` | 62.5% |" in body
    assert "1. PRLander Migration: React to Vue (batch 1/1: 3 files) (`0123456`)" in body
    assert "[Migration Job job-42](https://prlander.dev/migrations/job-42)" in body

    sections = [line for line in body.splitlines() if line.startswith("## ")]
    assert sections == [
        "## Migration Details",
        "## Statistics",
        "## ⚠️ Files Requiring Manual Review",
        "## Commits",
        "## 🔗 PRLander",
    ]


def test_body_omits_review_section_when_all_confident() -> None:
    confident = {"src/App.jsx": TRANSFORMATIONS["src/App.jsx"]}
    body = build_pull_request_body(
        tool_name="PRLander",
        app_url="https://prlander.dev",
        spec=SPEC,
        job_id="job-1",
        accepted_files=["src/App.jsx"],
        transformations=confident,
        commits=COMMITS,
    )
    assert "Files Requiring Manual Review" not in body


def test_body_is_deterministic() -> None:
    kwargs = dict(
        tool_name="PRLander",
        app_url="https://prlander.dev",
        spec=SPEC,
        job_id="job-42",
        accepted_files=list(TRANSFORMATIONS),
        transformations=TRANSFORMATIONS,
        commits=COMMITS,
    )
    assert build_pull_request_body(**kwargs) == build_pull_request_body(**kwargs)  # type: ignore[arg-type]
