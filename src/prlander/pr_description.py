from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
import re

from prlander.models import CommitInfo, FileTransform, MigrationSpec


_DEPENDENCY_PATTERN = re.compile(r"import|require")


@dataclass(frozen=True)
class ChangeStatistics:
    files_changed: int
    lines_added: int
    lines_removed: int
    dependencies_added: int
    dependencies_removed: int


def build_pull_request_title(tool_name: str, spec: MigrationSpec) -> str:
    return (
        f"{tool_name} Migration: {spec.source_framework.name} to {spec.target_framework.name}"
    )


def compute_statistics(
    accepted_files: Sequence[str], transformations: Mapping[str, FileTransform]
) -> ChangeStatistics:
    lines_added = lines_removed = deps_added = deps_removed = 0
    for path in accepted_files:
        transform = transformations.get(path)
        if transform is None:
            continue
        line_delta = len(transform.transformed_code.split("\n")) - len(
            transform.original_code.split("\n")
        )
        if line_delta > 0:
            lines_added += line_delta
        else:
            lines_removed -= line_delta
        dep_delta = len(_DEPENDENCY_PATTERN.findall(transform.transformed_code)) - len(
            _DEPENDENCY_PATTERN.findall(transform.original_code)
        )
        if dep_delta > 0:
            deps_added += dep_delta
        else:
            deps_removed -= dep_delta
    return ChangeStatistics(
        files_changed=len(accepted_files),
        lines_added=lines_added,
        lines_removed=lines_removed,
        dependencies_added=deps_added,
        dependencies_removed=deps_removed,
    )


def low_confidence_files(
    accepted_files: Sequence[str],
    transformations: Mapping[str, FileTransform],
    *,
    threshold: float,
) -> list[tuple[str, float]]:
    flagged = [
        (path, transformations[path].confidence)
        for path in accepted_files
        if path in transformations and transformations[path].confidence < threshold
    ]
    return sorted(flagged, key=lambda item: item[1])


def build_pull_request_body(
    *,
    tool_name: str,
    app_url: str,
    spec: MigrationSpec,
    job_id: str,
    accepted_files: Sequence[str],
    transformations: Mapping[str, FileTransform],
    commits: Sequence[CommitInfo],
    low_confidence_threshold: float = 80,
) -> str:
    """Render the Markdown body for a migration pull request.

    The output depends only on the arguments, so identical inputs always
    produce identical text.
    """
    stats = compute_statistics(accepted_files, transformations)
    flagged = low_confidence_files(
        accepted_files, transformations, threshold=low_confidence_threshold
    )
    source = spec.source_framework
    target = spec.target_framework

    lines = [
        f"# 🚀 {tool_name} Migration",
        "",
        "> ⚠️ **Important**: Please carefully review all changes before merging. "
        "This is an automated migration and may require manual adjustments.",
        "",
        "## Migration Details",
        "",
        f"**Source Framework:** {source.name} {source.version}",
        f"**Target Framework:** {target.name} {target.version}",
        "",
        "## Statistics",
        "",
        "| Metric | Count |",
        "|--------|-------|",
        f"| Files Changed | {stats.files_changed} |",
        f"| Lines Added | {stats.lines_added} |",
        f"| Lines Removed | {stats.lines_removed} |",
        f"| Dependencies Added | {stats.dependencies_added} |",
        f"| Dependencies Removed | {stats.dependencies_removed} |",
        f"| Commits Created | {len(commits)} |",
        "",
    ]

    if flagged:
        lines.extend(
            [
                "## ⚠️ Files Requiring Manual Review",
                "",
                "The following files have low confidence scores and should be carefully reviewed:",
                "",
                "| File | Confidence |",
                "|------|------------|",
            ]
        )
        lines.extend(f"| `{path}` | {_render_confidence(score)}% |" for path, score in flagged)
        lines.append("")

    lines.extend(["## Commits", ""])
    lines.extend(
        f"{index}. {commit.message} (`{commit.sha[:7]}`)"
        for index, commit in enumerate(commits, start=1)
    )
    lines.extend(
        [
            "",
            f"## 🔗 {tool_name}",
            "",
            f"View this migration in {tool_name}: "
            f"[Migration Job {job_id}]({app_url}/migrations/{job_id})",
            "",
            "---",
            f"*This pull request was automatically generated by [{tool_name}]({app_url})*",
        ]
    )
    return "\n".join(lines) + "\n"


def _render_confidence(score: float) -> str:
    if float(score).is_integer():
        return str(int(score))
    return f"{score:g}"
