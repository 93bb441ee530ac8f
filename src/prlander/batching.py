from __future__ import annotations

from collections.abc import Sequence
from dataclasses import replace
from typing import Final

from prlander.models import CommitBatch, FileChange


MAX_FILES_PER_COMMIT: Final[int] = 20


def plan_batches(
    files: Sequence[FileChange], batch_size: int = MAX_FILES_PER_COMMIT
) -> tuple[CommitBatch, ...]:
    """Split ``files`` into consecutive batches of at most ``batch_size``.

    Order is preserved and every file lands in exactly one batch. Parent and
    resulting SHAs are left unset; they are filled in while committing via
    :func:`link_batch`.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    total = -(-len(files) // batch_size)
    return tuple(
        CommitBatch(
            sequence_number=index + 1,
            total=total,
            files=tuple(files[index * batch_size : (index + 1) * batch_size]),
        )
        for index in range(total)
    )


def link_batch(batch: CommitBatch, *, parent_sha: str, resulting_sha: str) -> CommitBatch:
    return replace(batch, parent_sha=parent_sha, resulting_sha=resulting_sha)


def base_commit_message(tool_name: str, source: str, target: str) -> str:
    return f"{tool_name} Migration: {source} to {target}"


def format_commit_message(base_message: str, batch: CommitBatch) -> str:
    return f"{base_message} (batch {batch.sequence_number}/{batch.total}: {len(batch.files)} files)"


def batch_percentage(batch: CommitBatch) -> int:
    return 30 + (batch.sequence_number * 50) // batch.total
