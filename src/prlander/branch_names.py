from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
import re
import secrets
import string
from typing import Final


DEFAULT_BRANCH_PREFIX: Final[str] = "prlander/migration"
MAX_BRANCH_NAME_LENGTH: Final[int] = 255
SUFFIX_LENGTH: Final[int] = 4
MAX_UNIQUE_ATTEMPTS: Final[int] = 100

_VALID_CHARS = re.compile(r"^[a-zA-Z0-9\-/]+$")
_RESERVED_SUFFIX = ".lock"
_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
_EMPTY_FRAMEWORK = "framework"


class BranchNameError(ValueError):
    pass


def random_suffix(length: int = SUFFIX_LENGTH) -> str:
    return "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(length))


@dataclass(frozen=True)
class BranchNameGenerator:
    """Builds ``<prefix>-<framework>-<timestamp>`` branch names.

    Every name returned by :meth:`generate` or :meth:`ensure_unique` passes
    :meth:`validate`; anything else raises :class:`BranchNameError`.
    """

    prefix: str = DEFAULT_BRANCH_PREFIX
    suffix_factory: Callable[[int], str] = field(default=random_suffix, repr=False, compare=False)

    def generate(self, framework: str, timestamp: datetime | None = None) -> str:
        rendered_time = format_branch_timestamp(timestamp or datetime.now(timezone.utc))
        room = MAX_BRANCH_NAME_LENGTH - len(self.prefix) - len(rendered_time) - 2
        sanitized = sanitize_framework(framework)[: max(room, 1)].strip("-") or _EMPTY_FRAMEWORK
        name = f"{self.prefix}-{sanitized}-{rendered_time}"
        if not self.validate(name):
            raise BranchNameError(f"Generated branch name is invalid: {name}")
        return name

    def validate(self, name: str) -> bool:
        if not name or len(name) > MAX_BRANCH_NAME_LENGTH:
            return False
        if _VALID_CHARS.match(name) is None:
            return False
        if name.endswith(_RESERVED_SUFFIX) or "//" in name:
            return False
        return not (name.startswith("/") or name.endswith("/"))

    def ensure_unique(self, base: str, existing: Iterable[str]) -> str:
        taken = frozenset(existing)
        if not self.validate(base):
            raise BranchNameError(f"Base branch name is invalid: {base}")
        if base not in taken:
            return base

        stem = base[: MAX_BRANCH_NAME_LENGTH - SUFFIX_LENGTH - 1].rstrip("-/")
        for _ in range(MAX_UNIQUE_ATTEMPTS):
            candidate = f"{stem}-{self.suffix_factory(SUFFIX_LENGTH)}"
            if candidate in taken:
                continue
            if not self.validate(candidate):
                raise BranchNameError(f"Generated unique branch name is invalid: {candidate}")
            return candidate
        raise BranchNameError(
            f"Unable to generate unique branch name after {MAX_UNIQUE_ATTEMPTS} attempts"
        )


def sanitize_framework(framework: str) -> str:
    lowered = re.sub(r"[^a-z0-9-]", "-", framework.lower())
    return re.sub(r"-+", "-", lowered).strip("-")


def format_branch_timestamp(timestamp: datetime) -> str:
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    utc = timestamp.astimezone(timezone.utc)
    iso = (
        f"{utc.year:04d}-{utc.month:02d}-{utc.day:02d}T"
        f"{utc.hour:02d}:{utc.minute:02d}:{utc.second:02d}.{utc.microsecond // 1000:03d}Z"
    )
    return iso.replace(":", "-").replace(".", "-")
