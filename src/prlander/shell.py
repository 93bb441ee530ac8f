from __future__ import annotations

import logging
import subprocess


LOGGER = logging.getLogger("prlander.shell")
_PREVIEW_LIMIT = 200


class CommandError(RuntimeError):
    """A subprocess exited non-zero while the caller required success."""

    def __init__(self, argv: list[str], returncode: int, stdout: str, stderr: str) -> None:
        super().__init__(
            "Command failed\n"
            f"cmd: {' '.join(argv)}\n"
            f"exit: {returncode}\n"
            f"stdout:\n{stdout}\n"
            f"stderr:\n{stderr}"
        )
        self.argv = tuple(argv)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


def preview(text: str, *, limit: int = _PREVIEW_LIMIT) -> str:
    compact = text.strip().replace("\n", "\\n")
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def run(argv: list[str], *, input_text: str | None = None, check: bool = True) -> str:
    proc = subprocess.run(
        argv,
        input=input_text,
        text=True,
        capture_output=True,
        check=False,
    )
    if check and proc.returncode != 0:
        LOGGER.error(
            "event=command_failed command=%s exit_code=%s stderr=%s",
            " ".join(argv[:3]),
            proc.returncode,
            preview(proc.stderr),
        )
        raise CommandError(argv, proc.returncode, proc.stdout, proc.stderr)
    return proc.stdout
