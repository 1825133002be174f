#!/usr/bin/env python3
"""External process adapter for the packing pipeline.

Every tool invocation goes through :func:`run_tool`:
  - The working directory is an explicit argument; the process-wide cwd is
    never changed.
  - The command line is logged before it runs.
  - Captured stdout (unless hidden) and stderr are forwarded to the log.
  - A non-zero exit raises :class:`ExternalToolFailure` carrying the exit code.
"""

from __future__ import annotations

import shlex
import subprocess
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union

from sxz_log import get_logger

logger = get_logger("process")

# Exit code reported when the executable cannot be started (shell convention).
EXIT_NOT_FOUND = 127

PathLike = Union[str, Path]
Runner = Callable[..., bytes]


class ExternalToolFailure(Exception):
    """Raised when an external tool exits with a non-zero status."""

    def __init__(self, exit_code: int, argv: Sequence[str], stage: Optional[str] = None):
        self.exit_code = exit_code
        self.argv: List[str] = [str(a) for a in argv]
        self.stage = stage
        program = self.argv[0] if self.argv else "<unknown>"
        super().__init__(f"{program} exited with code {exit_code}")

    def __str__(self) -> str:
        message = super().__str__()
        if self.stage:
            return f"{message} (stage: {self.stage})"
        return message


def format_command(argv: Sequence[PathLike]) -> str:
    return " ".join(shlex.quote(str(a)) for a in argv)


def _decode(output: bytes) -> str:
    return output.decode("utf-8", errors="replace").rstrip()


def run_tool(
    argv: Sequence[PathLike],
    cwd: Optional[PathLike] = None,
    hide_stdout: bool = False,
) -> bytes:
    """Run ``argv`` to completion and return its raw stdout.

    ``hide_stdout`` keeps binary output (signatures) out of the log.
    """
    args = [str(a) for a in argv]
    logger.info("running %s", format_command(args))
    if cwd is not None:
        logger.debug("in dir %s", cwd)

    try:
        result = subprocess.run(
            args,
            cwd=str(cwd) if cwd is not None else None,
            capture_output=True,
            check=False,
        )
    except FileNotFoundError as exc:
        logger.error("cannot start %s: %s", args[0] if args else "<empty>", exc)
        raise ExternalToolFailure(EXIT_NOT_FOUND, args) from exc

    if result.stdout and not hide_stdout:
        logger.info("%s", _decode(result.stdout))
    if result.stderr:
        logger.info("%s", _decode(result.stderr))

    if result.returncode != 0:
        logger.error("%s exited with code %d", args[0], result.returncode)
        raise ExternalToolFailure(result.returncode, args)
    return result.stdout
