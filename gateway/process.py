"""External process execution.

Uses asyncio.create_subprocess_exec, never a shell. Every command is
an explicit argument vector, and redirection to a file is done by
opening the file here (never through a symlink) and handing it to
the child. Each call is independent; nothing about a run is kept
between calls.

There is no timeout: a helper runs until it exits.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import BinaryIO

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class ProcessResult:
    """Captured output of one finished process."""

    stdout: bytes = b""
    exit_code: int = 0

    @property
    def success(self) -> bool:
        """Whether the process exited with status 0."""
        return self.exit_code == 0


class ProcessFailed(Exception):
    """Raised when a process could not be started at all."""

    def __init__(self, argv: Sequence[str], reason: str) -> None:
        self.argv = list(argv)
        self.reason = reason
        super().__init__(f"{self.argv[0] if self.argv else '<empty>'}: {reason}")


Runner = Callable[..., Awaitable[ProcessResult]]


async def run_process(
    argv: Sequence[str],
    *,
    stdout_path: str | None = None,
    merge_stderr: bool = False,
) -> ProcessResult:
    """Run a program to completion and capture its standard output.

    Args:
        argv: Program and arguments.
        stdout_path: If given, standard output is written to this file
            (truncated first) instead of being captured. A symlink at
            that path is refused.
        merge_stderr: With stdout_path, send standard error to the same
            file. Otherwise standard error is discarded.

    Returns:
        ProcessResult with captured stdout (empty when redirected) and
        the exit code.

    Raises:
        ProcessFailed: If the program cannot be spawned or the output
            file cannot be opened.
    """
    if not argv:
        raise ProcessFailed(argv, "empty command")

    logger.debug("process_start", argv=list(argv), stdout_path=stdout_path)
    out = None
    if stdout_path is not None:
        try:
            out = _open_output(stdout_path)
        except (OSError, ValueError) as e:
            logger.warning("process_output_failed", path=stdout_path, error=str(e))
            raise ProcessFailed(argv, f"cannot open output: {e}") from None

    try:
        if out is None:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
            stdout, _ = await proc.communicate()
        else:
            with out:
                proc = await asyncio.create_subprocess_exec(
                    *argv,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=out,
                    stderr=asyncio.subprocess.STDOUT if merge_stderr else asyncio.subprocess.DEVNULL,
                )
                await proc.wait()
            stdout = b""
    except FileNotFoundError:
        logger.warning("process_not_found", program=argv[0])
        raise ProcessFailed(argv, "command not found") from None
    except PermissionError:
        logger.warning("process_permission_denied", program=argv[0])
        raise ProcessFailed(argv, "permission denied") from None
    except ValueError as e:
        # embedded NUL in an argument
        logger.warning("process_bad_argument", program=argv[0], error=str(e))
        raise ProcessFailed(argv, f"invalid argument: {e}") from None

    exit_code = proc.returncode if proc.returncode is not None else -1
    logger.debug("process_exit", program=argv[0], exit_code=exit_code, size=len(stdout))
    return ProcessResult(stdout=stdout, exit_code=exit_code)


def _open_output(path: str) -> BinaryIO:
    """Open a redirect target for writing, refusing to follow a symlink."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC | os.O_NOFOLLOW, 0o600)
    return os.fdopen(fd, "wb")
