"""Caller authentication by executable path.

The transport tells us which process id is on the other end of the
connection. We resolve that process's running binary through procfs and
accept the call only if it is the single registered trusted client.
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass

import structlog

logger = structlog.get_logger()


class Unauthorized(Exception):
    """Raised when the calling process is not the trusted client."""

    def __init__(self, pid: int, path: str | None) -> None:
        self.pid = pid
        self.path = path
        super().__init__(f"(pid: {pid})[{path or ''}] is not allowed to read logs")


@dataclass(frozen=True)
class Invoker:
    """Identity of the process behind one call."""

    pid: int
    executable: str | None


class InvokerAuthenticator:
    """Checks callers against the trusted executable.

    Nothing is cached: the trusted path is looked up and the caller's
    binary resolved on every call, so a replaced binary or a recycled pid
    is seen immediately.
    """

    def __init__(
        self,
        executable_name: str,
        search_paths: list[str],
        proc_root: str = "/proc",
    ) -> None:
        """Initialize the authenticator.

        Args:
            executable_name: File name of the trusted client binary.
            search_paths: Directories searched for that binary.
            proc_root: Mount point of procfs.
        """
        self._executable_name = executable_name
        self._search_paths = list(search_paths)
        self._proc_root = proc_root

    def trusted_path(self) -> str | None:
        """Return the canonical path of the trusted client, if installed."""
        found = shutil.which(self._executable_name, path=os.pathsep.join(self._search_paths))
        if found is None:
            return None
        return os.path.realpath(found)

    def resolve(self, pid: int) -> Invoker:
        """Resolve a pid to the canonical path of its running executable."""
        exe_link = os.path.join(self._proc_root, str(pid), "exe")
        if not os.path.lexists(exe_link):
            return Invoker(pid=pid, executable=None)
        try:
            target = os.path.realpath(exe_link, strict=True)
        except OSError:
            return Invoker(pid=pid, executable=None)
        return Invoker(pid=pid, executable=target)

    def authorize(self, pid: int) -> Invoker:
        """Authorize a caller, raising on denial.

        Args:
            pid: Process id reported by the transport.

        Returns:
            The resolved Invoker.

        Raises:
            Unauthorized: If the executable cannot be resolved or is not
                the trusted client.
        """
        invoker = self.resolve(pid)
        trusted = self.trusted_path()
        if invoker.executable is None or trusted is None or invoker.executable != trusted:
            logger.warning(
                "invoker_denied",
                pid=pid,
                executable=invoker.executable,
                trusted=trusted,
            )
            raise Unauthorized(pid, invoker.executable)
        return invoker
