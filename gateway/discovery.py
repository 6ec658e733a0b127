"""Log file discovery and decompression.

Lists the files behind a selector, newest first, and optionally swaps
gzip archives for decompressed copies in a scratch directory that lives
as long as the service process.
"""

from __future__ import annotations

import fnmatch
import os
import re
import tempfile
from enum import Enum
from pathlib import Path

import structlog

from gateway.config import PolicyConfig
from gateway.process import ProcessFailed, Runner, run_process

logger = structlog.get_logger()

# Returned in place of a listing when the target directory is missing
MISSING_DIR_MARKER = ""

_STORAGE_RE = re.compile(r"Storage: (\S+)")
_MIN_COREDUMP_FIELDS = 10
_COREDUMP_PID_FIELD = 4
_COREDUMP_FILE_FIELD = 8


class SelectorKind(str, Enum):
    """Where a discovery selector points."""

    APPLICATION = "application"
    AUDIT = "audit"
    COREDUMP = "coredump"
    SYSTEM = "system"


def resolve_selector(selector: str, policy: PolicyConfig) -> SelectorKind:
    """Classify a selector string.

    Args:
        selector: The selector sent by the client.
        policy: Policy holding the application brand tokens.

    Returns:
        The matching SelectorKind.
    """
    lowered = selector.lower()
    if any(brand.lower() in lowered for brand in policy.app_brands):
        return SelectorKind.APPLICATION
    if selector == "audit":
        return SelectorKind.AUDIT
    if selector == "coredump":
        return SelectorKind.COREDUMP
    return SelectorKind.SYSTEM


class ScratchWorkspace:
    """Temporary directory for decompressed logs, created on first use.

    File names are a counter that only grows, so a later decompression
    never overwrites one handed out earlier in the same process.
    """

    def __init__(self, prefix: str = "log-gateway-") -> None:
        self._prefix = prefix
        self._tmpdir: tempfile.TemporaryDirectory[str] | None = None
        self._counter = 0

    @property
    def created(self) -> bool:
        return self._tmpdir is not None

    @property
    def path(self) -> str:
        """The workspace directory, created if needed."""
        if self._tmpdir is None:
            self._tmpdir = tempfile.TemporaryDirectory(prefix=self._prefix)
            logger.info("scratch_created", path=self._tmpdir.name)
        return self._tmpdir.name

    def next_path(self) -> str:
        """Reserve the next numbered file name in the workspace."""
        path = os.path.join(self.path, f"{self._counter}.txt")
        self._counter += 1
        return path

    def cleanup(self) -> None:
        """Remove the workspace and everything in it."""
        if self._tmpdir is not None:
            logger.info("scratch_removed", path=self._tmpdir.name)
            self._tmpdir.cleanup()
            self._tmpdir = None


class LogDiscovery:
    """Enumerates log files for the discovery RPCs."""

    def __init__(
        self,
        policy: PolicyConfig,
        workspace: ScratchWorkspace,
        runner: Runner = run_process,
    ) -> None:
        self._policy = policy
        self._workspace = workspace
        self._runner = runner

    async def discover_log_files(self, selector: str, unzip: bool) -> list[str]:
        """List the log files behind a selector, newest first.

        Args:
            selector: Application log path, "audit", "coredump", or a file
                name prefix under the system log directory.
            unzip: Decompress .gz entries into the scratch workspace.

        Returns:
            File paths. [""] if the target directory does not exist.
        """
        kind = resolve_selector(selector, self._policy)
        logger.debug("discover_log_files", selector=selector, kind=kind.value)

        if kind is SelectorKind.COREDUMP:
            return await self.list_coredumps()

        if kind is SelectorKind.APPLICATION:
            target = Path(selector)
            if target.is_file():
                directory = target.absolute().parent
            elif target.is_dir():
                directory = target.absolute()
            else:
                return []
            name_filter = directory.name
        elif kind is SelectorKind.AUDIT:
            directory = Path(self._policy.audit_dir)
            name_filter = selector
        else:
            directory = Path(self._policy.log_dir)
            name_filter = selector

        if not directory.is_dir():
            logger.warning("discover_missing_dir", directory=str(directory))
            return [MISSING_DIR_MARKER]

        files = _list_files(directory, f"{name_filter}.*", include_hidden=False)
        return await self._materialize(files, unzip)

    async def discover_other_files(self, path: str, unzip: bool) -> list[str]:
        """List an arbitrary log file and its rotations, or a directory.

        Args:
            path: A file (its siblings sharing the name prefix are listed)
                or a directory (all regular files, hidden included).
            unzip: Decompress .gz entries into the scratch workspace.

        Returns:
            File paths, newest first. [] if the path does not exist or is
            neither a regular file nor a directory.
        """
        target = Path(path)
        if not target.exists():
            logger.warning("discover_missing_path", path=path)
            return []

        if target.is_file():
            files = _list_files(target.absolute().parent, f"{target.name}*", include_hidden=True)
        elif target.is_dir():
            files = _list_files(target, "*", include_hidden=True)
        else:
            logger.warning("discover_unsupported_path", path=path)
            return []
        return await self._materialize(files, unzip)

    async def list_coredumps(self) -> list[str]:
        """Return storage paths of recorded crash dumps, newest first."""
        try:
            listing = await self._runner(["coredumpctl", "list", "--no-pager"])
        except ProcessFailed as e:
            logger.warning("coredump_list_failed", error=str(e))
            return []

        raw = listing.stdout.replace(b"\x00", b"").replace(b"\x01", b"")
        lines = [line for line in raw.decode("utf-8", errors="replace").split("\n") if line]

        paths: list[str] = []
        for line in reversed(lines):
            if not line.strip():
                continue
            fields = line.split()
            if len(fields) < _MIN_COREDUMP_FIELDS:
                continue
            if fields[_COREDUMP_FILE_FIELD] == "missing":
                continue
            storage = await self._coredump_storage(fields[_COREDUMP_PID_FIELD])
            if storage:
                paths.append(storage)
        return paths

    async def _coredump_storage(self, pid: str) -> str:
        """Look up where the dump for a pid is stored."""
        try:
            info = await self._runner(["coredumpctl", "info", pid])
        except ProcessFailed as e:
            logger.warning("coredump_info_failed", pid=pid, error=str(e))
            return ""
        match = _STORAGE_RE.search(info.stdout.decode("utf-8", errors="replace"))
        return match.group(1) if match else ""

    async def _materialize(self, files: list[Path], unzip: bool) -> list[str]:
        """Swap gzip archives for decompressed scratch copies when asked."""
        result: list[str] = []
        for file in files:
            if unzip and file.suffix.lower() == ".gz":
                dest = self._workspace.next_path()
                try:
                    await self._runner(["gunzip", "-c", str(file.absolute())], stdout_path=dest)
                except ProcessFailed as e:
                    logger.warning("gunzip_failed", file=str(file), error=str(e))
                result.append(dest)
            else:
                result.append(str(file.absolute()))
        return result


def _list_files(directory: Path, pattern: str, *, include_hidden: bool) -> list[Path]:
    """Regular, non-symlink files matching a pattern, newest-modified first.

    Names are matched case-insensitively. An unreadable directory lists
    as empty.
    """
    pattern = pattern.lower()
    entries: list[tuple[float, Path]] = []
    try:
        with os.scandir(directory) as it:
            for entry in it:
                if not include_hidden and entry.name.startswith("."):
                    continue
                if not entry.is_file(follow_symlinks=False):
                    continue
                if not fnmatch.fnmatchcase(entry.name.lower(), pattern):
                    continue
                entries.append((entry.stat(follow_symlinks=False).st_mtime, Path(entry.path)))
    except OSError as e:
        logger.warning("discover_list_failed", directory=str(directory), error=str(e))
        return []
    entries.sort(key=lambda e: e[0], reverse=True)
    return [path for _, path in entries]
