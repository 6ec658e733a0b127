"""Export of log files and command output to a client-chosen directory.

Files are copied with cp; command labels are run with their output sent
straight into the destination file. Symlinks at the destination are
never followed. The destination's mode is then opened up so the
unprivileged client can read what root wrote.
"""

from __future__ import annotations

import os
from collections.abc import Mapping

import structlog

from gateway.config import PolicyConfig
from gateway.process import ProcessFailed, Runner, run_process
from gateway.security.allowlist import is_command_label_known, is_export_source_allowed

logger = structlog.get_logger()

APP_JOURNAL_LABEL = "journalctl_app"


class LogExporter:
    """Writes exported logs into an output directory."""

    def __init__(
        self,
        policy: PolicyConfig,
        commands: Mapping[str, tuple[str, ...]],
        runner: Runner = run_process,
        file_mode: int = 0o777,
    ) -> None:
        self._policy = policy
        self._commands = commands
        self._runner = runner
        self._file_mode = file_mode

    async def export(self, out_dir: str, source: str, is_file: bool) -> bool:
        """Export a file or a command's output.

        Args:
            out_dir: Destination directory.
            source: A file path when is_file, otherwise a command label.
            is_file: Whether source is a file to copy.

        Returns:
            True if the export ran. The helper's exit status is not
            inspected, only whether it could be run.
        """
        if not out_dir.endswith("/"):
            out_dir += "/"
        if not source or not os.path.isdir(out_dir):
            logger.warning("export_bad_target", out_dir=out_dir, source=source)
            return False

        out_dir = os.path.abspath(out_dir) + "/"
        if is_file:
            return await self._export_file(out_dir, source)
        return await self._export_command(out_dir, source)

    async def _export_file(self, out_dir: str, source: str) -> bool:
        if not is_export_source_allowed(source, self._policy):
            logger.warning("export_source_rejected", source=source)
            return False
        if not os.path.isfile(source):
            logger.warning("export_source_not_file", source=source)
            return False

        dest = out_dir + os.path.basename(source)
        if os.path.islink(dest):
            logger.warning("export_dest_is_symlink", dest=dest)
            return False
        try:
            await self._runner(["cp", source, out_dir])
        except ProcessFailed as e:
            logger.warning("export_copy_failed", source=source, error=str(e))
            return False
        return self._finish(dest)

    async def _export_command(self, out_dir: str, label: str) -> bool:
        if not is_command_label_known(label, self._commands):
            logger.warning("export_unknown_command", label=label)
            return False

        argv = list(self._commands[label])
        dest = f"{out_dir}{label}.log"
        if label == APP_JOURNAL_LABEL:
            app_name = out_dir.split("/")[-2]
            dest = f"{out_dir}{app_name}.log"
            argv.append(f"SYSLOG_IDENTIFIER={app_name}")
            logger.debug("export_app_journal", argv=argv)

        try:
            await self._runner(argv, stdout_path=dest, merge_stderr=True)
        except (ProcessFailed, OSError) as e:
            logger.warning("export_command_failed", label=label, error=str(e))
            return False
        return self._finish(dest)

    def _finish(self, dest: str) -> bool:
        try:
            fd = os.open(dest, os.O_RDONLY | os.O_NOFOLLOW)
            try:
                os.fchmod(fd, self._file_mode)
            finally:
                os.close(fd)
        except OSError as e:
            logger.warning("export_chmod_failed", dest=dest, error=str(e))
            return False
        logger.info("export_done", dest=dest)
        return True
