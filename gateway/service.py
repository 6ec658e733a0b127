"""The gateway's public operation surface.

Each method takes the caller's pid from the transport followed by the
RPC arguments. Authorization failures raise Unauthorized, which the
transport reports as a structured error; every other failure collapses
to the sentinel values the client has always understood.
"""

from __future__ import annotations

import os
import shlex
from collections.abc import Callable

import structlog

from gateway.config import GatewayConfig, PolicyConfig
from gateway.discovery import LogDiscovery, ScratchWorkspace
from gateway.export import LogExporter
from gateway.process import ProcessFailed, ProcessResult, Runner, run_process
from gateway.security.allowlist import PolicyRejected, build_command_registry, check_path
from gateway.security.invoker import InvokerAuthenticator
from gateway.security.sanitizer import SanitizationError, check_command, sanitize_for_text
from gateway.streams import StreamRegistry

logger = structlog.get_logger()

# Returned by read_log when a request is refused
REJECTED = " "

COREDUMP_LIST = ["coredumpctl", "list", "--no-pager"]


class LogGateway:
    """Composes authentication, policy and the content producers."""

    def __init__(
        self,
        config: GatewayConfig,
        policy: PolicyConfig,
        authenticator: InvokerAuthenticator | None = None,
        runner: Runner = run_process,
        workspace: ScratchWorkspace | None = None,
        streams: StreamRegistry | None = None,
    ) -> None:
        """Initialize the gateway.

        Args:
            config: Service configuration.
            policy: Allowlist policy and command templates.
            authenticator: Caller check; built from config if omitted.
            runner: Process runner used for every helper.
            workspace: Scratch directory for decompressed files.
            streams: Registry for streaming reads.
        """
        self._config = config
        self._policy = policy
        self._authenticator = authenticator or InvokerAuthenticator(
            config.trusted_executable,
            config.trusted_search_paths,
            config.proc_root,
        )
        self._runner = runner
        self._commands = build_command_registry(policy)
        self._workspace = workspace or ScratchWorkspace()
        self._streams = streams or StreamRegistry(
            chunk_limit=config.stream_chunk_limit,
            idle_timeout=config.stream_idle_timeout,
        )
        self._discovery = LogDiscovery(policy, self._workspace, runner=self._record)
        self._exporter = LogExporter(
            policy, self._commands, runner=self._record, file_mode=config.export_file_mode
        )
        self._last_exit_code = 0
        self._quit_callbacks: list[Callable[[], None]] = []

    @property
    def streams(self) -> StreamRegistry:
        return self._streams

    def on_quit(self, callback: Callable[[], None]) -> None:
        """Register a callback run when a client asks the service to quit."""
        self._quit_callbacks.append(callback)

    # -- authenticated operations --

    async def read_log(self, pid: int, path: str) -> str:
        """Read a file or run a pseudo-command and return its text.

        Returns:
            The content, or " " if the request was refused or its helper
            could not be run.

        Raises:
            Unauthorized: If the caller is not the trusted client.
        """
        self._authenticator.authorize(pid)
        try:
            check_path(path, self._policy)
            argv = self._read_argv(path)
            result = await self._record(argv)
        except (PolicyRejected, SanitizationError, ProcessFailed) as e:
            logger.info("read_log_refused", path=path, reason=str(e))
            return REJECTED
        return sanitize_for_text(result.stdout)

    async def open_log_stream(self, pid: int, path: str) -> str:
        """Read a path in full and park it for chunked retrieval.

        Returns:
            The stream token, or "" if the read was refused.
        """
        content = await self.read_log(pid, path)
        if content == REJECTED:
            return ""
        return self._streams.open(path, content)

    async def export_log(self, pid: int, out_dir: str, source: str, is_file: bool) -> bool:
        """Export a file or command output into out_dir."""
        self._authenticator.authorize(pid)
        return await self._exporter.export(out_dir, source, is_file)

    # -- operations optionally gated by authentication --

    async def read_log_stream(self, pid: int, token: str) -> str:
        """Next chunk of an open stream; "" once exhausted or unknown."""
        self._authorize_probe(pid)
        return self._streams.read_chunk(token)

    async def file_exists(self, pid: int, path: str) -> bool:
        self._authorize_probe(pid)
        return os.path.exists(path)

    async def get_file_size(self, pid: int, path: str) -> int:
        self._authorize_probe(pid)
        try:
            return os.stat(path).st_size
        except (OSError, ValueError):
            return 0

    async def discover_log_files(self, pid: int, selector: str, unzip: bool) -> list[str]:
        self._authorize_probe(pid)
        return await self._discovery.discover_log_files(selector, unzip)

    async def discover_other_files(self, pid: int, path: str, unzip: bool) -> list[str]:
        self._authorize_probe(pid)
        return await self._discovery.discover_other_files(path, unzip)

    async def last_exit_code(self, pid: int) -> int:
        """Exit status of the most recent helper process."""
        self._authorize_probe(pid)
        return self._last_exit_code

    async def quit(self, pid: int) -> None:
        """Ask the hosting server to shut down."""
        self._authorize_probe(pid)
        logger.info("quit_requested", pid=pid)
        for callback in self._quit_callbacks:
            callback()

    def close(self) -> None:
        """Release streams and the scratch workspace."""
        self._streams.clear()
        self._workspace.cleanup()

    # -- internals --

    def _authorize_probe(self, pid: int) -> None:
        if self._config.authenticate_all_calls:
            self._authenticator.authorize(pid)

    def _read_argv(self, path: str) -> list[str]:
        """Map an allowed read request to the command that produces it."""
        if path in self._policy.pseudo_commands:
            return list(COREDUMP_LIST)
        if any(path.startswith(prefix) for prefix in self._policy.pseudo_command_prefixes):
            check_command(path)
            try:
                return shlex.split(path)
            except ValueError as e:
                raise SanitizationError("command", path, f"unparsable: {e}") from None
        return ["cat", path]

    async def _record(self, argv, **kwargs) -> ProcessResult:
        """Run a helper and remember its exit status for last_exit_code."""
        result = await self._runner(argv, **kwargs)
        self._last_exit_code = result.exit_code
        return result
