"""Unix socket transport for the gateway.

Listens on a Unix domain socket. Clients send newline-delimited JSON
requests and get one JSON reply line per request. The caller's pid is
taken from the kernel (SO_PEERCRED) on every request, never from the
message itself.

Wire protocol:

  Client -> Server:
    {"id": 1, "method": "ReadLog", "params": ["/var/log/syslog"]}

  Server -> Client:
    {"id": 1, "result": "..."}
    {"id": 1, "error": {"type": "Unauthorized", "message": "...", "pid": 42, "path": "/usr/bin/x"}}

Requests from all connections are handled one at a time.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import os
import socket
import struct
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import structlog

from gateway.security.audit import AuditLogger
from gateway.security.invoker import Unauthorized
from gateway.service import REJECTED, LogGateway

logger = structlog.get_logger()

_PEERCRED = struct.Struct("3i")


class ProtocolError(Exception):
    """Raised for a request that is not a well-formed call."""


def peer_pid(writer: asyncio.StreamWriter) -> int:
    """Return the pid of the process on the other end of a Unix socket."""
    sock = writer.get_extra_info("socket")
    if sock is None:
        raise ProtocolError("transport has no socket")
    creds = sock.getsockopt(socket.SOL_SOCKET, socket.SO_PEERCRED, _PEERCRED.size)
    pid, _uid, _gid = _PEERCRED.unpack(creds)
    return pid


def build_method_table(gateway: LogGateway) -> dict[str, Callable[..., Awaitable[Any]]]:
    """Map wire method names to gateway operations."""
    return {
        "ReadLog": gateway.read_log,
        "OpenLogStream": gateway.open_log_stream,
        "ReadLogStream": gateway.read_log_stream,
        "FileExists": gateway.file_exists,
        "GetFileSize": gateway.get_file_size,
        "DiscoverLogFiles": gateway.discover_log_files,
        "DiscoverOtherFiles": gateway.discover_other_files,
        "ExportLog": gateway.export_log,
        "LastExitCode": gateway.last_exit_code,
        "Quit": gateway.quit,
    }


class GatewayServer:
    """Serves gateway calls over a Unix domain socket."""

    def __init__(
        self,
        socket_path: str,
        gateway: LogGateway,
        audit: AuditLogger,
        socket_mode: int = 0o666,
        pid_resolver: Callable[[asyncio.StreamWriter], int] = peer_pid,
    ) -> None:
        """Initialize the server.

        Args:
            socket_path: Filesystem path for the Unix domain socket.
            gateway: The operation surface to dispatch to.
            audit: Audit logger for every call.
            socket_mode: Permission bits for the socket file.
            pid_resolver: Returns the caller pid for a connection.
        """
        self._socket_path = socket_path
        self._gateway = gateway
        self._audit = audit
        self._socket_mode = socket_mode
        self._pid_resolver = pid_resolver
        self._methods = build_method_table(gateway)
        self._server: asyncio.AbstractServer | None = None
        self._call_lock = asyncio.Lock()
        self._shutdown = asyncio.Event()
        self._writers: set[asyncio.StreamWriter] = set()
        gateway.on_quit(self.request_shutdown)

    async def start(self) -> None:
        """Start the Unix socket server."""
        path = Path(self._socket_path)
        if path.exists():
            path.unlink()
        path.parent.mkdir(parents=True, exist_ok=True)

        self._server = await asyncio.start_unix_server(
            self._handle_connection,
            path=self._socket_path,
        )
        os.chmod(self._socket_path, self._socket_mode)
        logger.info("gateway_listening", socket=self._socket_path)

    def request_shutdown(self) -> None:
        """Ask serve_forever() to return."""
        self._shutdown.set()

    async def serve_forever(self) -> None:
        """Block until a shutdown is requested."""
        await self._shutdown.wait()

    async def stop(self) -> None:
        """Shut down the socket server and clean up."""
        self._shutdown.set()
        if self._server:
            self._server.close()
            for writer in list(self._writers):
                writer.close()
            await self._server.wait_closed()
            self._server = None
        path = Path(self._socket_path)
        if path.exists():
            path.unlink()
        logger.info("gateway_stopped")

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Serve requests from one client until it disconnects."""
        logger.debug("client_connected")
        self._writers.add(writer)
        try:
            while not self._shutdown.is_set():
                line = await reader.readline()
                if not line:
                    break
                reply = await self.handle_line(line, writer)
                writer.write((json.dumps(reply) + "\n").encode())
                await writer.drain()
        except (ConnectionError, OSError, ValueError) as e:
            logger.warning("client_io_error", error=str(e))
        finally:
            self._writers.discard(writer)
            if not writer.is_closing():
                writer.close()
            logger.debug("client_disconnected")

    async def handle_line(self, line: bytes, writer: asyncio.StreamWriter) -> dict[str, Any]:
        """Decode one request line, run it, and build the reply."""
        request_id: Any = None
        try:
            request = json.loads(line.decode("utf-8"))
            if not isinstance(request, dict):
                raise ProtocolError("request must be a JSON object")
            request_id = request.get("id")
            method_name = request.get("method")
            params = request.get("params", [])
            if not isinstance(params, list):
                raise ProtocolError("params must be a list")
            if not isinstance(method_name, str):
                raise ProtocolError("method must be a string")
            method = self._methods.get(method_name)
            if method is None:
                raise ProtocolError(f"unknown method: {method_name!r}")
            try:
                inspect.signature(method).bind(0, *params)
            except TypeError as e:
                raise ProtocolError(f"bad arguments for {method_name}: {e}") from None
        except (json.JSONDecodeError, UnicodeDecodeError, ProtocolError) as e:
            return {"id": request_id, "error": {"type": "ProtocolError", "message": str(e)}}

        pid = self._pid_resolver(writer)
        async with self._call_lock:
            return {"id": request_id, **await self._call(method_name, method, pid, params)}

    async def _call(
        self,
        method_name: str,
        method: Callable[..., Awaitable[Any]],
        pid: int,
        params: list[Any],
    ) -> dict[str, Any]:
        """Run one operation and translate its outcome into a reply body."""
        self._audit.log_attempt(method_name, pid, params)
        try:
            result = await method(pid, *params)
        except Unauthorized as e:
            self._audit.log_denied(method_name, pid, reason=str(e))
            return {
                "error": {
                    "type": "Unauthorized",
                    "message": str(e),
                    "pid": e.pid,
                    "path": e.path,
                }
            }
        except Exception as e:
            logger.exception("call_failed", method=method_name)
            self._audit.log_error(method_name, pid, error=str(e))
            return {"error": {"type": "InternalError", "message": str(e)}}

        if method_name == "ReadLog" and result == REJECTED:
            self._audit.log_rejected(method_name, pid, reason="rejected")
        else:
            self._audit.log_success(method_name, pid, result=result)
        return {"result": result}
