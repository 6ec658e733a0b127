"""Tests for the Unix socket transport."""

from __future__ import annotations

import asyncio
import json
import os
import stat
from pathlib import Path

import pytest

from gateway.security.audit import AuditLogger
from gateway.server import GatewayServer, build_method_table
from gateway.service import LogGateway


@pytest.fixture
def audit(tmp_path: Path):
    with AuditLogger(str(tmp_path / "audit.jsonl")) as audit:
        yield audit


@pytest.fixture
def gateway(gateway_config, policy, authenticator):
    gw = LogGateway(gateway_config, policy, authenticator=authenticator)
    yield gw
    gw.close()


def make_server(gateway, audit, pid: int, socket_path: str = "/nonexistent.sock") -> GatewayServer:
    return GatewayServer(socket_path, gateway, audit, pid_resolver=lambda writer: pid)


def request(method, *params, request_id=1) -> bytes:
    return json.dumps({"id": request_id, "method": method, "params": list(params)}).encode()


def audit_events(tmp_path: Path) -> list[str]:
    lines = (tmp_path / "audit.jsonl").read_text().strip().split("\n")
    return [json.loads(line)["event"] for line in lines if line]


class TestMethodTable:

    def test_all_operations_exposed(self, gateway):
        assert set(build_method_table(gateway)) == {
            "ReadLog",
            "OpenLogStream",
            "ReadLogStream",
            "FileExists",
            "GetFileSize",
            "DiscoverLogFiles",
            "DiscoverOtherFiles",
            "ExportLog",
            "LastExitCode",
            "Quit",
        }


class TestHandleLine:

    @pytest.mark.asyncio
    async def test_read_log(self, gateway, audit, pids, log_root, tmp_path):
        log = log_root / "syslog"
        log.write_text("hello\n")
        server = make_server(gateway, audit, pids["trusted"])

        reply = await server.handle_line(request("ReadLog", str(log), request_id=7), None)
        assert reply == {"id": 7, "result": "hello\n"}
        assert audit_events(tmp_path) == ["call_attempt", "call_success"]

    @pytest.mark.asyncio
    async def test_rejected_read_audited(self, gateway, audit, pids, tmp_path):
        server = make_server(gateway, audit, pids["trusted"])
        reply = await server.handle_line(request("ReadLog", "/etc/shadow"), None)
        assert reply == {"id": 1, "result": " "}
        assert audit_events(tmp_path) == ["call_attempt", "call_rejected"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method, params, expected", [
        ("ReadLog", ["/tmp/a\x00b"], " "),
        ("OpenLogStream", ["/tmp/a\x00b"], ""),
        ("GetFileSize", ["/tmp/a\x00b"], 0),
        ("DiscoverOtherFiles", ["/dev/null", False], []),
    ])
    async def test_odd_paths_degrade_to_sentinels(self, gateway, audit, pids, method, params, expected):
        server = make_server(gateway, audit, pids["trusted"])
        reply = await server.handle_line(request(method, *params), None)
        assert reply == {"id": 1, "result": expected}

    @pytest.mark.asyncio
    async def test_unauthorized_is_structured(self, gateway, audit, pids, fake_system, tmp_path):
        server = make_server(gateway, audit, pids["untrusted"])
        reply = await server.handle_line(request("ReadLog", "/var/log/syslog"), None)

        error = reply["error"]
        assert error["type"] == "Unauthorized"
        assert error["pid"] == pids["untrusted"]
        assert error["path"] == str(fake_system["intruder"])
        assert "is not allowed to read logs" in error["message"]
        assert audit_events(tmp_path) == ["call_attempt", "call_denied"]

    @pytest.mark.asyncio
    async def test_vanished_caller(self, gateway, audit, pids):
        server = make_server(gateway, audit, pids["vanished"])
        reply = await server.handle_line(request("ExportLog", "/tmp", "dmesg", False), None)
        assert reply["error"]["type"] == "Unauthorized"
        assert reply["error"]["path"] is None

    @pytest.mark.asyncio
    async def test_list_result(self, gateway, audit, pids, policy):
        audit_dir = Path(policy.audit_dir)
        audit_dir.mkdir(parents=True)
        (audit_dir / "audit.log").write_text("x")
        server = make_server(gateway, audit, pids["trusted"])

        reply = await server.handle_line(request("DiscoverLogFiles", "audit", False), None)
        assert reply["result"] == [str(audit_dir / "audit.log")]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("line", [
        b"not json",
        b"\xff\xfe",
        b"[1, 2]",
        b'{"id": 1, "method": 5}',
        b'{"id": 1, "method": "Reboot", "params": []}',
        b'{"id": 1, "method": "ReadLog", "params": "/var/log/syslog"}',
    ])
    async def test_protocol_errors(self, gateway, audit, pids, line):
        server = make_server(gateway, audit, pids["trusted"])
        reply = await server.handle_line(line, None)
        assert reply["error"]["type"] == "ProtocolError"

    @pytest.mark.asyncio
    async def test_wrong_arity_is_protocol_error(self, gateway, audit, pids, tmp_path):
        server = make_server(gateway, audit, pids["trusted"])
        reply = await server.handle_line(request("ExportLog", "/tmp"), None)
        assert reply["id"] == 1
        assert reply["error"]["type"] == "ProtocolError"
        assert "ExportLog" in reply["error"]["message"]
        assert not (tmp_path / "audit.jsonl").read_text()

    @pytest.mark.asyncio
    async def test_params_default_to_empty(self, gateway, audit, pids):
        server = make_server(gateway, audit, pids["trusted"])
        reply = await server.handle_line(b'{"id": 3, "method": "LastExitCode"}', None)
        assert reply == {"id": 3, "result": 0}

    @pytest.mark.asyncio
    async def test_quit_requests_shutdown(self, gateway, audit, pids):
        server = make_server(gateway, audit, pids["trusted"])
        reply = await server.handle_line(request("Quit"), None)
        assert reply == {"id": 1, "result": None}
        await asyncio.wait_for(server.serve_forever(), timeout=1)


class TestSocket:

    @pytest.mark.asyncio
    async def test_round_trip_over_socket(self, gateway, audit, pids, log_root, tmp_path):
        socket_path = str(tmp_path / "gw.sock")
        log = log_root / "kern.log"
        log.write_text("kernel\n")
        server = GatewayServer(
            socket_path, gateway, audit, socket_mode=0o660,
            pid_resolver=lambda writer: pids["trusted"],
        )
        await server.start()
        try:
            assert stat.S_IMODE(os.stat(socket_path).st_mode) == 0o660
            reader, writer = await asyncio.open_unix_connection(socket_path)
            writer.write(request("ReadLog", str(log)) + b"\n")
            writer.write(request("FileExists", str(log), request_id=2) + b"\n")
            await writer.drain()
            first = json.loads(await reader.readline())
            second = json.loads(await reader.readline())
            writer.close()
            await writer.wait_closed()
        finally:
            await server.stop()

        assert first == {"id": 1, "result": "kernel\n"}
        assert second == {"id": 2, "result": True}
        assert not os.path.exists(socket_path)

    @pytest.mark.asyncio
    async def test_peer_pid_from_kernel(self, gateway, audit, tmp_path):
        """The test process is not the trusted client and must be refused."""
        socket_path = str(tmp_path / "gw.sock")
        server = GatewayServer(socket_path, gateway, audit)
        await server.start()
        try:
            reader, writer = await asyncio.open_unix_connection(socket_path)
            writer.write(request("ReadLog", "/var/log/syslog") + b"\n")
            await writer.drain()
            reply = json.loads(await reader.readline())
            writer.close()
            await writer.wait_closed()
        finally:
            await server.stop()

        assert reply["error"]["type"] == "Unauthorized"
        assert reply["error"]["pid"] == os.getpid()

    @pytest.mark.asyncio
    async def test_stale_socket_replaced(self, gateway, audit, pids, tmp_path):
        socket_path = tmp_path / "gw.sock"
        socket_path.write_text("stale")
        server = make_server(gateway, audit, pids["trusted"], str(socket_path))
        await server.start()
        try:
            assert stat.S_ISSOCK(os.stat(socket_path).st_mode)
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_stop_closes_idle_clients(self, gateway, audit, pids, tmp_path):
        socket_path = str(tmp_path / "gw.sock")
        server = make_server(gateway, audit, pids["trusted"], socket_path)
        await server.start()
        reader, writer = await asyncio.open_unix_connection(socket_path)
        await asyncio.sleep(0.05)
        await asyncio.wait_for(server.stop(), timeout=5)
        assert await reader.read() == b""
        writer.close()
