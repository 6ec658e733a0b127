"""Shared fixtures: a fake procfs, a trusted client binary and a policy."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from gateway.config import GatewayConfig, PolicyConfig
from gateway.security.invoker import InvokerAuthenticator

TRUSTED_PID = 4242
UNTRUSTED_PID = 6666
VANISHED_PID = 9999


def _make_binary(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n")
    path.chmod(0o755)
    return path


@pytest.fixture
def fake_system(tmp_path: Path) -> dict[str, Path]:
    """A bin dir holding the trusted client and a proc root with two live pids."""
    bin_dir = tmp_path / "usr-bin"
    trusted = _make_binary(bin_dir / "deepin-log-viewer")
    intruder = _make_binary(tmp_path / "elsewhere" / "deepin-log-viewer")

    proc = tmp_path / "proc"
    for pid, exe in ((TRUSTED_PID, trusted), (UNTRUSTED_PID, intruder)):
        (proc / str(pid)).mkdir(parents=True)
        os.symlink(exe, proc / str(pid) / "exe")

    return {"bin": bin_dir, "proc": proc, "trusted": trusted, "intruder": intruder}


@pytest.fixture
def authenticator(fake_system) -> InvokerAuthenticator:
    return InvokerAuthenticator(
        "deepin-log-viewer",
        [str(fake_system["bin"])],
        proc_root=str(fake_system["proc"]),
    )


@pytest.fixture
def log_root(tmp_path: Path) -> Path:
    """Directory standing in for an allowed log location."""
    root = tmp_path / "logs"
    root.mkdir()
    return root


@pytest.fixture
def policy(tmp_path: Path, log_root: Path) -> PolicyConfig:
    """Default policy plus the test's log root as a read prefix."""
    defaults = PolicyConfig()
    return PolicyConfig(
        read_prefixes=[*defaults.read_prefixes, str(log_root) + "/"],
        log_dir=str(tmp_path / "var-log"),
        audit_dir=str(tmp_path / "var-log" / "audit"),
    )


@pytest.fixture
def gateway_config(fake_system) -> GatewayConfig:
    return GatewayConfig(
        trusted_search_paths=[str(fake_system["bin"])],
        proc_root=str(fake_system["proc"]),
    )


@pytest.fixture
def pids() -> dict[str, int]:
    """Pids known to the fake procfs (and one that is not)."""
    return {"trusted": TRUSTED_PID, "untrusted": UNTRUSTED_PID, "vanished": VANISHED_PID}
