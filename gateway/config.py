"""Configuration loading and validation using Pydantic models.

Loads gateway configuration from YAML files. All config models use
Pydantic v2 for strict validation.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_COMMANDS: dict[str, list[str]] = {
    "dmesg": ["dmesg", "-r"],
    "last": ["last", "-x"],
    "journalctl_system": ["journalctl", "-r"],
    "journalctl_boot": ["journalctl", "-b", "-r"],
    "journalctl_app": ["journalctl"],
}


class GatewayConfig(BaseModel):
    """Service behavior configuration loaded from gateway.yaml."""

    socket_path: str = "/run/log-gateway/gateway.sock"
    socket_mode: int = 0o666
    audit_log_path: str = "/var/log/log-gateway/audit.jsonl"
    trusted_executable: str = "deepin-log-viewer"
    trusted_search_paths: list[str] = Field(default_factory=lambda: ["/usr/bin"])
    proc_root: str = "/proc"
    stream_chunk_limit: int = Field(default=10 * 1024 * 1024, ge=1)
    stream_idle_timeout: float = Field(default=1800.0, ge=0)
    export_file_mode: int = Field(default=0o777, ge=0, le=0o7777)
    authenticate_all_calls: bool = True


class PolicyConfig(BaseModel):
    """What the gateway is allowed to serve, loaded from policy.yaml."""

    read_prefixes: list[str] = Field(
        default_factory=lambda: ["/var/log/", "/tmp", "/home", "/root"]
    )
    pseudo_command_prefixes: list[str] = Field(
        default_factory=lambda: ["coredumpctl info", "coredumpctl dump", "readelf"]
    )
    pseudo_commands: list[str] = Field(default_factory=lambda: ["coredump"])
    export_extra_prefixes: list[str] = Field(
        default_factory=lambda: ["/var/lib/systemd/coredump"]
    )
    log_dir: str = "/var/log"
    audit_dir: str = "/var/log/audit"
    app_brands: list[str] = Field(default_factory=lambda: ["deepin", "uos"])
    commands: dict[str, list[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_COMMANDS.items()}
    )

    @field_validator("commands")
    @classmethod
    def non_empty_templates(cls, v: dict[str, list[str]]) -> dict[str, list[str]]:
        """Every command label needs at least a program name."""
        for label, argv in v.items():
            if not argv or not argv[0]:
                raise ValueError(f"command {label!r} has an empty template")
        return v


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load and parse a YAML file, returning an empty dict if missing."""
    if not path.exists():
        return {}
    with open(path) as f:
        data = yaml.safe_load(f)
    return data if isinstance(data, dict) else {}


def load_gateway_config(config_dir: Path) -> GatewayConfig:
    """Load service configuration from config_dir/gateway.yaml."""
    data = _load_yaml(config_dir / "gateway.yaml")
    return GatewayConfig(**data)


def load_policy_config(config_dir: Path) -> PolicyConfig:
    """Load the allow-list policy from config_dir/policy.yaml."""
    data = _load_yaml(config_dir / "policy.yaml")
    return PolicyConfig(**data)


def load_all_config(config_dir: str | Path) -> tuple[GatewayConfig, PolicyConfig]:
    """Load all configuration files from the given directory.

    Args:
        config_dir: Path to the configuration directory.

    Returns:
        Tuple of (GatewayConfig, PolicyConfig).

    Raises:
        FileNotFoundError: If config_dir does not exist.
        pydantic.ValidationError: If any config file has invalid content.
    """
    config_path = Path(config_dir)
    if not config_path.is_dir():
        raise FileNotFoundError(f"Configuration directory not found: {config_path}")

    gateway_cfg = load_gateway_config(config_path)
    policy_cfg = load_policy_config(config_path)

    return gateway_cfg, policy_cfg
