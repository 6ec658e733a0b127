"""CLI entry point for the log gateway using Click."""

from __future__ import annotations

import asyncio
import json
import os
import sys

import click
import structlog

from gateway import __version__
from gateway.config import load_all_config

logger = structlog.get_logger()

_LEVELS = {"DEBUG": 10, "INFO": 20, "WARNING": 30, "ERROR": 40}

# Replies carry whole log files on one line
_REPLY_LIMIT = 512 * 1024 * 1024


def _configure_logging(log_level: str) -> None:
    """Configure structlog for console output."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if sys.stderr.isatty() else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_LEVELS.get(log_level.upper(), 20)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


@click.group()
@click.version_option(version=__version__, prog_name="log-gateway")
def cli() -> None:
    """Log Gateway - privileged log access for the log viewer."""


@cli.command()
@click.option(
    "--config-dir",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    default=None,
    help="Path to configuration directory. Defaults to LOG_GATEWAY_CONFIG env or /etc/log-gateway/",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Logging level. Defaults to LOG_GATEWAY_LOG_LEVEL env or INFO.",
)
@click.option(
    "--socket",
    "socket_path",
    type=click.Path(),
    default=None,
    help="Unix socket path. Defaults to the configured socket_path.",
)
def serve(config_dir: str | None, log_level: str | None, socket_path: str | None) -> None:
    """Run the gateway, listening on a Unix socket until told to quit."""
    config_path = config_dir or os.environ.get("LOG_GATEWAY_CONFIG", "/etc/log-gateway")
    level = log_level or os.environ.get("LOG_GATEWAY_LOG_LEVEL", "INFO")

    _configure_logging(level)

    from gateway.security.audit import AuditLogger
    from gateway.service import LogGateway

    try:
        gateway_cfg, policy_cfg = load_all_config(config_path)
        audit = AuditLogger(gateway_cfg.audit_log_path)
    except FileNotFoundError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Startup error: {e}", err=True)
        logger.exception("startup_failed")
        sys.exit(1)

    gateway = LogGateway(gateway_cfg, policy_cfg)
    sock = socket_path or gateway_cfg.socket_path
    try:
        asyncio.run(_run_server(gateway, audit, sock, gateway_cfg.socket_mode))
    finally:
        gateway.close()
        audit.close()
        logger.info("gateway_exited")


async def _run_server(gateway, audit, socket_path: str, socket_mode: int) -> None:
    """Async entry point for serve."""
    import signal

    from gateway.server import GatewayServer

    server = GatewayServer(socket_path, gateway, audit, socket_mode=socket_mode)
    await server.start()
    logger.info("gateway_started", version=__version__, socket=socket_path)

    # Graceful shutdown on SIGTERM / SIGINT
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, server.request_shutdown)

    try:
        await server.serve_forever()
    finally:
        await server.stop()


@cli.command()
@click.option(
    "--config-dir",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    default=None,
    help="Path to configuration directory.",
)
def check_config(config_dir: str | None) -> None:
    """Validate configuration files without starting the gateway."""
    config_path = config_dir or os.environ.get("LOG_GATEWAY_CONFIG", "/etc/log-gateway")

    try:
        gateway_cfg, policy_cfg = load_all_config(config_path)
    except Exception as e:
        click.echo(f"FAIL: {e}", err=True)
        sys.exit(1)

    from gateway.security.invoker import InvokerAuthenticator

    trusted = InvokerAuthenticator(
        gateway_cfg.trusted_executable, gateway_cfg.trusted_search_paths
    ).trusted_path()

    click.echo("Configuration OK")
    click.echo(f"  Socket: {gateway_cfg.socket_path} (mode {gateway_cfg.socket_mode:o})")
    click.echo(f"  Trusted client: {gateway_cfg.trusted_executable} -> {trusted or 'NOT FOUND'}")
    click.echo(f"  Authenticate all calls: {gateway_cfg.authenticate_all_calls}")
    click.echo(f"  Read prefixes: {', '.join(policy_cfg.read_prefixes)}")
    click.echo(f"  Pseudo-commands: {', '.join(policy_cfg.pseudo_commands + policy_cfg.pseudo_command_prefixes)}")
    click.echo(f"  Command labels: {', '.join(policy_cfg.commands.keys())}")


def _parse_param(raw: str):
    """Interpret a CLI argument as JSON if it parses, else as a string."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


@cli.command()
@click.argument("method")
@click.argument("params", nargs=-1)
@click.option(
    "--socket",
    "socket_path",
    type=click.Path(),
    default="/run/log-gateway/gateway.sock",
    help="Unix socket path of the running gateway.",
)
def call(method: str, params: tuple[str, ...], socket_path: str) -> None:
    """Invoke one gateway method and print the reply.

    Arguments that parse as JSON (true, 0, ...) are sent as such.

    Examples:

      log-gateway call ReadLog /var/log/syslog

      log-gateway call DiscoverLogFiles kern true
    """
    try:
        reply = asyncio.run(_call(socket_path, method, [_parse_param(p) for p in params]))
    except FileNotFoundError:
        click.echo(f"Error: socket not found at {socket_path}. Is the gateway running?", err=True)
        sys.exit(1)
    except ConnectionRefusedError:
        click.echo("Error: connection refused. Is the gateway running?", err=True)
        sys.exit(1)

    from rich.console import Console

    console = Console()
    if "error" in reply:
        err = reply["error"]
        console.print(f"[bold red]{err.get('type', 'Error')}:[/] {err.get('message', '')}")
        sys.exit(1)
    result = reply.get("result")
    if isinstance(result, str):
        console.print(result, markup=False, highlight=False, end="")
    else:
        console.print_json(data=result)


async def _call(socket_path: str, method: str, params: list) -> dict:
    """Send one request to the gateway and return the decoded reply."""
    reader, writer = await asyncio.open_unix_connection(socket_path, limit=_REPLY_LIMIT)
    try:
        payload = json.dumps({"id": 1, "method": method, "params": params}) + "\n"
        writer.write(payload.encode())
        await writer.drain()
        line = await reader.readline()
    finally:
        writer.close()
    if not line:
        return {"error": {"type": "ConnectionClosed", "message": "gateway closed the connection"}}
    return json.loads(line.decode())


if __name__ == "__main__":
    cli()
