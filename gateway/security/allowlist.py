"""Path and command-label allowlist engine.

Only explicitly listed path prefixes, pseudo-commands and command labels
are servable. Matching is plain prefix or equality, with no glob or
wildcard expansion. Any '..' or NUL byte in a request rejects it outright.
"""

from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType

import structlog

from gateway.config import PolicyConfig

logger = structlog.get_logger()


class PolicyRejected(Exception):
    """Raised when a path or command label is not on the allowlist."""

    def __init__(self, subject: str, reason: str) -> None:
        self.subject = subject
        self.reason = reason
        super().__init__(f"Rejected {subject!r}: {reason}")


def build_command_registry(policy: PolicyConfig) -> Mapping[str, tuple[str, ...]]:
    """Freeze the configured command templates into a read-only mapping.

    Args:
        policy: The loaded policy configuration.

    Returns:
        A mapping proxy from label to argument-vector template.
    """
    return MappingProxyType({label: tuple(argv) for label, argv in policy.commands.items()})


def is_pseudo_command(path: str, policy: PolicyConfig) -> bool:
    """Check if a request string is one of the literal pseudo-commands.

    Args:
        path: The request string.
        policy: The allowlist policy.

    Returns:
        True if the string equals an exact pseudo-command or starts with a
        pseudo-command prefix.
    """
    if path in policy.pseudo_commands:
        return True
    return any(path.startswith(prefix) for prefix in policy.pseudo_command_prefixes)


def is_path_allowed(path: str, policy: PolicyConfig) -> bool:
    """Check if a read request is allowed.

    Args:
        path: File path or pseudo-command string from the caller.
        policy: The allowlist policy.

    Returns:
        True if the request matches a read prefix or pseudo-command and
        contains no parent-directory traversal or NUL byte.
    """
    if ".." in path or "\x00" in path:
        return False
    if is_pseudo_command(path, policy):
        return True
    return any(path.startswith(prefix) for prefix in policy.read_prefixes)


def is_export_source_allowed(path: str, policy: PolicyConfig) -> bool:
    """Check if a file may be copied out by the export pipeline.

    Export sources are real files only; pseudo-commands never qualify,
    but crash-dump storage is allowed in addition to the read prefixes.
    """
    if ".." in path or "\x00" in path:
        return False
    prefixes = [*policy.read_prefixes, *policy.export_extra_prefixes]
    return any(path.startswith(prefix) for prefix in prefixes)


def is_command_label_known(label: str, commands: Mapping[str, tuple[str, ...]]) -> bool:
    """Check if a label names a registered command."""
    return label in commands


def check_path(path: str, policy: PolicyConfig) -> None:
    """Validate a read request against the allowlist, raising on denial.

    Args:
        path: The request string to validate.
        policy: The allowlist policy.

    Raises:
        PolicyRejected: If the request is not servable.
    """
    if not is_path_allowed(path, policy):
        logger.warning("path_rejected", path=path)
        raise PolicyRejected(path, "not under an allowed prefix")
