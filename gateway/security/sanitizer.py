"""Input and output sanitization.

Pseudo-command strings coming from the client are rejected, never
escaped, if they contain shell metacharacters: they are split into an
argument vector and executed directly, so nothing may smuggle in
chaining or redirection. Output bytes are made safe for text transport.
"""

from __future__ import annotations

import re

import structlog

logger = structlog.get_logger()

# These patterns are REJECTED outright, never escaped
FORBIDDEN_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r'[;&|]'),            # Command chaining
    re.compile(r'\$[\({]'),          # Command/variable substitution $() and ${}
    re.compile(r'`'),                # Backtick substitution
    re.compile(r'\.\.'),             # Path traversal
    re.compile(r'[<>]'),             # Redirection
    re.compile(r'[\n\r\x00]'),       # Newline/carriage-return/null-byte injection
]

# Human-readable reason for each pattern (same order)
_PATTERN_REASONS: list[str] = [
    "command chaining characters (;, &, |)",
    "command/variable substitution ($( or ${)",
    "backtick substitution",
    "path traversal (..)",
    "redirection (< or >)",
    "newline/null-byte injection",
]


class SanitizationError(Exception):
    """Raised when input fails sanitization checks."""

    def __init__(self, field: str, value: str, reason: str) -> None:
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Rejected {field}: {reason}")


def check_command(command: str) -> None:
    """Validate a pseudo-command string against forbidden patterns.

    Args:
        command: The command string to validate.

    Raises:
        SanitizationError: If the command contains forbidden patterns.
    """
    for pattern, reason in zip(FORBIDDEN_PATTERNS, _PATTERN_REASONS):
        if pattern.search(command):
            logger.warning("sanitizer_rejected", command=command, reason=reason)
            raise SanitizationError("command", command, reason)


def sanitize_for_text(data: bytes) -> str:
    """Turn raw process output into text without losing or truncating it.

    Every NUL byte becomes a single space before decoding, since NUL cuts
    off text handling on the client side. Invalid UTF-8 is replaced
    rather than raising.

    Args:
        data: Raw bytes, possibly binary and possibly very large.

    Returns:
        The decoded text.
    """
    replaced = data.count(b"\x00")
    if replaced:
        logger.debug("nul_bytes_replaced", count=replaced, size=len(data))
        data = data.replace(b"\x00", b" ")
    return data.decode("utf-8", errors="replace")
