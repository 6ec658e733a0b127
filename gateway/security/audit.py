"""Structured JSON audit logging using structlog.

Every RPC call is written to a JSONL file for post-hoc review: the
attempt, then its success, denial, policy rejection or error.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog


class AuditLogger:
    """Structured audit logger for gateway calls."""

    def __init__(self, log_path: str) -> None:
        """Initialize the audit logger.

        Args:
            log_path: Path to the JSONL audit log file.
        """
        self._log_path = Path(log_path)
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self._log_path, "a", buffering=1)  # noqa: SIM115

        # Dedicated structlog logger writing JSON to the audit file
        self._logger = structlog.wrap_logger(
            structlog.PrintLogger(file=self._file),
            processors=[
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.JSONRenderer(),
            ],
        )

    def __enter__(self) -> AuditLogger:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def log_attempt(self, method: str, pid: int, params: list[Any]) -> None:
        """Log that a call is being attempted."""
        self._logger.info("call_attempt", method=method, pid=pid, params=params)

    def log_success(self, method: str, pid: int, result: Any) -> None:
        """Log a completed call."""
        self._logger.info(
            "call_success", method=method, pid=pid, result=_summarize(result)
        )

    def log_denied(self, method: str, pid: int, reason: str) -> None:
        """Log a caller that failed authentication."""
        self._logger.warning("call_denied", method=method, pid=pid, reason=reason)

    def log_rejected(self, method: str, pid: int, reason: str) -> None:
        """Log a request refused by the allowlist or sanitizer."""
        self._logger.warning("call_rejected", method=method, pid=pid, reason=reason)

    def log_error(self, method: str, pid: int, error: str) -> None:
        """Log a call that failed unexpectedly."""
        self._logger.error("call_error", method=method, pid=pid, error=error)

    def close(self) -> None:
        """Close the audit log file."""
        if not self._file.closed:
            self._file.close()


def _summarize(result: Any, max_len: int = 200) -> Any:
    """Keep log content out of the audit trail: long strings become a size."""
    if isinstance(result, str) and len(result) > max_len:
        return f"<{len(result)} chars>"
    if isinstance(result, list) and len(result) > 20:
        return f"<{len(result)} entries>"
    return result
