"""Security layer: caller authentication, allowlisting, sanitization, audit logging."""

from __future__ import annotations

from gateway.security.allowlist import PolicyRejected, is_command_label_known, is_path_allowed
from gateway.security.audit import AuditLogger
from gateway.security.invoker import InvokerAuthenticator, Unauthorized
from gateway.security.sanitizer import SanitizationError, sanitize_for_text

__all__ = [
    "AuditLogger",
    "InvokerAuthenticator",
    "PolicyRejected",
    "SanitizationError",
    "Unauthorized",
    "is_command_label_known",
    "is_path_allowed",
    "sanitize_for_text",
]
