"""
Security audit trail.

Security-relevant events (OAuth attempts, invalid state, PKCE mismatches,
rejected webhook signatures, token refresh and revocation) are written to the
``square_bff.audit`` logger so they can be routed separately from the general
application log.
"""

import json
import logging
import os
from datetime import UTC, datetime
from typing import Any, Optional

AUDIT_LOGGER_NAME = "square_bff.audit"

audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)

_SEVERITY_LEVELS = {
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
}

_REDACTED_KEYS = {
    "access_token",
    "refresh_token",
    "code",
    "code_verifier",
    "client_secret",
    "signature",
    "session_token",
}


def configure_audit_logging(audit_log_path: Optional[str] = None) -> None:
    """Attach a dedicated file handler to the audit logger when a path is configured."""
    audit_logger.setLevel(logging.INFO)
    if not audit_log_path:
        return
    for handler in audit_logger.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == os.path.abspath(
            audit_log_path
        ):
            return
    handler = logging.FileHandler(audit_log_path, encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    audit_logger.addHandler(handler)


def _redact(details: dict[str, Any]) -> dict[str, Any]:
    return {
        key: "[REDACTED]" if key in _REDACTED_KEYS and value else value
        for key, value in details.items()
    }


def log_security_event(event_type: str, details: dict[str, Any], severity: str = "INFO") -> None:
    """
    Write one security event to the audit trail.

    Args:
        event_type (str): Category of the event, e.g. ``OAuthActivity``.
        details (dict[str, Any]): Structured event details. Secret-bearing keys
            are redacted before writing.
        severity (str): One of ``INFO``, ``WARN`` or ``ERROR``.
    """
    record = {
        **_redact(details),
        "timestamp": datetime.now(UTC).isoformat(),
    }
    audit_logger.log(
        _SEVERITY_LEVELS.get(severity, logging.INFO),
        "[SECURITY:%s] %s: %s",
        severity,
        event_type,
        json.dumps(record, default=str, sort_keys=True),
    )


def log_auth_failure(details: dict[str, Any]) -> None:
    """Log a failed authentication or authorization attempt."""
    log_security_event("AuthFailure", details, "WARN")


def log_oauth_activity(details: dict[str, Any], success: bool = True) -> None:
    """Log an OAuth flow step."""
    log_security_event(
        "OAuthActivity", {**details, "success": success}, "INFO" if success else "WARN"
    )


def log_token_refresh(details: dict[str, Any], success: bool = True) -> None:
    """Log a token refresh."""
    log_security_event(
        "TokenRefresh", {**details, "success": success}, "INFO" if success else "WARN"
    )


def log_token_revocation(details: dict[str, Any], success: bool = True) -> None:
    """Log a token revocation."""
    log_security_event(
        "TokenRevocation", {**details, "success": success}, "INFO" if success else "WARN"
    )


def log_webhook_rejected(details: dict[str, Any]) -> None:
    """Log a webhook delivery rejected on signature grounds."""
    log_security_event("WebhookRejected", details, "WARN")
