"""Secret generation and secret-safe logging helpers.

SECURITY INVARIANTS:
1. Passwords come from the OS CSPRNG with at least 16 bytes of entropy
2. Generated secrets never appear in log messages or log extras
3. Access key ids are only ever logged masked
"""

from __future__ import annotations

import base64
import logging
import secrets

logger = logging.getLogger(__name__)

PASSWORD_ENTROPY_BYTES = 16
MASK_VISIBLE_CHARS = 4


def generate_password(entropy_bytes: int = PASSWORD_ENTROPY_BYTES) -> str:
    """Generate a random initial password, base64-encoded for transport.

    Args:
        entropy_bytes: Number of random bytes; values below 16 are rejected.

    Raises:
        ValueError: If less than 16 bytes of entropy are requested.
    """
    if entropy_bytes < PASSWORD_ENTROPY_BYTES:
        raise ValueError(f"Password entropy must be at least {PASSWORD_ENTROPY_BYTES} bytes")
    return base64.b64encode(secrets.token_bytes(entropy_bytes)).decode("ascii")


def mask_secret(value: str | None) -> str:
    """Mask an identifier for logging, keeping only a short prefix."""
    if not value:
        return ""
    if len(value) <= MASK_VISIBLE_CHARS:
        return "*" * len(value)
    return value[:MASK_VISIBLE_CHARS] + "..."


def log_security_audit_event(
    event_type: str,
    account: str,
    target_identity: str | None = None,
    action: str | None = None,
    result: str | None = None,
) -> None:
    """Log a security-relevant audit event.

    All security events are logged with structured data for SIEM ingestion.

    Args:
        event_type: Type of security event (credential_issued, role_assumed, ...).
        account: Account the event happened in.
        target_identity: User or role the event concerns.
        action: Action being performed.
        result: Result of the action (success, failure, skipped).
    """
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "account": account,
            "target_identity": target_identity,
            "action": action,
            "result": result,
        },
    )
