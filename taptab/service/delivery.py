from __future__ import annotations

from typing import Protocol

from taptab.logging import get_logger

logger = get_logger(__name__)


class CodeSender(Protocol):
    """Delivers a one-time code to its recipient (email, SMS, ...)."""

    def send_code(self, identifier: str, code: str) -> None: ...


def redact_identifier(identifier: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in identifier:
        return "redacted"
    local, domain = identifier.split("@", 1)
    return f"{local[:2]}***@{domain}"


class LoggingCodeSender:
    """Development sender: records that a code was issued, never the code.

    Real deployments plug in their own transport.
    """

    def send_code(self, identifier: str, code: str) -> None:
        logger.info(
            "otp_delivery_dev_mode",
            recipient=redact_identifier(identifier),
            code_length=len(code),
        )
