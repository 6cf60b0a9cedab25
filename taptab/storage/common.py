"""Helpers shared between the memory and Redis credential stores.

Both backends must agree on identifier normalization, key fingerprints and
timestamp conversion, otherwise a record written by one path could be missed
by another.
"""

from __future__ import annotations

import hashlib
import uuid
from datetime import datetime, timezone
from ipaddress import ip_address
from typing import Any, Optional


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""
    return datetime.now(timezone.utc)


def normalize_identifier(identifier: str) -> str:
    """Canonical form of an OTP/login identifier (an email address)."""
    if not isinstance(identifier, str):
        raise TypeError("identifier must be a string")
    return identifier.strip().lower()


def fingerprint(value: str) -> str:
    """SHA-256 hex digest used as a store key for secrets and identifiers."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def to_timestamp(value: datetime) -> float:
    """Convert a datetime to epoch seconds, treating naive values as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def from_timestamp(value: Any) -> datetime:
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


def parse_ip_address(raw_ip: Any) -> Optional[str]:
    """Validate and normalize an IP address for the attempt log.

    Args:
        raw_ip: Raw IP address value (string or None)

    Returns:
        Normalized IP string, or None when missing or unparseable
    """
    if not isinstance(raw_ip, str):
        return None
    stripped = raw_ip.strip()
    if not stripped:
        return None
    try:
        return str(ip_address(stripped))
    except ValueError:
        return None


def generate_uuid() -> str:
    return str(uuid.uuid4())
