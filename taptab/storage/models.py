from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class Role(str, Enum):
    """Closed set of principal roles carried in token claims."""

    TENANT_ADMIN = "TENANT_ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"
    MANAGER = "MANAGER"
    CASHIER = "CASHIER"
    WAITER = "WAITER"
    KITCHEN = "KITCHEN"
    READONLY = "READONLY"

    @classmethod
    def parse(cls, value: object) -> "Role":
        """Strictly parse a role; unknown strings raise ValueError."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"role must be a string, got {type(value).__name__}")
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"unknown role {value!r}") from None


class AttemptAction(str, Enum):
    """Actions tracked in the failed-attempt log."""

    OTP_REQUEST = "otp_request"
    OTP_VERIFY = "otp_verify"
    LOGIN = "login"


class OTPOutcome(str, Enum):
    """Result of a single OTP verify transition."""

    VERIFIED = "verified"
    NOT_FOUND = "not_found"
    ALREADY_USED = "already_used"
    EXPIRED = "expired"
    LOCKED = "locked"
    INVALID = "invalid"


@dataclass(frozen=True)
class Principal:
    id: str
    email: str
    role: Role
    tenant_id: str


@dataclass(frozen=True)
class PrincipalRecord:
    principal: Principal
    password_hash: Optional[str] = None
    is_active: bool = True


@dataclass
class OTPRecord:
    identifier: str
    code_hash: str
    created_at: datetime
    expires_at: datetime
    attempt_count: int = 0
    consumed: bool = False


@dataclass(frozen=True)
class RevokedTokenEntry:
    token_hash: str
    revoked_at: datetime
    purge_after: datetime


@dataclass(frozen=True)
class FailedAttempt:
    identifier: str
    action: AttemptAction
    occurred_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
