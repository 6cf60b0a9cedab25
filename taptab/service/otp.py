from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from taptab.config import Settings
from taptab.logging import get_logger
from taptab.service.errors import (
    OTPAlreadyUsedError,
    OTPError,
    OTPExpiredError,
    OTPInvalidError,
    OTPLockedError,
    OTPNotFoundError,
)
from taptab.storage.common import normalize_identifier, utcnow
from taptab.storage.models import OTPOutcome, OTPRecord

logger = get_logger(__name__)

_OUTCOME_ERRORS: dict[OTPOutcome, type[OTPError]] = {
    OTPOutcome.NOT_FOUND: OTPNotFoundError,
    OTPOutcome.ALREADY_USED: OTPAlreadyUsedError,
    OTPOutcome.EXPIRED: OTPExpiredError,
    OTPOutcome.LOCKED: OTPLockedError,
    OTPOutcome.INVALID: OTPInvalidError,
}

_OUTCOME_MESSAGES = {
    OTPOutcome.NOT_FOUND: "no code has been requested for this identifier",
    OTPOutcome.ALREADY_USED: "code has already been used",
    OTPOutcome.EXPIRED: "code has expired",
    OTPOutcome.LOCKED: "too many attempts; request a new code",
    OTPOutcome.INVALID: "incorrect code",
}


def raise_for_outcome(outcome: OTPOutcome) -> None:
    """Raise the OTPError matching a failed outcome; no-op for VERIFIED."""
    if outcome is OTPOutcome.VERIFIED:
        return
    raise _OUTCOME_ERRORS[outcome](
        _OUTCOME_MESSAGES[outcome], detail={"outcome": outcome.value}
    )


class OTPBackend(Protocol):
    def put_otp(self, record: OTPRecord) -> None: ...

    def get_otp(self, identifier: str) -> Optional[OTPRecord]: ...

    def consume_otp(
        self, identifier: str, code_hash: str, *, now: datetime, max_attempts: int
    ) -> OTPOutcome: ...

    def purge_expired_otps(self, now: datetime) -> int: ...


class OTPService:
    """Single-use numeric codes with bounded attempts.

    Only an HMAC of (identifier, code) is stored. The verify transition runs
    inside the store, atomically per identifier, so at most one of several
    concurrent correct submissions can succeed.
    """

    def __init__(
        self,
        store: OTPBackend,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self._key = settings.effective_otp_secret.encode()
        self._ttl = timedelta(seconds=settings.otp_ttl_seconds)
        self._max_attempts = settings.otp_max_attempts
        self._code_length = settings.otp_code_length
        self._clock = clock or utcnow

    def _generate_code(self) -> str:
        return str(secrets.randbelow(10**self._code_length)).zfill(self._code_length)

    def _hash_code(self, identifier: str, code: str) -> str:
        message = f"{identifier}:{code}".encode("utf-8")
        return hmac.new(self._key, message, hashlib.sha256).hexdigest()

    def request(self, identifier: str) -> str:
        """Issue a fresh code for ``identifier``, replacing any earlier one.

        The plaintext code is returned to the caller for delivery and is not
        kept anywhere.
        """
        identifier = normalize_identifier(identifier)
        code = self._generate_code()
        now = self._clock()
        self.store.put_otp(
            OTPRecord(
                identifier=identifier,
                code_hash=self._hash_code(identifier, code),
                created_at=now,
                expires_at=now + self._ttl,
            )
        )
        logger.info("otp_requested", ttl_seconds=int(self._ttl.total_seconds()))
        return code

    def verify(self, identifier: str, code: str) -> OTPOutcome:
        identifier = normalize_identifier(identifier)
        candidate = (code or "").strip()
        outcome = self.store.consume_otp(
            identifier,
            self._hash_code(identifier, candidate),
            now=self._clock(),
            max_attempts=self._max_attempts,
        )
        if outcome is OTPOutcome.VERIFIED:
            logger.info("otp_verified")
        else:
            logger.info("otp_rejected", outcome=outcome.value)
        return outcome
