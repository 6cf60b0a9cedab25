from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Protocol

from taptab.config import Settings
from taptab.logging import get_logger
from taptab.service.errors import RateLimitedError
from taptab.storage.common import normalize_identifier, parse_ip_address, utcnow
from taptab.storage.models import AttemptAction, FailedAttempt

logger = get_logger(__name__)


class AttemptBackend(Protocol):
    def record_failed_attempt(self, attempt: FailedAttempt) -> None: ...

    def count_failed_attempts(
        self, identifier: str, action: AttemptAction, since: datetime
    ) -> int: ...

    def purge_failed_attempts(self, before: datetime) -> int: ...


class FailedAttemptLimiter:
    """Sliding-window limits counted from the failed-attempt log.

    Limits are per identifier and action. Store failures propagate as
    StoreUnavailableError rather than letting requests through.
    """

    def __init__(
        self,
        store: AttemptBackend,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self._window = timedelta(seconds=settings.rate_limit_window_seconds)
        self._limits: Dict[AttemptAction, int] = {
            AttemptAction.OTP_REQUEST: settings.otp_request_limit,
            AttemptAction.OTP_VERIFY: settings.otp_verify_limit,
            AttemptAction.LOGIN: settings.login_limit,
        }
        self._clock = clock or utcnow

    def limit_for(self, action: AttemptAction) -> int:
        return self._limits[AttemptAction(action)]

    def remaining(self, identifier: str, action: AttemptAction) -> int:
        action = AttemptAction(action)
        used = self.store.count_failed_attempts(
            normalize_identifier(identifier), action, self._clock() - self._window
        )
        return max(0, self.limit_for(action) - used)

    def check(self, identifier: str, action: AttemptAction) -> None:
        """Raise RateLimitedError once the window's budget is spent."""
        action = AttemptAction(action)
        if self.limit_for(action) <= 0:
            return
        if self.remaining(identifier, action) <= 0:
            logger.warning("rate_limit_exceeded", action=action.value)
            raise RateLimitedError(
                "too many attempts; try again later",
                detail={
                    "action": action.value,
                    "retry_after_seconds": int(self._window.total_seconds()),
                },
            )

    def record(
        self,
        identifier: str,
        action: AttemptAction,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> FailedAttempt:
        attempt = FailedAttempt(
            identifier=normalize_identifier(identifier),
            action=AttemptAction(action),
            occurred_at=self._clock(),
            ip_address=parse_ip_address(ip_address),
            user_agent=(user_agent or None) and user_agent[:512],
        )
        self.store.record_failed_attempt(attempt)
        return attempt
