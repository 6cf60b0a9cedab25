from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from taptab.logging import get_logger
from taptab.storage.common import utcnow

logger = get_logger(__name__)


class CleanupBackend(Protocol):
    def purge_expired_otps(self, now: datetime) -> int: ...

    def purge_revocations(self, now: datetime) -> int: ...

    def purge_failed_attempts(self, before: datetime) -> int: ...


@dataclass(frozen=True)
class CleanupReport:
    purged_otps: int
    purged_revocations: int
    purged_failed_attempts: int

    @property
    def total(self) -> int:
        return self.purged_otps + self.purged_revocations + self.purged_failed_attempts

    def as_dict(self) -> dict:
        return {**asdict(self), "total": self.total}


class CleanupJob:
    """Purges credential records whose deadlines have passed.

    Each store re-checks the deadline per key at delete time, so records
    replaced between scan and delete survive. Running the job twice, or from
    two workers at once, is harmless.
    """

    def __init__(
        self,
        store: CleanupBackend,
        *,
        failed_attempt_retention: timedelta = timedelta(days=30),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.failed_attempt_retention = failed_attempt_retention
        self._clock = clock or utcnow

    def run(self) -> CleanupReport:
        now = self._clock()
        report = CleanupReport(
            purged_otps=self.store.purge_expired_otps(now),
            purged_revocations=self.store.purge_revocations(now),
            purged_failed_attempts=self.store.purge_failed_attempts(
                now - self.failed_attempt_retention
            ),
        )
        logger.info("cleanup_completed", **report.as_dict())
        return report
