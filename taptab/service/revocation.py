from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional, Protocol

from taptab.logging import get_logger
from taptab.storage.common import fingerprint, utcnow
from taptab.storage.models import RevokedTokenEntry

if TYPE_CHECKING:
    from taptab.service.tokens import TokenClaims

logger = get_logger(__name__)


class RevocationBackend(Protocol):
    def add_revocation(self, entry: RevokedTokenEntry) -> bool: ...

    def is_revoked(self, token_hash: str) -> bool: ...

    def purge_revocations(self, now: datetime) -> int: ...


class RevocationList:
    """Denylist of token identifiers revoked before their natural expiry.

    Only a SHA-256 fingerprint of the identifier is stored. Entries are kept
    at least until the token itself expires; after that the token fails the
    expiry check anyway and cleanup may drop the entry.
    """

    def __init__(
        self,
        store: RevocationBackend,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self._clock = clock or utcnow

    def add(self, token_id: str, purge_after: datetime) -> bool:
        """Record a revocation. Returns True only if it was not already present."""
        entry = RevokedTokenEntry(
            token_hash=fingerprint(token_id),
            revoked_at=self._clock(),
            purge_after=purge_after,
        )
        return self.store.add_revocation(entry)

    def contains(self, token_id: str) -> bool:
        return self.store.is_revoked(fingerprint(token_id))

    def revoke(self, claims: "TokenClaims", ttl_seconds: Optional[int] = None) -> bool:
        """Revoke a decoded token.

        ``ttl_seconds`` can only extend how long the entry is retained, never
        shorten it below the token's own expiry. A token that has already
        expired is left alone (returns False) unless a ttl is given.
        """
        now = self._clock()
        if ttl_seconds is None and now > claims.expires_at:
            logger.debug("revocation_skipped_expired", kind=claims.kind.value)
            return False
        purge_after = claims.expires_at
        if ttl_seconds is not None:
            purge_after = max(purge_after, now + timedelta(seconds=max(0, ttl_seconds)))
        inserted = self.add(claims.token_id, purge_after)
        logger.info(
            "token_revoked",
            kind=claims.kind.value,
            principal_id=claims.principal.id,
            newly_revoked=inserted,
        )
        return inserted
