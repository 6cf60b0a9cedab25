from __future__ import annotations

import contextlib
import dataclasses
import hmac
import threading
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Tuple

from taptab.logging import get_logger
from taptab.storage.common import normalize_identifier
from taptab.storage.models import (
    AttemptAction,
    FailedAttempt,
    OTPOutcome,
    OTPRecord,
    Principal,
    PrincipalRecord,
    RevokedTokenEntry,
)


class _KeyedLocks:
    """Registry of per-key locks, reference counted so idle keys are dropped.

    The registry lock is only held while looking up or releasing an entry,
    never while the caller's critical section runs.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, List] = {}  # key -> [lock, holders]

    @contextlib.contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class MemoryStore:
    """In-process credential store for development and tests.

    OTP records and revocation entries are guarded by per-key locks, so a
    verify on one identifier never waits on another. Dict structure changes
    additionally take a short index lock so cleanup scans see a consistent
    snapshot. Lock order is always per-key lock first, then index lock.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.otps: Dict[str, OTPRecord] = {}
        self.revocations: Dict[str, RevokedTokenEntry] = {}
        self.failed_attempts: Dict[Tuple[str, str], List[FailedAttempt]] = {}
        self.principals: Dict[str, PrincipalRecord] = {}
        self.principal_emails: Dict[str, str] = {}
        self._otp_locks = _KeyedLocks()
        self._revocation_locks = _KeyedLocks()
        self._otp_index_lock = threading.Lock()
        self._revocation_index_lock = threading.Lock()
        self._attempts_lock = threading.Lock()
        # RLock for principal directory operations
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        """Memory store is always reachable."""
        return None

    # =========================================================================
    # Principal directory
    # =========================================================================

    def save_principal(
        self,
        principal: Principal,
        *,
        password_hash: Optional[str] = None,
        is_active: bool = True,
    ) -> PrincipalRecord:
        email = normalize_identifier(principal.email)
        principal = dataclasses.replace(principal, email=email)
        record = PrincipalRecord(
            principal=principal, password_hash=password_hash, is_active=is_active
        )
        with self._data_lock:
            previous = self.principals.get(principal.id)
            if previous and previous.principal.email != email:
                self.principal_emails.pop(previous.principal.email, None)
            owner = self.principal_emails.get(email)
            if owner and owner != principal.id:
                raise ValueError(f"email already registered to principal {owner}")
            self.principals[principal.id] = record
            self.principal_emails[email] = principal.id
        return record

    def get_principal(self, principal_id: str) -> Optional[PrincipalRecord]:
        with self._data_lock:
            return self.principals.get(principal_id)

    def get_principal_by_email(self, email: str) -> Optional[PrincipalRecord]:
        with self._data_lock:
            principal_id = self.principal_emails.get(normalize_identifier(email))
            if not principal_id:
                return None
            return self.principals.get(principal_id)

    def set_password_hash(self, principal_id: str, password_hash: str) -> bool:
        with self._data_lock:
            record = self.principals.get(principal_id)
            if not record:
                return False
            self.principals[principal_id] = dataclasses.replace(
                record, password_hash=password_hash
            )
            return True

    # =========================================================================
    # OTP records
    # =========================================================================

    def put_otp(self, record: OTPRecord) -> None:
        """Store a record, replacing any prior record for the identifier."""
        with self._otp_locks.hold(record.identifier):
            with self._otp_index_lock:
                self.otps[record.identifier] = dataclasses.replace(record)

    def get_otp(self, identifier: str) -> Optional[OTPRecord]:
        with self._otp_locks.hold(identifier):
            record = self.otps.get(identifier)
            return dataclasses.replace(record) if record else None

    def consume_otp(
        self, identifier: str, code_hash: str, *, now: datetime, max_attempts: int
    ) -> OTPOutcome:
        """Run one verify transition atomically for ``identifier``."""
        with self._otp_locks.hold(identifier):
            record = self.otps.get(identifier)
            if record is None:
                return OTPOutcome.NOT_FOUND
            if record.consumed:
                return OTPOutcome.ALREADY_USED
            if now > record.expires_at:
                return OTPOutcome.EXPIRED
            if record.attempt_count >= max_attempts:
                return OTPOutcome.LOCKED
            record.attempt_count += 1
            if hmac.compare_digest(record.code_hash, code_hash):
                record.consumed = True
                return OTPOutcome.VERIFIED
            return OTPOutcome.INVALID

    def purge_expired_otps(self, now: datetime) -> int:
        with self._otp_index_lock:
            candidates = [
                key for key, record in self.otps.items() if now > record.expires_at
            ]
        purged = 0
        for key in candidates:
            with self._otp_locks.hold(key):
                record = self.otps.get(key)
                # A fresh request may have replaced the record since the scan
                if record is None or not now > record.expires_at:
                    continue
                with self._otp_index_lock:
                    del self.otps[key]
                purged += 1
        return purged

    # =========================================================================
    # Revocations
    # =========================================================================

    def add_revocation(self, entry: RevokedTokenEntry) -> bool:
        """Insert if absent; an existing entry only has its purge time extended.

        Returns True when the entry was newly inserted.
        """
        with self._revocation_locks.hold(entry.token_hash):
            existing = self.revocations.get(entry.token_hash)
            if existing is not None:
                if existing.purge_after < entry.purge_after:
                    with self._revocation_index_lock:
                        self.revocations[entry.token_hash] = dataclasses.replace(
                            existing, purge_after=entry.purge_after
                        )
                return False
            with self._revocation_index_lock:
                self.revocations[entry.token_hash] = entry
            return True

    def is_revoked(self, token_hash: str) -> bool:
        with self._revocation_locks.hold(token_hash):
            return token_hash in self.revocations

    def purge_revocations(self, now: datetime) -> int:
        with self._revocation_index_lock:
            candidates = [
                key
                for key, entry in self.revocations.items()
                if now > entry.purge_after
            ]
        purged = 0
        for key in candidates:
            with self._revocation_locks.hold(key):
                entry = self.revocations.get(key)
                if entry is None or not now > entry.purge_after:
                    continue
                with self._revocation_index_lock:
                    del self.revocations[key]
                purged += 1
        return purged

    # =========================================================================
    # Failed attempts
    # =========================================================================

    def record_failed_attempt(self, attempt: FailedAttempt) -> None:
        key = (attempt.identifier, AttemptAction(attempt.action).value)
        with self._attempts_lock:
            self.failed_attempts.setdefault(key, []).append(attempt)

    def count_failed_attempts(
        self, identifier: str, action: AttemptAction, since: datetime
    ) -> int:
        key = (identifier, AttemptAction(action).value)
        with self._attempts_lock:
            return sum(
                1
                for attempt in self.failed_attempts.get(key, ())
                if attempt.occurred_at >= since
            )

    def purge_failed_attempts(self, before: datetime) -> int:
        purged = 0
        with self._attempts_lock:
            for key in list(self.failed_attempts.keys()):
                attempts = self.failed_attempts[key]
                kept = [a for a in attempts if a.occurred_at >= before]
                purged += len(attempts) - len(kept)
                if kept:
                    self.failed_attempts[key] = kept
                else:
                    del self.failed_attempts[key]
        return purged
