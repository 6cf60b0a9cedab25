from __future__ import annotations

import contextlib
import json
import math
from datetime import datetime
from typing import Iterator, Optional

from redis import Redis
from redis.exceptions import RedisError

from taptab.logging import get_logger
from taptab.storage.common import (
    fingerprint,
    from_timestamp,
    generate_uuid,
    normalize_identifier,
    to_timestamp,
)
from taptab.storage.errors import StoreUnavailableError
from taptab.storage.models import (
    AttemptAction,
    FailedAttempt,
    OTPOutcome,
    OTPRecord,
    Principal,
    PrincipalRecord,
    Role,
    RevokedTokenEntry,
)

logger = get_logger(__name__)


class RedisStore:
    """Credential store backed by Redis.

    Every read-modify-write on a single record runs as one Lua script, which
    Redis executes atomically, so concurrent verifies for an identifier are
    serialized without client-side locks. Expiry indexes are sorted sets
    scored by deadline, letting cleanup find dead records without KEYS.
    """

    # Records outlive their logical deadline by this much so the verify path
    # can still report "expired" until cleanup removes them.
    RECORD_GRACE_SECONDS = 3600

    # Atomic OTP verify transition: NotFound > AlreadyUsed > Expired > Locked
    # > increment > compare
    _CONSUME_OTP_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local code_hash = ARGV[2]
local max_attempts = tonumber(ARGV[3])

if redis.call('EXISTS', key) == 0 then
  return 'not_found'
end
local data = redis.call('HMGET', key, 'code_hash', 'expires_at', 'attempt_count', 'consumed')
if data[4] == '1' then
  return 'already_used'
end
if now > tonumber(data[2]) then
  return 'expired'
end
if tonumber(data[3]) >= max_attempts then
  return 'locked'
end
redis.call('HINCRBY', key, 'attempt_count', 1)
if data[1] == code_hash then
  redis.call('HSET', key, 'consumed', '1')
  return 'verified'
end
return 'invalid'
"""

    # Insert-if-absent; an existing entry only has its purge time extended
    _ADD_REVOCATION_SCRIPT = """
local key = KEYS[1]
local index = KEYS[2]
local revoked_at = ARGV[1]
local purge_after = tonumber(ARGV[2])
local grace = tonumber(ARGV[3])

local existing = redis.call('HGET', key, 'purge_after')
if existing then
  if tonumber(existing) < purge_after then
    redis.call('HSET', key, 'purge_after', ARGV[2])
    redis.call('ZADD', index, purge_after, key)
    redis.call('EXPIREAT', key, math.ceil(purge_after) + grace)
  end
  return 0
end
redis.call('HSET', key, 'revoked_at', revoked_at, 'purge_after', ARGV[2])
redis.call('ZADD', index, purge_after, key)
redis.call('EXPIREAT', key, math.ceil(purge_after) + grace)
return 1
"""

    # Delete a record only if its deadline field has passed; a record
    # replaced after the index scan gets its index score refreshed instead.
    _PURGE_IF_DEAD_SCRIPT = """
local key = KEYS[1]
local index = KEYS[2]
local now = tonumber(ARGV[1])
local deadline = redis.call('HGET', key, ARGV[2])

if not deadline then
  redis.call('ZREM', index, key)
  return 0
end
if now > tonumber(deadline) then
  redis.call('DEL', key)
  redis.call('ZREM', index, key)
  return 1
end
redis.call('ZADD', index, deadline, key)
return 0
"""

    _PURGE_ATTEMPTS_SCRIPT = """
local removed = redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', '(' .. ARGV[1])
if redis.call('ZCARD', KEYS[1]) == 0 then
  redis.call('SREM', KEYS[2], KEYS[1])
end
return removed
"""

    def __init__(
        self,
        redis_url: str,
        *,
        key_prefix: str = "auth",
        socket_timeout: float = 5.0,
        client: Optional[Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._consume_otp = self.client.register_script(self._CONSUME_OTP_SCRIPT)
        self._add_revocation = self.client.register_script(self._ADD_REVOCATION_SCRIPT)
        self._purge_if_dead = self.client.register_script(self._PURGE_IF_DEAD_SCRIPT)
        self._purge_attempts = self.client.register_script(self._PURGE_ATTEMPTS_SCRIPT)

    @contextlib.contextmanager
    def _store_call(self, operation: str) -> Iterator[None]:
        """Translate transport failures into StoreUnavailableError."""
        try:
            yield
        except RedisError as exc:
            logger.warning(
                "credential_store_unavailable",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailableError(
                "credential store unavailable", {"operation": operation}
            ) from exc

    def _key(self, *parts: str) -> str:
        return ":".join((self.key_prefix,) + parts)

    def _otp_key(self, identifier: str) -> str:
        return self._key("otp", fingerprint(identifier))

    def _revocation_key(self, token_hash: str) -> str:
        return self._key("revoked", token_hash)

    def _attempts_key(self, identifier: str, action: AttemptAction) -> str:
        return self._key("failed", fingerprint(identifier), AttemptAction(action).value)

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        with self._store_call("ping"):
            self.client.ping()

    def close(self) -> None:
        self.client.close()

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
        email_key = self._key("principal_email", email)
        principal_key = self._key("principal", principal.id)
        with self._store_call("save_principal"):
            owner = self.client.get(email_key)
            if owner and owner != principal.id:
                raise ValueError(f"email already registered to principal {owner}")
            previous_email = self.client.hget(principal_key, "email")
            pipe = self.client.pipeline(transaction=True)
            if previous_email and previous_email != email:
                pipe.delete(self._key("principal_email", previous_email))
            pipe.hset(
                principal_key,
                mapping={
                    "id": principal.id,
                    "email": email,
                    "role": Role.parse(principal.role).value,
                    "tenant_id": principal.tenant_id,
                    "password_hash": password_hash or "",
                    "is_active": "1" if is_active else "0",
                },
            )
            pipe.set(email_key, principal.id)
            pipe.execute()
        return PrincipalRecord(
            principal=Principal(
                id=principal.id,
                email=email,
                role=Role.parse(principal.role),
                tenant_id=principal.tenant_id,
            ),
            password_hash=password_hash,
            is_active=is_active,
        )

    def get_principal(self, principal_id: str) -> Optional[PrincipalRecord]:
        with self._store_call("get_principal"):
            data = self.client.hgetall(self._key("principal", principal_id))
        if not data:
            return None
        return PrincipalRecord(
            principal=Principal(
                id=data["id"],
                email=data["email"],
                role=Role.parse(data["role"]),
                tenant_id=data["tenant_id"],
            ),
            password_hash=data.get("password_hash") or None,
            is_active=data.get("is_active") == "1",
        )

    def get_principal_by_email(self, email: str) -> Optional[PrincipalRecord]:
        with self._store_call("get_principal_by_email"):
            principal_id = self.client.get(
                self._key("principal_email", normalize_identifier(email))
            )
        if not principal_id:
            return None
        return self.get_principal(principal_id)

    def set_password_hash(self, principal_id: str, password_hash: str) -> bool:
        principal_key = self._key("principal", principal_id)
        with self._store_call("set_password_hash"):
            if not self.client.exists(principal_key):
                return False
            self.client.hset(principal_key, "password_hash", password_hash)
        return True

    # =========================================================================
    # OTP records
    # =========================================================================

    def put_otp(self, record: OTPRecord) -> None:
        """Store a record, replacing any prior record for the identifier."""
        key = self._otp_key(record.identifier)
        expires_ts = to_timestamp(record.expires_at)
        with self._store_call("put_otp"):
            pipe = self.client.pipeline(transaction=True)
            pipe.delete(key)
            pipe.hset(
                key,
                mapping={
                    "identifier": record.identifier,
                    "code_hash": record.code_hash,
                    "created_at": repr(to_timestamp(record.created_at)),
                    "expires_at": repr(expires_ts),
                    "attempt_count": str(record.attempt_count),
                    "consumed": "1" if record.consumed else "0",
                },
            )
            pipe.expireat(key, math.ceil(expires_ts) + self.RECORD_GRACE_SECONDS)
            pipe.zadd(self._key("index", "otp"), {key: expires_ts})
            pipe.execute()

    def get_otp(self, identifier: str) -> Optional[OTPRecord]:
        with self._store_call("get_otp"):
            data = self.client.hgetall(self._otp_key(identifier))
        if not data:
            return None
        return OTPRecord(
            identifier=data["identifier"],
            code_hash=data["code_hash"],
            created_at=from_timestamp(data["created_at"]),
            expires_at=from_timestamp(data["expires_at"]),
            attempt_count=int(data["attempt_count"]),
            consumed=data["consumed"] == "1",
        )

    def consume_otp(
        self, identifier: str, code_hash: str, *, now: datetime, max_attempts: int
    ) -> OTPOutcome:
        """Run one verify transition atomically for ``identifier``."""
        with self._store_call("consume_otp"):
            result = self._consume_otp(
                keys=[self._otp_key(identifier)],
                args=[repr(to_timestamp(now)), code_hash, max_attempts],
            )
        return OTPOutcome(result)

    def purge_expired_otps(self, now: datetime) -> int:
        return self._purge_indexed(self._key("index", "otp"), "expires_at", now)

    def _purge_indexed(self, index_key: str, deadline_field: str, now: datetime) -> int:
        now_ts = to_timestamp(now)
        purged = 0
        with self._store_call("purge"):
            candidates = self.client.zrangebyscore(index_key, "-inf", f"({now_ts!r}")
            for key in candidates:
                purged += int(
                    self._purge_if_dead(
                        keys=[key, index_key], args=[repr(now_ts), deadline_field]
                    )
                )
        return purged

    # =========================================================================
    # Revocations
    # =========================================================================

    def add_revocation(self, entry: RevokedTokenEntry) -> bool:
        """Insert if absent. Returns True when the entry was newly inserted."""
        with self._store_call("add_revocation"):
            inserted = self._add_revocation(
                keys=[
                    self._revocation_key(entry.token_hash),
                    self._key("index", "revoked"),
                ],
                args=[
                    repr(to_timestamp(entry.revoked_at)),
                    repr(to_timestamp(entry.purge_after)),
                    self.RECORD_GRACE_SECONDS,
                ],
            )
        return bool(int(inserted))

    def is_revoked(self, token_hash: str) -> bool:
        with self._store_call("is_revoked"):
            return bool(self.client.exists(self._revocation_key(token_hash)))

    def purge_revocations(self, now: datetime) -> int:
        return self._purge_indexed(self._key("index", "revoked"), "purge_after", now)

    # =========================================================================
    # Failed attempts
    # =========================================================================

    def record_failed_attempt(self, attempt: FailedAttempt) -> None:
        key = self._attempts_key(attempt.identifier, attempt.action)
        occurred_ts = to_timestamp(attempt.occurred_at)
        member = json.dumps(
            {
                "id": generate_uuid(),
                "ip_address": attempt.ip_address,
                "user_agent": attempt.user_agent,
            },
            separators=(",", ":"),
        )
        with self._store_call("record_failed_attempt"):
            pipe = self.client.pipeline(transaction=True)
            pipe.zadd(key, {member: occurred_ts})
            pipe.sadd(self._key("index", "failed"), key)
            pipe.execute()

    def count_failed_attempts(
        self, identifier: str, action: AttemptAction, since: datetime
    ) -> int:
        with self._store_call("count_failed_attempts"):
            return int(
                self.client.zcount(
                    self._attempts_key(identifier, action),
                    to_timestamp(since),
                    "+inf",
                )
            )

    def purge_failed_attempts(self, before: datetime) -> int:
        index_key = self._key("index", "failed")
        before_ts = repr(to_timestamp(before))
        purged = 0
        with self._store_call("purge_failed_attempts"):
            for key in self.client.smembers(index_key):
                purged += int(
                    self._purge_attempts(keys=[key, index_key], args=[before_ts])
                )
        return purged
