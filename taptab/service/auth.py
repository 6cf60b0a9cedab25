from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from taptab.config import Settings
from taptab.logging import get_logger, log_audit_event
from taptab.service.cleanup import CleanupBackend, CleanupJob, CleanupReport
from taptab.service.delivery import CodeSender, LoggingCodeSender
from taptab.service.errors import (
    AuthenticationError,
    InvalidCredentialsError,
    MalformedTokenError,
    RateLimitedError,
    ServerError,
    TokenRevokedError,
)
from taptab.service.otp import OTPBackend, OTPService, raise_for_outcome
from taptab.service.passwords import PasswordVerifier
from taptab.service.rate_limit import AttemptBackend, FailedAttemptLimiter
from taptab.service.revocation import RevocationBackend, RevocationList
from taptab.service.tokens import (
    TokenClaims,
    TokenIssuer,
    TokenKind,
    TokenPair,
    TokenVerifier,
)
from taptab.storage.common import normalize_identifier, utcnow
from taptab.storage.models import AttemptAction, OTPOutcome, Principal, PrincipalRecord

logger = get_logger(__name__)


class PrincipalDirectory(Protocol):
    def get_principal(self, principal_id: str) -> Optional[PrincipalRecord]: ...

    def get_principal_by_email(self, email: str) -> Optional[PrincipalRecord]: ...

    def set_password_hash(self, principal_id: str, password_hash: str) -> bool: ...


class CredentialStore(
    OTPBackend,
    RevocationBackend,
    AttemptBackend,
    CleanupBackend,
    PrincipalDirectory,
    Protocol,
):
    def verify_connection(self) -> None: ...


class AuthService:
    """Token, OTP and password login flows over a single credential store."""

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        sender: Optional[CodeSender] = None,
        passwords: Optional[PasswordVerifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store: CredentialStore = store
        self.settings = settings
        self.sender: CodeSender = sender or LoggingCodeSender()
        self.passwords = passwords or PasswordVerifier()
        self._clock = clock or utcnow
        self.revocations = RevocationList(store, clock=self._clock)
        self.issuer = TokenIssuer(settings, clock=self._clock)
        self.verifier = TokenVerifier(settings, self.revocations, clock=self._clock)
        self.otp = OTPService(store, settings, clock=self._clock)
        self.limiter = FailedAttemptLimiter(store, settings, clock=self._clock)
        self.cleanup = CleanupJob(
            store,
            failed_attempt_retention=timedelta(days=settings.failed_attempt_retention_days),
            clock=self._clock,
        )
        self.logger = logger

    # =========================================================================
    # Tokens
    # =========================================================================

    def issue_token_pair(self, principal: Principal, remember_me: bool = False) -> TokenPair:
        return self.issuer.issue_pair(principal, remember_me=remember_me)

    def verify_access_token(self, token: str) -> TokenClaims:
        return self.verifier.verify(token, TokenKind.ACCESS)

    def verify_refresh_token(self, token: str) -> TokenClaims:
        return self.verifier.verify(token, TokenKind.REFRESH)

    def authenticate(self, authorization: Optional[str]) -> TokenClaims:
        """Resolve a ``Bearer`` Authorization header to verified access claims."""
        token = self.extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer token")
        return self.verify_access_token(token)

    def revoke(self, token: str, ttl_seconds: Optional[int] = None) -> bool:
        """Revoke a token before its natural expiry.

        The signature is checked first so forged tokens cannot grow the
        denylist. Expired tokens are accepted and ignored.
        """
        claims = self.verifier.decode_signed(token)
        return self.revocations.revoke(claims, ttl_seconds=ttl_seconds)

    def logout(
        self, access_token: Optional[str] = None, refresh_token: Optional[str] = None
    ) -> int:
        """Revoke every presented token that carries a valid signature.

        Unreadable tokens are skipped so one bad token cannot keep its
        partner alive. Fails only when nothing presented could be decoded.
        """
        decoded = []
        rejected: list[MalformedTokenError] = []
        for token in (access_token, refresh_token):
            if not token:
                continue
            try:
                decoded.append(self.verifier.decode_signed(token))
            except MalformedTokenError as exc:
                rejected.append(exc)
        if not decoded:
            log_audit_event("logout", False, reason="no_readable_token")
            if rejected:
                raise rejected[0]
            raise AuthenticationError("no token presented")

        revoked = sum(1 for claims in decoded if self.revocations.revoke(claims))
        log_audit_event(
            "logout",
            True,
            principal_id=decoded[0].principal.id,
            revoked=revoked,
            skipped=len(rejected),
        )
        return revoked

    def refresh(self, refresh_token: str) -> tuple[Principal, TokenPair]:
        """Rotate a refresh token into a new pair of the same remember-me class.

        The presented token is revoked with insert-if-absent semantics, so a
        replayed or concurrently presented token rotates at most once.
        """
        claims = self.verify_refresh_token(refresh_token)
        principal = self._current_principal(claims.principal)
        purge_after = max(claims.expires_at, self._clock())
        if not self.revocations.add(claims.token_id, purge_after):
            log_audit_event(
                "token_refresh", False, principal_id=principal.id, reason="replayed"
            )
            raise TokenRevokedError("refresh token already used")
        pair = self.issue_token_pair(principal, remember_me=claims.remember_me)
        log_audit_event(
            "token_refresh", True, principal_id=principal.id, remember_me=pair.remember_me
        )
        return principal, pair

    def _current_principal(self, claimed: Principal) -> Principal:
        record = self.store.get_principal(claimed.id)
        if not record or not record.is_active:
            raise InvalidCredentialsError("principal no longer active")
        if record.principal.tenant_id != claimed.tenant_id:
            raise InvalidCredentialsError("principal tenant changed")
        return record.principal

    def extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    # =========================================================================
    # One-time codes
    # =========================================================================

    def request_otp(
        self,
        identifier: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Generate and deliver a code. The code never leaves this method otherwise.

        Unknown or inactive identifiers get the same silent success as real
        ones so the endpoint cannot be used to enumerate accounts.
        """
        identifier = normalize_identifier(identifier)
        try:
            self.limiter.check(identifier, AttemptAction.OTP_REQUEST)
        except RateLimitedError:
            log_audit_event(
                "otp_request", False, identifier=identifier, reason="rate_limited",
                ip_address=ip_address,
            )
            raise
        self.limiter.record(
            identifier, AttemptAction.OTP_REQUEST, ip_address=ip_address, user_agent=user_agent
        )
        record = self.store.get_principal_by_email(identifier)
        if not record or not record.is_active:
            log_audit_event(
                "otp_request", False, identifier=identifier,
                reason="unknown_or_inactive", ip_address=ip_address,
            )
            return
        code = self.otp.request(identifier)
        try:
            self.sender.send_code(identifier, code)
        except Exception as exc:
            log_audit_event(
                "otp_delivery", False, identifier=identifier,
                error_type=type(exc).__name__, ip_address=ip_address,
            )
            raise ServerError("code generated but delivery failed; request a new code") from exc
        log_audit_event(
            "otp_generated", True, identifier=identifier,
            tenant_id=record.principal.tenant_id, ip_address=ip_address,
        )

    def check_otp(self, identifier: str, code: str) -> OTPOutcome:
        return self.otp.verify(identifier, code)

    def verify_otp(self, identifier: str, code: str) -> bool:
        return self.check_otp(identifier, code) is OTPOutcome.VERIFIED

    def login_with_otp(
        self,
        identifier: str,
        code: str,
        *,
        remember_me: bool = False,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> tuple[Principal, TokenPair]:
        identifier = normalize_identifier(identifier)
        self.limiter.check(identifier, AttemptAction.OTP_VERIFY)
        outcome = self.check_otp(identifier, code)
        if outcome is not OTPOutcome.VERIFIED:
            self.limiter.record(
                identifier, AttemptAction.OTP_VERIFY, ip_address=ip_address, user_agent=user_agent
            )
            log_audit_event(
                "otp_verify", False, identifier=identifier, reason=outcome.value,
                ip_address=ip_address,
            )
            raise_for_outcome(outcome)
        record = self.store.get_principal_by_email(identifier)
        if not record or not record.is_active:
            log_audit_event(
                "otp_verify", False, identifier=identifier, reason="unknown_or_inactive",
                ip_address=ip_address,
            )
            raise InvalidCredentialsError("invalid credentials")
        pair = self.issue_token_pair(record.principal, remember_me=remember_me)
        log_audit_event(
            "login_success", True, identifier=identifier, method="otp",
            principal_id=record.principal.id, remember_me=remember_me, ip_address=ip_address,
        )
        return record.principal, pair

    # =========================================================================
    # Passwords
    # =========================================================================

    def login_with_password(
        self,
        identifier: str,
        password: str,
        *,
        remember_me: bool = False,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> tuple[Principal, TokenPair]:
        identifier = normalize_identifier(identifier)
        self.limiter.check(identifier, AttemptAction.LOGIN)
        record = self.store.get_principal_by_email(identifier)
        # Always run one argon2 verification, even for unknown identifiers
        valid = self.passwords.verify(password, record.password_hash if record else None)
        if not record or not valid or not record.is_active:
            self.limiter.record(
                identifier, AttemptAction.LOGIN, ip_address=ip_address, user_agent=user_agent
            )
            log_audit_event(
                "password_login", False, identifier=identifier, ip_address=ip_address,
            )
            raise InvalidCredentialsError("invalid credentials")
        if self.passwords.needs_rehash(record.password_hash):
            self.store.set_password_hash(record.principal.id, self.passwords.hash(password))
            self.logger.info("password_rehashed", principal_id=record.principal.id)
        pair = self.issue_token_pair(record.principal, remember_me=remember_me)
        log_audit_event(
            "login_success", True, identifier=identifier, method="password",
            principal_id=record.principal.id, remember_me=remember_me, ip_address=ip_address,
        )
        return record.principal, pair

    # =========================================================================
    # Maintenance
    # =========================================================================

    def run_cleanup(self) -> CleanupReport:
        return self.cleanup.run()
