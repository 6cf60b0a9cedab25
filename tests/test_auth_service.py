"""Tests for the AuthService flows.

Covers:
- Password login, including the unknown-user path and rehashing
- OTP request/verify login and per-action limits
- Refresh rotation and replay detection
- Logout and explicit revocation
- Failing closed when the store is unreachable
"""

import dataclasses
import threading

import pytest
from argon2 import PasswordHasher, Type

from taptab.service.auth import AuthService
from taptab.service.errors import (
    AuthenticationError,
    InvalidCredentialsError,
    MalformedTokenError,
    OTPInvalidError,
    OTPLockedError,
    OTPNotFoundError,
    RateLimitedError,
    ServerError,
    TokenExpiredError,
    TokenRevokedError,
    WrongTokenKindError,
)
from taptab.storage.errors import StoreUnavailableError
from taptab.storage.memory import MemoryStore
from taptab.storage.models import Role

PASSWORD = "CorrectHorse9!"


class UnreachableRevocationStore(MemoryStore):
    """Memory store whose revocation lookups fail like a dropped connection."""

    def is_revoked(self, token_hash: str) -> bool:
        raise StoreUnavailableError("credential store unavailable", {"operation": "is_revoked"})


class FailingSender:
    def send_code(self, identifier: str, code: str) -> None:
        raise ConnectionError("smtp relay refused connection")


def _wrong(code: str) -> str:
    return "0" * len(code) if code != "0" * len(code) else "1" * len(code)


class TestPasswordLogin:
    """login_with_password outcomes."""

    def test_success_issues_pair(self, auth_service, registered_principal):
        principal, pair = auth_service.login_with_password(registered_principal.email, PASSWORD)

        assert principal == registered_principal
        claims = auth_service.verify_access_token(pair.access_token)
        assert claims.principal == registered_principal
        assert claims.remember_me is False

    def test_remember_me_extends_lifetimes(self, auth_service, registered_principal, clock):
        _, pair = auth_service.login_with_password(
            registered_principal.email, PASSWORD, remember_me=True
        )

        assert (pair.access_expires_at - clock()).days == 30
        assert (pair.refresh_expires_at - clock()).days == 210

    def test_wrong_password_records_attempt(self, auth_service, registered_principal, store):
        with pytest.raises(InvalidCredentialsError) as excinfo:
            auth_service.login_with_password(registered_principal.email, "nope", ip_address="10.1.2.3")

        assert excinfo.value.error_code == "invalid_credentials"
        attempts = store.failed_attempts[(registered_principal.email, "login")]
        assert len(attempts) == 1
        assert attempts[0].ip_address == "10.1.2.3"

    def test_unknown_email_is_indistinguishable(self, auth_service):
        with pytest.raises(InvalidCredentialsError) as excinfo:
            auth_service.login_with_password("ghost@example.com", PASSWORD)
        assert excinfo.value.message == "invalid credentials"

    def test_inactive_principal_rejected(self, auth_service, store, passwords, principal):
        store.save_principal(principal, password_hash=passwords.hash(PASSWORD), is_active=False)

        with pytest.raises(InvalidCredentialsError):
            auth_service.login_with_password(principal.email, PASSWORD)

    def test_rate_limited_after_failures(self, auth_service, registered_principal):
        for _ in range(20):
            with pytest.raises(InvalidCredentialsError):
                auth_service.login_with_password(registered_principal.email, "nope")

        with pytest.raises(RateLimitedError):
            auth_service.login_with_password(registered_principal.email, PASSWORD)

    def test_outdated_hash_is_upgraded(self, auth_service, store, principal, passwords):
        legacy = PasswordHasher(time_cost=2, memory_cost=16, parallelism=1, type=Type.ID)
        store.save_principal(principal, password_hash=legacy.hash(PASSWORD))

        auth_service.login_with_password(principal.email, PASSWORD)

        upgraded = store.get_principal(principal.id).password_hash
        assert not passwords.needs_rehash(upgraded)
        assert passwords.verify(PASSWORD, upgraded)


class TestOTPLogin:
    """request_otp / login_with_otp flows."""

    def test_code_delivered_and_exchanged(self, auth_service, registered_principal, sender):
        auth_service.request_otp(registered_principal.email)
        assert sender.sent[0][0] == registered_principal.email

        principal, pair = auth_service.login_with_otp(
            registered_principal.email, sender.last_code, remember_me=True
        )

        assert principal == registered_principal
        assert pair.remember_me is True
        assert auth_service.verify_refresh_token(pair.refresh_token).remember_me is True

    def test_unknown_email_silently_ignored(self, auth_service, sender, store):
        auth_service.request_otp("ghost@example.com")

        assert sender.sent == []
        assert store.get_otp("ghost@example.com") is None
        assert len(store.failed_attempts[("ghost@example.com", "otp_request")]) == 1

    def test_inactive_principal_gets_no_code(self, auth_service, store, principal, sender):
        store.save_principal(principal, is_active=False)

        auth_service.request_otp(principal.email)

        assert sender.sent == []

    def test_requests_are_rate_limited(self, auth_service, registered_principal):
        for _ in range(5):
            auth_service.request_otp(registered_principal.email)

        with pytest.raises(RateLimitedError) as excinfo:
            auth_service.request_otp(registered_principal.email)
        assert excinfo.value.detail["action"] == "otp_request"

    def test_delivery_failure_raises_server_error(self, store, settings, passwords, clock, registered_principal):
        service = AuthService(
            store, settings, sender=FailingSender(), passwords=passwords, clock=clock
        )

        with pytest.raises(ServerError) as excinfo:
            service.request_otp(registered_principal.email)
        assert isinstance(excinfo.value.__cause__, ConnectionError)

    def test_wrong_code_records_attempt(self, auth_service, registered_principal, sender, store):
        auth_service.request_otp(registered_principal.email)

        with pytest.raises(OTPInvalidError):
            auth_service.login_with_otp(registered_principal.email, _wrong(sender.last_code))

        assert len(store.failed_attempts[(registered_principal.email, "otp_verify")]) == 1

    def test_lockout_maps_to_locked_error(self, auth_service, registered_principal, sender):
        auth_service.request_otp(registered_principal.email)
        code = sender.last_code
        for _ in range(5):
            with pytest.raises(OTPInvalidError):
                auth_service.login_with_otp(registered_principal.email, _wrong(code))

        with pytest.raises(OTPLockedError) as excinfo:
            auth_service.login_with_otp(registered_principal.email, code)
        assert excinfo.value.status_code == 423

    def test_no_code_requested(self, auth_service, registered_principal):
        with pytest.raises(OTPNotFoundError):
            auth_service.login_with_otp(registered_principal.email, "123456")

    def test_verify_otp_boolean(self, auth_service, registered_principal, sender):
        auth_service.request_otp(registered_principal.email)

        assert auth_service.verify_otp(registered_principal.email, sender.last_code) is True
        assert auth_service.verify_otp(registered_principal.email, sender.last_code) is False

    def test_deactivated_between_request_and_verify(self, auth_service, store, registered_principal, sender):
        auth_service.request_otp(registered_principal.email)
        store.save_principal(registered_principal, is_active=False)

        with pytest.raises(InvalidCredentialsError):
            auth_service.login_with_otp(registered_principal.email, sender.last_code)


class TestRefresh:
    """Refresh rotation."""

    def test_rotation_issues_new_pair(self, auth_service, registered_principal):
        pair = auth_service.issue_token_pair(registered_principal)

        principal, rotated = auth_service.refresh(pair.refresh_token)

        assert principal == registered_principal
        assert rotated.refresh_token != pair.refresh_token
        auth_service.verify_access_token(rotated.access_token)

    def test_replay_is_rejected(self, auth_service, registered_principal):
        pair = auth_service.issue_token_pair(registered_principal)
        auth_service.refresh(pair.refresh_token)

        with pytest.raises(TokenRevokedError):
            auth_service.refresh(pair.refresh_token)

    def test_concurrent_refresh_rotates_once(self, auth_service, registered_principal):
        pair = auth_service.issue_token_pair(registered_principal)
        barrier = threading.Barrier(10)
        outcomes = []
        outcomes_lock = threading.Lock()

        def worker():
            barrier.wait()
            try:
                auth_service.refresh(pair.refresh_token)
                result = "ok"
            except TokenRevokedError:
                result = "revoked"
            with outcomes_lock:
                outcomes.append(result)

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert outcomes.count("ok") == 1
        assert outcomes.count("revoked") == 9

    def test_remember_me_class_is_kept(self, auth_service, registered_principal, clock):
        pair = auth_service.issue_token_pair(registered_principal, remember_me=True)
        clock.advance(days=40)

        _, rotated = auth_service.refresh(pair.refresh_token)

        assert rotated.remember_me is True
        assert (rotated.refresh_expires_at - clock()).days == 210

    def test_access_token_cannot_refresh(self, auth_service, registered_principal):
        pair = auth_service.issue_token_pair(registered_principal)

        with pytest.raises(WrongTokenKindError):
            auth_service.refresh(pair.access_token)

    def test_expired_refresh_rejected(self, auth_service, registered_principal, clock):
        pair = auth_service.issue_token_pair(registered_principal)
        clock.advance(days=8)

        with pytest.raises(TokenExpiredError):
            auth_service.refresh(pair.refresh_token)

    def test_role_change_applies_on_refresh(self, auth_service, store, registered_principal):
        pair = auth_service.issue_token_pair(registered_principal)
        promoted = dataclasses.replace(registered_principal, role=Role.MANAGER)
        store.save_principal(promoted)

        principal, rotated = auth_service.refresh(pair.refresh_token)

        assert principal.role is Role.MANAGER
        assert auth_service.verify_access_token(rotated.access_token).principal.role is Role.MANAGER

    def test_deactivated_principal_cannot_refresh(self, auth_service, store, registered_principal):
        pair = auth_service.issue_token_pair(registered_principal)
        store.save_principal(registered_principal, is_active=False)

        with pytest.raises(InvalidCredentialsError):
            auth_service.refresh(pair.refresh_token)

    def test_tenant_change_invalidates_refresh(self, auth_service, store, registered_principal):
        pair = auth_service.issue_token_pair(registered_principal)
        store.save_principal(dataclasses.replace(registered_principal, tenant_id="tenant-2"))

        with pytest.raises(InvalidCredentialsError):
            auth_service.refresh(pair.refresh_token)


class TestLogoutAndRevoke:
    """Explicit revocation paths."""

    def test_logout_revokes_both_tokens(self, auth_service, registered_principal):
        pair = auth_service.issue_token_pair(registered_principal)

        assert auth_service.logout(pair.access_token, pair.refresh_token) == 2

        with pytest.raises(TokenRevokedError):
            auth_service.verify_access_token(pair.access_token)
        with pytest.raises(TokenRevokedError):
            auth_service.refresh(pair.refresh_token)

    def test_logout_twice_revokes_nothing_new(self, auth_service, registered_principal):
        pair = auth_service.issue_token_pair(registered_principal)
        auth_service.logout(pair.access_token, pair.refresh_token)

        assert auth_service.logout(pair.access_token, pair.refresh_token) == 0

    def test_logout_with_forged_token(self, auth_service):
        with pytest.raises(MalformedTokenError):
            auth_service.logout(access_token="forged.token.value")

    def test_garbage_access_token_does_not_shield_refresh(self, auth_service, registered_principal):
        pair = auth_service.issue_token_pair(registered_principal)

        assert auth_service.logout(access_token="garbage", refresh_token=pair.refresh_token) == 1

        with pytest.raises(TokenRevokedError):
            auth_service.verify_refresh_token(pair.refresh_token)

    def test_garbage_refresh_token_still_revokes_access(self, auth_service, registered_principal):
        pair = auth_service.issue_token_pair(registered_principal)

        assert auth_service.logout(access_token=pair.access_token, refresh_token="a.b.c") == 1

        with pytest.raises(TokenRevokedError):
            auth_service.verify_access_token(pair.access_token)

    def test_logout_without_tokens(self, auth_service):
        with pytest.raises(AuthenticationError):
            auth_service.logout()

    def test_revoke_expired_token_is_noop(self, auth_service, registered_principal, clock, store):
        pair = auth_service.issue_token_pair(registered_principal)
        clock.advance(days=2)

        assert auth_service.revoke(pair.access_token) is False
        assert store.revocations == {}

    def test_revoke_with_ttl(self, auth_service, registered_principal):
        pair = auth_service.issue_token_pair(registered_principal)

        assert auth_service.revoke(pair.access_token, ttl_seconds=60) is True
        with pytest.raises(TokenRevokedError):
            auth_service.verify_access_token(pair.access_token)


class TestAuthenticate:
    """Bearer header handling."""

    def test_valid_bearer(self, auth_service, registered_principal):
        pair = auth_service.issue_token_pair(registered_principal)

        claims = auth_service.authenticate(f"Bearer {pair.access_token}")

        assert claims.principal == registered_principal

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer ", "Bearer"])
    def test_missing_bearer(self, auth_service, header):
        with pytest.raises(AuthenticationError) as excinfo:
            auth_service.authenticate(header)
        assert excinfo.value.error_code == "unauthorized"

    def test_refresh_token_not_accepted_as_bearer(self, auth_service, registered_principal):
        pair = auth_service.issue_token_pair(registered_principal)

        with pytest.raises(WrongTokenKindError):
            auth_service.authenticate(f"Bearer {pair.refresh_token}")


class TestStoreOutage:
    """Storage failures must never let a token through."""

    def test_verify_fails_closed(self, settings, passwords, clock, principal):
        service = AuthService(
            UnreachableRevocationStore(), settings, passwords=passwords, clock=clock
        )
        pair = service.issue_token_pair(principal)

        with pytest.raises(StoreUnavailableError) as excinfo:
            service.verify_access_token(pair.access_token)
        assert excinfo.value.retryable is True

    def test_cleanup_reports_counts(self, auth_service, registered_principal, sender, clock):
        auth_service.request_otp(registered_principal.email)
        clock.advance(seconds=301)

        report = auth_service.run_cleanup()

        assert report.purged_otps == 1
