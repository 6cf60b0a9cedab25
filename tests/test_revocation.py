"""Tests for the token revocation list."""

from datetime import timedelta

import pytest

from taptab.service.revocation import RevocationList
from taptab.service.tokens import TokenIssuer, TokenKind
from taptab.storage.common import fingerprint


@pytest.fixture
def revocations(store, clock):
    return RevocationList(store, clock=clock)


@pytest.fixture
def claims(settings, principal, clock):
    _, claims = TokenIssuer(settings, clock=clock).issue(principal, TokenKind.REFRESH)
    return claims


class TestRevocationList:
    """Insert-if-absent semantics and retention."""

    def test_add_is_insert_if_absent(self, revocations, clock):
        purge_after = clock() + timedelta(hours=1)

        assert revocations.add("jti-1", purge_after) is True
        assert revocations.add("jti-1", purge_after) is False
        assert revocations.contains("jti-1")
        assert not revocations.contains("jti-2")

    def test_only_fingerprint_is_stored(self, revocations, store, clock):
        revocations.add("jti-secret", clock() + timedelta(hours=1))

        assert "jti-secret" not in store.revocations
        assert fingerprint("jti-secret") in store.revocations

    def test_revoke_keeps_entry_until_token_expiry(self, revocations, store, claims):
        assert revocations.revoke(claims) is True

        entry = store.revocations[fingerprint(claims.token_id)]
        assert entry.purge_after == claims.expires_at

    def test_ttl_can_extend_but_not_shorten_retention(self, revocations, store, claims, clock):
        revocations.revoke(claims, ttl_seconds=60)
        entry = store.revocations[fingerprint(claims.token_id)]
        assert entry.purge_after == claims.expires_at

        revocations.revoke(claims, ttl_seconds=30 * 24 * 3600)
        entry = store.revocations[fingerprint(claims.token_id)]
        assert entry.purge_after == clock() + timedelta(days=30)

    def test_revoking_expired_token_is_noop(self, revocations, store, claims, clock):
        clock.advance(days=8)

        assert revocations.revoke(claims) is False
        assert store.revocations == {}

    def test_expired_token_with_ttl_is_recorded(self, revocations, claims, clock):
        clock.advance(days=8)

        assert revocations.revoke(claims, ttl_seconds=3600) is True
        assert revocations.contains(claims.token_id)

    def test_double_revoke_reports_once(self, revocations, claims):
        assert revocations.revoke(claims) is True
        assert revocations.revoke(claims) is False
