"""
tests/test_tokens.py -- Unit tests for auth/tokens.py.

Covers:
  - bcrypt hash/verify, including a malformed stored hash
  - Recovery token and code shapes
  - TokenService: claim round trip, expiry, typ separation between access and
    refresh tokens, secret validation
"""

from __future__ import annotations

import pytest

from auth.errors import AccessTokenExpired, InvalidAccessToken, InvalidRefreshToken, RefreshTokenExpired
from auth.models import Principal, Tier
from auth.tokens import (
    TokenService,
    dummy_hash,
    generate_recovery_code,
    generate_recovery_token,
    hash_password,
    verify_password,
)

ACCESS = "access-secret-" + "x" * 32
REFRESH = "refresh-secret-" + "y" * 32


def _principal(**overrides) -> Principal:
    fields = dict(
        id="p-1",
        email="Alice@Example.com",
        name="Alice",
        tier=Tier.ADMIN,
        hashed_password="unused",
        tenant_id="t-1",
    )
    fields.update(overrides)
    return Principal(**fields)


class TestPasswords:
    def test_hash_then_verify(self):
        hashed = hash_password("s3cret", rounds=4)
        assert hashed != "s3cret"
        assert verify_password("s3cret", hashed)
        assert not verify_password("wrong", hashed)

    def test_malformed_hash_is_a_mismatch(self):
        assert verify_password("anything", "not-a-bcrypt-hash") is False

    def test_dummy_hash_rejects_everything(self):
        assert not verify_password("", dummy_hash())
        assert not verify_password("password", dummy_hash())


class TestRecoverySecrets:
    def test_token_is_64_hex_chars(self):
        token = generate_recovery_token()
        assert len(token) == 64
        int(token, 16)

    def test_tokens_are_unique(self):
        assert generate_recovery_token() != generate_recovery_token()

    def test_code_is_six_digits(self):
        for _ in range(50):
            code = generate_recovery_code()
            assert len(code) == 6
            assert 100000 <= int(code) <= 999999


class TestTokenService:
    """Access and refresh tokens carry the same claims but never validate as each other."""

    def test_access_round_trip(self):
        service = TokenService(ACCESS, REFRESH)
        pair = service.issue(_principal())
        payload = service.verify_access(pair.access_token)
        assert payload.principal_id == "p-1"
        assert payload.email == "alice@example.com"
        assert payload.tier is Tier.ADMIN
        assert payload.tenant_id == "t-1"
        assert payload.expires_at > payload.issued_at

    def test_root_token_has_no_tenant(self):
        service = TokenService(ACCESS, REFRESH)
        pair = service.issue(_principal(tier=Tier.ROOT, tenant_id=None))
        assert service.verify_refresh(pair.refresh_token).tenant_id is None

    def test_pairs_are_distinct(self):
        service = TokenService(ACCESS, REFRESH)
        first = service.issue(_principal())
        second = service.issue(_principal())
        assert first.access_token != second.access_token
        assert first.refresh_token != second.refresh_token

    def test_access_token_rejected_as_refresh(self):
        service = TokenService(ACCESS, REFRESH)
        pair = service.issue(_principal())
        with pytest.raises(InvalidRefreshToken):
            service.verify_refresh(pair.access_token)

    def test_refresh_token_rejected_as_access(self):
        service = TokenService(ACCESS, REFRESH)
        pair = service.issue(_principal())
        with pytest.raises(InvalidAccessToken):
            service.verify_access(pair.refresh_token)

    def test_typ_claim_checked_even_with_shared_knowledge_of_secret(self):
        """A refresh-typed token signed with the access secret is still not an access token."""
        forged = TokenService(ACCESS, "another-secret-" + "z" * 32)
        token = forged._encode(_principal(), "refresh", ACCESS, 60)
        with pytest.raises(InvalidAccessToken):
            TokenService(ACCESS, REFRESH).verify_access(token)

    def test_expired_access_token(self):
        service = TokenService(ACCESS, REFRESH, access_expire_seconds=-10)
        pair = service.issue(_principal())
        with pytest.raises(AccessTokenExpired) as exc_info:
            service.verify_access(pair.access_token)
        assert exc_info.value.code == "ACCESS_TOKEN_EXPIRED"

    def test_expired_refresh_token(self):
        service = TokenService(ACCESS, REFRESH, refresh_expire_seconds=-10)
        pair = service.issue(_principal())
        with pytest.raises(RefreshTokenExpired):
            service.verify_refresh(pair.refresh_token)

    def test_garbage_token(self):
        service = TokenService(ACCESS, REFRESH)
        with pytest.raises(InvalidAccessToken):
            service.verify_access("not.a.jwt")

    def test_other_service_secret_rejected(self):
        pair = TokenService("other-access-" + "q" * 32, REFRESH).issue(_principal())
        with pytest.raises(InvalidAccessToken):
            TokenService(ACCESS, REFRESH).verify_access(pair.access_token)

    def test_same_secret_for_both_kinds_is_refused(self):
        with pytest.raises(ValueError):
            TokenService(ACCESS, ACCESS)

    def test_missing_secret_is_refused(self):
        with pytest.raises(ValueError):
            TokenService("", REFRESH)
