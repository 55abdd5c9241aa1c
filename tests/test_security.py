"""Tests for password hashing and the two-key token codec."""

from datetime import timedelta

import jwt
import pytest

from auditportal.core.errors import InvalidOrExpiredToken
from auditportal.core.security import PasswordHasher, TokenCodec

from conftest import FakeClock

ACCESS_KEY = "access-signing-key-for-unit-tests-0001"
REFRESH_KEY = "refresh-signing-key-for-unit-tests-0002"


@pytest.fixture
def codec(clock):
    return TokenCodec(
        ACCESS_KEY,
        REFRESH_KEY,
        access_ttl=timedelta(minutes=15),
        refresh_ttl=timedelta(days=7),
        clock=clock,
    )


class TestPasswordHasher:

    def test_hash_and_verify(self, hasher):
        digest = hasher.hash("s3cret-Pass!")
        assert digest != "s3cret-Pass!"
        assert hasher.verify("s3cret-Pass!", digest)
        assert not hasher.verify("wrong", digest)

    def test_same_password_gets_fresh_salt(self, hasher):
        assert hasher.hash("same-password") != hasher.hash("same-password")

    def test_cost_factor_is_configurable(self):
        digest = PasswordHasher(rounds=5).hash("pw")
        assert digest.startswith("$2b$05$")

    def test_unusable_hash_is_a_mismatch(self, hasher):
        assert not hasher.verify("pw", "")
        assert not hasher.verify("pw", "not-a-bcrypt-hash")

    def test_dummy_verify_returns_nothing(self, hasher):
        assert hasher.dummy_verify("anything") is None


class TestTokenCodec:

    def test_round_trip_access(self, codec):
        token = codec.issue_access_token({"userId": "u1", "firmId": "f1"})
        claims = codec.verify_access_token(token)
        assert claims["userId"] == "u1"
        assert claims["firmId"] == "f1"
        assert claims["tokenUse"] == "access"
        assert "jti" in claims

    def test_tokens_issued_in_same_instant_differ(self, codec):
        assert codec.issue_refresh_token({"userId": "u1"}) != codec.issue_refresh_token({"userId": "u1"})

    def test_refresh_token_rejected_as_access_token(self, codec):
        refresh = codec.issue_refresh_token({"userId": "u1"})
        with pytest.raises(InvalidOrExpiredToken):
            codec.verify_access_token(refresh)

    def test_access_token_rejected_as_refresh_token(self, codec):
        access = codec.issue_access_token({"userId": "u1"})
        with pytest.raises(InvalidOrExpiredToken):
            codec.verify_refresh_token(access)

    def test_secrets_are_isolated_even_with_forged_token_use(self, codec, clock):
        # Correct claim shape, signed with the refresh key
        forged = codec.sign({"userId": "u1", "tokenUse": "access"}, REFRESH_KEY, timedelta(minutes=5))
        with pytest.raises(InvalidOrExpiredToken):
            codec.verify_access_token(forged)
        assert codec.verify(forged, REFRESH_KEY)["userId"] == "u1"

    def test_expiry_uses_injected_clock(self, codec, clock):
        token = codec.issue_access_token({"userId": "u1"})
        clock.advance(minutes=14, seconds=59)
        assert codec.verify_access_token(token)["userId"] == "u1"
        clock.advance(seconds=1)
        with pytest.raises(InvalidOrExpiredToken):
            codec.verify_access_token(token)

    def test_refresh_token_lives_for_days(self, codec, clock):
        token = codec.issue_refresh_token({"userId": "u1"})
        clock.advance(days=6)
        assert codec.verify_refresh_token(token)["userId"] == "u1"
        clock.advance(days=2)
        with pytest.raises(InvalidOrExpiredToken):
            codec.verify_refresh_token(token)

    @pytest.mark.parametrize("token", ["", "garbage", "a.b.c"])
    def test_malformed_tokens_fail_closed(self, codec, token):
        with pytest.raises(InvalidOrExpiredToken):
            codec.verify_access_token(token)

    def test_tampered_signature_fails(self, codec):
        token = codec.issue_access_token({"userId": "u1"})
        header, payload, signature = token.split(".")
        tampered = ".".join([header, payload, signature[::-1]])
        with pytest.raises(InvalidOrExpiredToken):
            codec.verify_access_token(tampered)

    def test_token_without_exp_is_rejected(self, codec):
        token = jwt.encode({"userId": "u1", "tokenUse": "access"}, ACCESS_KEY, algorithm="HS256")
        with pytest.raises(InvalidOrExpiredToken):
            codec.verify_access_token(token)

    def test_identical_secrets_rejected(self):
        with pytest.raises(ValueError):
            TokenCodec(ACCESS_KEY, ACCESS_KEY, clock=FakeClock())

    def test_missing_secret_rejected(self):
        with pytest.raises(ValueError):
            TokenCodec("", REFRESH_KEY, clock=FakeClock())
