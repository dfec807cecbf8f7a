"""
tests/test_tokens.py -- Unit tests for TokenService, password hashing and cookie helpers.
"""

from __future__ import annotations

import pytest
from fastapi.responses import JSONResponse
from jose import jwt

from auth.tokens import (
    ACCESS_COOKIE,
    REFRESH_COOKIE,
    TokenService,
    hash_password,
    set_auth_cookies,
    verify_password,
)
from core.errors import TokenExpired, TokenInvalid

ACCESS = "access-secret-" + "x" * 32
REFRESH = "refresh-secret-" + "y" * 32


@pytest.fixture
def tokens(clock):
    return TokenService(ACCESS, REFRESH, access_expire_seconds=900, refresh_expire_seconds=3600, clock=clock)


class TestPasswords:
    def test_hash_verifies(self):
        hashed = hash_password("s3cret-passphrase")
        assert hashed.startswith("$2")
        assert verify_password("s3cret-passphrase", hashed) is True
        assert verify_password("wrong", hashed) is False

    def test_malformed_hash_is_a_mismatch(self):
        assert verify_password("anything", "not-a-bcrypt-hash") is False


class TestIssue:
    def test_pair_carries_claims(self, tokens, clock):
        pair = tokens.issue_pair("admin", "1.2.3.4")
        claims = tokens.decode_access(pair.access_token)
        assert claims["sub"] == "admin"
        assert claims["client_ip"] == "1.2.3.4"
        assert claims["type"] == "access"
        assert claims["iat"] == int(clock.now)
        assert claims["exp"] == int(clock.now) + 900
        assert pair.expires_in == 900
        assert pair.refresh_expires_in == 3600
        assert pair.token_type == "bearer"

    def test_pairs_issued_same_second_differ(self, tokens):
        first = tokens.issue_pair("admin", "1.2.3.4")
        second = tokens.issue_pair("admin", "1.2.3.4")
        assert first.access_token != second.access_token
        assert first.refresh_token != second.refresh_token

    def test_identical_secrets_rejected(self):
        with pytest.raises(ValueError):
            TokenService(ACCESS, ACCESS)


class TestDecode:
    def test_expired_access_token(self, tokens, clock):
        # issued 901s ago with a 900s lifetime
        clock.advance(-901)
        pair = tokens.issue_pair("admin", "1.2.3.4")
        with pytest.raises(TokenExpired):
            tokens.decode_access(pair.access_token)

    def test_refresh_token_is_not_an_access_token(self, tokens):
        pair = tokens.issue_pair("admin", "1.2.3.4")
        with pytest.raises(TokenInvalid):
            tokens.decode_access(pair.refresh_token)

    def test_access_token_is_not_a_refresh_token(self, tokens):
        pair = tokens.issue_pair("admin", "1.2.3.4")
        with pytest.raises(TokenInvalid):
            tokens.decode_refresh(pair.access_token)

    def test_tampered_signature(self, tokens):
        token = tokens.issue_pair("admin", "1.2.3.4").access_token
        with pytest.raises(TokenInvalid):
            tokens.decode_access(token[:-4] + ("AAAA" if not token.endswith("AAAA") else "BBBB"))

    def test_wrong_type_claim_with_right_secret(self, tokens, clock):
        forged = jwt.encode(
            {
                "sub": "admin",
                "client_ip": "1.2.3.4",
                "type": "refresh",
                "iat": int(clock.now),
                "exp": int(clock.now) + 60,
                "iss": "vpnadmin",
                "aud": "vpnadmin-admin",
            },
            ACCESS,
            algorithm="HS256",
        )
        with pytest.raises(TokenInvalid):
            tokens.decode_access(forged)

    def test_wrong_audience(self, tokens, clock):
        forged = jwt.encode(
            {
                "sub": "admin",
                "client_ip": "1.2.3.4",
                "type": "access",
                "iat": int(clock.now),
                "exp": int(clock.now) + 60,
                "iss": "vpnadmin",
                "aud": "someone-else",
            },
            ACCESS,
            algorithm="HS256",
        )
        with pytest.raises(TokenInvalid):
            tokens.decode_access(forged)

    def test_garbage(self, tokens):
        with pytest.raises(TokenInvalid):
            tokens.decode_access("not.a.jwt")


def test_cookies_are_httponly_and_strict(tokens):
    resp = JSONResponse({})
    set_auth_cookies(resp, tokens.issue_pair("admin", "1.2.3.4"), secure=True)
    cookies = [v for k, v in resp.raw_headers if k == b"set-cookie"]
    access = next(c.decode() for c in cookies if c.startswith(ACCESS_COOKIE.encode()))
    refresh = next(c.decode() for c in cookies if c.startswith(REFRESH_COOKIE.encode()))
    for cookie in (access, refresh):
        assert "HttpOnly" in cookie
        assert "SameSite=strict" in cookie
        assert "Secure" in cookie
    assert "Path=/auth" in refresh
