"""Tests for bearer token verification."""

import time

import pytest

from auth import b64url, decode_token, get_current_user, require_admin
from errors import ForbiddenError, UnauthorizedError

from conftest import make_token


class TestDecodeToken:
    def test_valid(self):
        claims = decode_token(make_token({"sub": "abc", "exp": int(time.time()) + 60}))
        assert claims["sub"] == "abc"

    def test_without_expiry(self):
        assert decode_token(make_token({"sub": "abc"}))["sub"] == "abc"

    def test_expired(self):
        with pytest.raises(ValueError, match="expired"):
            decode_token(make_token({"sub": "abc", "exp": int(time.time()) - 1}))

    def test_non_numeric_expiry(self):
        with pytest.raises(ValueError):
            decode_token(make_token({"sub": "abc", "exp": "tomorrow"}))

    def test_wrong_secret(self):
        with pytest.raises(ValueError, match="signature"):
            decode_token(make_token({"sub": "abc"}, secret="other"))

    def test_tampered_claims(self):
        header, _, signature = make_token({"sub": "abc"}).split(".")
        forged = b64url(b'{"sub":"admin"}')
        with pytest.raises(ValueError):
            decode_token(f"{header}.{forged}.{signature}")

    def test_other_algorithm(self):
        with pytest.raises(ValueError, match="algorithm"):
            decode_token(make_token({"sub": "abc"}, alg="none"))

    def test_claims_must_be_object(self):
        with pytest.raises(ValueError):
            decode_token(make_token(["abc"]))

    @pytest.mark.parametrize("token", ["", "a.b", "a.b.c.d", "!!.??.**", "ünï.cö.dé"])
    def test_malformed(self, token):
        with pytest.raises(ValueError):
            decode_token(token)


class TestCurrentUser:
    def test_resolves_user(self, db, users):
        user = get_current_user(make_token({"sub": str(users["buyer"]["_id"])}), db)
        assert user["email"] == "buyer@example.com"

    def test_missing_token(self, db):
        with pytest.raises(UnauthorizedError):
            get_current_user(None, db)

    def test_sub_not_an_object_id(self, db):
        with pytest.raises(UnauthorizedError):
            get_current_user(make_token({"sub": "abc"}), db)

    def test_admin_guard(self, users):
        assert require_admin(users["admin"]) is users["admin"]
        with pytest.raises(ForbiddenError):
            require_admin(users["buyer"])
