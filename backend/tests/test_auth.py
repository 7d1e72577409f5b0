"""Tests for bearer token verification."""
import datetime

import pytest
from jose import jwt

from homeserve.auth.service import Identity, TokenService
from homeserve.chat.errors import AuthInvalid
from homeserve.config import JWTSecrets
from tests.utils import TEST_SECRET


class TestTokenService:
    """Tests for TokenService.verify()."""

    def test_valid_token(self, tokens):
        token = tokens.create_access_token("alice", email="alice@example.com", user_type="homeowner")
        identity = tokens.verify(token)
        assert identity == Identity(user_id="alice", email="alice@example.com", user_type="homeowner")

    def test_expired_token(self, tokens):
        token = tokens.create_access_token("alice", expires_delta=datetime.timedelta(seconds=-1))
        with pytest.raises(AuthInvalid):
            tokens.verify(token)

    def test_wrong_signature(self, tokens):
        other = TokenService(secret_key="someone-elses-key")
        with pytest.raises(AuthInvalid) as exc_info:
            tokens.verify(other.create_access_token("alice"))
        assert exc_info.value.message == "Invalid token"

    @pytest.mark.parametrize("token", ["", "not-a-jwt", "a.b.c"])
    def test_malformed_token(self, tokens, token):
        with pytest.raises(AuthInvalid):
            tokens.verify(token)

    def test_missing_user_id_claim(self, tokens):
        exp = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(minutes=5)
        token = jwt.encode({"email": "alice@example.com", "exp": exp}, TEST_SECRET, algorithm="HS256")
        with pytest.raises(AuthInvalid):
            tokens.verify(token)

    def test_non_string_user_id_claim(self, tokens):
        exp = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(minutes=5)
        token = jwt.encode({"userId": 42, "exp": exp}, TEST_SECRET, algorithm="HS256")
        with pytest.raises(AuthInvalid):
            tokens.verify(token)

    def test_from_secrets(self):
        service = TokenService.from_secrets(JWTSecrets(secret_key=TEST_SECRET))
        identity = service.verify(service.create_access_token("bob"))
        assert identity.user_id == "bob"
        assert identity.email is None
