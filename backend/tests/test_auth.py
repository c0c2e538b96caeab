"""Tests for bearer credential verification."""
import pytest
from jose import jwt

from heartlock.chat.auth import ConnectionAuthenticator
from heartlock.errors import AuthenticationError

SECRET = "test-secret"


@pytest.fixture
def authenticator():
    return ConnectionAuthenticator(secret_key=SECRET, algorithm="HS256", token_expire_minutes=5)


class TestVerify:
    """Tests for ConnectionAuthenticator.verify."""

    def test_round_trip(self, authenticator):
        token = authenticator.issue_token("u1")
        assert authenticator.verify(token) == "u1"

    def test_user_id_claim_fallback(self, authenticator):
        """Tokens carrying ``userId`` instead of ``sub`` are accepted."""
        token = jwt.encode({"userId": "u2"}, SECRET, algorithm="HS256")
        assert authenticator.verify(token) == "u2"

    @pytest.mark.parametrize("token", [None, ""])
    def test_missing_token(self, authenticator, token):
        with pytest.raises(AuthenticationError, match="Missing credentials"):
            authenticator.verify(token)

    def test_garbage_token(self, authenticator):
        with pytest.raises(AuthenticationError):
            authenticator.verify("not-a-jwt")

    def test_wrong_key(self, authenticator):
        token = ConnectionAuthenticator(secret_key="other").issue_token("u1")
        with pytest.raises(AuthenticationError):
            authenticator.verify(token)

    def test_expired_token(self, authenticator):
        token = authenticator.issue_token("u1", expires_minutes=-1)
        with pytest.raises(AuthenticationError):
            authenticator.verify(token)

    def test_subject_with_room_separator(self, authenticator):
        token = authenticator.issue_token("a_b")
        with pytest.raises(AuthenticationError):
            authenticator.verify(token)

    def test_token_without_subject(self, authenticator):
        token = jwt.encode({"role": "admin"}, SECRET, algorithm="HS256")
        with pytest.raises(AuthenticationError):
            authenticator.verify(token)


class TestRestAuthentication:
    """REST endpoints reject callers without a valid bearer token."""

    def test_missing_header_is_401(self, api_client):
        response = api_client.get("/api/chat/conversations")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "authentication_error"

    def test_invalid_token_is_401(self, api_client):
        response = api_client.get(
            "/api/chat/conversations",
            headers={"Authorization": "Bearer nope"},
        )
        assert response.status_code == 401

    def test_health_needs_no_token(self, api_client):
        response = api_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}
