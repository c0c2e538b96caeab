"""Bearer credential verification for realtime connections and REST calls.

Tokens are HS256 JWTs issued by the accounts service. The verified user id
is the ``sub`` claim; tokens minted by older clients carry ``userId``
instead, which is accepted as a fallback.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import WebSocket
from jose import JWTError, jwt

from heartlock.errors import AuthenticationError

from .rooms import ROOM_SEPARATOR

logger = logging.getLogger(__name__)

# Close code sent to a socket whose credential was rejected
AUTH_FAILED_CLOSE_CODE = 4401


class ConnectionAuthenticator:
    """Turns an opaque bearer credential into a verified user id."""

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        token_expire_minutes: int = 60,
    ) -> None:
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.token_expire_minutes = token_expire_minutes

    def verify(self, token: Optional[str]) -> str:
        """Validate a token and return the user id it was issued for.

        Raises:
            AuthenticationError: Token missing, malformed, expired, signed
                with another key, or without a usable subject.
        """
        if not token:
            raise AuthenticationError("Missing credentials")
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError as err:
            logger.info(f"[Auth] Rejected token: {err}")
            raise AuthenticationError() from err

        subject = payload.get("sub") or payload.get("userId")
        if not isinstance(subject, str) or not subject:
            raise AuthenticationError()
        if ROOM_SEPARATOR in subject:
            # Would collide with room keys
            logger.info(f"[Auth] Rejected malformed subject: {subject}")
            raise AuthenticationError()
        return subject

    def issue_token(self, user_id: str, expires_minutes: Optional[int] = None) -> str:
        """Mint a token for ``user_id`` signed with this authenticator's key."""
        minutes = self.token_expire_minutes if expires_minutes is None else expires_minutes
        expire = datetime.now(timezone.utc) + timedelta(minutes=minutes)
        return jwt.encode(
            {"sub": user_id, "exp": expire},
            self.secret_key,
            algorithm=self.algorithm,
        )

    @staticmethod
    def token_from_handshake(websocket: WebSocket) -> Optional[str]:
        """Read the credential a client attached to the WebSocket handshake.

        Checks the ``token`` query parameter first, then an
        ``Authorization: Bearer`` header.
        """
        token = websocket.query_params.get("token")
        if token:
            return token
        header = websocket.headers.get("authorization", "")
        scheme, _, value = header.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
        return None
