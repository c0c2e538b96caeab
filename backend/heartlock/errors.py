"""Error taxonomy for the chat subsystem.

Every error carries a stable machine-readable ``code`` and the HTTP status
used when it crosses the REST boundary. The realtime channel reuses the same
``code`` values in its ``error`` / ``message-ack`` payloads.
"""


class ChatError(Exception):
    """Base exception for chat errors."""

    code = "chat_error"
    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(ChatError):
    """Raised for empty bodies, malformed identifiers and bad references."""
    code = "validation_error"
    status_code = 400


class AuthenticationError(ChatError):
    """Raised when a bearer credential is missing or invalid."""
    code = "authentication_error"
    status_code = 401

    def __init__(self, message: str = "Could not validate credentials"):
        super().__init__(message)


class AuthorizationError(ChatError):
    """Raised when the actor does not own the resource."""
    code = "authorization_error"
    status_code = 403


class NotFoundError(ChatError):
    """Raised when a referenced user or message does not exist."""
    code = "not_found"
    status_code = 404


class PolicyError(ChatError):
    """Raised when an operation is refused by policy (e.g. edit window)."""
    code = "policy_error"
    status_code = 409


class TransientStoreError(ChatError):
    """Raised when the message store fails on I/O."""
    code = "store_unavailable"
    status_code = 503

    def __init__(self, message: str = "Message store is temporarily unavailable"):
        super().__init__(message)
