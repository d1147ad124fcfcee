"""
Echo Chat - Error Taxonomy
============================
Exceptions raised by the chat server core.

Handshake rejections are terminal for a connection: the reason is sent to
the client as a single "ERROR:" frame and the connection is closed. Every
other error is handled server-side and only ever shows up in the logs.

    ChatServerError
    ├── HandshakeRejected
    │   ├── BadCredentialsFormat
    │   ├── AlreadyOnline
    │   ├── WrongPassword
    │   ├── UnknownUser
    │   ├── AuthTimeout
    │   └── ServiceUnavailable
    ├── PersistenceUnavailable
    ├── DuplicateUser
    └── DeliveryFailure
"""


class ChatServerError(Exception):
    """Base class for all chat server errors."""


# =============================================================================
# Handshake rejections
# =============================================================================

class HandshakeRejected(ChatServerError):
    """
    The one-shot credential exchange failed.

    Attributes:
        reason: Stable machine-readable reason (the class name by default).
        detail: Human-readable explanation sent to the client.
    """

    reason = "HandshakeRejected"

    def __init__(self, detail: str = ""):
        self.detail = detail
        super().__init__(f"{self.reason}: {detail}" if detail else self.reason)

    @property
    def frame(self) -> str:
        """The text frame sent to the client before the connection closes."""
        return f"ERROR: {self}"


class BadCredentialsFormat(HandshakeRejected):
    reason = "BadCredentialsFormat"


class AlreadyOnline(HandshakeRejected):
    reason = "AlreadyOnline"


class WrongPassword(HandshakeRejected):
    reason = "WrongPassword"


class UnknownUser(HandshakeRejected):
    reason = "UnknownUser"


class AuthTimeout(HandshakeRejected):
    reason = "AuthTimeout"


class ServiceUnavailable(HandshakeRejected):
    reason = "ServiceUnavailable"


# =============================================================================
# Runtime errors
# =============================================================================

class PersistenceUnavailable(ChatServerError):
    """The credential store or message log could not be read or written."""


class DuplicateUser(ChatServerError):
    """A record for this username already exists."""

    def __init__(self, username: str):
        self.username = username
        super().__init__(f"User '{username}' already exists")


class DeliveryFailure(ChatServerError):
    """A write to one destination connection failed."""

    def __init__(self, username: str, cause: BaseException):
        self.username = username
        self.cause = cause
        super().__init__(f"Delivery to '{username}' failed: {cause!r}")
