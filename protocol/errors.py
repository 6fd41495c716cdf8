"""Error hierarchy shared by the host and the peer.

Everything raised on purpose inherits from UserMcpError so the dispatch
boundary and the interactive loop can catch one type.
"""
from typing import Optional


class UserMcpError(Exception):
    """Base for all user-mcp errors."""


class TransportError(UserMcpError):
    """Connection lost or refused. Fatal to the session."""


class ProtocolError(UserMcpError):
    """Malformed message or rejected request. The session stays usable."""


class MethodNotFound(ProtocolError):
    """No handler registered under the requested name."""


class RequestTimeout(ProtocolError):
    """The peer did not answer within the request timeout."""


class ValidationError(UserMcpError):
    """Input failed its declared schema.

    Attributes:
        field: Name of the offending field, or None when the whole payload is bad.
    """

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        self.field = field
        super().__init__(message)


class NotFoundError(UserMcpError):
    """Requested user, resource or capability does not exist."""


class BackendError(UserMcpError):
    """Language-model call failed."""


class CorruptStoreError(UserMcpError):
    """Backing file is not a JSON array of user records."""


class ToolError(UserMcpError):
    """Tool handler failure reported back to the caller as error text."""
