"""
Relay Error Taxonomy

Every failure the relay reports to a client is a RelayError carrying an
ErrorCategory tag plus a human-readable message. The transport layer renders
both into an `error` message; tests and callers match on the category.

Categories map to the failure classes of the relay:
- ProtocolError: malformed or unknown control message
- RequestError: well-formed request that cannot be served in the current state
- BindError: the OS refused the UDP bind
- SendError: the OS refused a datagram send (classified by errno)
- ResolutionError: public address lookup exhausted (never client-visible)
- TransportError: the control channel itself failed (never client-visible)
"""

import errno
from enum import Enum


class ErrorCategory(str, Enum):
    """Machine-checkable classification of client-visible errors."""
    PROTOCOL = "protocol"
    NOT_CONNECTED = "not_connected"
    INVALID_REQUEST = "invalid_request"
    BIND = "bind"
    NETWORK_UNREACHABLE = "network_unreachable"
    HOST_UNREACHABLE = "host_unreachable"
    CONNECTION_REFUSED = "connection_refused"
    PERMISSION_DENIED = "permission_denied"
    SEND_FAILED = "send_failed"
    INTERNAL = "internal"


_SEND_ERRNO_CATEGORIES = {
    errno.ENETUNREACH: ErrorCategory.NETWORK_UNREACHABLE,
    errno.EHOSTUNREACH: ErrorCategory.HOST_UNREACHABLE,
    errno.ECONNREFUSED: ErrorCategory.CONNECTION_REFUSED,
    errno.EPERM: ErrorCategory.PERMISSION_DENIED,
    errno.EACCES: ErrorCategory.PERMISSION_DENIED,
}

_CATEGORY_HINTS = {
    ErrorCategory.NETWORK_UNREACHABLE: "Network unreachable",
    ErrorCategory.HOST_UNREACHABLE: "Host unreachable",
    ErrorCategory.CONNECTION_REFUSED: "Connection refused",
    ErrorCategory.PERMISSION_DENIED: "Permission denied",
}


def _os_error_detail(exc: OSError) -> str:
    return exc.strerror or str(exc) or type(exc).__name__


class RelayError(Exception):
    """Base class for errors reported to relay clients."""

    category: ErrorCategory = ErrorCategory.INTERNAL

    def __init__(self, message: str, category: ErrorCategory | None = None):
        super().__init__(message)
        self.message = message
        if category is not None:
            self.category = category


class ProtocolError(RelayError):
    """Unparseable control message or unknown message type."""
    category = ErrorCategory.PROTOCOL


class RequestError(RelayError):
    """A valid request the session cannot serve right now."""
    category = ErrorCategory.INVALID_REQUEST


class BindError(RelayError):
    """The OS refused to bind the UDP socket."""
    category = ErrorCategory.BIND

    def __init__(self, message: str, errno_code: int | None = None):
        super().__init__(message)
        self.errno = errno_code

    @classmethod
    def from_os_error(cls, exc: OSError, ip: str, port: int) -> "BindError":
        return cls(
            f"UDP connect failed: {_os_error_detail(exc)} ({ip}:{port})",
            errno_code=exc.errno,
        )


class SendError(RelayError):
    """
    A datagram send failed locally.

    The category is derived from the OS error code so clients can tell
    an unreachable network from a firewall refusal.
    """
    category = ErrorCategory.SEND_FAILED

    def __init__(
        self,
        message: str,
        category: ErrorCategory | None = None,
        errno_code: int | None = None,
    ):
        super().__init__(message, category)
        self.errno = errno_code

    @classmethod
    def from_os_error(cls, exc: OSError, prefix: str = "UDP send failed") -> "SendError":
        category = _SEND_ERRNO_CATEGORIES.get(exc.errno, ErrorCategory.SEND_FAILED)
        message = f"{prefix}: {_os_error_detail(exc)}"
        hint = _CATEGORY_HINTS.get(category)
        if hint:
            message += f" ({hint})"
        return cls(message, category=category, errno_code=exc.errno)

    def with_prefix(self, prefix: str) -> "SendError":
        """Re-label the message for a different send operation."""
        _, _, rest = self.message.partition(": ")
        return SendError(f"{prefix}: {rest or self.message}", self.category, self.errno)


class ResolutionError(RelayError):
    """All strategies of a public address lookup failed."""


class TransportError(RelayError):
    """The control channel failed; the client is no longer reachable."""


class QueueFullError(TransportError):
    """A control channel has too many undelivered messages; the client stopped reading."""

    def __init__(self, channel_id: str, limit: int):
        super().__init__(f"Control channel {channel_id} has {limit} messages pending, dropping")
        self.channel_id = channel_id
        self.limit = limit
