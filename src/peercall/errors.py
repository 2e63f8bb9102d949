"""Error taxonomy for the call core.

Every error raised by the core derives from CallError and carries an
ErrorKind, which is what the presentation layer receives via on_error().
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Error categories surfaced to the presentation layer."""

    PERMISSION_DENIED = "permission-denied"
    INVALID_STATE = "invalid-state"
    TRANSPORT_CLOSED = "transport-closed"
    MALFORMED_MESSAGE = "malformed-message"
    START_FAILED = "start-failed"


class CallError(Exception):
    """Base exception for call core errors."""

    kind: ErrorKind = ErrorKind.START_FAILED


class PermissionDenied(CallError):
    """Raised when local media capture is refused or unavailable.

    Fatal to call start. The core never retries.
    """

    kind = ErrorKind.PERMISSION_DENIED


class InvalidState(CallError):
    """Raised when an operation is invoked outside its legal state.

    This is a programming error: correct routing never reaches it.
    """

    kind = ErrorKind.INVALID_STATE


class TransportClosed(CallError):
    """Send attempted on a closed channel."""

    kind = ErrorKind.TRANSPORT_CLOSED


class MalformedMessage(CallError):
    """Inbound payload could not be parsed or validated."""

    kind = ErrorKind.MALFORMED_MESSAGE
