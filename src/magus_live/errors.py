"""Error taxonomy for live conversation sessions.

Every fault the session layer can observe is mapped to one of these kinds.
Components raise them at their own boundary; the orchestrator converts them
into status updates so none escape to the hosting application.
"""

from enum import Enum


class ErrorKind(Enum):
    """Classification of session faults."""

    AUTH_REQUIRED = "auth_required"
    DEVICE_UNAVAILABLE = "device_unavailable"
    TRANSPORT_ERROR = "transport_error"
    REMOTE_API_ERROR = "remote_api_error"
    PROTOCOL_ERROR = "protocol_error"


class SessionError(Exception):
    """Base class for all session faults.

    Attributes:
        kind: Error classification
        message: Human-readable description shown to the user
    """

    kind: ErrorKind = ErrorKind.TRANSPORT_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class AuthRequired(SessionError):
    """No valid caller credential is available. Not retried."""

    kind = ErrorKind.AUTH_REQUIRED


class DeviceUnavailable(SessionError):
    """The microphone or audio output device cannot be acquired."""

    kind = ErrorKind.DEVICE_UNAVAILABLE


class TransportError(SessionError):
    """Connection-level failure (network drop, handshake failure)."""

    kind = ErrorKind.TRANSPORT_ERROR


class RemoteAPIError(SessionError):
    """Non-2xx or malformed response from a generative or speech endpoint."""

    kind = ErrorKind.REMOTE_API_ERROR


class ProtocolError(SessionError):
    """Malformed or unparseable inbound frame."""

    kind = ErrorKind.PROTOCOL_ERROR
