"""Domain-specific errors for beaconctl."""

from __future__ import annotations

from enum import Enum


class ErrorReason(str, Enum):
    """Closed set of failure reasons surfaced at the library boundary."""

    INTERNET_CONNECTIVITY = "internet_connectivity"
    IDENTIFIER_MISSING = "identifier_missing"
    NOT_AUTHORIZED = "not_authorized"
    NOT_CONNECTED_TO_READ_WRITE = "not_connected_to_read_write"
    TIMEOUT = "timeout"
    DISCONNECTED = "disconnected"
    VALIDATION_FAILED = "validation_failed"
    CHECKSUM_MISMATCH = "checksum_mismatch"
    CANCELLED = "cancelled"
    VERSION_MISMATCH = "version_mismatch"
    TRANSFER_REJECTED = "transfer_rejected"
    BUSY = "busy"


class BeaconctlError(Exception):
    """Base error for beaconctl."""

    reason: ErrorReason | None = None

    def __init__(self, message: str = "", *, reason: ErrorReason | None = None) -> None:
        super().__init__(message)
        if reason is not None:
            self.reason = reason


class ProfileValidationError(BeaconctlError):
    """Raised when a profile file does not conform to schema or semantics."""


class ProfileLoadError(BeaconctlError):
    """Raised when loading profile sources fails."""


class IdentifierError(BeaconctlError):
    """Raised when a beacon identifier is missing or malformed."""

    reason = ErrorReason.IDENTIFIER_MISSING


class InvalidStateError(BeaconctlError):
    """Raised when an operation is not allowed in the current connection state."""


class ConnectionFailedError(BeaconctlError):
    """Raised when a connection attempt (or the whole connect call) fails."""

    reason = ErrorReason.NOT_CONNECTED_TO_READ_WRITE

    def __init__(
        self,
        message: str = "",
        *,
        reason: ErrorReason | None = None,
        attempt: int | None = None,
    ) -> None:
        super().__init__(message, reason=reason)
        self.attempt = attempt


class OperationError(BeaconctlError):
    """Base error for a single register operation."""


class OperationTimeoutError(OperationError):
    """Raised when a register operation is not answered before its deadline."""

    reason = ErrorReason.TIMEOUT


class LinkLostError(OperationError):
    """Raised when the link drops while an operation is queued or in flight."""

    reason = ErrorReason.DISCONNECTED


class NotConnectedError(OperationError):
    """Raised when a register operation is submitted without a usable link."""

    reason = ErrorReason.NOT_CONNECTED_TO_READ_WRITE


class RegisterValidationError(OperationError):
    """Raised when a register value fails validation before submission."""

    reason = ErrorReason.VALIDATION_FAILED


class RegisterDecodeError(OperationError):
    """Raised when a register response cannot be decoded."""

    reason = ErrorReason.VALIDATION_FAILED


class PipelineBusyError(OperationError):
    """Raised when the pipeline is held exclusively by a firmware update."""

    reason = ErrorReason.BUSY


class OperationCancelledError(OperationError):
    """Raised when an outstanding operation is cancelled."""

    reason = ErrorReason.CANCELLED


class FirmwareUpdateError(BeaconctlError):
    """Raised when a firmware update session fails."""

    def __init__(self, message: str = "", *, reason: ErrorReason, session=None) -> None:
        super().__init__(message, reason=reason)
        self.session = session


class TransportError(BeaconctlError):
    """Base transport error."""


class TransportConnectError(TransportError):
    """Raised when opening a link fails for a retryable reason."""


class TransportIdentifierError(TransportConnectError):
    """Raised when the transport cannot address the given identifier kind."""

    reason = ErrorReason.IDENTIFIER_MISSING


class TransportAuthorizationError(TransportError):
    """Raised when the radio permission is denied."""

    reason = ErrorReason.NOT_AUTHORIZED


class TransportUnavailableError(TransportError):
    """Raised when the radio or network is unavailable."""

    reason = ErrorReason.INTERNET_CONNECTIVITY


class TransportSendError(TransportError):
    """Raised when sending a request fails but the link is still up."""


class TransportTimeoutError(TransportError):
    """Raised when a transport-level operation times out."""

    reason = ErrorReason.TIMEOUT


class LinkDroppedError(TransportError):
    """Raised when the link is gone while sending a request."""

    reason = ErrorReason.DISCONNECTED
