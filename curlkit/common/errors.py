from enum import Enum
from typing import Optional, Union


class Severity(Enum):
    RETRY = "RETRY"
    ABORT = "ABORT"


class ErrorKind(Enum):
    NOT_INITIALIZED = "NotInitialized"
    ALREADY_INITIALIZED = "AlreadyInitialized"
    INVALID_OPTION_KEY = "InvalidOptionKey"
    INVALID_OPTION_VALUE = "InvalidOptionValue"
    HOST_RESOLUTION_FAILED = "HostResolutionFailed"
    TLS_VERIFICATION_FAILED = "TLSVerificationFailed"
    TIMEOUT_EXCEEDED = "TimeoutExceeded"
    PROTOCOL_VIOLATION = "ProtocolViolation"
    TOO_MANY_REDIRECTS = "TooManyRedirects"
    NO_TRANSFER_YET = "NoTransferYet"
    TRANSPORT_IO_ERROR = "TransportIOError"


# Numeric codes match curl exit codes where one exists.
ERROR_CODES = {
    ErrorKind.NOT_INITIALIZED: 2,
    ErrorKind.INVALID_OPTION_VALUE: 3,
    ErrorKind.HOST_RESOLUTION_FAILED: 6,
    ErrorKind.TRANSPORT_IO_ERROR: 7,
    ErrorKind.PROTOCOL_VIOLATION: 8,
    ErrorKind.TIMEOUT_EXCEEDED: 28,
    ErrorKind.TOO_MANY_REDIRECTS: 47,
    ErrorKind.INVALID_OPTION_KEY: 48,
    ErrorKind.TLS_VERIFICATION_FAILED: 60,
    ErrorKind.ALREADY_INITIALIZED: 90,
    ErrorKind.NO_TRANSFER_YET: 91,
}

_DESCRIPTIONS = {
    ErrorKind.NOT_INITIALIZED: "Session is not initialized",
    ErrorKind.ALREADY_INITIALIZED: "Session is already initialized",
    ErrorKind.INVALID_OPTION_KEY: "An unknown option was passed in",
    ErrorKind.INVALID_OPTION_VALUE: "A value was passed in that does not fit the option",
    ErrorKind.HOST_RESOLUTION_FAILED: "Could not resolve host name",
    ErrorKind.TLS_VERIFICATION_FAILED: "TLS peer certificate or host name could not be verified",
    ErrorKind.TIMEOUT_EXCEEDED: "Timeout was reached",
    ErrorKind.PROTOCOL_VIOLATION: "Server replied with a malformed HTTP response",
    ErrorKind.TOO_MANY_REDIRECTS: "Number of redirects hit maximum amount",
    ErrorKind.NO_TRANSFER_YET: "No transfer has completed on this session",
    ErrorKind.TRANSPORT_IO_ERROR: "Failure while sending or receiving network data",
}

_TRANSIENT = {
    ErrorKind.HOST_RESOLUTION_FAILED,
    ErrorKind.TIMEOUT_EXCEEDED,
    ErrorKind.TRANSPORT_IO_ERROR,
}


def error_to_string(code: Union["ErrorKind", int, str]) -> str:
    """
    Human readable description for an error kind, its name ("TimeoutExceeded"
    or "TIMEOUT_EXCEEDED") or its numeric code. Anything else maps to
    "Unknown error".
    """
    kind = _lookup_kind(code)
    if kind is None:
        return "Unknown error"
    return _DESCRIPTIONS[kind]


def _lookup_kind(code) -> Optional[ErrorKind]:
    if isinstance(code, ErrorKind):
        return code
    if isinstance(code, bool):
        return None
    if isinstance(code, int):
        for kind, number in ERROR_CODES.items():
            if number == code:
                return kind
        return None
    if isinstance(code, str):
        for kind in ErrorKind:
            if code in (kind.name, kind.value):
                return kind
    return None


class TransferError(Exception):
    """
    Base error for every failure a session operation can surface. Carries the
    kind, a severity hint for callers that implement their own retry policy,
    and the low-level exception that caused it.
    """

    kind = ErrorKind.TRANSPORT_IO_ERROR

    def __init__(
        self,
        message: str,
        severity: Optional[Severity] = None,
        original_exception: Optional[Exception] = None,
    ):
        super().__init__(message)
        if severity is None:
            severity = Severity.RETRY if self.kind in _TRANSIENT else Severity.ABORT
        self.severity = severity
        self.original_exception = original_exception

    @property
    def code(self) -> int:
        return ERROR_CODES[self.kind]

    def __str__(self) -> str:
        base = super().__str__()
        return f"[{self.severity.name}/{self.kind.value}] {base}"


class NotInitializedError(TransferError):
    kind = ErrorKind.NOT_INITIALIZED


class AlreadyInitializedError(TransferError):
    kind = ErrorKind.ALREADY_INITIALIZED


class InvalidOptionKeyError(TransferError):
    kind = ErrorKind.INVALID_OPTION_KEY


class InvalidOptionValueError(TransferError):
    kind = ErrorKind.INVALID_OPTION_VALUE


class HostResolutionError(TransferError):
    kind = ErrorKind.HOST_RESOLUTION_FAILED


class TLSVerificationError(TransferError):
    kind = ErrorKind.TLS_VERIFICATION_FAILED


class TimeoutExceededError(TransferError):
    kind = ErrorKind.TIMEOUT_EXCEEDED


class ProtocolViolationError(TransferError):
    """Malformed or truncated response; response_body holds whatever body bytes had arrived."""

    kind = ErrorKind.PROTOCOL_VIOLATION

    def __init__(
        self,
        message: str,
        response_body: Optional[bytes] = None,
        severity: Optional[Severity] = None,
        original_exception: Optional[Exception] = None,
    ):
        super().__init__(message, severity=severity, original_exception=original_exception)
        self.response_body = response_body


class TooManyRedirectsError(TransferError):
    kind = ErrorKind.TOO_MANY_REDIRECTS


class NoTransferYetError(TransferError):
    kind = ErrorKind.NO_TRANSFER_YET


class TransportIOError(TransferError):
    kind = ErrorKind.TRANSPORT_IO_ERROR

    def __init__(
        self,
        message: str,
        errno: Optional[int] = None,
        severity: Optional[Severity] = None,
        original_exception: Optional[Exception] = None,
    ):
        super().__init__(message, severity=severity, original_exception=original_exception)
        self.errno = errno


class OutputWriteError(TransportIOError):
    """The response arrived but could not be written to the OUTPUT sink."""

    def __init__(self, message: str, errno: Optional[int] = None, original_exception: Optional[Exception] = None):
        super().__init__(message, errno=errno, severity=Severity.ABORT, original_exception=original_exception)
