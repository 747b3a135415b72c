"""
Every exception raised by tlsmimic derives from TlsMimicException.

There are two families:

- ConfigError: the caller asked for something invalid or unsupported. These are raised
  before any native call is made and are never retried.
- TlsError: the native engine failed. These carry the drained error queue and, when one
  was exchanged, the TLS alert. A TlsError raised by a connection is terminal for that
  connection.

"Would block" is not an exception: the handshake driver reports it as a DriveResult and
the stream adapter turns it into a suspension.
"""

from __future__ import annotations

import enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from tlsmimic.error_queue import Alert
    from tlsmimic.error_queue import ErrorEntry


class TlsMimicException(Exception):
    """
    Base class for all exceptions thrown by tlsmimic.
    """

    def __init__(self, message=None):
        super().__init__(message)


class ConfigErrorKind(enum.Enum):
    UNSUPPORTED_GROUP = "unsupported group"
    UNKNOWN_SIGNATURE_ALGORITHM = "unknown signature algorithm"
    UNKNOWN_EXTENSION = "unknown extension"
    EMPTY = "empty"
    PROTOCOL_TOO_LONG = "protocol too long"
    INVALID_HOSTNAME = "invalid hostname"
    INVALID_VALUE = "invalid value"
    UNSUPPORTED = "unsupported"
    FROZEN = "frozen"


class ConfigError(TlsMimicException):
    """
    Invalid or unsupported configuration.
    """

    kind: ConfigErrorKind

    def __init__(self, kind: ConfigErrorKind, message: str):
        super().__init__(message)
        self.kind = kind

    def __repr__(self):
        return f"{type(self).__name__}({self.kind.name}, {str(self)!r})"


class Unsupported(ConfigError):
    """
    The feature is explicitly disabled, or the linked TLS library does not provide it.
    """

    def __init__(self, message: str):
        super().__init__(ConfigErrorKind.UNSUPPORTED, message)


class ReleasedHandleError(TlsMimicException):
    """
    A native handle was used after it has been released.
    """


class ErrorKind(enum.Enum):
    HANDSHAKE = "handshake"
    CERTIFICATE = "certificate"
    PROTOCOL = "protocol"
    SYSTEM = "system"
    UNKNOWN = "unknown"


class TlsError(TlsMimicException):
    """
    A failure reported by the native TLS engine.
    """

    kind: ErrorKind = ErrorKind.UNKNOWN
    entries: list[ErrorEntry]
    """The complete error queue, oldest entry first."""
    primary: ErrorEntry | None
    """The most specific entry of `entries`."""
    alert: Alert | None
    """The TLS alert that was sent or received, if any."""

    def __init__(
        self,
        message: str,
        entries: list[ErrorEntry] | None = None,
        primary: ErrorEntry | None = None,
        alert: Alert | None = None,
    ):
        super().__init__(message)
        self.entries = list(entries or [])
        self.primary = primary
        self.alert = alert

    @property
    def code(self) -> int | None:
        """The reason code of the primary error queue entry."""
        return self.primary.reason_code if self.primary else None

    @property
    def io_error(self) -> OSError | None:
        """The transport error that caused this failure, if any."""
        cause = self.__cause__
        return cause if isinstance(cause, OSError) else None


class HandshakeError(TlsError):
    kind = ErrorKind.HANDSHAKE


class CertificateError(TlsError):
    kind = ErrorKind.CERTIFICATE


class ProtocolError(TlsError):
    kind = ErrorKind.PROTOCOL


class TlsSystemError(TlsError):
    """
    Native allocation or resource failure, or a failing system call below the engine.
    """

    kind = ErrorKind.SYSTEM


class ConnectionBrokenError(TlsError):
    """
    The connection has failed before and cannot be used any more.
    The original failure is available as `__cause__`.
    """
