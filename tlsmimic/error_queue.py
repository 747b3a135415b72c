"""
Conversion of OpenSSL's error queue into structured exceptions.

OpenSSL keeps a per-thread queue of errors. Every failing call may push several entries,
and anything that is not consumed will show up when the next unrelated call fails.
All native calls in tlsmimic are therefore wrapped in `native_call`, which drains stray
entries before the call, maps a failure into a typed `TlsError`, and drains again
afterwards even if the call succeeded.
"""

import enum
import logging
import re
from collections.abc import Callable
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from OpenSSL import SSL

from tlsmimic.exceptions import CertificateError
from tlsmimic.exceptions import ErrorKind
from tlsmimic.exceptions import HandshakeError
from tlsmimic.exceptions import ProtocolError
from tlsmimic.exceptions import TlsError
from tlsmimic.exceptions import TlsSystemError

logger = logging.getLogger(__name__)

# OpenSSL 3 packed error code layout.
ERR_SYSTEM_FLAG = 0x80000000
ERR_LIB_OFFSET = 23
ERR_LIB_MASK = 0xFF
ERR_REASON_MASK = 0x7FFFFF
ERR_LIB_SSL = 20
# Reason codes for alerts received from the peer are offset by this value.
SSL_AD_REASON_OFFSET = 1000


class AlertDescription(enum.IntEnum):
    CLOSE_NOTIFY = 0
    UNEXPECTED_MESSAGE = 10
    BAD_RECORD_MAC = 20
    DECRYPTION_FAILED = 21
    RECORD_OVERFLOW = 22
    DECOMPRESSION_FAILURE = 30
    HANDSHAKE_FAILURE = 40
    NO_CERTIFICATE = 41
    BAD_CERTIFICATE = 42
    UNSUPPORTED_CERTIFICATE = 43
    CERTIFICATE_REVOKED = 44
    CERTIFICATE_EXPIRED = 45
    CERTIFICATE_UNKNOWN = 46
    ILLEGAL_PARAMETER = 47
    UNKNOWN_CA = 48
    ACCESS_DENIED = 49
    DECODE_ERROR = 50
    DECRYPT_ERROR = 51
    EXPORT_RESTRICTION = 60
    PROTOCOL_VERSION = 70
    INSUFFICIENT_SECURITY = 71
    INTERNAL_ERROR = 80
    INAPPROPRIATE_FALLBACK = 86
    USER_CANCELED = 90
    NO_RENEGOTIATION = 100
    MISSING_EXTENSION = 109
    UNSUPPORTED_EXTENSION = 110
    CERTIFICATE_UNOBTAINABLE = 111
    UNRECOGNIZED_NAME = 112
    BAD_CERTIFICATE_STATUS_RESPONSE = 113
    BAD_CERTIFICATE_HASH_VALUE = 114
    UNKNOWN_PSK_IDENTITY = 115
    CERTIFICATE_REQUIRED = 116
    NO_APPLICATION_PROTOCOL = 120


class AlertDirection(enum.Enum):
    SENT = "sent"
    RECEIVED = "received"


@dataclass(frozen=True)
class Alert:
    description: int
    direction: AlertDirection
    fatal: bool = True

    @property
    def name(self) -> str:
        try:
            return AlertDescription(self.description).name.lower()
        except ValueError:
            return f"unknown alert {self.description}"

    def __str__(self):
        return f"{self.direction.value} {self.name}"


@dataclass(frozen=True)
class ErrorEntry:
    """A single entry of the native error queue."""

    code: int
    """The packed OpenSSL error code, or 0 if only the strings are known."""
    library: str
    reason: str
    function: str = ""
    """Source location as reported by the engine (empty on OpenSSL 3)."""

    @classmethod
    def from_code(cls, code: int) -> "ErrorEntry":
        return cls(
            code=code,
            library=_text(SSL._lib.ERR_lib_error_string(code)),  # type: ignore
            reason=_text(SSL._lib.ERR_reason_error_string(code)),  # type: ignore
        )

    @property
    def is_system(self) -> bool:
        return bool(self.code & ERR_SYSTEM_FLAG)

    @property
    def library_code(self) -> int:
        if self.is_system:
            return 0
        return (self.code >> ERR_LIB_OFFSET) & ERR_LIB_MASK

    @property
    def reason_code(self) -> int:
        if self.is_system:
            return self.code & ~ERR_SYSTEM_FLAG
        return self.code & ERR_REASON_MASK

    def __str__(self):
        return f"{self.library}: {self.reason}" if self.library else self.reason


def _text(charp) -> str:
    if charp == SSL._ffi.NULL:  # type: ignore
        return ""
    return SSL._ffi.string(charp).decode("utf-8", "replace")  # type: ignore


def drain() -> list[ErrorEntry]:
    """
    Remove all entries from this thread's native error queue, oldest first.
    """
    entries = []
    while True:
        code = SSL._lib.ERR_get_error()  # type: ignore
        if code == 0:
            return entries
        entries.append(ErrorEntry.from_code(code))


def entries_from_exception(e: SSL.Error) -> list[ErrorEntry]:
    """
    pyOpenSSL drains the queue itself when it raises. Recover the entries from the exception.
    """
    if isinstance(e, SSL.SysCallError):
        errno, message = (tuple(e.args) + (-1, ""))[:2]
        if isinstance(errno, int) and errno > 0:
            return [
                ErrorEntry(
                    code=ERR_SYSTEM_FLAG | errno,
                    library="system library",
                    reason=str(message),
                )
            ]
        return [ErrorEntry(code=0, library="", reason=str(message or "unexpected eof"))]
    if e.args and isinstance(e.args[0], list):
        return [
            ErrorEntry(code=0, library=lib, function=func, reason=reason)
            for lib, func, reason in e.args[0]
        ]
    return [ErrorEntry(code=0, library="", reason=str(e))]


_ALERT_REASON = re.compile(r"alert (?P<name>[a-z0-9 ]+)$")

_SYSTEM_LIBS = {"system library", "BUF routines"}
_SYSTEM_REASONS = ("malloc failure", "system lib", "out of memory")
_CERTIFICATE_LIBS = {
    "x509 certificate routines",
    "X509 V3 routines",
    "PEM routines",
    "asn1 encoding routines",
    "DECODER routines",
}
_CERTIFICATE_REASONS = (
    "certificate verify failed",
    "no certificate",
    "peer did not return a certificate",
    "ca md too weak",
    "ee key too small",
)
_PROTOCOL_REASONS = (
    "wrong version number",
    "unexpected message",
    "unexpected eof",
    "record layer failure",
    "packet length too long",
    "bad record mac",
    "decryption failed",
    "record too long",
    "bad packet length",
    "http request",
    "https proxy request",
    "excessive message size",
    "length mismatch",
    "bad record type",
    "bad length",
)


def alert_from_entry(entry: ErrorEntry) -> Alert | None:
    """
    Extract the alert a peer has sent us, if this entry reports one.
    """
    if (
        entry.code
        and entry.library_code == ERR_LIB_SSL
        and SSL_AD_REASON_OFFSET <= entry.reason_code < SSL_AD_REASON_OFFSET + 256
    ):
        return Alert(entry.reason_code - SSL_AD_REASON_OFFSET, AlertDirection.RECEIVED)
    if m := _ALERT_REASON.search(entry.reason):
        name = m.group("name").strip().upper().replace(" ", "_")
        if name in AlertDescription.__members__:
            return Alert(AlertDescription[name].value, AlertDirection.RECEIVED)
    return None


def classify(entry: ErrorEntry) -> ErrorKind:
    reason = entry.reason.lower()
    if (
        entry.is_system
        or entry.library in _SYSTEM_LIBS
        or any(x in reason for x in _SYSTEM_REASONS)
    ):
        return ErrorKind.SYSTEM
    if alert_from_entry(entry):
        return ErrorKind.HANDSHAKE
    if entry.library in _CERTIFICATE_LIBS or any(
        x in reason for x in _CERTIFICATE_REASONS
    ):
        return ErrorKind.CERTIFICATE
    if any(x in reason for x in _PROTOCOL_REASONS):
        return ErrorKind.PROTOCOL
    if entry.library == "SSL routines":
        return ErrorKind.HANDSHAKE
    return ErrorKind.UNKNOWN


def _specificity(entry: ErrorEntry) -> int:
    kind = classify(entry)
    if kind is ErrorKind.CERTIFICATE:
        return 5
    if kind is ErrorKind.HANDSHAKE:
        return 4 if alert_from_entry(entry) else 2
    if kind is ErrorKind.PROTOCOL:
        return 3
    if kind is ErrorKind.SYSTEM:
        return 1
    return 0


def primary(entries: list[ErrorEntry]) -> ErrorEntry | None:
    """
    The most specific entry. Ties go to the latest entry.
    """
    if not entries:
        return None
    best = max(range(len(entries)), key=lambda i: (_specificity(entries[i]), i))
    return entries[best]


_ERROR_CLASSES: dict[ErrorKind, type[TlsError]] = {
    ErrorKind.HANDSHAKE: HandshakeError,
    ErrorKind.CERTIFICATE: CertificateError,
    ErrorKind.PROTOCOL: ProtocolError,
    ErrorKind.SYSTEM: TlsSystemError,
    ErrorKind.UNKNOWN: TlsError,
}


def map_error(
    entries: list[ErrorEntry],
    *,
    operation: str,
    alert: Alert | None = None,
    detail: str | None = None,
    kind: ErrorKind | None = None,
) -> TlsError:
    """
    Package a drained error queue into a typed exception.

    `kind` overrides the classification of the primary entry, which is useful if the caller
    knows more about the failing operation (e.g. parsing a certificate).
    """
    top = primary(entries)
    if kind is None:
        kind = classify(top) if top else ErrorKind.UNKNOWN
    if alert is None:
        for entry in reversed(entries):
            if alert := alert_from_entry(entry):
                break

    if detail:
        err = detail
    elif top is None:
        err = "unknown error"
    else:
        err = str(top)
        reason = top.reason.lower()
        if kind is ErrorKind.PROTOCOL and (
            "wrong version number" in reason or "packet length too long" in reason
        ):
            err += " (the peer does not seem to speak TLS)"
        elif alert and alert.description == AlertDescription.PROTOCOL_VERSION:
            err += " (cannot agree on a TLS version to use)"
    if alert and alert.name not in err:
        err += f" [{alert}]"
    return _ERROR_CLASSES[kind](
        f"{operation} failed: {err}",
        entries=entries,
        primary=top,
        alert=alert,
    )


def discard_stale(operation: str) -> list[ErrorEntry]:
    stale = drain()
    if stale:
        logger.debug(
            "Discarding %d stale error queue entries before %s: %s",
            len(stale),
            operation,
            "; ".join(str(x) for x in stale),
        )
    return stale


@contextmanager
def native_call(
    operation: str,
    *,
    alert: Callable[[], Alert | None] | None = None,
    detail: Callable[[ErrorEntry | None], str | None] | None = None,
    kind: ErrorKind | None = None,
) -> Iterator[None]:
    """
    Wrap a fallible native call.

    Stray entries are drained before the call so that they cannot be attributed to it.
    pyOpenSSL's non-fatal control flow exceptions (WantRead, WantWrite, ZeroReturn) pass
    through unchanged, everything else is mapped into a `TlsError`.
    """
    discard_stale(operation)
    try:
        yield
    except (
        SSL.WantReadError,
        SSL.WantWriteError,
        SSL.WantX509LookupError,
        SSL.ZeroReturnError,
    ):
        raise
    except SSL.Error as e:
        entries = entries_from_exception(e) + drain()
        top = primary(entries)
        raise map_error(
            entries,
            operation=operation,
            alert=alert() if alert else None,
            detail=detail(top) if detail else None,
            kind=kind,
        ) from e
    finally:
        discard_stale(f"the end of {operation}")
