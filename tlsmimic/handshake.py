"""
The handshake state machine.

`HandshakeDriver.drive()` runs one step of the native handshake over the connection's memory
BIOs and tells the caller what it needs next. It never performs I/O itself: the caller moves
bytes between the transport and the BIO pair and calls `drive()` again.
"""

import enum
import logging
from dataclasses import dataclass
from typing import NoReturn

from OpenSSL import SSL

from tlsmimic import extensions
from tlsmimic import native
from tlsmimic.certs import Certificate
from tlsmimic.error_queue import Alert
from tlsmimic.error_queue import AlertDescription
from tlsmimic.error_queue import ErrorEntry
from tlsmimic.error_queue import native_call
from tlsmimic.exceptions import CertificateError
from tlsmimic.exceptions import HandshakeError
from tlsmimic.exceptions import TlsError

logger = logging.getLogger(__name__)


class HandshakeState(enum.Enum):
    IDLE = "idle"
    IN_PROGRESS = "in progress"
    COMPLETE = "complete"
    FAILED = "failed"


class DriveResult(enum.Enum):
    COMPLETE = "complete"
    WANT_READ = "want read"
    """The engine needs more bytes from the peer."""
    WANT_WRITE = "want write"
    """Staged output must be flushed to the transport before driving again."""


@dataclass(frozen=True)
class NegotiatedParameters:
    alpn: bytes | None
    group: str | None
    cipher: str | None
    version: str | None
    peer_certificates: tuple[Certificate, ...]
    resumed: bool


class HandshakeDriver:
    def __init__(self, bios: native.MemoryBioPair, is_client: bool):
        self.bios = bios
        self.is_client = is_client
        self.state = HandshakeState.IDLE
        self.error: TlsError | None = None
        self.negotiated: NegotiatedParameters | None = None
        self.alerts: list[Alert] = []
        self._driving = False

    def __repr__(self):
        return f"<HandshakeDriver {self.state.value}>"

    def record_alert(self, alert: Alert) -> None:
        self.alerts.append(alert)
        if alert.description == AlertDescription.CLOSE_NOTIFY:
            logger.debug("TLS close_notify %s", alert.direction.value)
        elif self.state is HandshakeState.COMPLETE:
            logger.warning("TLS alert after handshake: %s", alert)
        else:
            logger.debug("TLS alert during handshake: %s", alert)

    @property
    def last_alert(self) -> Alert | None:
        """The most recent alert that signals an error."""
        for alert in reversed(self.alerts):
            if alert.description != AlertDescription.CLOSE_NOTIFY:
                return alert
        return None

    def drive(self) -> DriveResult:
        """
        Advance the handshake by one step.

        Raises the recorded `TlsError` if the handshake has failed, now or earlier.
        """
        if self._driving:
            raise RuntimeError("The handshake driver must not be re-entered.")
        if self.state is HandshakeState.COMPLETE:
            return DriveResult.COMPLETE
        if self.state is HandshakeState.FAILED:
            assert self.error
            raise self.error

        self._driving = True
        try:
            if self.bios.pending_outgoing:
                return DriveResult.WANT_WRITE
            self.state = HandshakeState.IN_PROGRESS
            return self._step()
        finally:
            self._driving = False

    def _step(self) -> DriveResult:
        conn = self.bios.raw
        try:
            with native_call(
                "TLS handshake", alert=lambda: self.last_alert, detail=self._detail
            ):
                try:
                    conn.do_handshake()
                except SSL.ZeroReturnError:
                    raise SSL.SysCallError(-1, "Unexpected EOF") from None
        except (SSL.WantReadError, SSL.WantWriteError) as e:
            self.bios.pull_outgoing()
            if self.bios.pending_outgoing or isinstance(e, SSL.WantWriteError):
                return DriveResult.WANT_WRITE
            return DriveResult.WANT_READ
        except SSL.WantX509LookupError:
            self.bios.pull_outgoing()
            return DriveResult.WANT_READ
        except TlsError as e:
            self._fail(e)
        # Send any remaining output (e.g. the client Finished) with the first flush.
        self.bios.pull_outgoing()
        self._complete(conn)
        return DriveResult.COMPLETE

    def _fail(self, e: TlsError) -> NoReturn:
        # Whatever the engine wants to send now is most likely an alert for the peer.
        try:
            self.bios.pull_outgoing()
        except TlsError:
            pass
        if self.bios.incoming_closed and not isinstance(e, CertificateError):
            err: TlsError = HandshakeError(
                "TLS handshake failed: connection closed during handshake",
                entries=e.entries,
                primary=e.primary,
                alert=e.alert,
            )
            err.__cause__ = e.__cause__
        else:
            err = e
        self.state = HandshakeState.FAILED
        self.error = err
        logger.debug("%s", err)
        raise err

    def _detail(self, top: ErrorEntry | None) -> str | None:
        # provide more detailed information for some errors.
        if top and "certificate verify failed" in top.reason:
            verify_result = SSL._lib.SSL_get_verify_result(self.bios.raw._ssl)  # type: ignore
            error = SSL._ffi.string(  # type: ignore
                SSL._lib.X509_verify_cert_error_string(verify_result)  # type: ignore
            ).decode()
            return f"Certificate verify failed: {error}"
        return None

    def _complete(self, conn: SSL.Connection) -> None:
        # If called on the client side, the stack also contains the peer's certificate; if called on the server
        # side, the peer's certificate must be obtained separately.
        all_certs = conn.get_peer_cert_chain() or []
        if not self.is_client:
            cert = conn.get_peer_certificate()
            if cert:
                all_certs.insert(0, cert)

        get_group_name = getattr(conn, "get_group_name", None)
        group = get_group_name() if get_group_name else None
        if isinstance(group, bytes):
            group = group.decode()
        if group:
            try:
                group = extensions.named_group(group).name
            except KeyError:
                pass
        if native.has_symbol("SSL_session_reused"):
            resumed = bool(SSL._lib.SSL_session_reused(conn._ssl))  # type: ignore
        else:
            resumed = False

        self.negotiated = NegotiatedParameters(
            alpn=conn.get_alpn_proto_negotiated() or None,
            group=group,
            cipher=conn.get_cipher_name(),
            version=conn.get_protocol_version_name(),
            peer_certificates=tuple(Certificate.from_pyopenssl(x) for x in all_certs),
            resumed=resumed,
        )
        self.state = HandshakeState.COMPLETE
        logger.debug(
            "TLS handshake complete: %s %s alpn=%r group=%s resumed=%s",
            self.negotiated.version,
            self.negotiated.cipher,
            self.negotiated.alpn,
            self.negotiated.group,
            self.negotiated.resumed,
        )
