"""
A sans-I/O TLS connection.

`Connection` owns one native connection, its memory BIO pair and the handshake driver.
Ciphertext is exchanged with `receive_data` / `data_to_send`, plaintext with `recv` / `send`.
The connection never blocks: operations that need more input return `None` or
`DriveResult.WANT_READ`, and pending output is always available from `data_to_send`.
"""

import logging
import weakref

from OpenSSL import SSL

from tlsmimic import native
from tlsmimic.config import Side
from tlsmimic.config import TlsContext
from tlsmimic.error_queue import Alert
from tlsmimic.error_queue import native_call
from tlsmimic.exceptions import ConnectionBrokenError
from tlsmimic.exceptions import ReleasedHandleError
from tlsmimic.exceptions import TlsError
from tlsmimic.exceptions import TlsSystemError
from tlsmimic.handshake import DriveResult
from tlsmimic.handshake import HandshakeDriver
from tlsmimic.handshake import HandshakeState
from tlsmimic.handshake import NegotiatedParameters
from tlsmimic.net.tls import ClientHello
from tlsmimic.net.tls import parse_client_hello

logger = logging.getLogger(__name__)

RECV_SIZE = 65535


class Connection:
    """
    One TLS session. A connection must only be used by a single task at a time.
    """

    def __init__(self, context: TlsContext, server_name: str | None = None):
        self.context = context
        self.server_name = server_name or context.server_name
        self._context_handle = context.native_context()
        try:
            ssl_conn = context.new_ssl_connection(self._context_handle, server_name)
        except BaseException:
            self._context_handle.release()
            raise
        self._conn_handle = native.ConnectionHandle(ssl_conn)
        self.bios = native.MemoryBioPair(ssl_conn)
        self.driver = HandshakeDriver(self.bios, is_client=context.side is Side.CLIENT)
        ssl_conn.set_app_data(weakref.ref(self))

        self._client_hello: ClientHello | None = None
        self._hello_captured = False
        self._broken: TlsError | None = None
        self.ragged_eof = False
        """True if the transport was closed without a close_notify alert."""
        self.closed = False

    def __repr__(self):
        state = "closed" if self.closed else self.state.value
        return f"<Connection {self.context.side.value} {self.server_name or ''} {state}>"

    def record_alert(self, alert: Alert) -> None:
        self.driver.record_alert(alert)

    @property
    def state(self) -> HandshakeState:
        return self.driver.state

    @property
    def broken(self) -> bool:
        return self._broken is not None

    @property
    def error(self) -> TlsError | None:
        """The failure that broke this connection."""
        return self._broken

    @property
    def negotiated(self) -> NegotiatedParameters | None:
        return self.driver.negotiated

    @property
    def alert(self) -> Alert | None:
        return self.driver.last_alert

    @property
    def client_hello(self) -> ClientHello | None:
        """The ClientHello this connection has sent (clients only)."""
        return self._client_hello

    @property
    def ssl_connection(self) -> SSL.Connection:
        return self._conn_handle.raw

    def _check_usable(self) -> None:
        if self.closed:
            raise ReleasedHandleError("The connection has been closed.")
        if self._broken is not None:
            raise ConnectionBrokenError(
                f"The connection is broken: {self._broken}",
                entries=self._broken.entries,
                primary=self._broken.primary,
                alert=self._broken.alert,
            ) from self._broken

    def mark_broken(self, err: TlsError) -> None:
        if self._broken is None:
            logger.debug("Connection broken: %s", err)
            self._broken = err

    def receive_data(self, data: bytes) -> None:
        """Feed ciphertext received from the peer."""
        self._check_usable()
        self.bios.write_incoming(data)

    def receive_eof(self) -> None:
        """Signal that the peer has closed the transport."""
        if not self.closed:
            self.bios.close_incoming()

    @property
    def pending_output(self) -> int:
        if self.closed:
            return 0
        self.bios.pull_outgoing()
        return self.bios.pending_outgoing

    def peek_output(self) -> bytes:
        """Return staged ciphertext without consuming it."""
        if self.closed:
            return b""
        self.bios.pull_outgoing()
        return self.bios.peek_outgoing()

    def consume_output(self, n: int) -> None:
        """Drop the first `n` bytes of staged ciphertext, once they have been written."""
        self.bios.consume_outgoing(n)

    def data_to_send(self) -> bytes:
        """Take all ciphertext that should be sent to the peer."""
        if self.closed:
            return b""
        return self.bios.take_outgoing()

    def do_handshake(self) -> DriveResult:
        self._check_usable()
        if self.driver.state is HandshakeState.COMPLETE:
            return DriveResult.COMPLETE
        try:
            result = self.driver.drive()
        except TlsError as e:
            self.mark_broken(e)
            raise
        if not self._hello_captured and self.context.side is Side.CLIENT:
            self._capture_client_hello()
        if result is DriveResult.COMPLETE:
            self._store_session()
        return result

    def _capture_client_hello(self) -> None:
        # The first flight is staged at once, so the ClientHello is the start of the first output.
        if not self.bios.pending_outgoing:
            return
        self._hello_captured = True
        try:
            self._client_hello = parse_client_hello(self.bios.peek_outgoing())
        except ValueError as e:
            logger.debug("Cannot parse outgoing ClientHello: %s", e)

    def _require_handshake(self, operation: str) -> None:
        self._check_usable()
        if self.driver.state is not HandshakeState.COMPLETE:
            raise RuntimeError(f"Cannot {operation} before the handshake is complete.")

    def recv(self, n: int = RECV_SIZE) -> bytes | None:
        """
        Decrypt up to `n` bytes of application data.

        Returns None if more ciphertext is needed, and b"" at the end of the stream.
        """
        self._require_handshake("receive data")
        conn = self.bios.raw
        try:
            with native_call("reading application data", alert=lambda: self.alert):
                data = conn.recv(n)
        except SSL.WantReadError:
            # Post-handshake messages like session tickets may produce output.
            self.bios.pull_outgoing()
            self._store_session()
            return None
        except SSL.WantWriteError:
            return None
        except SSL.ZeroReturnError:
            self.bios.pull_outgoing()
            return b""
        except TlsError as e:
            if self.bios.incoming_closed and _is_eof(e):
                self.ragged_eof = True
                return b""
            self.mark_broken(e)
            raise
        self.bios.pull_outgoing()
        return data

    def send(self, data: bytes) -> int:
        """Encrypt application data. The ciphertext is staged for `data_to_send`."""
        self._require_handshake("send data")
        if not data:
            return 0
        conn = self.bios.raw
        try:
            with native_call("sending application data", alert=lambda: self.alert):
                conn.sendall(data)
        except (SSL.WantReadError, SSL.WantWriteError):
            # Can't happen with memory BIOs unless the peer renegotiates.
            err = TlsSystemError("Sending application data failed: the engine would block.")
            self.mark_broken(err)
            raise err
        except SSL.ZeroReturnError:
            err = ConnectionBrokenError("Sending application data failed: the peer has closed the connection.")
            self.mark_broken(err)
            raise err
        except TlsError as e:
            self.mark_broken(e)
            raise
        self.bios.pull_outgoing()
        return len(data)

    @property
    def received_shutdown(self) -> bool:
        return not self.closed and bool(self.bios.raw.get_shutdown() & SSL.RECEIVED_SHUTDOWN)

    def shutdown(self) -> bool:
        """
        Send close_notify. Returns True once the peer's close_notify has been received, too.
        """
        self._require_handshake("shut down")
        conn = self.bios.raw
        try:
            with native_call("TLS shutdown", alert=lambda: self.alert):
                done = conn.shutdown()
        except (SSL.WantReadError, SSL.WantWriteError, SSL.ZeroReturnError):
            done = False
        finally:
            self.bios.pull_outgoing()
        return bool(done)

    def _store_session(self) -> None:
        cache = self.context.session_cache
        if cache is None or not self.server_name or self.context.side is not Side.CLIENT:
            return
        if self.closed or self._broken or self.driver.state is not HandshakeState.COMPLETE:
            return
        if session := self.bios.raw.get_session():
            cache.put(self.server_name, session)

    def close(self) -> None:
        """
        Release all native resources. Calling this more than once is fine.

        OpenSSL marks the session of a connection that has not sent close_notify as
        not resumable, so only cleanly shut down connections can be resumed.
        """
        if self.closed:
            return
        try:
            self._store_session()
        finally:
            self.closed = True
            self.bios.release()
            self._conn_handle.release()
            self._context_handle.release()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def _is_eof(e: TlsError) -> bool:
    return any("eof" in x.reason.lower() for x in e.entries)
