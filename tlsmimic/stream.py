"""
Async TLS streams on top of any non-blocking transport.

A `TlsStream` moves ciphertext between a `Transport` and a `Connection`'s memory BIOs and
suspends whenever the transport is not ready. The handshake is driven transparently by the
first read or write, or explicitly with `do_handshake()`.

All ciphertext the engine produces is staged in the connection before the stream awaits
anything, so cancelling a pending operation never loses or reorders bytes: the next
operation flushes the remainder first.
"""

import asyncio
import enum
import logging
from typing import Protocol

from tlsmimic.config import Side
from tlsmimic.config import TlsContext
from tlsmimic.connection import Connection
from tlsmimic.connection import RECV_SIZE
from tlsmimic.exceptions import ProtocolError
from tlsmimic.exceptions import TlsError
from tlsmimic.exceptions import TlsSystemError
from tlsmimic.handshake import DriveResult
from tlsmimic.handshake import HandshakeState

logger = logging.getLogger(__name__)

READ_SIZE = 65535
WRITE_HIGH_WATER_MARK = 2**18
SHUTDOWN_CYCLES = 4
SHUTDOWN_TIMEOUT = 1.0


class Transport(Protocol):
    """
    A non-blocking byte transport.
    """

    def read_nowait(self, size: int) -> bytes | None:
        """Return up to `size` bytes, `b""` at EOF, or None if nothing is available yet."""

    def write_nowait(self, data: bytes) -> int | None:
        """Accept a prefix of `data` and return its length, or None if the transport is full."""

    async def wait_readable(self) -> None:
        ...

    async def wait_writable(self) -> None:
        ...

    def close(self) -> None:
        ...


class StreamTransport:
    """
    `Transport` on top of an asyncio stream pair.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        write_limit: int = WRITE_HIGH_WATER_MARK,
    ):
        self.reader = reader
        self.writer = writer
        self.write_limit = write_limit
        self._buffer = bytearray()
        self._eof = False

    def read_nowait(self, size: int) -> bytes | None:
        if self._buffer:
            data = bytes(self._buffer[:size])
            del self._buffer[:size]
            return data
        if self._eof:
            return b""
        return None

    async def wait_readable(self) -> None:
        if self._buffer or self._eof:
            return
        data = await self.reader.read(READ_SIZE)
        if data:
            self._buffer.extend(data)
        else:
            self._eof = True

    def write_nowait(self, data: bytes) -> int | None:
        if self.writer.is_closing():
            raise BrokenPipeError("The transport is closing.")
        if self.writer.transport.get_write_buffer_size() >= self.write_limit:
            return None
        self.writer.write(data)
        return len(data)

    async def wait_writable(self) -> None:
        await self.writer.drain()

    def close(self) -> None:
        if not self.writer.is_closing():
            self.writer.close()

    async def wait_closed(self) -> None:
        try:
            await self.writer.wait_closed()
        except OSError:
            pass


class ShutdownResult(enum.Enum):
    CLEAN = "clean"
    """Both sides have exchanged close_notify alerts."""
    ABRUPT = "abrupt"
    """Resources were released without a complete close_notify exchange."""


class TlsStream:
    """
    Encrypted reads and writes over a transport.
    """

    def __init__(
        self,
        connection: Connection,
        transport: Transport,
        *,
        suppress_ragged_eofs: bool = True,
        shutdown_cycles: int = SHUTDOWN_CYCLES,
        shutdown_timeout: float = SHUTDOWN_TIMEOUT,
    ):
        self.connection = connection
        self.transport = transport
        self.suppress_ragged_eofs = suppress_ragged_eofs
        self.shutdown_cycles = shutdown_cycles
        self.shutdown_timeout = shutdown_timeout
        self.shutdown_result: ShutdownResult | None = None

    def __repr__(self):
        return f"<TlsStream {self.connection!r}>"

    @property
    def closed(self) -> bool:
        return self.shutdown_result is not None

    @property
    def negotiated(self):
        return self.connection.negotiated

    def _transport_failed(self, e: OSError, operation: str) -> TlsSystemError:
        err = TlsSystemError(f"{operation} failed: {e}")
        err.__cause__ = e
        self.connection.mark_broken(err)
        return err

    async def _flush(self) -> int:
        """Write all staged ciphertext to the transport."""
        flushed = 0
        while data := self.connection.peek_output():
            try:
                n = self.transport.write_nowait(data)
                if n is None:
                    await self.transport.wait_writable()
                    continue
            except OSError as e:
                raise self._transport_failed(e, "Writing to the transport") from e
            self.connection.consume_output(n)
            flushed += n
        return flushed

    def _flush_nowait(self) -> None:
        """Write as much staged ciphertext as the transport accepts right now."""
        while data := self.connection.peek_output():
            try:
                n = self.transport.write_nowait(data)
            except OSError as e:
                raise self._transport_failed(e, "Writing to the transport") from e
            if n is None:
                return
            self.connection.consume_output(n)

    async def _wait_readable_or_writable(self) -> None:
        waiters = [
            asyncio.ensure_future(self.transport.wait_readable()),
            asyncio.ensure_future(self.transport.wait_writable()),
        ]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for w in waiters:
                w.cancel()
        for w in waiters:
            if w.done() and not w.cancelled():
                w.result()

    async def _fill(self) -> bool:
        """
        Move the next chunk of transport bytes into the connection. Returns False at EOF.

        Staged ciphertext is written whenever the transport has room, but the transport
        becoming readable is never held up by a full outgoing buffer.
        """
        try:
            data = self.transport.read_nowait(READ_SIZE)
            while data is None:
                self._flush_nowait()
                if self.connection.peek_output():
                    await self._wait_readable_or_writable()
                else:
                    await self.transport.wait_readable()
                data = self.transport.read_nowait(READ_SIZE)
        except OSError as e:
            raise self._transport_failed(e, "Reading from the transport") from e
        if data:
            self.connection.receive_data(data)
            return True
        self.connection.receive_eof()
        return False

    async def do_handshake(self) -> None:
        while True:
            try:
                result = self.connection.do_handshake()
            except TlsError:
                await self._send_alert()
                raise
            if result is DriveResult.COMPLETE:
                if self._only_post_handshake_output():
                    self._flush_nowait()
                else:
                    await self._flush()
                return
            if result is DriveResult.WANT_WRITE:
                await self._flush()
            elif not await self._flush():
                await self._fill()

    def _only_post_handshake_output(self) -> bool:
        # A TLS 1.3 server has sent its Finished before the client's arrives, so what is
        # left are session tickets, which the client does not wait for.
        n = self.connection.negotiated
        return (
            self.connection.context.side is Side.SERVER
            and n is not None
            and n.version == "TLSv1.3"
        )

    async def _send_alert(self) -> None:
        """Flush whatever the engine staged after a failure, usually a fatal alert."""
        if self.connection.closed:
            return
        try:
            await asyncio.wait_for(self._flush(), self.shutdown_timeout)
        except (TlsError, OSError, asyncio.TimeoutError) as e:
            logger.debug("Cannot send TLS alert: %s", e)

    async def read(self, n: int = RECV_SIZE) -> bytes:
        """
        Read up to `n` bytes of application data. Returns b"" at the end of the stream.
        """
        await self.do_handshake()
        while True:
            data = self.connection.recv(n)
            self._flush_nowait()
            if data is None:
                await self._fill()
            elif data:
                return data
            else:
                if self.connection.ragged_eof and not self.suppress_ragged_eofs:
                    raise ProtocolError(
                        "Reading application data failed: the peer closed the connection "
                        "without sending close_notify."
                    )
                return b""

    async def write(self, data: bytes) -> int:
        """
        Encrypt and send `data`. Returns once all ciphertext has been handed to the transport.
        """
        await self.do_handshake()
        # Older ciphertext goes first.
        await self._flush()
        n = self.connection.send(data)
        await self._flush()
        return n

    async def drain(self) -> None:
        await self._flush()

    async def aclose(self) -> ShutdownResult:
        """
        Shut down TLS and release the connection. Never raises on an uncooperative peer.
        """
        if self.shutdown_result is not None:
            return self.shutdown_result
        result = ShutdownResult.ABRUPT
        try:
            conn = self.connection
            if (
                not conn.closed
                and not conn.broken
                and conn.state is HandshakeState.COMPLETE
            ):
                result = await self._shutdown()
        finally:
            self.shutdown_result = result
            self.connection.close()
            self.transport.close()
        if result is ShutdownResult.ABRUPT:
            logger.debug("Abrupt TLS shutdown: %r", self.connection)
        return result

    async def _shutdown(self) -> ShutdownResult:
        conn = self.connection
        try:
            if conn.shutdown():
                await asyncio.wait_for(self._flush(), self.shutdown_timeout)
                return ShutdownResult.CLEAN
            self._flush_nowait()
            for cycle in range(self.shutdown_cycles + 1):
                data = conn.recv()
                if data == b"":
                    if not conn.received_shutdown:
                        return ShutdownResult.ABRUPT
                    await asyncio.wait_for(self._flush(), self.shutdown_timeout)
                    return ShutdownResult.CLEAN
                if cycle == self.shutdown_cycles:
                    break
                if data is None:
                    await asyncio.wait_for(self._fill(), self.shutdown_timeout)
                # Application data after our close_notify is discarded.
        except (TlsError, OSError, asyncio.TimeoutError) as e:
            logger.debug("TLS shutdown failed: %s", e)
        return ShutdownResult.ABRUPT

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()


async def _handshake(stream: TlsStream) -> TlsStream:
    try:
        await stream.do_handshake()
    except BaseException:
        stream.connection.close()
        stream.transport.close()
        raise
    return stream


async def connect(
    context: TlsContext,
    transport: Transport,
    server_name: str | None = None,
    **kwargs,
) -> TlsStream:
    """Perform a client-side TLS handshake over `transport`."""
    if context.side is not Side.CLIENT:
        raise ValueError("connect() needs a client context.")
    try:
        conn = context.connection(server_name=server_name)
    except BaseException:
        transport.close()
        raise
    return await _handshake(TlsStream(conn, transport, **kwargs))


async def accept(context: TlsContext, transport: Transport, **kwargs) -> TlsStream:
    """Perform a server-side TLS handshake over `transport`."""
    if context.side is not Side.SERVER:
        raise ValueError("accept() needs a server context.")
    try:
        conn = context.connection()
    except BaseException:
        transport.close()
        raise
    return await _handshake(TlsStream(conn, transport, **kwargs))


async def open_connection(
    host: str,
    port: int,
    context: TlsContext,
    *,
    server_name: str | None = None,
    **kwargs,
) -> TlsStream:
    """Open a TCP connection to `host` and establish TLS over it."""
    reader, writer = await asyncio.open_connection(host, port)
    transport = StreamTransport(reader, writer)
    return await connect(
        context, transport, server_name or context.server_name or host, **kwargs
    )
