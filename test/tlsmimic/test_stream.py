import asyncio

import pytest

from tlsmimic.connection import Connection
from tlsmimic.exceptions import CertificateError
from tlsmimic.exceptions import ConnectionBrokenError
from tlsmimic.exceptions import HandshakeError
from tlsmimic.exceptions import ProtocolError
from tlsmimic.exceptions import TlsSystemError
from tlsmimic.stream import accept
from tlsmimic.stream import connect
from tlsmimic.stream import open_connection
from tlsmimic.stream import ShutdownResult
from tlsmimic.stream import StreamTransport
from tlsmimic.stream import TlsStream

from .tutils import transport_pair


async def stream_pair(client_context, server_context, capacity=None, **kwargs):
    a, b = transport_pair(capacity)
    return await asyncio.gather(
        connect(client_context, a, **kwargs),
        accept(server_context, b, **kwargs),
    )


async def read_exactly(stream: TlsStream, n: int) -> bytes:
    data = b""
    while len(data) < n:
        chunk = await stream.read()
        assert chunk
        data += chunk
    return data


async def test_read_write(client_context, server_context):
    client, server = await stream_pair(client_context, server_context)
    assert client.negotiated.alpn is None
    assert await client.write(b"hello") == 5
    assert await server.read() == b"hello"
    await server.write(b"world")
    assert await client.read() == b"world"
    assert await asyncio.gather(client.aclose(), server.aclose()) == [
        ShutdownResult.CLEAN,
        ShutdownResult.CLEAN,
    ]


async def test_lazy_handshake(client_context, server_context):
    a, b = transport_pair()
    client = TlsStream(Connection(client_context), a)
    server = TlsStream(Connection(server_context), b)
    # the first read or write drives the handshake
    _, data = await asyncio.gather(client.write(b"hello"), server.read())
    assert data == b"hello"
    assert repr(client).startswith("<TlsStream <Connection client example.com")
    await asyncio.gather(client.aclose(), server.aclose())


@pytest.mark.parametrize("capacity", [1, 100])
async def test_small_transport_buffer(client_context, server_context, capacity):
    client, server = await stream_pair(client_context, server_context, capacity)
    payload = bytes(range(256)) * 40
    _, received = await asyncio.gather(
        client.write(payload), read_exactly(server, len(payload))
    )
    assert received == payload
    a, b = client.transport, server.transport
    assert max(len(w) for w in a.writes) <= capacity
    await asyncio.gather(client.aclose(), server.aclose())


@pytest.mark.parametrize("capacity", [1, 100])
async def test_handshake_over_small_transport(client_context, server_context, capacity):
    # the server's session tickets do not fit, and the client is not reading yet
    client, server = await asyncio.wait_for(
        stream_pair(client_context, server_context, capacity), 10
    )
    assert server.negotiated.version == client.negotiated.version == "TLSv1.3"
    await asyncio.gather(client.aclose(), server.aclose())


async def test_simultaneous_writes(client_context, server_context):
    client, server = await stream_pair(client_context, server_context, 100)
    request = b"q" * 5000
    response = b"r" * 5000
    _, _, received_request, received_response = await asyncio.wait_for(
        asyncio.gather(
            client.write(request),
            server.write(response),
            read_exactly(server, len(request)),
            read_exactly(client, len(response)),
        ),
        10,
    )
    assert received_request == request
    assert received_response == response
    await asyncio.gather(client.aclose(), server.aclose())


async def test_cancelled_read(client_context, server_context):
    client, server = await stream_pair(client_context, server_context)
    task = asyncio.create_task(client.read())
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    await server.write(b"after cancel")
    assert await client.read() == b"after cancel"
    await asyncio.gather(client.aclose(), server.aclose())


async def test_cancelled_write(client_context, server_context):
    client, server = await stream_pair(client_context, server_context, capacity=1024)
    payload = b"x" * 50_000
    task = asyncio.create_task(client.write(payload))
    await asyncio.sleep(0.01)
    assert not task.done()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    # the ciphertext stays staged and goes out with the next flush, in order
    _, received = await asyncio.gather(
        client.drain(), read_exactly(server, len(payload))
    )
    assert received == payload
    await client.write(b"!")
    assert await server.read() == b"!"
    await asyncio.gather(client.aclose(), server.aclose())


async def test_clean_shutdown(client_context, server_context):
    client, server = await stream_pair(client_context, server_context)
    closing = asyncio.create_task(client.aclose())
    assert await server.read() == b""
    assert await server.aclose() is ShutdownResult.CLEAN
    assert await closing is ShutdownResult.CLEAN
    assert client.closed
    assert client.connection.closed
    assert client.transport.closed
    # idempotent
    assert await client.aclose() is ShutdownResult.CLEAN


async def test_abrupt_shutdown(client_context, server_context, caplog_async):
    caplog_async.set_level("DEBUG")
    client, server = await stream_pair(
        client_context, server_context, shutdown_timeout=0.1
    )
    # the server never answers our close_notify
    assert await client.aclose() is ShutdownResult.ABRUPT
    await caplog_async.await_log("Abrupt TLS shutdown")
    assert client.connection.closed
    server.connection.close()


async def test_peer_closes_transport(client_context, server_context):
    client, server = await stream_pair(client_context, server_context)
    server.transport.close()
    assert await client.read() == b""
    assert client.connection.ragged_eof
    assert await client.aclose() is ShutdownResult.ABRUPT
    server.connection.close()


async def test_ragged_eof_not_suppressed(client_context, server_context):
    client, server = await stream_pair(
        client_context, server_context, suppress_ragged_eofs=False
    )
    server.transport.close()
    with pytest.raises(ProtocolError, match="without sending close_notify"):
        await client.read()
    await client.aclose()
    server.connection.close()


async def test_transport_error(client_context, server_context):
    client, server = await stream_pair(client_context, server_context)
    client.transport.close()
    with pytest.raises(TlsSystemError) as exc:
        await client.write(b"hello")
    assert isinstance(exc.value.io_error, BrokenPipeError)
    assert client.connection.broken
    with pytest.raises(ConnectionBrokenError):
        await client.write(b"hello")
    assert await client.aclose() is ShutdownResult.ABRUPT
    server.connection.close()


async def test_handshake_failure(client_context, server_context):
    a, b = transport_pair()
    client, server = await asyncio.gather(
        connect(client_context, a, server_name="wrong.example"),
        accept(server_context, b),
        return_exceptions=True,
    )
    assert isinstance(client, CertificateError)
    assert isinstance(server, HandshakeError)
    assert a.closed
    assert b.closed


async def test_wrong_side(client_context, server_context):
    a, b = transport_pair()
    with pytest.raises(ValueError):
        await connect(server_context, a)
    with pytest.raises(ValueError):
        await accept(client_context, b)


async def test_open_connection(client_context, server_context):
    async def handle(reader, writer):
        stream = await accept(server_context, StreamTransport(reader, writer))
        async with stream:
            while data := await stream.read():
                await stream.write(data.upper())

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    async with server:
        stream = await open_connection("127.0.0.1", port, client_context)
        assert stream.connection.client_hello.sni == "example.com"
        await stream.write(b"hello")
        assert await stream.read() == b"HELLO"
        assert await stream.aclose() is ShutdownResult.CLEAN
        await stream.transport.wait_closed()
