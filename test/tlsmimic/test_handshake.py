import logging

import pytest

from tlsmimic.connection import Connection
from tlsmimic.error_queue import AlertDirection
from tlsmimic.exceptions import CertificateError
from tlsmimic.exceptions import ConnectionBrokenError
from tlsmimic.exceptions import HandshakeError
from tlsmimic.exceptions import ProtocolError
from tlsmimic.handshake import DriveResult
from tlsmimic.handshake import HandshakeState
from tlsmimic.net.tls import Version

from .tutils import handshake


@pytest.fixture
def client(client_context):
    with Connection(client_context) as conn:
        yield conn


@pytest.fixture
def server(server_context):
    with Connection(server_context) as conn:
        yield conn


def test_handshake(client, server, server_cert):
    assert client.state is HandshakeState.IDLE
    handshake(client, server)
    assert client.state is server.state is HandshakeState.COMPLETE

    n = client.negotiated
    assert n.version == "TLSv1.3"
    assert n.cipher
    assert n.alpn is None
    assert not n.resumed
    assert n.peer_certificates[0] == server_cert
    assert server.negotiated.peer_certificates == ()
    assert server.negotiated.version == n.version
    assert server.negotiated.cipher == n.cipher


def test_complete_is_idempotent(client, server):
    handshake(client, server)
    negotiated = client.negotiated
    assert client.do_handshake() is DriveResult.COMPLETE
    assert client.driver.drive() is DriveResult.COMPLETE
    assert client.negotiated is negotiated
    assert client.data_to_send() == b""


def test_want_write_then_want_read(client):
    assert client.do_handshake() is DriveResult.WANT_WRITE
    # staged output has to be flushed first
    assert client.do_handshake() is DriveResult.WANT_WRITE
    assert client.state is HandshakeState.IN_PROGRESS
    assert client.data_to_send()
    assert client.do_handshake() is DriveResult.WANT_READ
    assert client.do_handshake() is DriveResult.WANT_READ


def test_resume_after_partial_input(client, server):
    assert server.do_handshake() is DriveResult.WANT_READ
    client.do_handshake()
    hello = client.data_to_send()
    for i in range(len(hello) - 1):
        server.receive_data(hello[i : i + 1])
        assert server.do_handshake() is DriveResult.WANT_READ
        assert server.data_to_send() == b""
    server.receive_data(hello[-1:])
    assert server.do_handshake() is DriveResult.WANT_WRITE
    client.receive_data(server.data_to_send())
    handshake(client, server)


def test_no_reentry(client):
    client.driver._driving = True
    with pytest.raises(RuntimeError, match="re-entered"):
        client.driver.drive()


def test_tls12(client_builder, server, server_cert):
    ctx = client_builder.versions(Version.TLS1_2, Version.TLS1_2).build()
    with Connection(ctx) as client:
        handshake(client, server)
        assert client.negotiated.version == "TLSv1.2"
        assert server.negotiated.version == "TLSv1.2"
        assert client.negotiated.peer_certificates[0] == server_cert
    ctx.close()


@pytest.mark.parametrize("group", ["ffdhe2048", "ffdhe3072"])
def test_finite_field_group(client_builder, server, group):
    ctx = client_builder.groups([group]).versions(Version.TLS1_3, Version.TLS1_3).build()
    with Connection(ctx) as client:
        handshake(client, server)
        assert client.negotiated.group == group
        assert server.negotiated.group == group
    ctx.close()


class TestAlpn:
    def test_server_preference(self, client_builder, server):
        ctx = client_builder.alpn_protocols([b"http/1.1", b"h2"]).build()
        with Connection(ctx) as client:
            handshake(client, server)
            assert client.negotiated.alpn == b"h2"
            assert server.negotiated.alpn == b"h2"
        ctx.close()

    def test_no_overlap(self, client_builder, server):
        ctx = client_builder.alpn_protocols([b"spdy/3"]).build()
        with Connection(ctx) as client:
            handshake(client, server)
            assert client.negotiated.alpn is None
            assert server.negotiated.alpn is None
        ctx.close()


def _first_round(client: Connection, server: Connection) -> None:
    client.do_handshake()
    server.receive_data(client.data_to_send())
    server.do_handshake()
    client.receive_data(server.data_to_send())


def test_hostname_mismatch(client_context, server, caplog):
    caplog.set_level(logging.DEBUG, "tlsmimic")
    with Connection(client_context, server_name="wrong.example") as client:
        _first_round(client, server)
        with pytest.raises(CertificateError, match="Certificate verify failed: hostname mismatch") as exc:
            client.do_handshake()
        err = exc.value
        assert client.state is HandshakeState.FAILED
        assert client.broken
        assert client.error is err
        assert client.alert.direction is AlertDirection.SENT

        # the failure is sticky
        with pytest.raises(CertificateError) as again:
            client.driver.drive()
        assert again.value is err
        with pytest.raises(ConnectionBrokenError) as broken:
            client.do_handshake()
        assert broken.value.__cause__ is err

        # the server learns about it through the alert
        server.receive_data(client.data_to_send())
        with pytest.raises(HandshakeError) as server_err:
            server.do_handshake()
        assert server_err.value.alert.direction is AlertDirection.RECEIVED
        assert server.alert.direction is AlertDirection.RECEIVED
        assert server.alert.fatal
    assert "TLS alert during handshake" in caplog.text


def test_unknown_ca(client_builder, server_context):
    ctx = (
        client_builder.trust_certificates([])
        .server_name("example.com")
        .build()
    )
    with Connection(ctx) as client, Connection(server_context) as server:
        _first_round(client, server)
        with pytest.raises(CertificateError, match="Certificate verify failed"):
            client.do_handshake()
    ctx.close()


def test_eof_during_handshake(server):
    server.receive_data(b"\x16\x03\x01\x00")
    assert server.do_handshake() is DriveResult.WANT_READ
    server.receive_eof()
    with pytest.raises(HandshakeError, match="connection closed during handshake"):
        server.do_handshake()
    assert server.state is HandshakeState.FAILED


def test_not_tls(server):
    server.receive_data(b"GET / HTTP/1.1\r\nHost: example.com\r\n\r\n")
    with pytest.raises(ProtocolError):
        server.do_handshake()
    assert server.broken
