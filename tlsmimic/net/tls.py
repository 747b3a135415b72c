import io
import os
import struct
import threading
from collections.abc import Iterator
from enum import Enum
from pathlib import Path
from typing import BinaryIO

from kaitaistruct import KaitaiStream
from OpenSSL import SSL

from tlsmimic.contrib.kaitaistruct import tls_client_hello


class Version(Enum):
    UNBOUNDED = 0
    TLS1_2 = SSL.TLS1_2_VERSION
    TLS1_3 = SSL.TLS1_3_VERSION


class Verify(Enum):
    VERIFY_NONE = SSL.VERIFY_NONE
    VERIFY_PEER = SSL.VERIFY_PEER


DEFAULT_MIN_VERSION = Version.TLS1_2
DEFAULT_MAX_VERSION = Version.UNBOUNDED
DEFAULT_OPTIONS = SSL.OP_CIPHER_SERVER_PREFERENCE | SSL.OP_NO_COMPRESSION


class MasterSecretLogger:
    def __init__(self, filename: Path):
        self.filename = filename.expanduser()
        self.f: BinaryIO | None = None
        self.lock = threading.Lock()

    # required for functools.wraps, which pyOpenSSL uses.
    __name__ = "MasterSecretLogger"

    def __call__(self, connection: SSL.Connection, keymaterial: bytes) -> None:
        with self.lock:
            if self.f is None:
                self.filename.parent.mkdir(parents=True, exist_ok=True)
                self.f = self.filename.open("ab")
                self.f.write(b"\n")
            self.f.write(keymaterial + b"\n")
            self.f.flush()

    def close(self):
        with self.lock:
            if self.f is not None:
                self.f.close()
                self.f = None


def make_master_secret_logger(filename: str | os.PathLike | None) -> MasterSecretLogger | None:
    if filename:
        return MasterSecretLogger(Path(filename))
    return None


log_master_secret = make_master_secret_logger(
    os.getenv("TLSMIMIC_SSLKEYLOGFILE") or os.getenv("SSLKEYLOGFILE")
)


def starts_like_tls_record(d: bytes) -> bool:
    """
    Returns:
        True, if the passed bytes could be the start of a TLS record
        False, otherwise.
    """
    # TLS ClientHello magic, works for SSLv3, TLSv1.0, TLSv1.1, TLSv1.2, and TLSv1.3
    # We assume that a client sending less than 3 bytes initially is not a TLS client.
    return len(d) > 2 and d[0] == 0x16 and d[1] == 0x03 and 0x00 <= d[2] <= 0x03


def handshake_record_contents(data: bytes) -> Iterator[bytes]:
    """
    Returns a generator that yields the bytes contained in each handshake record.
    This will raise an error on the first non-handshake record, so fully exhausting this
    generator is a bad idea.
    """
    offset = 0
    while True:
        if len(data) < offset + 5:
            return
        record_header = data[offset : offset + 5]
        if not starts_like_tls_record(record_header):
            raise ValueError(f"Expected TLS record, got {record_header!r} instead.")
        record_size = struct.unpack("!H", record_header[3:])[0]
        if record_size == 0:
            raise ValueError("Record must not be empty.")
        offset += 5

        if len(data) < offset + record_size:
            return
        record_body = data[offset : offset + record_size]
        yield record_body
        offset += record_size


def get_client_hello(data: bytes) -> bytes | None:
    """
    Read all TLS records that contain the initial ClientHello.
    Returns the raw handshake packet bytes, without TLS record headers.
    """
    client_hello = b""
    for d in handshake_record_contents(data):
        client_hello += d
        if len(client_hello) >= 4:
            client_hello_size = struct.unpack("!I", b"\x00" + client_hello[1:4])[0] + 4
            if len(client_hello) >= client_hello_size:
                return client_hello[:client_hello_size]
    return None


class ClientHello:
    """
    A TLS ClientHello is the first message sent by the client when initiating TLS.
    """

    _raw_bytes: bytes

    def __init__(self, raw_client_hello: bytes):
        """Create a TLS ClientHello object from raw bytes (without record and handshake headers)."""
        self._raw_bytes = raw_client_hello
        self._client_hello = tls_client_hello.TlsClientHello(
            KaitaiStream(io.BytesIO(raw_client_hello))
        )

    def raw_bytes(self) -> bytes:
        return self._raw_bytes

    @property
    def legacy_version(self) -> int:
        v = self._client_hello.version
        return v.major << 8 | v.minor

    @property
    def random(self) -> bytes:
        r = self._client_hello.random
        return r.gmt_unix_time.to_bytes(4, "big") + r.random

    @property
    def session_id(self) -> bytes:
        return self._client_hello.session_id.sid

    @property
    def cipher_suites(self) -> list[int]:
        """The cipher suites offered by the client (as raw ints)."""
        return self._client_hello.cipher_suites.cipher_suites

    @property
    def compression_methods(self) -> bytes:
        return self._client_hello.compression_methods.compression_methods

    def _extensions(self) -> list:
        if ext := getattr(self._client_hello, "extensions", None):
            return ext.extensions
        return []

    @property
    def extensions(self) -> list[tuple[int, bytes]]:
        """The raw list of extensions in the form of `(extension_type, raw_bytes)` tuples."""
        ret = []
        for extension in self._extensions():
            body = getattr(extension, "_raw_body", extension.body)
            ret.append((extension.type, body))
        return ret

    @property
    def extension_types(self) -> list[int]:
        return [extension.type for extension in self._extensions()]

    @property
    def sni(self) -> str | None:
        """
        The Server Name Indication, which indicates which hostname the client wants to connect to.
        """
        for extension in self._extensions():
            is_valid_sni_extension = (
                extension.type == 0x00
                and len(extension.body.server_names) == 1
                and extension.body.server_names[0].name_type == 0
            )
            if is_valid_sni_extension:
                return extension.body.server_names[0].host_name.decode("ascii")
        return None

    @property
    def alpn_protocols(self) -> list[bytes]:
        """
        The application layer protocols offered by the client as part of the ALPN extension.
        """
        for extension in self._extensions():
            if extension.type == 0x10:
                return list(x.name for x in extension.body.alpn_protocols)
        return []

    def _code_points(self, ext_type: int) -> list[int]:
        for extension in self._extensions():
            if extension.type == ext_type:
                return list(extension.body.code_points)
        return []

    @property
    def supported_groups(self) -> list[int]:
        return self._code_points(0x0A)

    @property
    def signature_algorithms(self) -> list[int]:
        return self._code_points(0x0D)

    def __repr__(self):
        return f"ClientHello(sni: {self.sni}, alpn_protocols: {self.alpn_protocols})"


def parse_client_hello(data: bytes) -> ClientHello | None:
    """
    Check if the supplied bytes contain a full ClientHello message,
    and if so, parse it.

    Returns:
        - A ClientHello object on success
        - None, if the TLS record is not complete

    Raises:
        - A ValueError, if the passed ClientHello is invalid
    """
    client_hello = get_client_hello(data)
    if client_hello:
        if client_hello[0] != 0x01:
            raise ValueError(f"Expected ClientHello, got handshake type {client_hello[0]}.")
        try:
            return ClientHello(client_hello[4:])
        except EOFError as e:
            raise ValueError("Invalid ClientHello") from e
    return None
