"""
Fluent configuration of a TLS context.

A `ContextBuilder` collects handshake options, validating each one when it is set.
`build()` freezes the builder and returns an immutable `TlsContext`, which is shared by
all connections created from it. The native OpenSSL context is only created when the first
connection needs it, so a context can be built and inspected even if the linked TLS library
lacks some of the requested knobs; those then fail with `Unsupported` on first use.
"""

import dataclasses
import enum
import ipaddress
import logging
import threading
import weakref
from collections.abc import Iterable
from dataclasses import dataclass
from os import PathLike
from typing import Any
from typing import TYPE_CHECKING

import certifi
from OpenSSL import SSL

from tlsmimic import extensions
from tlsmimic import native
from tlsmimic.certs import Certificate
from tlsmimic.certs import DHParams
from tlsmimic.certs import PrivateKey
from tlsmimic.error_queue import Alert
from tlsmimic.error_queue import AlertDirection
from tlsmimic.error_queue import drain
from tlsmimic.error_queue import native_call
from tlsmimic.exceptions import ConfigError
from tlsmimic.exceptions import ConfigErrorKind
from tlsmimic.exceptions import ErrorKind
from tlsmimic.exceptions import Unsupported
from tlsmimic.net import check
from tlsmimic.net import tls as net_tls
from tlsmimic.session_cache import SessionCache

if TYPE_CHECKING:  # pragma: no cover
    from tlsmimic.connection import Connection

logger = logging.getLogger(__name__)

MIN_RECORD_SIZE_LIMIT = 64
MAX_RECORD_SIZE_LIMIT = 2**14 + 1
MAX_ALPN_LENGTH = 255

# X509_CHECK_FLAG_NEVER_CHECK_SUBJECT is not available in LibreSSL, ignore gracefully as it's not critical.
DEFAULT_HOSTFLAGS = (
    SSL._lib.X509_CHECK_FLAG_NO_PARTIAL_WILDCARDS  # type: ignore
    | getattr(SSL._lib, "X509_CHECK_FLAG_NEVER_CHECK_SUBJECT", 0)  # type: ignore
)

SESSION_ID_CONTEXT = b"tlsmimic"

# SSL_CTX_set1_curves_list is the older name of the same ctrl and takes group names, too.
GROUPS_LIST_SETTERS = ("SSL_CTX_set1_groups_list", "SSL_CTX_set1_curves_list")


class Side(enum.Enum):
    CLIENT = "client"
    SERVER = "server"


@dataclass(frozen=True)
class TlsOptions:
    """
    Everything a `ContextBuilder` has collected. Sequences keep the order in which
    they were supplied.
    """

    side: Side
    groups: tuple[extensions.NamedGroup, ...] | None = None
    signature_algorithms: tuple[extensions.SignatureScheme, ...] | None = None
    alpn_protocols: tuple[bytes, ...] | None = None
    server_name: str | None = None
    grease: bool = False
    extension_order: tuple[int, ...] | None = None
    record_size_limit: int | None = None
    certificate_compression: tuple[extensions.CertificateCompressionAlgorithm, ...] | None = None
    raw_public_key: bool = False
    min_version: net_tls.Version = net_tls.DEFAULT_MIN_VERSION
    max_version: net_tls.Version = net_tls.DEFAULT_MAX_VERSION
    cipher_list: tuple[str, ...] | None = None
    verify: net_tls.Verify | None = None
    ca_file: str | None = None
    ca_path: str | None = None
    trusted_certificates: tuple[Certificate, ...] = ()
    certificate_chain: tuple[Certificate, ...] = ()
    private_key: PrivateKey | None = None
    dh_params: DHParams | None = None
    session_cache: SessionCache | None = None
    keylog: net_tls.MasterSecretLogger | None = None

    @property
    def effective_verify(self) -> net_tls.Verify:
        if self.verify is not None:
            return self.verify
        if self.side is Side.CLIENT:
            return net_tls.Verify.VERIFY_PEER
        return net_tls.Verify.VERIFY_NONE


def _version_rank(v: net_tls.Version, unbounded: int) -> int:
    return unbounded if v is net_tls.Version.UNBOUNDED else v.value


def _alpn_bytes(proto: bytes | str) -> bytes:
    if isinstance(proto, str):
        try:
            proto = proto.encode("ascii")
        except UnicodeEncodeError:
            proto = proto.encode("utf-8")
    if not isinstance(proto, bytes):
        raise ConfigError(
            ConfigErrorKind.INVALID_VALUE,
            f"ALPN protocols must be bytes or str, not {type(proto).__name__}.",
        )
    if not 1 <= len(proto) <= MAX_ALPN_LENGTH:
        raise ConfigError(
            ConfigErrorKind.PROTOCOL_TOO_LONG,
            f"ALPN protocol names must be 1 to {MAX_ALPN_LENGTH} bytes long, "
            f"got {len(proto)} bytes.",
        )
    return proto


def _validate_groups(groups: tuple[extensions.NamedGroup, ...]) -> None:
    if not groups:
        raise ConfigError(ConfigErrorKind.EMPTY, "The list of groups must not be empty.")
    if not any(g.name in extensions.REQUIRED_GROUPS for g in groups):
        raise ConfigError(
            ConfigErrorKind.UNSUPPORTED_GROUP,
            f"Group list {', '.join(g.name for g in groups)} must contain one of "
            f"{', '.join(sorted(extensions.REQUIRED_GROUPS))}.",
        )


class ContextBuilder:
    """
    Accumulates the options of a `TlsContext`.

    Every setter validates its input immediately, replaces the previous value of that
    option and returns the builder. After `build()` every setter raises a `ConfigError`
    of kind `FROZEN`.
    """

    def __init__(self, side: Side = Side.CLIENT):
        self._options = TlsOptions(side=side, keylog=net_tls.log_master_secret)
        self._frozen = False

    @property
    def side(self) -> Side:
        return self._options.side

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def options(self) -> TlsOptions:
        return self._options

    def _set(self, **changes: Any) -> "ContextBuilder":
        if self._frozen:
            raise ConfigError(
                ConfigErrorKind.FROZEN,
                f"Cannot change {', '.join(changes)} after the context has been built.",
            )
        self._options = dataclasses.replace(self._options, **changes)
        return self

    def _check_mutable(self, option: str) -> None:
        if self._frozen:
            raise ConfigError(
                ConfigErrorKind.FROZEN,
                f"Cannot change {option} after the context has been built.",
            )

    def groups(self, ids: Iterable[str | int | extensions.NamedGroup]) -> "ContextBuilder":
        """Supported key exchange groups, most preferred first."""
        self._check_mutable("groups")
        groups: list[extensions.NamedGroup] = []
        for ident in ids:
            try:
                group = extensions.named_group(ident)
            except (KeyError, ValueError):
                raise ConfigError(
                    ConfigErrorKind.UNSUPPORTED_GROUP, f"Unsupported group: {ident!r}"
                ) from None
            if group not in groups:
                groups.append(group)
        _validate_groups(tuple(groups))
        return self._set(groups=tuple(groups))

    def signature_algorithms(
        self, ids: Iterable[str | int | extensions.SignatureScheme]
    ) -> "ContextBuilder":
        self._check_mutable("signature_algorithms")
        schemes: list[extensions.SignatureScheme] = []
        for ident in ids:
            try:
                scheme = extensions.signature_scheme(ident)
            except (KeyError, ValueError):
                raise ConfigError(
                    ConfigErrorKind.UNKNOWN_SIGNATURE_ALGORITHM,
                    f"Unknown signature algorithm: {ident!r}",
                ) from None
            if scheme not in schemes:
                schemes.append(scheme)
        if not schemes:
            raise ConfigError(
                ConfigErrorKind.EMPTY, "The list of signature algorithms must not be empty."
            )
        return self._set(signature_algorithms=tuple(schemes))

    def alpn_protocols(self, protos: Iterable[bytes | str]) -> "ContextBuilder":
        self._check_mutable("alpn_protocols")
        if isinstance(protos, (bytes, str)):
            raise ConfigError(
                ConfigErrorKind.INVALID_VALUE,
                "ALPN protocols must be passed as a list, not as a single value.",
            )
        alpn = tuple(_alpn_bytes(p) for p in protos)
        if not alpn:
            raise ConfigError(ConfigErrorKind.EMPTY, "The list of ALPN protocols must not be empty.")
        return self._set(alpn_protocols=alpn)

    def server_name(self, host: str | None) -> "ContextBuilder":
        """The SNI hostname. Clients also verify the server certificate against it."""
        self._check_mutable("server_name")
        if host is not None and not check.is_valid_dns_name(host):
            raise ConfigError(
                ConfigErrorKind.INVALID_HOSTNAME, f"Invalid SNI hostname: {host!r}"
            )
        return self._set(server_name=host)

    def grease(self, enabled: bool = True) -> "ContextBuilder":
        return self._set(grease=bool(enabled))

    def extension_order(self, ids: Iterable[str | int]) -> "ContextBuilder":
        """
        The order of ClientHello extensions. The list is applied verbatim;
        GREASE markers may appear any number of times.

        Servers do not send a ClientHello, so `build()` rejects an extension order on
        a server builder with `ConfigErrorKind.INVALID_VALUE`.
        """
        self._check_mutable("extension_order")
        order: list[int] = []
        for ident in ids:
            try:
                ext = extensions.extension_id(ident)
            except (KeyError, ValueError):
                raise ConfigError(
                    ConfigErrorKind.UNKNOWN_EXTENSION, f"Unknown extension: {ident!r}"
                ) from None
            if ext in order and not extensions.is_grease(ext):
                raise ConfigError(
                    ConfigErrorKind.INVALID_VALUE,
                    f"Extension {ident!r} is listed more than once.",
                )
            order.append(ext)
        if not order:
            raise ConfigError(ConfigErrorKind.EMPTY, "The extension order must not be empty.")
        return self._set(extension_order=tuple(order))

    def record_size_limit(self, limit: int | None) -> "ContextBuilder":
        self._check_mutable("record_size_limit")
        if limit is not None and not (
            MIN_RECORD_SIZE_LIMIT <= limit <= MAX_RECORD_SIZE_LIMIT
        ):
            raise ConfigError(
                ConfigErrorKind.INVALID_VALUE,
                f"Record size limit must be between {MIN_RECORD_SIZE_LIMIT} and "
                f"{MAX_RECORD_SIZE_LIMIT}, not {limit}.",
            )
        return self._set(record_size_limit=limit)

    def certificate_compression(self, algorithms: Iterable[str | int]) -> "ContextBuilder":
        self._check_mutable("certificate_compression")
        algs: list[extensions.CertificateCompressionAlgorithm] = []
        for ident in algorithms:
            try:
                alg = extensions.compression_algorithm(ident)
            except (KeyError, ValueError, AttributeError):
                raise ConfigError(
                    ConfigErrorKind.INVALID_VALUE,
                    f"Unknown certificate compression algorithm: {ident!r}",
                ) from None
            if alg not in algs:
                algs.append(alg)
        return self._set(certificate_compression=tuple(algs) or None)

    def raw_public_key(self, enabled: bool = True) -> "ContextBuilder":
        if enabled:
            raise Unsupported("Raw public keys (RFC 7250) are not supported.")
        self._check_mutable("raw_public_key")
        return self

    def versions(
        self,
        min_version: net_tls.Version = net_tls.DEFAULT_MIN_VERSION,
        max_version: net_tls.Version = net_tls.DEFAULT_MAX_VERSION,
    ) -> "ContextBuilder":
        self._check_mutable("versions")
        if _version_rank(min_version, 0) > _version_rank(max_version, 2**31):
            raise ConfigError(
                ConfigErrorKind.INVALID_VALUE,
                f"Minimum TLS version {min_version.name} is above the maximum {max_version.name}.",
            )
        return self._set(min_version=min_version, max_version=max_version)

    def cipher_list(self, names: Iterable[str]) -> "ContextBuilder":
        """OpenSSL cipher names for TLS 1.2 and below."""
        self._check_mutable("cipher_list")
        ciphers = tuple(names)
        if not ciphers:
            raise ConfigError(ConfigErrorKind.EMPTY, "The cipher list must not be empty.")
        if not all(isinstance(c, str) and c and ":" not in c for c in ciphers):
            raise ConfigError(
                ConfigErrorKind.INVALID_VALUE, f"Invalid cipher list: {ciphers!r}"
            )
        return self._set(cipher_list=ciphers)

    def verify(self, mode: net_tls.Verify) -> "ContextBuilder":
        return self._set(verify=mode)

    def trust_store(
        self,
        ca_file: str | PathLike | None = None,
        ca_path: str | PathLike | None = None,
    ) -> "ContextBuilder":
        """Trusted CA certificates. Defaults to the certifi bundle."""
        return self._set(
            ca_file=str(ca_file) if ca_file is not None else None,
            ca_path=str(ca_path) if ca_path is not None else None,
        )

    def trust_certificates(self, certs: Iterable[Certificate]) -> "ContextBuilder":
        """Additional trust anchors, e.g. a private CA."""
        return self._set(trusted_certificates=tuple(certs))

    def certificate_chain(
        self, chain: Iterable[Certificate], key: PrivateKey
    ) -> "ContextBuilder":
        """The certificate chain (leaf first) and its private key."""
        self._check_mutable("certificate_chain")
        chain = tuple(chain)
        if not chain:
            raise ConfigError(ConfigErrorKind.EMPTY, "The certificate chain must not be empty.")
        return self._set(certificate_chain=chain, private_key=key)

    def dh_params(self, params: DHParams | None) -> "ContextBuilder":
        return self._set(dh_params=params)

    def session_cache(self, cache: SessionCache | None) -> "ContextBuilder":
        return self._set(session_cache=cache)

    def keylog(self, path: str | PathLike | None) -> "ContextBuilder":
        """Write TLS secrets in NSS key log format. Pass None to disable."""
        return self._set(keylog=net_tls.make_master_secret_logger(path))

    def build(self) -> "TlsContext":
        """
        Validate the complete configuration and freeze the builder.
        On failure, the builder is left untouched and can still be modified.
        """
        self._check_mutable("the configuration")
        opts = self._options
        if opts.alpn_protocols is not None:
            for proto in opts.alpn_protocols:
                _alpn_bytes(proto)
        if opts.groups is not None:
            _validate_groups(opts.groups)
        if opts.raw_public_key:
            raise Unsupported("Raw public keys (RFC 7250) are not supported.")
        if opts.side is Side.SERVER and not opts.certificate_chain:
            raise ConfigError(
                ConfigErrorKind.INVALID_VALUE,
                "A server context needs a certificate chain and private key.",
            )
        if opts.side is Side.SERVER and opts.extension_order is not None:
            raise ConfigError(
                ConfigErrorKind.INVALID_VALUE,
                "The extension order can only be set for clients.",
            )
        self._frozen = True
        return TlsContext(opts)


class TlsContext:
    """
    An immutable TLS configuration, shared by any number of connections.
    """

    def __init__(self, options: TlsOptions):
        self.options = options
        self._handle: native.ContextHandle | None = None
        self._credentials: list[native.SharedHandle] = []
        self._lock = threading.Lock()

    def __repr__(self):
        return f"<TlsContext {self.side.value} alpn={self.alpn_protocols!r} groups={self.groups!r}>"

    @property
    def side(self) -> Side:
        return self.options.side

    @property
    def alpn_protocols(self) -> tuple[bytes, ...]:
        return self.options.alpn_protocols or ()

    @property
    def groups(self) -> tuple[str, ...]:
        return tuple(g.name for g in self.options.groups or ())

    @property
    def signature_algorithms(self) -> tuple[str, ...]:
        return tuple(s.name for s in self.options.signature_algorithms or ())

    @property
    def extension_order(self) -> tuple[int, ...]:
        return self.options.extension_order or ()

    @property
    def server_name(self) -> str | None:
        return self.options.server_name

    @property
    def session_cache(self) -> SessionCache | None:
        return self.options.session_cache

    @property
    def materialized(self) -> bool:
        return self._handle is not None and not self._handle.released

    def native_context(self) -> native.ContextHandle:
        """
        Return a new shared guard for the native context, creating it on first use.
        """
        with self._lock:
            if self._handle is None or self._handle.released:
                self._handle = self._materialize()
            return self._handle.share()

    def close(self) -> None:
        """
        Drop this context's own references. Connections that are still alive keep the
        native context until they are closed.
        """
        with self._lock:
            if self._handle is not None:
                self._handle.release()
                self._handle = None
            for h in self._credentials:
                h.release()
            self._credentials.clear()

    def connection(self, server_name: str | None = None) -> "Connection":
        from tlsmimic.connection import Connection

        return Connection(self, server_name=server_name)

    def _materialize(self) -> native.ContextHandle:
        opts = self.options
        if opts.side is Side.CLIENT:
            method = SSL.TLS_CLIENT_METHOD
        else:
            method = SSL.TLS_SERVER_METHOD
        with native_call("creating the TLS context"):
            context = SSL.Context(method)
        credentials: list[native.SharedHandle] = []
        try:
            self._configure_versions(context)
            context.set_options(net_tls.DEFAULT_OPTIONS)

            if opts.cipher_list is not None:
                with native_call("setting the cipher list"):
                    context.set_cipher_list(":".join(opts.cipher_list).encode())
            if opts.groups is not None:
                self._set_list(
                    context,
                    GROUPS_LIST_SETTERS,
                    [g.native_name for g in opts.groups],
                    "groups",
                )
            if opts.signature_algorithms is not None:
                self._set_list(
                    context,
                    ("SSL_CTX_set1_sigalgs_list",),
                    [s.native_name for s in opts.signature_algorithms],
                    "signature algorithms",
                )
            self._configure_fingerprint(context)
            credentials = self._configure_credentials(context)
            self._configure_sessions(context)

            if opts.keylog:
                context.set_keylog_callback(opts.keylog)
            context.set_info_callback(_info_callback)
        except BaseException:
            for h in credentials:
                h.release()
            drain()
            raise

        self._credentials = credentials
        logger.debug(
            "Created %s context on %s", opts.side.value, native.openssl_version()
        )
        return native.ContextHandle(context)

    def _configure_versions(self, context: SSL.Context) -> None:
        opts = self.options
        ok = SSL._lib.SSL_CTX_set_min_proto_version(context._context, opts.min_version.value)  # type: ignore
        ok += SSL._lib.SSL_CTX_set_max_proto_version(context._context, opts.max_version.value)  # type: ignore
        if ok != 2:
            drain()
            raise Unsupported(
                f"Error setting TLS versions ({opts.min_version=}, {opts.max_version=}). "
                "The version you specified may be unavailable in your libssl."
            )

    @staticmethod
    def _set_list(
        context: SSL.Context, symbols: tuple[str, ...], names: list[str], what: str
    ) -> None:
        available = [s for s in symbols if native.has_symbol(s)]
        setter = native.native_symbol(available[0] if available else symbols[0])
        joined = ":".join(names).encode()
        with native_call(f"setting {what}"):
            ok = setter(context._context, joined)  # type: ignore
        if ok != 1:
            drain()
            raise Unsupported(
                f"The linked TLS library ({native.openssl_version()}) rejected {what}: {joined.decode()}"
            )

    def _configure_fingerprint(self, context: SSL.Context) -> None:
        opts = self.options
        ffi = SSL._ffi  # type: ignore
        order = opts.extension_order or ()
        grease = opts.grease or any(extensions.is_grease(e) for e in order)
        if grease:
            native.call_native("SSL_CTX_set_grease_enabled", context._context, 1)  # type: ignore
        if order:
            indices = []
            for ext in order:
                if extensions.is_grease(ext):
                    continue
                idx = extensions.ExtensionType.index_of(extensions.ExtensionType(ext))
                if idx is None:
                    raise Unsupported(
                        f"Extension {extensions.ExtensionType(ext).name} cannot be reordered."
                    )
                indices.append(idx)
            permute = native.native_symbol("SSL_CTX_set_extension_permutation")
            buf = ffi.new("uint8_t[]", indices)
            with native_call("setting the extension order"):
                ok = permute(context._context, buf, len(indices))  # type: ignore
            if ok != 1:
                drain()
                raise Unsupported("The linked TLS library rejected the extension order.")
        if opts.record_size_limit is not None:
            ok = native.call_native(
                "SSL_CTX_set_record_size_limit",
                context._context,  # type: ignore
                opts.record_size_limit,
            )
            if ok != 1:
                drain()
                raise Unsupported("The linked TLS library rejected the record size limit.")
        if opts.certificate_compression:
            set_preference = native.native_symbol("SSL_CTX_set1_cert_comp_preference")
            algs = [int(a) for a in opts.certificate_compression]
            buf = ffi.new("int[]", algs)
            with native_call("setting certificate compression"):
                ok = set_preference(context._context, buf, len(algs))  # type: ignore
            if ok != 1:
                drain()
                raise Unsupported(
                    "The linked TLS library does not implement "
                    + ", ".join(a.name.lower() for a in opts.certificate_compression)
                    + " certificate compression."
                )

    def _configure_credentials(self, context: SSL.Context) -> list[native.SharedHandle]:
        opts = self.options
        handles: list[native.SharedHandle] = []
        try:
            verify = opts.effective_verify
            context.set_verify(verify.value, None)
            if opts.side is Side.CLIENT and verify is net_tls.Verify.VERIFY_PEER:
                ca_file, ca_path = opts.ca_file, opts.ca_path
                if ca_file is None and ca_path is None:
                    ca_file = certifi.where()
                with native_call(
                    f"loading trusted certificates ({ca_file=}, {ca_path=})",
                    kind=ErrorKind.CERTIFICATE,
                ):
                    context.load_verify_locations(ca_file, ca_path)
            if opts.trusted_certificates:
                store = context.get_cert_store()
                assert store is not None
                for cert in opts.trusted_certificates:
                    h = cert.native_handle()
                    handles.append(h)
                    with native_call("adding a trusted certificate", kind=ErrorKind.CERTIFICATE):
                        store.add_cert(h.raw)

            if opts.certificate_chain:
                assert opts.private_key is not None
                leaf, *extra = (c.native_handle() for c in opts.certificate_chain)
                key = opts.private_key.native_handle()
                handles += [leaf, *extra, key]
                with native_call("loading the certificate chain", kind=ErrorKind.CERTIFICATE):
                    context.use_certificate(leaf.raw)
                    for h in extra:
                        context.add_extra_chain_cert(h.raw)
                    context.use_privatekey(key.raw)
                    context.check_privatekey()

            if opts.side is Side.SERVER:
                if opts.alpn_protocols:
                    context.set_alpn_select_callback(_alpn_select_callback(opts.alpn_protocols))
                dh_params = opts.dh_params
                if (
                    dh_params is None
                    and native.has_symbol("PEM_read_bio_DHparams")
                    and native.has_symbol("SSL_CTX_set_tmp_dh")
                ):
                    dh_params = DHParams.default()
                if dh_params is not None:
                    h = dh_params.native_handle()
                    handles.append(h)
                    set_tmp_dh = native.native_symbol("SSL_CTX_set_tmp_dh")
                    with native_call("installing DH parameters"):
                        res = set_tmp_dh(context._context, h.raw)  # type: ignore
                        SSL._openssl_assert(res == 1)  # type: ignore
        except BaseException:
            for h in handles:
                h.release()
            raise
        return handles

    def _configure_sessions(self, context: SSL.Context) -> None:
        if self.options.side is Side.CLIENT:
            mode = SSL.SESS_CACHE_CLIENT if self.options.session_cache else SSL.SESS_CACHE_OFF
            context.set_session_cache_mode(mode)
        else:
            context.set_session_id(SESSION_ID_CONTEXT)

    def new_ssl_connection(
        self, context: native.ContextHandle, server_name: str | None
    ) -> SSL.Connection:
        """
        Create a native connection with memory BIOs and apply the per-connection options.
        """
        opts = self.options
        with native_call("creating the TLS connection"):
            conn = SSL.Connection(context.raw, None)
        if opts.side is Side.SERVER:
            conn.set_accept_state()
            return conn

        sni = server_name or opts.server_name
        verify = opts.effective_verify
        if sni:
            try:
                ip: bytes = ipaddress.ip_address(sni).packed
            except ValueError:
                host_name = sni.encode("idna")
                with native_call("setting the server name"):
                    conn.set_tlsext_host_name(host_name)
                if verify is not net_tls.Verify.VERIFY_NONE:
                    # Manually enable hostname verification.
                    # https://wiki.openssl.org/index.php/Hostname_validation
                    param = SSL._lib.SSL_get0_param(conn._ssl)  # type: ignore
                    # Matching on the CN is disabled in both Chrome and Firefox, so we disable it, too.
                    SSL._lib.X509_VERIFY_PARAM_set_hostflags(param, DEFAULT_HOSTFLAGS)  # type: ignore
                    ok = SSL._lib.X509_VERIFY_PARAM_set1_host(  # type: ignore
                        param, host_name, len(host_name)
                    )
                    SSL._openssl_assert(ok == 1)  # type: ignore
            else:
                # RFC 6066: Literal IPv4 and IPv6 addresses are not permitted in "HostName",
                # so we don't call set_tlsext_host_name.
                if verify is not net_tls.Verify.VERIFY_NONE:
                    param = SSL._lib.SSL_get0_param(conn._ssl)  # type: ignore
                    ok = SSL._lib.X509_VERIFY_PARAM_set1_ip(param, ip, len(ip))  # type: ignore
                    SSL._openssl_assert(ok == 1)  # type: ignore
        elif verify is not net_tls.Verify.VERIFY_NONE:
            raise ConfigError(
                ConfigErrorKind.INVALID_HOSTNAME,
                "Cannot validate certificate hostname without SNI",
            )

        if opts.alpn_protocols:
            conn.set_alpn_protos(list(opts.alpn_protocols))
        if sni and opts.session_cache is not None:
            if session := opts.session_cache.get(sni):
                conn.set_session(session)
        conn.set_connect_state()
        return conn


def _alpn_select_callback(server_alpn: tuple[bytes, ...]):
    def alpn_select_callback(conn: SSL.Connection, options: list[bytes]) -> Any:
        for alpn in server_alpn:
            if alpn in options:
                return alpn
        return SSL.NO_OVERLAPPING_PROTOCOLS

    return alpn_select_callback


def _info_callback(conn: SSL.Connection, where: int, ret: int) -> None:
    if not where & SSL.SSL_CB_ALERT:
        return
    direction = (
        AlertDirection.RECEIVED if where & SSL.SSL_CB_READ else AlertDirection.SENT
    )
    alert = Alert(
        description=ret & 0xFF,
        direction=direction,
        fatal=(ret >> 8) == 2,
    )
    ref = conn.get_app_data()
    owner = ref() if isinstance(ref, weakref.ref) else None
    if owner is not None:
        owner.record_alert(alert)
