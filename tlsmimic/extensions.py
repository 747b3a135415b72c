"""
Identifier tables for the handshake options tlsmimic can configure.

These are opaque data: IANA code points plus the names the native engine expects.
Nothing here decides whether a given combination resembles a real browser.
"""

import enum
from dataclasses import dataclass


class GroupKind(enum.Enum):
    ECDHE = "ecdhe"
    FFDHE = "ffdhe"
    HYBRID = "hybrid"
    """Classical key exchange combined with a post-quantum KEM (kDHE)."""


@dataclass(frozen=True)
class NamedGroup:
    code: int
    name: str
    native_name: str
    kind: GroupKind

    def __str__(self):
        return self.name


NAMED_GROUPS: tuple[NamedGroup, ...] = (
    NamedGroup(0x0017, "secp256r1", "P-256", GroupKind.ECDHE),
    NamedGroup(0x0018, "secp384r1", "P-384", GroupKind.ECDHE),
    NamedGroup(0x0019, "secp521r1", "P-521", GroupKind.ECDHE),
    NamedGroup(0x001D, "x25519", "X25519", GroupKind.ECDHE),
    NamedGroup(0x001E, "x448", "X448", GroupKind.ECDHE),
    NamedGroup(0x0100, "ffdhe2048", "ffdhe2048", GroupKind.FFDHE),
    NamedGroup(0x0101, "ffdhe3072", "ffdhe3072", GroupKind.FFDHE),
    NamedGroup(0x0102, "ffdhe4096", "ffdhe4096", GroupKind.FFDHE),
    NamedGroup(0x11EB, "SecP256r1MLKEM768", "SecP256r1MLKEM768", GroupKind.HYBRID),
    NamedGroup(0x11EC, "X25519MLKEM768", "X25519MLKEM768", GroupKind.HYBRID),
    NamedGroup(0x6399, "X25519Kyber768Draft00", "X25519Kyber768Draft00", GroupKind.HYBRID),
)

_GROUP_ALIASES = {
    "prime256v1": "secp256r1",
    "p-256": "secp256r1",
    "p-384": "secp384r1",
    "p-521": "secp521r1",
    "kdhe": "X25519MLKEM768",
}

# A profile has to offer at least one finite-field or hybrid group.
REQUIRED_GROUPS = frozenset(
    g.name for g in NAMED_GROUPS if g.name in ("ffdhe2048", "ffdhe3072") or g.kind is GroupKind.HYBRID
)


@dataclass(frozen=True)
class SignatureScheme:
    code: int
    name: str
    native_name: str

    def __str__(self):
        return self.name


def _scheme(code: int, name: str, native_name: str | None = None) -> SignatureScheme:
    return SignatureScheme(code, name, native_name or name)


SIGNATURE_SCHEMES: tuple[SignatureScheme, ...] = (
    _scheme(0x0201, "rsa_pkcs1_sha1", "RSA+SHA1"),
    _scheme(0x0203, "ecdsa_sha1", "ECDSA+SHA1"),
    _scheme(0x0401, "rsa_pkcs1_sha256"),
    _scheme(0x0501, "rsa_pkcs1_sha384"),
    _scheme(0x0601, "rsa_pkcs1_sha512"),
    _scheme(0x0403, "ecdsa_secp256r1_sha256"),
    _scheme(0x0503, "ecdsa_secp384r1_sha384"),
    _scheme(0x0603, "ecdsa_secp521r1_sha512"),
    _scheme(0x0804, "rsa_pss_rsae_sha256"),
    _scheme(0x0805, "rsa_pss_rsae_sha384"),
    _scheme(0x0806, "rsa_pss_rsae_sha512"),
    _scheme(0x0807, "ed25519"),
    _scheme(0x0808, "ed448"),
    _scheme(0x0809, "rsa_pss_pss_sha256"),
    _scheme(0x080A, "rsa_pss_pss_sha384"),
    _scheme(0x080B, "rsa_pss_pss_sha512"),
)


class ExtensionType(enum.IntEnum):
    SERVER_NAME = 0
    MAX_FRAGMENT_LENGTH = 1
    STATUS_REQUEST = 5
    SUPPORTED_GROUPS = 10
    EC_POINT_FORMATS = 11
    SIGNATURE_ALGORITHMS = 13
    USE_SRTP = 14
    HEARTBEAT = 15
    APPLICATION_LAYER_PROTOCOL_NEGOTIATION = 16
    SIGNED_CERTIFICATE_TIMESTAMP = 18
    CLIENT_CERTIFICATE_TYPE = 19
    SERVER_CERTIFICATE_TYPE = 20
    PADDING = 21
    ENCRYPT_THEN_MAC = 22
    EXTENDED_MASTER_SECRET = 23
    COMPRESS_CERTIFICATE = 27
    RECORD_SIZE_LIMIT = 28
    DELEGATED_CREDENTIAL = 34
    SESSION_TICKET = 35
    PRE_SHARED_KEY = 41
    EARLY_DATA = 42
    SUPPORTED_VERSIONS = 43
    COOKIE = 44
    PSK_KEY_EXCHANGE_MODES = 45
    CERTIFICATE_AUTHORITIES = 47
    POST_HANDSHAKE_AUTH = 49
    SIGNATURE_ALGORITHMS_CERT = 50
    KEY_SHARE = 51
    QUIC_TRANSPORT_PARAMETERS = 57
    NEXT_PROTOCOL_NEGOTIATION = 13172
    APPLICATION_SETTINGS = 17513
    APPLICATION_SETTINGS_NEW = 17613
    CHANNEL_ID = 30032
    ENCRYPTED_CLIENT_HELLO = 65037
    RENEGOTIATE = 65281

    @classmethod
    def index_of(cls, ext: "ExtensionType") -> int | None:
        """Position of `ext` in the engine's list of permutable extensions."""
        try:
            return PERMUTABLE_EXTENSIONS.index(ext)
        except ValueError:
            return None


# The extensions a permuting engine may reorder, in the engine's default order.
PERMUTABLE_EXTENSIONS: tuple[ExtensionType, ...] = (
    ExtensionType.SERVER_NAME,
    ExtensionType.ENCRYPTED_CLIENT_HELLO,
    ExtensionType.EXTENDED_MASTER_SECRET,
    ExtensionType.RENEGOTIATE,
    ExtensionType.SUPPORTED_GROUPS,
    ExtensionType.EC_POINT_FORMATS,
    ExtensionType.SESSION_TICKET,
    ExtensionType.APPLICATION_LAYER_PROTOCOL_NEGOTIATION,
    ExtensionType.STATUS_REQUEST,
    ExtensionType.SIGNATURE_ALGORITHMS,
    ExtensionType.NEXT_PROTOCOL_NEGOTIATION,
    ExtensionType.SIGNED_CERTIFICATE_TIMESTAMP,
    ExtensionType.CHANNEL_ID,
    ExtensionType.USE_SRTP,
    ExtensionType.KEY_SHARE,
    ExtensionType.PSK_KEY_EXCHANGE_MODES,
    ExtensionType.EARLY_DATA,
    ExtensionType.SUPPORTED_VERSIONS,
    ExtensionType.COOKIE,
    ExtensionType.QUIC_TRANSPORT_PARAMETERS,
    ExtensionType.COMPRESS_CERTIFICATE,
    ExtensionType.DELEGATED_CREDENTIAL,
    ExtensionType.APPLICATION_SETTINGS,
    ExtensionType.APPLICATION_SETTINGS_NEW,
    ExtensionType.RECORD_SIZE_LIMIT,
)

# RFC 8701: 0x0A0A, 0x1A1A, ..., 0xFAFA
GREASE_VALUES: tuple[int, ...] = tuple(0x0A0A + 0x1010 * i for i in range(16))
GREASE = GREASE_VALUES[0]
"""Canonical marker for "insert a GREASE extension here"."""


def is_grease(value: int) -> bool:
    return value in GREASE_VALUES


class CertificateCompressionAlgorithm(enum.IntEnum):
    """IANA assigned identifiers, see RFC 8879."""

    ZLIB = 1
    BROTLI = 2
    ZSTD = 3


def _lookup(table, ident, aliases=None):
    if isinstance(ident, bool):
        raise KeyError(ident)
    if isinstance(ident, int):
        for entry in table:
            if entry.code == ident:
                return entry
        raise KeyError(ident)
    if isinstance(ident, str):
        wanted = ident.strip().lower()
        if aliases:
            wanted = aliases.get(wanted, wanted).lower()
        for entry in table:
            if entry.name.lower() == wanted or entry.native_name.lower() == wanted:
                return entry
    raise KeyError(ident)


def named_group(ident: str | int | NamedGroup) -> NamedGroup:
    """Resolve a group by IANA code or name. Raises KeyError for unknown groups."""
    if isinstance(ident, NamedGroup):
        return ident
    return _lookup(NAMED_GROUPS, ident, _GROUP_ALIASES)


def signature_scheme(ident: str | int | SignatureScheme) -> SignatureScheme:
    if isinstance(ident, SignatureScheme):
        return ident
    return _lookup(SIGNATURE_SCHEMES, ident)


def extension_id(ident: str | int) -> int:
    """
    Resolve an extension identifier for a permutation list.
    GREASE markers are accepted as "grease" or as any RFC 8701 value.
    """
    if isinstance(ident, bool):
        raise KeyError(ident)
    if isinstance(ident, int):
        if is_grease(ident):
            return ident
        return ExtensionType(ident).value  # raises ValueError for unknown code points
    if isinstance(ident, str):
        name = ident.strip().upper().replace("-", "_")
        if name == "GREASE":
            return GREASE
        if name == "ALPN":
            return ExtensionType.APPLICATION_LAYER_PROTOCOL_NEGOTIATION.value
        return ExtensionType[name].value
    raise KeyError(ident)


def compression_algorithm(ident: str | int) -> CertificateCompressionAlgorithm:
    if isinstance(ident, bool):
        raise KeyError(ident)
    if isinstance(ident, int):
        return CertificateCompressionAlgorithm(ident)
    return CertificateCompressionAlgorithm[ident.strip().upper()]
