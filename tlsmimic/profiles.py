"""
Browser ClientHello profiles.

Each profile is a preconfigured client `ContextBuilder`. The values are opaque data taken
from captures of the respective browser; whether the resulting handshake matches a given
browser version byte for byte depends on the linked TLS library.
"""

from collections.abc import Callable

from tlsmimic.config import ContextBuilder
from tlsmimic.config import Side

HTTP_ALPNS = (b"h2", b"http/1.1")

_TLS12_CIPHERS = (
    "ECDHE-ECDSA-AES128-GCM-SHA256",
    "ECDHE-RSA-AES128-GCM-SHA256",
    "ECDHE-ECDSA-CHACHA20-POLY1305",
    "ECDHE-RSA-CHACHA20-POLY1305",
    "ECDHE-ECDSA-AES256-GCM-SHA384",
    "ECDHE-RSA-AES256-GCM-SHA384",
    "ECDHE-ECDSA-AES256-SHA",
    "ECDHE-ECDSA-AES128-SHA",
    "ECDHE-RSA-AES128-SHA",
    "ECDHE-RSA-AES256-SHA",
    "AES128-GCM-SHA256",
    "AES256-GCM-SHA384",
    "AES128-SHA",
    "AES256-SHA",
)


def firefox() -> ContextBuilder:
    return (
        ContextBuilder(Side.CLIENT)
        .groups(
            [
                "X25519MLKEM768",
                "x25519",
                "secp256r1",
                "secp384r1",
                "secp521r1",
                "ffdhe2048",
                "ffdhe3072",
            ]
        )
        .signature_algorithms(
            [
                "ecdsa_secp256r1_sha256",
                "ecdsa_secp384r1_sha384",
                "ecdsa_secp521r1_sha512",
                "rsa_pss_rsae_sha256",
                "rsa_pss_rsae_sha384",
                "rsa_pss_rsae_sha512",
                "rsa_pkcs1_sha256",
                "rsa_pkcs1_sha384",
                "rsa_pkcs1_sha512",
                "ecdsa_sha1",
                "rsa_pkcs1_sha1",
            ]
        )
        .alpn_protocols(HTTP_ALPNS)
        .cipher_list(_TLS12_CIPHERS)
        .record_size_limit(2**14 + 1)
        .certificate_compression(["zlib", "brotli", "zstd"])
    )


def safari() -> ContextBuilder:
    return (
        ContextBuilder(Side.CLIENT)
        .grease(True)
        .groups(
            [
                "X25519MLKEM768",
                "x25519",
                "secp256r1",
                "secp384r1",
                "secp521r1",
            ]
        )
        .signature_algorithms(
            [
                "ecdsa_secp256r1_sha256",
                "rsa_pss_rsae_sha256",
                "rsa_pkcs1_sha256",
                "ecdsa_secp384r1_sha384",
                "rsa_pss_rsae_sha384",
                "rsa_pkcs1_sha384",
                "rsa_pss_rsae_sha512",
                "rsa_pkcs1_sha512",
                "rsa_pkcs1_sha1",
            ]
        )
        .alpn_protocols(HTTP_ALPNS)
        .cipher_list(_TLS12_CIPHERS)
        .certificate_compression(["zlib"])
        .extension_order(
            [
                "grease",
                "server_name",
                "extended_master_secret",
                "renegotiate",
                "supported_groups",
                "ec_point_formats",
                "alpn",
                "status_request",
                "signature_algorithms",
                "signed_certificate_timestamp",
                "key_share",
                "psk_key_exchange_modes",
                "supported_versions",
                "compress_certificate",
                "grease",
            ]
        )
    )


PROFILES: dict[str, Callable[[], ContextBuilder]] = {
    "firefox": firefox,
    "safari": safari,
}


def profile(name: str) -> ContextBuilder:
    try:
        return PROFILES[name.lower()]()
    except KeyError:
        raise ValueError(
            f"Unknown profile {name!r}, expected one of {', '.join(PROFILES)}."
        ) from None
