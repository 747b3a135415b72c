import pytest
from hypothesis import given
from hypothesis import strategies as st

from tlsmimic import native
from tlsmimic.config import ContextBuilder
from tlsmimic.config import Side
from tlsmimic.config import TlsOptions
from tlsmimic.exceptions import ConfigError
from tlsmimic.exceptions import ConfigErrorKind
from tlsmimic.exceptions import TlsError
from tlsmimic.exceptions import Unsupported
from tlsmimic.extensions import ExtensionType
from tlsmimic.extensions import GREASE
from tlsmimic.extensions import PERMUTABLE_EXTENSIONS
from tlsmimic.net.tls import Verify
from tlsmimic.net.tls import Version
from tlsmimic.session_cache import SimpleCache


def kind_of(excinfo) -> ConfigErrorKind:
    return excinfo.value.kind


class TestGroups:
    def test_order_and_dedupe(self):
        b = ContextBuilder().groups(["x25519", "ffdhe2048", "X25519", 0x0017])
        assert [g.name for g in b.options.groups] == ["x25519", "ffdhe2048", "secp256r1"]

    def test_unknown(self):
        with pytest.raises(ConfigError) as e:
            ContextBuilder().groups(["x25519", "brainpoolP256r1"])
        assert kind_of(e) is ConfigErrorKind.UNSUPPORTED_GROUP

    def test_empty(self):
        with pytest.raises(ConfigError) as e:
            ContextBuilder().groups([])
        assert kind_of(e) is ConfigErrorKind.EMPTY

    def test_required_group(self):
        with pytest.raises(ConfigError, match="must contain one of") as e:
            ContextBuilder().groups(["x25519", "secp256r1"])
        assert kind_of(e) is ConfigErrorKind.UNSUPPORTED_GROUP
        ContextBuilder().groups(["x25519", "X25519MLKEM768"])

    @given(st.permutations(["x25519", "secp256r1", "secp384r1", "ffdhe2048", "ffdhe3072"]))
    def test_order_preserved(self, names):
        ctx = ContextBuilder().groups(names).keylog(None).build()
        assert list(ctx.groups) == names


class TestSignatureAlgorithms:
    def test_set(self):
        b = ContextBuilder().signature_algorithms(
            ["ecdsa_secp256r1_sha256", 0x0804, "rsa_pkcs1_sha256", "ecdsa_secp256r1_sha256"]
        )
        assert b.build().signature_algorithms == (
            "ecdsa_secp256r1_sha256",
            "rsa_pss_rsae_sha256",
            "rsa_pkcs1_sha256",
        )

    def test_invalid(self):
        with pytest.raises(ConfigError) as e:
            ContextBuilder().signature_algorithms(["rsa_md5"])
        assert kind_of(e) is ConfigErrorKind.UNKNOWN_SIGNATURE_ALGORITHM
        with pytest.raises(ConfigError) as e:
            ContextBuilder().signature_algorithms([])
        assert kind_of(e) is ConfigErrorKind.EMPTY


class TestAlpn:
    def test_set(self):
        b = ContextBuilder().alpn_protocols(["h2", b"http/1.1"])
        assert b.options.alpn_protocols == (b"h2", b"http/1.1")

    @given(st.lists(st.binary(min_size=1, max_size=255), min_size=1, max_size=8, unique=True))
    def test_order_preserved(self, protos):
        ctx = ContextBuilder().alpn_protocols(protos).build()
        assert list(ctx.alpn_protocols) == protos

    def test_too_long(self):
        b = ContextBuilder().alpn_protocols([b"h2"])
        with pytest.raises(ConfigError) as e:
            b.alpn_protocols([b"http/1.1", b"x" * 256])
        assert kind_of(e) is ConfigErrorKind.PROTOCOL_TOO_LONG
        # the failed call changed nothing
        assert not b.frozen
        assert b.options.alpn_protocols == (b"h2",)
        assert b.build().alpn_protocols == (b"h2",)

    def test_invalid(self):
        with pytest.raises(ConfigError) as e:
            ContextBuilder().alpn_protocols(b"h2")
        assert kind_of(e) is ConfigErrorKind.INVALID_VALUE
        with pytest.raises(ConfigError) as e:
            ContextBuilder().alpn_protocols([])
        assert kind_of(e) is ConfigErrorKind.EMPTY
        with pytest.raises(ConfigError) as e:
            ContextBuilder().alpn_protocols([b""])
        assert kind_of(e) is ConfigErrorKind.PROTOCOL_TOO_LONG
        with pytest.raises(ConfigError) as e:
            ContextBuilder().alpn_protocols([42])
        assert kind_of(e) is ConfigErrorKind.INVALID_VALUE


def test_server_name():
    b = ContextBuilder().server_name("example.com")
    assert b.build().server_name == "example.com"
    assert ContextBuilder().server_name(None).options.server_name is None
    for invalid in ["", "exa mple.com", "-example.com", "127.0.0.1"]:
        with pytest.raises(ConfigError) as e:
            ContextBuilder().server_name(invalid)
        assert kind_of(e) is ConfigErrorKind.INVALID_HOSTNAME


class TestExtensionOrder:
    def test_set(self):
        b = ContextBuilder().extension_order(
            ["grease", "server_name", 23, "alpn", "key_share", "grease"]
        )
        assert b.build().extension_order == (GREASE, 0, 23, 16, 51, GREASE)

    def test_unknown(self):
        with pytest.raises(ConfigError) as e:
            ContextBuilder().extension_order(["server_name", "no_such_extension"])
        assert kind_of(e) is ConfigErrorKind.UNKNOWN_EXTENSION
        with pytest.raises(ConfigError) as e:
            ContextBuilder().extension_order([0x1234])
        assert kind_of(e) is ConfigErrorKind.UNKNOWN_EXTENSION

    @given(
        st.lists(
            st.sampled_from([e.name.lower() for e in PERMUTABLE_EXTENSIONS]),
            min_size=1,
            unique=True,
        )
    )
    def test_order_preserved(self, names):
        ctx = ContextBuilder().extension_order(names).build()
        assert ctx.extension_order == tuple(ExtensionType[n.upper()] for n in names)

    def test_duplicate(self):
        with pytest.raises(ConfigError) as e:
            ContextBuilder().extension_order(["server_name", "key_share", 0])
        assert kind_of(e) is ConfigErrorKind.INVALID_VALUE

    def test_empty(self):
        with pytest.raises(ConfigError) as e:
            ContextBuilder().extension_order([])
        assert kind_of(e) is ConfigErrorKind.EMPTY

    def test_server(self, server_builder):
        server_builder.extension_order(["server_name"])
        with pytest.raises(ConfigError) as e:
            server_builder.build()
        assert kind_of(e) is ConfigErrorKind.INVALID_VALUE
        assert not server_builder.frozen


def test_record_size_limit():
    assert ContextBuilder().record_size_limit(64).options.record_size_limit == 64
    assert ContextBuilder().record_size_limit(16385).options.record_size_limit == 16385
    assert ContextBuilder().record_size_limit(None).options.record_size_limit is None
    for invalid in [63, 16386, 0]:
        with pytest.raises(ConfigError) as e:
            ContextBuilder().record_size_limit(invalid)
        assert kind_of(e) is ConfigErrorKind.INVALID_VALUE


def test_certificate_compression():
    b = ContextBuilder().certificate_compression(["brotli", 1, "BROTLI"])
    assert [a.name for a in b.options.certificate_compression] == ["BROTLI", "ZLIB"]
    assert ContextBuilder().certificate_compression([]).options.certificate_compression is None
    with pytest.raises(ConfigError) as e:
        ContextBuilder().certificate_compression(["lzma"])
    assert kind_of(e) is ConfigErrorKind.INVALID_VALUE


def test_raw_public_key():
    b = ContextBuilder()
    with pytest.raises(Unsupported) as e:
        b.raw_public_key()
    assert kind_of(e) is ConfigErrorKind.UNSUPPORTED
    assert b.raw_public_key(False) is b
    b.build()
    # still Unsupported, not FROZEN
    with pytest.raises(Unsupported):
        b.raw_public_key(True)


def test_versions():
    b = ContextBuilder().versions(Version.TLS1_3, Version.UNBOUNDED)
    assert b.options.min_version is Version.TLS1_3
    ContextBuilder().versions(Version.UNBOUNDED, Version.TLS1_2)
    ContextBuilder().versions(Version.TLS1_2, Version.TLS1_2)
    with pytest.raises(ConfigError) as e:
        ContextBuilder().versions(Version.TLS1_3, Version.TLS1_2)
    assert kind_of(e) is ConfigErrorKind.INVALID_VALUE


def test_cipher_list():
    b = ContextBuilder().cipher_list(["ECDHE-RSA-AES128-GCM-SHA256"])
    assert b.options.cipher_list == ("ECDHE-RSA-AES128-GCM-SHA256",)
    with pytest.raises(ConfigError) as e:
        ContextBuilder().cipher_list([])
    assert kind_of(e) is ConfigErrorKind.EMPTY
    with pytest.raises(ConfigError) as e:
        ContextBuilder().cipher_list(["A:B"])
    assert kind_of(e) is ConfigErrorKind.INVALID_VALUE


def test_verify_defaults():
    assert TlsOptions(side=Side.CLIENT).effective_verify is Verify.VERIFY_PEER
    assert TlsOptions(side=Side.SERVER).effective_verify is Verify.VERIFY_NONE
    b = ContextBuilder().verify(Verify.VERIFY_NONE)
    assert b.options.effective_verify is Verify.VERIFY_NONE


def test_frozen():
    b = ContextBuilder().alpn_protocols([b"h2"])
    b.build()
    assert b.frozen
    for setter, args in [
        (b.groups, (["x25519", "ffdhe2048"],)),
        (b.signature_algorithms, (["ed25519"],)),
        (b.alpn_protocols, ([b"http/1.1"],)),
        (b.server_name, ("example.com",)),
        (b.grease, ()),
        (b.extension_order, (["server_name"],)),
        (b.record_size_limit, (1000,)),
        (b.certificate_compression, (["zlib"],)),
        (b.versions, ()),
        (b.cipher_list, (["AES128-SHA"],)),
        (b.verify, (Verify.VERIFY_NONE,)),
        (b.trust_store, ()),
        (b.trust_certificates, ([],)),
        (b.dh_params, (None,)),
        (b.session_cache, (None,)),
        (b.keylog, (None,)),
        (b.build, ()),
    ]:
        with pytest.raises(ConfigError) as e:
            setter(*args)
        assert kind_of(e) is ConfigErrorKind.FROZEN
    assert b.options.alpn_protocols == (b"h2",)


def test_server_requires_certificate():
    b = ContextBuilder(Side.SERVER)
    assert b.side is Side.SERVER
    with pytest.raises(ConfigError) as e:
        b.build()
    assert kind_of(e) is ConfigErrorKind.INVALID_VALUE
    assert not b.frozen


def test_certificate_chain_empty(server_key):
    with pytest.raises(ConfigError) as e:
        ContextBuilder(Side.SERVER).certificate_chain([], server_key)
    assert kind_of(e) is ConfigErrorKind.EMPTY


class TestTlsContext:
    def test_properties(self):
        cache = SimpleCache(4)
        ctx = (
            ContextBuilder()
            .alpn_protocols([b"h2"])
            .server_name("example.com")
            .session_cache(cache)
            .build()
        )
        assert ctx.side is Side.CLIENT
        assert ctx.groups == ()
        assert ctx.signature_algorithms == ()
        assert ctx.extension_order == ()
        assert ctx.session_cache is cache
        assert repr(ctx) == "<TlsContext client alpn=(b'h2',) groups=()>"

    def test_lazy_materialization(self, client_context):
        assert not client_context.materialized
        h = client_context.native_context()
        assert client_context.materialized
        h2 = client_context.native_context()
        assert h.raw is h2.raw
        h.release()
        h2.release()
        assert client_context.materialized

    def test_close(self, client_builder):
        ctx = client_builder.build()
        before = native.live_handles("context")
        h = ctx.native_context()
        assert native.live_handles("context") == before + 1
        ctx.close()
        assert not ctx.materialized
        # connections keep the native context alive
        assert native.live_handles("context") == before + 1
        h.release()
        assert native.live_handles("context") == before
        ctx.close()

    def test_server(self, server_context):
        assert server_context.side is Side.SERVER
        assert server_context.alpn_protocols == (b"h2", b"http/1.1")
        h = server_context.native_context()
        assert native.live_handles("certificate") >= 1
        assert native.live_handles("private_key") >= 1
        h.release()

    def test_trust_store(self, tmp_path, ca_cert):
        ca_file = tmp_path / "ca.pem"
        ca_file.write_bytes(ca_cert.to_pem())
        ctx = ContextBuilder().trust_store(ca_file=ca_file).keylog(None).build()
        assert ctx.options.ca_file == str(ca_file)
        ctx.native_context().release()
        ctx.close()

    def test_invalid_cipher_list(self):
        ctx = ContextBuilder().cipher_list(["NOT-A-CIPHER"]).build()
        with pytest.raises(TlsError) as e:
            ctx.native_context()
        assert "cipher" in str(e.value)
        assert not ctx.materialized

    def test_keylog(self, tmp_path):
        ctx = ContextBuilder().keylog(tmp_path / "keys.log").build()
        assert ctx.options.keylog is not None
        ctx.native_context().release()
        ctx.close()

    def test_groups_applied(self):
        ctx = ContextBuilder().groups(["x25519", "ffdhe2048"]).keylog(None).build()
        ctx.native_context().release()
        ctx.close()

    def test_groups_rejected(self):
        # known to tlsmimic, but not to OpenSSL
        ctx = ContextBuilder().groups(["X25519Kyber768Draft00"]).keylog(None).build()
        with pytest.raises(Unsupported, match="rejected groups"):
            ctx.native_context()
        assert not ctx.materialized

    @pytest.mark.skipif(
        native.has_symbol("SSL_CTX_set_grease_enabled"),
        reason="TLS library supports GREASE",
    )
    def test_grease_unsupported(self):
        ctx = ContextBuilder().grease().keylog(None).build()
        with pytest.raises(Unsupported, match="SSL_CTX_set_grease_enabled"):
            ctx.native_context()
        assert not ctx.materialized

    @pytest.mark.skipif(
        native.has_symbol("SSL_CTX_set_extension_permutation"),
        reason="TLS library supports extension permutation",
    )
    def test_extension_order_unsupported(self):
        ctx = ContextBuilder().extension_order(["key_share", "server_name"]).keylog(None).build()
        with pytest.raises(Unsupported, match="SSL_CTX_set_extension_permutation"):
            ctx.native_context()

    @pytest.mark.skipif(
        native.has_symbol("SSL_CTX_set_record_size_limit"),
        reason="TLS library supports record size limits",
    )
    def test_record_size_limit_unsupported(self):
        ctx = ContextBuilder().record_size_limit(16385).keylog(None).build()
        with pytest.raises(Unsupported):
            ctx.native_context()

    @pytest.mark.skipif(
        native.has_symbol("SSL_CTX_set1_cert_comp_preference"),
        reason="TLS library supports certificate compression",
    )
    def test_certificate_compression_unsupported(self):
        ctx = ContextBuilder().certificate_compression(["zlib"]).keylog(None).build()
        with pytest.raises(Unsupported):
            ctx.native_context()
