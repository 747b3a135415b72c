import datetime
import ipaddress
import re

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import dh
from cryptography.hazmat.primitives.asymmetric import dsa
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes
from cryptography.x509 import ExtendedKeyUsageOID
from cryptography.x509 import NameOID
from OpenSSL import crypto
from OpenSSL import SSL

from tlsmimic import native
from tlsmimic.error_queue import drain
from tlsmimic.error_queue import map_error
from tlsmimic.error_queue import native_call
from tlsmimic.exceptions import CertificateError
from tlsmimic.exceptions import ErrorKind

CA_EXPIRY = datetime.timedelta(days=10 * 365)
CERT_EXPIRY = datetime.timedelta(days=365)

# Generated with "openssl dhparam". It's too slow to generate this on startup.
DEFAULT_DHPARAM = b"""
-----BEGIN DH PARAMETERS-----
MIICCAKCAgEAyT6LzpwVFS3gryIo29J5icvgxCnCebcdSe/NHMkD8dKJf8suFCg3
O2+dguLakSVif/t6dhImxInJk230HmfC8q93hdcg/j8rLGJYDKu3ik6H//BAHKIv
j5O9yjU3rXCfmVJQic2Nne39sg3CreAepEts2TvYHhVv3TEAzEqCtOuTjgDv0ntJ
Gwpj+BJBRQGG9NvprX1YGJ7WOFBP/hWU7d6tgvE6Xa7T/u9QIKpYHMIkcN/l3ZFB
chZEqVlyrcngtSXCROTPcDOQ6Q8QzhaBJS+Z6rcsd7X+haiQqvoFcmaJ08Ks6LQC
ZIL2EtYJw8V8z7C0igVEBIADZBI6OTbuuhDwRw//zU1uq52Oc48CIZlGxTYG/Evq
o9EWAXUYVzWkDSTeBH1r4z/qLPE2cnhtMxbFxuvK53jGB0emy2y1Ei6IhKshJ5qX
IB/aE7SSHyQ3MDHHkCmQJCsOd4Mo26YX61NZ+n501XjqpCBQ2+DfZCBh8Va2wDyv
A2Ryg9SUz8j0AXViRNMJgJrr446yro/FuJZwnQcO3WQnXeqSBnURqKjmqkeFP+d8
6mk2tqJaY507lRNqtGlLnj7f5RNoBFJDCLBNurVgfvq9TCVWKDIFD4vZRjCrnl6I
rD693XKIHUCWOjMh1if6omGXKHH40QuME2gNa50+YPn1iYDl88uDbbMCAQI=
-----END DH PARAMETERS-----
"""

_PEM_CERTIFICATE = re.compile(
    rb"-----BEGIN CERTIFICATE-----.+?-----END CERTIFICATE-----", re.DOTALL
)


def _parse_failure(what: str, e: Exception) -> CertificateError:
    err = map_error(
        drain(),
        operation=f"Parsing {what}",
        detail=str(e) or type(e).__name__,
        kind=ErrorKind.CERTIFICATE,
    )
    assert isinstance(err, CertificateError)
    return err


class Certificate:
    """Representation of an immutable X.509 certificate."""

    _cert: x509.Certificate

    def __init__(self, cert: x509.Certificate):
        assert isinstance(cert, x509.Certificate)
        self._cert = cert

    def __eq__(self, other):
        if not isinstance(other, Certificate):
            return NotImplemented
        return self.fingerprint() == other.fingerprint()

    def __hash__(self):
        return hash(self.fingerprint())

    def __repr__(self):
        return f"<Certificate(cn={self.cn!r}, altnames={self.altnames!r})>"

    @classmethod
    def from_pem(cls, data: bytes) -> "Certificate":
        try:
            return cls(x509.load_pem_x509_certificate(data))
        except ValueError as e:
            raise _parse_failure("PEM certificate", e) from e

    @classmethod
    def from_der(cls, data: bytes) -> "Certificate":
        try:
            return cls(x509.load_der_x509_certificate(data))
        except ValueError as e:
            raise _parse_failure("DER certificate", e) from e

    @classmethod
    def load(cls, data: bytes) -> "Certificate":
        """Load a certificate in either PEM or DER encoding."""
        if b"-----BEGIN" in data:
            return cls.from_pem(data)
        return cls.from_der(data)

    def to_pem(self) -> bytes:
        return self._cert.public_bytes(serialization.Encoding.PEM)

    def to_der(self) -> bytes:
        return self._cert.public_bytes(serialization.Encoding.DER)

    @classmethod
    def from_pyopenssl(cls, x509: crypto.X509) -> "Certificate":
        return cls(x509.to_cryptography())

    def to_pyopenssl(self) -> crypto.X509:
        return crypto.X509.from_cryptography(self._cert)

    def to_cryptography(self) -> x509.Certificate:
        return self._cert

    def native_handle(self) -> native.CertificateHandle:
        return native.CertificateHandle(self.to_pyopenssl())

    def fingerprint(self) -> bytes:
        return self._cert.fingerprint(hashes.SHA256())

    @property
    def issuer(self) -> list[tuple[str, str]]:
        return _name_to_keyval(self._cert.issuer)

    @property
    def subject(self) -> list[tuple[str, str]]:
        return _name_to_keyval(self._cert.subject)

    @property
    def notbefore(self) -> datetime.datetime:
        return self._cert.not_valid_before_utc

    @property
    def notafter(self) -> datetime.datetime:
        return self._cert.not_valid_after_utc

    def has_expired(self) -> bool:
        return datetime.datetime.now(datetime.timezone.utc) > self.notafter

    @property
    def serial(self) -> int:
        return self._cert.serial_number

    @property
    def keyinfo(self) -> tuple[str, int]:
        public_key = self._cert.public_key()
        if isinstance(public_key, rsa.RSAPublicKey):
            return "RSA", public_key.key_size
        if isinstance(public_key, dsa.DSAPublicKey):
            return "DSA", public_key.key_size
        if isinstance(public_key, ec.EllipticCurvePublicKey):
            return f"EC ({public_key.curve.name})", public_key.key_size
        return (
            public_key.__class__.__name__.replace("PublicKey", "").replace("_", ""),
            getattr(public_key, "key_size", -1),
        )  # pragma: no cover

    @property
    def cn(self) -> str | None:
        attrs = self._cert.subject.get_attributes_for_oid(x509.NameOID.COMMON_NAME)
        if attrs:
            return attrs[0].value  # type: ignore
        return None

    @property
    def altnames(self) -> list[str]:
        """
        Get all SubjectAlternativeName DNS altnames.
        """
        try:
            ext = self._cert.extensions.get_extension_for_class(
                x509.SubjectAlternativeName
            ).value
        except x509.ExtensionNotFound:
            return []
        else:
            return ext.get_values_for_type(x509.DNSName) + [
                str(x) for x in ext.get_values_for_type(x509.IPAddress)
            ]


def _name_to_keyval(name: x509.Name) -> list[tuple[str, str]]:
    parts = []
    for attr in name:
        k = attr.rfc4514_string().partition("=")[0]
        v = attr.value
        parts.append((k, v))
    return parts  # type: ignore


def load_certificate_chain(data: bytes) -> list[Certificate]:
    """
    Parse a PEM bundle (leaf first) or a single DER certificate.
    """
    if b"-----BEGIN" not in data:
        return [Certificate.from_der(data)]
    pems = _PEM_CERTIFICATE.findall(data)
    if not pems:
        raise _parse_failure("certificate chain", ValueError("no certificates found"))
    return [Certificate.from_pem(pem) for pem in pems]


class PrivateKey:
    """An immutable private key."""

    def __init__(self, key: PrivateKeyTypes):
        self._key = key

    @classmethod
    def from_pem(cls, data: bytes, password: bytes | None = None) -> "PrivateKey":
        """
        like cryptography's load_pem_private_key, but silently falls back to not using a password
        if the private key is unencrypted.
        """
        try:
            return cls(serialization.load_pem_private_key(data, password))
        except TypeError as e:
            if password is not None:
                return cls.from_pem(data, None)
            raise _parse_failure("PEM private key", e) from e
        except ValueError as e:
            raise _parse_failure("PEM private key", e) from e

    @classmethod
    def from_der(cls, data: bytes, password: bytes | None = None) -> "PrivateKey":
        try:
            return cls(serialization.load_der_private_key(data, password))
        except TypeError as e:
            if password is not None:
                return cls.from_der(data, None)
            raise _parse_failure("DER private key", e) from e
        except ValueError as e:
            raise _parse_failure("DER private key", e) from e

    @classmethod
    def load(cls, data: bytes, password: bytes | None = None) -> "PrivateKey":
        if b"-----BEGIN" in data:
            return cls.from_pem(data, password)
        return cls.from_der(data, password)

    def to_cryptography(self) -> PrivateKeyTypes:
        return self._key

    def to_pem(self) -> bytes:
        return self._key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def native_handle(self) -> native.PrivateKeyHandle:
        return native.PrivateKeyHandle(crypto.PKey.from_cryptography_key(self._key))  # type: ignore

    def __repr__(self):
        return f"<PrivateKey({type(self._key).__name__})>"


class DHParams:
    """Finite-field Diffie-Hellman parameters for TLS 1.2 DHE cipher suites."""

    def __init__(self, params: dh.DHParameters):
        self._params = params
        self._pem = params.parameter_bytes(
            serialization.Encoding.PEM, serialization.ParameterFormat.PKCS3
        )

    @classmethod
    def from_pem(cls, data: bytes) -> "DHParams":
        try:
            params = serialization.load_pem_parameters(data)
        except ValueError as e:
            raise _parse_failure("PEM DH parameters", e) from e
        if not isinstance(params, dh.DHParameters):
            raise _parse_failure("PEM DH parameters", ValueError("not a DH parameter set"))
        return cls(params)

    @classmethod
    def from_der(cls, data: bytes) -> "DHParams":
        try:
            params = serialization.load_der_parameters(data)
        except ValueError as e:
            raise _parse_failure("DER DH parameters", e) from e
        if not isinstance(params, dh.DHParameters):
            raise _parse_failure("DER DH parameters", ValueError("not a DH parameter set"))
        return cls(params)

    @classmethod
    def load(cls, data: bytes) -> "DHParams":
        if b"-----BEGIN" in data:
            return cls.from_pem(data)
        return cls.from_der(data)

    @classmethod
    def default(cls) -> "DHParams":
        return cls.from_pem(DEFAULT_DHPARAM)

    @property
    def key_size(self) -> int:
        return self._params.parameter_numbers().p.bit_length()

    def to_pem(self) -> bytes:
        return self._pem

    def native_handle(self) -> native.DHParamsHandle:
        # we could use cryptography for this, but it's unclear how to convert cryptography's object to pyOpenSSL's
        # expected format.
        new_mem_buf = native.native_symbol("BIO_new_mem_buf")
        read_dhparams = native.native_symbol("PEM_read_bio_DHparams")
        ffi = SSL._ffi  # type: ignore
        buf = ffi.new("char[]", self._pem)
        with native_call("loading DH parameters", kind=ErrorKind.CERTIFICATE):
            bio = new_mem_buf(buf, len(self._pem))
            if bio == ffi.NULL:
                raise SSL.Error([])
            bio = ffi.gc(bio, SSL._lib.BIO_free)  # type: ignore
            dh_ptr = read_dhparams(bio, ffi.NULL, ffi.NULL, ffi.NULL)
            if dh_ptr == ffi.NULL:
                raise SSL.Error([])
        return native.DHParamsHandle(dh_ptr)


def create_ca(
    organization: str,
    cn: str,
    key_size: int = 2048,
) -> tuple[rsa.RSAPrivateKey, x509.Certificate]:
    now = datetime.datetime.now(datetime.timezone.utc)

    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=key_size,
    )
    name = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, cn),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization),
        ]
    )
    builder = x509.CertificateBuilder()
    builder = builder.serial_number(x509.random_serial_number())
    builder = builder.subject_name(name)
    builder = builder.not_valid_before(now - datetime.timedelta(days=2))
    builder = builder.not_valid_after(now + CA_EXPIRY)
    builder = builder.issuer_name(name)
    builder = builder.public_key(private_key.public_key())
    builder = builder.add_extension(
        x509.BasicConstraints(ca=True, path_length=None), critical=True
    )
    builder = builder.add_extension(
        x509.KeyUsage(
            digital_signature=False,
            content_commitment=False,
            key_encipherment=False,
            data_encipherment=False,
            key_agreement=False,
            key_cert_sign=True,
            crl_sign=True,
            encipher_only=False,
            decipher_only=False,
        ),
        critical=True,
    )
    builder = builder.add_extension(
        x509.SubjectKeyIdentifier.from_public_key(private_key.public_key()),
        critical=False,
    )
    cert = builder.sign(private_key=private_key, algorithm=hashes.SHA256())
    return private_key, cert


def dummy_cert(
    privkey: rsa.RSAPrivateKey,
    cacert: x509.Certificate,
    commonname: str | None,
    sans: list[str],
    organization: str | None = None,
) -> Certificate:
    """
    Generates a dummy certificate.

    privkey: CA private key
    cacert: CA certificate
    commonname: Common name for the generated certificate.
    sans: A list of Subject Alternate Names.
    organization: Organization name for the generated certificate.

    The certificate reuses the CA's key pair, so `privkey` is also its private key.
    """
    builder = x509.CertificateBuilder()
    builder = builder.issuer_name(cacert.subject)
    builder = builder.add_extension(
        x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False
    )
    builder = builder.public_key(cacert.public_key())

    now = datetime.datetime.now(datetime.timezone.utc)
    builder = builder.not_valid_before(now - datetime.timedelta(days=2))
    builder = builder.not_valid_after(now + CERT_EXPIRY)

    subject = []
    is_valid_commonname = commonname is not None and len(commonname) < 64
    if is_valid_commonname:
        assert commonname is not None
        subject.append(x509.NameAttribute(NameOID.COMMON_NAME, commonname))
    if organization is not None:
        subject.append(x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization))
    builder = builder.subject_name(x509.Name(subject))
    builder = builder.serial_number(x509.random_serial_number())

    ss: list[x509.GeneralName] = []
    for x in sans:
        try:
            ip = ipaddress.ip_address(x)
        except ValueError:
            ss.append(x509.DNSName(x))
        else:
            ss.append(x509.IPAddress(ip))
    # RFC 5280 §4.2.1.6: subjectAltName is critical if subject is empty.
    builder = builder.add_extension(
        x509.SubjectAlternativeName(ss), critical=not is_valid_commonname
    )
    cert = builder.sign(private_key=privkey, algorithm=hashes.SHA256())
    return Certificate(cert)
