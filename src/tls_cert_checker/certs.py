from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from functools import cached_property
from typing import Any

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import NameOID

from . import signatures
from .utils import colon_hex, sha1_hex, sha256_hex

# Signature algorithm OIDs mapped to the names operators know from OpenSSL
# and Go tooling.
_SIGNATURE_ALGORITHM_NAMES = {
    "1.2.840.113549.1.1.2": "MD2-RSA",
    "1.2.840.113549.1.1.4": "MD5-RSA",
    "1.2.840.113549.1.1.5": "SHA1-RSA",
    "1.2.840.113549.1.1.14": "SHA224-RSA",
    "1.2.840.113549.1.1.11": "SHA256-RSA",
    "1.2.840.113549.1.1.12": "SHA384-RSA",
    "1.2.840.113549.1.1.13": "SHA512-RSA",
    "1.2.840.10040.4.3": "DSA-SHA1",
    "2.16.840.1.101.3.4.3.2": "DSA-SHA256",
    "1.2.840.10045.4.1": "ECDSA-SHA1",
    "1.2.840.10045.4.3.2": "ECDSA-SHA256",
    "1.2.840.10045.4.3.3": "ECDSA-SHA384",
    "1.2.840.10045.4.3.4": "ECDSA-SHA512",
    "1.3.101.112": "Ed25519",
    "1.3.101.113": "Ed448",
}
_RSA_PSS_OID = "1.2.840.113549.1.1.10"

_KEY_USAGE_FLAGS = (
    "digital_signature",
    "content_commitment",
    "key_encipherment",
    "data_encipherment",
    "key_agreement",
    "key_cert_sign",
    "crl_sign",
)


def _name_to_str(name: x509.Name) -> str:
    return name.rfc4514_string()


def _common_name(name: x509.Name) -> str:
    attrs = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not attrs:
        return ""
    value = attrs[0].value
    return value.decode("utf-8", "replace") if isinstance(value, bytes) else value


def _get_sans(cert: x509.Certificate) -> tuple[tuple[str, ...], tuple[str, ...]]:
    try:
        ext = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return (), ()
    dns = tuple(ext.value.get_values_for_type(x509.DNSName))
    ips = tuple(str(ip) for ip in ext.value.get_values_for_type(x509.IPAddress))
    return dns, ips


def _get_ski(cert: x509.Certificate) -> str | None:
    try:
        ext = cert.extensions.get_extension_for_class(x509.SubjectKeyIdentifier)
    except x509.ExtensionNotFound:
        return None
    return colon_hex(ext.value.digest.hex())


def _get_aki(cert: x509.Certificate) -> str | None:
    try:
        ext = cert.extensions.get_extension_for_class(x509.AuthorityKeyIdentifier)
    except x509.ExtensionNotFound:
        return None
    if ext.value.key_identifier is None:
        return None
    return colon_hex(ext.value.key_identifier.hex())


def _is_ca(cert: x509.Certificate) -> bool:
    try:
        return bool(cert.extensions.get_extension_for_class(x509.BasicConstraints).value.ca)
    except x509.ExtensionNotFound:
        return False


def _key_usage(cert: x509.Certificate) -> frozenset[str]:
    try:
        ku = cert.extensions.get_extension_for_class(x509.KeyUsage).value
    except x509.ExtensionNotFound:
        return frozenset()
    flags = {flag for flag in _KEY_USAGE_FLAGS if getattr(ku, flag)}
    if ku.key_agreement:
        # Only defined when key_agreement is set.
        if ku.encipher_only:
            flags.add("encipher_only")
        if ku.decipher_only:
            flags.add("decipher_only")
    return frozenset(flags)


def _ext_key_usage(cert: x509.Certificate) -> tuple[str, ...] | None:
    try:
        eku = cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
    except x509.ExtensionNotFound:
        return None
    return tuple(oid.dotted_string for oid in eku)


def _sig_hash(cert: x509.Certificate) -> hashes.HashAlgorithm | None:
    try:
        return cert.signature_hash_algorithm
    except UnsupportedAlgorithm:
        return None


def _sig_padding(cert: x509.Certificate) -> Any:
    try:
        return cert.signature_algorithm_parameters
    except (UnsupportedAlgorithm, ValueError):
        return None


def _public_key(cert: x509.Certificate) -> Any:
    # None for keys the backend cannot load, such as unknown named curves.
    try:
        return cert.public_key()
    except (UnsupportedAlgorithm, ValueError):
        return None


def _sig_alg(cert: x509.Certificate, sig_hash: hashes.HashAlgorithm | None) -> str:
    oid = cert.signature_algorithm_oid
    if oid.dotted_string == _RSA_PSS_OID:
        return f"{sig_hash.name.upper()}-RSAPSS" if sig_hash else "RSAPSS"
    name = _SIGNATURE_ALGORITHM_NAMES.get(oid.dotted_string)
    if name:
        return name
    return getattr(oid, "_name", None) or oid.dotted_string


def _version(cert: x509.Certificate) -> int:
    return {x509.Version.v1: 1, x509.Version.v3: 3}[cert.version]


@dataclass(frozen=True, eq=False)
class Certificate:
    """
    Read-only view of a parsed X.509 certificate.

    Compared by identity. The same certificate may appear twice in a chain and
    positions are resolved per object.
    """
    subject: str
    issuer: str
    common_name: str
    serial: int
    not_before: datetime
    not_after: datetime
    signature_algorithm: str
    version: int
    is_ca: bool = False
    sans_dns: tuple[str, ...] = ()
    sans_ip: tuple[str, ...] = ()
    key_usage: frozenset[str] = frozenset()
    ext_key_usage: tuple[str, ...] | None = None
    raw_subject: bytes = b""
    raw_issuer: bytes = b""
    tbs_bytes: bytes = b""
    signature: bytes = b""
    signature_hash: hashes.HashAlgorithm | None = None
    signature_padding: Any = None
    public_key: Any = None
    raw: bytes = b""
    subject_key_id: str | None = None
    authority_key_id: str | None = None

    @classmethod
    def from_cryptography(cls, cert: x509.Certificate) -> Certificate:
        sig_hash = _sig_hash(cert)
        dns, ips = _get_sans(cert)
        return cls(
            subject=_name_to_str(cert.subject),
            issuer=_name_to_str(cert.issuer),
            common_name=_common_name(cert.subject),
            serial=cert.serial_number,
            not_before=cert.not_valid_before_utc,
            not_after=cert.not_valid_after_utc,
            signature_algorithm=_sig_alg(cert, sig_hash),
            version=_version(cert),
            is_ca=_is_ca(cert),
            sans_dns=dns,
            sans_ip=ips,
            key_usage=_key_usage(cert),
            ext_key_usage=_ext_key_usage(cert),
            raw_subject=cert.subject.public_bytes(),
            raw_issuer=cert.issuer.public_bytes(),
            tbs_bytes=cert.tbs_certificate_bytes,
            signature=cert.signature,
            signature_hash=sig_hash,
            signature_padding=_sig_padding(cert),
            public_key=_public_key(cert),
            raw=cert.public_bytes(serialization.Encoding.DER),
            subject_key_id=_get_ski(cert),
            authority_key_id=_get_aki(cert),
        )

    @classmethod
    def from_der(cls, der: bytes) -> Certificate:
        return cls.from_cryptography(x509.load_der_x509_certificate(der))

    @property
    def sans(self) -> tuple[str, ...]:
        return self.sans_dns + self.sans_ip

    @property
    def display_name(self) -> str:
        return self.common_name or self.subject

    @property
    def sha1_fingerprint(self) -> str:
        return colon_hex(sha1_hex(self.raw))

    @property
    def sha256_fingerprint(self) -> str:
        return colon_hex(sha256_hex(self.raw))

    @property
    def has_weak_signature(self) -> bool:
        return signatures.is_weak_algorithm(self.signature_algorithm)

    @cached_property
    def self_signed(self) -> bool:
        return signatures.is_self_signed(self)
