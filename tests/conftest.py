from __future__ import annotations

import datetime as dt
import ipaddress
import socket
import ssl
import threading
from dataclasses import dataclass
from typing import Any

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from tls_cert_checker.certs import Certificate

NOW = dt.datetime(2025, 6, 1, 12, 0, 0, tzinfo=dt.timezone.utc)


def ec_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


def build_cert(
    *,
    cn: str,
    key: Any = None,
    issuer: x509.Certificate | None = None,
    issuer_key: Any = None,
    ca: bool = False,
    sans: tuple[str, ...] = (),
    ip_sans: tuple[str, ...] = (),
    not_before: dt.datetime | None = None,
    not_after: dt.datetime | None = None,
    hash_alg: hashes.HashAlgorithm | None = None,
    server_auth: bool = True,
    serial: int | None = None,
) -> tuple[x509.Certificate, Any]:
    key = key or ec_key()
    if cn:
        subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])
    else:
        subject = x509.Name([x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Example Org")])
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer.subject if issuer is not None else subject)
        .public_key(key.public_key())
        .serial_number(serial or x509.random_serial_number())
        .not_valid_before(not_before or NOW - dt.timedelta(days=30))
        .not_valid_after(not_after or NOW + dt.timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
    )
    if ca:
        builder = builder.add_extension(
            x509.KeyUsage(
                digital_signature=True,
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
    elif server_auth:
        builder = builder.add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False
        )
    names: list[x509.GeneralName] = [x509.DNSName(s) for s in sans]
    names += [x509.IPAddress(ipaddress.ip_address(ip)) for ip in ip_sans]
    if names:
        builder = builder.add_extension(x509.SubjectAlternativeName(names), critical=False)
    cert = builder.sign(issuer_key or key, hash_alg or hashes.SHA256())
    return cert, key


def wrap(*certs: x509.Certificate) -> tuple[Certificate, ...]:
    return tuple(Certificate.from_cryptography(c) for c in certs)


def to_pem(*certs: x509.Certificate) -> bytes:
    return b"".join(c.public_bytes(serialization.Encoding.PEM) for c in certs)


# DER encoding of the prime256v1 curve OID and an unassigned sibling arc.
_P256_OID_DER = bytes.fromhex("06082a8648ce3d030107")
_UNKNOWN_CURVE_OID_DER = bytes.fromhex("06082a8648ce3d030163")


def unknown_curve_pem(cn: str, now: dt.datetime) -> bytes:
    """
    Self-signed certificate whose EC key names a curve no backend knows. It
    still parses, but its public key cannot be loaded.
    """
    cert, _ = build_cert(
        cn=cn,
        sans=(cn,),
        not_before=now - dt.timedelta(days=1),
        not_after=now + dt.timedelta(days=365),
    )
    der = cert.public_bytes(serialization.Encoding.DER).replace(_P256_OID_DER, _UNKNOWN_CURVE_OID_DER, 1)
    return to_pem(x509.load_der_x509_certificate(der))


@dataclass
class Pki:
    root: x509.Certificate
    root_key: Any
    intermediate: x509.Certificate
    intermediate_key: Any
    leaf: x509.Certificate
    leaf_key: Any

    def chain(self) -> tuple[Certificate, ...]:
        return wrap(self.leaf, self.intermediate, self.root)

    def pem(self) -> bytes:
        return to_pem(self.leaf, self.intermediate, self.root)

    def leaf_key_pem(self) -> bytes:
        return self.leaf_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )


def make_pki(
    now: dt.datetime,
    *,
    leaf_cn: str = "www.example.com",
    sans: tuple[str, ...] = ("example.com", "www.example.com"),
    leaf_remaining: dt.timedelta = dt.timedelta(days=65, hours=23, minutes=30),
    intermediate_remaining: dt.timedelta = dt.timedelta(days=1000),
) -> Pki:
    root, root_key = build_cert(
        cn="Example Root CA",
        ca=True,
        not_before=now - dt.timedelta(days=3650),
        not_after=now + dt.timedelta(days=3650),
    )
    intermediate, intermediate_key = build_cert(
        cn="Example Issuing CA",
        ca=True,
        issuer=root,
        issuer_key=root_key,
        not_before=now - dt.timedelta(days=365),
        not_after=now + intermediate_remaining,
    )
    leaf, leaf_key = build_cert(
        cn=leaf_cn,
        sans=sans,
        issuer=intermediate,
        issuer_key=intermediate_key,
        not_before=now - dt.timedelta(days=24),
        not_after=now + leaf_remaining,
    )
    return Pki(root, root_key, intermediate, intermediate_key, leaf, leaf_key)


@pytest.fixture(scope="session")
def pki() -> Pki:
    return make_pki(NOW)


@pytest.fixture(scope="session")
def live_pki() -> Pki:
    """Chain relative to the real clock, for code paths that read it."""
    return make_pki(dt.datetime.now(dt.timezone.utc), leaf_cn="localhost", sans=("localhost",))


@pytest.fixture(scope="session")
def rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def pem_file(tmp_path, pki):
    path = tmp_path / "chain.pem"
    path.write_bytes(pki.pem())
    return path


@pytest.fixture
def server_names() -> list:
    """SNI values seen by `tls_server`, None for a hello without one."""
    return []


@pytest.fixture
def tls_server(tmp_path, live_pki, server_names):
    """Local TLS endpoint presenting the live chain; yields its port."""
    certfile = tmp_path / "server.pem"
    keyfile = tmp_path / "server.key"
    certfile.write_bytes(live_pki.pem())
    keyfile.write_bytes(live_pki.leaf_key_pem())
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.load_cert_chain(certfile, keyfile)
    ctx.sni_callback = lambda sslobj, name, context: server_names.append(name)

    listener = socket.socket()
    listener.bind(("127.0.0.1", 0))
    listener.listen(8)
    listener.settimeout(0.2)
    stop = threading.Event()

    def serve():
        while not stop.is_set():
            try:
                conn, _ = listener.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            with conn:
                conn.settimeout(5)
                try:
                    with ctx.wrap_socket(conn, server_side=True) as tls:
                        tls.recv(1)
                except (ssl.SSLError, OSError):
                    pass

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    yield listener.getsockname()[1]
    stop.set()
    thread.join(timeout=5)
    listener.close()
