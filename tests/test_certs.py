import datetime as dt

from cryptography.hazmat.primitives import hashes

from conftest import NOW, build_cert, unknown_curve_pem, wrap
from tls_cert_checker.certs import Certificate
from tls_cert_checker.fetch import parse_certificates


def test_leaf_fields(pki):
    (leaf,) = wrap(pki.leaf)
    assert leaf.subject == "CN=www.example.com"
    assert leaf.issuer == "CN=Example Issuing CA"
    assert leaf.common_name == "www.example.com"
    assert leaf.sans_dns == ("example.com", "www.example.com")
    assert leaf.sans_ip == ()
    assert leaf.version == 3
    assert leaf.is_ca is False
    assert leaf.key_usage == frozenset()
    assert leaf.ext_key_usage == ("1.3.6.1.5.5.7.3.1",)
    assert leaf.signature_algorithm == "ECDSA-SHA256"
    assert leaf.has_weak_signature is False
    assert leaf.not_after.tzinfo is not None
    assert leaf.serial == pki.leaf.serial_number
    assert leaf.authority_key_id is None
    assert leaf.subject_key_id and ":" in leaf.subject_key_id


def test_ca_fields(pki):
    (root,) = wrap(pki.root)
    assert root.is_ca is True
    assert {"key_cert_sign", "crl_sign", "digital_signature"} <= root.key_usage
    assert root.ext_key_usage is None
    assert root.raw_subject == root.raw_issuer


def test_ip_sans_and_display_name():
    cert, _ = build_cert(cn="", sans=("a.example",), ip_sans=("10.0.0.1",))
    (wrapped,) = wrap(cert)
    assert wrapped.sans_ip == ("10.0.0.1",)
    assert wrapped.sans == ("a.example", "10.0.0.1")
    assert wrapped.common_name == ""
    assert wrapped.display_name == wrapped.subject == "O=Example Org"


def test_rsa_sha1_is_weak(rsa_key):
    cert, _ = build_cert(cn="legacy.example", key=rsa_key, hash_alg=hashes.SHA1())
    (wrapped,) = wrap(cert)
    assert wrapped.signature_algorithm == "SHA1-RSA"
    assert wrapped.has_weak_signature is True


def test_rsa_sha256_name(rsa_key):
    cert, _ = build_cert(cn="modern.example", key=rsa_key)
    assert wrap(cert)[0].signature_algorithm == "SHA256-RSA"


def test_fingerprints(pki):
    (leaf,) = wrap(pki.leaf)
    assert len(leaf.sha256_fingerprint) == 32 * 3 - 1
    assert len(leaf.sha1_fingerprint) == 20 * 3 - 1
    assert leaf.sha256_fingerprint == leaf.sha256_fingerprint.upper()


def test_from_der_roundtrip(pki):
    (leaf,) = wrap(pki.leaf)
    again = Certificate.from_der(leaf.raw)
    assert again.serial == leaf.serial
    assert again.not_before == leaf.not_before
    assert isinstance(again.not_before, dt.datetime)


def test_identity_semantics(pki):
    a, b = wrap(pki.leaf, pki.leaf)
    assert a is not b
    assert a != b
    assert a == a


def test_unloadable_public_key_still_parses():
    (cert,) = parse_certificates(unknown_curve_pem("odd.example", NOW)).chain
    assert cert.public_key is None
    assert cert.common_name == "odd.example"
    # Own signature cannot be checked; matching subject and issuer decide.
    assert cert.self_signed is True
