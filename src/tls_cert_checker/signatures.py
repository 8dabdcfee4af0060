from __future__ import annotations

import hashlib
import hmac
import logging
from enum import Enum
from typing import TYPE_CHECKING

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric import dsa, ec, ed448, ed25519, padding, rsa

if TYPE_CHECKING:
    from .certs import Certificate

logger = logging.getLogger(__name__)

WEAK_SIGNATURE_ALGORITHMS = frozenset(
    {"MD2-RSA", "MD5-RSA", "SHA1-RSA", "DSA-SHA1", "ECDSA-SHA1"}
)

# DER-encoded DigestInfo prefixes (RFC 8017, section 9.2).
_DIGEST_INFO_PREFIXES = {
    "md5": bytes.fromhex("3020300c06082a864886f70d020505000410"),
    "sha1": bytes.fromhex("3021300906052b0e03021a05000414"),
    "sha256": bytes.fromhex("3031300d060960864801650304020105000420"),
}

# Algorithms the platform may refuse but which can be checked by hand.
_MANUAL_RSA_HASHES = {"MD5-RSA": "md5", "SHA1-RSA": "sha1"}


class SignatureCheck(Enum):
    VALID = "valid"
    INVALID = "invalid"
    UNSUPPORTED = "unsupported"


def is_weak_algorithm(name: str) -> bool:
    return name in WEAK_SIGNATURE_ALGORITHMS


def verify_pkcs1v15(public_key: rsa.RSAPublicKey, signature: bytes, data: bytes, hash_name: str) -> bool:
    """
    RSASSA-PKCS1-v1_5 verification using only the public numbers, for digests
    the crypto backend will not accept.
    """
    numbers = public_key.public_numbers()
    k = (numbers.n.bit_length() + 7) // 8
    if len(signature) != k:
        return False
    s = int.from_bytes(signature, "big")
    if s >= numbers.n:
        return False
    encoded = pow(s, numbers.e, numbers.n).to_bytes(k, "big")

    digest_info = _DIGEST_INFO_PREFIXES[hash_name] + hashlib.new(
        hash_name, data, usedforsecurity=False
    ).digest()
    if k < len(digest_info) + 11:
        return False
    expected = b"\x00\x01" + b"\xff" * (k - len(digest_info) - 3) + b"\x00" + digest_info
    return hmac.compare_digest(encoded, expected)


def _manual_check(cert: Certificate) -> SignatureCheck:
    hash_name = _MANUAL_RSA_HASHES.get(cert.signature_algorithm)
    if hash_name is None or not isinstance(cert.public_key, rsa.RSAPublicKey):
        return SignatureCheck.UNSUPPORTED
    if verify_pkcs1v15(cert.public_key, cert.signature, cert.tbs_bytes, hash_name):
        return SignatureCheck.VALID
    return SignatureCheck.INVALID


def _platform_verify(cert: Certificate) -> SignatureCheck:
    key = cert.public_key
    sig_hash = cert.signature_hash

    if isinstance(key, rsa.RSAPublicKey):
        if sig_hash is None:
            return _manual_check(cert)
        pad = cert.signature_padding
        if not isinstance(pad, (padding.PKCS1v15, padding.PSS)):
            pad = padding.PKCS1v15()
        key.verify(cert.signature, cert.tbs_bytes, pad, sig_hash)
    elif isinstance(key, ec.EllipticCurvePublicKey):
        if sig_hash is None:
            return SignatureCheck.UNSUPPORTED
        key.verify(cert.signature, cert.tbs_bytes, ec.ECDSA(sig_hash))
    elif isinstance(key, dsa.DSAPublicKey):
        if sig_hash is None:
            return SignatureCheck.UNSUPPORTED
        key.verify(cert.signature, cert.tbs_bytes, sig_hash)
    elif isinstance(key, (ed25519.Ed25519PublicKey, ed448.Ed448PublicKey)):
        key.verify(cert.signature, cert.tbs_bytes)
    else:
        return SignatureCheck.UNSUPPORTED
    return SignatureCheck.VALID


def check_own_signature(cert: Certificate) -> SignatureCheck:
    """
    Verify the signature over the TBS bytes with the certificate's own key.
    """
    try:
        return _platform_verify(cert)
    except InvalidSignature:
        return SignatureCheck.INVALID
    except UnsupportedAlgorithm:
        logger.debug(
            "platform refused signature algorithm, verifying manually",
            extra={"fields": {"algorithm": cert.signature_algorithm}},
        )
        return _manual_check(cert)
    except (TypeError, ValueError) as err:
        # Key type does not fit the signature algorithm.
        logger.debug(
            "signature verification error",
            extra={"fields": {"algorithm": cert.signature_algorithm, "error": err}},
        )
        return SignatureCheck.INVALID


def is_self_signed(cert: Certificate) -> bool:
    if cert.raw_subject != cert.raw_issuer:
        return False
    result = check_own_signature(cert)
    if result is SignatureCheck.UNSUPPORTED:
        logger.debug(
            "unable to verify signature, trusting matching subject and issuer",
            extra={"fields": {"subject": cert.subject, "algorithm": cert.signature_algorithm}},
        )
        return True
    return result is SignatureCheck.VALID
