from __future__ import annotations

import binascii
import errno
import ipaddress
import logging
import re
import select
import socket
import threading
import time
from contextlib import closing, suppress
from dataclasses import dataclass
from pathlib import Path

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from OpenSSL import SSL

from .certs import Certificate
from .errors import (
    ConnectivityError,
    DialTimeoutError,
    EmptyChainError,
    HandshakeError,
    MalformedEncodingError,
    NameResolutionError,
    NoCertificatesFoundError,
    RefusedError,
    ResetByPeerError,
    UnreadableFileError,
)

logger = logging.getLogger(__name__)

# Keeps 3DES and RSA key exchange suites on offer for legacy peers; OpenSSL 3
# drops both from DEFAULT and hides them behind security level 0.
LEGACY_CIPHER_LIST = b"DEFAULT:3DES:kRSA:@SECLEVEL=0"

_PEM_BLOCK = re.compile(rb"-----BEGIN ([A-Z0-9 ]+)-----(.*?)-----END \1-----", re.S)
_PEM_CERT_TYPES = {b"CERTIFICATE", b"X509 CERTIFICATE", b"TRUSTED CERTIFICATE"}
_DNS_LABEL = re.compile(r"^[A-Za-z0-9_]([A-Za-z0-9_-]{0,61}[A-Za-z0-9_])?$")

# Poll interval while waiting on a non-blocking handshake, so a cancel
# request is noticed before the deadline.
_CANCEL_POLL_SECONDS = 0.1


@dataclass(frozen=True)
class ParsedFile:
    chain: tuple[Certificate, ...]
    leftover_bytes: int = 0


def is_dns_name(value: str) -> bool:
    """
    True when `value` may be offered as SNI: a DNS name, not an IP literal.
    """
    value = value.rstrip(".")
    if not value or len(value) > 253:
        return False
    try:
        ipaddress.ip_address(value)
        return False
    except ValueError:
        pass
    return all(_DNS_LABEL.match(label) for label in value.split("."))


def build_tls_context(*, legacy_ciphers: bool = True) -> SSL.Context:
    """
    Client context that accepts any peer certificate.
    """
    ctx = SSL.Context(SSL.TLS_CLIENT_METHOD)
    ctx.set_verify(SSL.VERIFY_NONE, lambda *args: True)
    if legacy_ciphers:
        ctx.set_min_proto_version(SSL.TLS1_VERSION)
        ctx.set_cipher_list(LEGACY_CIPHER_LIST)
    return ctx


def _dial(ip: str, port: int, timeout_seconds: float) -> socket.socket:
    try:
        return socket.create_connection((ip, port), timeout=timeout_seconds)
    except socket.gaierror as e:
        raise NameResolutionError(f"failed to resolve {ip}: {e}") from e
    except socket.timeout as e:
        raise DialTimeoutError(f"timeout connecting to {ip}:{port} after {timeout_seconds}s") from e
    except ConnectionRefusedError as e:
        raise RefusedError(f"connection refused by {ip}:{port}") from e
    except ConnectionResetError as e:
        raise ResetByPeerError(f"connection reset by {ip}:{port}") from e
    except OSError as e:
        raise ConnectivityError(f"error connecting to {ip}:{port}: {e}") from e


def _handshake(
    conn: SSL.Connection,
    sock: socket.socket,
    deadline: float,
    cancel: threading.Event | None,
) -> None:
    while True:
        try:
            conn.do_handshake()
            return
        except (SSL.WantReadError, SSL.WantWriteError) as e:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise DialTimeoutError("timeout during TLS handshake") from None
            if cancel is not None:
                if cancel.is_set():
                    raise DialTimeoutError("TLS handshake cancelled") from None
                remaining = min(remaining, _CANCEL_POLL_SECONDS)
            if isinstance(e, SSL.WantReadError):
                select.select([sock], [], [], remaining)
            else:
                select.select([], [sock], [], remaining)


def _peer_chain(conn: SSL.Connection, ip: str, port: int) -> tuple[Certificate, ...]:
    chain = conn.get_peer_cert_chain() or []
    try:
        return tuple(Certificate.from_cryptography(c.to_cryptography()) for c in chain)
    except (ValueError, UnsupportedAlgorithm, x509.InvalidVersion) as e:
        raise HandshakeError(f"failed to parse certificate presented by {ip}:{port}: {e}") from e


def _handshake_error(err: SSL.Error, ip: str, port: int) -> ConnectivityError:
    if isinstance(err, SSL.SysCallError):
        code = err.args[0] if err.args else None
        if code in (errno.ECONNRESET, -1):
            return ResetByPeerError(f"connection reset by {ip}:{port} during TLS handshake")
    if isinstance(err, SSL.ZeroReturnError) or "unexpected eof" in str(err).lower():
        return ResetByPeerError(f"connection closed by {ip}:{port} during TLS handshake")
    return HandshakeError(f"TLS handshake with {ip}:{port} failed: {err}")


def fetch_from_network(
    *,
    sni: str,
    ip: str,
    port: int,
    timeout_seconds: float,
    cancel: threading.Event | None = None,
    legacy_ciphers: bool = True,
) -> tuple[Certificate, ...]:
    """
    Complete a TLS handshake with ip:port and return the certificates the peer
    presented, in the order it sent them. Nothing is verified.
    """
    ctx = build_tls_context(legacy_ciphers=legacy_ciphers)
    deadline = time.monotonic() + timeout_seconds

    fields = {"ip": ip, "port": port, "sni": sni}
    logger.debug("connecting to service", extra={"fields": fields})

    with closing(_dial(ip, port, timeout_seconds)) as sock:
        sock.setblocking(False)
        conn = SSL.Connection(ctx, sock)
        if sni and is_dns_name(sni):
            conn.set_tlsext_host_name(sni.rstrip(".").encode("idna"))
        conn.set_connect_state()

        try:
            _handshake(conn, sock, deadline, cancel)
        except SSL.Error as e:
            salvaged = _peer_chain(conn, ip, port)
            if not salvaged:
                raise _handshake_error(e, ip, port) from e
            logger.warning(
                "TLS handshake failed after peer sent its certificates",
                extra={"fields": {**fields, "error": e}},
            )
            return salvaged

        chain = _peer_chain(conn, ip, port)
        with suppress(SSL.Error):
            conn.shutdown()

    if not chain:
        raise EmptyChainError(f"no certificates received from {ip}:{port}")
    logger.debug("retrieved certificate chain", extra={"fields": {**fields, "certs": len(chain)}})
    return chain


def _load_der(der: bytes, what: str) -> Certificate:
    try:
        return Certificate.from_der(der)
    except (ValueError, UnsupportedAlgorithm, x509.InvalidVersion) as e:
        raise MalformedEncodingError(f"failed to parse {what}: {e}") from e


def _decode_pem_body(body: bytes) -> bytes:
    # Drop RFC 1421 style headers, keep base64 lines.
    lines = [line for line in body.splitlines() if b":" not in line]
    try:
        return binascii.a2b_base64(b"".join(line.strip() for line in lines))
    except binascii.Error as e:
        raise MalformedEncodingError(f"invalid base64 in PEM block: {e}") from e


def parse_certificates(data: bytes) -> ParsedFile:
    """
    Parse concatenated PEM CERTIFICATE blocks, or a single DER certificate.
    Data after the last PEM block is tolerated and counted.
    """
    if not data.strip():
        raise NoCertificatesFoundError("no certificates found: input is empty")

    if b"-----BEGIN" not in data:
        return ParsedFile(chain=(_load_der(data, "DER certificate"),))

    certs: list[Certificate] = []
    other_types: list[str] = []
    last_end = 0
    for match in _PEM_BLOCK.finditer(data):
        last_end = match.end()
        block_type = match.group(1)
        if block_type not in _PEM_CERT_TYPES:
            other_types.append(block_type.decode("ascii"))
            continue
        der = _decode_pem_body(match.group(2))
        certs.append(_load_der(der, f"PEM certificate {len(certs) + 1}"))

    if not certs:
        if other_types:
            raise NoCertificatesFoundError(
                f"no certificates found: unsupported PEM block types {', '.join(other_types)}"
            )
        raise MalformedEncodingError("no complete PEM block found")

    leftover = len(data[last_end:].strip())
    return ParsedFile(chain=tuple(certs), leftover_bytes=leftover)


def load_file(path: str | Path) -> ParsedFile:
    try:
        data = Path(path).read_bytes()
    except OSError as e:
        raise UnreadableFileError(f"failed to read {path}: {e.strerror or e}") from e

    parsed = parse_certificates(data)
    if parsed.leftover_bytes:
        logger.warning(
            "unparsed data found after certificates",
            extra={"fields": {"filename": str(path), "bytes": parsed.leftover_bytes}},
        )
    return parsed


def read_from_file(path: str | Path) -> tuple[Certificate, ...]:
    return load_file(path).chain
