from __future__ import annotations

import logging
from collections.abc import Sequence

from .certs import Certificate
from .models import ChainPosition

logger = logging.getLogger(__name__)

_SUPPORTED_VERSIONS = (1, 2, 3)


def _index_in_chain(cert: Certificate, chain: Sequence[Certificate]) -> int | None:
    for i, member in enumerate(chain):
        if member is cert:
            return i
    return None


def _signing_role(cert: Certificate) -> bool:
    """
    True when the v3 extensions describe a certificate that issues others.
    """
    if cert.is_ca:
        return True
    if cert.ext_key_usage is not None:
        return False
    return "key_cert_sign" in cert.key_usage


def chain_position(cert: Certificate, chain: Sequence[Certificate]) -> ChainPosition:
    """
    Role of `cert` within `chain`.

    The peer-presented first certificate is always a leaf (self-signed or
    not) and any other self-signed certificate is a root. The remaining
    certificates are classified from their x509 version and extensions.
    """
    index = _index_in_chain(cert, chain)
    if index is None or cert.version not in _SUPPORTED_VERSIONS:
        logger.warning(
            "unknown certificate chain position",
            extra={"fields": {"subject": cert.subject, "version": cert.version, "index": index}},
        )
        return ChainPosition.UNKNOWN

    if index == 0:
        return ChainPosition.LEAF_SELF_SIGNED if cert.self_signed else ChainPosition.LEAF

    if cert.self_signed:
        return ChainPosition.ROOT

    if cert.version < 3:
        return ChainPosition.INTERMEDIATE

    return ChainPosition.INTERMEDIATE if _signing_role(cert) else ChainPosition.LEAF


def classify_chain(chain: Sequence[Certificate]) -> list[ChainPosition]:
    return [chain_position(cert, chain) for cert in chain]


def is_chain_incomplete(chain: Sequence[Certificate]) -> bool:
    """
    A non-self-signed leaf sent without any intermediate.
    """
    positions = classify_chain(chain)
    return (
        bool(positions)
        and positions[0] is ChainPosition.LEAF
        and ChainPosition.INTERMEDIATE not in positions
    )
