from __future__ import annotations

import logging
import socket

from .log import TRACE
from .models import ProbeResult, Target

logger = logging.getLogger(__name__)

DEFAULT_SCAN_TIMEOUT_MS = 200


def is_port_open(ip: str, port: int, timeout_seconds: float) -> bool:
    """
    One TCP connect attempt. Closed and filtered ports both read as not open.
    """
    try:
        with socket.create_connection((ip, port), timeout=timeout_seconds):
            return True
    except OSError as e:
        logger.log(TRACE, "port not open", extra={"fields": {"ip": ip, "port": port, "error": e}})
        return False


def probe(target: Target, timeout_seconds: float = DEFAULT_SCAN_TIMEOUT_MS / 1000) -> ProbeResult:
    return ProbeResult(target=target, open=is_port_open(target.ip, target.port, timeout_seconds))
