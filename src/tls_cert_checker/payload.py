from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from .classify import is_chain_incomplete
from .errors import MalformedEncodingError, UnsupportedPayloadVersionError
from .models import CheckKind, ValidationCheckResult, Verdict
from .utils import dt_to_utc_iso, expires_in_days, format_serial, life_remaining_percent, now_utc
from .validation import ExpirationState, ValidationPolicy, assess_expirations

FORMAT_VERSION = 1
SUPPORTED_VERSIONS = (FORMAT_VERSION,)


def _result(verdict: Verdict, kind: CheckKind) -> ValidationCheckResult | None:
    return next((r for r in verdict.results if r.kind is kind), None)


def _failed(verdict: Verdict, kind: CheckKind) -> bool:
    result = _result(verdict, kind)
    return result is not None and result.failed


def build_payload(verdict: Verdict, policy: ValidationPolicy, now: datetime | None = None) -> dict[str, Any]:
    now = now or verdict.evaluated_at or now_utc()
    assessed = assess_expirations(verdict.chain, policy, now) if verdict.chain else []

    chain = []
    for a in assessed:
        cert = a.cert
        chain.append({
            "subject": cert.subject,
            "issuer": cert.issuer,
            "serial_hex": format_serial(cert.serial),
            "not_before": dt_to_utc_iso(cert.not_before),
            "not_after": dt_to_utc_iso(cert.not_after),
            "sans_entries": list(cert.sans),
            "signature_algorithm": cert.signature_algorithm,
            "chain_position": a.position.value,
            "has_weak_signature": cert.has_weak_signature,
            "expires_in_days": expires_in_days(cert.not_after, now),
            "life_remaining_percentage": life_remaining_percent(cert.not_before, cert.not_after, now),
        })

    context = verdict.context
    return {
        "format_version": FORMAT_VERSION,
        "server": context.server,
        "dns_name": policy.dns_name,
        "port": context.port,
        "filename": context.filename,
        "service_state": verdict.overall_status.label,
        "errors": list(verdict.errors),
        "chain": chain,
        "issues": {
            "expired": any(a.state is ExpirationState.EXPIRED for a in assessed),
            "expiring": any(a.state in (ExpirationState.WARNING, ExpirationState.CRITICAL) for a in assessed),
            "hostname_mismatch": _failed(verdict, CheckKind.HOSTNAME),
            "sans_list_mismatch": _failed(verdict, CheckKind.SANS_LIST),
            "weak_signature": _failed(verdict, CheckKind.WEAK_SIGNATURE),
            "chain_incomplete": is_chain_incomplete(verdict.chain),
        },
    }


def encode(verdict: Verdict, policy: ValidationPolicy, now: datetime | None = None) -> str:
    return json.dumps(build_payload(verdict, policy, now), indent=2, ensure_ascii=False)


def decode(text: str) -> dict[str, Any]:
    """
    Parse an encoded payload. Versions other than the supported ones are
    rejected rather than guessed at.
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedEncodingError(f"invalid payload: {e}") from e
    if not isinstance(data, dict):
        raise MalformedEncodingError("invalid payload: expected a JSON object")
    version = data.get("format_version")
    if type(version) is not int or version not in SUPPORTED_VERSIONS:
        raise UnsupportedPayloadVersionError(
            f"unsupported payload format version {version!r} (supported: {list(SUPPORTED_VERSIONS)})"
        )
    return data
