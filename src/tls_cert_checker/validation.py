from __future__ import annotations

import ipaddress
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import IntEnum

from .certs import Certificate
from .classify import chain_position, classify_chain
from .errors import ConfigurationError
from .models import (
    ChainPosition,
    CheckKind,
    RetrievalContext,
    ServiceState,
    Thresholds,
    ValidationCheckResult,
    Verdict,
)
from .utils import format_time_remaining, format_timestamp, life_remaining_percent, now_utc, utc

logger = logging.getLogger(__name__)

SKIP_SANS_KEYWORD = "SKIPSANSCHECKS"


class ExpirationState(IntEnum):
    OK = 0
    WARNING = 1
    CRITICAL = 2
    EXPIRED = 3

    @property
    def service_state(self) -> ServiceState:
        if self is ExpirationState.WARNING:
            return ServiceState.WARNING
        if self in (ExpirationState.CRITICAL, ExpirationState.EXPIRED):
            return ServiceState.CRITICAL
        return ServiceState.OK


@dataclass(frozen=True)
class ValidationPolicy:
    thresholds: Thresholds = field(default_factory=Thresholds)
    dns_name: str | None = None
    server: str | None = None
    expected_sans: tuple[str, ...] | None = None
    ignore_hostname_if_empty_sans: bool = False
    ignore_expired_intermediate: bool = False
    ignore_expired_root: bool = False
    ignore_expiring_intermediate: bool = False
    ignore_expiring_root: bool = False
    evaluate_root_signatures: bool = False
    apply: frozenset[CheckKind] = frozenset()
    ignore: frozenset[CheckKind] = frozenset()

    def __post_init__(self) -> None:
        both = self.apply & self.ignore
        if both:
            names = ", ".join(sorted(k.keyword for k in both))
            raise ConfigurationError(f"validation checks both applied and ignored: {names}")
        if CheckKind.SANS_LIST in self.apply and not self.sans_requested:
            raise ConfigurationError(
                "SANs list validation requested, but no SANs entries were provided"
            )

    @property
    def verification_name(self) -> str | None:
        return (self.dns_name or self.server or "").strip() or None

    @property
    def sans_requested(self) -> bool:
        entries = [e.strip() for e in self.expected_sans or () if e.strip()]
        return bool(entries) and not any(e.upper() == SKIP_SANS_KEYWORD for e in entries)

    def is_ignored(self, kind: CheckKind) -> bool:
        if kind in self.ignore:
            return True
        if kind in self.apply:
            return False
        if kind is CheckKind.SANS_LIST:
            return not self.sans_requested
        return False


def expiration_state(not_after: datetime, thresholds: Thresholds, now: datetime) -> ExpirationState:
    """
    First match wins: expired, inside the critical window, inside the warning
    window, otherwise OK. Thresholds are whole 24h periods with no rounding.
    """
    not_after, now = utc(not_after), utc(now)
    if not_after < now:
        return ExpirationState.EXPIRED
    if not_after < now + timedelta(days=thresholds.critical_days):
        return ExpirationState.CRITICAL
    if not_after < now + timedelta(days=thresholds.warning_days):
        return ExpirationState.WARNING
    return ExpirationState.OK


@dataclass(frozen=True)
class CertExpiration:
    cert: Certificate
    position: ChainPosition
    state: ExpirationState
    ignored: bool = False

    def status_text(self, now: datetime) -> str:
        remaining = format_time_remaining(self.cert.not_after, now)
        pct = life_remaining_percent(self.cert.not_before, self.cert.not_after, now)
        if self.ignored:
            label = "EXPIRED, IGNORED" if self.state is ExpirationState.EXPIRED else "EXPIRING, IGNORED"
        else:
            label = self.state.name
        return f"[{label}] {remaining} ({pct}%)"


def _expiration_ignored(position: ChainPosition, state: ExpirationState, policy: ValidationPolicy) -> bool:
    if state is ExpirationState.OK:
        return False
    if state is ExpirationState.EXPIRED:
        ignore_intermediate, ignore_root = policy.ignore_expired_intermediate, policy.ignore_expired_root
    else:
        ignore_intermediate, ignore_root = policy.ignore_expiring_intermediate, policy.ignore_expiring_root
    if position is ChainPosition.INTERMEDIATE:
        return ignore_intermediate
    if position is ChainPosition.ROOT:
        return ignore_root
    return False


def assess_expirations(
    chain: Sequence[Certificate], policy: ValidationPolicy, now: datetime
) -> list[CertExpiration]:
    out = []
    for cert, position in zip(chain, classify_chain(chain)):
        state = expiration_state(cert.not_after, policy.thresholds, now)
        out.append(CertExpiration(cert, position, state, _expiration_ignored(position, state, policy)))
    return out


def _summary_name(cert: Certificate) -> str:
    if cert.common_name:
        return cert.common_name
    if cert.sans_dns:
        return cert.sans_dns[0]
    return cert.subject


def check_expiration(chain: Sequence[Certificate], policy: ValidationPolicy, now: datetime) -> ValidationCheckResult:
    assessed = assess_expirations(chain, policy, now)
    counted = [a for a in assessed if not a.ignored]

    num_expired = sum(1 for a in assessed if a.state is ExpirationState.EXPIRED)
    num_expiring = sum(1 for a in assessed if a.state in (ExpirationState.WARNING, ExpirationState.CRITICAL))
    num_ok = len(assessed) - num_expired - num_expiring

    worst = max((a.state for a in counted), default=ExpirationState.OK)
    candidates = [a for a in counted if a.state is worst] or assessed
    subject = next((a for a in candidates if a.position.is_leaf), None)
    if subject is None:
        subject = min(candidates, key=lambda a: a.cert.not_after)

    status = worst.service_state
    verb = "successful" if status is ServiceState.OK else "failed"
    cert = subject.cert
    remaining = format_time_remaining(cert.not_after, now)
    if subject.state is ExpirationState.EXPIRED:
        summary = (
            f'{CheckKind.EXPIRATION.value} validation {verb}: {subject.position.value} cert '
            f'"{_summary_name(cert)}" expired {remaining} (on {format_timestamp(cert.not_after)})'
        )
    else:
        summary = (
            f'{CheckKind.EXPIRATION.value} validation {verb}: {subject.position.value} cert '
            f'"{_summary_name(cert)}" expires next with {remaining} (until {format_timestamp(cert.not_after)})'
        )

    error = None
    if worst is ExpirationState.EXPIRED:
        error = "expiration validation failed: expired certificates found"
    elif worst is not ExpirationState.OK:
        error = "expiration validation failed: expiring certificates found"

    detail = f"{num_expired} expired certificates, {num_expiring} expiring certificates"
    skipped = len(assessed) - len(counted)
    if skipped:
        detail += f", {skipped} ignored as requested"

    return ValidationCheckResult(
        kind=CheckKind.EXPIRATION,
        status=status,
        summary=summary,
        detail=detail,
        ignored=policy.is_ignored(CheckKind.EXPIRATION),
        error=error,
        overview=f"[EXPIRED: {num_expired}, EXPIRING: {num_expiring}, OK: {num_ok}]",
    )


def _wildcard_match(pattern: str, name: str) -> bool:
    pattern_labels = pattern.split(".")
    name_labels = name.split(".")
    if len(pattern_labels) != len(name_labels) or len(pattern_labels) < 3:
        return False
    if pattern_labels[0] != "*" or "*" in ".".join(pattern_labels[1:]):
        return False
    return bool(name_labels[0]) and pattern_labels[1:] == name_labels[1:]


def matches_hostname(cert: Certificate, name: str) -> bool:
    """
    RFC 6125 matching against the SANs only. A wildcard stands for exactly one
    whole leftmost label.
    """
    try:
        addr = ipaddress.ip_address(name.strip("[]"))
    except ValueError:
        addr = None
    if addr is not None:
        return any(ipaddress.ip_address(ip) == addr for ip in cert.sans_ip)

    name = name.rstrip(".").lower()
    for entry in cert.sans_dns:
        entry = entry.rstrip(".").lower()
        if "*" in entry:
            if _wildcard_match(entry, name):
                return True
        elif entry == name:
            return True
    return False


def check_hostname(chain: Sequence[Certificate], policy: ValidationPolicy, now: datetime) -> ValidationCheckResult:
    kind = CheckKind.HOSTNAME
    ignored = policy.is_ignored(kind)
    name = policy.verification_name
    leaf = chain[0]

    if name is None:
        return ValidationCheckResult(
            kind=kind,
            status=ServiceState.CRITICAL,
            summary=f"{kind.value} validation failed: no server or DNS name value available",
            ignored=ignored,
            error="hostname verification failed: missing verification name (server or dns-name value required)",
        )

    position = chain_position(leaf, chain).value
    if not leaf.sans:
        if policy.ignore_hostname_if_empty_sans:
            return ValidationCheckResult(
                kind=kind,
                status=ServiceState.OK,
                summary=f'{kind.value} validation using value "{name}" successful for {position} cert',
                detail="leaf certificate has an empty SANs list; failure ignored as requested",
                ignored=ignored,
            )
        return ValidationCheckResult(
            kind=kind,
            status=ServiceState.CRITICAL,
            summary=f'{kind.value} validation using value "{name}" failed for {position} cert',
            detail="leaf certificate has an empty SANs list",
            ignored=ignored,
            error="hostname verification failed: certificate relies on legacy Common Name field, use SANs instead",
        )

    if matches_hostname(leaf, name):
        return ValidationCheckResult(
            kind=kind,
            status=ServiceState.OK,
            summary=f'{kind.value} validation using value "{name}" successful for {position} cert',
            ignored=ignored,
        )

    valid_for = ", ".join(leaf.sans)
    return ValidationCheckResult(
        kind=kind,
        status=ServiceState.CRITICAL,
        summary=f'{kind.value} validation using value "{name}" failed for {position} cert',
        detail=f"certificate is valid for {valid_for}",
        ignored=ignored,
        error=f"hostname verification failed: certificate is valid for {valid_for}, not {name}",
    )


def check_sans_list(chain: Sequence[Certificate], policy: ValidationPolicy, now: datetime) -> ValidationCheckResult:
    kind = CheckKind.SANS_LIST
    leaf = chain[0]
    expected = [e.strip() for e in policy.expected_sans or () if e.strip()]

    if not policy.sans_requested:
        return ValidationCheckResult(
            kind=kind,
            status=ServiceState.OK,
            summary=(
                f"{kind.value} validation ignored: {len(expected)} SANs entries specified, "
                f"{len(leaf.sans)} SANs entries on leaf cert"
            ),
            ignored=True,
        )

    wanted = [e.lower() for e in expected]
    present = [s.lower() for s in leaf.sans]
    missing = [w for w in wanted if w not in present]
    unexpected = [p for p in present if p not in wanted]
    ignored = policy.is_ignored(kind)

    if not missing and not unexpected:
        return ValidationCheckResult(
            kind=kind,
            status=ServiceState.OK,
            summary=(
                f"{kind.value} validation successful: expected and confirmed ({len(wanted)}) "
                f"SANs entries present for leaf certificate"
            ),
            ignored=ignored,
        )

    detail = (
        f"missing: [{', '.join(missing) or 'N/A'}], "
        f"unexpected: [{', '.join(unexpected) or 'N/A'}]"
    )
    problems = []
    if missing:
        problems.append("missing SANs entries")
    if unexpected:
        problems.append("unexpected SANs entries")
    return ValidationCheckResult(
        kind=kind,
        status=ServiceState.CRITICAL,
        summary=(
            f"{kind.value} validation failed: {len(missing)} missing, "
            f"{len(unexpected)} unexpected SANs entries for leaf certificate"
        ),
        detail=detail,
        ignored=ignored,
        error=f"SANs list validation failed: certificate has {' and '.join(problems)}; {detail}",
    )


def weak_signature_ignored(position: ChainPosition, policy: ValidationPolicy) -> bool:
    return position is ChainPosition.ROOT and not policy.evaluate_root_signatures


def check_weak_signature(chain: Sequence[Certificate], policy: ValidationPolicy, now: datetime) -> ValidationCheckResult:
    kind = CheckKind.WEAK_SIGNATURE
    positions = classify_chain(chain)
    evaluated = [c for c, p in zip(chain, positions) if not weak_signature_ignored(p, policy)]
    flagged = [c for c in evaluated if c.has_weak_signature]

    if not flagged:
        return ValidationCheckResult(
            kind=kind,
            status=ServiceState.OK,
            summary=f"{kind.value} validation successful: no weak signatures among {len(evaluated)} evaluated certs",
            ignored=policy.is_ignored(kind),
        )

    algorithms = ", ".join(sorted({c.signature_algorithm for c in flagged}))
    return ValidationCheckResult(
        kind=kind,
        status=ServiceState.CRITICAL,
        summary=f"{kind.value} validation failed: {len(flagged)} certs with weak signature algorithm ({algorithms})",
        detail="\n".join(f"{c.display_name}: {c.signature_algorithm}" for c in flagged),
        ignored=policy.is_ignored(kind),
        error=f"weak signature validation failed: weak signature algorithms found ({algorithms})",
    )


CheckFunc = Callable[[Sequence[Certificate], ValidationPolicy, datetime], ValidationCheckResult]


@dataclass(frozen=True)
class ValidationCheck:
    kind: CheckKind
    run: CheckFunc


CHECKS: tuple[ValidationCheck, ...] = (
    ValidationCheck(CheckKind.EXPIRATION, check_expiration),
    ValidationCheck(CheckKind.HOSTNAME, check_hostname),
    ValidationCheck(CheckKind.SANS_LIST, check_sans_list),
    ValidationCheck(CheckKind.WEAK_SIGNATURE, check_weak_signature),
)


def run_checks(
    chain: Sequence[Certificate],
    policy: ValidationPolicy,
    now: datetime | None = None,
    checks: Sequence[ValidationCheck] = CHECKS,
) -> list[ValidationCheckResult]:
    if not chain:
        raise ValueError("cannot validate an empty certificate chain")
    now = now or now_utc()
    results = []
    for check in checks:
        result = check.run(chain, policy, now)
        logger.debug(
            "validation check complete",
            extra={"fields": {
                "check": check.kind.value,
                "status": result.status.label,
                "ignored": result.ignored,
            }},
        )
        results.append(result)
    return results


def collapse(results: Sequence[ValidationCheckResult]) -> tuple[ServiceState, ValidationCheckResult | None]:
    """
    Worst non-ignored status, ties going to the higher priority check kind.
    OK with no primary check when everything was ignored.
    """
    active = [r for r in results if not r.ignored]
    if not active:
        return ServiceState.OK, None
    primary = max(active, key=lambda r: (r.status, -r.kind.priority))
    return primary.status, primary


def evaluate(
    chain: Sequence[Certificate],
    policy: ValidationPolicy,
    context: RetrievalContext | None = None,
    now: datetime | None = None,
) -> Verdict:
    now = now or now_utc()
    results = run_checks(chain, policy, now)
    status, primary = collapse(results)

    errors: list[str] = []
    if ChainPosition.UNKNOWN in classify_chain(chain):
        errors.append("unable to determine the chain position of one or more certificates")
        status = ServiceState.UNKNOWN

    return Verdict(
        overall_status=status,
        primary_check=primary,
        results=tuple(results),
        chain=tuple(chain),
        context=context or RetrievalContext(),
        errors=tuple(errors),
        evaluated_at=now,
    )
