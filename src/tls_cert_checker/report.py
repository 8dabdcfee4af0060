from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime

from tabulate import tabulate

from .certs import Certificate
from .classify import classify_chain
from .models import ChainPosition, CheckKind, DiscoveredChain, ServiceState, Thresholds, ValidationCheckResult, Verdict
from .utils import expires_in_days, format_serial, format_timestamp, life_remaining_percent, now_utc
from .validation import (
    CertExpiration,
    ExpirationState,
    ValidationPolicy,
    assess_expirations,
    collapse,
    run_checks,
    weak_signature_ignored,
)

ERRORS_HEADER = "**VALIDATION ERRORS**"
REPORT_HEADER = "**VALIDATION CHECKS REPORT**"


@dataclass(frozen=True)
class CheckOutput:
    summary: str
    body: str

    def __str__(self) -> str:
        return f"{self.summary}\n{self.body}" if self.body else self.summary


@dataclass(frozen=True)
class PerfData:
    label: str
    value: int
    uom: str = ""
    warn: str = ""
    crit: str = ""
    min: str = ""
    max: str = ""

    def __str__(self) -> str:
        return f"'{self.label}'={self.value}{self.uom};{self.warn};{self.crit};{self.min};{self.max}"


def checks_tally(results: Sequence[ValidationCheckResult]) -> str:
    def part(label: str, picked: list[ValidationCheckResult]) -> str:
        if not picked:
            return f"0 {label}"
        return f"{len(picked)} {label} ({', '.join(r.kind.value for r in picked)})"

    ignored = [r for r in results if r.ignored]
    failed = [r for r in results if r.failed]
    succeeded = [r for r in results if r.succeeded]
    return (
        f"[checks: {part('IGNORED', ignored)}, {part('FAILED', failed)}, "
        f"{part('SUCCESSFUL', succeeded)}]"
    )


def _lead(verdict: Verdict) -> str:
    if verdict.headline:
        return verdict.headline
    if verdict.primary_check is not None:
        return verdict.primary_check.summary
    if verdict.results:
        return min(verdict.results, key=lambda r: r.kind.priority).summary
    return "no validation checks performed"


def summary_line(verdict: Verdict) -> str:
    return f"{verdict.overall_status.label}: {_lead(verdict)} {checks_tally(verdict.results)}"


def _signature_status(cert: Certificate, position: ChainPosition, policy: ValidationPolicy) -> str:
    if not cert.has_weak_signature:
        return f"[OK] {cert.signature_algorithm}"
    if weak_signature_ignored(position, policy):
        return f"[WEAK, IGNORED] {cert.signature_algorithm}"
    return f"[WEAK] {cert.signature_algorithm}"


def cert_block(
    assessment: CertExpiration,
    index: int,
    total: int,
    policy: ValidationPolicy,
    now: datetime,
    verbose: bool = False,
) -> str:
    cert = assessment.cert
    lines = [f"Certificate {index} of {total} ({assessment.position.value}):"]
    lines.append(f"\tName: {cert.subject}")
    if cert.sans:
        lines.append(f"\tSANs entries ({len(cert.sans)}): [{', '.join(cert.sans)}]")
    else:
        lines.append("\tSANs entries: None")
    if verbose:
        lines.append(f"\tKeyID: {cert.subject_key_id or 'None'}")
        lines.append(f"\tIssuerKeyID: {cert.authority_key_id or 'None'}")
    lines.append(f"\tIssuer: {cert.issuer}")
    lines.append(f"\tSerial: {format_serial(cert.serial)}")
    lines.append(f"\tIssued On: {format_timestamp(cert.not_before)}")
    lines.append(f"\tExpiration: {format_timestamp(cert.not_after)}")
    lines.append(f"\tSignature Algorithm: {_signature_status(cert, assessment.position, policy)}")
    if verbose:
        lines.append(f"\tFingerprint (SHA-1): {cert.sha1_fingerprint}")
        lines.append(f"\tFingerprint (SHA-256): {cert.sha256_fingerprint}")
    lines.append(f"\tStatus: {assessment.status_text(now)}")
    return "\n".join(lines)


def chain_report(
    chain: Sequence[Certificate],
    policy: ValidationPolicy,
    now: datetime,
    verbose: bool = False,
) -> str:
    assessed = assess_expirations(chain, policy, now)
    return "\n\n".join(
        cert_block(a, i, len(assessed), policy, now, verbose) for i, a in enumerate(assessed, start=1)
    )


def validation_errors(verdict: Verdict, list_ignored_errors: bool = False) -> list[str]:
    errors = list(verdict.errors)
    for result in verdict.results:
        if result.error is None:
            continue
        if result.failed or (result.ignored and list_ignored_errors):
            errors.append(result.error)
    return errors


def render(
    verdict: Verdict,
    policy: ValidationPolicy,
    *,
    verbose: bool = False,
    list_ignored_errors: bool = False,
) -> CheckOutput:
    """
    One-line summary plus the sectioned report body. Output depends only on
    the verdict, the policy and the verdict's evaluation time.
    """
    now = verdict.evaluated_at or now_utc()
    sections: list[str] = []

    errors = validation_errors(verdict, list_ignored_errors)
    if errors:
        sections.append(ERRORS_HEADER)
        sections.append("\n".join(f"* {e}" for e in errors))

    report: list[str] = []
    if verdict.chain:
        report.append(verdict.context.describe(len(verdict.chain)))
    if verdict.context.leftover_bytes:
        report.append(f"{verdict.context.leftover_bytes} bytes of unparsed data found after certificates")
    shown = [r for r in verdict.results if list_ignored_errors or not r.ignored]
    if shown:
        report.append("\n".join(r.report_line for r in shown))
    if verdict.chain:
        report.append(chain_report(verdict.chain, policy, now, verbose))
    if report:
        sections.append(REPORT_HEADER)
        sections.extend(report)

    return CheckOutput(summary=summary_line(verdict), body="\n\n".join(sections))


def perfdata(chain: Sequence[Certificate], thresholds: Thresholds, now: datetime) -> list[PerfData]:
    positions = classify_chain(chain)
    by_position: dict[ChainPosition, list[Certificate]] = {p: [] for p in ChainPosition}
    for cert, position in zip(chain, positions):
        by_position[position].append(cert)

    leaves = by_position[ChainPosition.LEAF] + by_position[ChainPosition.LEAF_SELF_SIGNED]
    intermediates = by_position[ChainPosition.INTERMEDIATE]
    warn, crit = str(thresholds.warning_days), str(thresholds.critical_days)

    out: list[PerfData] = []
    for label, certs in (("leaf", leaves), ("intermediate", intermediates)):
        if not certs:
            continue
        soonest = min(certs, key=lambda c: c.not_after)
        out.append(PerfData(f"expires_{label}", expires_in_days(soonest.not_after, now), "d", warn, crit))
        out.append(PerfData(
            f"life_remaining_{label}",
            life_remaining_percent(soonest.not_before, soonest.not_after, now),
            "%",
        ))
    out.append(PerfData("certs_present_leaf", len(leaves)))
    out.append(PerfData("certs_present_intermediate", len(intermediates)))
    out.append(PerfData("certs_present_root", len(by_position[ChainPosition.ROOT])))
    out.append(PerfData("certs_present_unknown", len(by_position[ChainPosition.UNKNOWN])))
    return out


def plugin_output(output: CheckOutput, perf: Sequence[PerfData] = ()) -> str:
    text = str(output)
    if perf:
        text += " | " + " ".join(str(p) for p in perf)
    return text


# Scanner tables


@dataclass(frozen=True)
class ChainSummary:
    record: DiscoveredChain
    status: ServiceState
    overview: str
    assessments: tuple[CertExpiration, ...]

    @property
    def has_issues(self) -> bool:
        return self.status is not ServiceState.OK


def summarize_chain(record: DiscoveredChain, thresholds: Thresholds, now: datetime) -> ChainSummary:
    """
    Evaluate a scanned chain. The hostname check only applies when the target
    was given by name.
    """
    ignore = frozenset({CheckKind.HOSTNAME}) if not record.target.name else frozenset()
    policy = ValidationPolicy(thresholds=thresholds, server=record.target.name or None, ignore=ignore)
    results = run_checks(record.chain, policy, now)
    status, _ = collapse(results)
    expiration = next(r for r in results if r.kind is CheckKind.EXPIRATION)
    return ChainSummary(
        record=record,
        status=status,
        overview=expiration.overview,
        assessments=tuple(assess_expirations(record.chain, policy, now)),
    )


def _subject_or_sans(cert: Certificate) -> str:
    if cert.common_name:
        return cert.common_name
    return ", ".join(cert.sans) or cert.subject


def scan_overview_table(summaries: Sequence[ChainSummary], show_valid: bool = False) -> str:
    headers = ("Host (Name/FQDN)", "IP Addr", "Port", "Subject or SANs", "Status (Type)", "Chain Summary")
    rows = []
    for s in summaries:
        if not s.has_issues and not show_valid:
            continue
        target = s.record.target
        rows.append((
            target.name or "N/A",
            target.ip,
            str(target.port),
            _subject_or_sans(s.record.chain[0]),
            s.status.label,
            s.overview,
        ))
    return tabulate(rows, headers=headers, tablefmt="simple", disable_numparse=True)


def scan_detailed_table(
    summaries: Sequence[ChainSummary],
    now: datetime,
    show_valid_certs: bool = False,
    show_hosts_with_valid_certs: bool = False,
) -> str:
    headers = ("Host (Name/FQDN)", "IP Addr", "Port", "Subject or SANs", "Status (Type)", "Summary", "Serial")
    rows = []
    for s in summaries:
        if not s.has_issues and not show_hosts_with_valid_certs:
            continue
        target = s.record.target
        for a in s.assessments:
            problem = (a.state is not ExpirationState.OK and not a.ignored) or (
                a.cert.has_weak_signature and a.position is not ChainPosition.ROOT
            )
            if not problem and not show_valid_certs:
                continue
            rows.append((
                target.name or "N/A",
                target.ip,
                str(target.port),
                _subject_or_sans(a.cert),
                f"{a.state.service_state.label} ({a.position.value})",
                a.status_text(now),
                format_serial(a.cert.serial),
            ))
    return tabulate(rows, headers=headers, tablefmt="simple", disable_numparse=True)
