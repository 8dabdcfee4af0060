from __future__ import annotations

import logging
import sys
from pathlib import Path

from OpenSSL import crypto

from . import __version__
from .certs import Certificate
from .config import CheckConfig, parse_check_args, parse_inspect_args, parse_scan_args
from .driver import error_verdict, run_check
from .errors import ConfigurationError
from .hosts import expand_hosts
from .log import setup_logging
from .models import ProbeResult, ServiceState, Verdict
from .payload import encode
from .report import (
    chain_report,
    perfdata,
    plugin_output,
    render,
    scan_detailed_table,
    scan_overview_table,
    summarize_chain,
)
from .scanner import Scanner
from .utils import format_elapsed, now_utc

logger = logging.getLogger(__name__)


def _write_output(out_path: str, text: str) -> None:
    try:
        Path(out_path).write_text(text + "\n", encoding="utf-8")
    except OSError as e:
        logger.error("failed to write payload", extra={"fields": {"path": out_path, "error": e}})


def _config_failure(err: ConfigurationError) -> int:
    verdict = error_verdict(err, CheckConfig())
    print(render(verdict, CheckConfig().policy))
    return verdict.exit_code


def _openssl_text(cert: Certificate) -> str:
    x509 = crypto.load_certificate(crypto.FILETYPE_ASN1, cert.raw)
    return crypto.dump_certificate(crypto.FILETYPE_TEXT, x509).decode("utf-8", "replace")


def check_cert_main(argv: list[str] | None = None) -> int:
    try:
        config = parse_check_args(sys.argv[1:] if argv is None else argv)
    except ConfigurationError as e:
        return _config_failure(e)

    if config.show_version:
        print(__version__)
        return 0

    setup_logging(config.log_level)
    verdict = run_check(config)

    output = render(verdict, config.policy, verbose=config.verbose, list_ignored_errors=config.list_ignored_errors)
    perf = perfdata(verdict.chain, config.policy.thresholds, verdict.evaluated_at or now_utc()) if verdict.chain else []
    print(plugin_output(output, perf))

    if config.payload_out and verdict.chain:
        _write_output(config.payload_out, encode(verdict, config.policy))
    return verdict.exit_code


def _inspect_line(label: str, text: str) -> str:
    return f"{label}: {text}"


def _print_inspection(verdict: Verdict, config: CheckConfig) -> None:
    print(_inspect_line(ServiceState.OK.label, verdict.context.describe(len(verdict.chain))))
    if verdict.context.leftover_bytes:
        print(_inspect_line(
            ServiceState.WARNING.label,
            f"{verdict.context.leftover_bytes} bytes of unparsed data found after certificates",
        ))
    for error in verdict.errors:
        print(_inspect_line(ServiceState.UNKNOWN.label, error))

    for result in verdict.results:
        label = "IGNORED" if result.ignored else result.status.label
        text = f"{result.summary} {result.overview}".rstrip()
        if result.ignored and result.error and config.list_ignored_errors:
            text += f" ({result.error})"
        print()
        print(_inspect_line(label, text))
        if result.detail and not result.ignored:
            print(f"\t{result.detail}")

    print()
    print("CERTIFICATE CHAIN:")
    print()
    print(chain_report(verdict.chain, config.policy, verdict.evaluated_at or now_utc(), config.verbose))

    if config.text:
        for i, cert in enumerate(verdict.chain, start=1):
            print()
            print(f"Certificate {i} of {len(verdict.chain)} (OpenSSL text):")
            print(_openssl_text(cert))


def lscert_main(argv: list[str] | None = None) -> int:
    try:
        config = parse_inspect_args(sys.argv[1:] if argv is None else argv)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if config.show_version:
        print(__version__)
        return 0

    setup_logging(config.log_level)
    verdict = run_check(config)
    if not verdict.chain:
        print(render(verdict, config.policy))
        return 1

    _print_inspection(verdict, config)
    if config.payload_out:
        _write_output(config.payload_out, encode(verdict, config.policy))
    return 0


def _probe_printer(show_results: bool, show_closed: bool):
    def on_probe(result: ProbeResult) -> None:
        if not show_results:
            print(".", end="", flush=True)
            return
        if result.open or show_closed:
            t = result.target
            host = f"{t.name} ({t.ip})" if t.name else t.ip
            print(f"{host}: [{t.port}: {'open' if result.open else 'closed'}]", flush=True)

    return on_probe


def _on_timeout(seconds: float) -> None:
    print(f"\nInactivity timer ({seconds:g}s) triggered.", file=sys.stderr)
    print("Shutting down application ...", file=sys.stderr)


def certsum_main(argv: list[str] | None = None) -> int:
    try:
        config = parse_scan_args(sys.argv[1:] if argv is None else argv)
        if config.show_version:
            print(__version__)
            return 0
        setup_logging(config.log_level)
        expansion = expand_hosts(config.hosts)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(
        f"Beginning cert scan against {expansion.ip_count} IPs expanded from "
        f"{len(expansion.patterns)} unique host patterns using ports: {list(config.ports)}"
    )

    scanner = Scanner(
        ports=config.ports,
        scan_timeout=config.scan_timeout_ms / 1000,
        app_timeout=config.app_timeout,
        rate_limit=config.rate_limit,
        handshake_timeout=config.timeout,
        legacy_ciphers=config.legacy_ciphers,
        on_probe=_probe_printer(config.show_port_scan_results, config.show_closed_ports),
        on_timeout=_on_timeout,
    )
    result = scanner.run(expansion)
    print()

    if result.cancelled:
        print(f"Certificates scan aborted after {format_elapsed(result.elapsed)} due to application timeout.")
    else:
        print(f"Completed certificates scan in {format_elapsed(result.elapsed)}")

    now = now_utc()
    summaries = [summarize_chain(record, config.thresholds, now) for record in result.retrieved]
    issues = sum(1 for s in summaries if s.has_issues)
    print(f"{len(summaries)} certificate chains ({issues} issues) found.")
    if result.failed:
        print(f"{len(result.failed)} endpoints with open ports did not return a certificate chain.")

    show_valid = config.show_hosts_with_valid_certs or config.show_valid_certs
    if not issues and not (show_valid and summaries):
        print("Results: No certificate issues found!")
        return 0

    print()
    print(f"Results ({'all' if show_valid else 'issues only'}):")
    print()
    if config.show_overview:
        print(scan_overview_table(summaries, show_valid=show_valid))
    else:
        print(scan_detailed_table(
            summaries,
            now,
            show_valid_certs=config.show_valid_certs,
            show_hosts_with_valid_certs=config.show_hosts_with_valid_certs,
        ))
    return 0


if __name__ == "__main__":
    raise SystemExit(check_cert_main())
