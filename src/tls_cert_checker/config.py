from __future__ import annotations

import argparse
from dataclasses import dataclass, field, replace
from urllib.parse import urlsplit

from .errors import ConfigurationError
from .log import LOG_LEVELS
from .models import CheckKind, Thresholds
from .validation import ValidationPolicy

DEFAULT_PORT = 443
DEFAULT_TIMEOUT = 10
DEFAULT_AGE_CRITICAL = 15
DEFAULT_AGE_WARNING = 30
DEFAULT_SCAN_TIMEOUT_MS = 200
DEFAULT_APP_TIMEOUT = 30
DEFAULT_SCAN_RATE_LIMIT = 100
MIN_APP_TIMEOUT = 2
MAX_SCAN_RATE_LIMIT = 10000


class ArgumentParser(argparse.ArgumentParser):
    """argparse exits with 2 on bad flags; plugins must report UNKNOWN instead."""

    def error(self, message: str) -> None:  # type: ignore[override]
        raise ConfigurationError(f"{self.prog}: {message}")


@dataclass(frozen=True)
class CheckConfig:
    server: str | None = None
    filename: str | None = None
    port: int = DEFAULT_PORT
    timeout: float = DEFAULT_TIMEOUT
    policy: ValidationPolicy = field(default_factory=ValidationPolicy)
    list_ignored_errors: bool = False
    verbose: bool = False
    text: bool = False
    log_level: str = "info"
    legacy_ciphers: bool = True
    payload_out: str | None = None
    show_version: bool = False

    @property
    def dns_name(self) -> str | None:
        return self.policy.dns_name


@dataclass(frozen=True)
class ScanConfig:
    hosts: tuple[str, ...] = ()
    ports: tuple[int, ...] = (DEFAULT_PORT,)
    scan_timeout_ms: int = DEFAULT_SCAN_TIMEOUT_MS
    app_timeout: float = DEFAULT_APP_TIMEOUT
    rate_limit: int = DEFAULT_SCAN_RATE_LIMIT
    timeout: float = DEFAULT_TIMEOUT
    thresholds: Thresholds = field(default_factory=Thresholds)
    show_port_scan_results: bool = False
    show_closed_ports: bool = False
    show_hosts_with_valid_certs: bool = False
    show_valid_certs: bool = False
    show_overview: bool = False
    log_level: str = "info"
    legacy_ciphers: bool = True
    show_version: bool = False


def split_csv(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _parse_port(value: str | int) -> int:
    try:
        port = int(value)
    except ValueError:
        raise ConfigurationError(f"invalid port {value!r}") from None
    if not 1 <= port <= 65535:
        raise ConfigurationError(f"port {port} out of range (1-65535)")
    return port


def parse_target(target: str) -> tuple[str, int | None]:
    """
    Host and optional port from a URL, `host:port`, bare name or IP.
    """
    target = target.strip()
    if not target:
        raise ConfigurationError("target is empty")
    if "://" not in target:
        # Bare IPv6 literals carry colons of their own.
        if target.count(":") > 1 and not target.startswith("["):
            return target, None
        target = f"//{target}"
    try:
        parts = urlsplit(target)
        port = parts.port
    except ValueError as e:
        raise ConfigurationError(f"invalid target {target!r}: {e}") from e
    if not parts.hostname:
        raise ConfigurationError(f"no host found in target {target!r}")
    if port is not None:
        port = _parse_port(port)
    return parts.hostname, port


def _keywords(values: tuple[str, ...], flag: str) -> frozenset[CheckKind]:
    kinds = set()
    for value in values:
        try:
            kinds.add(CheckKind.from_keyword(value))
        except ValueError:
            valid = ", ".join(k.keyword for k in CheckKind)
            raise ConfigurationError(f"invalid {flag} keyword {value!r} (valid: {valid})") from None
    return frozenset(kinds)


def _thresholds(critical: int, warning: int) -> Thresholds:
    try:
        return Thresholds(critical_days=critical, warning_days=warning)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e


def _add_logging_flags(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--log-level",
        choices=list(LOG_LEVELS),
        default="info",
        help="Log level written to stderr (default: info)",
    )
    p.add_argument(
        "--legacy-ciphers",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Offer 3DES and RSA key exchange cipher suites to legacy peers (default: on)",
    )
    p.add_argument("--version", action="store_true", help="Print version and exit")


def _add_threshold_flags(p: argparse.ArgumentParser) -> None:
    p.add_argument("--age-critical", type=int, default=DEFAULT_AGE_CRITICAL,
                   help=f"Days before expiration that trigger CRITICAL (default: {DEFAULT_AGE_CRITICAL})")
    p.add_argument("--age-warning", type=int, default=DEFAULT_AGE_WARNING,
                   help=f"Days before expiration that trigger WARNING (default: {DEFAULT_AGE_WARNING})")


def _add_shared_flags(p: argparse.ArgumentParser) -> None:
    p.add_argument("--server", "-s", help="Server FQDN or IP address to retrieve the certificate chain from")
    p.add_argument("--filename", "-f", help="PEM or DER file to read the certificate chain from")
    p.add_argument("--port", "-p", type=int, default=None, help=f"TCP port of the service (default: {DEFAULT_PORT})")
    p.add_argument("--dns-name", help="Name used for hostname verification (default: server value)")
    _add_threshold_flags(p)
    p.add_argument("--sans-entries", help="Comma separated SANs entries the leaf certificate must carry exactly")
    p.add_argument("--ignore-hostname-verification-if-empty-sans", action="store_true",
                   help="Treat hostname verification as passed when the leaf has no SANs entries")
    p.add_argument("--ignore-expired-intermediate-certs", action="store_true",
                   help="Ignore expired intermediate certificates")
    p.add_argument("--ignore-expired-root-certs", action="store_true", help="Ignore expired root certificates")
    p.add_argument("--ignore-expiring-intermediate-certs", action="store_true",
                   help="Ignore expiring intermediate certificates")
    p.add_argument("--ignore-expiring-root-certs", action="store_true", help="Ignore expiring root certificates")
    p.add_argument("--evaluate-root-signatures", action="store_true",
                   help="Flag weak signature algorithms on root certificates too")
    p.add_argument("--apply-validation-result", default="",
                   help="Comma separated checks whose result always counts: expiration, hostname, sans, weak-signature")
    p.add_argument("--ignore-validation-result", default="",
                   help="Comma separated checks whose result is ignored: expiration, hostname, sans, weak-signature")
    p.add_argument("--list-ignored-errors", action="store_true", help="List errors from ignored checks")
    p.add_argument("--timeout", "-t", type=int, default=DEFAULT_TIMEOUT,
                   help=f"Connection and handshake timeout in seconds (default: {DEFAULT_TIMEOUT})")
    p.add_argument("--verbose", "-v", action="store_true", help="Include key IDs and fingerprints in the report")
    p.add_argument("--payload-out", help="Write the certificate chain payload (JSON) to this file")
    _add_logging_flags(p)


def check_parser() -> ArgumentParser:
    p = ArgumentParser(
        prog="check_cert",
        description="Monitoring plugin that validates a TLS certificate chain.",
    )
    _add_shared_flags(p)
    return p


def inspect_parser() -> ArgumentParser:
    p = ArgumentParser(
        prog="lscert",
        description="Retrieve a TLS certificate chain and show what the peer presents.",
    )
    _add_shared_flags(p)
    p.add_argument("--text", action="store_true", help="Also print an OpenSSL style rendering of each certificate")
    p.add_argument("target", nargs="?", help="URL, host name or IP address (e.g., https://example.com:8443)")
    return p


def scan_parser() -> ArgumentParser:
    p = ArgumentParser(
        prog="certsum",
        description="Scan hosts and ports for TLS certificates and summarize chain issues.",
    )
    p.add_argument("--hosts", default="", help="Comma separated IPs, CIDR ranges, partial ranges (10.0.0.1-50) or names")
    p.add_argument("--ports", default=str(DEFAULT_PORT), help=f"Comma separated TCP ports (default: {DEFAULT_PORT})")
    p.add_argument("--scan-timeout", type=int, default=DEFAULT_SCAN_TIMEOUT_MS,
                   help=f"Port probe timeout in milliseconds (default: {DEFAULT_SCAN_TIMEOUT_MS})")
    p.add_argument("--app-timeout", type=int, default=DEFAULT_APP_TIMEOUT,
                   help=f"Seconds without progress before the scan is aborted (default: {DEFAULT_APP_TIMEOUT})")
    p.add_argument("--scan-rate-limit", type=int, default=DEFAULT_SCAN_RATE_LIMIT,
                   help=f"Maximum concurrent probes and handshakes (default: {DEFAULT_SCAN_RATE_LIMIT})")
    p.add_argument("--timeout", "-t", type=int, default=DEFAULT_TIMEOUT,
                   help=f"Handshake timeout in seconds (default: {DEFAULT_TIMEOUT})")
    _add_threshold_flags(p)
    p.add_argument("--show-port-scan-results", action="store_true", help="Print the result of every port probe")
    p.add_argument("--show-closed-ports", action="store_true", help="Include closed ports in probe results")
    p.add_argument("--show-hosts-with-valid-certs", action="store_true", help="List hosts whose chains are valid")
    p.add_argument("--show-valid-certs", action="store_true", help="List valid certificates too")
    p.add_argument("--show-overview", action="store_true", help="Show one row per chain instead of per certificate")
    _add_logging_flags(p)
    return p


def _policy(args: argparse.Namespace, server: str | None) -> ValidationPolicy:
    sans = split_csv(args.sans_entries)
    return ValidationPolicy(
        thresholds=_thresholds(args.age_critical, args.age_warning),
        dns_name=args.dns_name or None,
        server=server,
        expected_sans=sans or None,
        ignore_hostname_if_empty_sans=args.ignore_hostname_verification_if_empty_sans,
        ignore_expired_intermediate=args.ignore_expired_intermediate_certs,
        ignore_expired_root=args.ignore_expired_root_certs,
        ignore_expiring_intermediate=args.ignore_expiring_intermediate_certs,
        ignore_expiring_root=args.ignore_expiring_root_certs,
        evaluate_root_signatures=args.evaluate_root_signatures,
        apply=_keywords(split_csv(args.apply_validation_result), "apply-validation-result"),
        ignore=_keywords(split_csv(args.ignore_validation_result), "ignore-validation-result"),
    )


def _check_config(args: argparse.Namespace, server: str | None, port: int | None) -> CheckConfig:
    if args.version:
        return CheckConfig(show_version=True)
    if server and args.filename:
        raise ConfigurationError("--server and --filename are mutually exclusive")
    if not server and not args.filename:
        raise ConfigurationError("one of --server or --filename is required")
    if args.timeout < 1:
        raise ConfigurationError(f"invalid timeout {args.timeout}: must be at least 1 second")

    return CheckConfig(
        server=server,
        filename=args.filename,
        port=_parse_port(port if port is not None else DEFAULT_PORT),
        timeout=args.timeout,
        policy=_policy(args, server),
        list_ignored_errors=args.list_ignored_errors,
        verbose=args.verbose,
        text=getattr(args, "text", False),
        log_level=args.log_level,
        legacy_ciphers=args.legacy_ciphers,
        payload_out=args.payload_out,
    )


def parse_check_args(argv: list[str]) -> CheckConfig:
    args = check_parser().parse_args(argv)
    return _check_config(args, args.server, args.port)


def parse_inspect_args(argv: list[str]) -> CheckConfig:
    args = inspect_parser().parse_args(argv)
    server, port = args.server, args.port
    if args.target:
        if server:
            raise ConfigurationError("give the target either as --server or as positional argument, not both")
        server, target_port = parse_target(args.target)
        if port is None:
            port = target_port
    config = _check_config(args, server, port)

    # Hostname verification is opt-in for the inspector.
    policy = config.policy
    if not config.show_version and not policy.dns_name and CheckKind.HOSTNAME not in policy.apply:
        config = replace(config, policy=replace(policy, ignore=policy.ignore | {CheckKind.HOSTNAME}))
    return config


def parse_scan_args(argv: list[str]) -> ScanConfig:
    args = scan_parser().parse_args(argv)
    if args.version:
        return ScanConfig(show_version=True)

    hosts = split_csv(args.hosts)
    if not hosts:
        raise ConfigurationError("--hosts is required")
    ports = tuple(_parse_port(p) for p in split_csv(args.ports))
    if not ports:
        raise ConfigurationError("--ports requires at least one port")
    if args.scan_timeout < 1:
        raise ConfigurationError(f"invalid scan timeout {args.scan_timeout}ms: must be at least 1ms")
    if args.app_timeout < MIN_APP_TIMEOUT:
        raise ConfigurationError(
            f"invalid app timeout {args.app_timeout}s: must be at least {MIN_APP_TIMEOUT}s"
        )
    if not 1 <= args.scan_rate_limit < MAX_SCAN_RATE_LIMIT:
        raise ConfigurationError(
            f"invalid scan rate limit {args.scan_rate_limit}: must be between 1 and {MAX_SCAN_RATE_LIMIT - 1}"
        )
    if args.timeout < 1:
        raise ConfigurationError(f"invalid timeout {args.timeout}: must be at least 1 second")

    return ScanConfig(
        hosts=hosts,
        ports=tuple(dict.fromkeys(ports)),
        scan_timeout_ms=args.scan_timeout,
        app_timeout=args.app_timeout,
        rate_limit=args.scan_rate_limit,
        timeout=args.timeout,
        thresholds=_thresholds(args.age_critical, args.age_warning),
        show_port_scan_results=args.show_port_scan_results,
        show_closed_ports=args.show_closed_ports,
        show_hosts_with_valid_certs=args.show_hosts_with_valid_certs,
        show_valid_certs=args.show_valid_certs,
        show_overview=args.show_overview,
        log_level=args.log_level,
        legacy_ciphers=args.legacy_ciphers,
    )
