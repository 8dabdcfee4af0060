from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from .certs import Certificate
from .config import CheckConfig
from .errors import CertCheckError, ConfigurationError, EmptyChainError, InputError, NameResolutionError
from .fetch import fetch_from_network, load_file
from .hosts import Resolver, classify_pattern, expand_hosts, system_resolver
from .models import PatternKind, RetrievalContext, Verdict
from .utils import now_utc
from .validation import evaluate

logger = logging.getLogger(__name__)

Fetcher = Callable[..., tuple[Certificate, ...]]


def resolve_server(server: str, resolver: Resolver = system_resolver) -> str:
    """
    First address for a single host name or IP. Ranges are refused.
    """
    host = classify_pattern(server)
    if host.kind in (PatternKind.CIDR, PatternKind.PARTIAL_RANGE):
        raise ConfigurationError(f"server value {server!r} must be a single host name or IP address")
    expansion = expand_hosts([host], resolver)
    if host.pattern in expansion.errors:
        raise NameResolutionError(expansion.errors[host.pattern])
    if not expansion.hosts:
        raise NameResolutionError(f"no addresses found for {server}")
    ips = [ip for _, ip in expansion.hosts]
    if len(ips) > 1:
        logger.debug("multiple addresses resolved, using first", extra={"fields": {"server": server, "ips": ",".join(ips)}})
    return ips[0]


def retrieve(
    config: CheckConfig,
    *,
    resolver: Resolver = system_resolver,
    fetcher: Fetcher = fetch_from_network,
    loader: Callable = load_file,
) -> tuple[tuple[Certificate, ...], RetrievalContext]:
    if config.filename:
        parsed = loader(config.filename)
        return parsed.chain, RetrievalContext(filename=config.filename, leftover_bytes=parsed.leftover_bytes)

    if not config.server:
        raise ConfigurationError("one of server or filename is required")

    ip = resolve_server(config.server, resolver)
    host_value = config.dns_name or config.server
    chain = fetcher(
        sni=host_value,
        ip=ip,
        port=config.port,
        timeout_seconds=config.timeout,
        legacy_ciphers=config.legacy_ciphers,
    )
    if not chain:
        raise EmptyChainError(f"no certificates received from {config.server}:{config.port}")
    context = RetrievalContext(server=config.server, ip=ip, port=config.port, host_value=host_value)
    return tuple(chain), context


def _headline(err: CertCheckError, config: CheckConfig) -> str:
    if isinstance(err, ConfigurationError):
        return "Failed to validate configuration"
    if isinstance(err, InputError):
        return f"Error parsing certificates file {config.filename}"
    return f"Error fetching certificates from port {config.port} on {config.server}"


def error_verdict(err: CertCheckError, config: CheckConfig, now: datetime | None = None) -> Verdict:
    return Verdict(
        overall_status=err.state,
        primary_check=None,
        context=RetrievalContext(filename=config.filename, server=config.server, port=config.port),
        errors=(str(err),),
        headline=_headline(err, config),
        evaluated_at=now or now_utc(),
    )


def run_check(
    config: CheckConfig,
    *,
    resolver: Resolver = system_resolver,
    fetcher: Fetcher = fetch_from_network,
    loader: Callable = load_file,
    now: datetime | None = None,
) -> Verdict:
    """
    Retrieve and evaluate one chain. Retrieval failures become a verdict, not
    an exception.
    """
    now = now or now_utc()
    try:
        chain, context = retrieve(config, resolver=resolver, fetcher=fetcher, loader=loader)
    except CertCheckError as e:
        logger.error(
            "certificate retrieval failed",
            extra={"fields": {"server": config.server, "filename": config.filename, "error": e}},
        )
        return error_verdict(e, config, now)

    verdict = evaluate(chain, config.policy, context, now)
    logger.debug(
        "certificate chain evaluated",
        extra={"fields": {"certs": len(chain), "status": verdict.overall_status.label}},
    )
    return verdict
