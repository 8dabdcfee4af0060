from __future__ import annotations

import ipaddress
import logging
import re
import socket
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field

from .errors import ConfigurationError, NameResolutionError
from .models import HostPattern, PatternKind, Target

logger = logging.getLogger(__name__)

Resolver = Callable[[str], list[str]]

_PARTIAL_RANGE = re.compile(r"^(\d{1,3})\.(\d{1,3})\.(\d{1,3})\.(\d{1,3})-(\d{1,3})$")


def system_resolver(name: str) -> list[str]:
    """
    IPv4 and IPv6 addresses for `name`, in resolver order without repeats.
    """
    try:
        infos = socket.getaddrinfo(name, None, proto=socket.IPPROTO_TCP)
    except socket.gaierror as e:
        raise NameResolutionError(f"failed to resolve {name}: {e}") from e
    except UnicodeError as e:
        # idna codec refuses empty labels and labels over 63 characters
        raise NameResolutionError(f"failed to resolve {name}: invalid host name: {e}") from e
    addrs: list[str] = []
    for info in infos:
        addr = info[4][0]
        if addr not in addrs:
            addrs.append(addr)
    return addrs


def _is_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        return False


def classify_pattern(pattern: str) -> HostPattern:
    """
    Tag a user supplied host string; raises ConfigurationError for syntax this
    tool refuses to guess at (ranges outside the final octet, bad CIDR).
    """
    value = pattern.strip()
    if not value:
        raise ConfigurationError("empty host pattern")

    if _is_ip(value):
        return HostPattern(value, PatternKind.SINGLE_IP)

    if "/" in value:
        try:
            ipaddress.ip_network(value, strict=False)
        except ValueError as e:
            raise ConfigurationError(f"invalid CIDR host pattern {value!r}: {e}") from e
        return HostPattern(value, PatternKind.CIDR)

    if "-" in value and re.match(r"^[\d.-]+$", value):
        match = _PARTIAL_RANGE.match(value)
        if not match:
            raise ConfigurationError(
                f"invalid host range {value!r}: only the final octet may be a range (e.g. 192.168.1.10-20)"
            )
        octets = [int(g) for g in match.groups()]
        if any(o > 255 for o in octets):
            raise ConfigurationError(f"invalid host range {value!r}: octet out of range")
        if octets[3] > octets[4]:
            raise ConfigurationError(f"invalid host range {value!r}: range start is after range end")
        return HostPattern(value, PatternKind.PARTIAL_RANGE)

    if "." in value.rstrip("."):
        return HostPattern(value, PatternKind.FQDN)
    return HostPattern(value, PatternKind.HOSTNAME)


def _expand_ips(host: HostPattern) -> list[str]:
    if host.kind is PatternKind.SINGLE_IP:
        return [str(ipaddress.ip_address(host.pattern))]
    if host.kind is PatternKind.CIDR:
        # Every address in the block, network and broadcast included.
        network = ipaddress.ip_network(host.pattern, strict=False)
        return [str(ip) for ip in network]
    if host.kind is PatternKind.PARTIAL_RANGE:
        prefix, last = host.pattern.rsplit(".", 1)
        start, end = (int(x) for x in last.split("-"))
        return [f"{prefix}.{octet}" for octet in range(start, end + 1)]
    raise ValueError(f"{host.kind} is not an address pattern")


@dataclass
class Expansion:
    """
    Resolved (name, ip) pairs in input order plus the per-pattern failures.
    """
    hosts: list[tuple[str, str]] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    patterns: list[HostPattern] = field(default_factory=list)

    def targets(self, ports: Sequence[int]) -> list[Target]:
        return [Target(name, ip, port) for name, ip in self.hosts for port in ports]

    @property
    def ip_count(self) -> int:
        return len(self.hosts)


def expand_hosts(
    patterns: Iterable[str | HostPattern],
    resolver: Resolver = system_resolver,
) -> Expansion:
    """
    Expand host patterns into (display-name, ip) pairs.

    Identical pattern strings are collapsed before expansion. Addresses that
    several patterns produce (an IP inside a listed CIDR block) are kept once
    per pattern.
    """
    result = Expansion()
    seen: set[str] = set()
    for item in patterns:
        host = item if isinstance(item, HostPattern) else classify_pattern(item)
        if host.pattern in seen:
            continue
        seen.add(host.pattern)
        result.patterns.append(host)

        if host.kind in (PatternKind.HOSTNAME, PatternKind.FQDN):
            try:
                addrs = resolver(host.pattern)
            except NameResolutionError as e:
                logger.warning("failed to resolve host pattern", extra={"fields": {"host": host.pattern, "error": e}})
                result.errors[host.pattern] = str(e)
                continue
            result.hosts.extend((host.pattern, ip) for ip in addrs)
        else:
            result.hosts.extend(("", ip) for ip in _expand_ips(host))

    return result


def expand(
    patterns: Iterable[str | HostPattern],
    ports: Sequence[int] = (443,),
    resolver: Resolver = system_resolver,
) -> list[Target]:
    return expand_hosts(patterns, resolver).targets(ports)
