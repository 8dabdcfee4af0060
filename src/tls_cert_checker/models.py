from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .certs import Certificate


class ServiceState(IntEnum):
    """
    Monitoring states, ordered by severity. The value doubles as the plugin
    exit code.
    """
    OK = 0
    WARNING = 1
    CRITICAL = 2
    UNKNOWN = 3

    @property
    def label(self) -> str:
        return self.name

    @property
    def exit_code(self) -> int:
        return int(self)


class ChainPosition(str, Enum):
    LEAF = "leaf"
    LEAF_SELF_SIGNED = "leaf; self-signed"
    INTERMEDIATE = "intermediate"
    ROOT = "root"
    UNKNOWN = "UNKNOWN cert chain position; please submit a bug report"

    @property
    def is_leaf(self) -> bool:
        return self in (ChainPosition.LEAF, ChainPosition.LEAF_SELF_SIGNED)


class PatternKind(str, Enum):
    SINGLE_IP = "single-ip"
    CIDR = "cidr"
    PARTIAL_RANGE = "partial-range"
    HOSTNAME = "hostname"
    FQDN = "fqdn"


class CheckKind(str, Enum):
    # Declaration order is the tie-break priority when statuses are equal.
    EXPIRATION = "Expiration"
    HOSTNAME = "Hostname"
    SANS_LIST = "SANs List"
    WEAK_SIGNATURE = "Weak Signature"

    @property
    def keyword(self) -> str:
        return _CHECK_KEYWORDS[self]

    @property
    def priority(self) -> int:
        # Lower value wins a tie.
        return list(CheckKind).index(self)

    @classmethod
    def from_keyword(cls, keyword: str) -> CheckKind:
        for kind, kw in _CHECK_KEYWORDS.items():
            if kw == keyword.strip().lower():
                return kind
        raise ValueError(f"unknown validation keyword {keyword!r}")


_CHECK_KEYWORDS = {
    CheckKind.EXPIRATION: "expiration",
    CheckKind.HOSTNAME: "hostname",
    CheckKind.SANS_LIST: "sans",
    CheckKind.WEAK_SIGNATURE: "weak-signature",
}


@dataclass(frozen=True)
class HostPattern:
    pattern: str
    kind: PatternKind


@dataclass(frozen=True)
class Target:
    """
    One probe endpoint. `name` is empty when the user supplied a bare IP.
    """
    name: str
    ip: str
    port: int

    @property
    def display(self) -> str:
        return self.name or self.ip


@dataclass(frozen=True)
class Thresholds:
    critical_days: int = 15
    warning_days: int = 30

    def __post_init__(self) -> None:
        if self.critical_days <= 0:
            raise ValueError("critical age threshold must be greater than 0")
        if self.warning_days <= self.critical_days:
            raise ValueError(
                f"warning age threshold ({self.warning_days}) must be greater "
                f"than critical age threshold ({self.critical_days})"
            )


@dataclass(frozen=True)
class ValidationCheckResult:
    """
    Outcome of one validation check.

    `summary` is the one-line status, `detail` the multi-line report text and
    `error` the message listed under the validation errors section when the
    check did not pass.
    """
    kind: CheckKind
    status: ServiceState
    summary: str
    detail: str = ""
    ignored: bool = False
    error: str | None = None
    overview: str = ""

    @property
    def failed(self) -> bool:
        return not self.ignored and self.status is not ServiceState.OK

    @property
    def succeeded(self) -> bool:
        return not self.ignored and self.status is ServiceState.OK

    @property
    def report_line(self) -> str:
        prefix = "[--]" if self.ignored else f"[{self.status.label}]"
        line = f"{prefix} {self.summary}"
        if self.overview:
            line += f" {self.overview}"
        return line


@dataclass(frozen=True)
class RetrievalContext:
    """
    Where a chain came from, for the report header.
    """
    filename: str | None = None
    server: str | None = None
    ip: str | None = None
    port: int | None = None
    host_value: str | None = None
    leftover_bytes: int = 0

    def _source(self) -> str:
        if self.filename:
            return self.filename
        return (
            f"service running on {self.server} ({self.ip}) at port {self.port} "
            f'using host value "{self.host_value}"'
        )

    def describe(self, cert_count: int) -> str:
        if self.filename:
            return f"{cert_count} certs found in {self._source()}"
        return f"{cert_count} certs retrieved for {self._source()}"


@dataclass(frozen=True)
class Verdict:
    overall_status: ServiceState
    primary_check: ValidationCheckResult | None
    results: tuple[ValidationCheckResult, ...] = ()
    chain: tuple[Certificate, ...] = ()
    context: RetrievalContext = field(default_factory=RetrievalContext)
    errors: tuple[str, ...] = ()
    headline: str | None = None
    evaluated_at: datetime | None = None

    @property
    def exit_code(self) -> int:
        return self.overall_status.exit_code


@dataclass(frozen=True)
class ProbeResult:
    target: Target
    open: bool


@dataclass(frozen=True)
class DiscoveredChain:
    """
    A chain retrieved by the scanner. `error` is set when retrieval failed.
    """
    target: Target
    chain: tuple[Certificate, ...] = ()
    error: str | None = None
