from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field

from .certs import Certificate
from .errors import CertCheckError
from .fetch import fetch_from_network
from .hosts import Expansion, Resolver, expand_hosts, system_resolver
from .models import DiscoveredChain, HostPattern, ProbeResult, Target
from .probe import probe

logger = logging.getLogger(__name__)

_DONE = object()
_POLL_SECONDS = 0.1

Prober = Callable[[Target, float], ProbeResult]
Fetcher = Callable[..., tuple[Certificate, ...]]


def _log_failure(future: Future) -> None:
    err = future.exception()
    if err is not None:
        logger.error("scan worker failed", exc_info=err)


class Heartbeat:
    """
    Progress signal shared by the pipeline stages and read by the watchdog.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def pulse(self) -> None:
        self._event.set()

    def wait(self, timeout: float) -> bool:
        """True if a pulse arrived within `timeout` seconds."""
        fired = self._event.wait(timeout)
        self._event.clear()
        return fired


@dataclass
class ScanResult:
    expansion: Expansion
    chains: list[DiscoveredChain] = field(default_factory=list)
    probes: list[ProbeResult] = field(default_factory=list)
    cancelled: bool = False
    elapsed: float = 0.0

    @property
    def retrieved(self) -> list[DiscoveredChain]:
        return [c for c in self.chains if c.chain]

    @property
    def failed(self) -> list[DiscoveredChain]:
        return [c for c in self.chains if c.error]


class Scanner:
    """
    Expand hosts, probe ports and retrieve chains from open ports.

    Stages run in their own threads and hand work over through queues. Probes
    and handshakes run on thread pools of `rate_limit` workers, and a semaphore
    per pool keeps submissions from queueing up ahead of the workers. If no
    stage makes progress for `app_timeout` seconds the watchdog cancels the
    run; whatever was collected by then is returned.
    """

    def __init__(
        self,
        *,
        ports: Sequence[int] = (443,),
        scan_timeout: float = 0.2,
        app_timeout: float = 30,
        rate_limit: int = 100,
        handshake_timeout: float = 10,
        legacy_ciphers: bool = True,
        resolver: Resolver = system_resolver,
        prober: Prober = probe,
        fetcher: Fetcher = fetch_from_network,
        on_probe: Callable[[ProbeResult], None] | None = None,
        on_timeout: Callable[[float], None] | None = None,
    ) -> None:
        self.ports = tuple(ports)
        self.scan_timeout = scan_timeout
        self.app_timeout = app_timeout
        self.rate_limit = rate_limit
        self.handshake_timeout = handshake_timeout
        self.legacy_ciphers = legacy_ciphers
        self.resolver = resolver
        self.prober = prober
        self.fetcher = fetcher
        self.on_probe = on_probe
        self.on_timeout = on_timeout

        self.cancel = threading.Event()
        self._heartbeat = Heartbeat()
        self._host_sem = threading.BoundedSemaphore(rate_limit)
        self._port_sem = threading.BoundedSemaphore(rate_limit)
        self._fetch_sem = threading.BoundedSemaphore(rate_limit)

    def _acquire(self, sem: threading.BoundedSemaphore) -> bool:
        while not sem.acquire(timeout=_POLL_SECONDS):
            if self.cancel.is_set():
                return False
        if self.cancel.is_set():
            sem.release()
            return False
        return True

    def _watchdog(self, done: threading.Event) -> None:
        while not done.is_set():
            if self._heartbeat.wait(self.app_timeout) or done.is_set():
                continue
            logger.warning(
                "inactivity timer triggered, cancelling scan",
                extra={"fields": {"app_timeout": self.app_timeout}},
            )
            if self.on_timeout is not None:
                self.on_timeout(self.app_timeout)
            self.cancel.set()
            return

    # Stage 1

    def _publish_hosts(self, expansion: Expansion, host_q: queue.Queue) -> None:
        for host in expansion.hosts:
            if self.cancel.is_set():
                break
            host_q.put(host)
        host_q.put(_DONE)

    # Stage 2

    def _probe_one(self, target: Target, probe_q: queue.Queue) -> None:
        try:
            result = self.prober(target, self.scan_timeout)
        finally:
            self._port_sem.release()
        self._heartbeat.pulse()
        probe_q.put(result)

    def _scan_host(self, name: str, ip: str, port_pool: ThreadPoolExecutor, probe_q: queue.Queue) -> None:
        futures = []
        try:
            for port in self.ports:
                if not self._acquire(self._port_sem):
                    break
                futures.append(port_pool.submit(self._probe_one, Target(name, ip, port), probe_q))
            for future in as_completed(futures):
                future.result()
        finally:
            self._host_sem.release()

    def _port_scan_stage(self, host_q: queue.Queue, probe_q: queue.Queue) -> None:
        # The host pool shuts down first; its workers wait on their probes.
        with (
            ThreadPoolExecutor(max_workers=self.rate_limit, thread_name_prefix="port-scan") as port_pool,
            ThreadPoolExecutor(max_workers=self.rate_limit, thread_name_prefix="host-scan") as host_pool,
        ):
            for name, ip in iter(host_q.get, _DONE):
                if not self._acquire(self._host_sem):
                    continue
                host_pool.submit(self._scan_host, name, ip, port_pool, probe_q).add_done_callback(_log_failure)
        probe_q.put(_DONE)

    # Stage 3

    def _fetch_one(self, target: Target, chain_q: queue.Queue) -> None:
        try:
            chain = self.fetcher(
                sni=target.name or target.ip,
                ip=target.ip,
                port=target.port,
                timeout_seconds=self.handshake_timeout,
                cancel=self.cancel,
                legacy_ciphers=self.legacy_ciphers,
            )
            record = DiscoveredChain(target=target, chain=tuple(chain))
        except (CertCheckError, ValueError, OSError) as e:
            logger.warning(
                "failed to retrieve certificate chain",
                extra={"fields": {"host": target.display, "ip": target.ip, "port": target.port, "error": e}},
            )
            record = DiscoveredChain(target=target, error=str(e))
        finally:
            self._fetch_sem.release()
        self._heartbeat.pulse()
        chain_q.put(record)

    def _cert_fetch_stage(self, probe_q: queue.Queue, chain_q: queue.Queue, probes: list[ProbeResult]) -> None:
        with ThreadPoolExecutor(max_workers=self.rate_limit, thread_name_prefix="cert-fetch") as pool:
            for result in iter(probe_q.get, _DONE):
                self._heartbeat.pulse()
                probes.append(result)
                if self.on_probe is not None:
                    self.on_probe(result)
                if not result.open or not self._acquire(self._fetch_sem):
                    continue
                pool.submit(self._fetch_one, result.target, chain_q).add_done_callback(_log_failure)
        chain_q.put(_DONE)

    def run(self, expansion: Expansion) -> ScanResult:
        started = time.monotonic()
        result = ScanResult(expansion=expansion)

        host_q: queue.Queue = queue.Queue()
        probe_q: queue.Queue = queue.Queue()
        chain_q: queue.Queue = queue.Queue()
        done = threading.Event()

        watchdog = threading.Thread(target=self._watchdog, args=(done,), daemon=True)
        stages = [
            threading.Thread(target=self._publish_hosts, args=(expansion, host_q), daemon=True),
            threading.Thread(target=self._port_scan_stage, args=(host_q, probe_q), daemon=True),
            threading.Thread(target=self._cert_fetch_stage, args=(probe_q, chain_q, result.probes), daemon=True),
        ]
        watchdog.start()
        for stage in stages:
            stage.start()

        # Collector: the only writer of result.chains.
        for record in iter(chain_q.get, _DONE):
            result.chains.append(record)

        done.set()
        self._heartbeat.pulse()
        for stage in stages:
            stage.join()
        watchdog.join()

        result.cancelled = self.cancel.is_set()
        result.elapsed = time.monotonic() - started
        logger.debug(
            "scan finished",
            extra={"fields": {
                "probes": len(result.probes),
                "chains": len(result.chains),
                "cancelled": result.cancelled,
            }},
        )
        return result

    def scan(self, patterns: Iterable[str | HostPattern]) -> ScanResult:
        return self.run(expand_hosts(patterns, self.resolver))
