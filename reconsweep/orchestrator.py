"""
Scan orchestration: the quick and deep scan pipelines, progress tracking,
cancellation and the registry of running scans.

Each scan runs either on the caller's thread (quick_scan / deep_scan) or on
the orchestrator's scan pool (submit_*). Progress and cancellation are keyed
by scan id; the registry is the only state shared between scans.
"""

import dataclasses
import logging
import threading
import time
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from . import checks
from .banner import BannerAnalyzer
from .classifier import (
    UNREACHABLE_RECOMMENDATION,
    VulnerabilityClassifier,
    build_recommendations,
)
from .config import ScannerSettings
from .errors import (
    InvalidTransitionError,
    ScanCancelled,
    ScanTimeout,
    TargetUnreachable,
    UnknownScanError,
)
from .events import (
    CriticalVulnerabilityAlert,
    EventPublisher,
    PortDiscovered,
    ScanCompleted,
    ScanLaunched,
    ScanProgressUpdate,
    VulnerabilityDiscovered,
)
from .models import (
    ComplianceCheck,
    DeepScanResult,
    DepthOptions,
    ExploitInfo,
    ScanProgress,
    ScanResult,
    ScanStatistics,
    ScanStatus,
    ScanTarget,
    ScanType,
    ServiceFingerprint,
    Severity,
    VulnerabilityEntry,
    new_id,
    utcnow,
)
from .prober import PortProber, RetryPolicy
from .scanner import DeepScanAdapter, default_deep_scan_adapter
from .utils import QUICK_SCAN_PORTS, service_for_port
from .validator import TargetValidator

logger = logging.getLogger(__name__)

ExploitSource = Callable[[Sequence[VulnerabilityEntry]], Iterable[ExploitInfo]]
ComplianceSource = Callable[[ScanTarget, Sequence[ServiceFingerprint]], Iterable[ComplianceCheck]]

_TRANSITIONS: Dict[ScanStatus, frozenset] = {
    ScanStatus.PENDING: frozenset({ScanStatus.RUNNING}),
    ScanStatus.RUNNING: frozenset({
        ScanStatus.COMPLETED,
        ScanStatus.FAILED,
        ScanStatus.CANCELLED,
        ScanStatus.TIMEOUT,
    }),
}

INTERNAL_ERROR_RECOMMENDATION = "Scan failed due to an internal error - see the log for details"
_PARTIAL_NOTES = {
    ScanStatus.CANCELLED: "Scan was cancelled - results are partial",
    ScanStatus.TIMEOUT: "Scan timed out - results are partial",
}
_FINAL_OPERATION = {
    ScanStatus.COMPLETED: "Completed",
    ScanStatus.FAILED: "Failed",
    ScanStatus.CANCELLED: "Cancelled",
    ScanStatus.TIMEOUT: "Timed out",
}


@dataclass
class _ScanState:
    """Mutable bookkeeping for one registered scan. Guarded by its own lock."""
    scan_id: str
    scan_type: ScanType
    progress: ScanProgress
    lock: threading.Lock = field(default_factory=threading.Lock)
    cancel: threading.Event = field(default_factory=threading.Event)
    started: Optional[float] = None      # time.monotonic() when RUNNING began
    deadline: Optional[float] = None     # time.monotonic() budget, deep scans only
    ports_probed: int = 0
    target_alive: bool = False

    def snapshot(self) -> ScanProgress:
        with self.lock:
            elapsed = time.monotonic() - self.started if self.started is not None else 0.0
            return dataclasses.replace(self.progress, elapsed=round(elapsed, 3))


class ScanRegistry:
    """
    Lock-guarded map of scan id to scan state.

    Finished scans leave the active map; their final progress snapshot is kept
    in a bounded history so get_progress keeps answering for recent scans.
    """

    def __init__(self, history: int = 256):
        self.history = history
        self._lock = threading.Lock()
        self._active: Dict[str, _ScanState] = {}
        self._finished: "OrderedDict[str, ScanProgress]" = OrderedDict()

    def register(self, scan_id: str, scan_type: ScanType) -> _ScanState:
        state = _ScanState(scan_id, scan_type, ScanProgress(scan_id=scan_id))
        with self._lock:
            if scan_id in self._active or scan_id in self._finished:
                raise ValueError(f"scan id {scan_id} is already registered")
            self._active[scan_id] = state
        return state

    def active(self, scan_id: str) -> Optional[_ScanState]:
        with self._lock:
            return self._active.get(scan_id)

    def active_ids(self) -> List[str]:
        with self._lock:
            return list(self._active)

    def snapshot(self, scan_id: str) -> ScanProgress:
        with self._lock:
            state = self._active.get(scan_id)
            finished = self._finished.get(scan_id)
        if state is not None:
            return state.snapshot()
        if finished is not None:
            return dataclasses.replace(finished)
        raise UnknownScanError(scan_id)

    def finish(self, state: _ScanState) -> None:
        final = state.snapshot()
        with self._lock:
            self._active.pop(state.scan_id, None)
            self._finished[state.scan_id] = final
            while len(self._finished) > self.history:
                self._finished.popitem(last=False)


@dataclass(frozen=True)
class ScanHandle:
    """Returned by the submit_* methods. The future resolves to the terminal result."""
    scan_id: str
    future: Future

    def result(self, timeout: Optional[float] = None) -> ScanResult:
        return self.future.result(timeout=timeout)

    def done(self) -> bool:
        return self.future.done()


class ScanOrchestrator:
    """
    Runs quick and deep scans and tracks their progress.

    Every collaborator is injectable; anything not supplied is built from
    ``settings``. Results only ever leave the orchestrator once their status
    is terminal.
    """

    def __init__(
        self,
        settings: Optional[ScannerSettings] = None,
        publisher: Optional[EventPublisher] = None,
        validator: Optional[TargetValidator] = None,
        prober: Optional[PortProber] = None,
        banner_analyzer: Optional[BannerAnalyzer] = None,
        deep_adapter: Optional[DeepScanAdapter] = None,
        classifier: Optional[VulnerabilityClassifier] = None,
        exploit_source: Optional[ExploitSource] = None,
        compliance_source: Optional[ComplianceSource] = None,
    ):
        self.settings = settings or ScannerSettings()
        s = self.settings
        self._owns_publisher = publisher is None
        self.publisher = publisher or EventPublisher()
        self.validator = validator or TargetValidator(timeout=s.ping_timeout, count=s.ping_count)
        self.prober = prober or PortProber(
            timeout=s.probe_timeout,
            max_concurrency=s.max_concurrency,
            retry=RetryPolicy(max_retries=s.max_retries, base_delay=s.retry_base_delay),
        )
        self.banner_analyzer = banner_analyzer or BannerAnalyzer(
            timeout=s.banner_timeout, max_ports=s.banner_port_cap
        )
        self.deep_adapter = deep_adapter or default_deep_scan_adapter(grace=s.deep_scan_grace)
        self.classifier = classifier or VulnerabilityClassifier()
        self.exploit_source = exploit_source
        self.compliance_source = compliance_source

        self.registry = ScanRegistry(history=s.progress_history)
        self._pool: Optional[ThreadPoolExecutor] = None
        self._pool_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def quick_scan(self, target: ScanTarget, scan_id: Optional[str] = None) -> ScanResult:
        state = self.registry.register(scan_id or new_id(), ScanType.QUICK)
        return self._run_quick(state, target)

    def deep_scan(
        self,
        target: ScanTarget,
        options: Optional[DepthOptions] = None,
        scan_id: Optional[str] = None,
    ) -> DeepScanResult:
        state = self.registry.register(scan_id or new_id(), ScanType.DEEP)
        return self._run_deep(state, target, options or DepthOptions())

    def submit_quick_scan(self, target: ScanTarget) -> ScanHandle:
        state = self.registry.register(new_id(), ScanType.QUICK)
        return ScanHandle(state.scan_id, self._executor().submit(self._run_quick, state, target))

    def submit_deep_scan(self, target: ScanTarget, options: Optional[DepthOptions] = None) -> ScanHandle:
        state = self.registry.register(new_id(), ScanType.DEEP)
        future = self._executor().submit(self._run_deep, state, target, options or DepthOptions())
        return ScanHandle(state.scan_id, future)

    def get_progress(self, scan_id: str) -> ScanProgress:
        """Snapshot of a scan's progress. Raises UnknownScanError for ids never registered."""
        return self.registry.snapshot(scan_id)

    def cancel(self, scan_id: str) -> bool:
        """
        Request cancellation. The scan stops at its next checkpoint.

        Returns False when the id is unknown or the scan already finished.
        """
        state = self.registry.active(scan_id)
        if state is None:
            return False
        with state.lock:
            if state.progress.status.is_terminal:
                return False
            state.cancel.set()
        logger.info("Cancellation requested for scan %s", scan_id)
        return True

    def active_scans(self) -> List[str]:
        return self.registry.active_ids()

    def close(self) -> None:
        with self._pool_lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=True)
        if self._owns_publisher:
            self.publisher.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def _executor(self) -> ThreadPoolExecutor:
        with self._pool_lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self.settings.max_concurrent_scans,
                    thread_name_prefix="scan",
                )
            return self._pool

    # ------------------------------------------------------------------
    # Pipelines
    # ------------------------------------------------------------------

    def _run_quick(self, state: _ScanState, target: ScanTarget) -> ScanResult:
        result = ScanResult(scan_id=state.scan_id, scan_type=ScanType.QUICK, targets=[target])
        return self._execute(state, result, target, lambda: self._quick_phases(state, result, target))

    def _run_deep(self, state: _ScanState, target: ScanTarget, options: DepthOptions) -> DeepScanResult:
        result = DeepScanResult(scan_id=state.scan_id, scan_type=ScanType.DEEP, targets=[target])
        budget = options.timeout_seconds + self.settings.deep_scan_grace
        return self._execute(
            state, result, target, lambda: self._deep_phases(state, result, target, options), budget
        )

    def _execute(self, state, result, target: ScanTarget, phases, budget: Optional[float] = None):
        started_at = utcnow()
        self._transition(state, ScanStatus.RUNNING)
        with state.lock:
            state.started = time.monotonic()
            if budget is not None:
                state.deadline = state.started + budget
        logger.info(
            "Scan %s (%s) started against %s",
            state.scan_id, state.scan_type.value, target.display_name,
        )
        self.publisher.publish(ScanLaunched(
            scan_id=state.scan_id, scan_type=state.scan_type, target_count=1,
        ))

        status = ScanStatus.COMPLETED
        failure = ""
        try:
            phases()
        except ScanCancelled:
            status = ScanStatus.CANCELLED
        except ScanTimeout as exc:
            logger.warning("Scan %s timed out: %s", state.scan_id, exc)
            status = ScanStatus.TIMEOUT
        except TargetUnreachable:
            status, failure = ScanStatus.FAILED, UNREACHABLE_RECOMMENDATION
        except Exception:
            logger.exception("Scan %s failed with an unexpected error", state.scan_id)
            status, failure = ScanStatus.FAILED, INTERNAL_ERROR_RECOMMENDATION

        self._finish(state, result, status, failure, started_at)
        return result

    def _quick_phases(self, state: _ScanState, result: ScanResult, target: ScanTarget) -> None:
        self._phase(state, 10, "Validating target accessibility")
        target = self._validate(state, result, target)

        self._phase(state, 30, "Scanning for port vulnerabilities")
        ports = list(target.ports or QUICK_SCAN_PORTS)[: self.settings.quick_port_cap]
        with state.lock:
            state.ports_probed = len(ports)
        open_ports = self.prober.probe(target.ip_address, ports, state.cancel)
        result.open_ports[target.ip_address] = open_ports
        for port in open_ports:
            self._publish_port(target, port, service_for_port(port))
        self._merge(state, result, checks.port_risk_findings(target, open_ports))
        self._checkpoint(state)

        self._phase(state, 60, "Analyzing service banners")
        banner_ports = open_ports[: self.settings.banner_port_cap]
        self._merge(state, result, self.banner_analyzer.analyze(target, banner_ports, state.cancel))
        self._checkpoint(state)

        self._phase(state, 80, "Checking basic security configurations")
        self._merge(state, result, checks.configuration_findings(target, open_ports))

        self._phase(state, 95, "Compiling vulnerability report")

    def _deep_phases(
        self,
        state: _ScanState,
        result: DeepScanResult,
        target: ScanTarget,
        options: DepthOptions,
    ) -> None:
        self._phase(state, 10, "Validating target accessibility")
        target = self._validate(state, result, target)

        self._phase(state, 20, "Running deep scan")
        with state.lock:
            state.ports_probed = min(len(target.ports), options.max_ports) or options.max_ports
        output = self.deep_adapter.run(target, options, state.cancel)
        result.command_line = output.command_line
        result.synthetic = output.synthetic
        result.open_ports[target.ip_address] = sorted(set(output.open_ports))
        services = {fp.port: fp.service for fp in output.fingerprints}
        for port in result.open_ports[target.ip_address]:
            self._publish_port(target, port, services.get(port) or service_for_port(port))
        result.service_fingerprints = list(output.fingerprints)
        result.os_fingerprints = list(output.os_matches)
        self._merge(state, result, output.vulnerabilities)
        self._checkpoint(state)

        self._phase(state, 40, "Fingerprinting services")
        logger.debug(
            "Scan %s: %d service fingerprint(s)", state.scan_id, len(result.service_fingerprints)
        )

        self._phase(state, 60, "Detecting operating system")
        if result.os_fingerprints:
            logger.debug("Scan %s: best OS match %s", state.scan_id, result.os_fingerprints[0].name)

        self._phase(state, 75, "Gathering exploit intelligence")
        if self.exploit_source is not None:
            result.potential_exploits = list(self.exploit_source(result.vulnerabilities))

        self._phase(state, 85, "Checking misconfigurations and compliance")
        result.misconfigurations = checks.cleartext_misconfigurations(
            target.ip_address, result.service_fingerprints
        )
        if self.compliance_source is not None:
            result.compliance_results = list(
                self.compliance_source(target, result.service_fingerprints)
            )

        self._phase(state, 95, "Compiling vulnerability report")

    # ------------------------------------------------------------------
    # Phase helpers
    # ------------------------------------------------------------------

    def _validate(self, state: _ScanState, result: ScanResult, target: ScanTarget) -> ScanTarget:
        if not self.validator.is_reachable(target):
            raise TargetUnreachable(target.display_name)
        alive = dataclasses.replace(target, is_alive=True)
        result.targets = [alive]
        with state.lock:
            state.target_alive = True
        return alive

    def _checkpoint(self, state: _ScanState) -> None:
        if state.cancel.is_set():
            raise ScanCancelled(state.scan_id)
        if state.deadline is not None and time.monotonic() > state.deadline:
            raise ScanTimeout(f"scan {state.scan_id} exceeded its time budget")

    def _phase(self, state: _ScanState, percent: float, operation: str) -> None:
        self._checkpoint(state)
        with state.lock:
            progress = state.progress
            progress.percent_complete = max(progress.percent_complete, percent)
            progress.current_operation = operation
            progress.last_update = utcnow()
            percent = progress.percent_complete
        logger.debug("Scan %s: %s (%d%%)", state.scan_id, operation, percent)
        self.publisher.publish(ScanProgressUpdate(
            scan_id=state.scan_id, percent_complete=percent, current_operation=operation,
        ))

    def _transition(self, state: _ScanState, new_status: ScanStatus) -> None:
        with state.lock:
            old_status = state.progress.status
            if new_status not in _TRANSITIONS.get(old_status, frozenset()):
                raise InvalidTransitionError(
                    f"scan {state.scan_id}: {old_status.value} -> {new_status.value}"
                )
            state.progress.status = new_status
            state.progress.last_update = utcnow()

    def _publish_port(self, target: ScanTarget, port: int, service: str) -> None:
        self.publisher.publish(PortDiscovered(
            node_id=target.node_id, ip_address=target.ip_address, port=port, service=service,
        ))

    def _merge(self, state: _ScanState, result: ScanResult, entries: Iterable[VulnerabilityEntry]) -> None:
        """Score new findings, add them to the result and announce each one."""
        classified = self.classifier.classify_all(entries)
        if not classified:
            return
        result.vulnerabilities.extend(classified)
        with state.lock:
            state.progress.vulnerabilities_found = len(result.vulnerabilities)
        for entry in classified:
            self.publisher.publish(VulnerabilityDiscovered(
                vulnerability_id=entry.id,
                severity=entry.severity,
                title=entry.title,
                ip_address=entry.ip_address,
                port=entry.port,
            ))
            if entry.severity is Severity.CRITICAL:
                self.publisher.publish(CriticalVulnerabilityAlert(
                    vulnerability_id=entry.id,
                    title=entry.title,
                    ip_address=entry.ip_address,
                    port=entry.port,
                    cve_id=entry.cve_id,
                ))

    def _finish(
        self,
        state: _ScanState,
        result: ScanResult,
        status: ScanStatus,
        failure: str,
        started_at: datetime,
    ) -> None:
        finished_at = utcnow()
        with state.lock:
            duration = time.monotonic() - state.started
            ports_probed = state.ports_probed
            alive = state.target_alive

        summary = self.classifier.summarize(result.vulnerabilities)
        if status is ScanStatus.FAILED:
            recommendations = [failure]
        else:
            recommendations = build_recommendations(summary)
            if status in _PARTIAL_NOTES:
                recommendations.insert(0, _PARTIAL_NOTES[status])

        vuln_count = len(result.vulnerabilities)
        result.summary = summary
        result.recommendations = recommendations
        result.duration = round(duration, 3)
        result.statistics = ScanStatistics(
            total_hosts_scanned=len(result.targets),
            active_hosts=1 if alive else 0,
            total_ports_probed=ports_probed,
            open_ports_found=sum(len(p) for p in result.open_ports.values()),
            vulnerabilities_found=vuln_count,
            scan_duration=result.duration,
            scan_efficiency=round(vuln_count / duration, 3) if duration > 0 else 0.0,
            started_at=started_at,
            finished_at=finished_at,
        )
        result.timestamp = finished_at
        result.status = status

        self._transition(state, status)
        with state.lock:
            if status is ScanStatus.COMPLETED:
                state.progress.percent_complete = 100.0
            state.progress.current_operation = _FINAL_OPERATION[status]
            percent = state.progress.percent_complete
        self.registry.finish(state)

        logger.info(
            "Scan %s finished: %s, %d findings in %.2fs",
            state.scan_id, status.value, vuln_count, duration,
        )
        self.publisher.publish(ScanProgressUpdate(
            scan_id=state.scan_id,
            percent_complete=percent,
            current_operation=_FINAL_OPERATION[status],
            status=status,
        ))
        self.publisher.publish(ScanCompleted(
            scan_id=state.scan_id,
            scan_type=state.scan_type,
            status=status,
            vulnerability_count=vuln_count,
            critical_count=summary.critical,
            duration=result.duration,
        ))
