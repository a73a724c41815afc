"""
Deep-scan adapters: nmap via libnmap, plus a synthetic fallback.

The orchestrator only sees the DeepScanAdapter interface. The nmap adapter
degrades to the synthetic one whenever nmap is missing or its output is
unusable, so a deep scan never fails just because nmap did.
"""

import abc
import logging
import re
import shutil
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from libnmap.objects import NmapHost, NmapService
from libnmap.parser import NmapParser, NmapParserException
from libnmap.process import NmapProcess

from .banner import entry_from_signature, match_signature
from .errors import DeepScanUnavailable, ScanCancelled, ScanTimeout
from .models import (
    DepthOptions,
    OperatingSystemInfo,
    ScanIntensity,
    ScanTarget,
    ServiceFingerprint,
    Severity,
    VulnerabilityCategory,
    VulnerabilityEntry,
)
from .utils import cvss_to_severity, extract_cve_ids, is_root, parse_version_string

logger = logging.getLogger(__name__)

SYNTHETIC_PORT_LIMIT = 10

_TIMING_FLAGS = {
    ScanIntensity.STEALTHY: "-T1",
    ScanIntensity.NORMAL: "-T3",
    ScanIntensity.AGGRESSIVE: "-T4",
    ScanIntensity.INSANE: "-T5",
}

_VULN_STATE = re.compile(r"State:\s*(?:LIKELY\s+)?VULNERABLE", re.IGNORECASE)
_RISK_FACTOR = re.compile(r"Risk factor:\s*([A-Za-z]+)", re.IGNORECASE)
_CVSS_SCORE = re.compile(r"CVSS(?:v\d)?:\s*(\d+(?:\.\d+)?)", re.IGNORECASE)
_VULNERS_LINE = re.compile(r"(CVE-\d{4}-\d{4,7})\s+(\d+(?:\.\d+)?)\s*(\S*)(.*)", re.IGNORECASE)
_MAX_VULNERS_PER_SCRIPT = 25


class NmapArguments:
    """
    Translates DepthOptions into an nmap option string.

    All flag logic is centralised here so the adapter stays readable.
    """

    def __init__(self, options: DepthOptions, ports: Sequence[int] = ()):
        self.options = options
        self.ports = list(ports)

    def needs_root(self) -> bool:
        return bool(self.options.include_os_detection)

    def build(self, allow_root_only: bool = True) -> str:
        """Return the full nmap option string (libnmap appends -oX itself)."""
        opts: List[str] = [_TIMING_FLAGS[ScanIntensity(self.options.intensity)]]

        if self.options.include_service_detection:
            opts.append("-sV")
        if self.options.include_os_detection and allow_root_only:
            opts.append("-O")
        if self.options.include_vuln_scripts:
            opts.append("--script=vuln")

        if self.ports:
            selected = self.ports[: self.options.max_ports]
            opts.extend(["-p", ",".join(str(p) for p in selected)])
        else:
            opts.extend(["--top-ports", str(self.options.max_ports)])

        opts.extend(["--host-timeout", f"{int(self.options.timeout_seconds)}s"])
        return " ".join(opts)


@dataclass
class DeepScanOutput:
    vulnerabilities: List[VulnerabilityEntry] = field(default_factory=list)
    fingerprints: List[ServiceFingerprint] = field(default_factory=list)
    os_matches: List[OperatingSystemInfo] = field(default_factory=list)
    open_ports: List[int] = field(default_factory=list)
    command_line: str = ""
    synthetic: bool = False


class DeepScanAdapter(abc.ABC):
    """Runs a deep scan of one target."""

    @abc.abstractmethod
    def run(
        self,
        target: ScanTarget,
        options: DepthOptions,
        cancel: Optional[threading.Event] = None,
    ) -> DeepScanOutput:
        """
        Raises:
            ScanCancelled: if cancel was set while the scan was running
            ScanTimeout: if the scan exceeded its overall time budget
        """


class SyntheticDeepScanAdapter(DeepScanAdapter):
    """Stand-in used when nmap is unavailable: requested ports reported open, service unknown."""

    def run(self, target, options, cancel=None) -> DeepScanOutput:
        ports = list(target.ports)[: min(SYNTHETIC_PORT_LIMIT, options.max_ports)]
        return DeepScanOutput(
            fingerprints=[ServiceFingerprint(port=p, service="unknown") for p in ports],
            open_ports=ports,
            command_line="synthetic",
            synthetic=True,
        )


class NmapDeepScanAdapter(DeepScanAdapter):
    """Runs nmap in the background and parses its XML report."""

    def __init__(
        self,
        fallback: Optional[DeepScanAdapter] = None,
        grace: float = 30.0,
        poll_interval: float = 0.5,
        process_factory: Callable[..., NmapProcess] = NmapProcess,
    ):
        self.fallback = fallback or SyntheticDeepScanAdapter()
        self.grace = grace
        self.poll_interval = poll_interval
        self.process_factory = process_factory

    def run(self, target, options, cancel=None) -> DeepScanOutput:
        args = NmapArguments(options, target.ports)
        allow_root_only = not args.needs_root() or is_root()
        if not allow_root_only:
            logger.warning("OS detection requires root privileges; running without -O")

        try:
            stdout, command_line = self._execute(
                target, args.build(allow_root_only), options, cancel
            )
            return self.parse_output(stdout, target, command_line)
        except DeepScanUnavailable as exc:
            logger.warning(
                "Deep scan of %s fell back to a synthetic result: %s", target.ip_address, exc
            )
            return self.fallback.run(target, options, cancel)

    def _execute(self, target, nmap_options, options, cancel):
        try:
            proc = self.process_factory(
                targets=target.ip_address,
                options=nmap_options,
                safe_mode=True,
            )
        except EnvironmentError as exc:
            raise DeepScanUnavailable(f"nmap binary not found ({exc})") from exc

        deadline = time.monotonic() + options.timeout_seconds + self.grace
        logger.info("Running nmap %s against %s", nmap_options, target.ip_address)
        proc.run_background()

        while proc.is_alive():
            if cancel is not None:
                if cancel.wait(self.poll_interval):
                    proc.stop()
                    raise ScanCancelled(f"deep scan of {target.ip_address} cancelled")
            else:
                time.sleep(self.poll_interval)
            if time.monotonic() > deadline:
                proc.stop()
                raise ScanTimeout(
                    f"nmap exceeded {options.timeout_seconds}s against {target.ip_address}"
                )

        if proc.rc != 0 or not proc.stdout:
            stderr = (proc.stderr or "").strip()
            raise DeepScanUnavailable(f"nmap exited with return code {proc.rc}. {stderr}")
        return proc.stdout, proc.command

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def parse_output(self, xml: str, target: ScanTarget, command_line: str = "") -> DeepScanOutput:
        """
        Parse nmap XML output for one target.

        Raises:
            DeepScanUnavailable: if the document cannot be parsed at all
        """
        try:
            report = NmapParser.parse_fromstring(xml)
        except NmapParserException as exc:
            raise DeepScanUnavailable(f"malformed nmap output: {exc}") from exc

        output = DeepScanOutput(command_line=command_line)
        host = self._select_host(report.hosts, target)
        if host is None:
            logger.info("nmap report has no host block for %s", target.ip_address)
            return output
        if not host.is_up():
            logger.info("nmap reports %s as down", target.ip_address)
            return output

        for svc in host.services:
            fingerprint = self._parse_service(svc)
            output.fingerprints.append(fingerprint)
            if fingerprint.state != "open":
                continue
            output.open_ports.append(fingerprint.port)
            output.vulnerabilities.extend(self._service_findings(target, svc, fingerprint))

        for script in getattr(host, "scripts_results", None) or []:
            output.vulnerabilities.extend(self._script_findings(target, 0, "host", script))

        output.os_matches = self._parse_os(host, target.ip_address)
        output.open_ports.sort()
        return output

    @staticmethod
    def _select_host(hosts: List[NmapHost], target: ScanTarget) -> Optional[NmapHost]:
        for host in hosts:
            if host.address == target.ip_address:
                return host
        return hosts[0] if hosts else None

    @staticmethod
    def _parse_service(svc: NmapService) -> ServiceFingerprint:
        banner_dict = getattr(svc, "banner_dict", {}) or {}
        product = banner_dict.get("product", "") or ""
        version = banner_dict.get("version", "") or ""
        banner = getattr(svc, "banner", "") or ""
        if product and not version:
            version = parse_version_string(banner) or ""
        cpes = [getattr(c, "cpestring", str(c)) for c in (getattr(svc, "cpelist", None) or [])]
        return ServiceFingerprint(
            port=int(svc.port),
            protocol=svc.protocol or "tcp",
            state=svc.state or "unknown",
            service=svc.service or "unknown",
            product=product,
            version=version,
            extra_info=banner_dict.get("extrainfo", "") or "",
            banner=banner,
            cpes=cpes,
        )

    def _service_findings(self, target, svc, fingerprint: ServiceFingerprint) -> List[VulnerabilityEntry]:
        findings: List[VulnerabilityEntry] = []
        service = fingerprint.service.upper()

        for text in _fingerprint_texts(fingerprint):
            signature = match_signature(text)
            if signature is not None:
                findings.append(entry_from_signature(target, fingerprint.port, service, signature, text))
                break

        for script in getattr(svc, "scripts_results", None) or []:
            findings.extend(self._script_findings(target, fingerprint.port, service, script))
        return findings

    def _script_findings(self, target, port: int, service: str, script: dict) -> List[VulnerabilityEntry]:
        """Turn one NSE script result into findings; a malformed result is skipped."""
        try:
            if script.get("id") == "vulners":
                return _vulners_findings(target, port, service, script)
            finding = _vuln_script_finding(target, port, service, script)
            return [finding] if finding is not None else []
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.warning(
                "Skipping unparseable result from script %r on %s:%d: %s",
                script.get("id") if isinstance(script, dict) else script,
                target.ip_address, port, exc,
            )
            return []

    @staticmethod
    def _parse_os(host: NmapHost, ip_address: str) -> List[OperatingSystemInfo]:
        matches: List[OperatingSystemInfo] = []
        try:
            probabilities = host.os_match_probabilities()
        except (AttributeError, TypeError) as exc:
            logger.debug("No usable OS data for %s: %s", ip_address, exc)
            return matches

        for osmatch in probabilities or []:
            classes = getattr(osmatch, "osclasses", None) or []
            first = classes[0] if classes else None
            cpes: List[str] = []
            for osclass in classes:
                cpes.extend(getattr(c, "cpestring", str(c)) for c in (getattr(osclass, "cpelist", None) or []))
            matches.append(OperatingSystemInfo(
                ip_address=ip_address,
                name=osmatch.name,
                os_family=getattr(first, "osfamily", "") or "",
                os_generation=getattr(first, "osgen", "") or "",
                os_vendor=getattr(first, "vendor", "") or "",
                device_type=getattr(first, "type", "") or "",
                confidence=int(getattr(osmatch, "accuracy", 0) or 0),
                cpe_matches=cpes,
            ))
        matches.sort(key=lambda m: m.confidence, reverse=True)
        return matches


def _fingerprint_texts(fp: ServiceFingerprint) -> List[str]:
    """Render a fingerprint the ways a banner would spell it ("Apache/2.4.49", "OpenSSH_6.6")."""
    texts: List[str] = []
    if fp.product and fp.version:
        word = fp.product.split()[0]
        texts.append(f"{fp.product} {fp.version}")
        texts.extend(f"{word}{sep}{fp.version}" for sep in (" ", "/", "_"))
    if fp.banner:
        texts.append(fp.banner)
    return texts


def _first_line_title(output: str, fallback: str) -> str:
    lines = [ln.strip() for ln in output.splitlines() if ln.strip()]
    for idx, line in enumerate(lines):
        if line.upper().startswith("VULNERABLE") and idx + 1 < len(lines):
            return lines[idx + 1]
    return fallback


def _vuln_script_finding(target, port: int, service: str, script: dict) -> Optional[VulnerabilityEntry]:
    script_id = script["id"]
    output = script.get("output", "") or ""
    if "NOT VULNERABLE" in output.upper() or not (
        _VULN_STATE.search(output) or output.lstrip().upper().startswith("VULNERABLE")
    ):
        return None

    score = 0.0
    cvss_match = _CVSS_SCORE.search(output)
    if cvss_match:
        score = float(cvss_match.group(1))

    risk = _RISK_FACTOR.search(output)
    if risk and risk.group(1).upper() in Severity.__members__:
        severity = Severity[risk.group(1).upper()]
    elif score:
        severity = cvss_to_severity(score)
    else:
        severity = Severity.MEDIUM

    cves = extract_cve_ids(output)
    description = f"{script_id}: {_first_line_title(output, script_id)}"
    if len(cves) > 1:
        description += f" (also {', '.join(cves[1:])})"
    return VulnerabilityEntry(
        ip_address=target.ip_address,
        port=port,
        service=service,
        title=_first_line_title(output, f"{script_id} reported the service as vulnerable"),
        severity=severity,
        description=description,
        cve_id=cves[0] if cves else None,
        cvss_score=score,
        node_id=target.node_id,
        reference=f"https://nmap.org/nsedoc/scripts/{script_id}.html",
    )


def _vulners_findings(target, port: int, service: str, script: dict) -> List[VulnerabilityEntry]:
    findings: List[VulnerabilityEntry] = []
    seen = set()
    for line in (script.get("output", "") or "").splitlines():
        match = _VULNERS_LINE.search(line)
        if match is None:
            continue
        cve_id = match.group(1).upper()
        if cve_id in seen:
            continue
        seen.add(cve_id)
        score = float(match.group(2))
        findings.append(VulnerabilityEntry(
            ip_address=target.ip_address,
            port=port,
            service=service,
            title=f"{cve_id} affects the detected {service} version",
            severity=cvss_to_severity(score),
            category=VulnerabilityCategory.UNKNOWN,
            description=f"Reported by vulners for port {port}",
            cve_id=cve_id,
            cvss_score=score,
            node_id=target.node_id,
            reference=match.group(3) or f"https://nvd.nist.gov/vuln/detail/{cve_id}",
            is_exploitable="*EXPLOIT*" in line,
        ))
    findings.sort(key=lambda f: f.cvss_score, reverse=True)
    return findings[:_MAX_VULNERS_PER_SCRIPT]


def default_deep_scan_adapter(grace: float = 30.0) -> DeepScanAdapter:
    """Pick the nmap adapter when nmap is installed, the synthetic one otherwise."""
    if shutil.which("nmap"):
        return NmapDeepScanAdapter(grace=grace)
    logger.warning("nmap not found in PATH; deep scans will return synthetic results")
    return SyntheticDeepScanAdapter()
