"""Banner grabbing and matching against known-vulnerable service signatures."""

import logging
import re
import socket
import ssl
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence

from .models import ScanTarget, Severity, VulnerabilityCategory, VulnerabilityEntry
from .utils import service_for_port, version_in_range

logger = logging.getLogger(__name__)

_HTTP_PROBE = "HEAD / HTTP/1.0\r\nHost: {host}\r\n\r\n"

# Send-on-connect probes. Greeting protocols (SSH, FTP, SMTP, ...) talk first
# and need nothing; request/response protocols need a nudge.
_PROBES: dict[int, str] = {
    80:   _HTTP_PROBE,
    443:  _HTTP_PROBE,
    6379: "INFO\r\n",
    8000: _HTTP_PROBE,
    8080: _HTTP_PROBE,
    8443: _HTTP_PROBE,
}

_HTTP_PORTS = {80, 443, 8000, 8080, 8443}
_TLS_PORTS = {443, 465, 636, 993, 995, 8443}

_MAX_LINE = 512
_MAX_HEADER_LINES = 20
_LEADING_VERSION = re.compile(r"[\s/_-]*(\d+(?:\.\d+)*)")


def _clean(raw: bytes) -> Optional[str]:
    text = raw.decode("utf-8", errors="replace")
    text = "".join(ch if ch.isprintable() or ch == "\t" else " " for ch in text)
    return text[:256].strip() or None


def _read_banner(sock, port: int, probe: str, host: str) -> Optional[str]:
    if probe:
        sock.sendall(probe.format(host=host).encode("ascii"))
    with sock.makefile("rb") as stream:
        first = stream.readline(_MAX_LINE)
        if port in _HTTP_PORTS:
            # The status line says nothing about the product; the Server header does
            line = first
            for _ in range(_MAX_HEADER_LINES):
                if line.lower().startswith(b"server:"):
                    return _clean(line)
                line = stream.readline(_MAX_LINE)
                if not line.strip():
                    break
    return _clean(first)


def grab_banner(host: str, port: int, timeout: float = 2.0) -> Optional[str]:
    """
    Connect to host:port and read one greeting line.

    Returns None when nothing could be read. A missing banner is normal, so
    failures are logged at debug level and never raised.
    """
    probe = _PROBES.get(port, "")
    try:
        with socket.create_connection((host, port), timeout=timeout) as sock:
            if port in _TLS_PORTS:
                ctx = ssl.create_default_context()
                ctx.check_hostname = False
                ctx.verify_mode = ssl.CERT_NONE
                with ctx.wrap_socket(sock, server_hostname=host) as tls_sock:
                    return _read_banner(tls_sock, port, probe, host)
            return _read_banner(sock, port, probe, host)
    except OSError as exc:  # includes socket.timeout and ssl.SSLError
        logger.debug("Banner grab failed for %s:%d: %s", host, port, exc)
        return None


# ---------------------------------------------------------------------------
# Signature table
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BannerSignature:
    """
    A known-vulnerable product string.

    ``pattern`` is matched case-insensitively as a substring. When
    ``version_below`` is set, the numeric version directly after the pattern
    must also be lower than it.
    """
    pattern: str
    severity: Severity
    category: VulnerabilityCategory
    title: str
    description: str
    remediation: str = ""
    cve_id: Optional[str] = None
    version_below: Optional[str] = None

    def matches(self, text: str) -> bool:
        idx = text.lower().find(self.pattern.lower())
        if idx < 0:
            return False
        if self.version_below is None:
            return True
        match = _LEADING_VERSION.match(text, idx + len(self.pattern))
        version = match.group(1) if match else None
        if version is None:
            return False
        return version_in_range(version, None, None, None, self.version_below)


SIGNATURES: Sequence[BannerSignature] = (
    BannerSignature(
        "ProFTPD 1.3.3", Severity.CRITICAL, VulnerabilityCategory.CODE_EXECUTION,
        "Backdoored ProFTPD release",
        "ProFTPD version with critical backdoor vulnerability",
        "Upgrade ProFTPD to a current release and verify package integrity",
    ),
    BannerSignature(
        "vsFTPd 2.3.4", Severity.CRITICAL, VulnerabilityCategory.CODE_EXECUTION,
        "Backdoored vsFTPd release",
        "vsFTPd 2.3.4 shipped with a backdoor that opens a root shell",
        "Replace vsFTPd with a clean, current release",
        cve_id="CVE-2011-2523",
    ),
    BannerSignature(
        "UnrealIRCd 3.2.8.1", Severity.CRITICAL, VulnerabilityCategory.CODE_EXECUTION,
        "Backdoored UnrealIRCd release",
        "UnrealIRCd 3.2.8.1 contains a backdoor allowing remote command execution",
        "Upgrade UnrealIRCd and verify the source archive signature",
        cve_id="CVE-2010-2075",
    ),
    BannerSignature(
        "Apache/2.4.49", Severity.CRITICAL, VulnerabilityCategory.INPUT_VALIDATION,
        "Apache HTTP Server path traversal",
        "Apache 2.4.49 path traversal allows file disclosure and remote code execution",
        "Upgrade Apache HTTP Server to 2.4.51 or later",
        cve_id="CVE-2021-41773",
    ),
    BannerSignature(
        "Apache/2.4.50", Severity.CRITICAL, VulnerabilityCategory.INPUT_VALIDATION,
        "Apache HTTP Server path traversal",
        "Incomplete fix for CVE-2021-41773 in Apache 2.4.50",
        "Upgrade Apache HTTP Server to 2.4.51 or later",
        cve_id="CVE-2021-42013",
    ),
    BannerSignature(
        "OpenSSL/1.0.1", Severity.HIGH, VulnerabilityCategory.INFORMATION_DISCLOSURE,
        "OpenSSL 1.0.1 memory disclosure",
        "OpenSSL 1.0.1 builds may be affected by the Heartbleed memory disclosure",
        "Upgrade OpenSSL and rotate private keys served by this host",
        cve_id="CVE-2014-0160",
    ),
    BannerSignature(
        "OpenSSH_", Severity.HIGH, VulnerabilityCategory.CONFIGURATION,
        "Outdated OpenSSH version",
        "OpenSSH releases before 7.0 carry multiple known vulnerabilities",
        "Upgrade OpenSSH to a supported release",
        version_below="7.0",
    ),
    BannerSignature(
        "Microsoft-IIS/6", Severity.HIGH, VulnerabilityCategory.CODE_EXECUTION,
        "Outdated Microsoft IIS version",
        "IIS 6.0 is end-of-life and vulnerable to WebDAV buffer overflow",
        "Migrate to a supported IIS release and disable WebDAV",
        cve_id="CVE-2017-7269",
    ),
    BannerSignature(
        "Apache/2.2", Severity.MEDIUM, VulnerabilityCategory.CONFIGURATION,
        "Outdated Apache version",
        "Apache 2.2 is end-of-life and no longer receives security fixes",
        "Upgrade to Apache HTTP Server 2.4",
    ),
)


def match_signature(
    text: str,
    signatures: Iterable[BannerSignature] = SIGNATURES,
) -> Optional[BannerSignature]:
    """Return the first signature matching text, or None."""
    if not text:
        return None
    for signature in signatures:
        if signature.matches(text):
            return signature
    return None


def service_from_banner(banner: str, port: int) -> str:
    """Infer a service label from banner text, falling back to the port map."""
    lowered = (banner or "").lower()
    if "ssh" in lowered:
        return "SSH"
    if "http" in lowered or lowered.startswith("server:"):
        return "HTTP"
    if "ftp" in lowered:
        return "FTP"
    if "smtp" in lowered:
        return "SMTP"
    return service_for_port(port)


def entry_from_signature(
    target: ScanTarget,
    port: int,
    service: str,
    signature: BannerSignature,
    evidence: str = "",
) -> VulnerabilityEntry:
    description = signature.description
    if evidence:
        description = f"{description} (banner: {evidence})"
    return VulnerabilityEntry(
        ip_address=target.ip_address,
        port=port,
        service=service,
        title=signature.title,
        severity=signature.severity,
        category=signature.category,
        description=description,
        cve_id=signature.cve_id,
        node_id=target.node_id,
        remediation=signature.remediation,
        reference=f"https://nvd.nist.gov/vuln/detail/{signature.cve_id}" if signature.cve_id else "",
    )


class BannerAnalyzer:
    """Reads greeting banners from open ports and flags known-vulnerable versions."""

    def __init__(
        self,
        timeout: float = 2.0,
        max_ports: int = 10,
        grabber: Callable[[str, int, float], Optional[str]] = grab_banner,
        signatures: Sequence[BannerSignature] = SIGNATURES,
    ):
        self.timeout = timeout
        self.max_ports = max_ports
        self.grabber = grabber
        self.signatures = signatures

    def analyze(
        self,
        target: ScanTarget,
        open_ports: Iterable[int],
        cancel: Optional[threading.Event] = None,
    ) -> List[VulnerabilityEntry]:
        findings: List[VulnerabilityEntry] = []
        for port in list(open_ports)[: self.max_ports]:
            if cancel is not None and cancel.is_set():
                break
            try:
                banner = self.grabber(target.ip_address, port, self.timeout)
            except (OSError, ValueError) as exc:
                logger.warning("Banner read on %s:%d failed: %s", target.ip_address, port, exc)
                continue
            if not banner:
                continue
            logger.debug("Banner %s:%d -> %r", target.ip_address, port, banner)
            entry = self.analyze_banner(target, port, banner)
            if entry is not None:
                findings.append(entry)
        return findings

    def analyze_banner(
        self,
        target: ScanTarget,
        port: int,
        banner: str,
    ) -> Optional[VulnerabilityEntry]:
        """Match one banner. Returns None when no signature applies."""
        signature = match_signature(banner, self.signatures)
        if signature is None:
            return None
        return entry_from_signature(
            target, port, service_from_banner(banner, port), signature, evidence=banner
        )
