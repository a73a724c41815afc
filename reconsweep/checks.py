"""Port-exposure and basic configuration checks run on probe results."""

from typing import Iterable, List, Sequence

from .models import (
    ScanTarget,
    SecurityMisconfiguration,
    ServiceFingerprint,
    Severity,
    VulnerabilityCategory,
    VulnerabilityEntry,
)

# Services that should rarely be reachable from outside a trusted segment.
# port -> (service label, severity, remediation)
RISKY_PORTS: dict[int, tuple] = {
    21:   ("FTP", Severity.MEDIUM, "Replace FTP with SFTP or FTPS"),
    23:   ("Telnet", Severity.HIGH, "Disable Telnet and use SSH"),
    53:   ("DNS", Severity.LOW, "Restrict recursion and zone transfers to trusted clients"),
    135:  ("RPC", Severity.MEDIUM, "Block RPC endpoint mapper at the perimeter"),
    139:  ("NetBIOS", Severity.MEDIUM, "Disable NetBIOS over TCP/IP where not needed"),
    445:  ("SMB", Severity.MEDIUM, "Restrict SMB to internal networks and disable SMBv1"),
    1433: ("SQL Server", Severity.HIGH, "Do not expose database listeners to untrusted networks"),
    3389: ("RDP", Severity.MEDIUM, "Put RDP behind a VPN or gateway with NLA enabled"),
}

# Service names (as reported by nmap) that move credentials in cleartext
CLEARTEXT_SERVICES = {"ftp", "telnet", "http", "pop3", "imap", "smtp", "vnc", "rlogin", "rsh"}


def port_risk_findings(target: ScanTarget, open_ports: Iterable[int]) -> List[VulnerabilityEntry]:
    """One finding per open port listed in RISKY_PORTS."""
    findings: List[VulnerabilityEntry] = []
    for port in open_ports:
        risk = RISKY_PORTS.get(port)
        if risk is None:
            continue
        service, severity, remediation = risk
        findings.append(VulnerabilityEntry(
            ip_address=target.ip_address,
            port=port,
            service=service,
            title=f"Potentially vulnerable {service} service",
            severity=severity,
            category=VulnerabilityCategory.NETWORK_SECURITY,
            description=f"Port {port} ({service}) is reachable and commonly targeted",
            node_id=target.node_id,
            remediation=remediation,
        ))
    return findings


def configuration_findings(target: ScanTarget, open_ports: Sequence[int]) -> List[VulnerabilityEntry]:
    """Checks that look at the open-port set as a whole."""
    findings: List[VulnerabilityEntry] = []
    if 80 in open_ports and 443 not in open_ports:
        findings.append(VulnerabilityEntry(
            ip_address=target.ip_address,
            port=80,
            service="HTTP",
            title="HTTP without HTTPS detected",
            severity=Severity.MEDIUM,
            category=VulnerabilityCategory.ENCRYPTION,
            description="Web service is available over unencrypted HTTP only",
            node_id=target.node_id,
            remediation="Configure HTTPS and redirect HTTP traffic to secure connection",
        ))
    return findings


def cleartext_misconfigurations(
    ip_address: str,
    fingerprints: Iterable[ServiceFingerprint],
) -> List[SecurityMisconfiguration]:
    """Flag open services that speak a cleartext protocol."""
    found: List[SecurityMisconfiguration] = []
    for fp in fingerprints:
        if fp.state != "open" or fp.service.lower() not in CLEARTEXT_SERVICES:
            continue
        found.append(SecurityMisconfiguration(
            ip_address=ip_address,
            port=fp.port,
            title=f"Cleartext {fp.service.upper()} service",
            description=f"{fp.display_version} on port {fp.port} transmits data unencrypted",
            severity=Severity.HIGH if fp.service.lower() == "telnet" else Severity.MEDIUM,
            remediation="Use the TLS-protected variant of this protocol or restrict access",
        ))
    return found
