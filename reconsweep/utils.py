"""Utility functions: target expansion, port specs, version parsing, severity helpers."""

import ipaddress
import os
import re
from typing import List, Optional

from packaging.version import InvalidVersion, Version

from .models import Severity

# Well-known service labels used for PortDiscovered events and finding titles.
SERVICE_BY_PORT: dict[int, str] = {
    21: "FTP",
    22: "SSH",
    23: "Telnet",
    25: "SMTP",
    53: "DNS",
    80: "HTTP",
    110: "POP3",
    135: "RPC",
    139: "NetBIOS",
    143: "IMAP",
    443: "HTTPS",
    445: "SMB",
    993: "IMAPS",
    995: "POP3S",
    1433: "SQL Server",
    3306: "MySQL",
    3389: "RDP",
    5432: "PostgreSQL",
    5900: "VNC",
    6379: "Redis",
    8080: "HTTP-Alt",
    8443: "HTTPS-Alt",
}

# Default candidate ports for a quick scan when the caller supplies none.
QUICK_SCAN_PORTS = (
    21, 22, 23, 25, 53, 80, 110, 111, 135, 139, 143, 443, 445, 465, 587,
    993, 995, 1433, 1521, 2049, 3306, 3389, 5432, 5900, 6379, 8000, 8080,
    8443, 9200, 27017,
)

CVE_PATTERN = re.compile(r"CVE-\d{4}-\d{4,7}", re.IGNORECASE)

_HOSTNAME_RE = re.compile(
    r'^(?:[a-zA-Z0-9]'
    r'(?:[a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?\.)*'
    r'[a-zA-Z0-9](?:[a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?$'
)


def validate_target(target: str) -> bool:
    """Return True if target is a valid IP, CIDR, dash range, or hostname."""
    target = target.strip()
    if not target:
        return False

    try:
        ipaddress.ip_address(target)
        return True
    except ValueError:
        pass

    try:
        ipaddress.ip_network(target, strict=False)
        return True
    except ValueError:
        pass

    # 10.0.0.1-10 or 10.0.0.1-10.0.0.50
    if re.match(r'^[\d.]+-[\d.]+$', target):
        return True

    return bool(_HOSTNAME_RE.match(target))


def expand_targets(target: str, max_hosts: int = 50) -> List[str]:
    """
    Expand a target expression into individual host addresses.

    Accepts a single IP, a CIDR block, a dash range ("10.0.0.1-20" or
    "10.0.0.1-10.0.0.20") or a hostname. At most max_hosts entries are returned.

    Raises:
        ValueError: if the expression is not a valid target
    """
    target = target.strip()
    if not validate_target(target):
        raise ValueError(f"Invalid target: {target!r}")

    try:
        return [str(ipaddress.ip_address(target))]
    except ValueError:
        pass

    if "/" in target:
        network = ipaddress.ip_network(target, strict=False)
        hosts = [str(h) for h in network.hosts()] or [str(network.network_address)]
        return hosts[:max_hosts]

    if "-" in target and re.match(r'^[\d.]+-[\d.]+$', target):
        start_str, end_str = target.split("-", 1)
        start = ipaddress.ip_address(start_str)
        if "." in end_str:
            end = ipaddress.ip_address(end_str)
        else:
            # Short form: last octet only
            end = ipaddress.ip_address(start_str.rsplit(".", 1)[0] + "." + end_str)
        if int(end) < int(start):
            raise ValueError(f"Invalid range: {target!r}")
        count = min(int(end) - int(start) + 1, max_hosts)
        return [str(start + i) for i in range(count)]

    return [target]


def parse_port_spec(spec: str) -> List[int]:
    """
    Parse a port specification such as "22,80,443" or "1-1024,8080".

    Returns a sorted list of unique ports.

    Raises:
        ValueError: on malformed input or out-of-range ports
    """
    ports = set()
    for chunk in spec.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        if "-" in chunk:
            lo_str, hi_str = chunk.split("-", 1)
            lo, hi = int(lo_str), int(hi_str)
            if lo > hi:
                raise ValueError(f"Invalid port range: {chunk!r}")
            ports.update(range(lo, hi + 1))
        else:
            ports.add(int(chunk))
    if not ports:
        raise ValueError("Empty port specification")
    if min(ports) < 1 or max(ports) > 65535:
        raise ValueError("Ports must be between 1 and 65535")
    return sorted(ports)


def service_for_port(port: int) -> str:
    return SERVICE_BY_PORT.get(port, "Unknown Service")


def subnet_key(ip: str, prefix: int = 24) -> Optional[str]:
    """Return the network address of ip's /prefix, or None for non-IP input."""
    try:
        return str(ipaddress.ip_network(f"{ip}/{prefix}", strict=False))
    except ValueError:
        return None


def is_root() -> bool:
    """Return True if the current process is running as root."""
    return hasattr(os, "geteuid") and os.geteuid() == 0


def extract_cve_ids(text: str) -> List[str]:
    """Return unique CVE ids in order of first appearance, upper-cased."""
    seen: List[str] = []
    for match in CVE_PATTERN.findall(text or ""):
        cve = match.upper()
        if cve not in seen:
            seen.append(cve)
    return seen


def parse_version_string(banner: str) -> Optional[str]:
    """
    Extract a version number from a raw banner string.

    Returns the first version-like pattern found, or None.
    Handles: "OpenSSH 7.4p1", "Apache/2.4.49", "nginx/1.18.0", "MySQL 5.7.38"
    """
    if not banner:
        return None
    pattern = r'(\d+(?:\.\d+)+(?:[._-]?(?:p|rc|beta|alpha|pre|post)\d+)?)'
    match = re.search(pattern, banner)
    return match.group(1) if match else None


def version_in_range(
    version_str: str,
    version_start_incl: Optional[str],
    version_start_excl: Optional[str],
    version_end_incl: Optional[str],
    version_end_excl: Optional[str],
) -> bool:
    """
    Check if a detected version falls within an affected version range.

    Returns True (conservative) if the version string is unparseable or if no
    range constraints are specified.
    """
    if not any([version_start_incl, version_start_excl, version_end_incl, version_end_excl]):
        return True

    try:
        detected = Version(version_str)
    except (InvalidVersion, TypeError):
        return True

    try:
        if version_start_incl and detected < Version(version_start_incl):
            return False
        if version_start_excl and detected <= Version(version_start_excl):
            return False
        if version_end_incl and detected > Version(version_end_incl):
            return False
        if version_end_excl and detected >= Version(version_end_excl):
            return False
    except InvalidVersion:
        return True

    return True


def cvss_to_severity(score: float) -> Severity:
    """Convert a CVSS base score to a severity bucket (NIST thresholds)."""
    if score >= 9.0:
        return Severity.CRITICAL
    elif score >= 7.0:
        return Severity.HIGH
    elif score >= 4.0:
        return Severity.MEDIUM
    elif score > 0.0:
        return Severity.LOW
    return Severity.INFO
