"""Core data models for ReconSweep scans and topology graphs."""

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class Severity(str, Enum):
    """Vulnerability urgency bucket, declared from least to most severe."""
    INFO = "INFO"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return list(Severity).index(self)

    @property
    def color(self) -> str:
        return _SEVERITY_COLORS[self]


_SEVERITY_COLORS = {
    Severity.CRITICAL: "#FF0000",
    Severity.HIGH: "#FF4500",
    Severity.MEDIUM: "#FFA500",
    Severity.LOW: "#FFFF00",
    Severity.INFO: "#87CEEB",
}


class VulnerabilityCategory(str, Enum):
    AUTHENTICATION = "AUTHENTICATION"
    AUTHORIZATION = "AUTHORIZATION"
    CONFIGURATION = "CONFIGURATION"
    ENCRYPTION = "ENCRYPTION"
    INPUT_VALIDATION = "INPUT_VALIDATION"
    NETWORK_SECURITY = "NETWORK_SECURITY"
    PRIVILEGE_ESCALATION = "PRIVILEGE_ESCALATION"
    INFORMATION_DISCLOSURE = "INFORMATION_DISCLOSURE"
    DENIAL_OF_SERVICE = "DENIAL_OF_SERVICE"
    CODE_EXECUTION = "CODE_EXECUTION"
    UNKNOWN = "UNKNOWN"


class ScanType(str, Enum):
    QUICK = "QUICK"
    DEEP = "DEEP"
    TARGETED = "TARGETED"
    COMPLIANCE = "COMPLIANCE"
    CUSTOM = "CUSTOM"


class ScanStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    TIMEOUT = "TIMEOUT"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset({
    ScanStatus.COMPLETED,
    ScanStatus.FAILED,
    ScanStatus.CANCELLED,
    ScanStatus.TIMEOUT,
})


class ScanIntensity(str, Enum):
    STEALTHY = "STEALTHY"
    NORMAL = "NORMAL"
    AGGRESSIVE = "AGGRESSIVE"
    INSANE = "INSANE"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MODERATE = "MODERATE"
    HIGH = "HIGH"
    VERY_HIGH = "VERY_HIGH"
    CRITICAL = "CRITICAL"


class NodeStatus(str, Enum):
    NORMAL = "NORMAL"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"
    ANOMALY = "ANOMALY"
    OFFLINE = "OFFLINE"
    UNKNOWN = "UNKNOWN"


class EdgeType(str, Enum):
    SUBNET = "SUBNET"
    GATEWAY = "GATEWAY"
    DIRECT = "DIRECT"
    VPN = "VPN"
    WIRELESS = "WIRELESS"
    UNKNOWN = "UNKNOWN"


# ---------------------------------------------------------------------------
# Scan inputs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ScanTarget:
    """A single host to scan. Never mutated once a scan has started."""
    ip_address: str
    host_name: str = ""
    ports: Tuple[int, ...] = ()
    is_alive: bool = False
    node_id: str = ""  # Opaque reference to a topology node

    @property
    def display_name(self) -> str:
        if self.host_name and self.host_name != self.ip_address:
            return f"{self.ip_address} ({self.host_name})"
        return self.ip_address


@dataclass
class DepthOptions:
    """Tunables for a deep scan."""
    max_hosts: int = 50
    max_ports: int = 1000
    intensity: ScanIntensity = ScanIntensity.NORMAL
    include_service_detection: bool = True
    include_os_detection: bool = True
    include_vuln_scripts: bool = True
    timeout_seconds: int = 300


# ---------------------------------------------------------------------------
# Findings
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VulnerabilityEntry:
    """A single finding. Scored once by the classifier and immutable after that."""
    ip_address: str
    port: int              # 0 for host-level findings
    service: str           # e.g. "SSH", "HTTP"
    title: str
    severity: Severity
    description: str = ""
    category: VulnerabilityCategory = VulnerabilityCategory.UNKNOWN
    cve_id: Optional[str] = None
    cvss_score: float = 0.0  # 0.0 until a precise or approximate score is assigned
    node_id: str = ""
    remediation: str = ""
    reference: str = ""
    is_exploitable: bool = False
    discovered_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)


@dataclass
class ServiceFingerprint:
    """A service detected by the deep scan."""
    port: int
    protocol: str = "tcp"
    state: str = "open"
    service: str = "unknown"
    product: str = ""
    version: str = ""
    extra_info: str = ""
    banner: str = ""
    cpes: List[str] = field(default_factory=list)

    @property
    def display_version(self) -> str:
        parts = [self.product, self.version, self.extra_info]
        return " ".join(p for p in parts if p).strip() or self.service or "unknown"


@dataclass
class OperatingSystemInfo:
    ip_address: str
    name: str
    os_family: str = ""
    os_generation: str = ""
    os_vendor: str = ""
    device_type: str = ""
    confidence: int = 0  # nmap accuracy, 0-100
    cpe_matches: List[str] = field(default_factory=list)


@dataclass
class ExploitInfo:
    vulnerability_id: str
    name: str
    source: str = ""
    reference: str = ""
    severity: Severity = Severity.INFO


@dataclass
class SecurityMisconfiguration:
    ip_address: str
    port: int
    title: str
    description: str = ""
    severity: Severity = Severity.LOW
    remediation: str = ""


@dataclass
class ComplianceCheck:
    standard: str
    control: str
    passed: bool
    details: str = ""


# ---------------------------------------------------------------------------
# Derived aggregates
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SeveritySummary:
    """Per-severity counts plus the derived risk score. Built in one go."""
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    informational: int = 0
    risk_score: float = 0.0
    risk_level: RiskLevel = RiskLevel.LOW

    @property
    def total(self) -> int:
        return self.critical + self.high + self.medium + self.low + self.informational

    def count(self, severity: Severity) -> int:
        return {
            Severity.CRITICAL: self.critical,
            Severity.HIGH: self.high,
            Severity.MEDIUM: self.medium,
            Severity.LOW: self.low,
            Severity.INFO: self.informational,
        }[severity]


@dataclass(frozen=True)
class ScanStatistics:
    total_hosts_scanned: int = 0
    active_hosts: int = 0
    total_ports_probed: int = 0
    open_ports_found: int = 0
    vulnerabilities_found: int = 0
    scan_duration: float = 0.0    # Seconds
    scan_efficiency: float = 0.0  # Findings per second
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Scan results
# ---------------------------------------------------------------------------

@dataclass
class ScanResult:
    """Result of one scan. Only handed to callers once the status is terminal."""
    scan_id: str
    scan_type: ScanType
    timestamp: datetime = field(default_factory=utcnow)
    targets: List[ScanTarget] = field(default_factory=list)
    open_ports: Dict[str, List[int]] = field(default_factory=dict)
    vulnerabilities: List[VulnerabilityEntry] = field(default_factory=list)
    statistics: ScanStatistics = field(default_factory=ScanStatistics)
    summary: SeveritySummary = field(default_factory=SeveritySummary)
    recommendations: List[str] = field(default_factory=list)
    duration: float = 0.0
    status: ScanStatus = ScanStatus.PENDING

    @property
    def critical_vulnerabilities(self) -> List[VulnerabilityEntry]:
        return [v for v in self.vulnerabilities if v.severity is Severity.CRITICAL]

    @property
    def sorted_vulnerabilities(self) -> List[VulnerabilityEntry]:
        """Most severe first, then by score."""
        return sorted(
            self.vulnerabilities,
            key=lambda v: (v.severity.rank, v.cvss_score),
            reverse=True,
        )


@dataclass
class DeepScanResult(ScanResult):
    service_fingerprints: List[ServiceFingerprint] = field(default_factory=list)
    os_fingerprints: List[OperatingSystemInfo] = field(default_factory=list)
    potential_exploits: List[ExploitInfo] = field(default_factory=list)
    misconfigurations: List[SecurityMisconfiguration] = field(default_factory=list)
    compliance_results: List[ComplianceCheck] = field(default_factory=list)
    command_line: str = ""
    synthetic: bool = False  # True when the fallback adapter produced the data


@dataclass
class ScanProgress:
    scan_id: str
    status: ScanStatus = ScanStatus.PENDING
    percent_complete: float = 0.0
    current_operation: str = ""
    vulnerabilities_found: int = 0
    elapsed: float = 0.0  # Seconds
    last_update: datetime = field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Topology
# ---------------------------------------------------------------------------

@dataclass
class Vector3D:
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    def distance_to(self, other: "Vector3D") -> float:
        return math.sqrt(
            (self.x - other.x) ** 2 + (self.y - other.y) ** 2 + (self.z - other.z) ** 2
        )


_STATUS_COLORS = {
    NodeStatus.ANOMALY: "#FF4444",
    NodeStatus.CRITICAL: "#FF8800",
    NodeStatus.WARNING: "#FFFF00",
}


@dataclass
class NetworkNode:
    id: str
    ip_address: str
    host_name: str = ""
    device_type: str = "Unknown"
    is_online: bool = True
    open_ports: List[int] = field(default_factory=list)
    status: NodeStatus = NodeStatus.NORMAL
    position: Optional[Vector3D] = None  # None until the layout engine seeds it

    @property
    def label(self) -> str:
        return self.host_name or self.ip_address

    @property
    def color(self) -> str:
        if self.status is NodeStatus.NORMAL:
            return "#00FF00" if self.is_online else "#888888"
        return _STATUS_COLORS.get(self.status, "#FFFFFF")

    @property
    def size(self) -> float:
        size = 2.0 + len(self.open_ports) * 0.1
        device = self.device_type.lower()
        if "router" in device or "gateway" in device:
            size *= 1.5
        elif "server" in device:
            size *= 1.3
        elif "switch" in device:
            size *= 1.2
        if self.status is NodeStatus.ANOMALY:
            size *= 1.4
        return max(1.0, min(6.0, size))


@dataclass
class NetworkEdge:
    source: str
    target: str
    edge_type: EdgeType = EdgeType.UNKNOWN
    label: str = ""
    strength: float = 1.0
    is_active: bool = True
    id: str = field(default_factory=new_id)


@dataclass
class NetworkAnomaly:
    node_id: str
    anomaly_type: str  # "UnusualPortPattern" | "SuspiciousService"
    description: str
    severity: Severity
    detected_at: datetime = field(default_factory=utcnow)


@dataclass
class TopologyResult:
    scan_id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)
    network_range: str = ""
    nodes: List[NetworkNode] = field(default_factory=list)
    edges: List[NetworkEdge] = field(default_factory=list)
    anomalies: List[NetworkAnomaly] = field(default_factory=list)

    @property
    def active_nodes(self) -> int:
        return sum(1 for n in self.nodes if n.is_online)


# ---------------------------------------------------------------------------
# CVE enrichment
# ---------------------------------------------------------------------------

@dataclass
class CVERecord:
    """A CVE record fetched from the NVD database."""
    cve_id: str        # e.g. "CVE-2021-41773"
    cvss_score: float  # e.g. 7.5
    severity: str      # NVD base severity, "CRITICAL" | "HIGH" | ... | "NONE"
    description: str   # Truncated to 300 chars
    published: str     # ISO date string
    url: str
