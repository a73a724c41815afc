"""Severity scoring, categorisation and aggregate risk for scan findings."""

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple

from .models import (
    RiskLevel,
    Severity,
    SeveritySummary,
    VulnerabilityCategory,
    VulnerabilityEntry,
)

logger = logging.getLogger(__name__)

# Approximate CVSS base score per severity bucket, used when no precise score exists
APPROXIMATE_CVSS: dict[Severity, float] = {
    Severity.CRITICAL: 9.0,
    Severity.HIGH: 7.5,
    Severity.MEDIUM: 5.0,
    Severity.LOW: 2.5,
    Severity.INFO: 0.1,
}

# Checked in order; the first category with a matching keyword wins.
_CATEGORY_KEYWORDS: Sequence[Tuple[VulnerabilityCategory, Tuple[str, ...]]] = (
    (VulnerabilityCategory.CODE_EXECUTION, (
        "remote code", "code execution", "command execution", "backdoor",
        "buffer overflow", "overflow",
    )),
    (VulnerabilityCategory.PRIVILEGE_ESCALATION, ("privilege", "escalat", "root shell")),
    (VulnerabilityCategory.INPUT_VALIDATION, (
        "injection", "traversal", "xss", "cross-site", "input validation", "sqli",
    )),
    (VulnerabilityCategory.AUTHENTICATION, (
        "authentication", "password", "credential", "login", "brute", "anonymous",
    )),
    (VulnerabilityCategory.AUTHORIZATION, ("authorization", "access control", "permission")),
    (VulnerabilityCategory.ENCRYPTION, (
        "ssl", "tls", "encrypt", "cipher", "cleartext", "plaintext", "https", "certificate",
    )),
    (VulnerabilityCategory.DENIAL_OF_SERVICE, ("denial of service", "dos", "crash", "exhaust")),
    (VulnerabilityCategory.INFORMATION_DISCLOSURE, (
        "disclosure", "leak", "information", "enumerat", "heartbleed",
    )),
    (VulnerabilityCategory.CONFIGURATION, (
        "misconfig", "default", "outdated", "end-of-life", "version", "configuration",
    )),
    (VulnerabilityCategory.NETWORK_SECURITY, ("port", "exposed", "service", "firewall")),
)

REMEDIATION_HINTS: dict[VulnerabilityCategory, str] = {
    VulnerabilityCategory.AUTHENTICATION: "Enforce strong authentication and disable default or anonymous logins",
    VulnerabilityCategory.AUTHORIZATION: "Review access control lists and apply least privilege",
    VulnerabilityCategory.CONFIGURATION: "Apply vendor hardening guidance and upgrade to a supported release",
    VulnerabilityCategory.ENCRYPTION: "Enable TLS with modern ciphers and disable cleartext protocols",
    VulnerabilityCategory.INPUT_VALIDATION: "Apply the vendor patch and validate untrusted input",
    VulnerabilityCategory.NETWORK_SECURITY: "Restrict exposure with firewall rules or network segmentation",
    VulnerabilityCategory.PRIVILEGE_ESCALATION: "Patch the affected component and restrict local access",
    VulnerabilityCategory.INFORMATION_DISCLOSURE: "Patch the service and limit the information it reveals",
    VulnerabilityCategory.DENIAL_OF_SERVICE: "Patch the service and add rate limiting",
    VulnerabilityCategory.CODE_EXECUTION: "Patch or isolate the service immediately",
    VulnerabilityCategory.UNKNOWN: "Investigate the finding and apply vendor updates",
}

STANDING_RECOMMENDATIONS = (
    "Enable automatic security updates where possible",
    "Schedule regular vulnerability scans",
    "Implement security monitoring and alerting",
)

UNREACHABLE_RECOMMENDATION = "Target unreachable - check network connectivity and firewall rules"


@dataclass(frozen=True)
class RiskPolicy:
    """
    Weights and thresholds behind the aggregate risk score.

    The defaults are a convention, not a standard; override them per deployment.
    """
    critical_weight: float = 10.0
    high_weight: float = 7.0
    medium_weight: float = 4.0
    low_weight: float = 1.0
    info_weight: float = 0.1
    # (exclusive upper bound, level); anything at or above the last bound is CRITICAL
    thresholds: Tuple[Tuple[float, RiskLevel], ...] = field(default=(
        (5.0, RiskLevel.LOW),
        (20.0, RiskLevel.MODERATE),
        (50.0, RiskLevel.HIGH),
        (100.0, RiskLevel.VERY_HIGH),
    ))


DEFAULT_POLICY = RiskPolicy()


def risk_score(
    critical: int,
    high: int,
    medium: int,
    low: int,
    info: int,
    policy: RiskPolicy = DEFAULT_POLICY,
) -> float:
    return (
        critical * policy.critical_weight
        + high * policy.high_weight
        + medium * policy.medium_weight
        + low * policy.low_weight
        + info * policy.info_weight
    )


def risk_level(score: float, policy: RiskPolicy = DEFAULT_POLICY) -> RiskLevel:
    for bound, level in policy.thresholds:
        if score < bound:
            return level
    return RiskLevel.CRITICAL


def build_recommendations(summary: SeveritySummary) -> List[str]:
    recommendations: List[str] = []
    if summary.critical:
        recommendations.append(
            f"URGENT: Address {summary.critical} critical vulnerabilities immediately"
        )
    if summary.high:
        recommendations.append(
            f"HIGH PRIORITY: Remediate {summary.high} high-risk vulnerabilities"
        )
    recommendations.extend(STANDING_RECOMMENDATIONS)
    return recommendations


class VulnerabilityClassifier:
    """
    Scores findings once, right after a scan stage produces them.

    Severity is never touched. Category is only filled in while it is UNKNOWN,
    and a score already present on the entry is kept. An optional NVD client
    supplies precise scores for findings that carry a CVE id.
    """

    def __init__(self, policy: RiskPolicy = DEFAULT_POLICY, cve_client=None):
        self.policy = policy
        self.cve_client = cve_client

    @staticmethod
    def approximate_cvss(severity: Severity) -> float:
        return APPROXIMATE_CVSS[Severity(severity)]

    @staticmethod
    def categorize(entry: VulnerabilityEntry) -> VulnerabilityCategory:
        if entry.category is not VulnerabilityCategory.UNKNOWN:
            return entry.category
        text = " ".join((entry.title, entry.description, entry.service)).lower()
        for category, keywords in _CATEGORY_KEYWORDS:
            if any(keyword in text for keyword in keywords):
                return category
        return VulnerabilityCategory.NETWORK_SECURITY

    def classify(self, entry: VulnerabilityEntry) -> VulnerabilityEntry:
        score = entry.cvss_score
        if score <= 0.0:
            score = self._precise_score(entry) or self.approximate_cvss(entry.severity)

        category = self.categorize(entry)
        exploitable = entry.is_exploitable or category is VulnerabilityCategory.CODE_EXECUTION or (
            entry.cve_id is not None and entry.severity.rank >= Severity.HIGH.rank
        )
        return dataclasses.replace(
            entry,
            cvss_score=round(score, 1),
            category=category,
            is_exploitable=exploitable,
            remediation=entry.remediation or REMEDIATION_HINTS[category],
        )

    def classify_all(self, entries: Iterable[VulnerabilityEntry]) -> List[VulnerabilityEntry]:
        return [self.classify(e) for e in entries]

    def _precise_score(self, entry: VulnerabilityEntry) -> Optional[float]:
        if self.cve_client is None or not entry.cve_id:
            return None
        record = self.cve_client.lookup_cve(entry.cve_id)
        if record is None or record.cvss_score <= 0.0:
            return None
        logger.debug("Using NVD score %.1f for %s", record.cvss_score, entry.cve_id)
        return record.cvss_score

    def summarize(self, entries: Sequence[VulnerabilityEntry]) -> SeveritySummary:
        counts = {severity: 0 for severity in Severity}
        for entry in entries:
            counts[entry.severity] += 1
        score = risk_score(
            counts[Severity.CRITICAL],
            counts[Severity.HIGH],
            counts[Severity.MEDIUM],
            counts[Severity.LOW],
            counts[Severity.INFO],
            self.policy,
        )
        return SeveritySummary(
            critical=counts[Severity.CRITICAL],
            high=counts[Severity.HIGH],
            medium=counts[Severity.MEDIUM],
            low=counts[Severity.LOW],
            informational=counts[Severity.INFO],
            risk_score=round(score, 2),
            risk_level=risk_level(score, self.policy),
        )
