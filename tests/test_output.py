"""Tests for reconsweep.output - format rendering."""

import json

import pytest

from reconsweep.models import (
    DeepScanResult,
    NetworkAnomaly,
    NetworkEdge,
    NetworkNode,
    NodeStatus,
    OperatingSystemInfo,
    RiskLevel,
    ScanResult,
    ScanStatistics,
    ScanStatus,
    ScanTarget,
    ScanType,
    ServiceFingerprint,
    Severity,
    SeveritySummary,
    TopologyResult,
    Vector3D,
    VulnerabilityEntry,
)
from reconsweep.output import (
    TerminalRenderer,
    render_json,
    render_text,
    render_topology_json,
)


def _make_entry(port: int = 22, severity: Severity = Severity.CRITICAL, **kwargs) -> VulnerabilityEntry:
    return VulnerabilityEntry(
        ip_address="192.168.1.10",
        port=port,
        service="SSH",
        title=kwargs.pop("title", "OpenSSH ssh-agent remote code execution"),
        severity=severity,
        description="A critical vulnerability in OpenSSH ssh-agent.",
        cve_id=kwargs.pop("cve_id", "CVE-2023-38408"),
        cvss_score=kwargs.pop("cvss_score", 9.8),
        remediation="Upgrade OpenSSH",
        **kwargs,
    )


def _make_result(with_findings: bool = True) -> ScanResult:
    findings = [_make_entry()] if with_findings else []
    return ScanResult(
        scan_id="scan-0001",
        scan_type=ScanType.QUICK,
        targets=[ScanTarget("192.168.1.10", host_name="testserver.local", is_alive=True)],
        open_ports={"192.168.1.10": [22, 80]},
        vulnerabilities=findings,
        statistics=ScanStatistics(total_hosts_scanned=1, active_hosts=1, open_ports_found=2),
        summary=SeveritySummary(
            critical=len(findings), risk_score=10.0 * len(findings),
            risk_level=RiskLevel.HIGH if findings else RiskLevel.LOW,
        ),
        recommendations=["Patch critical vulnerabilities immediately"] if findings else [],
        duration=14.3,
        status=ScanStatus.COMPLETED,
    )


def _make_deep_result() -> DeepScanResult:
    return DeepScanResult(
        scan_id="scan-0002",
        scan_type=ScanType.DEEP,
        targets=[ScanTarget("10.0.0.5", is_alive=True)],
        open_ports={"10.0.0.5": [21]},
        vulnerabilities=[_make_entry(port=21, severity=Severity.HIGH, cve_id="CVE-2011-2523",
                                     title="vsFTPd version 2.3.4 backdoor", cvss_score=10.0)],
        service_fingerprints=[ServiceFingerprint(port=21, service="ftp", product="vsftpd", version="2.3.4")],
        os_fingerprints=[OperatingSystemInfo("10.0.0.5", "Linux 3.2 - 4.9", confidence=95)],
        status=ScanStatus.COMPLETED,
        synthetic=True,
    )


# ---------------------------------------------------------------------------
# JSON renderer
# ---------------------------------------------------------------------------

class TestRenderJson:
    def test_is_valid_json(self):
        parsed = json.loads(render_json([_make_result()]))
        assert isinstance(parsed, dict)

    def test_json_structure(self):
        parsed = json.loads(render_json([_make_result(), _make_deep_result()]))
        assert "version" in parsed
        assert len(parsed["scans"]) == 2
        scan = parsed["scans"][0]
        assert scan["scan_id"] == "scan-0001"
        assert scan["status"] == "COMPLETED"
        assert scan["targets"][0]["ip_address"] == "192.168.1.10"
        assert scan["open_ports"] == {"192.168.1.10": [22, 80]}

    def test_enums_serialized_by_value(self):
        scan = json.loads(render_json([_make_result()]))["scans"][0]
        assert scan["vulnerabilities"][0]["severity"] == "CRITICAL"
        assert scan["summary"]["risk_level"] == "HIGH"

    def test_deep_fields_present(self):
        scan = json.loads(render_json([_make_deep_result()]))["scans"][0]
        assert scan["service_fingerprints"][0]["product"] == "vsftpd"
        assert scan["os_fingerprints"][0]["name"] == "Linux 3.2 - 4.9"
        assert scan["synthetic"] is True

    def test_contains_cve_id(self):
        assert "CVE-2023-38408" in render_json([_make_result()])


# ---------------------------------------------------------------------------
# Text renderer
# ---------------------------------------------------------------------------

class TestRenderText:
    def test_contains_header(self):
        assert render_text([_make_result()]).startswith("# ReconSweep v")

    def test_contains_host(self):
        output = render_text([_make_result()])
        assert "Host: 192.168.1.10 (testserver.local) [up]" in output
        assert "Open ports: 22, 80" in output

    def test_contains_finding(self):
        output = render_text([_make_result()])
        assert "[CRITICAL] 22/SSH OpenSSH ssh-agent remote code execution CVE-2023-38408 CVSS: 9.8" in output

    def test_findings_most_severe_first(self):
        result = _make_result()
        result.vulnerabilities.insert(0, _make_entry(port=80, severity=Severity.LOW, cvss_score=2.0,
                                                     title="Low thing", cve_id=None))
        output = render_text([result])
        assert output.index("[CRITICAL]") < output.index("[LOW]")

    def test_clean_result(self):
        output = render_text([_make_result(with_findings=False)])
        assert "[CRITICAL]" not in output
        assert "0 critical" in output

    def test_contains_recommendations(self):
        assert "  - Patch critical vulnerabilities immediately" in render_text([_make_result()])

    def test_deep_result_sections(self):
        output = render_text([_make_deep_result()])
        assert "vsftpd 2.3.4" in output
        assert "OS: Linux 3.2 - 4.9 (95%)" in output

    def test_summary_line(self):
        output = render_text([_make_result(), _make_result(with_findings=False)])
        assert output.endswith("# Summary: 2 scan(s) | 1 finding(s)")

    def test_no_ansi_codes(self):
        # ANSI escape codes start with ESC[ (\x1b[)
        assert "\x1b[" not in render_text([_make_result(), _make_deep_result()])


# ---------------------------------------------------------------------------
# Topology renderer
# ---------------------------------------------------------------------------

def _make_topology() -> TopologyResult:
    web = NetworkNode(id="n1", ip_address="10.0.0.1", host_name="web", device_type="Web Server",
                      open_ports=[80, 443], position=Vector3D(1.0, 2.0, 3.0))
    db = NetworkNode(id="n2", ip_address="10.0.0.2", open_ports=[445], status=NodeStatus.ANOMALY)
    return TopologyResult(
        scan_id="topo-1",
        nodes=[web, db],
        edges=[NetworkEdge("n1", "n2", label="Subnet Connection", id="e1")],
        anomalies=[NetworkAnomaly("n2", "SuspiciousService", "Potentially risky ports open: 445",
                                  Severity.HIGH)],
    )


class TestRenderTopologyJson:
    def test_document_shape(self):
        doc = json.loads(render_topology_json(_make_topology()))
        assert doc["scanId"] == "topo-1"
        assert [n["id"] for n in doc["nodes"]] == ["n1", "n2"]
        assert doc["edges"][0] == {"id": "e1", "source": "n1", "target": "n2",
                                   "type": "UNKNOWN", "strength": 1.0}
        assert doc["anomalies"][0]["nodeId"] == "n2"
        assert doc["anomalies"][0]["severity"] == "HIGH"

    def test_node_fields(self):
        doc = json.loads(render_topology_json(_make_topology()))
        web, db = doc["nodes"]
        assert web["label"] == "web"
        assert web["position"] == {"x": 1.0, "y": 2.0, "z": 3.0}
        assert web["color"] == "#00FF00"
        assert db["label"] == "10.0.0.2"
        assert db["status"] == "ANOMALY"
        assert db["color"] == "#FF4444"
        # Unpositioned nodes render at the origin
        assert db["position"] == {"x": 0.0, "y": 0.0, "z": 0.0}


# ---------------------------------------------------------------------------
# Terminal renderer smoke tests
# ---------------------------------------------------------------------------

class TestTerminalRenderer:
    @pytest.fixture
    def renderer(self):
        return TerminalRenderer(verbose=2)

    def test_print_result(self, renderer, capsys):
        renderer.print_result(_make_result())
        out = capsys.readouterr().out
        assert "192.168.1.10" in out
        assert "Fix: Upgrade OpenSSH" in out
        assert "Patch critical vulnerabilities immediately" in out

    def test_print_deep_result(self, renderer, capsys):
        renderer.print_result(_make_deep_result())
        out = capsys.readouterr().out
        assert "Linux 3.2 - 4.9" in out
        assert "synthetic" in out

    def test_print_clean_result(self, capsys):
        TerminalRenderer().print_result(_make_result(with_findings=False))
        assert "No vulnerabilities found" in capsys.readouterr().out

    def test_print_summary(self, renderer, capsys):
        renderer.print_summary([_make_result()], elapsed=3.2)
        out = capsys.readouterr().out
        assert "Scan Summary" in out
        assert "Hosts up" in out

    def test_print_topology(self, renderer, capsys):
        renderer.print_topology(_make_topology())
        out = capsys.readouterr().out
        assert "SuspiciousService" in out

    def test_print_info_needs_verbose(self, capsys):
        TerminalRenderer(verbose=0).print_info("hidden message")
        assert "hidden message" not in capsys.readouterr().out
